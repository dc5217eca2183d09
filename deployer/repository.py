"""Persistence boundary for workflow definitions and deployment records.

The orchestrator only needs "load workflow by id" and "persist deployment
record"; a relational store plugs in behind these protocols. The in-memory
implementations store copies, so callers see only what was saved.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Optional, Protocol

from .domain import DeploymentRecord, WorkflowDefinition


class WorkflowRepository(Protocol):
    async def get(self, workflow_id: str) -> Optional[WorkflowDefinition]: ...

    async def save(self, workflow: WorkflowDefinition) -> WorkflowDefinition: ...


class DeploymentRepository(Protocol):
    async def get(self, deployment_id: str) -> Optional[DeploymentRecord]: ...

    async def save(self, record: DeploymentRecord) -> DeploymentRecord: ...

    async def list_for_workflow(self, workflow_id: str) -> list[DeploymentRecord]: ...


class InMemoryWorkflowRepository:
    def __init__(self, workflows: Optional[list[WorkflowDefinition]] = None) -> None:
        self._items: dict[str, WorkflowDefinition] = {}
        self._lock = asyncio.Lock()
        for workflow in workflows or []:
            self._items[workflow.id] = copy.deepcopy(workflow)

    async def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        async with self._lock:
            workflow = self._items.get(workflow_id)
            return copy.deepcopy(workflow) if workflow else None

    async def save(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        async with self._lock:
            self._items[workflow.id] = copy.deepcopy(workflow)
        return workflow


class InMemoryDeploymentRepository:
    def __init__(self) -> None:
        self._items: dict[str, DeploymentRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        async with self._lock:
            record = self._items.get(deployment_id)
            return copy.deepcopy(record) if record else None

    async def save(self, record: DeploymentRecord) -> DeploymentRecord:
        async with self._lock:
            self._items[record.id] = copy.deepcopy(record)
        return record

    async def list_for_workflow(self, workflow_id: str) -> list[DeploymentRecord]:
        """Newest first."""
        async with self._lock:
            records = [copy.deepcopy(r) for r in self._items.values() if r.workflow_id == workflow_id]
        return sorted(records, key=lambda r: r.started_at, reverse=True)

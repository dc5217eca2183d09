"""Workflow definitions, deployment records and the deployment state machine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .naming import dns_safe


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class WorkflowStatus(str, Enum):
    DRAFT = 'DRAFT'
    VALIDATING = 'VALIDATING'
    VALIDATED = 'VALIDATED'
    GENERATING = 'GENERATING'
    GENERATED = 'GENERATED'
    DEPLOYING = 'DEPLOYING'
    DEPLOYED = 'DEPLOYED'
    DEPRECATED = 'DEPRECATED'
    ARCHIVED = 'ARCHIVED'


class TargetModule(str, Enum):
    """Platform module a workflow service is deployed into."""

    E_FORCE = 'eforce'
    E_GOV = 'egov'
    E_BUSINESS = 'ebusiness'
    E_PAYMENT = 'epayment'

    def namespace(self, environment: str) -> str:
        """``guce-{environment}-{module}``, e.g. ``guce-cm-egov``."""
        return f'guce-{dns_safe(environment)}-{self.value}'


class DeploymentStatus(str, Enum):
    PENDING = 'PENDING'
    GENERATING_CODE = 'GENERATING_CODE'
    BUILDING = 'BUILDING'
    PUSHING_IMAGE = 'PUSHING_IMAGE'
    DEPLOYING_WORKLOAD = 'DEPLOYING_WORKLOAD'
    DEPLOYING_PROCESS_DEFINITION = 'DEPLOYING_PROCESS_DEFINITION'
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'
    ROLLED_BACK = 'ROLLED_BACK'

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.SUCCESS, DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK)


# Forward order of the pipeline; FAILED may follow any in-progress state.
PIPELINE_ORDER = (
    DeploymentStatus.PENDING,
    DeploymentStatus.GENERATING_CODE,
    DeploymentStatus.BUILDING,
    DeploymentStatus.PUSHING_IMAGE,
    DeploymentStatus.DEPLOYING_WORKLOAD,
    DeploymentStatus.DEPLOYING_PROCESS_DEFINITION,
    DeploymentStatus.SUCCESS,
)


def _transitions() -> dict[DeploymentStatus, frozenset[DeploymentStatus]]:
    table: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {}
    for current, following in zip(PIPELINE_ORDER, PIPELINE_ORDER[1:]):
        table[current] = frozenset({following, DeploymentStatus.FAILED})
    table[DeploymentStatus.SUCCESS] = frozenset({DeploymentStatus.ROLLED_BACK})
    table[DeploymentStatus.FAILED] = frozenset({DeploymentStatus.ROLLED_BACK})
    table[DeploymentStatus.ROLLED_BACK] = frozenset()
    return table


TRANSITIONS = _transitions()


class InvalidTransitionError(Exception):
    """Raised when a deployment record is moved along an edge the state machine lacks."""

    def __init__(self, current: DeploymentStatus, target: DeploymentStatus) -> None:
        super().__init__(f'Cannot move deployment from {current.value} to {target.value}')
        self.current = current
        self.target = target


def can_transition(current: DeploymentStatus, target: DeploymentStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class WorkflowDefinition:
    """A designed workflow as stored by the surrounding CRUD layer."""

    id: str
    name: str
    bpmn_xml: str
    version: str = '1.0.0'
    tenant_id: Optional[str] = None
    display_name: Optional[str] = None
    process_id: Optional[str] = None
    target_module: TargetModule = TargetModule.E_GOV
    status: WorkflowStatus = WorkflowStatus.DRAFT
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def mark(self, status: WorkflowStatus) -> None:
        self.status = status
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'tenantId': self.tenant_id,
            'name': self.name,
            'displayName': self.display_name,
            'version': self.version,
            'processId': self.process_id,
            'targetModule': self.target_module.value,
            'status': self.status.value,
            'createdBy': self.created_by,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }


@dataclass
class DeploymentRecord:
    """Progress of one attempt to turn a workflow definition into a running service.

    Created PENDING, mutated in place after every stage and terminal at
    SUCCESS, FAILED or ROLLED_BACK. Artifacts accumulate as stages finish
    and are kept on failure for manual diagnosis.
    """

    workflow_id: str
    target_environment: str
    initiated_by: Optional[str] = None
    workflow_version: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: DeploymentStatus = DeploymentStatus.PENDING
    status_history: list[DeploymentStatus] = field(
        default_factory=lambda: [DeploymentStatus.PENDING],
    )
    generated_files: dict[str, str] = field(default_factory=dict)
    git_commit_id: Optional[str] = None
    git_repository_url: Optional[str] = None
    build_logs: dict[str, str] = field(default_factory=dict)
    build_artifact: Optional[str] = None
    image_reference: Optional[str] = None
    namespace: Optional[str] = None
    release_name: Optional[str] = None
    engine_deployment_key: Optional[int] = None
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None

    def advance(self, status: DeploymentStatus) -> DeploymentRecord:
        """Move to ``status``; raises :class:`InvalidTransitionError` on an illegal edge."""
        if not can_transition(self.status, status):
            raise InvalidTransitionError(self.status, status)
        self.status = status
        self.status_history.append(status)
        if status in (DeploymentStatus.SUCCESS, DeploymentStatus.FAILED):
            self.completed_at = utcnow()
        elif status == DeploymentStatus.ROLLED_BACK:
            self.rolled_back_at = utcnow()
        return self

    def fail(self, message: str) -> DeploymentRecord:
        self.error_message = message
        return self.advance(DeploymentStatus.FAILED)

    def append_log(self, stage: str, text: str) -> None:
        if not text:
            return
        previous = self.build_logs.get(stage)
        self.build_logs[stage] = f'{previous}\n{text}' if previous else text

    def to_dict(self) -> dict[str, Any]:
        """Read-only status projection."""
        return {
            'id': self.id,
            'workflowId': self.workflow_id,
            'workflowVersion': self.workflow_version,
            'targetEnvironmentCode': self.target_environment,
            'initiatedBy': self.initiated_by,
            'status': self.status.value,
            'statusHistory': [s.value for s in self.status_history],
            'artifacts': {
                'generatedFiles': sorted(self.generated_files),
                'gitCommitId': self.git_commit_id,
                'gitRepositoryUrl': self.git_repository_url,
                'buildArtifact': self.build_artifact,
                'imageReference': self.image_reference,
                'namespace': self.namespace,
                'releaseName': self.release_name,
                'engineDeploymentKey': self.engine_deployment_key,
            },
            'buildLogs': dict(self.build_logs),
            'errorMessage': self.error_message,
            'startedAt': _iso(self.started_at),
            'completedAt': _iso(self.completed_at),
            'rolledBackAt': _iso(self.rolled_back_at),
        }

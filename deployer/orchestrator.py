"""Deployment orchestrator: the workflow-to-service state machine.

A deployment is a fold over an ordered list of stages. The record is
advanced and persisted when a stage is entered, the stage runs, and any
artifacts it produced are persisted before the next one starts. The first
failure marks the record FAILED and stops the run. Completed stages are
not compensated: a pushed commit or image stays where it is, and cleanup
beyond the cluster rollback is manual. The per-attempt work dir is deleted
when the run ends unless `keep_work_dirs` is set.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .adapters import AdapterResult
from .adapters.build import BuildAdapter
from .adapters.cluster import DEFAULT_RESOURCES, ClusterAdapter
from .adapters.docker import DockerAdapter
from .adapters.git import GitAdapter
from .bpmn import ValidationResult, parse, validate
from .bpmn.model import WorkflowModel
from .codegen import GeneratedCode, generate
from .config import AppConfig
from .domain import (
    DeploymentRecord,
    DeploymentStatus,
    InvalidTransitionError,
    WorkflowDefinition,
    WorkflowStatus,
)
from .engine import ProcessEngineClient
from .naming import dns_safe, file_safe
from .process import ProcessRunner
from .repository import DeploymentRepository, WorkflowRepository

logger = logging.getLogger(__name__)

# Longest tail of captured tool output copied into a record's error message.
ERROR_OUTPUT_LIMIT = 2000


class WorkflowNotFoundError(Exception):
    """Raised when a workflow id does not resolve to a stored definition."""


class DeploymentNotFoundError(Exception):
    """Raised when a deployment id does not resolve to a stored record."""


class WorkflowValidationError(Exception):
    """Raised when a workflow's BPMN has structural errors."""

    def __init__(self, result: ValidationResult) -> None:
        super().__init__('Workflow validation failed: ' + '; '.join(result.errors))
        self.result = result


class StageError(Exception):
    """Raised inside the pipeline when a stage's adapter reports failure."""

    def __init__(self, stage: DeploymentStatus, message: str, output: str = '') -> None:
        text = message
        if output.strip():
            text = f'{message}\n{output.strip()[-ERROR_OUTPUT_LIMIT:]}'
        super().__init__(text)
        self.stage = stage
        self.output = output


class RollbackError(Exception):
    """Raised when the cluster adapter cannot roll a release back."""


@dataclass
class PipelineContext:
    """State handed from one stage to the next within a single run."""

    record: DeploymentRecord
    workflow: WorkflowDefinition
    work_dir: Path
    model: Optional[WorkflowModel] = None
    code: Optional[GeneratedCode] = None


Stage = Callable[[PipelineContext], Awaitable[None]]


class DeploymentOrchestrator:
    def __init__(
        self,
        config: AppConfig,
        workflows: WorkflowRepository,
        deployments: DeploymentRepository,
        engine: ProcessEngineClient,
        git: GitAdapter,
        build: BuildAdapter,
        docker: DockerAdapter,
        cluster: ClusterAdapter,
    ) -> None:
        self._config = config
        self._workflows = workflows
        self._deployments = deployments
        self._engine = engine
        self._git = git
        self._build = build
        self._docker = docker
        self._cluster = cluster
        self._tasks: dict[str, asyncio.Task] = {}
        # workflow id -> deployment ids currently inside run_pipeline
        self._active: dict[str, set[str]] = {}
        # workflow id -> status before the first of its concurrent runs started
        self._status_before: dict[str, WorkflowStatus] = {}
        self._stages: list[tuple[DeploymentStatus, Stage]] = [
            (DeploymentStatus.GENERATING_CODE, self._generate_stage),
            (DeploymentStatus.BUILDING, self._build_stage),
            (DeploymentStatus.PUSHING_IMAGE, self._image_stage),
            (DeploymentStatus.DEPLOYING_WORKLOAD, self._workload_stage),
            (DeploymentStatus.DEPLOYING_PROCESS_DEFINITION, self._definition_stage),
        ]

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        workflows: WorkflowRepository,
        deployments: DeploymentRepository,
        engine: ProcessEngineClient,
    ) -> DeploymentOrchestrator:
        """Wire the adapters around one shared process runner."""
        runner = ProcessRunner()
        return cls(
            config,
            workflows,
            deployments,
            engine,
            git=GitAdapter(config.git, runner),
            build=BuildAdapter(config.build, runner),
            docker=DockerAdapter(config.registry, runner),
            cluster=ClusterAdapter(config.cluster, runner),
        )

    # ── Workflow operations ───────────────────────────────

    async def _load_workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f'Workflow not found: {workflow_id}')
        return workflow

    async def _load_valid(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self._load_workflow(workflow_id)
        result = validate(workflow.bpmn_xml)
        if not result.valid:
            raise WorkflowValidationError(result)
        return workflow

    def _generate(self, workflow: WorkflowDefinition) -> GeneratedCode:
        model = parse(workflow.bpmn_xml)
        return generate(workflow, model, zeebe_address=self._config.cluster.zeebe_address)

    async def validate_workflow(self, workflow_id: str) -> ValidationResult:
        """Validate a stored workflow; marks it VALIDATED when there are no errors."""
        workflow = await self._load_workflow(workflow_id)
        result = validate(workflow.bpmn_xml)
        if result.valid:
            workflow.mark(WorkflowStatus.VALIDATED)
            await self._workflows.save(workflow)
        logger.info(
            'Validated workflow %s: %d errors, %d warnings',
            workflow_id, len(result.errors), len(result.warnings),
        )
        return result

    async def generate_code(self, workflow_id: str) -> GeneratedCode:
        workflow = await self._load_valid(workflow_id)
        code = self._generate(workflow)
        workflow.mark(WorkflowStatus.GENERATED)
        await self._workflows.save(workflow)
        logger.info('Generated %d files for workflow %s', len(code.files), workflow_id)
        return code

    async def preview_code(self, workflow_id: str) -> dict[str, str]:
        """Generated files without persisting anything."""
        workflow = await self._load_valid(workflow_id)
        return dict(self._generate(workflow).files)

    # ── Deployments ───────────────────────────────────────

    async def deploy_workflow(
        self,
        workflow_id: str,
        target_environment: str,
        initiated_by: Optional[str] = None,
    ) -> DeploymentRecord:
        """Accept a deployment request and run the pipeline in the background.

        Raises:
            WorkflowNotFoundError: No such workflow; no record is created.
            WorkflowValidationError: The BPMN has errors; no record is created.
        """
        workflow = await self._load_valid(workflow_id)
        record = DeploymentRecord(
            workflow_id=workflow.id,
            target_environment=target_environment,
            initiated_by=initiated_by,
            workflow_version=workflow.version,
        )
        await self._deployments.save(record)
        accepted = copy.deepcopy(record)

        task = asyncio.create_task(self.run_pipeline(record, workflow))
        self._tasks[record.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(record.id, None))
        logger.info(
            'Deployment %s accepted: workflow %s v%s to %s by %s',
            record.id, workflow.name, workflow.version, target_environment, initiated_by,
        )
        return accepted

    def work_dir(self, workflow: WorkflowDefinition, record: DeploymentRecord) -> Path:
        """Per-attempt directory, so concurrent runs never share files."""
        return (
            Path(self._config.work_dir)
            / dns_safe(workflow.name)
            / file_safe(workflow.version, 'unversioned')
            / record.id
        )

    async def run_pipeline(self, record: DeploymentRecord, workflow: WorkflowDefinition) -> DeploymentRecord:
        """Run every stage in order; the first failure marks the record FAILED."""
        ctx = PipelineContext(record=record, workflow=workflow, work_dir=self.work_dir(workflow, record))
        current = await self._workflows.get(workflow.id) or workflow
        running = self._active.setdefault(workflow.id, set())
        if not running:
            self._status_before[workflow.id] = current.status
        running.add(record.id)
        current.mark(WorkflowStatus.DEPLOYING)
        await self._workflows.save(current)

        try:
            try:
                for status, stage in self._stages:
                    record.advance(status)
                    await self._deployments.save(record)
                    logger.info('Deployment %s: %s', record.id, status.value)
                    await stage(ctx)
                    await self._deployments.save(record)
            except Exception as exc:
                logger.error('Deployment %s failed during %s: %s', record.id, record.status.value, exc)
                record.fail(str(exc))
                await self._deployments.save(record)
                await self._restore_workflow_status(workflow.id, record.id)
                return record

            record.advance(DeploymentStatus.SUCCESS)
            await self._deployments.save(record)
            current = await self._workflows.get(workflow.id) or workflow
            current.mark(WorkflowStatus.DEPLOYED)
            await self._workflows.save(current)
            logger.info('Deployment %s succeeded: %s', record.id, record.image_reference)
            return record
        finally:
            running.discard(record.id)
            if not running:
                self._active.pop(workflow.id, None)
                self._status_before.pop(workflow.id, None)
            self._remove_work_dir(ctx.work_dir)

    async def _restore_workflow_status(self, workflow_id: str, deployment_id: str) -> None:
        """Undo DEPLOYING after a failure, unless another run still owns it."""
        current = await self._workflows.get(workflow_id)
        others = self._active.get(workflow_id, set()) - {deployment_id}
        if current is None or current.status is not WorkflowStatus.DEPLOYING or others:
            return
        current.mark(self._status_before.get(workflow_id, WorkflowStatus.DRAFT))
        await self._workflows.save(current)

    def _remove_work_dir(self, work_dir: Path) -> None:
        if self._config.keep_work_dirs or not work_dir.exists():
            return
        try:
            shutil.rmtree(work_dir)
        except OSError as exc:
            logger.warning('Could not remove work dir %s: %s', work_dir, exc)

    @staticmethod
    def _require(result: AdapterResult, stage: DeploymentStatus, message: str) -> AdapterResult:
        if not result.success:
            raise StageError(stage, message, result.output)
        return result

    async def _generate_stage(self, ctx: PipelineContext) -> None:
        stage = DeploymentStatus.GENERATING_CODE
        ctx.model = parse(ctx.workflow.bpmn_xml)
        ctx.code = generate(ctx.workflow, ctx.model, zeebe_address=self._config.cluster.zeebe_address)
        ctx.record.generated_files = dict(ctx.code.files)

        root = ctx.work_dir.resolve()
        for relative, content in ctx.code.files.items():
            target = ctx.work_dir / relative
            if not target.resolve().is_relative_to(root):
                raise StageError(stage, f'Generated file escapes the work dir: {relative}')
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding='utf-8')
        logger.info('Materialised %d files in %s', len(ctx.code.files), ctx.work_dir)

        message = (
            f'Deploy {ctx.workflow.name} v{ctx.workflow.version} '
            f'to {ctx.record.target_environment} (deployment {ctx.record.id})'
        )
        result = await self._git.commit_and_push(
            ctx.work_dir, message, branch=f'workflows/{dns_safe(ctx.workflow.name)}',
        )
        ctx.record.append_log('git', result.output)
        if result.artifact_ref:
            ctx.record.git_commit_id = result.artifact_ref
        ctx.record.git_repository_url = self._git.repository_url or None
        self._require(result, stage, 'Git commit failed')

    async def _build_stage(self, ctx: PipelineContext) -> None:
        stage = DeploymentStatus.BUILDING
        result = await self._build.build(ctx.work_dir)
        ctx.record.append_log('build', result.output)
        self._require(result, stage, 'Build failed')
        ctx.record.build_artifact = result.artifact_ref

        if self._config.build.run_tests:
            result = await self._build.run_tests(ctx.work_dir)
            ctx.record.append_log('test', result.output)
            self._require(result, stage, 'Tests failed')

    async def _image_stage(self, ctx: PipelineContext) -> None:
        image = self._docker.image_reference(
            ctx.record.target_environment, ctx.workflow.name, ctx.workflow.version,
        )
        result = await self._docker.build_and_push(ctx.work_dir, image)
        ctx.record.append_log('docker', result.output)
        self._require(result, DeploymentStatus.PUSHING_IMAGE, 'Image build/push failed')
        ctx.record.image_reference = image

    async def _workload_stage(self, ctx: PipelineContext) -> None:
        namespace = ctx.workflow.target_module.namespace(ctx.record.target_environment)
        ctx.record.namespace = namespace
        result = await self._cluster.deploy(
            namespace,
            ctx.workflow.name,
            ctx.record.image_reference or '',
            values={'replicaCount': self._config.cluster.replica_count, 'resources': DEFAULT_RESOURCES},
        )
        ctx.record.append_log('cluster', result.output)
        self._require(result, DeploymentStatus.DEPLOYING_WORKLOAD, 'Cluster deployment failed')
        ctx.record.release_name = result.artifact_ref

    async def _definition_stage(self, ctx: PipelineContext) -> None:
        process_id = ctx.model.process_id if ctx.model else ctx.workflow.process_id
        key = await self._engine.deploy_definition(
            ctx.workflow.bpmn_xml.encode('utf-8'), f'{file_safe(process_id, dns_safe(ctx.workflow.name))}.bpmn',
        )
        ctx.record.engine_deployment_key = key

    # ── Rollback and queries ──────────────────────────────

    async def get_deployment(self, deployment_id: str) -> DeploymentRecord:
        record = await self._deployments.get(deployment_id)
        if record is None:
            raise DeploymentNotFoundError(f'Deployment not found: {deployment_id}')
        return record

    async def list_deployments(self, workflow_id: str) -> list[DeploymentRecord]:
        await self._load_workflow(workflow_id)
        return await self._deployments.list_for_workflow(workflow_id)

    async def rollback_deployment(self, deployment_id: str) -> DeploymentRecord:
        """Roll the cluster release back and mark the record ROLLED_BACK.

        Only the cluster layer is reverted; the commit, the image and the
        engine deployment stay in place.

        Raises:
            DeploymentNotFoundError: Unknown deployment id.
            InvalidTransitionError: The record is not SUCCESS or FAILED.
            RollbackError: The cluster adapter reported failure.
        """
        record = await self.get_deployment(deployment_id)
        if record.status not in (DeploymentStatus.SUCCESS, DeploymentStatus.FAILED):
            raise InvalidTransitionError(record.status, DeploymentStatus.ROLLED_BACK)

        if record.release_name and record.namespace:
            result = await self._cluster.rollback(record.namespace, record.release_name)
            record.append_log('rollback', result.output)
            if not result.success:
                await self._deployments.save(record)
                raise RollbackError(f'Rollback of {record.release_name} failed: {result.output}')
        else:
            logger.info('Deployment %s has no cluster release, nothing to roll back', deployment_id)

        record.advance(DeploymentStatus.ROLLED_BACK)
        await self._deployments.save(record)
        logger.info('Deployment %s rolled back', deployment_id)
        return record

    async def wait_for(self, deployment_id: str) -> DeploymentRecord:
        """Wait for a background run to finish and return the stored record."""
        task = self._tasks.get(deployment_id)
        if task is not None:
            await task
        return await self.get_deployment(deployment_id)

    async def close(self) -> None:
        """Wait for in-flight runs so none is left half-persisted."""
        tasks = list(self._tasks.values())
        if tasks:
            logger.info('Waiting for %d running deployments', len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

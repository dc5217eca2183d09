"""Tests for deployer.orchestrator: the deployment pipeline and rollback."""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from deployer.adapters import AdapterResult
from deployer.codegen import GeneratedCode
from deployer.config import AppConfig, BuildConfig
from deployer.domain import (
    PIPELINE_ORDER,
    DeploymentRecord,
    DeploymentStatus,
    InvalidTransitionError,
    WorkflowDefinition,
    WorkflowStatus,
)
from deployer.orchestrator import (
    DeploymentOrchestrator,
    RollbackError,
    StageError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from deployer.repository import InMemoryDeploymentRepository, InMemoryWorkflowRepository

INVALID_BPMN = (
    '<bpmn:definitions xmlns:bpmn="http://www.omg.org/spec/BPMN/20100524/MODEL" id="d">'
    '<bpmn:process id="broken"><bpmn:task id="t"/></bpmn:process>'
    '</bpmn:definitions>'
)


class RecordingDeploymentRepository(InMemoryDeploymentRepository):
    """Keeps the status seen at every save, in order."""

    def __init__(self) -> None:
        super().__init__()
        self.saved_statuses: list[DeploymentStatus] = []

    async def save(self, record: DeploymentRecord) -> DeploymentRecord:
        self.saved_statuses.append(record.status)
        return await super().save(record)


@pytest.fixture
def adapters() -> dict[str, MagicMock]:
    git = MagicMock()
    git.repository_url = "https://git.example.com/guce/workflows.git"
    git.commit_and_push = AsyncMock(return_value=AdapterResult(True, "committed", "abc123"))

    build = MagicMock()
    build.build = AsyncMock(return_value=AdapterResult(True, "built", "/work/dist/svc.whl"))
    build.run_tests = AsyncMock(return_value=AdapterResult(True, "3 passed"))

    docker = MagicMock()
    docker.image_reference = MagicMock(return_value="registry.example.com/guce-workflows/dev-document-review:1.2.0")
    docker.build_and_push = AsyncMock(return_value=AdapterResult(True, "pushed"))

    cluster = MagicMock()
    cluster.deploy = AsyncMock(return_value=AdapterResult(True, "deployed", "document-review"))
    cluster.rollback = AsyncMock(return_value=AdapterResult(True, "rolled back", "document-review"))
    return {"git": git, "build": build, "docker": docker, "cluster": cluster}


@pytest.fixture
def engine() -> AsyncMock:
    client = AsyncMock()
    client.deploy_definition = AsyncMock(return_value=2251799813685249)
    return client


@pytest.fixture
def workflows(review_workflow: WorkflowDefinition) -> InMemoryWorkflowRepository:
    broken = WorkflowDefinition(id="wf-broken", name="Broken", bpmn_xml=INVALID_BPMN)
    return InMemoryWorkflowRepository([review_workflow, broken])


@pytest.fixture
def deployments() -> RecordingDeploymentRepository:
    return RecordingDeploymentRepository()


def _orchestrator(config: AppConfig, workflows, deployments, engine, adapters) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(config, workflows, deployments, engine, **adapters)


@pytest.fixture
def orchestrator(app_config, workflows, deployments, engine, adapters) -> DeploymentOrchestrator:
    return _orchestrator(app_config, workflows, deployments, engine, adapters)


def _distinct(statuses: list[DeploymentStatus]) -> list[DeploymentStatus]:
    result: list[DeploymentStatus] = []
    for status in statuses:
        if not result or result[-1] is not status:
            result.append(status)
    return result


# ── Workflow operations ───────────────────────────────────


@pytest.mark.asyncio
async def test_validate_workflow_marks_validated(orchestrator, workflows) -> None:
    result = await orchestrator.validate_workflow("wf-review")
    assert result.valid
    assert (await workflows.get("wf-review")).status is WorkflowStatus.VALIDATED


@pytest.mark.asyncio
async def test_validate_broken_workflow_keeps_status(orchestrator, workflows) -> None:
    result = await orchestrator.validate_workflow("wf-broken")
    assert not result.valid
    assert (await workflows.get("wf-broken")).status is WorkflowStatus.DRAFT


@pytest.mark.asyncio
async def test_generate_code_marks_generated(orchestrator, workflows) -> None:
    code = await orchestrator.generate_code("wf-review")
    assert "documentreview/request.py" in code.files
    assert (await workflows.get("wf-review")).status is WorkflowStatus.GENERATED


@pytest.mark.asyncio
async def test_preview_code_persists_nothing(orchestrator, workflows) -> None:
    files = await orchestrator.preview_code("wf-review")
    assert "pyproject.toml" in files
    assert "ZEEBE_ADDRESS=zeebe-gateway:26500" in files[".env.service"]
    assert (await workflows.get("wf-review")).status is WorkflowStatus.DRAFT


@pytest.mark.asyncio
async def test_unknown_workflow(orchestrator) -> None:
    with pytest.raises(WorkflowNotFoundError):
        await orchestrator.validate_workflow("nope")
    with pytest.raises(WorkflowNotFoundError):
        await orchestrator.list_deployments("nope")


# ── deploy_workflow ───────────────────────────────────────


@pytest.mark.asyncio
async def test_deploy_success_path(app_config, deployments, workflows, adapters, engine) -> None:
    config = dataclasses.replace(app_config, keep_work_dirs=True)
    orchestrator = _orchestrator(config, workflows, deployments, engine, adapters)
    accepted = await orchestrator.deploy_workflow("wf-review", "dev", "alice")

    assert accepted.status is DeploymentStatus.PENDING
    assert accepted.workflow_version == "1.2.0"

    record = await orchestrator.wait_for(accepted.id)

    assert record.status is DeploymentStatus.SUCCESS
    assert record.status_history == list(PIPELINE_ORDER)
    assert _distinct(deployments.saved_statuses) == list(PIPELINE_ORDER)
    assert record.git_commit_id == "abc123"
    assert record.git_repository_url == "https://git.example.com/guce/workflows.git"
    assert record.build_artifact == "/work/dist/svc.whl"
    assert record.image_reference == "registry.example.com/guce-workflows/dev-document-review:1.2.0"
    assert record.namespace == "guce-dev-egov"
    assert record.release_name == "document-review"
    assert record.engine_deployment_key == 2251799813685249
    assert record.error_message is None
    assert record.completed_at is not None
    assert set(record.build_logs) == {"git", "build", "docker", "cluster"}
    assert "documentreview/__init__.py" in record.generated_files

    work_dir = orchestrator.work_dir(await workflows.get("wf-review"), record)
    assert work_dir == Path(app_config.work_dir) / "document-review" / "1.2.0" / record.id
    assert (work_dir / "documentreview" / "request.py").is_file()
    assert (work_dir / "bpmn" / "document-review.bpmn").is_file()

    adapters["git"].commit_and_push.assert_awaited_once()
    assert adapters["git"].commit_and_push.await_args.kwargs["branch"] == "workflows/document-review"
    adapters["docker"].image_reference.assert_called_once_with("dev", "Document Review", "1.2.0")
    adapters["cluster"].deploy.assert_awaited_once()
    assert adapters["cluster"].deploy.await_args.args[:3] == (
        "guce-dev-egov",
        "Document Review",
        "registry.example.com/guce-workflows/dev-document-review:1.2.0",
    )
    content, name = engine.deploy_definition.await_args.args
    assert name == "document-review.bpmn"
    assert b'id="document-review"' in content
    adapters["build"].run_tests.assert_not_awaited()

    assert (await workflows.get("wf-review")).status is WorkflowStatus.DEPLOYED


@pytest.mark.asyncio
async def test_build_failure_short_circuits(orchestrator, deployments, workflows, adapters, engine) -> None:
    adapters["build"].build.return_value = AdapterResult.failed(
        "ModuleNotFoundError: setuptools\nBuild failed with exit code 1"
    )

    accepted = await orchestrator.deploy_workflow("wf-review", "dev")
    record = await orchestrator.wait_for(accepted.id)

    assert record.status is DeploymentStatus.FAILED
    assert record.status_history == [
        DeploymentStatus.PENDING,
        DeploymentStatus.GENERATING_CODE,
        DeploymentStatus.BUILDING,
        DeploymentStatus.FAILED,
    ]
    assert record.error_message.startswith("Build failed")
    assert "ModuleNotFoundError: setuptools" in record.error_message
    assert record.git_commit_id == "abc123"
    assert record.image_reference is None
    adapters["docker"].build_and_push.assert_not_awaited()
    adapters["cluster"].deploy.assert_not_awaited()
    engine.deploy_definition.assert_not_awaited()
    assert (await workflows.get("wf-review")).status is WorkflowStatus.DRAFT


@pytest.mark.asyncio
async def test_git_failure_keeps_commit_sha(orchestrator, adapters) -> None:
    adapters["git"].commit_and_push.return_value = AdapterResult(False, "git push to x failed", "sha9")

    accepted = await orchestrator.deploy_workflow("wf-review", "dev")
    record = await orchestrator.wait_for(accepted.id)

    assert record.status is DeploymentStatus.FAILED
    assert record.status_history[-2] is DeploymentStatus.GENERATING_CODE
    assert record.git_commit_id == "sha9"
    assert "Git commit failed" in record.error_message
    adapters["build"].build.assert_not_awaited()


@pytest.mark.asyncio
async def test_engine_failure_fails_last_stage(orchestrator, adapters, engine) -> None:
    engine.deploy_definition.side_effect = RuntimeError("gateway unavailable")

    accepted = await orchestrator.deploy_workflow("wf-review", "dev")
    record = await orchestrator.wait_for(accepted.id)

    assert record.status is DeploymentStatus.FAILED
    assert record.status_history[-2] is DeploymentStatus.DEPLOYING_PROCESS_DEFINITION
    assert record.error_message == "gateway unavailable"
    assert record.release_name == "document-review"


@pytest.mark.asyncio
async def test_run_tests_when_enabled(app_config, workflows, deployments, engine, adapters) -> None:
    config = dataclasses.replace(app_config, build=BuildConfig(run_tests=True))
    orchestrator = _orchestrator(config, workflows, deployments, engine, adapters)
    adapters["build"].run_tests.return_value = AdapterResult.failed("1 failed")

    accepted = await orchestrator.deploy_workflow("wf-review", "dev")
    record = await orchestrator.wait_for(accepted.id)

    assert record.status is DeploymentStatus.FAILED
    assert record.error_message.startswith("Tests failed")
    assert record.build_logs["test"] == "1 failed"


@pytest.mark.asyncio
async def test_deploy_unknown_workflow_creates_no_record(orchestrator, deployments) -> None:
    with pytest.raises(WorkflowNotFoundError):
        await orchestrator.deploy_workflow("missing", "dev")
    assert deployments.saved_statuses == []


@pytest.mark.asyncio
async def test_deploy_invalid_workflow_creates_no_record(orchestrator, deployments) -> None:
    with pytest.raises(WorkflowValidationError) as exc_info:
        await orchestrator.deploy_workflow("wf-broken", "dev")
    assert "No start event found" in exc_info.value.result.errors
    assert deployments.saved_statuses == []


@pytest.mark.asyncio
async def test_each_attempt_gets_its_own_work_dir(orchestrator, workflows) -> None:
    first = await orchestrator.deploy_workflow("wf-review", "dev")
    second = await orchestrator.deploy_workflow("wf-review", "dev")
    await orchestrator.close()

    workflow = await workflows.get("wf-review")
    dir_a = orchestrator.work_dir(workflow, first)
    dir_b = orchestrator.work_dir(workflow, second)
    assert dir_a != dir_b
    assert dir_a.parent == dir_b.parent


@pytest.mark.asyncio
async def test_work_dir_removed_after_run(orchestrator, workflows, adapters) -> None:
    adapters["docker"].build_and_push.return_value = AdapterResult.failed("denied")
    workflow = await workflows.get("wf-review")

    failed = await orchestrator.wait_for((await orchestrator.deploy_workflow("wf-review", "dev")).id)
    adapters["docker"].build_and_push.return_value = AdapterResult(True, "pushed")
    succeeded = await orchestrator.wait_for((await orchestrator.deploy_workflow("wf-review", "dev")).id)

    assert failed.status is DeploymentStatus.FAILED
    assert succeeded.status is DeploymentStatus.SUCCESS
    assert not orchestrator.work_dir(workflow, failed).exists()
    assert not orchestrator.work_dir(workflow, succeeded).exists()
    assert "documentreview/request.py" in succeeded.generated_files


@pytest.mark.asyncio
async def test_process_id_cannot_escape_work_dir(app_config, review_bpmn, deployments, engine, adapters, tmp_path) -> None:
    escaping = WorkflowDefinition(
        id="wf-escape",
        name="Escape",
        version="1.0.0",
        bpmn_xml=review_bpmn.replace('id="document-review"', 'id="../../../../escaped"'),
    )
    config = dataclasses.replace(app_config, keep_work_dirs=True)
    orchestrator = _orchestrator(config, InMemoryWorkflowRepository([escaping]), deployments, engine, adapters)

    record = await orchestrator.wait_for((await orchestrator.deploy_workflow("wf-escape", "dev")).id)

    work_dir = orchestrator.work_dir(escaping, record)
    assert record.status is DeploymentStatus.SUCCESS
    assert (work_dir / "bpmn" / "escaped.bpmn").is_file()
    assert [p for p in tmp_path.rglob("*.bpmn") if not p.is_relative_to(work_dir)] == []


@pytest.mark.asyncio
async def test_generated_path_outside_work_dir_fails_stage(orchestrator, adapters, app_config, monkeypatch) -> None:
    monkeypatch.setattr(
        "deployer.orchestrator.generate",
        lambda workflow, model, zeebe_address: GeneratedCode("p", "p", {"../../outside.txt": "x"}),
    )

    record = await orchestrator.wait_for((await orchestrator.deploy_workflow("wf-review", "dev")).id)

    assert record.status is DeploymentStatus.FAILED
    assert record.status_history[-2] is DeploymentStatus.GENERATING_CODE
    assert "escapes the work dir" in record.error_message
    assert list(Path(app_config.work_dir).parent.rglob("outside.txt")) == []
    adapters["git"].commit_and_push.assert_not_awaited()


# ── Concurrent runs of one workflow ───────────────────────


class GatedBuild:
    """Build double that parks each run until the test releases it."""

    def __init__(self) -> None:
        self.entered: dict[str, asyncio.Event] = {}
        self.results: dict[str, asyncio.Future] = {}

    def expect(self, deployment_id: str) -> None:
        self.entered[deployment_id] = asyncio.Event()
        self.results[deployment_id] = asyncio.get_running_loop().create_future()

    async def __call__(self, work_dir: Path) -> AdapterResult:
        name = Path(work_dir).name
        self.entered[name].set()
        return await self.results[name]


async def _start_gated(orchestrator, gate: GatedBuild) -> DeploymentRecord:
    accepted = await orchestrator.deploy_workflow("wf-review", "dev")
    gate.expect(accepted.id)
    await gate.entered[accepted.id].wait()
    return accepted


@pytest.mark.asyncio
async def test_failed_run_keeps_status_set_by_successful_concurrent_run(orchestrator, workflows, adapters) -> None:
    gate = GatedBuild()
    adapters["build"].build.side_effect = gate.__call__
    first = await _start_gated(orchestrator, gate)
    second = await _start_gated(orchestrator, gate)
    assert (await workflows.get("wf-review")).status is WorkflowStatus.DEPLOYING

    gate.results[first.id].set_result(AdapterResult(True, "built", "svc.whl"))
    assert (await orchestrator.wait_for(first.id)).status is DeploymentStatus.SUCCESS
    assert (await workflows.get("wf-review")).status is WorkflowStatus.DEPLOYED

    gate.results[second.id].set_result(AdapterResult.failed("boom"))
    assert (await orchestrator.wait_for(second.id)).status is DeploymentStatus.FAILED
    assert (await workflows.get("wf-review")).status is WorkflowStatus.DEPLOYED


@pytest.mark.asyncio
async def test_last_failed_run_restores_status_from_before_all_runs(orchestrator, workflows, adapters) -> None:
    gate = GatedBuild()
    adapters["build"].build.side_effect = gate.__call__
    first = await _start_gated(orchestrator, gate)
    second = await _start_gated(orchestrator, gate)

    gate.results[first.id].set_result(AdapterResult.failed("boom"))
    await orchestrator.wait_for(first.id)
    assert (await workflows.get("wf-review")).status is WorkflowStatus.DEPLOYING

    gate.results[second.id].set_result(AdapterResult.failed("boom"))
    await orchestrator.wait_for(second.id)
    assert (await workflows.get("wf-review")).status is WorkflowStatus.DRAFT


@pytest.mark.asyncio
async def test_list_deployments(orchestrator) -> None:
    accepted = await orchestrator.deploy_workflow("wf-review", "dev")
    await orchestrator.wait_for(accepted.id)
    records = await orchestrator.list_deployments("wf-review")
    assert [r.id for r in records] == [accepted.id]


def test_stage_error_keeps_output_tail() -> None:
    error = StageError(DeploymentStatus.BUILDING, "Build failed", "x" * 5000)
    message = str(error)
    assert message.startswith("Build failed\n")
    assert len(message) == len("Build failed\n") + 2000


# ── Rollback ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_rollback_success(orchestrator, adapters) -> None:
    accepted = await orchestrator.deploy_workflow("wf-review", "dev")
    await orchestrator.wait_for(accepted.id)

    record = await orchestrator.rollback_deployment(accepted.id)

    assert record.status is DeploymentStatus.ROLLED_BACK
    assert record.rolled_back_at is not None
    adapters["cluster"].rollback.assert_awaited_once_with("guce-dev-egov", "document-review")
    assert (await orchestrator.get_deployment(accepted.id)).status is DeploymentStatus.ROLLED_BACK


@pytest.mark.asyncio
async def test_rollback_twice_is_rejected(orchestrator) -> None:
    accepted = await orchestrator.deploy_workflow("wf-review", "dev")
    await orchestrator.wait_for(accepted.id)
    await orchestrator.rollback_deployment(accepted.id)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.rollback_deployment(accepted.id)


@pytest.mark.asyncio
async def test_rollback_in_progress_record_is_rejected(orchestrator, deployments, adapters) -> None:
    record = DeploymentRecord(workflow_id="wf-review", target_environment="dev")
    await deployments.save(record)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.rollback_deployment(record.id)
    adapters["cluster"].rollback.assert_not_awaited()


@pytest.mark.asyncio
async def test_rollback_failure_leaves_status(orchestrator, adapters) -> None:
    adapters["cluster"].rollback.return_value = AdapterResult.failed(
        "Rollback unsupported: workload was applied without Helm"
    )
    accepted = await orchestrator.deploy_workflow("wf-review", "dev")
    await orchestrator.wait_for(accepted.id)

    with pytest.raises(RollbackError, match="Rollback unsupported"):
        await orchestrator.rollback_deployment(accepted.id)

    stored = await orchestrator.get_deployment(accepted.id)
    assert stored.status is DeploymentStatus.SUCCESS
    assert "Rollback unsupported" in stored.build_logs["rollback"]


@pytest.mark.asyncio
async def test_rollback_without_release_only_marks_record(orchestrator, adapters) -> None:
    adapters["build"].build.return_value = AdapterResult.failed("broken")
    accepted = await orchestrator.deploy_workflow("wf-review", "dev")
    await orchestrator.wait_for(accepted.id)

    record = await orchestrator.rollback_deployment(accepted.id)

    assert record.status is DeploymentStatus.ROLLED_BACK
    adapters["cluster"].rollback.assert_not_awaited()


# ── Wiring ────────────────────────────────────────────────


def test_from_config_shares_one_runner(app_config, workflows, deployments, engine) -> None:
    orchestrator = DeploymentOrchestrator.from_config(app_config, workflows, deployments, engine)
    assert orchestrator._git._runner is orchestrator._build._runner
    assert orchestrator._docker._runner is orchestrator._cluster._runner

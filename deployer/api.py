"""HTTP surface for the deployment pipeline.

Endpoints:
    GET  /health                                   Liveness probe
    POST /api/v1/validate-bpmn                     Validate raw BPMN XML
    POST /api/v1/workflows/{id}/validate           Validate a stored workflow
    POST /api/v1/workflows/{id}/generate           Generate code, mark the workflow GENERATED
    POST /api/v1/workflows/{id}/preview-code       Generated files, nothing persisted
    POST /api/v1/workflows/{id}/deploy             Start a deployment (202 + PENDING record)
    GET  /api/v1/workflows/{id}/deployments        Deployment history
    GET  /api/v1/deployments/{id}                  Deployment status projection
    POST /api/v1/deployments/{id}/rollback         Roll the cluster release back

All /api routes require ``Authorization: Bearer <API_TOKEN>`` when a token
is configured.
"""

from __future__ import annotations

import hmac
import logging

from aiohttp import web

from .bpmn import validate
from .config import AppConfig
from .domain import InvalidTransitionError
from .orchestrator import (
    DeploymentNotFoundError,
    DeploymentOrchestrator,
    RollbackError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)

logger = logging.getLogger(__name__)


def _error(status: int, message: str, **extra) -> web.Response:
    return web.json_response({'error': message, **extra}, status=status)


class DeployerServer:
    """aiohttp server exposing the trigger, status and rollback contracts."""

    def __init__(self, config: AppConfig, orchestrator: DeploymentOrchestrator) -> None:
        self._config = config
        self._orchestrator = orchestrator
        self._app = web.Application(middlewares=[self._auth_middleware])
        self._app.router.add_get('/health', self._handle_health)
        self._app.router.add_post('/api/v1/validate-bpmn', self._handle_validate_bpmn)
        self._app.router.add_post('/api/v1/workflows/{workflow_id}/validate', self._handle_validate)
        self._app.router.add_post('/api/v1/workflows/{workflow_id}/generate', self._handle_generate)
        self._app.router.add_post('/api/v1/workflows/{workflow_id}/preview-code', self._handle_preview)
        self._app.router.add_post('/api/v1/workflows/{workflow_id}/deploy', self._handle_deploy)
        self._app.router.add_get('/api/v1/workflows/{workflow_id}/deployments', self._handle_history)
        self._app.router.add_get('/api/v1/deployments/{deployment_id}', self._handle_deployment)
        self._app.router.add_post('/api/v1/deployments/{deployment_id}/rollback', self._handle_rollback)
        self._runner: web.AppRunner | None = None

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.api.host, self._config.api.port)
        await site.start()
        logger.info('Deployer API listening on %s:%d', self._config.api.host, self._config.api.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info('Deployer API stopped')

    # ── Auth ──────────────────────────────────────────────

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        expected = self._config.api.token
        if expected and request.path.startswith('/api/'):
            token = request.headers.get('Authorization', '').removeprefix('Bearer ').strip()
            if not hmac.compare_digest(token, expected):
                logger.warning('Rejected %s %s: invalid token', request.method, request.path)
                return _error(401, 'Invalid token')
        return await handler(request)

    # ── Handlers ──────────────────────────────────────────

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({'status': 'ok'})

    async def _handle_validate_bpmn(self, request: web.Request) -> web.Response:
        xml = await request.text()
        if not xml.strip():
            return _error(400, 'Empty BPMN document')
        return web.json_response(validate(xml).to_dict())

    async def _handle_validate(self, request: web.Request) -> web.Response:
        workflow_id = request.match_info['workflow_id']
        try:
            result = await self._orchestrator.validate_workflow(workflow_id)
        except WorkflowNotFoundError as exc:
            return _error(404, str(exc))
        return web.json_response(result.to_dict())

    async def _handle_generate(self, request: web.Request) -> web.Response:
        workflow_id = request.match_info['workflow_id']
        try:
            code = await self._orchestrator.generate_code(workflow_id)
        except WorkflowNotFoundError as exc:
            return _error(404, str(exc))
        except WorkflowValidationError as exc:
            return _error(400, str(exc), errors=exc.result.errors, warnings=exc.result.warnings)
        return web.json_response({
            'processId': code.process_id,
            'packageName': code.package_name,
            'files': code.files,
        })

    async def _handle_preview(self, request: web.Request) -> web.Response:
        workflow_id = request.match_info['workflow_id']
        try:
            files = await self._orchestrator.preview_code(workflow_id)
        except WorkflowNotFoundError as exc:
            return _error(404, str(exc))
        except WorkflowValidationError as exc:
            return _error(400, str(exc), errors=exc.result.errors, warnings=exc.result.warnings)
        return web.json_response({'files': files})

    async def _handle_deploy(self, request: web.Request) -> web.Response:
        workflow_id = request.match_info['workflow_id']
        try:
            payload = await request.json()
        except ValueError:
            return _error(400, 'Invalid JSON')
        if not isinstance(payload, dict):
            return _error(400, 'Expected a JSON object')

        environment = str(payload.get('targetEnvironmentCode') or '').strip()
        if not environment:
            return _error(400, 'Missing targetEnvironmentCode')
        initiated_by = payload.get('initiatingUserId')

        try:
            record = await self._orchestrator.deploy_workflow(workflow_id, environment, initiated_by)
        except WorkflowNotFoundError as exc:
            return _error(404, str(exc))
        except WorkflowValidationError as exc:
            return _error(400, str(exc), errors=exc.result.errors, warnings=exc.result.warnings)

        logger.info('Deployment %s of workflow %s accepted', record.id, workflow_id)
        return web.json_response(record.to_dict(), status=202)

    async def _handle_history(self, request: web.Request) -> web.Response:
        workflow_id = request.match_info['workflow_id']
        try:
            records = await self._orchestrator.list_deployments(workflow_id)
        except WorkflowNotFoundError as exc:
            return _error(404, str(exc))
        return web.json_response([r.to_dict() for r in records])

    async def _handle_deployment(self, request: web.Request) -> web.Response:
        try:
            record = await self._orchestrator.get_deployment(request.match_info['deployment_id'])
        except DeploymentNotFoundError as exc:
            return _error(404, str(exc))
        return web.json_response(record.to_dict())

    async def _handle_rollback(self, request: web.Request) -> web.Response:
        deployment_id = request.match_info['deployment_id']
        try:
            record = await self._orchestrator.rollback_deployment(deployment_id)
        except DeploymentNotFoundError as exc:
            return _error(404, str(exc))
        except InvalidTransitionError as exc:
            return _error(409, str(exc))
        except RollbackError as exc:
            logger.error('Rollback of %s failed: %s', deployment_id, exc)
            return _error(502, str(exc))
        return web.json_response(record.to_dict())

"""Source templates for the generated workflow service.

One function per generated file kind. Each takes already-derived names
and returns file content; nothing here inspects the BPMN model directly.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Sequence

from ..bpmn.model import ImplementationKind, ServiceTask, UserTask

SERVICE_PORT = 8080
HANDLER_TIMEOUT_MS = 300_000

LOG_FORMAT = '%(asctime)s %(levelname)-8s [%(name)s] %(message)s'


@dataclass(frozen=True)
class RequestField:
    """One field of the generated start-request dataclass."""

    name: str
    variable: str
    annotation: str
    required: bool = False
    declared_type: Optional[str] = None
    default: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class HandlerSpec:
    """Names derived for one task handler module."""

    module: str
    class_name: str
    function: str
    task: object  # UserTask | ServiceTask

    @property
    def is_user_task(self) -> bool:
        return isinstance(self.task, UserTask)


@dataclass(frozen=True)
class ServiceNames:
    """Names shared by every template of one bundle."""

    process_id: str
    display_name: str
    package: str
    prefix: str
    route: str
    distribution: str
    version: str


def doc(text: Optional[str]) -> str:
    """Make arbitrary text safe to embed in a one-line docstring."""
    value = re.sub(r'\s+', ' ', text or '').strip()
    return value.replace('\\', '\\\\').replace('"""', "'''")


def _comment(text: Optional[str]) -> str:
    return re.sub(r'\s+', ' ', text or '').strip()


# ── Package skeleton ──────────────────────────────────────


def package_init(names: ServiceNames) -> str:
    return f'''"""{doc(names.display_name)} workflow service."""

PROCESS_ID = {names.process_id!r}
PROCESS_NAME = {names.display_name!r}
VERSION = {names.version!r}
'''


def request_module(names: ServiceNames, fields: Sequence[RequestField]) -> str:
    lines = []
    for f in fields:
        metadata = [f"'variable': {f.variable!r}"]
        if f.declared_type:
            metadata.append(f"'type': {f.declared_type!r}")
        if f.required:
            metadata.append("'required': True")
        if f.default is not None:
            metadata.append(f"'default': {f.default!r}")
        if f.description:
            metadata.append(f"'description': {_comment(f.description)!r}")
        annotation = f.annotation if f.annotation == 'Any' else f'Optional[{f.annotation}]'
        lines.append(
            f'    {f.name}: {annotation} = field(default=None, metadata={{{", ".join(metadata)}}})'
        )
    body = '\n'.join(lines)

    return f'''"""Start request contract for {doc(names.display_name)}."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field, fields
from typing import Any, Optional


@dataclass
class {names.prefix}Request:
    """Variables submitted when a {doc(names.display_name)} instance is started."""

{body}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> {names.prefix}Request:
        """Build a request from a JSON body keyed by process variable names.

        Raises:
            ValueError: A required variable is missing.
        """
        values = {{}}
        for f in fields(cls):
            variable = f.metadata.get('variable', f.name)
            if variable in data:
                values[f.name] = data[variable]
            elif f.name in data:
                values[f.name] = data[f.name]
            else:
                values[f.name] = f.metadata.get('default')
        request = cls(**values)
        missing = request.missing_fields()
        if missing:
            raise ValueError(f"Missing required fields: {{', '.join(missing)}}")
        return request

    def missing_fields(self) -> list[str]:
        return [
            f.metadata.get('variable', f.name)
            for f in fields(self)
            if f.metadata.get('required') and getattr(self, f.name) is None
        ]

    def to_variables(self) -> dict[str, Any]:
        """Process variables for the engine; unset fields are omitted."""
        variables = {{}}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, (datetime.date, datetime.datetime)):
                value = value.isoformat()
            variables[f.metadata.get('variable', f.name)] = value
        return variables
'''


def response_module(names: ServiceNames) -> str:
    return f'''"""Response contract shared by every {doc(names.display_name)} endpoint."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class ProcessInstanceResponse:
    process_instance_key: int
    process_id: str
    status: str
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {{
            'processInstanceKey': self.process_instance_key,
            'processId': self.process_id,
            'status': self.status,
        }}
        if self.message:
            data['message'] = self.message
        return data
'''


def service_module(names: ServiceNames) -> str:
    p = names.prefix
    return f'''"""Process instance operations for {doc(names.display_name)}."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pyzeebe import ZeebeClient

from . import PROCESS_ID
from .request import {p}Request
from .response import ProcessInstanceResponse

logger = logging.getLogger(__name__)


class {p}Service:
    """Client-side operations on {doc(names.display_name)} process instances."""

    def __init__(self, client: ZeebeClient) -> None:
        self._client = client
        self._instances: dict[int, str] = {{}}

    async def start(self, request: {p}Request) -> ProcessInstanceResponse:
        """Submit a new instance with the request mapped to process variables."""
        result = await self._client.run_process(
            bpmn_process_id=PROCESS_ID,
            variables=request.to_variables(),
        )
        key = result.process_instance_key
        self._instances[key] = 'ACTIVE'
        logger.info('Started %s instance %s for %s', PROCESS_ID, key, request.initiator_id)
        return ProcessInstanceResponse(process_instance_key=key, process_id=PROCESS_ID, status='ACTIVE')

    async def get_status(self, key: int) -> ProcessInstanceResponse:
        """Status as last observed by this service; the engine owns the real state."""
        return ProcessInstanceResponse(
            process_instance_key=key,
            process_id=PROCESS_ID,
            status=self._instances.get(key, 'UNKNOWN'),
        )

    async def cancel(self, key: int) -> ProcessInstanceResponse:
        await self._client.cancel_process_instance(key)
        self._instances[key] = 'CANCELED'
        logger.info('Cancelled %s instance %s', PROCESS_ID, key)
        return ProcessInstanceResponse(process_instance_key=key, process_id=PROCESS_ID, status='CANCELED')

    async def publish_message(
        self,
        name: str,
        correlation_key: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> None:
        """Correlate a message to a waiting instance."""
        await self._client.publish_message(
            name=name,
            correlation_key=correlation_key,
            variables=variables or {{}},
        )
        logger.info('Published message %s (correlation key %s)', name, correlation_key)
'''


def api_module(names: ServiceNames) -> str:
    p = names.prefix
    return f'''"""HTTP entry points for {doc(names.display_name)}.

Endpoints:
    POST   /api/{names.route}/instances                 start an instance
    GET    /api/{names.route}/instances/{{key}}           instance status
    DELETE /api/{names.route}/instances/{{key}}           cancel an instance
    POST   /api/{names.route}/messages/{{name}}           correlate a message
    GET    /health                                      liveness probe
"""

from __future__ import annotations

import logging

from aiohttp import web

from .request import {p}Request
from .service import {p}Service

logger = logging.getLogger(__name__)

BASE_PATH = '/api/{names.route}'


def _instance_key(request: web.Request) -> int:
    try:
        return int(request.match_info['key'])
    except ValueError:
        raise web.HTTPBadRequest(text='Instance key must be an integer')


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(text='Invalid JSON')
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text='Expected a JSON object')
    return body


def create_app(service: {p}Service) -> web.Application:
    """Build the aiohttp application around a service instance."""

    async def health(request: web.Request) -> web.Response:
        return web.json_response({{"status": "ok"}})

    async def start(request: web.Request) -> web.Response:
        body = await _json_body(request)
        try:
            payload = {p}Request.from_dict(body)
        except (TypeError, ValueError) as exc:
            return web.json_response({{"error": str(exc)}}, status=400)
        response = await service.start(payload)
        return web.json_response(response.to_dict(), status=201)

    async def status(request: web.Request) -> web.Response:
        response = await service.get_status(_instance_key(request))
        return web.json_response(response.to_dict())

    async def cancel(request: web.Request) -> web.Response:
        key = _instance_key(request)
        try:
            response = await service.cancel(key)
        except Exception as exc:
            logger.error("Cancel of instance %s failed: %s", key, exc)
            return web.Response(status=502, text=f"Cancel failed: {{exc}}")
        return web.json_response(response.to_dict())

    async def publish(request: web.Request) -> web.Response:
        body = await _json_body(request)
        correlation_key = body.get("correlationKey")
        if not correlation_key:
            return web.Response(status=400, text="Missing correlationKey")
        name = request.match_info["name"]
        try:
            await service.publish_message(name, str(correlation_key), body.get("variables"))
        except Exception as exc:
            logger.error("Publish of %s failed: %s", name, exc)
            return web.Response(status=502, text=f"Zeebe publish failed: {{exc}}")
        return web.json_response({{"status": "published", "message": name}})

    app = web.Application()
    app.router.add_get('/health', health)
    app.router.add_post(f'{{BASE_PATH}}/instances', start)
    app.router.add_get(f'{{BASE_PATH}}/instances/{{{{key}}}}', status)
    app.router.add_delete(f'{{BASE_PATH}}/instances/{{{{key}}}}', cancel)
    app.router.add_post(f'{{BASE_PATH}}/messages/{{{{name}}}}', publish)
    return app
'''


def main_module(names: ServiceNames) -> str:
    p = names.prefix
    return f'''"""{doc(names.display_name)} service entry point.

Starts the Zeebe job worker for every task handler and the HTTP API.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path

import grpc
from aiohttp import web
from dotenv import load_dotenv
from pyzeebe import ZeebeClient, ZeebeWorker

from .api import create_app
from .handlers import register_all_handlers
from .service import {p}Service

load_dotenv(Path.cwd() / '.env.service')

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO'),
    format="{LOG_FORMAT}",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def main() -> None:
    address = os.getenv('ZEEBE_ADDRESS', 'zeebe-gateway:26500')
    port = int(os.getenv('SERVICE_PORT', '{SERVICE_PORT}'))

    channel = grpc.aio.insecure_channel(address)
    worker = ZeebeWorker(channel)
    client = ZeebeClient(channel)
    register_all_handlers(worker, client)

    runner = web.AppRunner(create_app({p}Service(client)))
    await runner.setup()
    await web.TCPSite(runner, '0.0.0.0', port).start()
    logger.info("Listening on port %d, Zeebe at %s", port, address)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    worker_task = asyncio.create_task(worker.work())
    await stop_event.wait()

    logger.info("Shutdown signal received")
    await worker.stop()
    await worker_task
    await runner.cleanup()
    await channel.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
'''


# ── Task handlers ─────────────────────────────────────────


def handlers_init(names: ServiceNames, handlers: Sequence[HandlerSpec]) -> str:
    imports = '\n'.join(f'from .{h.module} import {h.class_name}' for h in handlers)
    if handlers:
        registry = 'HANDLERS = (\n' + ''.join(f'    {h.class_name},\n' for h in handlers) + ')'
        listing = '\n'.join(
            f"        {h.task.id} ({'user' if h.is_user_task else 'service'} task)"
            for h in handlers
        )
    else:
        registry = 'HANDLERS: tuple = ()'
        listing = '        (none)'
    imports_block = f'{imports}\n\n' if imports else ''

    return f'''"""Handler registration for {doc(names.display_name)} tasks."""

from __future__ import annotations

from pyzeebe import ZeebeClient, ZeebeWorker

{imports_block}{registry}


def register_all_handlers(worker: ZeebeWorker, client: ZeebeClient) -> None:
    """Register every task handler with the Zeebe worker.

    Tasks:
{listing}
    """
    for handler_cls in HANDLERS:
        handler_cls(client).register(worker)
'''


def _handler_constants(task, default_type: str) -> list[str]:
    return [
        f'TASK_ID = {task.id!r}',
        f'TASK_TYPE = {(task.task_type or default_type)!r}',
    ]


def user_task_handler(spec: HandlerSpec) -> str:
    task: UserTask = spec.task
    constants = _handler_constants(task, task.id) + [
        f'ASSIGNEE = {task.assignee!r}',
        f'CANDIDATE_GROUPS = {task.candidate_groups!r}',
        f'CANDIDATE_USERS = {task.candidate_users!r}',
        f'FORM_KEY = {task.form_key!r}',
        f'PRIORITY = {task.priority!r}',
        f'DUE_DATE = {task.due_date!r}',
    ]
    title = doc(task.name or task.id)

    return f'''"""User task: {title}."""

from __future__ import annotations

from typing import Optional

from pyzeebe import ZeebeClient, ZeebeWorker

{chr(10).join(constants)}


class {spec.class_name}:
    """{title}.

    Completed by a person through the form submission API of the task
    inbox, not by a job worker, so nothing is registered on the worker.
    """

    def __init__(self, client: Optional[ZeebeClient] = None) -> None:
        self._client = client

    def register(self, worker: ZeebeWorker) -> None:
        return None
'''


_SERVICE_BODIES = {
    ImplementationKind.JOB_WORKER: '''    async def handle(self, **variables: Any) -> dict:
        # TODO: implement the task logic; the returned dict is merged into process variables.
        logger.info("%s executed with variables %s", TASK_ID, sorted(variables))
        return {}
''',
    ImplementationKind.REST_CALL: '''    async def handle(
        self,
        url: str = "",
        method: str = "POST",
        body: Any = None,
        **variables: Any,
    ) -> dict:
        # TODO: replace the url/method/body variables with the real endpoint contract.
        if not url:
            raise ValueError(f"{TASK_ID}: variable 'url' is required")
        async with aiohttp.ClientSession() as session:
            async with session.request(method, url, json=body) as resp:
                resp.raise_for_status()
                payload = await resp.json(content_type=None)
        logger.info("%s: %s %s -> %d", TASK_ID, method, url, resp.status)
        return {"status_code": resp.status, "response": payload}
''',
    ImplementationKind.MESSAGE_PUBLISH: '''    async def handle(
        self,
        message_name: str = "",
        correlation_key: str = "",
        **variables: Any,
    ) -> dict:
        # TODO: choose the variables forwarded with the message.
        if not message_name or not correlation_key:
            raise ValueError(f"{TASK_ID}: 'message_name' and 'correlation_key' are required")
        await self._client.publish_message(
            name=message_name,
            correlation_key=correlation_key,
            variables=variables,
        )
        logger.info("%s: published %s (%s)", TASK_ID, message_name, correlation_key)
        return {"message_published": True}
''',
    ImplementationKind.SCRIPT: '''    async def handle(self, **variables: Any) -> dict:
        # TODO: port the script body; the returned dict is merged into process variables.
        logger.info("%s script step executed", TASK_ID)
        return {}
''',
}


def service_task_handler(spec: HandlerSpec) -> str:
    task: ServiceTask = spec.task
    constants = _handler_constants(task, task.id) + [
        f'IMPLEMENTATION = {task.implementation.value!r}',
        f'RETRIES = {task.retries}',
        f'TIMEOUT_MS = {HANDLER_TIMEOUT_MS:_}',
    ]
    extra_import = 'import aiohttp\n' if task.implementation == ImplementationKind.REST_CALL else ''
    title = doc(task.name or task.id)

    return f'''"""Service task: {title}."""

from __future__ import annotations

import logging
from typing import Any, Optional

{extra_import}from pyzeebe import Job, ZeebeClient, ZeebeWorker
from pyzeebe.job.job import JobController

logger = logging.getLogger(__name__)

{chr(10).join(constants)}


async def _on_error(exc: Exception, job: Job, job_controller: JobController) -> None:
    """Fail the job while retries remain, then raise a BPMN error."""
    attempt = RETRIES - job.retries + 1
    if job.retries <= 1:
        logger.error(
            "%s job %s failed on attempt %d/%d, throwing BPMN error: %s",
            TASK_ID, job.key, attempt, RETRIES, exc,
        )
        await job_controller.set_error_status(
            message=str(exc)[:500],
            error_code=type(exc).__name__,
        )
    else:
        logger.warning(
            "%s job %s failed on attempt %d/%d: %s",
            TASK_ID, job.key, attempt, RETRIES, exc,
        )
        await job_controller.set_failure_status(message=f"Failed job. Error: {{exc}}")


class {spec.class_name}:
    """{title} ({task.implementation.value.replace('_', ' ')})."""

    def __init__(self, client: Optional[ZeebeClient] = None) -> None:
        self._client = client

    def register(self, worker: ZeebeWorker) -> None:
        @worker.task(task_type=TASK_TYPE, timeout_ms=TIMEOUT_MS, exception_handler=_on_error)
        async def {spec.function}(**variables: Any) -> dict:
            return await self.handle(**variables)

{_SERVICE_BODIES[task.implementation]}'''


# ── Build and runtime files ───────────────────────────────


def pyproject(names: ServiceNames) -> str:
    return f'''[build-system]
requires = ["setuptools>=68", "wheel"]
build-backend = "setuptools.build_meta"

[project]
name = "{names.distribution}"
version = "{names.version}"
description = "{doc(names.display_name).replace('"', "'")} workflow service"
requires-python = ">=3.10"
dependencies = [
    "pyzeebe>=4.0",
    "grpcio>=1.60",
    "aiohttp>=3.9",
    "python-dotenv>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=8.0",
    "pytest-asyncio>=0.23",
]

[project.scripts]
workflow-service = "{names.package}.main:run"

[tool.setuptools.packages.find]
include = ["{names.package}*"]
'''


def env_file(names: ServiceNames, zeebe_address: str) -> str:
    return f'''# Runtime configuration for {_comment(names.display_name)}
PROCESS_ID={names.process_id}
SERVICE_NAME={names.distribution}
SERVICE_VERSION={names.version}
SERVICE_PORT={SERVICE_PORT}
ZEEBE_ADDRESS={zeebe_address}
LOG_LEVEL=INFO
'''

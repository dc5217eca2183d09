"""Container adapter: writes build files, builds the image and pushes it."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from ..config import RegistryConfig
from ..naming import dns_safe
from ..process import ProcessRunner
from . import AdapterResult, join_output

logger = logging.getLogger(__name__)

DOCKERFILE = '''\
FROM python:3.12-slim AS build
WORKDIR /src
COPY . .
RUN pip install --no-cache-dir build && python -m build --wheel --outdir /dist

FROM python:3.12-slim
RUN useradd --create-home --uid 1000 guce
WORKDIR /app
COPY --from=build /dist/*.whl /tmp/
RUN pip install --no-cache-dir /tmp/*.whl && rm -f /tmp/*.whl
COPY .env.service ./
COPY bpmn/ ./bpmn/
USER guce
EXPOSE 8080
HEALTHCHECK --interval=30s --timeout=5s --start-period=30s \\
  CMD python -c "import urllib.request; urllib.request.urlopen('http://localhost:8080/health')"
CMD ["workflow-service"]
'''

DOCKERIGNORE = '''\
.git
dist
build
*.egg-info
__pycache__
.pytest_cache
'''


def _tag(version: str) -> str:
    tag = re.sub(r'[^A-Za-z0-9_.-]', '-', version or '').lstrip('.-')
    return tag[:128] or 'latest'


class DockerAdapter:
    def __init__(self, config: RegistryConfig, runner: ProcessRunner) -> None:
        self._config = config
        self._runner = runner
        runner.add_secret(config.password)

    def image_reference(self, environment: str, name: str, version: str) -> str:
        """``{registry}/{project}/{environment}-{name}:{version}``."""
        repository = f'{dns_safe(environment)}-{dns_safe(name)}'
        return f'{self._config.url}/{self._config.project}/{repository}:{_tag(version)}'

    def ensure_build_files(self, path: Path) -> list[str]:
        """Write Dockerfile and .dockerignore unless the service ships its own."""
        created = []
        for filename, content in (('Dockerfile', DOCKERFILE), ('.dockerignore', DOCKERIGNORE)):
            target = path / filename
            if not target.exists():
                target.write_text(content, encoding='utf-8')
                created.append(filename)
        return created

    async def build_and_push(self, path: Path, image: str) -> AdapterResult:
        """Build ``image`` from ``path``, log in when credentials exist, then push."""
        created = self.ensure_build_files(path)
        if created:
            logger.info('Generated %s in %s', ', '.join(created), path)

        timeout = self._config.timeout
        logs: list[str] = []

        result = await self._runner.run(['docker', 'build', '-t', image, '.'], cwd=path, timeout=timeout)
        logs.append(result.stdout)
        if not result.success:
            reason = f'timed out after {timeout} seconds' if result.timed_out else f'exit code {result.exit_code}'
            return AdapterResult.failed(join_output(*logs, f'Docker build failed: {reason}'))
        logger.info('Built image %s', image)

        if self._config.has_credentials:
            result = await self._runner.run(
                ['docker', 'login', self._config.url, '-u', self._config.username, '--password-stdin'],
                cwd=path,
                timeout=timeout,
                input=self._config.password,
            )
            logs.append(result.stdout)
            if not result.success:
                return AdapterResult.failed(join_output(*logs, f'Docker login to {self._config.url} failed'))

        result = await self._runner.run(['docker', 'push', image], cwd=path, timeout=timeout)
        logs.append(result.stdout)
        if not result.success:
            reason = f'timed out after {timeout} seconds' if result.timed_out else f'exit code {result.exit_code}'
            return AdapterResult.failed(join_output(*logs, f'Docker push failed: {reason}'))

        logger.info('Pushed image %s', image)
        return AdapterResult(success=True, output=join_output(*logs), artifact_ref=image)

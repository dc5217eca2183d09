"""Build adapter: packages a generated service and optionally runs its tests."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..config import BuildConfig
from ..process import ProcessRunner
from . import AdapterResult, join_output

logger = logging.getLogger(__name__)


class BuildAdapter:
    def __init__(self, config: BuildConfig, runner: ProcessRunner) -> None:
        self._config = config
        self._runner = runner

    async def build(self, path: Path) -> AdapterResult:
        """Run the package command; the newest matching file in the output dir is the artifact."""
        logger.info('Building %s', path)
        result = await self._runner.run(self._config.command, cwd=path, timeout=self._config.timeout)
        if result.timed_out:
            return AdapterResult.failed(
                join_output(result.stdout, f'Build timed out after {self._config.timeout} seconds')
            )
        if not result.success:
            return AdapterResult.failed(
                join_output(result.stdout, f'Build failed with exit code {result.exit_code}')
            )

        artifact = self.find_artifact(path)
        if artifact is None:
            return AdapterResult.failed(join_output(
                result.stdout,
                f'No artifact matching {self._config.artifact_pattern} in {self._config.output_dir}',
            ))
        logger.info('Build of %s produced %s', path, artifact.name)
        return AdapterResult(success=True, output=result.stdout, artifact_ref=str(artifact))

    async def run_tests(self, path: Path) -> AdapterResult:
        logger.info('Running tests in %s', path)
        result = await self._runner.run(self._config.test_command, cwd=path, timeout=self._config.timeout)
        if result.timed_out:
            return AdapterResult.failed(
                join_output(result.stdout, f'Tests timed out after {self._config.timeout} seconds')
            )
        if not result.success:
            return AdapterResult.failed(
                join_output(result.stdout, f'Tests failed with exit code {result.exit_code}')
            )
        return AdapterResult(success=True, output=result.stdout)

    def find_artifact(self, path: Path) -> Optional[Path]:
        output_dir = path / self._config.output_dir
        if not output_dir.is_dir():
            return None
        candidates = [p for p in output_dir.glob(self._config.artifact_pattern) if p.is_file()]
        if not candidates:
            return None
        return max(candidates, key=lambda p: (p.stat().st_mtime, p.name))

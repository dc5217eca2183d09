"""Version-control adapter: commits generated services and pushes them."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlsplit, urlunsplit

from ..config import GitConfig
from ..process import CommandResult, ProcessRunner
from . import AdapterResult, join_output

logger = logging.getLogger(__name__)


class GitAdapter:
    """Commit a working directory and, when a remote is configured, push it.

    Each push target branch keeps a linear history: before committing, the
    remote tip of the branch is fetched and the new commit is parented on it.
    """

    def __init__(self, config: GitConfig, runner: ProcessRunner) -> None:
        self._config = config
        self._runner = runner
        runner.add_secret(config.password)
        runner.add_secret(quote(config.password, safe=''))

    @property
    def repository_url(self) -> str:
        return self._config.remote_url

    def _remote(self) -> str:
        """Remote URL with credentials injected for HTTPS remotes."""
        url = self._config.remote_url
        if not (self._config.username and self._config.password):
            return url
        parts = urlsplit(url)
        if parts.scheme not in ('http', 'https'):
            return url
        user = quote(self._config.username, safe='')
        password = quote(self._config.password, safe='')
        host = parts.hostname or ''
        if parts.port:
            host = f'{host}:{parts.port}'
        return urlunsplit(parts._replace(netloc=f'{user}:{password}@{host}'))

    async def _git(self, path: Path, *args: str) -> CommandResult:
        return await self._runner.run(['git', *args], cwd=path, timeout=self._config.timeout)

    async def init(self, path: Path) -> CommandResult:
        """Initialise a repository unless one already exists."""
        if (path / '.git').exists():
            return CommandResult(stdout='', exit_code=0)
        return await self._git(path, 'init')

    async def commit_and_push(
        self,
        path: Path,
        message: str,
        branch: Optional[str] = None,
    ) -> AdapterResult:
        """Stage everything under ``path``, commit, then push if a remote is set.

        Returns the commit SHA as ``artifact_ref``.
        """
        target = branch or self._config.branch
        remote = self._config.remote_url
        logs: list[str] = []

        result = await self.init(path)
        logs.append(result.stdout)
        if not result.success:
            return AdapterResult.failed(join_output(*logs, 'git init failed'))

        if remote:
            result = await self._git(path, 'fetch', self._remote(), target)
            logs.append(result.stdout)
            if result.success:
                # Parent the new commit on the current remote tip.
                result = await self._git(path, 'reset', '--soft', 'FETCH_HEAD')
                if not result.success:
                    return AdapterResult.failed(join_output(*logs, result.stdout, 'git reset failed'))
            else:
                logger.info(
                    'Fetch of %s failed (exit %d), starting new history: %s',
                    target, result.exit_code, result.stdout[-300:].strip(),
                )

        steps = (
            ('add', ['add', '--all']),
            ('commit', [
                '-c', f'user.name={self._config.author_name}',
                '-c', f'user.email={self._config.author_email}',
                'commit', '--allow-empty', '-m', message,
            ]),
        )
        for label, args in steps:
            result = await self._git(path, *args)
            logs.append(result.stdout)
            if not result.success:
                return AdapterResult.failed(join_output(*logs, f'git {label} failed'))

        result = await self._git(path, 'rev-parse', 'HEAD')
        if not result.success:
            return AdapterResult.failed(join_output(*logs, result.stdout))
        sha = result.stdout.strip()
        logger.info('Created commit %s in %s', sha[:8], path)

        if remote:
            result = await self._git(path, 'push', self._remote(), f'HEAD:refs/heads/{target}')
            logs.append(result.stdout)
            if not result.success:
                return AdapterResult(
                    success=False,
                    output=join_output(*logs, f'git push to {target} failed'),
                    artifact_ref=sha,
                )
            logger.info('Pushed %s to %s (%s)', sha[:8], remote, target)

        return AdapterResult(success=True, output=join_output(*logs), artifact_ref=sha)

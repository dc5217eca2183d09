"""Async local process runner used by every build/publish adapter."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120

# Exit code reported when the executable itself cannot be started.
EXIT_NOT_FOUND = 127
# Exit code reported for a process killed on timeout.
EXIT_TIMED_OUT = -9


@dataclass
class CommandResult:
    """Result of a local command execution (stderr is merged into stdout)."""

    stdout: str
    exit_code: int
    timed_out: bool = False
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def check(self, message: str = 'Command failed') -> CommandResult:
        """Raise if command failed."""
        if self.timed_out:
            raise CommandError(f'{message}: timed out after {self.duration:.0f}s')
        if not self.success:
            raise CommandError(
                f'{message} (exit code {self.exit_code}): {self.stdout[-500:].strip()}'
            )
        return self


class CommandError(Exception):
    """Raised when a local command fails."""


def mask(text: str, secrets: Sequence[str]) -> str:
    """Replace every non-empty secret in ``text`` with ``***``."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, '***')
    return text


class ProcessRunner:
    """Runs argv commands with a working directory, timeout and optional stdin.

    Secrets registered on the runner are masked in every log line it emits;
    they are still passed to the child process unchanged.
    """

    def __init__(self, secrets: Sequence[str] = ()) -> None:
        self._secrets = [s for s in secrets if s]

    def add_secret(self, secret: str) -> None:
        if secret and secret not in self._secrets:
            self._secrets.append(secret)

    def _display(self, command: Sequence[str]) -> str:
        return mask(' '.join(command), self._secrets)[:200]

    async def run(
        self,
        command: Sequence[str],
        cwd: Optional[Union[str, Path]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        input: Optional[Union[str, bytes]] = None,
        env: Optional[dict[str, str]] = None,
    ) -> CommandResult:
        """Execute a command and capture its combined output.

        Args:
            command: Program and arguments; no shell is involved.
            cwd: Working directory for the child process.
            timeout: Seconds before the child is killed.
            input: Data written to the child's stdin, then stdin is closed.
            env: Additional environment variables.
        """
        display = self._display(command)
        logger.debug('Run [%s]: %s', cwd or '.', display)

        child_env = None
        if env:
            child_env = {**os.environ, **env}

        data = input.encode() if isinstance(input, str) else input
        started = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd is not None else None,
                stdin=asyncio.subprocess.PIPE if data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=child_env,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            logger.warning('Cannot start %s: %s', display, exc)
            return CommandResult(
                stdout=str(exc),
                exit_code=EXIT_NOT_FOUND,
                duration=time.monotonic() - started,
            )

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(data), timeout=timeout)
        except asyncio.TimeoutError:
            # The child leads its own session; kill the group so grandchildren holding
            # the output pipe die with it.
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await proc.wait()
            duration = time.monotonic() - started
            logger.warning('Command timed out after %ss: %s', timeout, display)
            return CommandResult(
                stdout=f'Command timed out after {timeout}s',
                exit_code=EXIT_TIMED_OUT,
                timed_out=True,
                duration=duration,
            )

        result = CommandResult(
            stdout=mask((stdout or b'').decode(errors='replace'), self._secrets),
            exit_code=proc.returncode if proc.returncode is not None else 0,
            duration=time.monotonic() - started,
        )
        if not result.success:
            logger.debug('Exit %d from %s: %s', result.exit_code, display, result.stdout[-300:])
        return result

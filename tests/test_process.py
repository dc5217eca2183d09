"""Tests for deployer.process: CommandResult and ProcessRunner."""

from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from deployer.process import CommandError, CommandResult, ProcessRunner, mask


# ── CommandResult ─────────────────────────────────────────


def test_command_result_success() -> None:
    assert CommandResult(stdout="ok", exit_code=0).success is True


def test_command_result_failure() -> None:
    assert CommandResult(stdout="", exit_code=1).success is False


def test_timed_out_result_is_not_success() -> None:
    assert CommandResult(stdout="", exit_code=0, timed_out=True).success is False


def test_command_result_check_raises() -> None:
    r = CommandResult(stdout="bad thing", exit_code=1)
    with pytest.raises(CommandError, match="bad thing"):
        r.check("oops")


def test_command_result_check_timeout() -> None:
    r = CommandResult(stdout="", exit_code=-9, timed_out=True, duration=5)
    with pytest.raises(CommandError, match="timed out"):
        r.check()


def test_command_result_check_success() -> None:
    r = CommandResult(stdout="ok", exit_code=0)
    assert r.check("should not raise") is r


def test_mask() -> None:
    assert mask("user:s3cret@host", ["s3cret", ""]) == "user:***@host"


# ── ProcessRunner.run ─────────────────────────────────────


@pytest.mark.asyncio
async def test_run_captures_stdout_and_stderr() -> None:
    runner = ProcessRunner()
    result = await runner.run([
        sys.executable, "-c",
        "import sys; print('out'); print('err', file=sys.stderr)",
    ])
    assert result.success
    assert "out" in result.stdout
    assert "err" in result.stdout


@pytest.mark.asyncio
async def test_run_reports_exit_code() -> None:
    result = await ProcessRunner().run([sys.executable, "-c", "raise SystemExit(3)"])
    assert result.exit_code == 3
    assert not result.success
    assert not result.timed_out


@pytest.mark.asyncio
async def test_run_uses_cwd(tmp_path) -> None:
    result = await ProcessRunner().run(
        [sys.executable, "-c", "import os; print(os.getcwd())"],
        cwd=tmp_path,
    )
    assert result.stdout.strip() == str(tmp_path.resolve()) or result.stdout.strip() == str(tmp_path)


@pytest.mark.asyncio
async def test_run_writes_stdin() -> None:
    result = await ProcessRunner().run(
        [sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"],
        input="hello",
    )
    assert result.stdout.strip() == "HELLO"


@pytest.mark.asyncio
async def test_run_passes_extra_env() -> None:
    result = await ProcessRunner().run(
        [sys.executable, "-c", "import os; print(os.environ['DEPLOY_STAGE'])"],
        env={"DEPLOY_STAGE": "build"},
    )
    assert result.stdout.strip() == "build"


@pytest.mark.asyncio
async def test_run_kills_on_timeout() -> None:
    started = time.monotonic()
    result = await ProcessRunner().run(
        [sys.executable, "-c", "import time; time.sleep(10)"],
        timeout=0.2,
    )
    elapsed = time.monotonic() - started

    assert result.timed_out is True
    assert not result.success
    assert "timed out" in result.stdout
    assert elapsed < 5


def _running(pid: int) -> bool:
    if not Path("/proc").is_dir():
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        return True
    try:
        state = Path(f"/proc/{pid}/stat").read_text().rsplit(")", 1)[-1].split()[0]
    except FileNotFoundError:
        return False
    # A killed orphan lingers as a zombie until init reaps it.
    return state != "Z"


@pytest.mark.asyncio
async def test_run_kills_grandchildren_on_timeout(tmp_path) -> None:
    started = time.monotonic()
    result = await ProcessRunner().run(
        ["sh", "-c", "sleep 10 & echo $! > child.pid; wait"],
        cwd=tmp_path,
        timeout=0.5,
    )
    elapsed = time.monotonic() - started

    assert result.timed_out is True
    assert elapsed < 5

    pid = int((tmp_path / "child.pid").read_text())
    for _ in range(20):
        if not _running(pid):
            break
        await asyncio.sleep(0.1)
    assert not _running(pid)


@pytest.mark.asyncio
async def test_run_missing_executable() -> None:
    result = await ProcessRunner().run(["definitely-not-a-real-binary-xyz"])
    assert result.exit_code == 127
    assert not result.success


@pytest.mark.asyncio
async def test_run_masks_secrets_in_output() -> None:
    runner = ProcessRunner(secrets=["hunter2"])
    runner.add_secret("tok-123")
    result = await runner.run([sys.executable, "-c", "print('pw=hunter2 token=tok-123')"])
    assert "hunter2" not in result.stdout
    assert "tok-123" not in result.stdout
    assert result.stdout.strip() == "pw=*** token=***"

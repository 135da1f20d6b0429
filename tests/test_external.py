from __future__ import annotations

import asyncio
import sys

import pytest

from simladder.core.diagnostics import JobCancelledError, SolverTimeoutError
from simladder.core.external import run_external

SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]


@pytest.mark.asyncio
async def test_run_external_captures_output(tmp_path):
    result = await run_external(
        [sys.executable, "-c", "print('solver ready')"],
        cwd=tmp_path / "work",
        logs_dir=tmp_path / "logs",
        name="echo",
    )
    assert result.returncode == 0
    assert result.stdout.read_text(encoding="utf-8").strip() == "solver ready"
    assert result.to_dict()["name"] == "echo"


@pytest.mark.asyncio
async def test_run_external_returns_nonzero_exit(tmp_path):
    result = await run_external(
        [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(4)"],
        cwd=tmp_path,
        logs_dir=tmp_path / "logs",
    )
    assert result.returncode == 4
    assert result.stderr.read_text(encoding="utf-8") == "boom"


@pytest.mark.asyncio
async def test_run_external_timeout_terminates_process(tmp_path):
    with pytest.raises(SolverTimeoutError):
        await run_external(SLEEPER, cwd=tmp_path, logs_dir=tmp_path / "logs", timeout_s=0.2)


@pytest.mark.asyncio
async def test_run_external_cancel_event_terminates_process(tmp_path):
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.2, cancel.set)
    with pytest.raises(JobCancelledError):
        await run_external(
            SLEEPER, cwd=tmp_path, logs_dir=tmp_path / "logs", timeout_s=10, cancel_event=cancel
        )

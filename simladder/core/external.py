from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from .diagnostics import JobCancelledError, SolverTimeoutError

logger = logging.getLogger(__name__)

_KILL_GRACE_S = 5.0


@dataclass(frozen=True)
class ExternalRunResult:
    name: str
    cmd: list[str]
    returncode: int
    stdout: Path
    stderr: Path
    elapsed_s: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "cmd": self.cmd,
            "returncode": self.returncode,
            "stdout": str(self.stdout),
            "stderr": str(self.stderr),
            "elapsed_s": self.elapsed_s,
        }


async def run_external(
    cmd: Sequence[str],
    cwd: Path,
    logs_dir: Path,
    *,
    name: str = "external",
    env: Optional[Mapping[str, str]] = None,
    timeout_s: Optional[float] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ExternalRunResult:
    """Run a solver executable with its output captured to ``logs_dir``.

    The process is terminated (then killed) when ``timeout_s`` elapses or
    ``cancel_event`` is set, raising ``SolverTimeoutError`` or
    ``JobCancelledError`` respectively. A non-zero exit code is returned,
    not raised; the caller decides what it means.
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    cwd.mkdir(parents=True, exist_ok=True)
    stdout_path = logs_dir / f"{name}.stdout.log"
    stderr_path = logs_dir / f"{name}.stderr.log"
    run_cmd = [str(part) for part in cmd]
    run_env = dict(os.environ) if env is None else dict(env)
    start = time.time()

    with stdout_path.open("wb") as stdout, stderr_path.open("wb") as stderr:
        proc = await asyncio.create_subprocess_exec(
            *run_cmd,
            cwd=str(cwd),
            env=run_env,
            stdout=stdout,
            stderr=stderr,
        )
        waiter = asyncio.ensure_future(proc.wait())
        watchers = [waiter]
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            watchers.append(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                watchers, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await _terminate(proc, name)
            raise
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if waiter not in done:
            await _terminate(proc, name)
            if cancel_waiter is not None and cancel_waiter in done:
                raise JobCancelledError(f"{name} cancelled", data={"cmd": run_cmd})
            raise SolverTimeoutError(
                f"{name} exceeded {timeout_s}s", data={"cmd": run_cmd, "timeout_s": timeout_s}
            )

    elapsed = time.time() - start
    logger.info("%s exited with %s after %.2fs", name, proc.returncode, elapsed)
    return ExternalRunResult(
        name=name,
        cmd=run_cmd,
        returncode=proc.returncode,
        stdout=stdout_path,
        stderr=stderr_path,
        elapsed_s=elapsed,
    )


async def _terminate(proc: asyncio.subprocess.Process, name: str) -> None:
    if proc.returncode is not None:
        return
    logger.warning("Terminating %s (pid %s)", name, proc.pid)
    proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=_KILL_GRACE_S)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()

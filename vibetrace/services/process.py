"""Run external tools as asyncio subprocesses with a wall-clock timeout."""

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Stream reader limit for tools that print large JSON to stdout/stderr.
DEFAULT_STREAM_LIMIT = 50 * 1024 * 1024


class AdapterToolError(Exception):
    """Raised inside an analyzer adapter when its tool fails or produces unusable output; never escapes the adapter."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


@dataclass
class CommandResult:
    """Outcome of one subprocess run. returncode is None when the run timed out."""

    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool
    duration_seconds: float


async def run_command(
    cmd: Sequence[str],
    timeout: float,
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    limit: int = DEFAULT_STREAM_LIMIT,
) -> CommandResult:
    """
    Run cmd (no shell) and wait at most timeout seconds.

    On timeout the process is killed and reaped; the result has timed_out=True.
    Raises OSError if the executable cannot be started.
    """
    start = time.perf_counter()
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else None,
        cwd=cwd,
        limit=limit,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        elapsed = time.perf_counter() - start
        logger.warning(
            "Command timed out",
            extra={"tool": cmd[0], "timeout_seconds": timeout, "elapsed_seconds": elapsed},
        )
        return CommandResult(
            returncode=None,
            stdout="",
            stderr="",
            timed_out=True,
            duration_seconds=elapsed,
        )
    return CommandResult(
        returncode=proc.returncode,
        stdout=(stdout or b"").decode("utf-8", errors="replace"),
        stderr=(stderr or b"").decode("utf-8", errors="replace"),
        timed_out=False,
        duration_seconds=time.perf_counter() - start,
    )

"""
Static-code adapter: run semgrep over a checkout and return its results unmodified.

Exit-code contract (semgrep scan --json --output FILE):
    0  completed, no blocking findings
    1  completed, findings reported
    other  tool failure (bad config, crash, out of memory)

Codes 0 and 1 both read the output file. Any other code, a timeout, a missing
binary or an unreadable output file yields zero findings and one entry in
errors; nothing here raises into the scan pipeline.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from vibetrace.schemas.analyzers import SemgrepOutput, StaticResult
from vibetrace.services.normalize import strip_sandbox_paths
from vibetrace.services.process import AdapterToolError, run_command

if TYPE_CHECKING:
    from vibetrace.core.config import Settings

logger = logging.getLogger(__name__)

SEMGREP_SUCCESS_CODES = frozenset({0, 1})
_MAX_STDERR_CHARS = 500


def build_semgrep_command(sandbox_root: str, output_file: str, settings: "Settings") -> list[str]:
    """Build the semgrep argv (no shell)."""
    cmd = [settings.SEMGREP_BINARY, "scan"]
    for config in settings.SEMGREP_CONFIGS:
        cmd.extend(["--config", config])
    cmd.extend(
        [
            "--json",
            "--output",
            output_file,
            "--timeout",
            str(settings.SEMGREP_RULE_TIMEOUT_SEC),
            sandbox_root,
        ]
    )
    return cmd


def read_semgrep_output(output_file: str, max_bytes: int) -> SemgrepOutput:
    """Parse semgrep's JSON output file. Raises AdapterToolError if missing, oversized or malformed."""
    path = Path(output_file)
    try:
        size = path.stat().st_size
    except FileNotFoundError as e:
        raise AdapterToolError("semgrep did not write an output file", cause=e) from e
    if size == 0:
        raise AdapterToolError("semgrep output file is empty")
    if size > max_bytes:
        raise AdapterToolError(f"semgrep output exceeds {max_bytes} bytes")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise AdapterToolError("semgrep output is not valid JSON", cause=e) from e
    if not isinstance(data, dict):
        raise AdapterToolError("semgrep output is not a JSON object")
    try:
        return SemgrepOutput.model_validate(data)
    except ValidationError as e:
        raise AdapterToolError("semgrep output does not match the expected shape", cause=e) from e


async def run_static_analysis(sandbox_root: str, settings: "Settings") -> StaticResult:
    """Run semgrep against sandbox_root and return results plus non-fatal tool errors."""
    fd, output_file = tempfile.mkstemp(suffix=".json", prefix="vibetrace-semgrep-")
    os.close(fd)
    errors: list[str] = []
    duration = 0.0
    try:
        cmd = build_semgrep_command(sandbox_root, output_file, settings)
        try:
            run = await run_command(cmd, settings.SEMGREP_TIMEOUT_SEC, limit=settings.SEMGREP_MAX_OUTPUT_BYTES)
            duration = run.duration_seconds
            if run.timed_out:
                raise AdapterToolError(
                    f"semgrep timed out after {settings.SEMGREP_TIMEOUT_SEC:g} seconds"
                )
            if run.returncode not in SEMGREP_SUCCESS_CODES:
                stderr = strip_sandbox_paths(run.stderr, sandbox_root).strip()[:_MAX_STDERR_CHARS]
                raise AdapterToolError(
                    f"semgrep exited with code {run.returncode}: {stderr or 'no output'}"
                )
            output = read_semgrep_output(output_file, settings.SEMGREP_MAX_OUTPUT_BYTES)
        except OSError as e:
            errors.append(f"semgrep could not be started: {e.strerror or e}")
            logger.warning("Static analysis unavailable", extra={"tool": "semgrep"})
            return StaticResult(sandbox_root=sandbox_root, errors=errors, duration_seconds=duration)
        except AdapterToolError as e:
            errors.append(e.message)
            logger.warning(
                "Static analysis degraded: %s",
                e.message,
                extra={"tool": "semgrep"},
            )
            return StaticResult(sandbox_root=sandbox_root, errors=errors, duration_seconds=duration)
    finally:
        try:
            os.unlink(output_file)
        except FileNotFoundError:
            pass

    for err in output.errors:
        if err.message:
            errors.append(strip_sandbox_paths(err.message, sandbox_root))
    logger.info(
        "Static analysis completed",
        extra={
            "tool": "semgrep",
            "finding_count": len(output.results),
            "tool_error_count": len(errors),
            "duration_seconds": duration,
        },
    )
    return StaticResult(
        sandbox_root=sandbox_root,
        results=output.results,
        errors=errors,
        duration_seconds=duration,
    )

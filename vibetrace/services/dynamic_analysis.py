"""
Dynamic-site adapter: run the OWASP ZAP baseline scan in a container against a public URL.

Exit-code contract (zap-baseline.py):
    0  no alerts at WARN or FAIL level
    1  at least one FAIL alert
    2  at least one WARN alert
    3  other failure

Every exit path (including a timeout) attempts to read the JSON report. A
nonzero code is logged and is not an error by itself; a missing report means
zero findings. Only an unreadable report, a timeout or a missing docker binary
are recorded in errors. The URL must already have passed the sandbox safety gate.
"""

import json
import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from vibetrace.schemas.analyzers import DynamicResult, ZapAlert, ZapReport
from vibetrace.services.process import AdapterToolError, run_command

if TYPE_CHECKING:
    from vibetrace.core.config import Settings

logger = logging.getLogger(__name__)

ZAP_REPORT_NAME = "zap-report.json"
ZAP_CONTAINER_WORKDIR = "/zap/wrk/"
_CONTAINER_REMOVE_TIMEOUT_SEC = 30.0


def build_zap_command(
    target_url: str,
    work_dir: str,
    container_name: str,
    settings: "Settings",
) -> list[str]:
    """Build the docker argv for a baseline scan writing ZAP_REPORT_NAME into work_dir."""
    return [
        settings.DOCKER_BINARY,
        "run",
        "--rm",
        "--name",
        container_name,
        "-v",
        f"{work_dir}:{ZAP_CONTAINER_WORKDIR}:rw",
        settings.ZAP_IMAGE,
        "zap-baseline.py",
        "-t",
        target_url,
        "-J",
        ZAP_REPORT_NAME,
    ]


def read_zap_report(report_path: Path) -> list[ZapAlert] | None:
    """Return alerts from the report, None if the report does not exist. Raises AdapterToolError if malformed."""
    if not report_path.is_file():
        return None
    try:
        data = json.loads(report_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise AdapterToolError("ZAP report is not valid JSON", cause=e) from e
    if not isinstance(data, dict):
        raise AdapterToolError("ZAP report is not a JSON object")
    try:
        report = ZapReport.model_validate(data)
    except ValidationError as e:
        raise AdapterToolError("ZAP report does not match the expected shape", cause=e) from e
    return [alert for site in report.site for alert in site.alerts]


async def _remove_container(container_name: str, settings: "Settings") -> None:
    """Force-remove a container left running after the docker client was killed."""
    try:
        result = await run_command(
            [settings.DOCKER_BINARY, "rm", "-f", container_name],
            _CONTAINER_REMOVE_TIMEOUT_SEC,
        )
    except OSError:
        logger.warning("Could not remove ZAP container %s", container_name, exc_info=True)
        return
    if result.timed_out or result.returncode != 0:
        logger.warning("Could not remove ZAP container %s", container_name)


async def run_dynamic_analysis(target_url: str, settings: "Settings") -> DynamicResult:
    """Run a ZAP baseline scan against target_url; return alerts plus non-fatal tool errors."""
    work_dir = tempfile.mkdtemp(prefix="vibetrace-zap-")
    # The ZAP image runs as an unprivileged user that must write the report.
    os.chmod(work_dir, 0o777)
    container_name = f"vibetrace-zap-{uuid.uuid4().hex[:12]}"
    errors: list[str] = []
    duration = 0.0
    try:
        cmd = build_zap_command(target_url, work_dir, container_name, settings)
        try:
            run = await run_command(cmd, settings.ZAP_TIMEOUT_SEC)
        except OSError as e:
            errors.append(f"docker could not be started: {e.strerror or e}")
            logger.warning("Dynamic analysis unavailable", extra={"tool": "zap"})
            return DynamicResult(target_url=target_url, errors=errors)

        duration = run.duration_seconds
        if run.timed_out:
            errors.append(f"ZAP scan timed out after {settings.ZAP_TIMEOUT_SEC:g} seconds")
            await _remove_container(container_name, settings)
        elif run.returncode != 0:
            logger.info(
                "ZAP exited with non-zero code",
                extra={"tool": "zap", "returncode": run.returncode},
            )

        try:
            alerts = read_zap_report(Path(work_dir) / ZAP_REPORT_NAME)
        except AdapterToolError as e:
            errors.append(e.message)
            logger.warning("Dynamic analysis degraded: %s", e.message, extra={"tool": "zap"})
            return DynamicResult(target_url=target_url, errors=errors, duration_seconds=duration)
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    if alerts is None:
        logger.info("ZAP produced no report", extra={"tool": "zap", "target_url": target_url})
        alerts = []
    logger.info(
        "Dynamic analysis completed",
        extra={"tool": "zap", "finding_count": len(alerts), "duration_seconds": duration},
    )
    return DynamicResult(
        target_url=target_url,
        alerts=alerts,
        errors=errors,
        duration_seconds=duration,
    )

"""
Scan state machine: drive one scan from 'queued' to 'complete' (or 'failed').

queued -> cloning (repository scans only) -> scanning -> translating -> complete,
with 'failed' reachable from any non-terminal status. Adapters run in sequence
(static, then dynamic and SEO for a URL); each adapter's findings are
normalized and inserted in bulk as soon as it returns. Counters and score are
computed from the persisted finding set. The sandbox is released on every exit
path of the analysis phase.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from pydantic import SecretStr

from vibetrace.core.config import Settings
from vibetrace.schemas.analyzers import AnalyzerOutput
from vibetrace.schemas.findings import FindingNarrative, NarrativeSource, NormalizedFinding
from vibetrace.schemas.scan import ScanCompleteSummary
from vibetrace.services.dynamic_analysis import run_dynamic_analysis
from vibetrace.services.normalize import normalize_output, strip_sandbox_paths
from vibetrace.services.notify import NotificationError, notify_scan_complete
from vibetrace.services.sandbox import (
    AcquisitionError,
    Sandbox,
    SafetyRejection,
    acquire_repository,
    redact_credentials,
    release_sandbox,
    validate_target_url,
)
from vibetrace.services.scan_store import ScanStore
from vibetrace.services.scoring import calculate_score, count_severities
from vibetrace.services.seo_analysis import run_seo_analysis
from vibetrace.services.static_analysis import run_static_analysis
from vibetrace.services.translate import translate_findings

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_CHARS = 2000

Translator = Callable[
    [Sequence[NormalizedFinding], Settings],
    Awaitable[list[tuple[FindingNarrative, NarrativeSource]]],
]


@dataclass
class ScanJob:
    """Everything the background task needs to run one scan."""

    scan_id: int
    user_id: int
    repo_full_name: str | None = None
    credential: SecretStr | None = None
    target_url: str | None = None
    repository_id: int | None = None

    @property
    def target_name(self) -> str:
        return self.repo_full_name or self.target_url or f"scan {self.scan_id}"


class ScanPipeline:
    """
    Coordinates sandbox, adapters, normalizer, translation and scoring for one scan at a time.

    Collaborators are injectable so the state machine can be exercised without
    git, semgrep, docker or network access.
    """

    def __init__(
        self,
        store: ScanStore,
        settings: Settings,
        *,
        acquirer: Callable[..., Awaitable[Sandbox]] = acquire_repository,
        releaser: Callable[[Sandbox], None] = release_sandbox,
        static_analyzer: Callable[..., Awaitable[AnalyzerOutput]] = run_static_analysis,
        dynamic_analyzer: Callable[..., Awaitable[AnalyzerOutput]] = run_dynamic_analysis,
        seo_analyzer: Callable[..., Awaitable[AnalyzerOutput]] = run_seo_analysis,
        url_validator: Callable[[str], Awaitable[str]] = validate_target_url,
        translator: Translator = translate_findings,
        notifier: Callable[[ScanCompleteSummary, Settings], Awaitable[object]] = notify_scan_complete,
    ) -> None:
        self.store = store
        self.settings = settings
        self._acquire = acquirer
        self._release = releaser
        self._static = static_analyzer
        self._dynamic = dynamic_analyzer
        self._seo = seo_analyzer
        self._validate_url = url_validator
        self._translate = translator
        self._notify = notifier

    async def run(self, job: ScanJob) -> None:
        """Execute the scan. Never raises: any failure is recorded on the scan as 'failed'."""
        start = time.perf_counter()
        logger.info(
            "Scan started",
            extra={"scan_id": job.scan_id, "has_repo": bool(job.repo_full_name), "has_url": bool(job.target_url)},
        )
        try:
            sandbox: Sandbox | None = None
            if job.repo_full_name:
                self.store.transition(job.scan_id, "cloning")
                sandbox = await self._acquire(job.repo_full_name, job.credential, self.settings)
            try:
                self.store.transition(job.scan_id, "scanning")
                pending = await self._analyze(job, sandbox)
            finally:
                if sandbox is not None:
                    self._release(sandbox)

            self.store.transition(job.scan_id, "translating")
            await self._translate_pending(job.scan_id, pending)
            await self._finalize(job, start)
        except AcquisitionError as e:
            logger.warning("Repository acquisition failed", extra={"scan_id": job.scan_id})
            self._record_failure(job, e.message)
        except Exception as e:
            logger.exception("Scan failed", extra={"scan_id": job.scan_id})
            self._record_failure(job, str(e) or type(e).__name__)

    def _record_failure(self, job: ScanJob, message: str) -> None:
        secret = job.credential.get_secret_value() if job.credential is not None else None
        cleaned = strip_sandbox_paths(redact_credentials(message, secret))[:MAX_ERROR_MESSAGE_CHARS]
        try:
            self.store.fail_scan(job.scan_id, cleaned or "Scan failed")
        except Exception:
            logger.exception("Could not record scan failure", extra={"scan_id": job.scan_id})

    async def _analyze(
        self,
        job: ScanJob,
        sandbox: Sandbox | None,
    ) -> list[tuple[int, NormalizedFinding]]:
        """Run the applicable adapters in sequence; return persisted findings that still need translation."""
        pending: list[tuple[int, NormalizedFinding]] = []
        if sandbox is not None:
            output = await self._static(sandbox.root, self.settings)
            pending.extend(self._persist(job.scan_id, output))

        if job.target_url:
            if self.settings.DAST_ENABLED:
                try:
                    await self._validate_url(job.target_url)
                except SafetyRejection as e:
                    logger.warning(
                        "Dynamic analysis skipped: %s",
                        e.message,
                        extra={"scan_id": job.scan_id},
                    )
                else:
                    output = await self._dynamic(job.target_url, self.settings)
                    self.store.mark_dynamic_included(job.scan_id)
                    pending.extend(self._persist(job.scan_id, output))
            output = await self._seo(job.target_url, self.settings)
            pending.extend(self._persist(job.scan_id, output))
        return pending

    def _persist(self, scan_id: int, output: AnalyzerOutput) -> list[tuple[int, NormalizedFinding]]:
        if output.errors:
            logger.warning(
                "Analyzer reported errors",
                extra={"scan_id": scan_id, "tool": output.kind, "errors": output.errors},
            )
        findings = normalize_output(output)
        ids = self.store.insert_findings(scan_id, findings)
        return [(finding_id, f) for finding_id, f in zip(ids, findings) if f.needs_translation]

    async def _translate_pending(self, scan_id: int, pending: list[tuple[int, NormalizedFinding]]) -> None:
        if not pending:
            return
        try:
            outcomes = await self._translate([f for _, f in pending], self.settings)
        except Exception:
            logger.exception("Translation failed; keeping fallback narratives", extra={"scan_id": scan_id})
            return
        updates = [
            (finding_id, narrative, source)
            for (finding_id, _), (narrative, source) in zip(pending, outcomes)
            if source == "model"
        ]
        self.store.update_narratives(updates)

    async def _finalize(self, job: ScanJob, start: float) -> None:
        severities = self.store.finding_severities(job.scan_id)
        score = calculate_score(severities)
        counts, total = count_severities(severities)
        duration = int(round(time.perf_counter() - start))
        completed_at = self.store.complete_scan(job.scan_id, score, counts, total, duration)

        self.store.refresh_user_completed_count(job.user_id)
        if job.repository_id is not None:
            self.store.touch_repository(job.repository_id, completed_at)

        summary = ScanCompleteSummary(
            scan_id=job.scan_id,
            target_name=job.target_name,
            score=score,
            total_findings=total,
            counts_by_severity=counts,
            completed_at=completed_at,
        )
        try:
            await self._notify(summary, self.settings)
        except NotificationError as e:
            logger.warning("Scan notification failed: %s", e.message, extra={"scan_id": job.scan_id})
        except Exception:
            logger.exception("Scan notification raised", extra={"scan_id": job.scan_id})


# Strong references to running scan tasks; the event loop only keeps weak ones.
_running_scans: set[asyncio.Task] = set()


def spawn_scan(pipeline: ScanPipeline, job: ScanJob) -> asyncio.Task:
    """Start the scan as a background task and return immediately."""
    task = asyncio.create_task(pipeline.run(job), name=f"scan-{job.scan_id}")
    _running_scans.add(task)
    task.add_done_callback(_running_scans.discard)
    return task

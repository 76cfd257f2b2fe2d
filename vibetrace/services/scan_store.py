"""
Persistence for scans and findings.

Every ScanStore method opens its own session and commits before returning, so
each call is one atomic operation against the database. Concurrent scans share
nothing but the database.
"""

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from vibetrace.models import Finding, Repository, Scan, User
from vibetrace.schemas.findings import SANDBOX_DIR_PREFIX, FindingNarrative, NarrativeSource, NormalizedFinding
from vibetrace.schemas.scan import SeverityCounts, can_transition

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when a status write would move a scan backwards or out of a terminal state."""

    def __init__(self, message: str, current: str | None = None, target: str | None = None) -> None:
        self.message = message
        self.current = current
        self.target = target
        super().__init__(message)


class ScanNotFoundError(Exception):
    """Raised when an operation names a scan id that does not exist."""

    def __init__(self, scan_id: int) -> None:
        self.scan_id = scan_id
        self.message = f"Scan {scan_id} not found"
        super().__init__(self.message)


class ScanStore:
    """Scan and finding persistence over a session factory (e.g. SessionLocal)."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _load_scan(self, session: Session, scan_id: int) -> Scan:
        scan = session.get(Scan, scan_id)
        if scan is None:
            raise ScanNotFoundError(scan_id)
        return scan

    @staticmethod
    def _check_transition(scan: Scan, target: str) -> None:
        if not can_transition(scan.status, target):
            raise InvalidTransitionError(
                f"Scan {scan.id} cannot move from {scan.status!r} to {target!r}",
                current=scan.status,
                target=target,
            )

    def get_scan(self, scan_id: int) -> Scan | None:
        with self._session_factory() as session:
            return session.get(Scan, scan_id)

    def user_exists(self, user_id: int) -> bool:
        with self._session_factory() as session:
            return session.get(User, user_id) is not None

    def get_or_create_repository(self, user_id: int, full_name: str) -> int:
        """Return the id of the user's repository row for full_name, creating it if needed."""
        with self._session_factory() as session:
            repo_id = session.scalar(
                select(Repository.id).where(
                    Repository.user_id == user_id,
                    Repository.full_name == full_name,
                )
            )
            if repo_id is not None:
                return repo_id
            repo = Repository(user_id=user_id, full_name=full_name)
            session.add(repo)
            session.commit()
            return repo.id

    def create_scan(
        self,
        user_id: int,
        repository_id: int | None = None,
        target_url: str | None = None,
    ) -> int:
        """Insert a scan in status 'queued' and return its id."""
        with self._session_factory() as session:
            scan = Scan(
                user_id=user_id,
                repository_id=repository_id,
                target_url=target_url,
                status="queued",
                started_at=datetime.now(UTC),
            )
            session.add(scan)
            session.commit()
            logger.info("Scan created", extra={"scan_id": scan.id, "user_id": user_id})
            return scan.id

    def transition(self, scan_id: int, target: str) -> None:
        """Move the scan to target. Raises InvalidTransitionError on a regression."""
        with self._session_factory() as session:
            scan = self._load_scan(session, scan_id)
            previous = scan.status
            self._check_transition(scan, target)
            scan.status = target
            session.commit()
        logger.info(
            "Scan status changed",
            extra={"scan_id": scan_id, "from_status": previous, "status": target},
        )

    def mark_dynamic_included(self, scan_id: int) -> None:
        with self._session_factory() as session:
            scan = self._load_scan(session, scan_id)
            scan.includes_dynamic = True
            session.commit()

    def insert_findings(self, scan_id: int, findings: Sequence[NormalizedFinding]) -> list[int]:
        """Bulk-insert findings for one adapter run; returns the new ids in input order."""
        if not findings:
            return []
        with self._session_factory() as session:
            rows = [
                Finding(
                    scan_id=scan_id,
                    severity=f.severity,
                    category=f.category,
                    rule_id=f.rule_id,
                    file_path=f.file_path,
                    line_number=f.line_number,
                    code_snippet=f.code_snippet,
                    raw_output=f.raw_output,
                    plain_english=f.narrative.plain_english,
                    business_impact=f.narrative.business_impact,
                    fix_prompt=f.narrative.fix_prompt,
                    verification_step=f.narrative.verification_step,
                    narrative_source=f.narrative_source,
                )
                for f in findings
            ]
            session.add_all(rows)
            session.commit()
            ids = [row.id for row in rows]
        logger.info("Findings inserted", extra={"scan_id": scan_id, "finding_count": len(ids)})
        return ids

    def update_narratives(
        self,
        updates: Sequence[tuple[int, FindingNarrative, NarrativeSource]],
    ) -> int:
        """Overwrite narrative fields by finding id; returns how many rows were updated."""
        if not updates:
            return 0
        updated = 0
        with self._session_factory() as session:
            for finding_id, narrative, source in updates:
                row = session.get(Finding, finding_id)
                if row is None:
                    continue
                row.plain_english = narrative.plain_english
                row.business_impact = narrative.business_impact
                row.fix_prompt = narrative.fix_prompt
                row.verification_step = narrative.verification_step
                row.narrative_source = source
                updated += 1
            session.commit()
        return updated

    def finding_severities(self, scan_id: int) -> list[str]:
        """Severities of every persisted finding of the scan."""
        with self._session_factory() as session:
            return list(session.scalars(select(Finding.severity).where(Finding.scan_id == scan_id)))

    def list_findings(self, scan_id: int) -> list[Finding]:
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(Finding).where(Finding.scan_id == scan_id).order_by(Finding.id)
                )
            )

    def complete_scan(
        self,
        scan_id: int,
        score: int,
        counts: SeverityCounts,
        total_findings: int,
        duration_seconds: int | None = None,
    ) -> datetime:
        """Write score, counters, duration, completion time and status 'complete' in one commit."""
        completed_at = datetime.now(UTC)
        with self._session_factory() as session:
            scan = self._load_scan(session, scan_id)
            self._check_transition(scan, "complete")
            scan.score = score
            scan.critical_count = counts.critical
            scan.high_count = counts.high
            scan.medium_count = counts.medium
            scan.low_count = counts.low
            scan.total_findings = total_findings
            scan.duration_seconds = duration_seconds
            scan.completed_at = completed_at
            scan.status = "complete"
            session.commit()
        logger.info(
            "Scan completed",
            extra={"scan_id": scan_id, "status": "complete", "score": score, "finding_count": total_findings},
        )
        return completed_at

    def fail_scan(self, scan_id: int, error_message: str) -> bool:
        """Record error_message and move the scan to 'failed'. Returns False if it was already terminal."""
        with self._session_factory() as session:
            scan = session.get(Scan, scan_id)
            if scan is None or not can_transition(scan.status, "failed"):
                return False
            scan.status = "failed"
            scan.error_message = error_message
            scan.completed_at = datetime.now(UTC)
            session.commit()
        logger.info("Scan failed", extra={"scan_id": scan_id, "status": "failed"})
        return True

    def refresh_user_completed_count(self, user_id: int) -> int:
        """Recompute the user's completed-scan count from the scans table."""
        with self._session_factory() as session:
            count = session.scalar(
                select(func.count(Scan.id)).where(Scan.user_id == user_id, Scan.status == "complete")
            ) or 0
            user = session.get(User, user_id)
            if user is not None:
                user.completed_scan_count = count
                session.commit()
            return count

    def touch_repository(self, repository_id: int, when: datetime) -> None:
        with self._session_factory() as session:
            repo = session.get(Repository, repository_id)
            if repo is not None:
                repo.last_scanned_at = when
                session.commit()

    def findings_needing_regeneration(self, limit: int | None = None) -> list[Finding]:
        """Findings still on the fallback narrative, or whose fix prompt names a checkout directory."""
        stmt = (
            select(Finding)
            .where(
                or_(
                    Finding.narrative_source == "fallback",
                    Finding.fix_prompt.contains(SANDBOX_DIR_PREFIX, autoescape=True),
                )
            )
            .order_by(Finding.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            return list(session.scalars(stmt))

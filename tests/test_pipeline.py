"""Scan state machine tests: fake adapters, a real ScanStore on in-memory SQLite."""

import asyncio
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from pydantic import SecretStr
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vibetrace.core.config import Settings
from vibetrace.models import Base, Repository, User
from vibetrace.schemas.analyzers import DynamicResult, SemgrepResult, SeoResult, StaticResult, ZapAlert
from vibetrace.schemas.findings import SANDBOX_DIR_PREFIX, FindingNarrative
from vibetrace.services.narrative import build_fix_prompt
from vibetrace.services.notify import NotificationError
from vibetrace.services.pipeline import ScanJob, ScanPipeline, spawn_scan
from vibetrace.services.sandbox import AcquisitionError, SafetyRejection, Sandbox
from vibetrace.services.scan_store import ScanStore
from vibetrace.services.seo_analysis import fetch_failed_finding

TOKEN = "ghp_pipelinetoken"
TARGET = "https://shop.example.com"
SANDBOX = Sandbox(path=Path(f"/tmp/{SANDBOX_DIR_PREFIX}pipeline"), repo_full_name="acme/shop")

MODEL_NARRATIVE = FindingNarrative(
    plain_english="Your database trusts whatever visitors type, like a bank teller who never checks ID.",
    business_impact="Someone could read or delete every customer record.",
    fix_prompt=build_fix_prompt("My app builds database queries from user input. Use parameterized queries."),
    verification_step="Try searching for a single quote; the page should not show a database error.",
)


def _memory_session_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False)


def _sql_injection_result() -> SemgrepResult:
    return SemgrepResult.model_validate(
        {
            "check_id": "javascript.express.security.sql-injection",
            "path": f"{SANDBOX.root}/routes/users.js",
            "start": {"line": 14, "col": 1},
            "extra": {"message": "User input flows into SQL.", "severity": "ERROR", "lines": "db.query(q + id)"},
        }
    )


async def _echo_translator(findings, settings):
    return [(f.narrative, "fallback") for f in findings]


class PipelineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = _memory_session_factory()
        with self.factory() as session:
            user = User(email="founder@example.com")
            session.add(user)
            session.commit()
            self.user_id = user.id
        self.store = ScanStore(self.factory)
        self.settings = Settings(DAST_ENABLED=True)

        self.acquirer = AsyncMock(return_value=SANDBOX)
        self.releaser = MagicMock()
        self.static = AsyncMock(return_value=StaticResult(sandbox_root=SANDBOX.root))
        self.dynamic = AsyncMock(return_value=DynamicResult(target_url=TARGET))
        self.seo = AsyncMock(return_value=SeoResult(target_url=TARGET))
        self.validator = AsyncMock(side_effect=lambda url: url)
        self.translator = AsyncMock(side_effect=_echo_translator)
        self.notifier = AsyncMock(return_value=True)

    def _pipeline(self) -> ScanPipeline:
        return ScanPipeline(
            self.store,
            self.settings,
            acquirer=self.acquirer,
            releaser=self.releaser,
            static_analyzer=self.static,
            dynamic_analyzer=self.dynamic,
            seo_analyzer=self.seo,
            url_validator=self.validator,
            translator=self.translator,
            notifier=self.notifier,
        )

    def _repo_job(self, target_url: str | None = None) -> ScanJob:
        repo_id = self.store.get_or_create_repository(self.user_id, "acme/shop")
        scan_id = self.store.create_scan(self.user_id, repository_id=repo_id, target_url=target_url)
        return ScanJob(
            scan_id=scan_id,
            user_id=self.user_id,
            repo_full_name="acme/shop",
            credential=SecretStr(TOKEN),
            target_url=target_url,
            repository_id=repo_id,
        )

    def _url_job(self) -> ScanJob:
        scan_id = self.store.create_scan(self.user_id, target_url=TARGET)
        return ScanJob(scan_id=scan_id, user_id=self.user_id, target_url=TARGET)

    def _run(self, job: ScanJob) -> None:
        asyncio.run(self._pipeline().run(job))


class TestUrlScan(PipelineTestCase):
    def test_zero_findings_completes_with_score_100(self) -> None:
        job = self._url_job()
        with patch.object(self.store, "transition", wraps=self.store.transition) as spy:
            self._run(job)
        self.assertEqual([c.args[1] for c in spy.call_args_list], ["scanning", "translating"])

        scan = self.store.get_scan(job.scan_id)
        self.assertEqual(scan.status, "complete")
        self.assertEqual(scan.score, 100)
        self.assertEqual(
            (scan.critical_count, scan.high_count, scan.medium_count, scan.low_count, scan.total_findings),
            (0, 0, 0, 0, 0),
        )
        self.assertTrue(scan.includes_dynamic)
        self.assertIsNotNone(scan.completed_at)
        self.assertIsNotNone(scan.duration_seconds)
        self.acquirer.assert_not_called()
        self.static.assert_not_called()
        self.translator.assert_not_called()

        summary = self.notifier.await_args.args[0]
        self.assertEqual(summary.scan_id, job.scan_id)
        self.assertEqual(summary.score, 100)
        self.assertEqual(summary.target_name, TARGET)

    def test_url_containing_checkout_prefix_completes(self) -> None:
        target = f"https://demo.example.com/{SANDBOX_DIR_PREFIX}demo"
        scan_id = self.store.create_scan(self.user_id, target_url=target)
        alert = ZapAlert.model_validate({"riskcode": "2", "name": "CSP Header Not Set", "pluginid": "10038"})
        self.dynamic.return_value = DynamicResult(target_url=target, alerts=[alert])
        self.seo.return_value = SeoResult(target_url=target, findings=[fetch_failed_finding(target)])

        self._run(ScanJob(scan_id=scan_id, user_id=self.user_id, target_url=target))

        scan = self.store.get_scan(scan_id)
        self.assertEqual(scan.status, "complete", scan.error_message)
        self.assertEqual(scan.total_findings, 2)
        self.assertEqual({f.file_path for f in self.store.list_findings(scan_id)}, {target})

        with self.factory() as session:
            self.assertEqual(session.get(User, self.user_id).completed_scan_count, 1)

    def test_private_target_skips_dynamic_but_runs_seo(self) -> None:
        self.validator.side_effect = SafetyRejection("Target address 10.0.0.1 is not public.", TARGET)
        self.seo.return_value = SeoResult(target_url=TARGET, findings=[fetch_failed_finding(TARGET)])
        job = self._url_job()
        self._run(job)

        self.dynamic.assert_not_called()
        self.seo.assert_awaited_once()
        scan = self.store.get_scan(job.scan_id)
        self.assertEqual(scan.status, "complete")
        self.assertFalse(scan.includes_dynamic)
        self.assertEqual(scan.critical_count, 1)
        self.assertEqual(scan.score, 75)
        findings = self.store.list_findings(job.scan_id)
        self.assertEqual([f.narrative_source for f in findings], ["authored"])
        # Authored SEO narratives are not sent for translation.
        self.translator.assert_not_called()

    def test_dast_disabled_skips_validation_and_dynamic(self) -> None:
        self.settings = Settings(DAST_ENABLED=False)
        job = self._url_job()
        self._run(job)
        self.validator.assert_not_called()
        self.dynamic.assert_not_called()
        self.assertEqual(self.store.get_scan(job.scan_id).status, "complete")


class TestRepositoryScan(PipelineTestCase):
    def test_static_finding_translated_scored_and_sandbox_released(self) -> None:
        self.static.return_value = StaticResult(sandbox_root=SANDBOX.root, results=[_sql_injection_result()])

        async def translate(findings, settings):
            return [(MODEL_NARRATIVE, "model") for _ in findings]

        self.translator.side_effect = translate
        job = self._repo_job()
        with patch.object(self.store, "transition", wraps=self.store.transition) as spy:
            self._run(job)
        self.assertEqual([c.args[1] for c in spy.call_args_list], ["cloning", "scanning", "translating"])

        self.acquirer.assert_awaited_once()
        self.assertEqual(self.acquirer.await_args.args[0], "acme/shop")
        self.static.assert_awaited_once_with(SANDBOX.root, self.settings)
        self.releaser.assert_called_once_with(SANDBOX)
        self.dynamic.assert_not_called()
        self.seo.assert_not_called()

        scan = self.store.get_scan(job.scan_id)
        self.assertEqual(scan.status, "complete")
        self.assertEqual(scan.score, 75)
        self.assertEqual(scan.critical_count, 1)
        self.assertEqual(scan.total_findings, 1)

        finding = self.store.list_findings(job.scan_id)[0]
        self.assertEqual(finding.category, "sql-injection")
        self.assertEqual(finding.file_path, "routes/users.js")
        self.assertEqual(finding.narrative_source, "model")
        self.assertEqual(finding.plain_english, MODEL_NARRATIVE.plain_english)

        with self.factory() as session:
            self.assertIsNotNone(session.get(Repository, job.repository_id).last_scanned_at)
        self.assertEqual(self.notifier.await_args.args[0].target_name, "acme/shop")

    def test_acquisition_failure_fails_scan_without_findings(self) -> None:
        self.acquirer.side_effect = AcquisitionError("Repository checkout failed (git exit code 128): denied")
        job = self._repo_job(target_url=TARGET)
        self._run(job)

        scan = self.store.get_scan(job.scan_id)
        self.assertEqual(scan.status, "failed")
        self.assertIn("128", scan.error_message)
        self.assertIsNotNone(scan.completed_at)
        self.assertIsNone(scan.score)
        self.assertEqual(self.store.list_findings(job.scan_id), [])
        self.static.assert_not_called()
        self.seo.assert_not_called()
        self.releaser.assert_not_called()
        self.notifier.assert_not_called()

    def test_unexpected_error_fails_scan_and_still_releases_sandbox(self) -> None:
        self.static.side_effect = RuntimeError(f"crash reading /tmp/{SANDBOX_DIR_PREFIX}pipeline/x.js with {TOKEN}")
        job = self._repo_job()
        self._run(job)

        self.releaser.assert_called_once_with(SANDBOX)
        scan = self.store.get_scan(job.scan_id)
        self.assertEqual(scan.status, "failed")
        self.assertIn("crash reading", scan.error_message)
        self.assertNotIn(TOKEN, scan.error_message)
        self.assertNotIn(SANDBOX_DIR_PREFIX, scan.error_message)

    def test_translation_exception_keeps_fallbacks_and_completes(self) -> None:
        self.static.return_value = StaticResult(sandbox_root=SANDBOX.root, results=[_sql_injection_result()])
        self.translator.side_effect = RuntimeError("model exploded")
        job = self._repo_job()
        self._run(job)

        scan = self.store.get_scan(job.scan_id)
        self.assertEqual(scan.status, "complete")
        finding = self.store.list_findings(job.scan_id)[0]
        self.assertEqual(finding.narrative_source, "fallback")
        for field in ("plain_english", "business_impact", "fix_prompt", "verification_step"):
            self.assertTrue(getattr(finding, field))

    def test_notification_failure_does_not_fail_scan(self) -> None:
        self.notifier.side_effect = NotificationError("Notification webhook returned status 500.")
        job = self._repo_job()
        self._run(job)
        self.assertEqual(self.store.get_scan(job.scan_id).status, "complete")

    def test_repo_and_url_score_uses_all_persisted_findings(self) -> None:
        self.static.return_value = StaticResult(sandbox_root=SANDBOX.root, results=[_sql_injection_result()])
        self.seo.return_value = SeoResult(target_url=TARGET, findings=[fetch_failed_finding(TARGET)])
        job = self._repo_job(target_url=TARGET)
        self._run(job)

        scan = self.store.get_scan(job.scan_id)
        self.assertEqual(scan.status, "complete")
        self.assertEqual(scan.critical_count, 2)
        self.assertEqual(scan.score, 50)
        self.assertTrue(scan.includes_dynamic)
        self.releaser.assert_called_once_with(SANDBOX)


class TestSpawnScan(PipelineTestCase):
    def test_runs_in_background_task(self) -> None:
        job = self._url_job()

        async def main() -> str:
            task = spawn_scan(self._pipeline(), job)
            self.assertFalse(task.done())
            await task
            return self.store.get_scan(job.scan_id).status

        self.assertEqual(asyncio.run(main()), "complete")


if __name__ == "__main__":
    unittest.main()

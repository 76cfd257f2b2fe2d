"""Unit tests for vibetrace.services.translate: batching, reply parsing and per-item fallback (no network)."""

import asyncio
import json
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from vibetrace.core.config import Settings
from vibetrace.schemas.findings import NormalizedFinding
from vibetrace.services.narrative import FIX_PROMPT_PREAMBLE, build_fix_prompt, fallback_narrative
from vibetrace.services.translate import (
    SYSTEM_PROMPT,
    _build_batch_prompt,
    extract_json_array,
    translate_findings,
)


def _finding(rule_id: str = "js.sql-injection", file_path: str = "src/db.ts") -> NormalizedFinding:
    message = "User input is concatenated into SQL."
    return NormalizedFinding(
        source="static",
        severity="critical",
        category="sql-injection",
        rule_id=rule_id,
        file_path=file_path,
        line_number=3,
        code_snippet="db.query('SELECT * FROM t WHERE id=' + id)",
        message=message,
        narrative=fallback_narrative("critical", rule_id, message, "sql-injection"),
    )


def _element(n: int) -> dict[str, str]:
    return {
        "plain_english": f"Explanation {n}, like leaving a door open.",
        "business_impact": f"Impact {n}.",
        "fix_prompt": build_fix_prompt(f"My app builds a query from user input ({n}). Use parameterized queries."),
        "verification_step": f"Check {n}.",
    }


def _reply(text: str, status_code: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = {"content": [{"type": "text", "text": text}]}
    return resp


def _patch_client(mock_client_class: MagicMock, post: AsyncMock) -> None:
    mock_instance = MagicMock()
    mock_instance.post = post
    mock_client_class.return_value.__aenter__ = AsyncMock(return_value=mock_instance)
    mock_client_class.return_value.__aexit__ = AsyncMock(return_value=None)


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {"ANTHROPIC_API_KEY": "test-key", "TRANSLATION_BATCH_DELAY_SEC": 0}
    values.update(overrides)
    return Settings(**values)


class TestExtractJsonArray(unittest.TestCase):
    def test_array_embedded_in_prose(self) -> None:
        self.assertEqual(extract_json_array('Sure! Here you go:\n[{"a": 1}]\nThanks.'), [{"a": 1}])

    def test_skips_bracketed_prose(self) -> None:
        self.assertEqual(extract_json_array('Note [see below]: [1, 2]'), [1, 2])

    def test_no_array(self) -> None:
        self.assertIsNone(extract_json_array("I cannot help with that."))
        self.assertIsNone(extract_json_array('{"plain_english": "x"}'))
        self.assertIsNone(extract_json_array(""))


class TestBatchPrompt(unittest.TestCase):
    def test_contains_rule_severity_snippet_and_hint(self) -> None:
        prompt = _build_batch_prompt([_finding()])
        self.assertIn("js.sql-injection", prompt)
        self.assertIn("critical", prompt)
        self.assertIn("SELECT * FROM t", prompt)
        self.assertIn("do NOT include in fix_prompt", prompt)
        self.assertIn("src/db.ts", prompt)

    def test_system_prompt_fixes_preamble(self) -> None:
        self.assertIn(json.dumps(FIX_PROMPT_PREAMBLE), SYSTEM_PROMPT)
        for field in ("plain_english", "business_impact", "fix_prompt", "verification_step"):
            self.assertIn(field, SYSTEM_PROMPT)


class TestTranslateFindings(unittest.TestCase):
    @patch("vibetrace.services.translate.httpx.AsyncClient")
    def test_successful_batch(self, mock_client_class: MagicMock) -> None:
        captured: dict[str, object] = {}

        async def fake_post(url: str, **kwargs: object) -> MagicMock:
            captured["url"] = url
            captured["payload"] = kwargs.get("json")
            captured["headers"] = kwargs.get("headers")
            return _reply("Here:\n" + json.dumps([_element(1), _element(2)]))

        _patch_client(mock_client_class, AsyncMock(side_effect=fake_post))
        findings = [_finding(), _finding("js.xss")]
        outcomes = asyncio.run(translate_findings(findings, _settings()))

        self.assertEqual([source for _, source in outcomes], ["model", "model"])
        self.assertEqual(outcomes[0][0].plain_english, "Explanation 1, like leaving a door open.")
        self.assertTrue(str(captured["url"]).endswith("/v1/messages"))
        self.assertEqual(captured["headers"]["x-api-key"], "test-key")
        payload = captured["payload"]
        self.assertEqual(payload["system"], SYSTEM_PROMPT)
        self.assertEqual(len(payload["messages"]), 1)

    @patch("vibetrace.services.translate.httpx.AsyncClient")
    def test_reply_without_array_keeps_fallbacks(self, mock_client_class: MagicMock) -> None:
        _patch_client(mock_client_class, AsyncMock(return_value=_reply("Sorry, I can't do that.")))
        findings = [_finding(), _finding("js.eval")]
        outcomes = asyncio.run(translate_findings(findings, _settings()))
        for finding, (narrative, source) in zip(findings, outcomes):
            self.assertEqual(source, "fallback")
            self.assertEqual(narrative, finding.narrative)

    @patch("vibetrace.services.translate.httpx.AsyncClient")
    def test_short_array_falls_back_for_missing_elements(self, mock_client_class: MagicMock) -> None:
        _patch_client(mock_client_class, AsyncMock(return_value=_reply(json.dumps([_element(1)]))))
        outcomes = asyncio.run(translate_findings([_finding(), _finding("js.eval")], _settings()))
        self.assertEqual([source for _, source in outcomes], ["model", "fallback"])

    @patch("vibetrace.services.translate.httpx.AsyncClient")
    def test_invalid_element_falls_back(self, mock_client_class: MagicMock) -> None:
        _patch_client(mock_client_class, AsyncMock(return_value=_reply(json.dumps([{"plain_english": "x"}, "junk"]))))
        outcomes = asyncio.run(translate_findings([_finding(), _finding("js.eval")], _settings()))
        self.assertEqual([source for _, source in outcomes], ["fallback", "fallback"])

    @patch("vibetrace.services.translate.httpx.AsyncClient")
    def test_batches_of_five_and_failed_batch_isolated(self, mock_client_class: MagicMock) -> None:
        calls = {"n": 0}

        async def fake_post(url: str, **kwargs: object) -> MagicMock:
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("refused")
            return _reply(json.dumps([_element(i) for i in range(5)]))

        _patch_client(mock_client_class, AsyncMock(side_effect=fake_post))
        findings = [_finding(f"rule-{i}") for i in range(7)]
        outcomes = asyncio.run(translate_findings(findings, _settings()))

        self.assertEqual(calls["n"], 2)
        self.assertEqual([s for _, s in outcomes], ["fallback"] * 5 + ["model"] * 2)

    @patch("vibetrace.services.translate.asyncio.sleep", new_callable=AsyncMock)
    @patch("vibetrace.services.translate.httpx.AsyncClient")
    def test_delay_between_batches(self, mock_client_class: MagicMock, mock_sleep: AsyncMock) -> None:
        _patch_client(mock_client_class, AsyncMock(return_value=_reply("[]")))
        findings = [_finding(f"rule-{i}") for i in range(11)]
        asyncio.run(translate_findings(findings, _settings(TRANSLATION_BATCH_DELAY_SEC=1.5)))
        self.assertEqual(mock_sleep.await_count, 2)
        mock_sleep.assert_awaited_with(1.5)

    @patch("vibetrace.services.translate.httpx.AsyncClient")
    def test_error_status_keeps_fallbacks(self, mock_client_class: MagicMock) -> None:
        _patch_client(mock_client_class, AsyncMock(return_value=_reply("", status_code=529)))
        outcomes = asyncio.run(translate_findings([_finding()], _settings()))
        self.assertEqual(outcomes[0][1], "fallback")

    @patch("vibetrace.services.translate.httpx.AsyncClient")
    def test_reply_past_deadline_keeps_fallbacks(self, mock_client_class: MagicMock) -> None:
        async def trickle(*args, **kwargs):
            await asyncio.sleep(1)
            return _reply(json.dumps([_element(1)]))

        _patch_client(mock_client_class, AsyncMock(side_effect=trickle))
        finding = _finding()
        outcomes = asyncio.run(translate_findings([finding], _settings(TRANSLATION_REQUEST_TIMEOUT_SEC=0.05)))
        self.assertEqual(outcomes, [(finding.narrative, "fallback")])

    @patch("vibetrace.services.translate.httpx.AsyncClient")
    def test_leaked_paths_scrubbed_from_model_output(self, mock_client_class: MagicMock) -> None:
        element = _element(1)
        element["fix_prompt"] = build_fix_prompt(
            "Open /tmp/vibetrace-scan-abc/src/db.ts on line 3 and use parameterized queries."
        )
        _patch_client(mock_client_class, AsyncMock(return_value=_reply(json.dumps([element]))))
        narrative, source = asyncio.run(translate_findings([_finding()], _settings()))[0]
        self.assertEqual(source, "model")
        self.assertNotIn("vibetrace-scan-", narrative.fix_prompt)
        self.assertNotIn("db.ts", narrative.fix_prompt)
        self.assertNotIn("line 3", narrative.fix_prompt)

    @patch("vibetrace.services.translate.httpx.AsyncClient")
    def test_no_api_key_skips_service(self, mock_client_class: MagicMock) -> None:
        outcomes = asyncio.run(translate_findings([_finding()], _settings(ANTHROPIC_API_KEY="")))
        self.assertEqual(outcomes[0][1], "fallback")
        mock_client_class.assert_not_called()

    def test_empty_input(self) -> None:
        self.assertEqual(asyncio.run(translate_findings([], _settings())), [])


if __name__ == "__main__":
    unittest.main()

"""Unit tests for vibetrace.services.narrative: fix-prompt shape, scrubbing, fallback and merge."""

import unittest

from vibetrace.schemas.findings import SANDBOX_DIR_PREFIX
from vibetrace.schemas.translation import TranslatedFinding
from vibetrace.services.narrative import (
    DEFAULT_VERIFICATION_STEP,
    FIX_PROMPT_CLOSING,
    FIX_PROMPT_PREAMBLE,
    build_fix_prompt,
    fallback_narrative,
    merge_translation,
    normalize_fix_prompt,
    scrub_locations,
)


class TestScrubLocations(unittest.TestCase):
    def test_removes_sandbox_directory(self) -> None:
        text = f"Problem in /tmp/{SANDBOX_DIR_PREFIX}x1/lib/auth.js"
        self.assertNotIn(SANDBOX_DIR_PREFIX, scrub_locations(text))

    def test_replaces_source_paths(self) -> None:
        cleaned = scrub_locations("Open src/pages/api/login.ts and change the query.")
        self.assertNotIn("login.ts", cleaned)
        self.assertIn("your code", cleaned)

    def test_removes_line_references(self) -> None:
        cleaned = scrub_locations("The query on line 42 is unsafe.")
        self.assertNotIn("42", cleaned)
        self.assertEqual(cleaned, "The query is unsafe.")

    def test_replaces_bare_file_names(self) -> None:
        self.assertEqual(scrub_locations("Open server.js and replace the query."), "Open your code and replace the query.")
        self.assertEqual(scrub_locations("In db.py, use parameterized queries."), "In your code, use parameterized queries.")

    def test_keeps_framework_names_and_domains(self) -> None:
        text = "Your Next.js app on example.com sends no CSP header."
        self.assertEqual(scrub_locations(text), text)

    def test_dot_files_not_glued_to_previous_word(self) -> None:
        self.assertEqual(scrub_locations("Edit .env to remove the key."), "Edit .env to remove the key.")

    def test_keeps_urls(self) -> None:
        text = "See https://owasp.org/www-community/attacks/xss for details."
        self.assertEqual(scrub_locations(text), text)

    def test_empty(self) -> None:
        self.assertEqual(scrub_locations(""), "")


class TestFixPromptShape(unittest.TestCase):
    def test_build_wraps_body(self) -> None:
        prompt = build_fix_prompt("Please fix my login form.")
        self.assertTrue(prompt.startswith(FIX_PROMPT_PREAMBLE))
        self.assertTrue(prompt.endswith(FIX_PROMPT_CLOSING))
        self.assertIn("Please fix my login form.", prompt)

    def test_normalize_adds_missing_preamble(self) -> None:
        prompt = normalize_fix_prompt("My app builds SQL from user input. Use parameterized queries.")
        self.assertTrue(prompt.startswith(FIX_PROMPT_PREAMBLE))
        self.assertTrue(prompt.endswith('"'))

    def test_normalize_keeps_correct_prompt(self) -> None:
        original = build_fix_prompt("My app builds SQL from user input.")
        self.assertEqual(normalize_fix_prompt(original), original)

    def test_normalize_drops_bare_file_names(self) -> None:
        prompt = normalize_fix_prompt(build_fix_prompt("My server.js builds SQL from user input."))
        self.assertNotIn("server.js", prompt)
        self.assertEqual(prompt, build_fix_prompt("My your code builds SQL from user input."))

    def test_normalize_replaces_paraphrased_preamble(self) -> None:
        prompt = normalize_fix_prompt('In Cursor, paste this exactly: "Fix my query builder."')
        self.assertEqual(prompt, build_fix_prompt("Fix my query builder."))

    def test_normalize_empty_body(self) -> None:
        self.assertEqual(normalize_fix_prompt(FIX_PROMPT_PREAMBLE + '"'), "")
        self.assertEqual(normalize_fix_prompt(""), "")


class TestFallbackNarrative(unittest.TestCase):
    def test_all_fields_populated(self) -> None:
        narrative = fallback_narrative("critical", "js.express.sql-injection", "User input reaches SQL.", "sql-injection")
        self.assertEqual(narrative.plain_english, "User input reaches SQL.")
        self.assertIn("sql injection", narrative.fix_prompt)
        self.assertTrue(narrative.fix_prompt.startswith(FIX_PROMPT_PREAMBLE))
        self.assertTrue(narrative.business_impact)
        self.assertEqual(narrative.verification_step, DEFAULT_VERIFICATION_STEP)

    def test_empty_message_still_populated(self) -> None:
        narrative = fallback_narrative("low", "", "", "other")
        self.assertTrue(narrative.plain_english)
        self.assertTrue(narrative.fix_prompt)

    def test_message_paths_scrubbed(self) -> None:
        narrative = fallback_narrative("high", "r", "Secret found in config/keys.json on line 3", "hardcoded-secrets")
        self.assertNotIn("keys.json", narrative.plain_english)
        self.assertNotIn("keys.json", narrative.fix_prompt)

    def test_double_quotes_do_not_break_prompt(self) -> None:
        narrative = fallback_narrative("medium", "r", 'Call to "eval" detected', "dangerous-functions")
        body = narrative.fix_prompt[len(FIX_PROMPT_PREAMBLE) : -1]
        self.assertNotIn('"', body)

    def test_long_message_truncated(self) -> None:
        narrative = fallback_narrative("low", "r", "word " * 500, "other")
        self.assertLessEqual(len(narrative.plain_english), 601)


class TestMergeTranslation(unittest.TestCase):
    def setUp(self) -> None:
        self.fallback = fallback_narrative("high", "xss", "Reflected input.", "xss")

    def test_model_text_wins_and_is_scrubbed(self) -> None:
        translated = TranslatedFinding(
            plain_english="Your search box repeats whatever people type, like a parrot.",
            business_impact="Attackers could steal sessions.",
            fix_prompt=build_fix_prompt("In app/search.tsx my search page renders raw input. Escape it."),
            verification_step="Search for <b>hi</b>; it should show as text.",
        )
        merged = merge_translation(translated, self.fallback)
        self.assertEqual(merged.plain_english, translated.plain_english)
        self.assertNotIn("search.tsx", merged.fix_prompt)
        self.assertTrue(merged.fix_prompt.startswith(FIX_PROMPT_PREAMBLE))

    def test_missing_business_impact_uses_fallback(self) -> None:
        translated = TranslatedFinding(
            plain_english="Explained.",
            fix_prompt="Please escape output.",
            verification_step="Check it.",
        )
        merged = merge_translation(translated, self.fallback)
        self.assertEqual(merged.business_impact, self.fallback.business_impact)

    def test_empty_fields_use_fallback(self) -> None:
        translated = TranslatedFinding(plain_english="", fix_prompt="", verification_step="  ")
        merged = merge_translation(translated, self.fallback)
        self.assertEqual(merged, self.fallback)


if __name__ == "__main__":
    unittest.main()

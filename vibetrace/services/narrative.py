"""Narrative fields: fix-prompt shape, deterministic fallback, and scrubbing of locations from user-facing text."""

import re

from vibetrace.schemas.findings import SANDBOX_PATH_PATTERN, FindingNarrative, SeverityLevel
from vibetrace.schemas.translation import TranslatedFinding

# Every fix prompt opens with this literal and closes with a double quote.
FIX_PROMPT_PREAMBLE = 'In Lovable (or Cursor), paste this exactly:\n"'
FIX_PROMPT_CLOSING = '"'

DEFAULT_VERIFICATION_STEP = "Re-run the scan and confirm this issue no longer appears in your report."

SEVERITY_IMPACT: dict[str, str] = {
    "critical": "Someone could get at your users' data or take over part of your app right now, with little effort.",
    "high": "An attacker could exploit this with some effort, putting your users' data or your app at risk.",
    "medium": "This weakens your app's security and makes other attacks easier to pull off.",
    "low": "This is a best-practice improvement that makes your app harder to misuse.",
    "info": "This is worth knowing about but does not put your app at risk on its own.",
}

MAX_FALLBACK_MESSAGE_CHARS = 600

_SOURCE_EXTENSIONS = (
    "py|js|jsx|mjs|cjs|ts|tsx|vue|svelte|rb|php|go|java|kt|cs|rs|swift|sql|html|htm|"
    "json|ya?ml|toml|env|sh|c|cc|cpp|h|hpp"
)
# Source paths and bare file names (src/app/db.ts, ./lib/auth.py:12, server.js), but
# not URL paths, domains or framework names such as Node.js.
_FRAMEWORK_NAMES = r"(?i:node|next|nuxt|vue|react|express|nest|three|chart|alpine|ember|backbone)\.js\b"
_SOURCE_PATH_PATTERN = re.compile(
    r"(?<![\w/:.@-])(?!" + _FRAMEWORK_NAMES + r")(?:\.{0,2}/)?(?:[\w@.\[\]-]+/)*[\w@.\[\]-]+\.(?:"
    + _SOURCE_EXTENSIONS
    + r")\b(?!/)(?::\d+(?::\d+)?)?"
)
_LINE_REFERENCE_PATTERN = re.compile(
    r"\s*\(?\b(?:(?:at|on|in|near)\s+)?lines?\s+\d+(?:\s*(?:-|–|to|and)\s*\d+)?\)?",
    re.IGNORECASE,
)
_MULTISPACE_PATTERN = re.compile(r"[ \t]{2,}")
_SPACE_BEFORE_PUNCT_PATTERN = re.compile(r"[ \t]+([,.;:!?])(?=\s|$)")


def scrub_locations(text: str) -> str:
    """Remove checkout directories, source-file paths and line references from user-facing text."""
    if not text:
        return ""
    cleaned = SANDBOX_PATH_PATTERN.sub("", text)
    cleaned = _SOURCE_PATH_PATTERN.sub("your code", cleaned)
    cleaned = _LINE_REFERENCE_PATTERN.sub("", cleaned)
    cleaned = _MULTISPACE_PATTERN.sub(" ", cleaned)
    cleaned = _SPACE_BEFORE_PUNCT_PATTERN.sub(r"\1", cleaned)
    return cleaned.strip()


def build_fix_prompt(body: str) -> str:
    """Wrap body in the fixed preamble and closing quote."""
    inner = body.strip().strip('"').strip()
    return f"{FIX_PROMPT_PREAMBLE}{inner}{FIX_PROMPT_CLOSING}"


def normalize_fix_prompt(text: str) -> str:
    """
    Force a model-produced fix prompt into the required shape.

    Locations are scrubbed; a missing preamble is added; a missing closing quote is appended.
    """
    cleaned = scrub_locations(text)
    if not cleaned:
        return ""
    if cleaned.startswith(FIX_PROMPT_PREAMBLE):
        body = cleaned[len(FIX_PROMPT_PREAMBLE):]
    else:
        # Model paraphrased or dropped the preamble: keep only the prompt body.
        body = cleaned
        marker = "paste this exactly:"
        idx = body.lower().find(marker)
        if idx != -1:
            body = body[idx + len(marker):]
    if not body.strip().strip('"').strip():
        return ""
    return build_fix_prompt(body)


def _rule_label(rule_id: str) -> str:
    """Last dotted segment of a rule id, dashes as spaces (python.lang.sql-injection -> sql injection)."""
    tail = (rule_id or "").strip().rsplit(".", 1)[-1]
    return tail.replace("-", " ").replace("_", " ").strip() or "a security rule"


def fallback_narrative(
    severity: SeverityLevel,
    rule_id: str,
    message: str,
    category: str,
) -> FindingNarrative:
    """
    Deterministic, path-free narrative derived from the raw tool message.

    Used until (and whenever) the language model cannot provide one.
    """
    label = _rule_label(rule_id)
    detail = scrub_locations(message)
    if len(detail) > MAX_FALLBACK_MESSAGE_CHARS:
        detail = detail[: MAX_FALLBACK_MESSAGE_CHARS - 3].rstrip() + "..."
    if not detail:
        detail = f"An automated check flagged a {category.replace('-', ' ')} issue ({label}) in your app."
    if detail[-1] not in ".!?":
        detail += "."
    fix_body = (
        f"I have a {severity} security issue in my app that an automated scan flagged as {label}. "
        f"{detail.replace(chr(34), chr(39))} Please find the code in my app that matches this "
        "description, explain in simple terms what is wrong, and fix it safely without changing "
        "how the app works for normal users."
    )
    return FindingNarrative(
        plain_english=detail,
        business_impact=SEVERITY_IMPACT.get(severity, SEVERITY_IMPACT["low"]),
        fix_prompt=build_fix_prompt(fix_body),
        verification_step=DEFAULT_VERIFICATION_STEP,
    )


def merge_translation(
    translated: TranslatedFinding,
    fallback: FindingNarrative,
) -> FindingNarrative:
    """Combine a model reply with the fallback: scrubbed model text wins, empty fields keep the fallback."""
    plain_english = scrub_locations(translated.plain_english or "")
    business_impact = scrub_locations(translated.business_impact or "")
    fix_prompt = normalize_fix_prompt(translated.fix_prompt or "")
    verification_step = scrub_locations(translated.verification_step or "")
    return FindingNarrative(
        plain_english=plain_english or fallback.plain_english,
        business_impact=business_impact or fallback.business_impact,
        fix_prompt=fix_prompt or fallback.fix_prompt,
        verification_step=verification_step or fallback.verification_step,
    )

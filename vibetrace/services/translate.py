"""
Translation batcher: rewrite technical findings into plain-language narratives via the Anthropic Messages API.

Findings are sent in fixed-size batches, sequentially, with a delay between
batches. Any batch-level failure (transport, status, no JSON array) and any
missing or invalid element leaves the affected findings on their fallback
narratives; nothing here raises into the scan pipeline.
"""

import asyncio
import json
import logging
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from vibetrace.schemas.findings import FindingNarrative, NarrativeSource, NormalizedFinding
from vibetrace.schemas.translation import TranslatedFinding
from vibetrace.services.narrative import FIX_PROMPT_PREAMBLE, merge_translation

if TYPE_CHECKING:
    from vibetrace.core.config import Settings

logger = logging.getLogger(__name__)

MAX_SNIPPET_CHARS = 1500
MAX_MESSAGE_CHARS = 1000

SYSTEM_PROMPT = f"""You translate security scanner findings for non-technical founders who built their app with AI coding tools such as Lovable, Cursor or Bolt.

For each finding you receive, return one JSON object with exactly these fields:
- "plain_english": at most two sentences explaining the problem in everyday language, with a real-world analogy. No jargon.
- "business_impact": what could happen to the user's customers or business, calibrated to the severity (critical means urgent and severe; low means minor).
- "fix_prompt": a prompt the user will paste into their AI coding tool. Rules:
  (a) never mention file paths, file names, folder names, line numbers or server locations;
  (b) write in the first person, as the user speaking to their own AI coding tool ("My app has...", "Please fix...");
  (c) start with exactly {json.dumps(FIX_PROMPT_PREAMBLE)} and end with a closing double quote;
  (d) describe the actual vulnerable code pattern shown in the snippet so the tool can find it;
  (e) name the concrete safe replacement pattern to use instead.
- "verification_step": one plain-language check the user can do after applying the fix.

Respond with ONLY a JSON array containing one object per finding, in the same order as the input. No markdown, no code fence, no extra text."""


class TranslationError(Exception):
    """Raised when one translation batch fails (service unreachable, bad status, or no JSON array in the reply)."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


def _build_batch_prompt(findings: Sequence[NormalizedFinding]) -> str:
    """One user message describing every finding in the batch, numbered in order."""
    sections = []
    for index, finding in enumerate(findings, start=1):
        lines = [
            f"Finding {index}:",
            f"Rule: {finding.rule_id}",
            f"Severity: {finding.severity}",
            f"Message: {finding.message[:MAX_MESSAGE_CHARS] or '(none)'}",
            f"Code snippet:\n{finding.code_snippet[:MAX_SNIPPET_CHARS] or '(not available)'}",
        ]
        if finding.file_path:
            lines.append(f"File hint (context only, do NOT include in fix_prompt): {finding.file_path}")
        sections.append("\n".join(lines))
    body = "\n\n".join(sections)
    return (
        f"Translate these {len(findings)} findings. Return a JSON array with exactly "
        f"{len(findings)} objects, in order.\n\n{body}"
    )


def extract_json_array(text: str) -> list | None:
    """Return the first substring of text that decodes as a JSON array, or None."""
    if not text:
        return None
    decoder = json.JSONDecoder()
    start = text.find("[")
    while start != -1:
        try:
            parsed, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("[", start + 1)
            continue
        if isinstance(parsed, list):
            return parsed
        start = text.find("[", start + 1)
    return None


def _response_text(body: dict) -> str:
    """Concatenate the text blocks of a Messages API response."""
    blocks = body.get("content") or []
    return "".join(
        block.get("text", "")
        for block in blocks
        if isinstance(block, dict) and block.get("type") == "text"
    )


async def _request_batch(
    client: httpx.AsyncClient,
    findings: Sequence[NormalizedFinding],
    settings: "Settings",
) -> list:
    """Send one batch and return the parsed JSON array. Raises TranslationError."""
    api_key = settings.ANTHROPIC_API_KEY.get_secret_value() if settings.ANTHROPIC_API_KEY else ""
    url = f"{settings.ANTHROPIC_BASE_URL.rstrip('/')}/v1/messages"
    payload = {
        "model": settings.ANTHROPIC_MODEL,
        "max_tokens": settings.ANTHROPIC_MAX_TOKENS,
        "system": SYSTEM_PROMPT,
        "messages": [{"role": "user", "content": _build_batch_prompt(findings)}],
    }
    headers = {
        "x-api-key": api_key,
        "anthropic-version": settings.ANTHROPIC_VERSION,
        "content-type": "application/json",
    }
    start = time.perf_counter()
    try:
        async with asyncio.timeout(settings.TRANSLATION_REQUEST_TIMEOUT_SEC):
            response = await client.post(url, json=payload, headers=headers)
    except (httpx.TimeoutException, TimeoutError) as e:
        raise TranslationError(
            "Translation request timed out. Try increasing TRANSLATION_REQUEST_TIMEOUT_SEC.",
            cause=e,
        ) from e
    except httpx.HTTPError as e:
        raise TranslationError("Translation service is unreachable.", cause=e) from e
    elapsed = time.perf_counter() - start

    logger.info(
        "Translation request completed",
        extra={
            "llm_latency_seconds": elapsed,
            "finding_count": len(findings),
            "model": settings.ANTHROPIC_MODEL,
            "status_code": response.status_code,
        },
    )
    if response.status_code != 200:
        raise TranslationError(f"Translation service returned status {response.status_code}.")

    try:
        body = response.json()
    except json.JSONDecodeError as e:
        raise TranslationError("Translation response body is not valid JSON.", cause=e) from e
    if not isinstance(body, dict):
        raise TranslationError("Translation response body is not a JSON object.")

    items = extract_json_array(_response_text(body))
    if items is None:
        raise TranslationError("Model reply contains no JSON array.")
    return items


def _apply_batch(
    findings: Sequence[NormalizedFinding],
    items: list,
) -> list[tuple[FindingNarrative, NarrativeSource]]:
    """Pair each finding with its reply element; missing or invalid elements keep the fallback."""
    outcomes: list[tuple[FindingNarrative, NarrativeSource]] = []
    for index, finding in enumerate(findings):
        item = items[index] if index < len(items) else None
        if not isinstance(item, dict):
            outcomes.append((finding.narrative, "fallback"))
            continue
        try:
            translated = TranslatedFinding.model_validate(item)
        except ValidationError:
            logger.warning(
                "Translation element invalid; keeping fallback",
                extra={"rule_id": finding.rule_id, "batch_index": index},
            )
            outcomes.append((finding.narrative, "fallback"))
            continue
        outcomes.append((merge_translation(translated, finding.narrative), "model"))
    return outcomes


async def translate_findings(
    findings: Sequence[NormalizedFinding],
    settings: "Settings",
) -> list[tuple[FindingNarrative, NarrativeSource]]:
    """
    Translate findings in batches of TRANSLATION_BATCH_SIZE.

    Returns one (narrative, source) pair per input finding, in input order.
    Without an API key every finding keeps its fallback narrative.
    """
    outcomes: list[tuple[FindingNarrative, NarrativeSource]] = [
        (f.narrative, "fallback") for f in findings
    ]
    if not findings:
        return outcomes
    if settings.ANTHROPIC_API_KEY is None:
        logger.info(
            "Translation skipped: no API key configured",
            extra={"finding_count": len(findings)},
        )
        return outcomes

    batch_size = settings.TRANSLATION_BATCH_SIZE
    timeout = httpx.Timeout(settings.TRANSLATION_REQUEST_TIMEOUT_SEC)
    async with httpx.AsyncClient(timeout=timeout) as client:
        for offset in range(0, len(findings), batch_size):
            if offset > 0 and settings.TRANSLATION_BATCH_DELAY_SEC > 0:
                await asyncio.sleep(settings.TRANSLATION_BATCH_DELAY_SEC)
            batch = findings[offset : offset + batch_size]
            try:
                items = await _request_batch(client, batch, settings)
            except TranslationError as e:
                logger.warning(
                    "Translation batch failed; keeping fallback narratives: %s",
                    e.message,
                    extra={"batch_offset": offset, "finding_count": len(batch)},
                )
                continue
            except Exception:
                logger.exception(
                    "Translation batch raised unexpectedly; keeping fallback narratives",
                    extra={"batch_offset": offset, "finding_count": len(batch)},
                )
                continue
            outcomes[offset : offset + len(batch)] = _apply_batch(batch, items)

    translated = sum(1 for _, source in outcomes if source == "model")
    logger.info(
        "Translation completed",
        extra={"finding_count": len(findings), "translated_count": translated},
    )
    return outcomes

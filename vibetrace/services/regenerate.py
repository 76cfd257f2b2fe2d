"""Narrative regeneration: re-translate persisted findings left on the fallback or with a leaked checkout path."""

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any

from vibetrace.models import Finding
from vibetrace.schemas.findings import (
    SEVERITY_VALUES,
    FindingNarrative,
    FindingSource,
    NarrativeSource,
    NormalizedFinding,
    contains_sandbox_path,
)
from vibetrace.services.narrative import fallback_narrative
from vibetrace.services.normalize import DYNAMIC_CATEGORY, SEO_CATEGORY, strip_sandbox_paths
from vibetrace.services.scan_store import ScanStore
from vibetrace.services.translate import translate_findings

if TYPE_CHECKING:
    from vibetrace.core.config import Settings

logger = logging.getLogger(__name__)

Translator = Callable[..., Awaitable[list[tuple[FindingNarrative, NarrativeSource]]]]


def _source_for(category: str) -> FindingSource:
    if category == DYNAMIC_CATEGORY:
        return "dynamic"
    if category == SEO_CATEGORY:
        return "seo"
    return "static"


def _message_from_raw(raw: dict[str, Any] | None) -> str:
    """Recover the tool message from a stored semgrep result or ZAP alert payload."""
    if not isinstance(raw, dict):
        return ""
    extra = raw.get("extra")
    if isinstance(extra, dict) and isinstance(extra.get("message"), str):
        return extra["message"]
    parts = [raw.get(key) for key in ("name", "desc")]
    return ". ".join(p.strip().rstrip(".") for p in parts if isinstance(p, str) and p.strip())


def finding_from_row(row: Finding) -> NormalizedFinding:
    """Rebuild a NormalizedFinding (with a fresh fallback narrative) from a persisted row."""
    severity = row.severity if row.severity in SEVERITY_VALUES else "low"
    message = strip_sandbox_paths(_message_from_raw(row.raw_output)).strip()
    return NormalizedFinding(
        source=_source_for(row.category),
        severity=severity,
        category=row.category,
        rule_id=row.rule_id,
        file_path=strip_sandbox_paths(row.file_path or "").lstrip("/"),
        line_number=row.line_number,
        code_snippet=strip_sandbox_paths(row.code_snippet or ""),
        message=message,
        raw_output=None,
        narrative=fallback_narrative(severity, row.rule_id, message, row.category),
        narrative_source="fallback",
    )


async def regenerate_narratives(
    store: ScanStore,
    settings: "Settings",
    translator: Translator = translate_findings,
    limit: int | None = None,
) -> int:
    """
    Re-run translation over findings that need it and update them in place.

    A leaked fix prompt is replaced even when translation falls back again.
    Returns the number of findings updated.
    """
    rows = store.findings_needing_regeneration(limit=limit)
    if not rows:
        logger.info("No findings need narrative regeneration")
        return 0

    findings: Sequence[NormalizedFinding] = [finding_from_row(row) for row in rows]
    outcomes = await translator(findings, settings)

    updates: list[tuple[int, FindingNarrative, NarrativeSource]] = []
    for row, (narrative, source) in zip(rows, outcomes):
        if source == "model" or contains_sandbox_path(row.fix_prompt):
            updates.append((row.id, narrative, source))
    updated = store.update_narratives(updates)
    logger.info(
        "Narrative regeneration completed",
        extra={"finding_count": len(rows), "updated_count": updated},
    )
    return updated

"""Pydantic schemas for findings: normalized internal representation, narrative fields, and API output."""

import re
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Reusable severity levels for validation and type safety across schemas.
SeverityLevel = Literal["critical", "high", "medium", "low", "info"]

SEVERITY_VALUES: frozenset[str] = frozenset({"critical", "high", "medium", "low", "info"})

# Which adapter produced a finding.
FindingSource = Literal["static", "dynamic", "seo"]

# Where the narrative fields came from: the language model, the deterministic
# fallback, or hand-written text attached by the adapter (SEO checks).
NarrativeSource = Literal["model", "fallback", "authored"]

FindingStatus = Literal["open", "fixed", "accepted", "false_positive"]

# Checkout directories are created as <tmp>/vibetrace-scan-XXXX; nothing under
# such a directory may appear in a persisted or user-facing location.
# Only filesystem paths match: a match never starts inside a scheme://host URL.
SANDBOX_DIR_PREFIX = "vibetrace-scan-"
SANDBOX_PATH_PATTERN = re.compile(
    r"(?<![\w./@-])(?!(?<=:)//)(?:(?:(?!://)[^\s\"'`(])*/)?"
    + re.escape(SANDBOX_DIR_PREFIX)
    + r"[^/\s\"'`)]*/?"
)

URL_SCHEMES = ("http://", "https://")


def contains_sandbox_path(text: str | None) -> bool:
    """True if text contains anything that looks like a checkout directory."""
    if not text:
        return False
    return SANDBOX_PATH_PATTERN.search(text) is not None


class FindingNarrative(BaseModel):
    """The four user-facing narrative fields attached to every finding."""

    plain_english: str = Field(
        ...,
        min_length=1,
        description="Non-technical explanation (at most two sentences, with an analogy).",
    )
    business_impact: str = Field(
        ...,
        min_length=1,
        description="What could happen to the business, calibrated to severity.",
    )
    fix_prompt: str = Field(
        ...,
        min_length=1,
        description="Copy-pasteable prompt for an AI coding tool; never names paths or line numbers.",
    )
    verification_step: str = Field(
        ...,
        min_length=1,
        description="Plain-language check the user performs after applying the fix.",
    )


class NormalizedFinding(BaseModel):
    """Unified internal representation of a single finding, regardless of adapter."""

    source: FindingSource = Field(..., description="Adapter that produced the finding.")
    severity: SeverityLevel = Field(
        ...,
        description="Severity level: critical, high, medium, low, or info.",
    )
    category: str = Field(
        ...,
        min_length=1,
        description="Classifier such as sql-injection, hardcoded-secrets, seo, dast.",
    )
    rule_id: str = Field(
        ...,
        min_length=1,
        description="Tool rule identifier (semgrep check_id, zap-<pluginid>, seo-<check>).",
    )
    file_path: str = Field(
        default="",
        description="Repository-relative path for static findings; URL for dynamic and SEO findings.",
    )
    line_number: int | None = Field(
        default=None,
        ge=0,
        description="Start line for static findings.",
    )
    code_snippet: str = Field(
        default="",
        description="Vulnerable code lines or response evidence.",
    )
    message: str = Field(
        default="",
        description="Tool message, markup-free; source of the fallback narrative.",
    )
    raw_output: dict[str, Any] | None = Field(
        default=None,
        description="Original tool payload for audit and debugging.",
    )
    narrative: FindingNarrative = Field(
        ...,
        description="Narrative fields; the fallback until translation replaces them.",
    )
    narrative_source: NarrativeSource = Field(
        default="fallback",
        description="Origin of the narrative fields.",
    )

    @field_validator("file_path")
    @classmethod
    def validate_file_path_sanitized(cls, v: str) -> str:
        # URL locations (dynamic and SEO) are not filesystem paths.
        if v.startswith(URL_SCHEMES):
            return v
        if contains_sandbox_path(v):
            raise ValueError("file_path must not contain a checkout directory")
        return v

    @property
    def needs_translation(self) -> bool:
        """True while the narrative is still the deterministic fallback."""
        return self.narrative_source == "fallback"


class FindingOut(BaseModel):
    """Finding as returned by the API (raw tool payload omitted)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    scan_id: int
    severity: SeverityLevel
    category: str
    rule_id: str
    file_path: str
    line_number: int | None = None
    code_snippet: str
    plain_english: str
    business_impact: str
    fix_prompt: str
    verification_step: str
    narrative_source: NarrativeSource
    status: FindingStatus
    created_at: datetime | None = None

"""Pydantic schemas for scans: status lifecycle, API request/response, and completion summary."""

import re
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic.alias_generators import to_camel

ScanStatus = Literal["queued", "cloning", "scanning", "translating", "complete", "failed"]

# Forward order of the non-failure phases; a scan never moves to an earlier entry.
STATUS_ORDER: tuple[ScanStatus, ...] = (
    "queued",
    "cloning",
    "scanning",
    "translating",
    "complete",
)

TERMINAL_STATUSES: frozenset[str] = frozenset({"complete", "failed"})

# owner/name as accepted by the git host; no URL, credentials or path traversal.
REPO_FULL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


def can_transition(current: str, target: str) -> bool:
    """
    Return True if a scan may move from current to target status.

    Any non-terminal status may move to 'failed'; otherwise the target must be
    strictly later in STATUS_ORDER ('cloning' may be skipped for URL-only scans).
    """
    if current in TERMINAL_STATUSES:
        return False
    if target == "failed":
        return True
    if current not in STATUS_ORDER or target not in STATUS_ORDER:
        return False
    current_idx = STATUS_ORDER.index(current)
    target_idx = STATUS_ORDER.index(target)
    if target_idx <= current_idx:
        return False
    # Phases other than cloning may not be skipped.
    skipped = STATUS_ORDER[current_idx + 1 : target_idx]
    return all(s == "cloning" for s in skipped)


class SeverityCounts(BaseModel):
    """Per-severity finding counters stored on the scan (info is counted only in the total)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    critical: int = Field(default=0, ge=0)
    high: int = Field(default=0, ge=0)
    medium: int = Field(default=0, ge=0)
    low: int = Field(default=0, ge=0)


class ScanCreateRequest(BaseModel):
    """Request body for POST /api/v1/scans."""

    user_id: int = Field(..., ge=1, description="Owner of the scan.")
    repo_full_name: str | None = Field(
        default=None,
        max_length=512,
        description="Repository as owner/name on the configured git host.",
    )
    access_token: SecretStr | None = Field(
        default=None,
        description="Token used for the authenticated shallow checkout; required with repo_full_name.",
    )
    target_url: str | None = Field(
        default=None,
        max_length=2048,
        description="Deployed site to analyze (dynamic and SEO passes).",
    )

    @field_validator("repo_full_name")
    @classmethod
    def validate_repo_full_name(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not REPO_FULL_NAME_PATTERN.fullmatch(v) or ".." in v:
            raise ValueError("repo_full_name must look like owner/name")
        return v

    @field_validator("target_url")
    @classmethod
    def validate_target_url(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        s = v.strip().lower()
        if not (s.startswith("http://") or s.startswith("https://")):
            raise ValueError("target_url must use http or https")
        return v.strip()

    @model_validator(mode="after")
    def validate_targets(self) -> "ScanCreateRequest":
        if self.repo_full_name is None and self.target_url is None:
            raise ValueError("At least one of repo_full_name or target_url is required")
        if self.repo_full_name is not None and (
            self.access_token is None or not self.access_token.get_secret_value().strip()
        ):
            raise ValueError("access_token is required when repo_full_name is set")
        return self


class ScanCreateResponse(BaseModel):
    """Response for POST /api/v1/scans; results are observed by polling the scan."""

    scan_id: int
    status: ScanStatus


class ScanOut(BaseModel):
    """Scan record as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    repository_id: int | None = None
    target_url: str | None = None
    status: ScanStatus
    critical_count: int
    high_count: int
    medium_count: int
    low_count: int
    total_findings: int
    score: int | None = None
    includes_dynamic: bool
    duration_seconds: int | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ScanCompleteSummary(BaseModel):
    """Payload handed to the notification collaborator when a scan completes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    scan_id: int
    target_name: str
    score: int = Field(..., ge=0, le=100)
    total_findings: int = Field(..., ge=0)
    counts_by_severity: SeverityCounts
    completed_at: datetime

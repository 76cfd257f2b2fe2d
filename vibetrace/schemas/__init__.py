"""Pydantic request/response schemas."""

from vibetrace.schemas.analyzers import (
    AnalyzerOutput,
    DynamicResult,
    SemgrepOutput,
    SemgrepResult,
    SeoCheckFinding,
    SeoResult,
    StaticResult,
    ZapAlert,
    ZapReport,
)
from vibetrace.schemas.findings import (
    FindingNarrative,
    FindingOut,
    NormalizedFinding,
    SeverityLevel,
)
from vibetrace.schemas.health import HealthResponse
from vibetrace.schemas.scan import (
    ScanCompleteSummary,
    ScanCreateRequest,
    ScanCreateResponse,
    ScanOut,
    ScanStatus,
    SeverityCounts,
)
from vibetrace.schemas.translation import TranslatedFinding

__all__ = [
    "AnalyzerOutput",
    "DynamicResult",
    "FindingNarrative",
    "FindingOut",
    "HealthResponse",
    "NormalizedFinding",
    "ScanCompleteSummary",
    "ScanCreateRequest",
    "ScanCreateResponse",
    "ScanOut",
    "ScanStatus",
    "SemgrepOutput",
    "SemgrepResult",
    "SeoCheckFinding",
    "SeoResult",
    "SeverityCounts",
    "SeverityLevel",
    "StaticResult",
    "TranslatedFinding",
    "ZapAlert",
    "ZapReport",
]

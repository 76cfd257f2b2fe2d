"""Pydantic schemas for analyzer tool output and the tagged adapter result type."""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vibetrace.schemas.findings import FindingNarrative, SeverityLevel


class SemgrepPosition(BaseModel):
    """Line/column position in a semgrep result."""

    model_config = ConfigDict(extra="ignore")

    line: int = 0
    col: int = 0


class SemgrepExtra(BaseModel):
    """The 'extra' block of a semgrep result."""

    model_config = ConfigDict(extra="allow")

    message: str = ""
    severity: str = ""
    lines: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class SemgrepResult(BaseModel):
    """One entry of semgrep's JSON 'results' array."""

    model_config = ConfigDict(extra="allow")

    check_id: str = Field(..., min_length=1)
    path: str = ""
    start: SemgrepPosition = Field(default_factory=SemgrepPosition)
    end: SemgrepPosition = Field(default_factory=SemgrepPosition)
    extra: SemgrepExtra = Field(default_factory=SemgrepExtra)


class SemgrepError(BaseModel):
    """One entry of semgrep's JSON 'errors' array."""

    model_config = ConfigDict(extra="allow")

    message: str = ""


class SemgrepOutput(BaseModel):
    """Top-level semgrep JSON document."""

    model_config = ConfigDict(extra="ignore")

    results: list[SemgrepResult] = Field(default_factory=list)
    errors: list[SemgrepError] = Field(default_factory=list)


class ZapAlert(BaseModel):
    """One alert from a ZAP JSON report; text fields may carry HTML markup."""

    model_config = ConfigDict(extra="allow")

    riskcode: int | None = None
    name: str = ""
    desc: str = ""
    solution: str = ""
    evidence: str = ""
    pluginid: str = ""

    @field_validator("riskcode", mode="before")
    @classmethod
    def coerce_riskcode(cls, v: Any) -> int | None:
        # ZAP writes risk codes as strings ("3"); unknown values normalize to low later.
        if v is None or isinstance(v, bool):
            return None
        try:
            return int(str(v).strip())
        except (TypeError, ValueError):
            return None

    @field_validator("pluginid", mode="before")
    @classmethod
    def coerce_pluginid(cls, v: Any) -> str:
        return "" if v is None else str(v)


class ZapSite(BaseModel):
    model_config = ConfigDict(extra="ignore")

    alerts: list[ZapAlert] = Field(default_factory=list)


class ZapReport(BaseModel):
    """Top-level ZAP JSON report: {site: [{alerts: [...]}]}."""

    model_config = ConfigDict(extra="ignore")

    site: list[ZapSite] = Field(default_factory=list)


class SeoCheckFinding(BaseModel):
    """Result of one failed SEO check; narrative is authored at generation time."""

    severity: SeverityLevel
    rule_id: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    evidence: str = ""
    narrative: FindingNarrative


class StaticResult(BaseModel):
    """Static-code adapter output."""

    kind: Literal["static"] = "static"
    sandbox_root: str = Field(..., description="Checkout directory that semgrep paths are relative to.")
    results: list[SemgrepResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


class DynamicResult(BaseModel):
    """Dynamic-site adapter output."""

    kind: Literal["dynamic"] = "dynamic"
    target_url: str
    alerts: list[ZapAlert] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


class SeoResult(BaseModel):
    """SEO adapter output."""

    kind: Literal["seo"] = "seo"
    target_url: str
    findings: list[SeoCheckFinding] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


AnalyzerOutput = Annotated[
    Union[StaticResult, DynamicResult, SeoResult],
    Field(discriminator="kind"),
]

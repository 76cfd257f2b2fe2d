"""Normalize analyzer output (semgrep, ZAP, SEO checks) to the unified finding representation."""

import re
from collections.abc import Callable
from typing import Any

from bs4 import BeautifulSoup

from vibetrace.schemas.analyzers import (
    AnalyzerOutput,
    DynamicResult,
    SemgrepResult,
    SeoResult,
    StaticResult,
    ZapAlert,
)
from vibetrace.schemas.findings import SANDBOX_PATH_PATTERN, NormalizedFinding, SeverityLevel
from vibetrace.services.narrative import fallback_narrative

# Semgrep severity vocabulary (case-insensitive) -> canonical level. Anything else is low.
_STATIC_SEVERITY: dict[str, SeverityLevel] = {
    "error": "critical",
    "warning": "high",
    "info": "medium",
}

# ZAP risk codes -> canonical level. Unknown codes are low.
_RISK_CODE_SEVERITY: dict[int, SeverityLevel] = {
    3: "critical",
    2: "high",
    1: "medium",
    0: "low",
}

# Ordered category table: the first row whose any needle occurs in the rule id wins.
CATEGORY_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("secret", "hardcoded", "password"), "hardcoded-secrets"),
    (("sql", "injection"), "sql-injection"),
    (("xss", "cross-site"), "xss"),
    (("auth", "session"), "missing-auth"),
    (("idor", "object-reference"), "idor"),
    (("crypto", "encrypt"), "insecure-crypto"),
    (("eval", "dangerous"), "dangerous-functions"),
    (("supabase", "firebase"), "exposed-credentials"),
    (("input", "valid"), "missing-validation"),
)
DEFAULT_CATEGORY = "other"
DYNAMIC_CATEGORY = "dast"
SEO_CATEGORY = "seo"

_DEFAULT_DYNAMIC_RULE = "zap-alert"
_WHITESPACE_PATTERN = re.compile(r"\s+")


def map_static_severity(raw_severity: str | None) -> SeverityLevel:
    """Map a semgrep severity (ERROR/WARNING/INFO) to the canonical scale."""
    if not raw_severity:
        return "low"
    return _STATIC_SEVERITY.get(raw_severity.strip().lower(), "low")


def map_risk_code(risk_code: int | str | None) -> SeverityLevel:
    """Map a ZAP risk code (3/2/1/0) to the canonical scale; unknown codes are low."""
    if risk_code is None or isinstance(risk_code, bool):
        return "low"
    try:
        code = int(str(risk_code).strip())
    except (TypeError, ValueError):
        return "low"
    return _RISK_CODE_SEVERITY.get(code, "low")


def categorise_rule(rule_id: str | None) -> str:
    """Derive a category from a static-analysis rule id using CATEGORY_RULES (first match wins)."""
    if not rule_id:
        return DEFAULT_CATEGORY
    lowered = rule_id.lower()
    for needles, category in CATEGORY_RULES:
        if any(needle in lowered for needle in needles):
            return category
    return DEFAULT_CATEGORY


def strip_sandbox_paths(text: str | None, sandbox_root: str | None = None) -> str:
    """
    Remove the checkout directory from text.

    The known root is stripped first; any remaining checkout-directory fragment
    is removed by pattern so no internal layout survives normalization.
    """
    if not text:
        return ""
    result = text
    if sandbox_root:
        root = sandbox_root.rstrip("/")
        result = result.replace(root + "/", "").replace(root, "")
    result = SANDBOX_PATH_PATTERN.sub("", result)
    return result


def strip_markup(value: str | None) -> str:
    """Return the text content of an HTML fragment with whitespace collapsed."""
    if not value:
        return ""
    text = BeautifulSoup(value, "html.parser").get_text(" ")
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


def _sanitize_payload(value: Any, sandbox_root: str | None) -> Any:
    """Apply strip_sandbox_paths to every string in a JSON-like payload."""
    if isinstance(value, str):
        return strip_sandbox_paths(value, sandbox_root)
    if isinstance(value, dict):
        return {k: _sanitize_payload(v, sandbox_root) for k, v in value.items()}
    if isinstance(value, list):
        return [_sanitize_payload(v, sandbox_root) for v in value]
    return value


def normalize_static_result(result: SemgrepResult, sandbox_root: str | None) -> NormalizedFinding:
    """Convert one semgrep result to a NormalizedFinding with a sandbox-free location."""
    severity = map_static_severity(result.extra.severity)
    category = categorise_rule(result.check_id)
    file_path = strip_sandbox_paths(result.path, sandbox_root).lstrip("/")
    message = strip_sandbox_paths(result.extra.message, sandbox_root).strip()
    line = result.start.line if result.start.line > 0 else None
    return NormalizedFinding(
        source="static",
        severity=severity,
        category=category,
        rule_id=result.check_id,
        file_path=file_path,
        line_number=line,
        code_snippet=strip_sandbox_paths(result.extra.lines, sandbox_root),
        message=message,
        raw_output=_sanitize_payload(result.model_dump(mode="json"), sandbox_root),
        narrative=fallback_narrative(severity, result.check_id, message, category),
        narrative_source="fallback",
    )


def normalize_static(output: StaticResult) -> list[NormalizedFinding]:
    """Normalize all semgrep results from a static-code adapter run."""
    return [normalize_static_result(r, output.sandbox_root) for r in output.results]


def normalize_zap_alert(alert: ZapAlert, target_url: str) -> NormalizedFinding:
    """Convert one ZAP alert to a NormalizedFinding; HTML is stripped from every text field."""
    severity = map_risk_code(alert.riskcode)
    name = strip_markup(alert.name)
    desc = strip_markup(alert.desc)
    solution = strip_markup(alert.solution)
    evidence = strip_markup(alert.evidence)
    rule_id = f"zap-{alert.pluginid}" if alert.pluginid else _DEFAULT_DYNAMIC_RULE
    message = ". ".join(p.rstrip(".") for p in (name, desc) if p)
    raw = alert.model_dump(mode="json")
    for key, value in (("name", name), ("desc", desc), ("solution", solution), ("evidence", evidence)):
        raw[key] = value
    narrative = fallback_narrative(severity, rule_id, message, DYNAMIC_CATEGORY)
    if solution:
        narrative = narrative.model_copy(
            update={"verification_step": f"{solution.rstrip('.')}. Then re-run the scan to confirm the alert is gone."}
        )
    return NormalizedFinding(
        source="dynamic",
        severity=severity,
        category=DYNAMIC_CATEGORY,
        rule_id=rule_id,
        file_path=target_url,
        line_number=None,
        code_snippet=evidence,
        message=message,
        raw_output=raw,
        narrative=narrative,
        narrative_source="fallback",
    )


def normalize_dynamic(output: DynamicResult) -> list[NormalizedFinding]:
    """Normalize all alerts from a dynamic-site adapter run."""
    return [normalize_zap_alert(a, output.target_url) for a in output.alerts]


def normalize_seo(output: SeoResult) -> list[NormalizedFinding]:
    """Normalize SEO check results; severities and narratives are already canonical."""
    findings: list[NormalizedFinding] = []
    for check in output.findings:
        findings.append(
            NormalizedFinding(
                source="seo",
                severity=check.severity,
                category=SEO_CATEGORY,
                rule_id=check.rule_id,
                file_path=check.location,
                line_number=None,
                code_snippet=check.evidence,
                message=check.narrative.plain_english,
                raw_output=check.model_dump(mode="json", exclude={"narrative"}),
                narrative=check.narrative,
                narrative_source="authored",
            )
        )
    return findings


_NORMALIZERS: dict[str, Callable[[Any], list[NormalizedFinding]]] = {
    "static": normalize_static,
    "dynamic": normalize_dynamic,
    "seo": normalize_seo,
}


def normalize_output(output: AnalyzerOutput) -> list[NormalizedFinding]:
    """Dispatch an adapter result to the normalizer for its kind."""
    return _NORMALIZERS[output.kind](output)

"""Security score: deterministic weighted deduction over finding severities."""

from collections import Counter
from collections.abc import Iterable

from vibetrace.schemas.scan import SeverityCounts

MAX_SCORE = 100
MIN_SCORE = 0

# Points deducted per finding; info findings are free.
SEVERITY_WEIGHTS: dict[str, int] = {
    "critical": 25,
    "high": 15,
    "medium": 5,
    "low": 2,
    "info": 0,
}


def calculate_score(severities: Iterable[str]) -> int:
    """
    Start at 100, subtract the weight of each severity, clamp to [0, 100].

    Unknown severities deduct nothing. An empty input scores 100.
    """
    deductions = sum(SEVERITY_WEIGHTS.get((s or "").lower(), 0) for s in severities)
    return max(MIN_SCORE, min(MAX_SCORE, MAX_SCORE - deductions))


def count_severities(severities: Iterable[str]) -> tuple[SeverityCounts, int]:
    """Return per-severity counters and the total number of findings (info included in the total)."""
    counter = Counter((s or "").lower() for s in severities)
    counts = SeverityCounts(
        critical=counter["critical"],
        high=counter["high"],
        medium=counter["medium"],
        low=counter["low"],
    )
    return counts, sum(counter.values())

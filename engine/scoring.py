# engine/scoring.py
"""Deterministic scoring — priority, effort and category confidences.

All severity sets, effort buckets and rationales are imported from
schemas/taxonomy.py.  This module NEVER defines its own rule lists.

Every function here is pure: same ``PageScanResult`` in, same value out.
"""
from __future__ import annotations

from schemas.domain import Alternative, Finding, PageScanResult
from schemas.taxonomy import (
    ALTERNATIVE_RATIONALES,
    EFFORT_BUCKETS,
    EFFORT_NONE,
    HOURS_HIGH_IMPACT,
    HOURS_LOW_IMPACT,
    HOURS_PER_EXTRA_ELEMENT,
    Category,
    Priority,
    Severity,
)

# ── Category confidence values ────────────────────────────────────
CONFIDENCE_SCAN_ERROR = 1.0
CONFIDENCE_CRITICAL = 0.95
CONFIDENCE_PASSED = 1.0
CONFIDENCE_MINOR = 0.8

# Float tolerance for the alternative margin comparison
_EPSILON = 1e-9


# ── Priority ──────────────────────────────────────────────────────
# Independent of category.  Adding a critical finding never lowers it.

HIGH_PRIORITY_SERIOUS = 3
MEDIUM_PRIORITY_TOTAL = 5


def priority_for(violations: tuple[Finding, ...] | list[Finding]) -> Priority:
    if any(v.severity is Severity.CRITICAL for v in violations):
        return Priority.CRITICAL
    serious = sum(1 for v in violations if v.severity is Severity.SERIOUS)
    if serious >= HIGH_PRIORITY_SERIOUS:
        return Priority.HIGH
    if serious >= 1 or len(violations) >= MEDIUM_PRIORITY_TOTAL:
        return Priority.MEDIUM
    return Priority.LOW


# ── Effort ────────────────────────────────────────────────────────

def effort_hours(violations: tuple[Finding, ...] | list[Finding]) -> float:
    """2h per serious/critical, 0.5h otherwise, 0.25h per element beyond the first."""
    hours = 0.0
    for v in violations:
        hours += HOURS_HIGH_IMPACT if v.is_high_impact else HOURS_LOW_IMPACT
        hours += HOURS_PER_EXTRA_ELEMENT * max(0, v.affected_element_count - 1)
    return hours


def effort_bucket(hours: float) -> str:
    if hours <= 0:
        return EFFORT_NONE
    for upper, label in EFFORT_BUCKETS:
        if hours <= upper:
            return label
    return EFFORT_BUCKETS[-1][1]


def estimate_effort(violations: tuple[Finding, ...] | list[Finding]) -> str:
    return effort_bucket(effort_hours(violations))


# ── Would-be confidences & alternatives ──────────────────────────

def category_confidences(
    result: PageScanResult,
    critical_threshold: int,
    review_floor: float,
) -> dict[Category, float]:
    """Confidence each category would carry if it were selected for *result*.

    PASSED        1.0 with no violations, else 0
    MINOR_ISSUES  0.8 scaled by the share of non-high-impact violations
    REVIEW_NEEDED max of the triggered review floors (0 when none)
    CRITICAL      0.95 at or above the threshold, else scaled by count/threshold
    """
    violations = result.violations
    high = len(result.high_impact_violations)

    minor = 0.0
    if violations:
        minor = CONFIDENCE_MINOR * (len(violations) - high) / len(violations)

    critical = CONFIDENCE_CRITICAL
    if high < critical_threshold:
        critical = CONFIDENCE_CRITICAL * high / critical_threshold

    return {
        Category.PASSED: CONFIDENCE_PASSED if not violations else 0.0,
        Category.MINOR_ISSUES: minor,
        Category.REVIEW_NEEDED: review_floor,
        Category.CRITICAL: critical,
    }


def rank_alternatives(
    selected: Category,
    confidence: float,
    candidates: dict[Category, float],
    *,
    margin: float,
    limit: int,
) -> tuple[Alternative, ...]:
    """Runner-up categories within *margin* of *confidence*, best first."""
    close = [
        (category, score)
        for category, score in candidates.items()
        if category is not selected
        and score > 0
        and abs(confidence - score) <= margin + _EPSILON
    ]
    # Stable tie-break on the category order in the taxonomy
    order = list(Category)
    close.sort(key=lambda item: (-item[1], order.index(item[0])))
    return tuple(
        Alternative(category=c, confidence=round(s, 4), rationale=ALTERNATIVE_RATIONALES[c])
        for c, s in close[:limit]
    )

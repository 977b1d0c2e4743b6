# engine/factors.py
"""Review-needed reasoning factors.

Each producer is a pure function ``(PageScanResult, TriageSettings) →
ReasoningFactor | None``.  A factor's ``weight`` is the confidence floor
it contributes; ``review_confidence`` reduces triggered factors with
max-of-floors (never a sum).

To add a check, write a producer and append it to ``REVIEW_FACTORS``.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from engine.settings import TriageSettings
from schemas.domain import Finding, PageScanResult, ReasoningFactor
from schemas.taxonomy import (
    ARIA_KEYWORDS,
    FOCUS_KEYWORDS,
    VISUAL_VERIFICATION_RULES,
    FactorKind,
)

_log = logging.getLogger(__name__)

FactorProducer = Callable[[PageScanResult, TriageSettings], Optional[ReasoningFactor]]

# ── Floors ────────────────────────────────────────────────────────
FLOOR_COMPLEX_PATTERN = 0.85
FLOOR_INCOMPLETE = 0.8
FLOOR_VISUAL_RULE = 0.9
FLOOR_FOCUS = 0.85
FLOOR_ARIA = 0.8
FLOOR_SOME_HIGH_IMPACT = 0.75

# Minimum matching findings for the keyword factors
MIN_FOCUS_FINDINGS = 2
MIN_ARIA_FINDINGS = 3


def _ids(findings: tuple[Finding, ...] | list[Finding]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(f.id for f in findings))


def is_complex(finding: Finding, pattern_ids: frozenset[str]) -> bool:
    """Finding id contains a configured pattern id, or carries it as a tag."""
    return finding.id_mentions(pattern_ids) or bool(finding.tags & pattern_ids)


def needs_visual_verification(finding: Finding) -> bool:
    return finding.id_mentions(VISUAL_VERIFICATION_RULES)


# ── Producers ─────────────────────────────────────────────────────

def complex_pattern_factor(result: PageScanResult, settings: TriageSettings) -> Optional[ReasoningFactor]:
    matched = [v for v in result.violations if is_complex(v, settings.complex_pattern_ids)]
    if not matched:
        return None
    return ReasoningFactor(
        kind=FactorKind.PATTERN,
        description=f"{len(matched)} complex violation(s) require visual analysis",
        weight=FLOOR_COMPLEX_PATTERN,
        evidence=_ids(matched),
    )


def incomplete_factor(result: PageScanResult, settings: TriageSettings) -> Optional[ReasoningFactor]:
    count = len(result.incomplete)
    if count <= settings.incomplete_threshold:
        return None
    return ReasoningFactor(
        kind=FactorKind.INCOMPLETENESS,
        description=f"{count} incomplete checks exceed threshold of {settings.incomplete_threshold}",
        weight=FLOOR_INCOMPLETE,
        evidence=_ids(result.incomplete),
    )


def visual_rule_factor(result: PageScanResult, settings: TriageSettings) -> Optional[ReasoningFactor]:
    matched = [v for v in result.violations if needs_visual_verification(v)]
    if not matched:
        return None
    return ReasoningFactor(
        kind=FactorKind.HEURISTIC,
        description=f"Visual verification required for: {', '.join(_ids(matched))}",
        weight=FLOOR_VISUAL_RULE,
        evidence=_ids(matched),
    )


def focus_factor(result: PageScanResult, settings: TriageSettings) -> Optional[ReasoningFactor]:
    matched = [v for v in result.violations if v.id_mentions(FOCUS_KEYWORDS)]
    if len(matched) < MIN_FOCUS_FINDINGS:
        return None
    return ReasoningFactor(
        kind=FactorKind.PATTERN,
        description=f"{len(matched)} focus/keyboard violations need interaction testing",
        weight=FLOOR_FOCUS,
        evidence=_ids(matched),
    )


def aria_factor(result: PageScanResult, settings: TriageSettings) -> Optional[ReasoningFactor]:
    matched = [v for v in result.violations if v.id_mentions(ARIA_KEYWORDS)]
    if len(matched) < MIN_ARIA_FINDINGS:
        return None
    return ReasoningFactor(
        kind=FactorKind.PATTERN,
        description=f"{len(matched)} ARIA violations suggest implementation review",
        weight=FLOOR_ARIA,
        evidence=_ids(matched),
    )


def high_impact_factor(result: PageScanResult, settings: TriageSettings) -> Optional[ReasoningFactor]:
    matched = result.high_impact_violations
    if not 1 <= len(matched) < settings.critical_threshold:
        return None
    return ReasoningFactor(
        kind=FactorKind.SEVERITY,
        description=f"{len(matched)} serious/critical violation(s) below critical threshold",
        weight=FLOOR_SOME_HIGH_IMPACT,
        evidence=_ids(matched),
    )


# Evaluation order = order of descriptions in the rationale
REVIEW_FACTORS: tuple[FactorProducer, ...] = (
    complex_pattern_factor,
    incomplete_factor,
    visual_rule_factor,
    focus_factor,
    aria_factor,
    high_impact_factor,
)


def evaluate_factors(
    result: PageScanResult,
    settings: TriageSettings,
    producers: tuple[FactorProducer, ...] = REVIEW_FACTORS,
) -> list[ReasoningFactor]:
    """Run every producer; return the triggered factors in producer order."""
    triggered: list[ReasoningFactor] = []
    for produce in producers:
        factor = produce(result, settings)
        if factor is not None:
            _log.debug("%s: %s → %.2f", result.url, produce.__name__, factor.weight)
            triggered.append(factor)
    return triggered


def review_confidence(factors: list[ReasoningFactor]) -> float:
    """Max-of-floors reducer.  0.0 when nothing triggered."""
    return max((f.weight for f in factors), default=0.0)

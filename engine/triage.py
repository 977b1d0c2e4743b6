# engine/triage.py
"""Triage engine — one ``PageScanResult`` in, one ``Decision`` out.

Decision order (first match wins):
  1. scan error          → CRITICAL, confidence 1.0, no alternatives
  2. critical volume     → CRITICAL, confidence 0.95
  3. review factors      → REVIEW_NEEDED, confidence = max of floors
  4. no violations       → PASSED, 1.0;  otherwise MINOR_ISSUES, 0.8

Priority and effort are derived independently of the category.  Memory
is read before the decision (historical factor, advisory only) and
written after it is final.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from engine.factors import evaluate_factors, is_complex, needs_visual_verification, review_confidence
from engine.memory import AdaptiveMemory, domain_of
from engine.scoring import (
    CONFIDENCE_CRITICAL,
    CONFIDENCE_MINOR,
    CONFIDENCE_PASSED,
    CONFIDENCE_SCAN_ERROR,
    category_confidences,
    estimate_effort,
    priority_for,
    rank_alternatives,
)
from engine.settings import TriageSettings
from schemas.domain import Decision, PageScanResult, ReasoningFactor
from schemas.taxonomy import (
    AUTO_FIXABLE_KEYWORDS,
    CATEGORY_DESCRIPTIONS,
    SCAN_ERROR_EFFORT,
    Category,
    FactorKind,
    Priority,
)

_log = logging.getLogger(__name__)

# Historical factors never move the confidence; the weight is informational
HISTORICAL_WEIGHT = 0.5
# Below this a decision is flagged as uncertain
UNCERTAIN_BELOW = 0.8

# (cluster label, id keywords, minimum matching violations)
_CLUSTERS: tuple[tuple[str, tuple[str, ...], int], ...] = (
    ("form accessibility", ("label", "input", "form"), 3),
    ("navigation structure", ("landmark", "heading", "skip", "bypass"), 2),
    ("color and contrast", ("color", "contrast"), 2),
)


class TriageEngine:
    """Rule-based page triage with optional adaptive memory."""

    def __init__(
        self,
        settings: TriageSettings | None = None,
        memory: Optional[AdaptiveMemory] = None,
    ):
        self.settings = settings or TriageSettings()
        self.memory = memory

    def decide(self, result: PageScanResult) -> Decision:
        if result.error is not None:
            decision = self._scan_failed(result)
        else:
            decision = self._classify(result)

        historical = self._historical_factor(result)
        if historical is not None:
            decision = _with_factor(decision, historical)

        if self.memory is not None:
            self.memory.record(result.url, (v.id for v in result.violations), decision.category)

        _log.debug("%s → %s (%.2f)", result.url, decision.category.value, decision.confidence)
        return decision

    def decide_all(self, results: list[PageScanResult]) -> list[Decision]:
        return [self.decide(r) for r in results]

    # ── Steps ─────────────────────────────────────────────────────

    def _scan_failed(self, result: PageScanResult) -> Decision:
        factor = ReasoningFactor(
            kind=FactorKind.SEVERITY,
            description=f"Scan failed after {result.attempts} attempt(s): {result.error}",
            weight=CONFIDENCE_SCAN_ERROR,
            evidence=(result.error or "",),
        )
        return Decision(
            url=result.url,
            category=Category.CRITICAL,
            confidence=CONFIDENCE_SCAN_ERROR,
            factors=(factor,),
            priority=Priority.CRITICAL,
            effort_estimate=SCAN_ERROR_EFFORT,
            rationale=factor.description,
            suggestions=("Verify the URL is reachable and re-run the scan",),
            uncertainty=("Scan failed; page content was not audited",),
            contextual_analysis="No findings available: scan failed",
        )

    def _classify(self, result: PageScanResult) -> Decision:
        s = self.settings
        high = result.high_impact_violations

        if len(high) >= s.critical_threshold:
            factors = [ReasoningFactor(
                kind=FactorKind.SEVERITY,
                description=(
                    f"{len(high)} serious/critical violations meet critical threshold "
                    f"of {s.critical_threshold}"
                ),
                weight=CONFIDENCE_CRITICAL,
                evidence=tuple(dict.fromkeys(v.id for v in high)),
            )]
            category, confidence = Category.CRITICAL, CONFIDENCE_CRITICAL
            review_floor = review_confidence(evaluate_factors(result, s))
        else:
            factors = evaluate_factors(result, s)
            review_floor = review_confidence(factors)
            if factors:
                category, confidence = Category.REVIEW_NEEDED, review_floor
            elif not result.violations:
                category, confidence = Category.PASSED, CONFIDENCE_PASSED
                factors = [ReasoningFactor(
                    kind=FactorKind.SEVERITY,
                    description=CATEGORY_DESCRIPTIONS[Category.PASSED],
                    weight=CONFIDENCE_PASSED,
                )]
            else:
                category, confidence = Category.MINOR_ISSUES, CONFIDENCE_MINOR
                factors = [ReasoningFactor(
                    kind=FactorKind.SEVERITY,
                    description=f"{len(result.violations)} minor violation(s) with standard fixes",
                    weight=CONFIDENCE_MINOR,
                    evidence=tuple(dict.fromkeys(v.id for v in result.violations)),
                )]

        alternatives = rank_alternatives(
            category,
            confidence,
            category_confidences(result, s.critical_threshold, review_floor),
            margin=s.alternative_margin,
            limit=s.max_alternatives,
        )

        return Decision(
            url=result.url,
            category=category,
            confidence=confidence,
            factors=tuple(factors),
            alternatives=alternatives,
            priority=priority_for(result.violations),
            effort_estimate=estimate_effort(result.violations),
            rationale="; ".join(f.description for f in factors),
            critical_violations=tuple(dict.fromkeys(v.id for v in high)),
            complex_violations=tuple(dict.fromkeys(
                v.id for v in result.violations
                if is_complex(v, s.complex_pattern_ids) or needs_visual_verification(v)
            )),
            suggestions=_suggestions(result, category),
            uncertainty=_uncertainty(result, confidence, alternatives),
            contextual_analysis=_context(result),
        )

    def _historical_factor(self, result: PageScanResult) -> Optional[ReasoningFactor]:
        if self.memory is None or not self.memory.enabled:
            return None
        domain = domain_of(result.url)
        recurring = self.memory.recurring_violations(domain)
        present = sorted(recurring & {v.id for v in result.violations})
        if not present:
            return None
        seen = len(self.memory.history(domain))
        return ReasoningFactor(
            kind=FactorKind.HISTORICAL,
            description=f"Domain shows recurring violations: {', '.join(present[:3])}",
            weight=HISTORICAL_WEIGHT,
            evidence=(f"{seen} previous scans analyzed",),
        )


# ── Decision extras ───────────────────────────────────────────────

def _with_factor(decision: Decision, factor: ReasoningFactor) -> Decision:
    return replace(decision, factors=decision.factors + (factor,))


def _suggestions(result: PageScanResult, category: Category) -> tuple[str, ...]:
    out: list[str] = []
    fixable = [v for v in result.violations if v.id_mentions(AUTO_FIXABLE_KEYWORDS)]
    if fixable:
        out.append(f"{len(fixable)} violation(s) can be auto-fixed (alt text, labels, page language)")
    if category is Category.REVIEW_NEEDED:
        out.append("Review design-system components for contrast, focus and keyboard patterns")
    high = result.high_impact_violations
    if high:
        out.append(f"Fix {len(high)} serious/critical violation(s) before release")
    if category is Category.PASSED:
        out.append("No action required; keep the page in regression scans")
    return tuple(out)


def _uncertainty(result: PageScanResult, confidence: float, alternatives: tuple) -> tuple[str, ...]:
    out: list[str] = []
    if confidence < UNCERTAIN_BELOW:
        out.append(f"Confidence {confidence:.2f} is below {UNCERTAIN_BELOW}")
    if alternatives:
        out.append("Close alternatives: " + ", ".join(a.category.value for a in alternatives))
    if result.incomplete:
        out.append(f"{len(result.incomplete)} check(s) could not be completed automatically")
    return tuple(out)


def _context(result: PageScanResult) -> str:
    text = (
        f"{len(result.violations)} violation(s) affecting {result.affected_elements} element(s) "
        f"across {len(result.wcag_criteria)} WCAG criteria"
    )
    clusters = [
        label for label, keywords, minimum in _CLUSTERS
        if sum(1 for v in result.violations if v.id_mentions(keywords)) >= minimum
    ]
    if clusters:
        text += f"; violations cluster around: {', '.join(clusters)}"
    return text

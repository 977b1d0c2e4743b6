"""Core domain types — shared contracts used across the triage system.

These are the canonical shapes that cross layer boundaries:
audit runtime → orchestrator → triage engine → coordinator.

Every type here is a frozen dataclass.  A ``PageScanResult`` is created
once per URL per run and handed to the triage engine by value; a
``Decision`` is created once per ``PageScanResult`` and never mutated.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from schemas.taxonomy import Category, FactorKind, Priority, Severity, WCAG_TAG_PREFIX


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Finding — one normalized audit result entry ───────────────────
@dataclass(frozen=True)
class Finding:
    """One rule outcome from an automated page audit."""
    id: str
    severity: Severity = Severity.MINOR
    tags: frozenset[str] = field(default_factory=frozenset)
    affected_element_count: int = 0
    description: str = ""
    help: str = ""
    help_url: str = ""
    # Raw HTML of the affected elements (capped); used for context hints only
    element_html: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.affected_element_count < 0:
            raise ValueError(
                f"[{self.id}] affected_element_count must be non-negative, "
                f"got {self.affected_element_count}"
            )
        if not isinstance(self.tags, frozenset):
            object.__setattr__(self, "tags", frozenset(self.tags))
        if not isinstance(self.element_html, tuple):
            object.__setattr__(self, "element_html", tuple(self.element_html))
        if not isinstance(self.severity, Severity):
            object.__setattr__(self, "severity", Severity.parse(self.severity))

    @property
    def is_high_impact(self) -> bool:
        return self.severity in (Severity.SERIOUS, Severity.CRITICAL)

    def id_mentions(self, keywords: tuple[str, ...] | list[str] | frozenset[str]) -> bool:
        rule = self.id.lower()
        return any(k.lower() in rule for k in keywords)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "tags": sorted(self.tags),
            "affected_element_count": self.affected_element_count,
            "description": self.description,
            "help": self.help,
            "help_url": self.help_url,
        }


# ── PageScanResult — aggregated findings for one URL ──────────────
@dataclass(frozen=True)
class PageScanResult:
    """Audit outcome for one URL.

    Invariant: ``error`` set ⇒ every finding list is empty.  Use
    ``PageScanResult.failed()`` to build an error result.
    """
    url: str
    fetched_at: datetime = field(default_factory=_utcnow)
    violations: tuple[Finding, ...] = ()
    passes: tuple[Finding, ...] = ()
    incomplete: tuple[Finding, ...] = ()
    inapplicable: tuple[Finding, ...] = ()
    scan_duration_ms: int = 0
    error: Optional[str] = None
    attempts: int = 1

    def __post_init__(self) -> None:
        for name in ("violations", "passes", "incomplete", "inapplicable"):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))
        if self.error is not None and (
            self.violations or self.passes or self.incomplete or self.inapplicable
        ):
            raise ValueError(f"[{self.url}] a failed scan cannot carry findings")

    @classmethod
    def failed(cls, url: str, error: str, *, attempts: int = 1, scan_duration_ms: int = 0) -> PageScanResult:
        return cls(url=url, error=error or "Unknown error", attempts=attempts,
                   scan_duration_ms=scan_duration_ms)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def high_impact_violations(self) -> tuple[Finding, ...]:
        return tuple(v for v in self.violations if v.is_high_impact)

    @property
    def affected_elements(self) -> int:
        return sum(v.affected_element_count for v in self.violations)

    @property
    def wcag_criteria(self) -> frozenset[str]:
        return frozenset(
            t for v in self.violations for t in v.tags if t.startswith(WCAG_TAG_PREFIX)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "fetched_at": self.fetched_at.isoformat(),
            "violations": [f.to_dict() for f in self.violations],
            "passes": [f.to_dict() for f in self.passes],
            "incomplete": [f.to_dict() for f in self.incomplete],
            "inapplicable": [f.to_dict() for f in self.inapplicable],
            "scan_duration_ms": self.scan_duration_ms,
            "error": self.error,
            "attempts": self.attempts,
        }


# ── ReasoningFactor — one piece of evidence behind a decision ─────
@dataclass(frozen=True)
class ReasoningFactor:
    kind: FactorKind
    description: str
    weight: float
    evidence: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "description": self.description,
            "weight": self.weight,
            "evidence": list(self.evidence),
        }


@dataclass(frozen=True)
class Alternative:
    category: Category
    confidence: float
    rationale: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "confidence": round(self.confidence, 4),
            "rationale": self.rationale,
        }


# ── Decision — triage outcome for one page ────────────────────────
@dataclass(frozen=True)
class Decision:
    """Triage engine output.  No AI involved."""
    url: str
    category: Category
    confidence: float
    factors: tuple[ReasoningFactor, ...] = ()
    alternatives: tuple[Alternative, ...] = ()
    priority: Priority = Priority.LOW
    effort_estimate: str = "0h"
    rationale: str = ""
    critical_violations: tuple[str, ...] = ()
    complex_violations: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()
    uncertainty: tuple[str, ...] = ()
    contextual_analysis: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"[{self.url}] confidence out of range: {self.confidence}")

    @property
    def needs_deep_analysis(self) -> bool:
        return self.category in (Category.REVIEW_NEEDED, Category.CRITICAL)

    def without_history(self) -> Decision:
        """Copy with memory-derived factors removed (for comparisons)."""
        kept = tuple(f for f in self.factors if f.kind is not FactorKind.HISTORICAL)
        return replace(self, factors=kept)

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "category": self.category.value,
            "confidence": round(self.confidence, 4),
            "factors": [f.to_dict() for f in self.factors],
            "alternatives": [a.to_dict() for a in self.alternatives],
            "priority": self.priority.value,
            "effort_estimate": self.effort_estimate,
            "rationale": self.rationale,
            "critical_violations": list(self.critical_violations),
            "complex_violations": list(self.complex_violations),
            "suggestions": list(self.suggestions),
            "uncertainty": list(self.uncertainty),
            "contextual_analysis": self.contextual_analysis,
        }


# ── Adaptive memory entry ─────────────────────────────────────────
@dataclass
class HistoryEntry:
    """One remembered decision for a domain.

    Mutable only through ``AdaptiveMemory.record_feedback`` which sets
    ``was_confirmed_correct``.
    """
    url: str
    timestamp: datetime
    violation_ids: frozenset[str]
    decision_category: Category
    was_confirmed_correct: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "timestamp": self.timestamp.isoformat(),
            "violation_ids": sorted(self.violation_ids),
            "decision_category": self.decision_category.value,
            "was_confirmed_correct": self.was_confirmed_correct,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> HistoryEntry:
        return cls(
            url=raw.get("url", ""),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            violation_ids=frozenset(raw.get("violation_ids", [])),
            decision_category=Category(raw["decision_category"]),
            was_confirmed_correct=raw.get("was_confirmed_correct"),
        )

"""Deep-analysis hand-off — what a higher-cost reviewer receives.

Only decisions in ``DEEP_ANALYSIS_CATEGORIES`` (REVIEW_NEEDED, CRITICAL)
are forwarded.  A failed scan is forwarded too, with no violations and
``scan_error`` set in the hints, so failures are never silently dropped.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from schemas.domain import Decision, Finding, PageScanResult
from schemas.taxonomy import DEEP_ANALYSIS_CATEGORIES, Priority

# URL path keywords → page type, checked in order after the form check
_PAGE_TYPES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("search", ("search", "results")),
    ("homepage", ("home", "index")),
    ("product", ("product", "item")),
    ("checkout", ("cart", "checkout")),
    ("content", ("article", "blog", "post")),
)

_NAVIGATION_KEYWORDS = ("landmark", "bypass", "skip", "region", "heading")


def _html_mentions(findings: tuple[Finding, ...], *needles: str) -> bool:
    return any(n in html.lower() for f in findings for html in f.element_html for n in needles)


def page_type(url: str, violations: tuple[Finding, ...] = ()) -> str:
    """Classify a page from its URL path and the markup of its violations."""
    path = urlparse(url).path.lower()
    if "form" in path or _html_mentions(violations, "<form"):
        return "form"
    if path in ("", "/"):
        return "homepage"
    for kind, keywords in _PAGE_TYPES:
        if any(k in path for k in keywords):
            return kind
    return "generic"


@dataclass(frozen=True)
class AnalysisRequest:
    url: str
    violations: tuple[Finding, ...]
    priority: Priority
    context_hints: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "violations": [v.to_dict() for v in self.violations],
            "priority": self.priority.value,
            "context_hints": dict(self.context_hints),
        }


def needs_deep_analysis(decision: Decision) -> bool:
    return decision.category in DEEP_ANALYSIS_CATEGORIES


def build_analysis_request(result: PageScanResult, decision: Decision) -> AnalysisRequest:
    violations = result.violations
    hints: dict[str, Any] = {
        "category": decision.category.value,
        "page_type": page_type(result.url, violations),
        "has_form": _html_mentions(violations, "<form"),
        "has_navigation_issues": any(v.id_mentions(_NAVIGATION_KEYWORDS) for v in violations)
                                 or _html_mentions(violations, "<nav"),
        "has_modal": _html_mentions(violations, "modal", "dialog"),
        "rationale": decision.rationale,
        "complex_violations": list(decision.complex_violations),
        "scan_error": result.error,
    }
    return AnalysisRequest(
        url=result.url,
        violations=violations,
        priority=decision.priority,
        context_hints=hints,
    )

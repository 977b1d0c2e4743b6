# schemas/taxonomy.py — Single authoritative taxonomy for page triage.
"""Centralised taxonomy for accessibility triage.

Every severity, category, priority and reasoning-factor kind used by the
engine is defined here.  Scoring modules import these; they NEVER
define their own sets of rule ids or severities.

Canonical sources defined here:
  - ``Severity``        — minor < moderate < serious < critical (ordered)
  - ``Category``        — PASSED | MINOR_ISSUES | REVIEW_NEEDED | CRITICAL
  - ``Priority``        — Low < Medium < High < Critical (ordered)
  - ``FactorKind``      — severity | pattern | incompleteness | heuristic | historical
  - ``VISUAL_VERIFICATION_RULES`` — rule ids that need a human/AI look
  - ``DEFAULT_COMPLEX_PATTERN_IDS`` — default "needs visual analysis" set
  - ``EFFORT_BUCKETS``  — fixed hour ranges for effort estimates
"""
from __future__ import annotations

from enum import Enum


# ══════════════════════════════════════════════════════════════════
# Canonical enums
# ══════════════════════════════════════════════════════════════════

class Severity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    SERIOUS = "serious"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: object) -> Severity:
        """Lenient parse: unknown or missing impact levels become MINOR."""
        if isinstance(value, Severity):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.MINOR


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.MINOR: 0,
    Severity.MODERATE: 1,
    Severity.SERIOUS: 2,
    Severity.CRITICAL: 3,
}

# Severities that count toward the critical-volume check
HIGH_IMPACT_SEVERITIES: frozenset[Severity] = frozenset({Severity.SERIOUS, Severity.CRITICAL})


class Category(str, Enum):
    PASSED = "PASSED"
    MINOR_ISSUES = "MINOR_ISSUES"
    REVIEW_NEEDED = "REVIEW_NEEDED"
    CRITICAL = "CRITICAL"


CATEGORY_DESCRIPTIONS: dict[Category, str] = {
    Category.PASSED:        "No violations found",
    Category.MINOR_ISSUES:  "Auto-fixable violations only",
    Category.REVIEW_NEEDED: "Complex issues requiring human or AI visual review",
    Category.CRITICAL:      "Immediate attention required",
}

# Rationale used when a category is reported as an alternative
ALTERNATIVE_RATIONALES: dict[Category, str] = {
    Category.PASSED:        "No significant violations detected that would fail WCAG criteria",
    Category.MINOR_ISSUES:  "Violations are primarily auto-fixable with clear remediation paths",
    Category.REVIEW_NEEDED: "Complex patterns suggest visual review would provide valuable insights",
    Category.CRITICAL:      "Severity and scope of violations may warrant immediate attention",
}

# Categories forwarded to the deep-analysis collaborator
DEEP_ANALYSIS_CATEGORIES: frozenset[Category] = frozenset({Category.REVIEW_NEEDED, Category.CRITICAL})


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return list(Priority).index(self)


class FactorKind(str, Enum):
    SEVERITY = "severity"
    PATTERN = "pattern"
    INCOMPLETENESS = "incompleteness"
    HEURISTIC = "heuristic"
    HISTORICAL = "historical"


# Compile-time: every category has a description and an alternative rationale
assert set(CATEGORY_DESCRIPTIONS) == set(Category), \
    f"CATEGORY_DESCRIPTIONS missing: {set(Category) - set(CATEGORY_DESCRIPTIONS)}"
assert set(ALTERNATIVE_RATIONALES) == set(Category), \
    f"ALTERNATIVE_RATIONALES missing: {set(Category) - set(ALTERNATIVE_RATIONALES)}"


# ══════════════════════════════════════════════════════════════════
# Rule id sets, matched as substrings of the finding id
# ══════════════════════════════════════════════════════════════════

DEFAULT_COMPLEX_PATTERN_IDS: tuple[str, ...] = (
    "color-contrast",
    "focus-order-semantics",
    "keyboard-navigation",
    "aria-hidden-focus",
    "visual-only-information",
)

VISUAL_VERIFICATION_RULES: tuple[str, ...] = (
    "color-contrast",
    "focus-visible",
    "focus-order-semantics",
    "keyboard-navigation",
    "aria-hidden-focus",
    "visual-only-information",
    "bypass",
    "landmark-one-main",
    "page-has-heading-one",
)

FOCUS_KEYWORDS: tuple[str, ...] = ("focus", "keyboard", "tabindex")

ARIA_KEYWORDS: tuple[str, ...] = ("aria",)

# Rules with a well-known mechanical fix
AUTO_FIXABLE_KEYWORDS: tuple[str, ...] = ("image-alt", "label", "html-has-lang")

# Compliance tags counted as distinct WCAG criteria
WCAG_TAG_PREFIX = "wcag"


# ══════════════════════════════════════════════════════════════════
# Effort buckets: (upper bound in hours, label); last bound is open
# ══════════════════════════════════════════════════════════════════

EFFORT_NONE = "0h"

EFFORT_BUCKETS: tuple[tuple[float, str], ...] = (
    (1.0, "0.5-1h"),
    (2.0, "1-2h"),
    (4.0, "2-4h"),
    (8.0, "4-8h"),
    (16.0, "8-16h"),
    (float("inf"), "16h+"),
)

# Effort reported for a page whose scan failed
SCAN_ERROR_EFFORT = "2-4h"

HOURS_HIGH_IMPACT = 2.0
HOURS_LOW_IMPACT = 0.5
HOURS_PER_EXTRA_ELEMENT = 0.25

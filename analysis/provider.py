"""Deep-analysis provider protocol — the higher-cost reviewer behind triage.

The reviewer is a dependency, not the product.  Today it's Azure OpenAI,
tomorrow it could be a human review queue or a mock for tests.

Usage:
    provider = AOAIDeepAnalysisProvider()      # production
    provider = MockDeepAnalysisProvider()      # tests
    outcome  = BatchCoordinator(orchestrator, engine, provider).run(urls)
"""
from __future__ import annotations

from typing import Any, Protocol

from analysis.handoff import AnalysisRequest
from schemas.taxonomy import Priority

_MAX_VIOLATIONS_IN_PROMPT = 25


class DeepAnalysisProvider(Protocol):
    """Any backend that turns an ``AnalysisRequest`` into remediation JSON."""

    def analyze(self, request: AnalysisRequest) -> dict:
        """
        Review one flagged page.

        Returns
        -------
        dict   ``{"url", "overall_assessment", "remediation_steps": [...]}``;
               each step has ``issue, solution, priority, effort,
               wcag_criteria`` and an optional ``code_example``.
        """
        ...


# ── Azure OpenAI implementation ──────────────────────────────────

SYSTEM_PROMPT = (
    "You are a senior accessibility engineer reviewing automated axe-core "
    "findings against WCAG 2.1 AA. Respond with ONLY valid JSON."
)

_RESPONSE_SHAPE = """{
  "url": "<page url>",
  "overall_assessment": "summary of accessibility status and key recommendations",
  "remediation_steps": [
    {
      "issue": "specific accessibility problem",
      "solution": "detailed fix with implementation guidance",
      "priority": "Critical|High|Medium|Low",
      "effort": "estimated hours",
      "wcag_criteria": "WCAG 2.1 success criterion",
      "code_example": "HTML/CSS/JS for the fix"
    }
  ]
}"""


def build_prompt(request: AnalysisRequest) -> str:
    hints = request.context_hints
    lines = [
        "# Accessibility Analysis Request",
        f"- URL: {request.url}",
        f"- Priority: {request.priority.value}",
        f"- Page type: {hints.get('page_type', 'generic')}",
        f"- Triage rationale: {hints.get('rationale') or 'n/a'}",
    ]
    if hints.get("scan_error"):
        lines.append(f"- Automated scan FAILED: {hints['scan_error']}")
    if hints.get("has_form"):
        lines.append("- Page contains forms: check labels, error states and validation messages")
    if hints.get("has_navigation_issues"):
        lines.append("- Navigation structure issues: check landmarks, headings and skip links")
    if hints.get("has_modal"):
        lines.append("- Page contains dialogs: check focus management")

    lines.append("")
    lines.append("## Automated violations")
    shown = request.violations[:_MAX_VIOLATIONS_IN_PROMPT]
    if not shown:
        lines.append("(none available)")
    for v in shown:
        lines.append(
            f"- {v.id} [{v.severity.value}] {v.help or v.description} "
            f"({v.affected_element_count} element(s))"
        )
        for html in v.element_html[:2]:
            lines.append(f"    e.g. {html}")
    if len(request.violations) > len(shown):
        lines.append(f"- … {len(request.violations) - len(shown)} more")

    lines.append("")
    lines.append("## Required response format")
    lines.append(_RESPONSE_SHAPE)
    return "\n".join(lines)


def normalize_steps(steps: Any) -> list[dict[str, Any]]:
    """Coerce model output into well-formed remediation steps."""
    if not isinstance(steps, list):
        return []
    valid_priorities = {p.value for p in Priority}
    out: list[dict[str, Any]] = []
    for i, step in enumerate(steps, start=1):
        if not isinstance(step, dict):
            step = {}
        priority = step.get("priority")
        out.append({
            "issue": step.get("issue") or f"Unspecified issue {i}",
            "solution": step.get("solution") or "No solution provided",
            "priority": priority if priority in valid_priorities else Priority.MEDIUM.value,
            "effort": step.get("effort") or "Not specified",
            "wcag_criteria": step.get("wcag_criteria") or step.get("wcagCriteria") or "Not specified",
            "code_example": step.get("code_example") or step.get("codeExample"),
        })
    return out


class AOAIDeepAnalysisProvider:
    """Wraps AOAIClient as a DeepAnalysisProvider."""

    def __init__(
        self,
        model: str | None = None,
        endpoint: str | None = None,
        key: str | None = None,
        max_tokens: int = 4000,
    ):
        # Defer import so the module is loadable without Azure credentials
        from analysis.aoai_client import AOAIClient

        self._client = AOAIClient(model=model, endpoint=endpoint, key=key, max_tokens=max_tokens)

    def analyze(self, request: AnalysisRequest) -> dict:
        raw = self._client.run(SYSTEM_PROMPT, build_prompt(request))
        return {
            "url": request.url,
            "overall_assessment": str(raw.get("overall_assessment") or raw.get("overallAssessment") or ""),
            "remediation_steps": normalize_steps(raw.get("remediation_steps") or raw.get("remediationSteps")),
        }


# ── Mock for offline tests ────────────────────────────────────────
class MockDeepAnalysisProvider:
    """Returns canned responses — no LLM, no network.

    *responses* maps a URL to a dict or an exception instance to raise.
    """

    def __init__(self, responses: dict[str, Any] | None = None):
        self._responses = responses or {}
        self.calls: list[dict[str, Any]] = []

    def analyze(self, request: AnalysisRequest) -> dict:
        self.calls.append(request.to_dict())
        canned = self._responses.get(request.url)
        if isinstance(canned, BaseException):
            raise canned
        if canned is not None:
            return canned
        return {"url": request.url, "overall_assessment": "", "remediation_steps": []}

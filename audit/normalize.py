"""Normalize raw axe-core result payloads into domain findings.

The audit engine returns loosely-typed JSON.  Everything that leaves
this module conforms to ``schemas.domain.Finding`` / ``PageScanResult``.
Missing or unrecognized fields never raise.  A null rule impact falls
back to the worst node impact, then to ``minor``; an entry with no id
becomes ``unknown-rule``.
"""
from __future__ import annotations

from typing import Any, Iterable

from schemas.domain import Finding, PageScanResult
from schemas.taxonomy import Severity

# Only a handful of element snippets are kept per finding
_MAX_HTML_SNIPPETS = 5
_MAX_HTML_CHARS = 300

RESULT_BUCKETS: tuple[str, ...] = ("violations", "passes", "incomplete", "inapplicable")


def normalize_finding(raw: dict[str, Any]) -> Finding:
    nodes = raw.get("nodes") or []
    if not isinstance(nodes, list):
        nodes = []

    impact = raw.get("impact")
    if impact is None:
        # axe reports the worst node impact when the rule-level one is null
        node_impacts = [Severity.parse(n.get("impact")) for n in nodes if isinstance(n, dict) and n.get("impact")]
        severity = max(node_impacts) if node_impacts else Severity.MINOR
    else:
        severity = Severity.parse(impact)

    html = tuple(
        str(n.get("html", ""))[:_MAX_HTML_CHARS]
        for n in nodes[:_MAX_HTML_SNIPPETS]
        if isinstance(n, dict) and n.get("html")
    )

    return Finding(
        id=str(raw.get("id") or "unknown-rule"),
        severity=severity,
        tags=frozenset(str(t) for t in (raw.get("tags") or [])),
        affected_element_count=len(nodes),
        description=str(raw.get("description") or ""),
        help=str(raw.get("help") or ""),
        help_url=str(raw.get("helpUrl") or raw.get("help_url") or ""),
        element_html=html,
    )


def normalize_findings(entries: Iterable[Any] | None) -> tuple[Finding, ...]:
    return tuple(normalize_finding(e) for e in (entries or []) if isinstance(e, dict))


def build_scan_result(
    url: str,
    raw: dict[str, Any],
    *,
    scan_duration_ms: int = 0,
    attempts: int = 1,
) -> PageScanResult:
    """Turn one audit payload into a completed ``PageScanResult``."""
    buckets = {name: normalize_findings(raw.get(name)) for name in RESULT_BUCKETS}
    return PageScanResult(
        url=url,
        scan_duration_ms=scan_duration_ms,
        attempts=attempts,
        **buckets,
    )

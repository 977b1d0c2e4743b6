"""Batch coordinator — scan, triage, partition, hand off.

No scoring here.  The coordinator runs the orchestrator, feeds every
``PageScanResult`` through the triage engine and partitions the
decisions by category.  Pages that need a deeper look can then be
dispatched, one at a time, to a ``DeepAnalysisProvider``.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from analysis.handoff import AnalysisRequest, build_analysis_request, needs_deep_analysis
from analysis.provider import DeepAnalysisProvider
from engine.orchestrator import ScanOrchestrator
from engine.triage import TriageEngine
from schemas.domain import Decision, PageScanResult
from schemas.taxonomy import Category

_log = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    """Raw results plus decisions, aligned by index, and the category partition."""
    results: list[PageScanResult]
    decisions: list[Decision]
    partition: dict[Category, list[Decision]]
    elapsed_ms: int = 0
    analysis_results: list[dict[str, Any]] = field(default_factory=list)
    analysis_errors: list[dict[str, str]] = field(default_factory=list)

    def category(self, category: Category) -> list[Decision]:
        return self.partition[category]

    def analysis_requests(self) -> list[AnalysisRequest]:
        return [
            build_analysis_request(result, decision)
            for result, decision in zip(self.results, self.decisions)
            if needs_deep_analysis(decision)
        ]

    def summary(self) -> dict[str, Any]:
        return {
            "total_pages": len(self.results),
            "passed": len(self.partition[Category.PASSED]),
            "minor_issues": len(self.partition[Category.MINOR_ISSUES]),
            "review_needed": len(self.partition[Category.REVIEW_NEEDED]),
            "critical": len(self.partition[Category.CRITICAL]),
            "errors": sum(1 for r in self.results if not r.ok),
            "elapsed_ms": self.elapsed_ms,
            "completion_time": _format_duration(self.elapsed_ms),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "decisions": [d.to_dict() for d in self.decisions],
            "results": [r.to_dict() for r in self.results],
            "analysis_results": self.analysis_results,
            "analysis_errors": self.analysis_errors,
        }


def partition(decisions: list[Decision]) -> dict[Category, list[Decision]]:
    """Split decisions by category.  Every category key is present."""
    buckets: dict[Category, list[Decision]] = {c: [] for c in Category}
    for d in decisions:
        buckets[d.category].append(d)
    return buckets


def _format_duration(ms: int) -> str:
    seconds = ms // 1000
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


class BatchCoordinator:

    def __init__(
        self,
        orchestrator: ScanOrchestrator,
        engine: TriageEngine,
        provider: Optional[DeepAnalysisProvider] = None,
        *,
        deep_analysis_delay_ms: int = 5000,
    ):
        self.orchestrator = orchestrator
        self.engine = engine
        self.provider = provider
        self.deep_analysis_delay_ms = deep_analysis_delay_ms

    def run(self, urls: list[str]) -> BatchOutcome:
        """Scan *urls*, triage every result, dispatch flagged pages if a provider is set."""
        started = time.monotonic()
        results = self.orchestrator.scan(urls)
        outcome = self.triage(results, elapsed_ms=int((time.monotonic() - started) * 1000))
        if self.provider is not None:
            self.dispatch(outcome)
        return outcome

    def triage(self, results: list[PageScanResult], *, elapsed_ms: int = 0) -> BatchOutcome:
        decisions = self.engine.decide_all(results)
        outcome = BatchOutcome(
            results=results,
            decisions=decisions,
            partition=partition(decisions),
            elapsed_ms=elapsed_ms,
        )
        counts = outcome.summary()
        _log.info(
            "Triage: %d passed, %d minor, %d review, %d critical",
            counts["passed"], counts["minor_issues"], counts["review_needed"], counts["critical"],
        )
        return outcome

    def dispatch(self, outcome: BatchOutcome) -> BatchOutcome:
        """Send every REVIEW_NEEDED / CRITICAL page to the provider, sequentially.

        A provider failure is recorded in ``analysis_errors``; the rest of
        the batch is still dispatched.
        """
        if self.provider is None:
            raise ValueError("No deep-analysis provider configured")

        requests = outcome.analysis_requests()
        _log.info("Dispatching %d page(s) for deep analysis", len(requests))

        for i, request in enumerate(requests):
            if i and self.deep_analysis_delay_ms:
                time.sleep(self.deep_analysis_delay_ms / 1000.0)
            try:
                outcome.analysis_results.append(self.provider.analyze(request))
            except Exception as exc:
                _log.warning("Deep analysis failed for %s: %s", request.url, exc)
                outcome.analysis_errors.append({"url": request.url, "error": str(exc)})
        return outcome

"""Tests for engine.coordinator — scan → triage → partition → hand-off."""
from __future__ import annotations

import pytest

from analysis.provider import MockDeepAnalysisProvider
from audit.runtime import AuditError, MockAuditRuntime
from engine.coordinator import BatchCoordinator, partition
from engine.memory import AdaptiveMemory
from engine.orchestrator import ScanOrchestrator
from engine.settings import ScanSettings, TriageSettings
from engine.triage import TriageEngine
from schemas.domain import PageScanResult
from schemas.taxonomy import Category, Priority


def _violation(rule_id, impact, html="<div>"):
    return {"id": rule_id, "impact": impact, "nodes": [{"html": html, "impact": impact}]}


def _payload(*violations):
    return {"violations": list(violations), "passes": [], "incomplete": [], "inapplicable": []}


PAGES = {
    "https://site.test/": _payload(),
    "https://site.test/blog/post-1": _payload(_violation("list", "minor")),
    "https://site.test/contact-form": _payload(
        _violation("color-contrast", "serious", "<form><input></form>"),
    ),
    "https://site.test/checkout": _payload(*[_violation(f"button-name-{i}", "critical") for i in range(6)]),
    "https://site.test/missing": AuditError("HTTP 404: Not Found"),
}


@pytest.fixture
def runtime():
    return MockAuditRuntime(PAGES)


def _coordinator(runtime, provider=None, memory=None):
    orchestrator = ScanOrchestrator(
        runtime,
        ScanSettings(concurrency=2, retry_attempts=2, rate_limit_delay_ms=0, base_backoff_ms=1),
    )
    return BatchCoordinator(
        orchestrator,
        TriageEngine(TriageSettings(), memory),
        provider,
        deep_analysis_delay_ms=0,
    )


def _by_url(decisions):
    return {d.url: d for d in decisions}


def test_run_partitions_every_page(runtime):
    outcome = _coordinator(runtime).run(list(PAGES))

    assert set(outcome.partition) == set(Category)
    assert sum(len(v) for v in outcome.partition.values()) == len(PAGES)
    decisions = _by_url(outcome.decisions)
    assert decisions["https://site.test/"].category is Category.PASSED
    assert decisions["https://site.test/blog/post-1"].category is Category.MINOR_ISSUES
    assert decisions["https://site.test/contact-form"].category is Category.REVIEW_NEEDED
    assert decisions["https://site.test/checkout"].category is Category.CRITICAL
    assert decisions["https://site.test/missing"].category is Category.CRITICAL
    assert decisions["https://site.test/missing"].confidence == 1.0


def test_results_and_decisions_are_aligned(runtime):
    outcome = _coordinator(runtime).run(list(PAGES))
    assert [r.url for r in outcome.results] == [d.url for d in outcome.decisions]


def test_summary(runtime):
    outcome = _coordinator(runtime).run(list(PAGES))
    s = outcome.summary()
    assert s["total_pages"] == 5
    assert (s["passed"], s["minor_issues"], s["review_needed"], s["critical"]) == (1, 1, 1, 2)
    assert s["errors"] == 1
    assert s["completion_time"].endswith("s")


def test_analysis_requests_cover_review_and_critical(runtime):
    outcome = _coordinator(runtime).run(list(PAGES))
    requests = {r.url: r for r in outcome.analysis_requests()}

    assert set(requests) == {
        "https://site.test/contact-form",
        "https://site.test/checkout",
        "https://site.test/missing",
    }
    form = requests["https://site.test/contact-form"]
    assert form.context_hints["page_type"] == "form"
    assert form.context_hints["has_form"] is True
    assert form.context_hints["scan_error"] is None
    assert form.priority is Priority.MEDIUM

    missing = requests["https://site.test/missing"]
    assert missing.violations == ()
    assert missing.context_hints["scan_error"] == "HTTP 404: Not Found"
    assert missing.priority is Priority.CRITICAL


def test_provider_receives_flagged_pages_only(runtime):
    provider = MockDeepAnalysisProvider({
        "https://site.test/checkout": {"url": "https://site.test/checkout", "remediation_steps": [{"issue": "x"}]},
    })
    outcome = _coordinator(runtime, provider).run(list(PAGES))

    assert sorted(c["url"] for c in provider.calls) == [
        "https://site.test/checkout",
        "https://site.test/contact-form",
        "https://site.test/missing",
    ]
    assert len(outcome.analysis_results) == 3
    assert outcome.analysis_errors == []


def test_provider_failure_is_recorded_not_raised(runtime):
    provider = MockDeepAnalysisProvider({"https://site.test/checkout": RuntimeError("AOAI call failed: 429")})
    outcome = _coordinator(runtime, provider).run(list(PAGES))

    assert outcome.analysis_errors == [{"url": "https://site.test/checkout", "error": "AOAI call failed: 429"}]
    assert len(outcome.analysis_results) == 2


def test_dispatch_without_provider_is_rejected(runtime):
    coordinator = _coordinator(runtime)
    outcome = coordinator.run(list(PAGES))
    with pytest.raises(ValueError, match="provider"):
        coordinator.dispatch(outcome)


def test_memory_is_shared_across_the_batch(runtime):
    memory = AdaptiveMemory()
    _coordinator(runtime, memory=memory).run(list(PAGES))
    assert len(memory.history("site.test")) == len(PAGES)


def test_summary_counts_empty_error_message_as_error(runtime):
    outcome = _coordinator(runtime).triage([
        PageScanResult(url="https://site.test/blank", error=""),
        PageScanResult(url="https://site.test/"),
    ])
    assert outcome.summary()["errors"] == 1
    assert outcome.decisions[0].category is Category.CRITICAL


def test_partition_helper_keeps_empty_categories():
    assert partition([]) == {c: [] for c in Category}


def test_to_dict_is_serializable(runtime):
    import json
    outcome = _coordinator(runtime).run(list(PAGES))
    data = json.loads(json.dumps(outcome.to_dict()))
    assert data["summary"]["total_pages"] == 5
    assert len(data["decisions"]) == 5

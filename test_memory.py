"""Tests for engine.memory and engine.run_store — adaptive memory."""
from __future__ import annotations

import json
import threading

import pytest

from engine.memory import AdaptiveMemory, domain_of
from engine.run_store import load_memory, save_memory
from engine.settings import MemorySettings, TriageSettings
from engine.triage import TriageEngine
from schemas.domain import Finding, PageScanResult
from schemas.taxonomy import Category, FactorKind


def _page(url, *rule_ids, severity="serious"):
    return PageScanResult(url=url, violations=[Finding(id=r, severity=severity) for r in rule_ids])


@pytest.mark.parametrize("url, domain", [
    ("https://Shop.Example.com/a?b=1", "shop.example.com"),
    ("http://example.com:8080/", "example.com"),
    ("https://user:pw@example.org/x", "example.org"),
])
def test_domain_of(url, domain):
    assert domain_of(url) == domain


class TestAdaptiveMemory:
    def test_record_groups_by_domain(self):
        memory = AdaptiveMemory()
        memory.record("https://a.test/1", ["label"], Category.MINOR_ISSUES)
        memory.record("https://a.test/2", ["image-alt"], Category.CRITICAL)
        memory.record("https://b.test/", [], Category.PASSED)
        assert memory.domains() == ["a.test", "b.test"]
        assert [e.decision_category for e in memory.history("a.test")] == [
            Category.MINOR_ISSUES, Category.CRITICAL,
        ]

    def test_disabled_memory_records_nothing(self):
        memory = AdaptiveMemory(MemorySettings(enabled=False))
        assert memory.record("https://a.test/", ["label"], Category.MINOR_ISSUES) is None
        assert memory.domains() == []

    def test_history_is_a_copy(self):
        memory = AdaptiveMemory()
        memory.record("https://a.test/", ["label"], Category.MINOR_ISSUES)
        memory.history("a.test").clear()
        assert len(memory.history("a.test")) == 1

    def test_eviction_bound(self):
        memory = AdaptiveMemory(MemorySettings(max_entries_per_domain=2))
        for i in range(5):
            memory.record(f"https://a.test/{i}", [], Category.PASSED)
        assert [e.url for e in memory.history("a.test")] == ["https://a.test/3", "https://a.test/4"]

    def test_recurring_violations_need_half_of_entries(self):
        memory = AdaptiveMemory()
        memory.record("https://a.test/1", ["color-contrast", "label"], Category.REVIEW_NEEDED)
        memory.record("https://a.test/2", ["color-contrast"], Category.REVIEW_NEEDED)
        memory.record("https://a.test/3", ["color-contrast", "bypass"], Category.REVIEW_NEEDED)
        memory.record("https://a.test/4", ["label"], Category.MINOR_ISSUES)
        assert memory.recurring_violations("a.test") == frozenset({"color-contrast", "label"})
        assert memory.recurring_violations("unknown.test") == frozenset()

    def test_feedback_and_accuracy(self):
        memory = AdaptiveMemory()
        memory.record("https://a.test/1", ["label"], Category.MINOR_ISSUES)
        memory.record("https://a.test/2", ["label"], Category.MINOR_ISSUES)
        memory.record("https://a.test/3", [], Category.PASSED)

        assert memory.record_feedback("https://a.test/1", Category.MINOR_ISSUES)
        assert memory.record_feedback("https://a.test/2", Category.REVIEW_NEEDED)
        assert not memory.record_feedback("https://a.test/never-seen", Category.PASSED)

        assert memory.accuracy() == {("a.test", Category.MINOR_ISSUES): 0.5}

    def test_feedback_targets_latest_entry_for_url(self):
        memory = AdaptiveMemory()
        memory.record("https://a.test/1", ["label"], Category.MINOR_ISSUES)
        memory.record("https://a.test/1", ["color-contrast"], Category.REVIEW_NEEDED)
        memory.record_feedback("https://a.test/1", "REVIEW_NEEDED")
        first, latest = memory.history("a.test")
        assert first.was_confirmed_correct is None
        assert latest.was_confirmed_correct is True

    def test_concurrent_records_are_not_lost(self):
        memory = AdaptiveMemory()

        def worker(n):
            for i in range(200):
                memory.record(f"https://d{n % 2}.test/{i}", ["x"], Category.MINOR_ISSUES)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(memory.history("d0.test")) + len(memory.history("d1.test")) == 1200

    def test_snapshot_restores_history(self):
        memory = AdaptiveMemory()
        memory.record("https://a.test/1", ["label"], Category.MINOR_ISSUES)
        memory.record_feedback("https://a.test/1", Category.MINOR_ISSUES)
        restored = AdaptiveMemory.from_snapshot(json.loads(json.dumps(memory.snapshot())))
        assert restored.history("a.test") == memory.history("a.test")

    def test_snapshot_skips_malformed_entries(self):
        data = {"domains": {"a.test": [
            {"url": "https://a.test/", "timestamp": "2026-01-01T00:00:00+00:00",
             "violation_ids": [], "decision_category": "PASSED"},
            {"url": "https://a.test/", "timestamp": "not-a-date", "decision_category": "PASSED"},
            {"url": "https://a.test/", "timestamp": "2026-01-01T00:00:00+00:00",
             "decision_category": "SOMETHING_ELSE"},
        ]}}
        assert len(AdaptiveMemory.from_snapshot(data).history("a.test")) == 1


class TestRunStore:
    def test_save_then_load(self, tmp_path):
        memory = AdaptiveMemory()
        memory.record("https://a.test/1", ["label"], Category.MINOR_ISSUES)
        path = tmp_path / "state" / "memory.json"

        save_memory(str(path), memory)
        loaded = load_memory(str(path))

        assert loaded.history("a.test") == memory.history("a.test")
        assert "saved_at" in json.loads(path.read_text())

    def test_missing_file_gives_empty_memory(self, tmp_path):
        assert load_memory(str(tmp_path / "none.json")).domains() == []
        assert load_memory(None).domains() == []

    def test_corrupt_file_gives_empty_memory(self, tmp_path):
        path = tmp_path / "memory.json"
        path.write_text("{not json")
        assert load_memory(str(path)).domains() == []

    @pytest.mark.parametrize("content", [
        "[1, 2, 3]",
        '{"domains": ["a.test"]}',
        '"just a string"',
    ])
    def test_wrong_snapshot_shape_gives_empty_memory(self, tmp_path, content):
        path = tmp_path / "memory.json"
        path.write_text(content)
        assert load_memory(str(path)).domains() == []

    def test_malformed_domains_and_entries_are_skipped(self, tmp_path):
        good = AdaptiveMemory()
        good.record("https://a.test/", ["label"], Category.MINOR_ISSUES)
        [entry] = good.snapshot()["domains"]["a.test"]
        path = tmp_path / "memory.json"
        path.write_text(json.dumps({"domains": {
            "a.test": [entry, "not an entry", 7, {"timestamp": 5}],
            "b.test": 5,
            "c.test": None,
        }}))

        loaded = load_memory(str(path))
        assert loaded.domains() == ["a.test"]
        assert len(loaded.history("a.test")) == 1

    def test_load_applies_eviction_bound(self, tmp_path):
        memory = AdaptiveMemory()
        for i in range(4):
            memory.record(f"https://a.test/{i}", [], Category.PASSED)
        path = tmp_path / "memory.json"
        save_memory(str(path), memory)
        loaded = load_memory(str(path), MemorySettings(max_entries_per_domain=1))
        assert [e.url for e in loaded.history("a.test")] == ["https://a.test/3"]


# ── Memory wired into the triage engine ──────────────────────────

class TestTriageWithMemory:
    def test_decide_records_after_deciding(self):
        memory = AdaptiveMemory()
        engine = TriageEngine(TriageSettings(), memory)
        d = engine.decide(_page("https://a.test/x", "color-contrast"))
        [entry] = memory.history("a.test")
        assert entry.decision_category is d.category
        assert entry.violation_ids == frozenset({"color-contrast"})

    def test_scan_errors_are_remembered_as_critical(self):
        memory = AdaptiveMemory()
        TriageEngine(memory=memory).decide(PageScanResult.failed("https://a.test/", "timeout"))
        assert memory.history("a.test")[0].decision_category is Category.CRITICAL

    def test_historical_factor_is_advisory(self):
        memory = AdaptiveMemory()
        with_memory = TriageEngine(TriageSettings(), memory)
        without_memory = TriageEngine(TriageSettings())

        first = with_memory.decide(_page("https://a.test/1", "color-contrast"))
        assert all(f.kind is not FactorKind.HISTORICAL for f in first.factors)

        with_memory.decide(_page("https://a.test/2", "color-contrast"))
        page = _page("https://a.test/3", "color-contrast", "link-name")
        third = with_memory.decide(page)

        historical = [f for f in third.factors if f.kind is FactorKind.HISTORICAL]
        assert len(historical) == 1
        assert "color-contrast" in historical[0].description
        assert historical[0].evidence == ("2 previous scans analyzed",)

        baseline = without_memory.decide(page)
        assert third.category is baseline.category
        assert third.confidence == baseline.confidence
        assert third.without_history() == baseline

    def test_other_domains_do_not_contribute(self):
        memory = AdaptiveMemory()
        engine = TriageEngine(TriageSettings(), memory)
        engine.decide(_page("https://a.test/1", "color-contrast"))
        d = engine.decide(_page("https://b.test/1", "color-contrast"))
        assert all(f.kind is not FactorKind.HISTORICAL for f in d.factors)

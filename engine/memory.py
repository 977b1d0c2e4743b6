"""Adaptive memory — per-domain history of past triage decisions.

An explicit, injectable store passed to the triage engine; there is no
module-level state.  All access goes through one lock, since ``decide``
may run on several worker threads at once.

History is advisory: the engine reads it to attach a ``historical``
reasoning factor and never to change a category or a confidence.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urlparse

from engine.settings import MemorySettings
from schemas.domain import HistoryEntry
from schemas.taxonomy import Category

_log = logging.getLogger(__name__)

# A violation id "recurs" when seen in at least this share of a domain's entries
RECURRING_SHARE = 0.5

SNAPSHOT_VERSION = 1


def domain_of(url: str) -> str:
    """URL authority host, lower-cased.  Falls back to the raw string."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    return host or url.strip().lower()


class AdaptiveMemory:

    def __init__(
        self,
        settings: MemorySettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or MemorySettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._entries: dict[str, list[HistoryEntry]] = defaultdict(list)

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    # ── Writes ────────────────────────────────────────────────────

    def record(self, url: str, violation_ids: Iterable[str], category: Category) -> Optional[HistoryEntry]:
        """Append a decision for *url*'s domain.  No-op when disabled."""
        if not self.enabled:
            return None
        entry = HistoryEntry(
            url=url,
            timestamp=self._clock(),
            violation_ids=frozenset(violation_ids),
            decision_category=category,
        )
        domain = domain_of(url)
        with self._lock:
            history = self._entries[domain]
            history.append(entry)
            limit = self.settings.max_entries_per_domain
            if limit is not None and len(history) > limit:
                del history[: len(history) - limit]
        return entry

    def record_feedback(self, url: str, actual_category: Category) -> bool:
        """Mark the most recent decision for *url* as right or wrong.

        Returns False when no decision for *url* is remembered.
        """
        domain = domain_of(url)
        with self._lock:
            for entry in reversed(self._entries.get(domain, [])):
                if entry.url == url:
                    entry.was_confirmed_correct = entry.decision_category == Category(actual_category)
                    return True
        _log.warning("No remembered decision for %s; feedback ignored", url)
        return False

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    # ── Reads ─────────────────────────────────────────────────────

    def domains(self) -> list[str]:
        with self._lock:
            return sorted(d for d, entries in self._entries.items() if entries)

    def history(self, domain: str) -> list[HistoryEntry]:
        with self._lock:
            return list(self._entries.get(domain, []))

    def recurring_violations(self, domain: str) -> frozenset[str]:
        entries = self.history(domain)
        if not entries:
            return frozenset()
        counts = Counter(vid for e in entries for vid in e.violation_ids)
        return frozenset(vid for vid, n in counts.items() if n >= len(entries) * RECURRING_SHARE)

    def accuracy(self) -> dict[tuple[str, Category], float]:
        """Share of confirmed-correct decisions per (domain, category).

        Only entries with feedback count.  Pairs without feedback are omitted.
        """
        with self._lock:
            graded: dict[tuple[str, Category], list[bool]] = defaultdict(list)
            for domain, entries in self._entries.items():
                for e in entries:
                    if e.was_confirmed_correct is not None:
                        graded[(domain, e.decision_category)].append(e.was_confirmed_correct)
        return {key: sum(marks) / len(marks) for key, marks in graded.items()}

    # ── Persistence ───────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "version": SNAPSHOT_VERSION,
                "domains": {
                    domain: [e.to_dict() for e in entries]
                    for domain, entries in self._entries.items()
                    if entries
                },
            }

    @classmethod
    def from_snapshot(
        cls,
        data: dict[str, Any],
        settings: MemorySettings | None = None,
    ) -> AdaptiveMemory:
        """Rebuild a memory from ``snapshot()`` output.

        Raises ``ValueError`` when the snapshot itself is not an object
        with a ``domains`` mapping.  Malformed domains and entries are
        skipped with a warning.
        """
        if not isinstance(data, dict):
            raise ValueError(f"memory snapshot must be an object, got {type(data).__name__}")
        domains = data.get("domains") or {}
        if not isinstance(domains, dict):
            raise ValueError(f"'domains' must be an object, got {type(domains).__name__}")

        memory = cls(settings)
        skipped = 0
        for domain, entries in domains.items():
            if not isinstance(entries, list):
                skipped += 1
                continue
            for raw in entries:
                if not isinstance(raw, dict):
                    skipped += 1
                    continue
                try:
                    memory._entries[domain].append(HistoryEntry.from_dict(raw))
                except (KeyError, TypeError, ValueError):
                    skipped += 1
        if skipped:
            _log.warning("Skipped %d malformed history entries", skipped)
        limit = memory.settings.max_entries_per_domain
        if limit is not None:
            for domain in memory._entries:
                del memory._entries[domain][:-limit]
        return memory

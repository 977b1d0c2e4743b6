"""Audit runtime protocol — engine-agnostic contract for page audits.

The audit engine is a dependency, not the product.  Today it's axe-core
driven through Playwright, tomorrow it could be another checker or a
mock for tests.

Ownership model:
    runtime = PlaywrightAxeRuntime()   # production (one shared browser)
    runtime = MockAuditRuntime(...)    # tests

    runtime.start()                    # singly owned by the orchestrator
    session = runtime.open_session()   # one per worker, independent page(s)
    raw = session.audit(url, timeout_ms)
    session.close()
    runtime.close()                    # always, on every exit path
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Protocol


class AuditRuntimeError(RuntimeError):
    """The shared audit runtime could not be acquired.  Fatal for the batch."""
    pass


class AuditError(Exception):
    """A single audit attempt failed (navigation, HTTP status, timeout)."""
    pass


class AuditSession(Protocol):
    """A worker-private handle onto the shared runtime."""

    def audit(self, url: str, timeout_ms: int) -> dict:
        """
        Load *url* and run the audit.

        Returns
        -------
        dict   ``{"violations": [...], "passes": [...], "incomplete": [...],
               "inapplicable": [...]}`` in axe-core result shape.

        Raises
        ------
        AuditError   on navigation / HTTP / timeout failure.
        """
        ...

    def close(self) -> None:
        ...


class AuditRuntime(Protocol):
    """The shared, singly-owned audit resource (e.g. one browser)."""

    def start(self) -> None:
        """Acquire the resource.  Raise ``AuditRuntimeError`` on failure."""
        ...

    def open_session(self) -> AuditSession:
        ...

    def close(self) -> None:
        """Release the resource.  Must be safe to call more than once."""
        ...


# ── Mock for offline tests ────────────────────────────────────────

Script = Callable[[str, int], dict]


class MockAuditSession:
    def __init__(self, runtime: MockAuditRuntime):
        self._runtime = runtime
        self.closed = False

    def audit(self, url: str, timeout_ms: int) -> dict:
        return self._runtime._dispatch(url, timeout_ms)

    def close(self) -> None:
        self.closed = True
        self._runtime._session_closed()


class MockAuditRuntime:
    """Returns canned audit payloads — no browser, no network.

    *responses* maps a URL to either a payload dict, an exception instance
    (raised on every attempt) or a list of those consumed one per attempt
    (the last element repeats).  URLs not in *responses* get *default*.
    *latency* adds a blocking sleep per audit call.
    """

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        *,
        default: Any = None,
        latency: float = 0.0,
        fail_start: Exception | None = None,
    ):
        self._responses = responses or {}
        self._default = default if default is not None else {
            "violations": [], "passes": [], "incomplete": [], "inapplicable": [],
        }
        self._latency = latency
        self._fail_start = fail_start
        self._lock = threading.Lock()
        self.started = False
        self.closed = False
        self.sessions_opened = 0
        self.sessions_closed = 0
        self.calls: list[dict[str, Any]] = []

    def start(self) -> None:
        if self._fail_start is not None:
            raise AuditRuntimeError(str(self._fail_start)) from self._fail_start
        self.started = True

    def open_session(self) -> MockAuditSession:
        with self._lock:
            self.sessions_opened += 1
        return MockAuditSession(self)

    def close(self) -> None:
        self.closed = True

    def attempts_for(self, url: str) -> int:
        with self._lock:
            return sum(1 for c in self.calls if c["url"] == url)

    def _session_closed(self) -> None:
        with self._lock:
            self.sessions_closed += 1

    def _dispatch(self, url: str, timeout_ms: int) -> dict:
        with self._lock:
            attempt = sum(1 for c in self.calls if c["url"] == url)
            self.calls.append({"url": url, "timeout_ms": timeout_ms, "at": time.monotonic()})
        if self._latency:
            time.sleep(self._latency)

        scripted = self._responses.get(url, self._default)
        if isinstance(scripted, list):
            scripted = scripted[min(attempt, len(scripted) - 1)]
        if isinstance(scripted, BaseException):
            raise scripted
        return scripted

"""Scan orchestrator — bounded-concurrency audit of a URL batch.

No triage here.  This layer only turns URLs into ``PageScanResult``s.

Model:
  - One shared audit runtime (e.g. one browser), started and closed by
    the orchestrator on every exit path.
  - ``concurrency`` worker threads, each with its own session onto the
    runtime, pulling URLs from a bounded channel.  The feeding thread
    closes the channel with one marker per worker, so "channel closed"
    is the only termination signal.
  - Per URL: up to ``retry_attempts`` attempts with exponential backoff,
    then an error result.  A URL's failure never aborts the batch.
  - Worker-local rate limiting: a fixed pause after every URL.

Failure policy:
  - Transient per-URL failures → ``PageScanResult.error`` (data, not raised)
  - ``AuditRuntimeError`` (runtime cannot be acquired) → raised, batch aborted
  - ``cancel()`` → no new URLs dispatched, in-flight URLs finish their
    retry sequence, ``ScanCancelled`` raised with the partial results
  - A fatal failure or interrupt abandons in-flight retries; abandoned
    URLs get no result

Usage:
    orchestrator = ScanOrchestrator(PlaywrightAxeRuntime(), ScanSettings(concurrency=4))
    results      = orchestrator.scan(urls)
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Optional

from audit.normalize import build_scan_result
from audit.runtime import AuditRuntime, AuditRuntimeError, AuditSession
from engine.settings import ScanSettings, build
from schemas.domain import PageScanResult

_log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, PageScanResult], None]

# Channel close marker, sent once per worker
_CLOSED = object()

# How long blocking channel operations wait before re-checking for a stop
_POLL_SECONDS = 0.05


class ScanCancelled(Exception):
    """The caller cancelled the run.  ``results`` holds what completed."""

    def __init__(self, results: list[PageScanResult]):
        super().__init__(f"Scan cancelled after {len(results)} result(s)")
        self.results = results


class ScanOrchestrator:
    """Drive a pool of audit workers over a URL list."""

    def __init__(
        self,
        runtime: AuditRuntime,
        settings: ScanSettings | None = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.runtime = runtime
        self.settings = settings or ScanSettings()
        self.on_progress = on_progress
        self.events: list[dict[str, Any]] = []

        self._lock = threading.Lock()
        # _halt: take no new URLs.  _stop: also abandon in-flight retries.
        self._halt = threading.Event()
        self._stop = threading.Event()
        self._cancelled = threading.Event()
        self._fatal: BaseException | None = None
        self._results: list[PageScanResult] = []
        self._processed = 0
        self._total = 0

    # ── Public API ────────────────────────────────────────────────

    def scan(self, urls: list[str]) -> list[PageScanResult]:
        """Audit every URL once.  Returns one result per input URL, any order."""
        self._reset(len(urls))
        if not urls:
            return []

        workers = min(self.settings.concurrency, len(urls))
        channel: queue.Queue = queue.Queue(maxsize=self.settings.channel_capacity)
        threads = [
            threading.Thread(
                target=self._worker,
                args=(worker_id, channel),
                name=f"scan-worker-{worker_id}",
                daemon=True,
            )
            for worker_id in range(workers)
        ]

        started = time.monotonic()
        _log.info("Starting scan of %d URL(s) with %d worker(s)", len(urls), workers)
        self._emit("scan_started", total=len(urls), workers=workers)

        try:
            self.runtime.start()
            for t in threads:
                t.start()
            self._feed(channel, urls, workers)
            for t in threads:
                t.join()
        except BaseException:
            # KeyboardInterrupt or a runtime start failure: stop and drain
            self._halt.set()
            self._stop.set()
            for t in threads:
                if t.is_alive():
                    t.join()
            raise
        finally:
            self.runtime.close()

        elapsed_ms = int((time.monotonic() - started) * 1000)
        self._emit("scan_finished", processed=self._processed, ms=elapsed_ms)

        if self._fatal is not None:
            _log.error("Scan aborted: %s", self._fatal)
            raise self._fatal

        results = list(self._results)
        if self._cancelled.is_set() and len(results) < len(urls):
            _log.warning("Scan cancelled: %d/%d URL(s) completed", len(results), len(urls))
            raise ScanCancelled(results)

        _log.info("Scan completed: %d result(s) in %d ms", len(results), elapsed_ms)
        return results

    def cancel(self) -> None:
        """Stop dispatching new URLs.  In-flight URLs finish, retries included."""
        self._cancelled.set()
        self._halt.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def progress(self) -> dict[str, int]:
        with self._lock:
            total = self._total
            processed = self._processed
        percentage = round(processed / total * 100) if total else 0
        return {"processed": processed, "total": total, "percentage": percentage}

    def stats(self) -> dict[str, Any]:
        with self._lock:
            results = list(self._results)
        scanned = len(results)
        return {
            "total_scanned": scanned,
            "violations": sum(len(r.violations) for r in results),
            "passes": sum(len(r.passes) for r in results),
            "errors": sum(1 for r in results if not r.ok),
            "average_scan_ms": round(sum(r.scan_duration_ms for r in results) / scanned, 1) if scanned else 0.0,
        }

    def reset_events(self) -> list[dict[str, Any]]:
        with self._lock:
            events = self.events.copy()
            self.events.clear()
        return events

    # ── Channel ───────────────────────────────────────────────────

    def _put(self, channel: queue.Queue, item: object) -> bool:
        """Blocking put that gives up once dispatch is halted."""
        while not self._halt.is_set():
            try:
                channel.put(item, timeout=_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _feed(self, channel: queue.Queue, urls: list[str], workers: int) -> None:
        for url in urls:
            if not self._put(channel, url):
                return
        for _ in range(workers):
            if not self._put(channel, _CLOSED):
                return

    def _next_url(self, channel: queue.Queue) -> Optional[str]:
        """Pop one URL, or None when the channel is closed or dispatch is halted."""
        while True:
            if self._halt.is_set():
                return None
            try:
                item = channel.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            if item is _CLOSED:
                return None
            return item

    # ── Worker ────────────────────────────────────────────────────

    def _worker(self, worker_id: int, channel: queue.Queue) -> None:
        session: AuditSession | None = None
        try:
            session = self.runtime.open_session()
            while True:
                url = self._next_url(channel)
                if url is None:
                    return
                _log.debug("Worker %d: scanning %s", worker_id, url)
                result = self._scan_one(session, url)
                if result is None:
                    return
                self._record(result)

                # rate limiting; wait() returns True once dispatch is halted
                if self._halt.wait(self.settings.rate_limit_delay_ms / 1000.0):
                    return
        except AuditRuntimeError as exc:
            self._abort(exc)
        except Exception as exc:
            _log.exception("Worker %d failed", worker_id)
            self._abort(exc)
        finally:
            if session is not None:
                try:
                    session.close()
                except Exception as exc:
                    _log.warning("Worker %d: failed to close session: %s", worker_id, exc)

    def _scan_one(self, session: AuditSession, url: str) -> Optional[PageScanResult]:
        """Audit one URL with sequential retries.  Only runtime failures raise.

        Returns None when a hard stop interrupts the backoff.  ``cancel()``
        alone never cuts a retry sequence short.
        """
        max_attempts = self.settings.retry_attempts
        started = time.monotonic()
        last_error = "Unknown error"
        attempt = 0

        while attempt < max_attempts:
            attempt += 1
            attempt_started = time.monotonic()
            try:
                raw = session.audit(url, self.settings.timeout_ms)
                duration_ms = int((time.monotonic() - attempt_started) * 1000)
                return build_scan_result(url, raw or {}, scan_duration_ms=duration_ms, attempts=attempt)
            except AuditRuntimeError:
                raise
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                _log.warning("Attempt %d/%d failed for %s: %s", attempt, max_attempts, url, last_error)
                self._emit("attempt_failed", url=url, attempt=attempt, error=last_error)

            if attempt < max_attempts and self._stop.wait(self.settings.backoff_seconds(attempt)):
                _log.warning("Retries for %s abandoned: scan stopped", url)
                return None

        _log.error("All %d attempt(s) failed for %s: %s", attempt, url, last_error)
        return PageScanResult.failed(
            url,
            last_error,
            attempts=attempt,
            scan_duration_ms=int((time.monotonic() - started) * 1000),
        )

    # ── Bookkeeping ───────────────────────────────────────────────

    def _reset(self, total: int) -> None:
        with self._lock:
            self._results = []
            self._processed = 0
            self._total = total
            self._fatal = None
            self.events.clear()
        self._halt.clear()
        self._stop.clear()
        self._cancelled.clear()

    def _record(self, result: PageScanResult) -> None:
        with self._lock:
            self._results.append(result)
            self._processed += 1
            processed, total = self._processed, self._total
            self.events.append({
                "type": "url_completed",
                "url": result.url,
                "ok": result.ok,
                "attempts": result.attempts,
                "ms": result.scan_duration_ms,
            })
        _log.info("[%d/%d] %s %s", processed, total, "ok" if result.ok else "error", result.url)
        if self.on_progress is not None:
            try:
                self.on_progress(processed, total, result)
            except Exception:
                _log.exception("Progress callback failed for %s", result.url)

    def _abort(self, exc: BaseException) -> None:
        with self._lock:
            if self._fatal is None:
                self._fatal = exc
        self._halt.set()
        self._stop.set()

    def _emit(self, event_type: str, **kwargs: Any) -> None:
        with self._lock:
            self.events.append({"type": event_type, **kwargs})


def scan(
    urls: list[str],
    runtime: AuditRuntime,
    *,
    concurrency: int = 2,
    timeout_ms: int = 30000,
    max_retries: int = 3,
    rate_limit_delay_ms: int = 2000,
    base_backoff_ms: int = 2000,
) -> list[PageScanResult]:
    """One-shot helper: validate settings, then run a ``ScanOrchestrator``."""
    settings = build(
        ScanSettings,
        concurrency=concurrency,
        timeout_ms=timeout_ms,
        retry_attempts=max_retries,
        rate_limit_delay_ms=rate_limit_delay_ms,
        base_backoff_ms=base_backoff_ms,
    )
    return ScanOrchestrator(runtime, settings).scan(urls)

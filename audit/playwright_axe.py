"""Playwright + axe-core audit runtime.

One Chromium instance is launched and owned by ``PlaywrightAxeRuntime``.
Playwright's sync API is bound to the thread that created it, so worker
sessions do not share the launcher's objects: each session connects to
the same browser over CDP from its own thread and opens a fresh browser
context per audited URL.

axe-core is fetched once per runtime (``requests``) and injected into
every page as a script tag.
"""
from __future__ import annotations

import logging
import socket
import time
from pathlib import Path
from typing import Any

import requests

from audit.runtime import AuditError, AuditRuntimeError

_log = logging.getLogger(__name__)

AXE_CDN_URL = "https://cdnjs.cloudflare.com/ajax/libs/axe-core/4.10.2/axe.min.js"
WCAG_TAGS: tuple[str, ...] = ("wcag2a", "wcag2aa", "wcag21a", "wcag21aa")
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)
_VIEWPORT = {"width": 1920, "height": 1080}
_FETCH_TIMEOUT = 30

_AXE_RUN_JS = """
({ tags, timeoutMs }) => {
  const expired = new Promise(resolve =>
    setTimeout(() => resolve({ timedOut: true }), timeoutMs));
  const audit = axe.run(document, { runOnly: { type: 'tag', values: tags } })
    .then(r => ({
      violations: r.violations,
      passes: r.passes,
      incomplete: r.incomplete,
      inapplicable: r.inapplicable,
    }));
  return Promise.race([audit, expired]);
}
"""

_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--no-first-run",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
]


def _sync_playwright():
    """Import the Playwright sync API on first real use."""
    try:
        from playwright.sync_api import sync_playwright
    except ImportError as exc:
        raise AuditRuntimeError(
            "Playwright unavailable. Install with: pip install playwright && "
            "python -m playwright install chromium"
        ) from exc
    return sync_playwright


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def load_axe_source(source: str = AXE_CDN_URL) -> str:
    """Return the axe-core script from a local path or URL."""
    path = Path(source)
    if not source.startswith(("http://", "https://")) and path.is_file():
        return path.read_text(encoding="utf-8")
    resp = requests.get(source, timeout=_FETCH_TIMEOUT)
    resp.raise_for_status()
    return resp.text


class PlaywrightAxeSession:
    """Worker-private CDP connection to the shared browser."""

    def __init__(
        self,
        endpoint: str,
        axe_source: str,
        *,
        tags: tuple[str, ...] = WCAG_TAGS,
        settle_ms: int = 1000,
    ):
        self._endpoint = endpoint
        self._axe_source = axe_source
        self._tags = list(tags)
        self._settle_ms = settle_ms
        self._pw: Any = None
        self._browser: Any = None

    def _connect(self) -> None:
        if self._browser is not None:
            return
        try:
            self._pw = _sync_playwright()().start()
            self._browser = self._pw.chromium.connect_over_cdp(self._endpoint)
        except AuditRuntimeError:
            raise
        except Exception as exc:
            self.close()
            raise AuditRuntimeError(f"Cannot connect to shared browser at {self._endpoint}: {exc}") from exc

    def audit(self, url: str, timeout_ms: int) -> dict:
        """Fetch and audit *url*; the whole attempt is bounded by *timeout_ms*."""
        self._connect()
        from playwright.sync_api import Error as PlaywrightError

        deadline = time.monotonic() + timeout_ms / 1000.0

        def remaining_ms() -> int:
            left = int((deadline - time.monotonic()) * 1000)
            if left <= 0:
                raise AuditError(f"Audit timed out after {timeout_ms} ms")
            return left

        context = self._browser.new_context(viewport=_VIEWPORT, user_agent=USER_AGENT)
        try:
            page = context.new_page()
            page.set_default_timeout(timeout_ms)
            response = page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
            if response is None:
                raise AuditError("Navigation failed - no response received")
            if not response.ok:
                raise AuditError(f"HTTP {response.status}: {response.status_text}")

            # dynamic content
            if self._settle_ms:
                page.wait_for_timeout(min(self._settle_ms, remaining_ms()))

            page.add_script_tag(content=self._axe_source)
            raw = page.evaluate(_AXE_RUN_JS, {"tags": self._tags, "timeoutMs": remaining_ms()})
            if isinstance(raw, dict) and raw.get("timedOut"):
                raise AuditError(f"Audit timed out after {timeout_ms} ms (axe-core did not finish)")
            return raw
        except PlaywrightError as exc:
            raise AuditError(str(exc).splitlines()[0] if str(exc) else repr(exc)) from exc
        finally:
            try:
                context.close()
            except PlaywrightError as exc:
                _log.warning("Failed to close browser context for %s: %s", url, exc)

    def close(self) -> None:
        browser, pw = self._browser, self._pw
        self._browser = self._pw = None
        try:
            if browser is not None:
                browser.close()
        finally:
            if pw is not None:
                pw.stop()


class PlaywrightAxeRuntime:
    """The shared audit resource: one headless Chromium reachable over CDP."""

    def __init__(
        self,
        *,
        headless: bool = True,
        axe_source: str = AXE_CDN_URL,
        tags: tuple[str, ...] = WCAG_TAGS,
        settle_ms: int = 1000,
    ):
        self._headless = headless
        self._axe_location = axe_source
        self._tags = tags
        self._settle_ms = settle_ms
        self._axe_source: str | None = None
        self._pw: Any = None
        self._browser: Any = None
        self._endpoint: str | None = None

    def start(self) -> None:
        sync_playwright = _sync_playwright()
        try:
            self._axe_source = load_axe_source(self._axe_location)
        except (requests.RequestException, OSError) as exc:
            raise AuditRuntimeError(f"Cannot load axe-core from {self._axe_location}: {exc}") from exc

        port = _free_port()
        try:
            self._pw = sync_playwright().start()
            self._browser = self._pw.chromium.launch(
                headless=self._headless,
                args=[*_LAUNCH_ARGS, f"--remote-debugging-port={port}"],
            )
        except Exception as exc:
            self.close()
            raise AuditRuntimeError(f"Browser failed to start: {exc}") from exc

        self._endpoint = f"http://127.0.0.1:{port}"
        _log.info("Shared browser started (%s)", self._endpoint)

    def open_session(self) -> PlaywrightAxeSession:
        if self._endpoint is None or self._axe_source is None:
            raise AuditRuntimeError("Runtime not started")
        return PlaywrightAxeSession(
            self._endpoint,
            self._axe_source,
            tags=self._tags,
            settle_ms=self._settle_ms,
        )

    def close(self) -> None:
        browser, pw = self._browser, self._pw
        self._browser = self._pw = None
        self._endpoint = None
        try:
            if browser is not None:
                browser.close()
                _log.info("Shared browser closed")
        finally:
            if pw is not None:
                pw.stop()

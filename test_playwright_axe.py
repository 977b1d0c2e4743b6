"""Tests for audit.playwright_axe — axe loading and per-page error mapping.

No browser: the CDP-connected browser is replaced by small fakes, and
``requests.get`` is monkeypatched.
"""
from __future__ import annotations

import time

import pytest
import requests

from audit import playwright_axe
from audit.playwright_axe import PlaywrightAxeRuntime, PlaywrightAxeSession, load_axe_source
from audit.runtime import AuditError, AuditRuntimeError


# ── Fixtures ──────────────────────────────────────────────────────

class _Response:
    def __init__(self, status=200, status_text="OK", text=""):
        self.status = status
        self.status_text = status_text
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status < 400

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status} {self.status_text}")


class _Page:
    def __init__(self, response, evaluated=None, goto_delay=0.0):
        self._response = response
        self._evaluated = evaluated if evaluated is not None else {"violations": [], "passes": []}
        self._goto_delay = goto_delay
        self.default_timeout = None
        self.scripts = []
        self.evaluate_args = None

    def set_default_timeout(self, ms):
        self.default_timeout = ms

    def goto(self, url, timeout, wait_until):
        if self._goto_delay:
            time.sleep(self._goto_delay)
        return self._response

    def wait_for_timeout(self, ms):
        pass

    def add_script_tag(self, content):
        self.scripts.append(content)

    def evaluate(self, script, arg):
        self.evaluate_args = arg
        return self._evaluated


class _Context:
    def __init__(self, page):
        self.page = page
        self.closed = False

    def new_page(self):
        return self.page

    def close(self):
        self.closed = True


class _Browser:
    def __init__(self, page):
        self.context = _Context(page)

    def new_context(self, **kwargs):
        return self.context


def _session(page, settle_ms=0):
    session = PlaywrightAxeSession("http://127.0.0.1:9222", "window.axe = {};", settle_ms=settle_ms)
    session._browser = _Browser(page)
    return session


# ── load_axe_source ──────────────────────────────────────────────

def test_axe_source_from_local_file(tmp_path, monkeypatch):
    path = tmp_path / "axe.min.js"
    path.write_text("/* axe */")
    monkeypatch.setattr(requests, "get", lambda *a, **kw: pytest.fail("no network expected"))
    assert load_axe_source(str(path)) == "/* axe */"


def test_axe_source_from_url(monkeypatch):
    seen = {}

    def fake_get(url, timeout):
        seen["url"] = url
        return _Response(text="/* remote axe */")

    monkeypatch.setattr(requests, "get", fake_get)
    assert load_axe_source("https://cdn.test/axe.js") == "/* remote axe */"
    assert seen["url"] == "https://cdn.test/axe.js"


def test_axe_download_failure_is_fatal_on_start(monkeypatch):
    monkeypatch.setattr(playwright_axe, "_sync_playwright", lambda: None)
    monkeypatch.setattr(requests, "get", lambda url, timeout: _Response(404, "Not Found"))
    runtime = PlaywrightAxeRuntime(axe_source="https://cdn.test/axe.js")
    with pytest.raises(AuditRuntimeError, match="Cannot load axe-core"):
        runtime.start()


def test_open_session_before_start_is_rejected():
    with pytest.raises(AuditRuntimeError, match="not started"):
        PlaywrightAxeRuntime().open_session()


# ── PlaywrightAxeSession.audit ───────────────────────────────────

class TestSessionAudit:
    def test_success_returns_axe_payload(self):
        page = _Page(_Response(), evaluated={"violations": [{"id": "label"}]})
        session = _session(page)

        assert session.audit("https://a.test", 5000) == {"violations": [{"id": "label"}]}
        assert page.default_timeout == 5000
        assert page.scripts == ["window.axe = {};"]
        assert page.evaluate_args["tags"] == list(playwright_axe.WCAG_TAGS)
        assert 0 < page.evaluate_args["timeoutMs"] <= 5000
        assert session._browser.context.closed

    def test_no_response(self):
        session = _session(_Page(None))
        with pytest.raises(AuditError, match="no response"):
            session.audit("https://a.test", 5000)
        assert session._browser.context.closed

    def test_http_error_status(self):
        session = _session(_Page(_Response(503, "Service Unavailable")))
        with pytest.raises(AuditError, match="HTTP 503: Service Unavailable"):
            session.audit("https://a.test", 5000)

    def test_axe_run_past_deadline(self):
        session = _session(_Page(_Response(), evaluated={"timedOut": True}))
        with pytest.raises(AuditError, match="timed out"):
            session.audit("https://a.test", 5000)
        assert session._browser.context.closed

    def test_slow_navigation_exhausts_the_budget(self):
        page = _Page(_Response(), goto_delay=0.05)
        session = _session(page, settle_ms=1000)
        with pytest.raises(AuditError, match="timed out after 10 ms"):
            session.audit("https://a.test", 10)
        assert page.evaluate_args is None

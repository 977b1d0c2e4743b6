#!/usr/bin/env python3
"""Scan a batch of URLs for accessibility defects and triage every page.

    python triage_scan.py --urls urls.json --workers 4 --memory .a11y/memory.json
    python triage_scan.py https://example.com https://example.com/contact
"""
import argparse
import json
import logging
import signal
import sys
import time

from analysis.provider import AOAIDeepAnalysisProvider
from audit.playwright_axe import PlaywrightAxeRuntime
from audit.runtime import AuditRuntimeError
from engine.coordinator import BatchCoordinator, BatchOutcome
from engine.orchestrator import ScanCancelled, ScanOrchestrator
from engine.run_store import load_memory, save_memory
from engine.settings import (
    ConfigurationError,
    ScanSettings,
    Settings,
    build,
    load_url_config,
    validate_urls,
)
from engine.triage import TriageEngine
from schemas.domain import PageScanResult
from schemas.taxonomy import Category


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bulk accessibility scan with rule-based triage."
    )
    parser.add_argument("urls", nargs="*", help="URLs to scan")
    parser.add_argument("--urls", dest="urls_file", help="JSON file: list of URLs or {urls, config}")
    parser.add_argument("--workers", type=int, help="Parallel workers")
    parser.add_argument("--timeout", type=int, help="Per-attempt timeout in ms")
    parser.add_argument("--retries", type=int, help="Total attempts per URL")
    parser.add_argument("--delay", type=int, help="Pause after each URL per worker, in ms")
    parser.add_argument("--memory", help="Adaptive memory JSON file (loaded and saved)")
    parser.add_argument("--deep-analysis", action="store_true",
                        help="Send REVIEW_NEEDED / CRITICAL pages to Azure OpenAI")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--json", action="store_true", help="Print the full outcome as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def _scan_settings(args: argparse.Namespace, base: ScanSettings) -> tuple[list[str], ScanSettings]:
    urls = validate_urls(args.urls)
    scan = base
    if args.urls_file:
        file_urls, scan = load_url_config(args.urls_file, base)
        urls = file_urls + urls

    overrides = {
        "concurrency": args.workers,
        "timeout_ms": args.timeout,
        "retry_attempts": args.retries,
        "rate_limit_delay_ms": args.delay,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        scan = build(ScanSettings, **{**scan.model_dump(), **overrides})
    return urls, scan


def _print_progress(processed: int, total: int, result: PageScanResult) -> None:
    mark = "✓" if result.ok else "✗"
    detail = f"{len(result.violations)} violation(s)" if result.ok else result.error
    print(f"  {mark} [{processed}/{total}] {result.url} — {detail}")


def _print_summary(outcome: BatchOutcome) -> None:
    s = outcome.summary()
    print()
    print("── Summary ─────────────────────────────────────────")
    print(f"  Pages scanned:     {s['total_pages']}")
    print(f"  Passed:            {s['passed']}")
    print(f"  Minor issues:      {s['minor_issues']}")
    print(f"  Review needed:     {s['review_needed']}")
    print(f"  Critical:          {s['critical']}")
    print(f"  Scan errors:       {s['errors']}")
    print(f"  Completion time:   {s['completion_time']}")

    flagged = outcome.category(Category.CRITICAL) + outcome.category(Category.REVIEW_NEEDED)
    if flagged:
        print()
        print("── Needs attention ─────────────────────────────────")
        for d in flagged:
            print(f"  [{d.category.value} {d.confidence:.2f} · {d.priority.value} · {d.effort_estimate}] {d.url}")
            print(f"      {d.rationale}")
    if outcome.analysis_errors:
        print()
        print(f"  ⚠ Deep analysis failed for {len(outcome.analysis_errors)} page(s)")


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    try:
        settings = Settings.from_env()
        urls, scan_settings = _scan_settings(args, settings.scan)
    except ConfigurationError as exc:
        print(f"✗ {exc}", file=sys.stderr)
        return 2
    if not urls:
        print("✗ No valid URLs to scan", file=sys.stderr)
        return 2

    memory_path = args.memory or settings.memory.store_path
    memory = load_memory(memory_path, settings.memory) if settings.memory.enabled else None

    provider = None
    if args.deep_analysis:
        try:
            provider = AOAIDeepAnalysisProvider()
        except EnvironmentError as exc:
            print(f"✗ {exc}", file=sys.stderr)
            return 2

    orchestrator = ScanOrchestrator(
        PlaywrightAxeRuntime(headless=not args.headed),
        scan_settings,
        on_progress=_print_progress,
    )
    coordinator = BatchCoordinator(
        orchestrator,
        TriageEngine(settings.triage, memory),
        provider,
        deep_analysis_delay_ms=settings.deep_analysis_delay_ms,
    )

    # First Ctrl+C stops dispatching; in-flight pages finish
    signal.signal(signal.SIGINT, lambda *_: orchestrator.cancel())

    print(f"Scanning {len(urls)} URL(s) with {scan_settings.concurrency} worker(s) …")
    started = time.monotonic()
    try:
        outcome = coordinator.run(urls)
    except ScanCancelled as exc:
        print(f"\n  ⚠ {exc}")
        outcome = coordinator.triage(exc.results, elapsed_ms=int((time.monotonic() - started) * 1000))
    except AuditRuntimeError as exc:
        print(f"✗ Audit runtime failed: {exc}", file=sys.stderr)
        return 1
    finally:
        if memory is not None and memory_path:
            save_memory(memory_path, memory)

    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    else:
        _print_summary(outcome)
    return 1 if orchestrator.cancelled else 0


if __name__ == "__main__":
    sys.exit(main())

"""Configuration surface — scan, triage and memory settings.

All settings are validated eagerly.  A bad value (negative concurrency,
zero attempts, a threshold below one) raises ``ConfigurationError``
before any browser is started or any URL is dispatched.

Sources, lowest precedence first:
  1. defaults below
  2. ``A11Y_*`` environment variables (``.env`` loaded via python-dotenv)
  3. a URL list file's ``config`` block (``load_url_config``)
  4. explicit keyword arguments / CLI flags
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from schemas.taxonomy import DEFAULT_COMPLEX_PATTERN_IDS

_log = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when a configuration value is rejected."""
    pass


class ScanSettings(BaseModel):
    concurrency: int = Field(default=2, ge=1, description="Number of parallel workers")
    retry_attempts: int = Field(default=3, ge=1, description="Total audit attempts per URL")
    timeout_ms: int = Field(default=30000, ge=1, description="Per-attempt fetch + audit timeout")
    rate_limit_delay_ms: int = Field(default=2000, ge=0, description="Worker-local pause after each URL")
    base_backoff_ms: int = Field(default=2000, ge=0, description="Backoff before retry n is base * 2^(n-1)")
    queue_size: Optional[int] = Field(default=None, ge=1, description="Work channel capacity (default 2 × concurrency)")

    model_config = {"frozen": True}

    @property
    def channel_capacity(self) -> int:
        return self.queue_size or 2 * self.concurrency

    def backoff_seconds(self, attempt: int) -> float:
        """Delay after failed attempt *attempt* (1-based) before the next one."""
        return self.base_backoff_ms * (2 ** (attempt - 1)) / 1000.0


class TriageSettings(BaseModel):
    critical_threshold: int = Field(default=5, ge=1, description="Serious/critical count that makes a page CRITICAL")
    incomplete_threshold: int = Field(default=5, ge=0, description="Incomplete count above which review is needed")
    complex_pattern_ids: frozenset[str] = Field(
        default=frozenset(DEFAULT_COMPLEX_PATTERN_IDS),
        description="Rule ids / tags that need visual analysis",
    )
    alternative_margin: float = Field(default=0.2, ge=0.0, le=1.0)
    max_alternatives: int = Field(default=2, ge=0)

    model_config = {"frozen": True}

    @field_validator("complex_pattern_ids", mode="before")
    @classmethod
    def _split_ids(cls, value: Any) -> Any:
        if isinstance(value, str):
            return frozenset(v.strip() for v in value.split(",") if v.strip())
        return value


class MemorySettings(BaseModel):
    enabled: bool = True
    max_entries_per_domain: Optional[int] = Field(default=None, ge=1)
    store_path: Optional[str] = None

    model_config = {"frozen": True}


class Settings(BaseModel):
    scan: ScanSettings = Field(default_factory=ScanSettings)
    triage: TriageSettings = Field(default_factory=TriageSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    deep_analysis_delay_ms: int = Field(default=5000, ge=0)

    model_config = {"frozen": True}

    @classmethod
    def from_env(cls, **overrides: Any) -> Settings:
        """Build settings from ``A11Y_*`` environment variables plus *overrides*."""
        load_dotenv()
        raw: dict[str, Any] = {
            "scan": {**_env_section(_SCAN_ENV), **(overrides.pop("scan", None) or {})},
            "triage": {**_env_section(_TRIAGE_ENV), **(overrides.pop("triage", None) or {})},
            "memory": {**_env_section(_MEMORY_ENV), **(overrides.pop("memory", None) or {})},
        }
        delay = os.environ.get("A11Y_DEEP_ANALYSIS_DELAY_MS")
        if delay is not None:
            raw["deep_analysis_delay_ms"] = delay
        raw.update(overrides)
        return build(cls, **raw)


# ── Environment mapping ───────────────────────────────────────────

_SCAN_ENV: dict[str, str] = {
    "A11Y_CONCURRENCY": "concurrency",
    "A11Y_RETRY_ATTEMPTS": "retry_attempts",
    "A11Y_TIMEOUT_MS": "timeout_ms",
    "A11Y_RATE_LIMIT_DELAY_MS": "rate_limit_delay_ms",
    "A11Y_BASE_BACKOFF_MS": "base_backoff_ms",
}

_TRIAGE_ENV: dict[str, str] = {
    "A11Y_CRITICAL_THRESHOLD": "critical_threshold",
    "A11Y_INCOMPLETE_THRESHOLD": "incomplete_threshold",
    "A11Y_COMPLEX_PATTERN_IDS": "complex_pattern_ids",
    "A11Y_ALTERNATIVE_MARGIN": "alternative_margin",
}

_MEMORY_ENV: dict[str, str] = {
    "A11Y_MEMORY_ENABLED": "enabled",
    "A11Y_MEMORY_MAX_ENTRIES": "max_entries_per_domain",
    "A11Y_MEMORY_PATH": "store_path",
}


def _env_section(mapping: dict[str, str]) -> dict[str, Any]:
    return {field: os.environ[var] for var, field in mapping.items() if var in os.environ}


def build(model: type[BaseModel], **values: Any) -> Any:
    """Construct *model*, converting pydantic errors to ``ConfigurationError``."""
    try:
        return model(**values)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid {model.__name__}: {problems}") from exc


# ── URL list loading ──────────────────────────────────────────────

# urls.json "config" keys → ScanSettings fields
_URL_FILE_KEYS: dict[str, str] = {
    "maxWorkers": "concurrency",
    "timeout": "timeout_ms",
    "retryAttempts": "retry_attempts",
    "delayBetweenScans": "rate_limit_delay_ms",
}


def validate_urls(urls: list[str]) -> list[str]:
    """Keep http(s) URLs with a host; warn about and drop the rest."""
    valid: list[str] = []
    for url in urls:
        parsed = urlparse(str(url).strip())
        if parsed.scheme in ("http", "https") and parsed.netloc:
            valid.append(str(url).strip())
        else:
            _log.warning("Invalid URL skipped: %s", url)
    return valid


def load_url_config(path: str | Path, base: ScanSettings | None = None) -> tuple[list[str], ScanSettings]:
    """Load ``{"urls": [...], "config": {...}}`` (or a bare JSON list)."""
    path = Path(path)
    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Failed to load URLs from {path}: {exc}") from exc

    if isinstance(data, list):
        data = {"urls": data}
    if not isinstance(data, dict) or not isinstance(data.get("urls"), list):
        raise ConfigurationError(f"{path}: expected a JSON list or an object with a 'urls' list")

    values = (base or ScanSettings()).model_dump()
    for key, field in _URL_FILE_KEYS.items():
        if key in (data.get("config") or {}):
            values[field] = data["config"][key]

    return validate_urls(data["urls"]), build(ScanSettings, **values)

"""Azure OpenAI JSON client for remediation analysis."""
from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Any

from dotenv import load_dotenv
from openai import AzureOpenAI

load_dotenv()

_log = logging.getLogger(__name__)

# Maximum retries when the model returns invalid JSON
_MAX_RETRIES = 2

_TRAILING_COMMA = re.compile(r",\s*([}\]])")


class AOAIClient:
    """Thin wrapper over AzureOpenAI that always returns parsed JSON."""

    def __init__(
        self,
        model: str | None = None,
        endpoint: str | None = None,
        key: str | None = None,
        api_version: str = "2024-02-15-preview",
        temperature: float = 0.2,
        max_tokens: int = 4000,
    ):
        self.model = model or os.environ.get("AZURE_OPENAI_DEPLOYMENT", "gpt-4.1")
        self.endpoint = endpoint or os.environ.get("AZURE_OPENAI_ENDPOINT", "")
        self.key = key or os.environ.get("AZURE_OPENAI_KEY", "")
        self.api_version = api_version
        self.temperature = temperature
        self.max_tokens = max_tokens

        if not self.key or not self.endpoint:
            raise EnvironmentError(
                "AZURE_OPENAI_KEY / AZURE_OPENAI_ENDPOINT not set."
            )

        self._client = AzureOpenAI(
            api_key=self.key,
            azure_endpoint=self.endpoint,
            api_version=self.api_version,
        )

    # ── Core call ─────────────────────────────────────────────────
    def run(self, system: str, user: str, *, max_tokens: int | None = None) -> dict[str, Any]:
        """
        Send system + user prompt, parse response as JSON.
        Retries up to _MAX_RETRIES on JSONDecodeError, then tries to
        repair a response truncated by the token limit.
        """
        last_error: Exception | None = None
        raw = ""

        for attempt in range(_MAX_RETRIES + 1):
            try:
                response = self._client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    temperature=self.temperature,
                    max_tokens=max_tokens or self.max_tokens,
                )
                raw = self._strip_fences(response.choices[0].message.content or "")
                return json.loads(_TRAILING_COMMA.sub(r"\1", raw))

            except json.JSONDecodeError as e:
                last_error = e
                _log.warning("JSON parse failed (attempt %d): %s", attempt + 1, e)
                if attempt < _MAX_RETRIES:
                    time.sleep(1)
                continue

            except Exception as e:
                raise RuntimeError(f"AOAI call failed: {e}") from e

        repaired = self._repair_truncated(raw)
        if repaired is not None:
            _log.warning("Recovered truncated JSON via repair")
            return repaired

        _log.error("Raw response (last attempt): %s", raw[:500])
        raise ValueError(f"Model did not return valid JSON after {_MAX_RETRIES + 1} attempts: {last_error}")

    # ── JSON clean-up ─────────────────────────────────────────────

    @staticmethod
    def _strip_fences(text: str) -> str:
        """Remove markdown code fences and any prose before the first brace."""
        stripped = text.strip()
        if stripped.startswith("```"):
            first_nl = stripped.find("\n")
            stripped = stripped[first_nl + 1:] if first_nl != -1 else ""
        if stripped.endswith("```"):
            stripped = stripped[:-3].rstrip()
        brace = stripped.find("{")
        if brace > 0:
            stripped = stripped[brace:]
        return stripped

    @staticmethod
    def _repair_truncated(text: str) -> dict | None:
        """Close dangling strings, arrays and objects left by max_tokens."""
        t = text.rstrip()
        if not t:
            return None

        opens: list[str] = []
        in_string = escape = False
        for ch in t:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = not in_string
            elif in_string:
                continue
            elif ch in "{[":
                opens.append(ch)
            elif ch in "}]" and opens:
                opens.pop()

        if in_string:
            t += '"'
        t = re.sub(r",\s*$", "", t)
        t += "".join("]" if b == "[" else "}" for b in reversed(opens))
        try:
            parsed = json.loads(t)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

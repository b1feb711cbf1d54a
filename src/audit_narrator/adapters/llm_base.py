from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, TypeVar

from audit_narrator.errors import TransientNetworkError
from audit_narrator.gates.parsers import try_parse_json

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_BASE_DELAY_MS = 5000

_RETRY_IN_RE = re.compile(r"retry in\s+(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)
_RETRY_DELAY_RE = re.compile(r"retry_?delay['\"]?\s*[:=]\s*['\"]?(\d+(?:\.\d+)?)s", re.IGNORECASE)
_TRANSIENT_HINTS = (
    "timeout",
    "timed out",
    "connection",
    "econnreset",
    "reset by peer",
    "network",
    "fetch failed",
    "temporarily",
    "name resolution",
    "dns",
)
_RATE_LIMIT_HINTS = ("resource_exhausted", "resource has been exhausted", "too many requests", "rate limit")


@dataclass
class GenerationOptions:
    temperature: float = 0.3
    max_output_tokens: int = 200
    max_retries: int = 2
    json_mode: bool = False
    model: Optional[str] = None


@dataclass
class GeneratedText:
    raw_text: str
    tokens: int = 0
    model: str = ""
    parsed: Any = None


class LLMAdapter(Protocol):
    name: str

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> GeneratedText:
        raise NotImplementedError


def structured(text: str, options: GenerationOptions) -> Any:
    # Parsed JSON when asked for; raw text stays untouched either way.
    if not options.json_mode:
        return None
    return try_parse_json(text)


def looks_transient(err: Exception) -> bool:
    msg = str(err).lower()
    return any(hint in msg for hint in _TRANSIENT_HINTS)


def looks_rate_limited(err: Exception) -> bool:
    msg = str(err).lower()
    return "429" in msg and any(hint in msg for hint in _RATE_LIMIT_HINTS)


def parse_retry_after_ms(err: Exception, headers: Any = None) -> Optional[int]:
    if headers is not None:
        raw = None
        try:
            raw = headers.get("retry-after")
        except AttributeError:
            raw = None
        if raw:
            try:
                return int(float(raw) * 1000)
            except (TypeError, ValueError):
                pass
    msg = str(err)
    for pattern in (_RETRY_IN_RE, _RETRY_DELAY_RE):
        match = pattern.search(msg)
        if match:
            return int(float(match.group(1)) * 1000)
    return None


def call_with_retries(
    fn: Callable[[], T],
    *,
    max_retries: int,
    base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS,
    sleep: Callable[[float], None] = time.sleep,
    tag: str = "llm",
) -> T:
    """Retry ``fn`` on TransientNetworkError with linear backoff."""
    attempt = 0
    while True:
        try:
            return fn()
        except TransientNetworkError as exc:
            if attempt >= max_retries:
                raise
            delay_ms = base_delay_ms * (attempt + 1)
            logger.warning(
                "[%s] transient error: %s -> retry %d/%d after %.1fs",
                tag,
                exc,
                attempt + 1,
                max_retries,
                delay_ms / 1000,
            )
            sleep(delay_ms / 1000)
            attempt += 1

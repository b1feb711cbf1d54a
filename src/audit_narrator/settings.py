"""Environment-driven configuration for the narrative pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from audit_narrator.orchestrator import DEFAULT_RATE_LIMIT_WAIT_MS

_TRUTHY = {"1", "true", "yes", "on"}


def _coerce_bool(env_name: str, default: bool) -> bool:
    raw = os.getenv(env_name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _coerce_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer for {env_name}: {raw}") from exc


def _coerce_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid float for {env_name}: {raw}") from exc


def _coerce_list(env_name: str) -> List[str]:
    raw = os.getenv(env_name) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class NarratorSettings:
    gemini_api_key: Optional[str] = None
    groq_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    gemini_models: List[str] = field(default_factory=list)
    force_provider: Optional[str] = None
    dry_run: bool = False
    paid_tier: bool = False
    max_retries: int = 2
    retry_base_delay_ms: int = 5000
    rate_limit_wait_ms: int = DEFAULT_RATE_LIMIT_WAIT_MS
    skip_refinement: bool = False
    prompt_registry_path: Optional[str] = None
    temperature: float = 0.3

    @classmethod
    def from_env(cls) -> "NarratorSettings":
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            groq_api_key=os.getenv("GROQ_API_KEY") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            gemini_models=_coerce_list("GEMINI_MODELS"),
            force_provider=(os.getenv("NARRATOR_FORCE_PROVIDER") or "").strip().lower() or None,
            dry_run=_coerce_bool("NARRATOR_DRY_RUN", False),
            paid_tier=_coerce_bool("NARRATOR_PAID_TIER", False),
            max_retries=_coerce_int("NARRATOR_MAX_RETRIES", 2),
            retry_base_delay_ms=_coerce_int("NARRATOR_RETRY_BASE_DELAY_MS", 5000),
            rate_limit_wait_ms=_coerce_int("NARRATOR_RATE_LIMIT_WAIT_MS", DEFAULT_RATE_LIMIT_WAIT_MS),
            skip_refinement=_coerce_bool("NARRATOR_SKIP_REFINEMENT", False),
            prompt_registry_path=os.getenv("NARRATOR_PROMPT_REGISTRY") or None,
            temperature=_coerce_float("ORCH_TEMPERATURE", 0.3),
        )

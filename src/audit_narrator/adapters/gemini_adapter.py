from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Optional

from google import genai
from google.genai import types

from .llm_base import (
    DEFAULT_RETRY_BASE_DELAY_MS,
    GeneratedText,
    GenerationOptions,
    LLMAdapter,
    call_with_retries,
    looks_rate_limited,
    looks_transient,
    parse_retry_after_ms,
    structured,
)
from audit_narrator.errors import FatalError, GenerationError, ModelUnavailable, RateLimited, TransientNetworkError
from audit_narrator.model_registry import ModelRegistry

logger = logging.getLogger(__name__)


def classify_gemini_error(err: Exception) -> GenerationError:
    code = getattr(err, "code", None)
    if isinstance(code, int):
        if code in (429, 503):
            return RateLimited(f"Gemini API error {code}: {err}", parse_retry_after_ms(err))
        if code == 408 or code >= 500:
            return TransientNetworkError(f"Gemini API error {code}: {err}")
        if code == 404:
            return ModelUnavailable(f"Gemini API error {code}: {err}")
        return FatalError(f"Gemini API error {code}: {err}")
    if looks_rate_limited(err):
        return RateLimited(str(err), parse_retry_after_ms(err))
    if looks_transient(err):
        return TransientNetworkError(str(err))
    return FatalError(str(err))


class GeminiAdapter(LLMAdapter):
    """Primary adapter bound to the ranked Gemini model chain.

    The orchestrator selects the model per call through ``options.model``;
    without one the registry's first model is used.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        registry: Optional[ModelRegistry] = None,
        client: Any = None,
        retry_base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if client is None:
            api_key = api_key or os.getenv("GEMINI_API_KEY")
            if not api_key:
                raise RuntimeError("GEMINI_API_KEY is not set.")
            client = genai.Client(api_key=api_key)
        self.client = client
        self.registry = registry or ModelRegistry.default()
        self.retry_base_delay_ms = retry_base_delay_ms
        self._sleep = sleep

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> GeneratedText:
        options = options or GenerationOptions()
        model = options.model or self.registry.first().model_id
        config = types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            temperature=options.temperature,
            max_output_tokens=options.max_output_tokens,
            response_mime_type="application/json" if options.json_mode else None,
        )
        return call_with_retries(
            lambda: self._generate_once(model, user_prompt, config, options),
            max_retries=options.max_retries,
            base_delay_ms=self.retry_base_delay_ms,
            sleep=self._sleep,
            tag=self.name,
        )

    def _generate_once(
        self,
        model: str,
        user_prompt: str,
        config: types.GenerateContentConfig,
        options: GenerationOptions,
    ) -> GeneratedText:
        logger.debug("[gemini] model=%s max_tokens=%d", model, options.max_output_tokens)
        try:
            response = self.client.models.generate_content(
                model=model,
                contents=user_prompt,
                config=config,
            )
        except Exception as exc:
            raise classify_gemini_error(exc) from exc

        text = getattr(response, "text", None)
        if not text:
            raise FatalError(f"Gemini returned empty content (model={model}).")

        usage = getattr(response, "usage_metadata", None)
        tokens = int(getattr(usage, "total_token_count", 0) or 0) if usage else 0
        logger.info("[gemini] model=%s total_tokens=%d", model, tokens)
        return GeneratedText(raw_text=text, tokens=tokens, model=model, parsed=structured(text, options))

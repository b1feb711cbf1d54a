from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from openai import OpenAI
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    InternalServerError,
    RateLimitError,
)

from .llm_base import (
    DEFAULT_RETRY_BASE_DELAY_MS,
    GeneratedText,
    GenerationOptions,
    LLMAdapter,
    call_with_retries,
    parse_retry_after_ms,
    structured,
)
from audit_narrator.errors import FatalError, RateLimited, TransientNetworkError

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODELS = ["gpt-4o-mini", "gpt-4.1-mini"]


def _models_from_env(env_name: str, default: Sequence[str]) -> List[str]:
    raw = os.getenv(env_name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _error_code(exc: Exception) -> Optional[str]:
    code = getattr(exc, "code", None)
    if code:
        return str(code)
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and error.get("code"):
            return str(error["code"])
    return None


def _headers(exc: Exception) -> Any:
    response = getattr(exc, "response", None)
    return getattr(response, "headers", None)


class OpenAIAdapter(LLMAdapter):
    """Chat-completions adapter with its own ordered model candidates.

    A 429 moves the adapter to its next candidate for the rest of its
    lifetime; RateLimited is raised only once every candidate is throttled.
    """

    name = "openai"
    api_key_env = "OPENAI_API_KEY"
    models_env = "OPENAI_MODELS"
    default_models: Sequence[str] = DEFAULT_OPENAI_MODELS
    base_url: Optional[str] = None

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model_candidates: Optional[Sequence[str]] = None,
        client: Any = None,
        timeout: Optional[float] = 60.0,
        retry_base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if client is None:
            api_key = api_key or os.getenv(self.api_key_env)
            if not api_key:
                raise RuntimeError(f"{self.api_key_env} is not set.")
            client_kwargs: Dict[str, Any] = {"api_key": api_key, "max_retries": 0}
            if self.base_url:
                client_kwargs["base_url"] = self.base_url
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            client = OpenAI(**client_kwargs)
        self.client = client
        self.model_candidates: List[str] = list(
            model_candidates or _models_from_env(self.models_env, self.default_models)
        )
        if not self.model_candidates:
            raise ValueError(f"{self.name} adapter needs at least one model candidate.")
        self.retry_base_delay_ms = retry_base_delay_ms
        self._sleep = sleep
        self._position = 0

    @property
    def model(self) -> str:
        return self.model_candidates[self._position]

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> GeneratedText:
        options = options or GenerationOptions()
        if options.model in self.model_candidates:
            self._position = max(self._position, self.model_candidates.index(options.model))

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        last_error: Optional[RateLimited] = None
        while True:
            model = self.model
            try:
                return call_with_retries(
                    lambda: self._complete_once(model, messages, options),
                    max_retries=options.max_retries,
                    base_delay_ms=self.retry_base_delay_ms,
                    sleep=self._sleep,
                    tag=self.name,
                )
            except RateLimited as exc:
                last_error = exc
                if self._position + 1 >= len(self.model_candidates):
                    break
                self._position += 1
                logger.warning("[%s] rate limited on %s, switching to %s", self.name, model, self.model)

        raise RateLimited(
            f"{self.name} rate limited on all models: {last_error}",
            retry_after_ms=last_error.retry_after_ms if last_error else None,
        )

    def _complete_once(
        self,
        model: str,
        messages: List[Dict[str, str]],
        options: GenerationOptions,
    ) -> GeneratedText:
        request: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": options.max_output_tokens,
            "temperature": options.temperature,
        }
        if options.json_mode:
            request["response_format"] = {"type": "json_object"}
        try:
            response = self.client.chat.completions.create(**request)
        except RateLimitError as exc:
            if _error_code(exc) == "insufficient_quota":
                raise FatalError(
                    f"{self.name} API quota exceeded. Enable billing for this account."
                ) from exc
            raise RateLimited(str(exc), parse_retry_after_ms(exc, _headers(exc))) from exc
        except (APITimeoutError, APIConnectionError) as exc:
            raise TransientNetworkError(f"{self.name} network error: {exc}") from exc
        except InternalServerError as exc:
            if exc.status_code == 503:
                raise RateLimited(str(exc), parse_retry_after_ms(exc, _headers(exc))) from exc
            raise TransientNetworkError(f"{self.name} server error {exc.status_code}: {exc}") from exc
        except APIStatusError as exc:
            raise FatalError(f"{self.name} API error {exc.status_code}: {exc}") from exc

        content = response.choices[0].message.content
        if not content:
            raise FatalError(f"{self.name} returned empty content (model={model}).")

        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0) if usage else 0
        logger.info("[%s] model=%s total_tokens=%d", self.name, model, tokens)
        return GeneratedText(raw_text=content, tokens=tokens, model=model, parsed=structured(content, options))

import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from audit_narrator.adapters.gemini_adapter import GeminiAdapter, classify_gemini_error
from audit_narrator.adapters.groq_adapter import GroqAdapter
from audit_narrator.adapters.llm_base import GenerationOptions, LLMAdapter, call_with_retries, parse_retry_after_ms
from audit_narrator.adapters.mock_adapter import MockAdapter
from audit_narrator.adapters.openai_adapter import OpenAIAdapter
from audit_narrator.errors import FatalError, ModelUnavailable, RateLimited, TransientNetworkError
from audit_narrator.model_registry import ModelRegistry

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


class _CodeError(Exception):
    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


def _gemini_client(*responses):
    calls = []
    queue = list(responses)

    def generate_content(model, contents, config):
        calls.append(model)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return SimpleNamespace(models=SimpleNamespace(generate_content=generate_content)), calls


def _gemini_response(text, tokens=42):
    return SimpleNamespace(text=text, usage_metadata=SimpleNamespace(total_token_count=tokens))


def _chat_response(content, tokens=30):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=tokens),
    )


def _openai_client(*responses):
    calls = []
    queue = list(responses)

    def create(**kwargs):
        calls.append(kwargs)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create))), calls


def _status_error(cls, status, body=None, headers=None):
    response = httpx.Response(status, request=_REQUEST, headers=headers or {})
    return cls(f"Error code: {status}", response=response, body=body)


@pytest.mark.parametrize(
    "error, expected",
    [
        (_CodeError(429, "RESOURCE_EXHAUSTED"), RateLimited),
        (_CodeError(503, "The model is overloaded"), RateLimited),
        (_CodeError(500, "internal"), TransientNetworkError),
        (_CodeError(400, "bad request"), FatalError),
        (_CodeError(403, "permission denied"), FatalError),
        (_CodeError(404, "models/gemini-1.0-pro is not found"), ModelUnavailable),
        (Exception("429 Too Many Requests"), RateLimited),
        (Exception("Connection reset by peer"), TransientNetworkError),
        (Exception("something odd"), FatalError),
    ],
)
def test_classify_gemini_error(error, expected):
    assert isinstance(classify_gemini_error(error), expected)


def test_only_a_missing_model_is_reported_as_unavailable():
    assert not isinstance(classify_gemini_error(_CodeError(403, "API key revoked")), ModelUnavailable)


def test_parse_retry_after_from_message_and_headers():
    assert parse_retry_after_ms(Exception("Please retry in 12.5s.")) == 12500
    assert parse_retry_after_ms(Exception("'retryDelay': '30s'")) == 30000
    assert parse_retry_after_ms(Exception("x"), headers={"retry-after": "7"}) == 7000
    assert parse_retry_after_ms(Exception("no hint")) is None


def test_call_with_retries_backs_off_linearly():
    sleeps = []
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientNetworkError("timeout")
        return "ok"

    assert call_with_retries(flaky, max_retries=2, base_delay_ms=1000, sleep=sleeps.append) == "ok"
    assert sleeps == [1.0, 2.0]


def test_call_with_retries_gives_up_after_max_retries():
    sleeps = []

    def broken():
        raise TransientNetworkError("timeout")

    with pytest.raises(TransientNetworkError):
        call_with_retries(broken, max_retries=1, base_delay_ms=500, sleep=sleeps.append)
    assert sleeps == [0.5]


def test_gemini_adapter_uses_requested_model_and_counts_tokens():
    client, calls = _gemini_client(_gemini_response('{"a": 1}', tokens=17))
    adapter = GeminiAdapter(client=client, registry=ModelRegistry.default())

    result = adapter.generate("sys", "user", GenerationOptions(model="gemini-2.0-flash", json_mode=True))

    assert calls == ["gemini-2.0-flash"]
    assert result.raw_text == '{"a": 1}'
    assert result.parsed == {"a": 1}
    assert result.tokens == 17
    assert result.model == "gemini-2.0-flash"


def test_gemini_adapter_keeps_raw_text_when_json_does_not_parse():
    client, _ = _gemini_client(_gemini_response("```json\n{broken\n```"))
    adapter = GeminiAdapter(client=client)
    result = adapter.generate("sys", "user", GenerationOptions(json_mode=True))
    assert result.parsed is None
    assert result.raw_text == "```json\n{broken\n```"


def test_gemini_adapter_retries_transient_errors_then_raises_rate_limit():
    sleeps = []
    client, calls = _gemini_client(
        _CodeError(500, "internal"),
        _CodeError(429, "RESOURCE_EXHAUSTED. Please retry in 3s."),
    )
    adapter = GeminiAdapter(client=client, retry_base_delay_ms=100, sleep=sleeps.append)

    with pytest.raises(RateLimited) as excinfo:
        adapter.generate("sys", "user", GenerationOptions(max_retries=2))

    assert len(calls) == 2
    assert sleeps == [0.1]
    assert excinfo.value.retry_after_ms == 3000


def test_gemini_adapter_empty_response_is_fatal():
    client, _ = _gemini_client(_gemini_response(""))
    with pytest.raises(FatalError):
        GeminiAdapter(client=client).generate("sys", "user")


def test_gemini_adapter_requires_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    with pytest.raises(RuntimeError):
        GeminiAdapter()


def test_openai_adapter_switches_model_on_rate_limit():
    client, calls = _openai_client(
        _status_error(openai.RateLimitError, 429),
        _chat_response("Second model answer"),
    )
    adapter = OpenAIAdapter(client=client, model_candidates=["first", "second"])

    result = adapter.generate("sys", "user", GenerationOptions(max_output_tokens=50))

    assert [call["model"] for call in calls] == ["first", "second"]
    assert calls[0]["messages"][0] == {"role": "system", "content": "sys"}
    assert result.raw_text == "Second model answer"
    assert adapter.model == "second"


def test_openai_adapter_raises_rate_limited_when_all_models_throttled():
    client, _ = _openai_client(
        _status_error(openai.RateLimitError, 429),
        _status_error(openai.RateLimitError, 429, headers={"retry-after": "4"}),
    )
    adapter = OpenAIAdapter(client=client, model_candidates=["first", "second"])

    with pytest.raises(RateLimited) as excinfo:
        adapter.generate("sys", "user")
    assert excinfo.value.retry_after_ms == 4000


def test_openai_adapter_insufficient_quota_is_fatal():
    client, _ = _openai_client(
        _status_error(openai.RateLimitError, 429, body={"code": "insufficient_quota", "message": "quota"})
    )
    with pytest.raises(FatalError):
        OpenAIAdapter(client=client, model_candidates=["only"]).generate("sys", "user")


def test_openai_adapter_maps_server_and_client_errors():
    sleeps = []
    client, calls = _openai_client(
        _status_error(openai.InternalServerError, 500),
        _chat_response("recovered"),
    )
    adapter = OpenAIAdapter(client=client, model_candidates=["only"], retry_base_delay_ms=10, sleep=sleeps.append)
    assert adapter.generate("sys", "user").raw_text == "recovered"
    assert sleeps == [0.01]

    client, _ = _openai_client(_status_error(openai.BadRequestError, 400))
    with pytest.raises(FatalError):
        OpenAIAdapter(client=client, model_candidates=["only"]).generate("sys", "user")


def test_openai_adapter_connection_errors_are_transient():
    client, _ = _openai_client(openai.APIConnectionError(request=_REQUEST))
    adapter = OpenAIAdapter(client=client, model_candidates=["only"])
    with pytest.raises(TransientNetworkError):
        adapter.generate("sys", "user", GenerationOptions(max_retries=0))


def test_openai_adapter_json_mode_requests_json_object():
    client, calls = _openai_client(_chat_response('{"ok": true}'))
    result = OpenAIAdapter(client=client, model_candidates=["only"]).generate(
        "sys", "user", GenerationOptions(json_mode=True)
    )
    assert calls[0]["response_format"] == {"type": "json_object"}
    assert result.parsed == {"ok": True}


def test_groq_adapter_reads_its_own_environment(monkeypatch):
    monkeypatch.setenv("GROQ_MODELS", "llama-a, llama-b")
    client, _ = _openai_client()
    adapter = GroqAdapter(client=client)
    assert adapter.name == "groq"
    assert adapter.model_candidates == ["llama-a", "llama-b"]

    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="GROQ_API_KEY"):
        GroqAdapter()


def test_mock_adapter_answers_batch_and_refinement_prompts():
    adapter = MockAdapter()
    master = "<audit_context>\n</audit_context>\nRow 1: Response Time - Status: critical - Metrics: 14 hours\nFix 1: Related to m1"
    payload = json.loads(adapter.generate("sys", master).raw_text)
    assert payload["scorecard_findings"][0]["row_index"] == 0
    assert payload["scorecard_findings"][0]["risk"].startswith("Risk:")
    assert payload["fixes"][0]["fix_index"] == 0

    refinement = "<generated_content>\n{\"document_title\": \"T\"}\n</generated_content>"
    assert adapter.generate("sys", refinement).raw_text == '{"document_title": "T"}'
    assert len(adapter.calls) == 2


@pytest.mark.parametrize("adapter_cls", [GeminiAdapter, OpenAIAdapter, GroqAdapter, MockAdapter])
def test_every_backend_implements_the_adapter_interface(adapter_cls):
    assert LLMAdapter in adapter_cls.__mro__
    assert callable(adapter_cls.generate)

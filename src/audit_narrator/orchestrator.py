from __future__ import annotations

import copy
import json
import logging
import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from jsonschema import ValidationError, validate

from audit_narrator.adapters.llm_base import GeneratedText, GenerationOptions, LLMAdapter
from audit_narrator.batch_prompts import (
    MASTER_SYSTEM_PROMPT,
    REFINEMENT_SYSTEM_PROMPT,
    BatchWrite,
    build_master_prompt,
    build_refinement_prompt,
    plan_batch_writes,
    refinement_source,
)
from audit_narrator.errors import (
    FatalError,
    GenerationError,
    ModelUnavailable,
    NoUsableAdapter,
    ParseFailure,
    RateLimited,
    TransientNetworkError,
)
from audit_narrator.gates.parsers import parse_json_object, parse_string_list, strip_code_fences
from audit_narrator.model_registry import ModelDescriptor, ModelRegistry
from audit_narrator.placeholders import (
    MARKER_PREFIX,
    Placeholder,
    find_dangling_markers,
    format_path,
    get_at,
    retarget_path,
    scan,
    set_at,
)
from audit_narrator.prompt_context import build_placeholder_context
from audit_narrator.prompt_registry import PACKAGE_DIR, OutputKind, PromptDefinition, PromptRegistry

logger = logging.getLogger(__name__)

BATCH_SCHEMA_PATH = PACKAGE_DIR / "schemas" / "batch_response.schema.json"
BATCH_MAX_OUTPUT_TOKENS = 6000
DEFAULT_RATE_LIMIT_WAIT_MS = 30000

Generated = Union[str, List[str]]


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"


@dataclass
class GenerationAttempt:
    model_or_provider: str
    prompt_id: str
    started_at: float
    outcome: AttemptOutcome


@dataclass
class RunStats:
    strategy: str = ""
    api_calls: int = 0
    tokens: int = 0
    fallbacks: List[Dict[str, str]] = field(default_factory=list)
    approval_required: List[Dict[str, str]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    validation_warnings: List[Dict[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    resolved: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    attempts: List[GenerationAttempt] = field(default_factory=list)
    model_used: Optional[str] = None
    secondary_provider_used: Optional[str] = None
    generation_ms: Optional[int] = None
    refinement_ms: Optional[int] = None

    @property
    def fallback_transitions(self) -> int:
        return len(self.fallbacks)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["fallback_transitions"] = self.fallback_transitions
        data["attempts"] = [
            {**asdict(attempt), "outcome": attempt.outcome.value} for attempt in self.attempts
        ]
        return data


@dataclass
class OrchestratorResult:
    document: Dict[str, Any]
    stats: RunStats


class GenerationOrchestrator:
    """Resolves narrative markers through the primary model chain and secondary providers.

    Two strategies share one provider call path:

    * ``run`` resolves each placeholder with its own prompt, in scan order;
    * ``run_batch`` generates every narrative field in one JSON call, with an
      optional verification pass, and maps the result through a fixed table.

    The current model pointer, the per-model call clock and ``RunStats`` are
    reset at the start of every run. The pointer only moves forward.
    """

    def __init__(
        self,
        primary: Optional[LLMAdapter] = None,
        *,
        prompts: PromptRegistry,
        registry: Optional[ModelRegistry] = None,
        secondaries: Sequence[LLMAdapter] = (),
        max_retries: int = 2,
        retry_base_delay_ms: int = 5000,
        rate_limit_wait_ms: int = DEFAULT_RATE_LIMIT_WAIT_MS,
        paid_tier: bool = False,
        dry_run: bool = False,
        force_provider: Optional[str] = None,
        skip_refinement: bool = False,
        skip_approval: bool = False,
        temperature: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.primary = primary
        self.secondaries = list(secondaries)
        self.prompts = prompts
        self.registry = registry or ModelRegistry.default()
        self.max_retries = max_retries
        self.retry_base_delay_ms = retry_base_delay_ms
        self.rate_limit_wait_ms = rate_limit_wait_ms
        self.paid_tier = paid_tier
        self.dry_run = dry_run
        self.force_provider = force_provider
        self.skip_refinement = skip_refinement
        self.skip_approval = skip_approval
        self.temperature = temperature
        self._clock = clock
        self._sleep = sleep

        if not dry_run:
            names = [adapter.name for adapter in self._adapters()]
            if not names:
                raise NoUsableAdapter("No generation provider is configured.")
            if force_provider and force_provider not in names:
                raise NoUsableAdapter(
                    f"Forced provider {force_provider!r} is not configured (available: {', '.join(names)})."
                )

        self._reset("")

    @property
    def current_model(self) -> ModelDescriptor:
        return self._current

    def _reset(self, strategy: str) -> None:
        self.stats = RunStats(strategy=strategy)
        self._current = self.registry.first()
        self._last_call_at: Dict[str, float] = {}
        self._primary_exhausted = False

    def _adapters(self) -> List[LLMAdapter]:
        adapters: List[LLMAdapter] = []
        if self.primary is not None:
            adapters.append(self.primary)
        adapters.extend(self.secondaries)
        return adapters

    # Provider calls

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[GenerationOptions] = None,
        *,
        prompt_id: str = "adhoc",
    ) -> GeneratedText:
        """Generate through the provider chain, raising the last error if every provider fails."""
        options = options or GenerationOptions(temperature=self.temperature)
        if self.dry_run:
            logger.info("[orchestrator] dry run, skipping call for %s", prompt_id)
            if options.json_mode:
                return GeneratedText(raw_text="{}", model="dry-run", parsed={})
            return GeneratedText(raw_text=f"[DRY_RUN: {prompt_id}]", model="dry-run")

        last_error: Optional[GenerationError] = None
        for adapter in self._provider_order():
            try:
                if adapter is self.primary:
                    return self._call_primary(system_prompt, user_prompt, options, prompt_id)
                return self._call_secondary(adapter, system_prompt, user_prompt, options, prompt_id)
            except (RateLimited, TransientNetworkError, ModelUnavailable) as exc:
                last_error = exc
                logger.warning("[orchestrator] %s failed for %s: %s", adapter.name, prompt_id, exc)

        if last_error is None:
            raise NoUsableAdapter("No generation provider is available for this call.")
        raise last_error

    def _provider_order(self) -> List[LLMAdapter]:
        adapters = self._adapters()
        if self.force_provider:
            return [adapter for adapter in adapters if adapter.name == self.force_provider]
        if self._primary_exhausted and self.secondaries:
            return list(self.secondaries)
        return adapters

    def _call_primary(
        self,
        system_prompt: str,
        user_prompt: str,
        options: GenerationOptions,
        prompt_id: str,
    ) -> GeneratedText:
        attempt = 0
        while True:
            model = self._current
            self._wait_for_slot(model)
            started = self._clock()
            self._last_call_at[model.model_id] = started
            try:
                result = self.primary.generate(
                    system_prompt,
                    user_prompt,
                    replace(options, model=model.model_id, max_retries=0),
                )
            except RateLimited as exc:
                self._record(model.model_id, prompt_id, started, AttemptOutcome.RATE_LIMITED)
                successor = self.registry.next(model)
                if successor is not None:
                    self._advance(model, successor, AttemptOutcome.RATE_LIMITED.value)
                    continue
                if attempt >= self.max_retries:
                    self._primary_exhausted = True
                    raise
                wait_ms = exc.retry_after_ms or self.rate_limit_wait_ms
                logger.warning(
                    "[orchestrator] %s rate limited on the last model, waiting %.1fs (retry %d/%d)",
                    model.model_id,
                    wait_ms / 1000,
                    attempt + 1,
                    self.max_retries,
                )
                self._sleep(wait_ms / 1000)
                attempt += 1
                continue
            except TransientNetworkError as exc:
                self._record(model.model_id, prompt_id, started, AttemptOutcome.TRANSIENT_ERROR)
                if attempt >= self.max_retries:
                    raise
                delay_ms = self.retry_base_delay_ms * (attempt + 1)
                logger.warning(
                    "[orchestrator] %s transient error: %s -> retry %d/%d after %.1fs",
                    model.model_id,
                    exc,
                    attempt + 1,
                    self.max_retries,
                    delay_ms / 1000,
                )
                self._sleep(delay_ms / 1000)
                attempt += 1
                continue
            except ModelUnavailable:
                self._record(model.model_id, prompt_id, started, AttemptOutcome.FATAL_ERROR)
                successor = self.registry.next(model)
                if successor is None:
                    self._primary_exhausted = True
                    raise
                self._advance(model, successor, "model_unavailable")
                continue
            except FatalError:
                self._record(model.model_id, prompt_id, started, AttemptOutcome.FATAL_ERROR)
                raise

            self._record(model.model_id, prompt_id, started, AttemptOutcome.SUCCESS)
            self._count(result)
            self.stats.model_used = model.model_id
            return result

    def _call_secondary(
        self,
        adapter: LLMAdapter,
        system_prompt: str,
        user_prompt: str,
        options: GenerationOptions,
        prompt_id: str,
    ) -> GeneratedText:
        started = self._clock()
        try:
            result = adapter.generate(
                system_prompt,
                user_prompt,
                replace(options, model=None, max_retries=self.max_retries),
            )
        except RateLimited:
            self._record(adapter.name, prompt_id, started, AttemptOutcome.RATE_LIMITED)
            raise
        except TransientNetworkError:
            self._record(adapter.name, prompt_id, started, AttemptOutcome.TRANSIENT_ERROR)
            raise
        except FatalError:
            self._record(adapter.name, prompt_id, started, AttemptOutcome.FATAL_ERROR)
            raise

        self._record(adapter.name, prompt_id, started, AttemptOutcome.SUCCESS)
        self._count(result)
        if self.stats.secondary_provider_used != adapter.name:
            logger.info("[orchestrator] using secondary provider %s", adapter.name)
        self.stats.secondary_provider_used = adapter.name
        return result

    def _wait_for_slot(self, model: ModelDescriptor) -> None:
        last = self._last_call_at.get(model.model_id)
        if last is None:
            return
        delay_s = self.registry.delay_for(model, self.paid_tier) / 1000
        remaining = delay_s - (self._clock() - last)
        if remaining > 0:
            logger.info("[orchestrator] rate limit spacing: waiting %.1fs for %s", remaining, model.model_id)
            self._sleep(remaining)

    def _advance(self, model: ModelDescriptor, successor: ModelDescriptor, reason: str) -> None:
        logger.warning("[orchestrator] %s %s, falling back to %s", model.model_id, reason, successor.model_id)
        self.stats.fallbacks.append({"from": model.model_id, "to": successor.model_id, "reason": reason})
        self._current = successor

    def _record(self, name: str, prompt_id: str, started: float, outcome: AttemptOutcome) -> None:
        self.stats.attempts.append(GenerationAttempt(name, prompt_id, started, outcome))

    def _count(self, result: GeneratedText) -> None:
        self.stats.api_calls += 1
        self.stats.tokens += result.tokens

    # Per-placeholder strategy

    def run(self, document: Dict[str, Any]) -> OrchestratorResult:
        self._reset("per-field")
        source = copy.deepcopy(document)
        resolved = copy.deepcopy(document)

        placeholders = scan(source)
        logger.info("[orchestrator] %d placeholders found", len(placeholders))
        for placeholder in placeholders:
            self._resolve_placeholder(placeholder, source, resolved)

        self._collect_unresolved(resolved)
        logger.info(
            "[orchestrator] per-field run done: calls=%d tokens=%d fallbacks=%d unresolved=%d",
            self.stats.api_calls,
            self.stats.tokens,
            self.stats.fallback_transitions,
            len(self.stats.unresolved),
        )
        return OrchestratorResult(document=resolved, stats=self.stats)

    def _resolve_placeholder(
        self,
        placeholder: Placeholder,
        source: Dict[str, Any],
        resolved: Dict[str, Any],
    ) -> None:
        location = placeholder.path_display
        definition = self.prompts.lookup(placeholder.field_name)
        if definition is None:
            logger.warning("[orchestrator] no prompt for %r at %s, skipping", placeholder.field_name, location)
            self.stats.skipped.append(location)
            return

        self._queue_approval(definition, location)
        system_prompt, user_prompt = definition.render(build_placeholder_context(placeholder, source))
        options = GenerationOptions(
            temperature=self.temperature,
            max_output_tokens=definition.max_output_tokens,
            max_retries=self.max_retries,
        )
        try:
            generated = self.generate(system_prompt, user_prompt, options, prompt_id=definition.prompt_id)
        except GenerationError as exc:
            logger.error("[orchestrator] %s failed at %s: %s", definition.prompt_id, location, exc)
            self.stats.errors.append({"field": placeholder.field_name, "path": location, "error": str(exc)})
            return

        value = self.coerce_output(definition, generated.raw_text)
        if not value:
            logger.error("[orchestrator] %s returned empty output at %s", definition.prompt_id, location)
            self.stats.errors.append({"field": placeholder.field_name, "path": location, "error": "empty output"})
            return

        self._check_constraints(definition, value, location)
        self._write(resolved, placeholder, value)
        self.stats.resolved.append(location)

    def coerce_output(self, definition: PromptDefinition, raw_text: str) -> Generated:
        text = strip_code_fences(raw_text)
        if definition.output_kind is OutputKind.ARRAY_OF_STRINGS:
            return parse_string_list(text)
        return text.strip()

    def _write(self, resolved: Dict[str, Any], placeholder: Placeholder, value: Generated) -> None:
        current = get_at(resolved, placeholder.path)
        if isinstance(current, str) and current.strip() != placeholder.full_match:
            # Marker embedded in surrounding text keeps the text and the field type.
            text = value if isinstance(value, str) else ", ".join(value)
            set_at(resolved, placeholder.path, current.replace(placeholder.full_match, text, 1))
            return
        set_at(resolved, retarget_path(resolved, placeholder.path, value), value)

    def _check_constraints(self, definition: PromptDefinition, value: Generated, location: str) -> None:
        text = value if isinstance(value, str) else "\n".join(value)
        for warning in definition.validate_output(text):
            logger.warning("[orchestrator] %s at %s: %s", definition.prompt_id, location, warning)
            self.stats.validation_warnings.append(
                {"prompt_id": definition.prompt_id, "path": location, "warning": warning}
            )

    def _queue_approval(self, definition: PromptDefinition, location: str) -> None:
        if not definition.approval_required or self.skip_approval:
            return
        self.stats.approval_required.append(
            {
                "field": definition.field,
                "path": location,
                "gate": definition.approval_gate or "manual_review",
            }
        )

    def _collect_unresolved(self, resolved: Dict[str, Any]) -> None:
        self.stats.unresolved = [placeholder.path_display for placeholder in scan(resolved)]
        self.stats.unresolved.extend(format_path(path) for path, _ in find_dangling_markers(resolved))

    # Batch strategy

    def run_batch(self, document: Dict[str, Any]) -> OrchestratorResult:
        self._reset("batch")
        source = copy.deepcopy(document)
        resolved = copy.deepcopy(document)

        started = self._clock()
        generated = self._batch_call(MASTER_SYSTEM_PROMPT, build_master_prompt(source), "batch_generation")
        self.stats.generation_ms = int((self._clock() - started) * 1000)
        if generated is None:
            logger.error("[orchestrator] batch generation failed, document left unchanged")
            self._collect_unresolved(resolved)
            return OrchestratorResult(document=resolved, stats=self.stats)

        if self.skip_refinement:
            logger.info("[orchestrator] refinement pass skipped")
        else:
            started = self._clock()
            refined = self._batch_call(
                REFINEMENT_SYSTEM_PROMPT,
                build_refinement_prompt(generated, refinement_source(source)),
                "batch_refinement",
            )
            self.stats.refinement_ms = int((self._clock() - started) * 1000)
            if refined is None:
                logger.warning("[orchestrator] refinement failed, keeping generated content")
            else:
                generated = refined

        for write in plan_batch_writes(resolved, generated):
            self._apply_batch_write(resolved, write)

        self._collect_unresolved(resolved)
        logger.info(
            "[orchestrator] batch run done: calls=%d tokens=%d fields=%d unresolved=%d",
            self.stats.api_calls,
            self.stats.tokens,
            len(self.stats.resolved),
            len(self.stats.unresolved),
        )
        return OrchestratorResult(document=resolved, stats=self.stats)

    def _batch_call(self, system_prompt: str, user_prompt: str, prompt_id: str) -> Optional[Dict[str, Any]]:
        options = GenerationOptions(
            temperature=self.temperature,
            max_output_tokens=BATCH_MAX_OUTPUT_TOKENS,
            max_retries=self.max_retries,
            json_mode=True,
        )
        for attempt in (1, 2):
            try:
                generated = self.generate(system_prompt, user_prompt, options, prompt_id=prompt_id)
            except GenerationError as exc:
                logger.error("[orchestrator] %s failed: %s", prompt_id, exc)
                self.stats.errors.append({"field": prompt_id, "path": "", "error": str(exc)})
                return None
            try:
                return self._parse_batch(generated)
            except ParseFailure as exc:
                logger.warning("[orchestrator] %s returned unusable JSON (attempt %d/2): %s", prompt_id, attempt, exc)
                self.stats.errors.append({"field": prompt_id, "path": "", "error": str(exc)})
        return None

    def _parse_batch(self, generated: GeneratedText) -> Dict[str, Any]:
        payload = generated.parsed if isinstance(generated.parsed, dict) else parse_json_object(generated.raw_text)
        schema = json.loads(BATCH_SCHEMA_PATH.read_text(encoding="utf-8"))
        try:
            validate(instance=payload, schema=schema)
        except ValidationError as exc:
            raise ParseFailure(f"Batch response does not match its schema: {exc.message}") from exc
        return payload

    def _apply_batch_write(self, resolved: Dict[str, Any], write: BatchWrite) -> None:
        if not _awaits_content(get_at(resolved, write.path)):
            return
        location = format_path(write.path)
        definition = self.prompts.lookup(write.prompt_field)
        if definition is not None:
            self._check_constraints(definition, write.value, location)
            self._queue_approval(definition, location)
        set_at(resolved, write.path, write.value)
        self.stats.resolved.append(location)


def _awaits_content(current: Any) -> bool:
    if current is None:
        return True
    if isinstance(current, str):
        return not current.strip() or MARKER_PREFIX in current
    if isinstance(current, list):
        return not current or any(isinstance(item, str) and MARKER_PREFIX in item for item in current)
    return False

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from audit_narrator.adapters.gemini_adapter import GeminiAdapter
from audit_narrator.adapters.groq_adapter import GroqAdapter
from audit_narrator.adapters.llm_base import LLMAdapter
from audit_narrator.adapters.mock_adapter import MockAdapter
from audit_narrator.adapters.openai_adapter import OpenAIAdapter
from audit_narrator.artifacts.writers import render_report_html
from audit_narrator.gates.report_checks import check_report
from audit_narrator.model_registry import ModelDescriptor, ModelRegistry
from audit_narrator.orchestrator import GenerationOrchestrator, OrchestratorResult, RunStats
from audit_narrator.polisher import ChangeLogEntry, OutputPolisher, fill_defaults, polish_document
from audit_narrator.prompt_registry import PromptRegistry
from audit_narrator.settings import NarratorSettings
from audit_narrator.utils.io import read_json, write_json, write_text
from audit_narrator.utils.time import utc_isoformat

logger = logging.getLogger(__name__)

STRATEGIES = ("batch", "per-field")
SECONDARY_PROVIDERS = ("groq", "openai")

MOCK_REGISTRY = ModelRegistry([ModelDescriptor("mock", "mock", rate_limit_per_minute=600, min_delay_ms=0)])


@dataclass
class PipelineResult:
    document: Dict[str, Any]
    html: str
    stats: RunStats
    change_log: List[ChangeLogEntry] = field(default_factory=list)
    defaulted: List[str] = field(default_factory=list)


class NarrativePipeline:
    def __init__(
        self,
        mode: str,
        settings: Optional[NarratorSettings] = None,
        strategy: str = "batch",
        skip_polish: bool = False,
    ) -> None:
        if strategy not in STRATEGIES:
            raise ValueError(f"Unsupported strategy: {strategy}")
        self.mode = mode
        self.settings = settings or NarratorSettings.from_env()
        self.strategy = strategy
        self.skip_polish = skip_polish

    def run(self, input_path: Path, run_dir: Path) -> PipelineResult:
        inputs_dir = run_dir / "inputs"
        artifacts_dir = run_dir / "artifacts"
        inputs_dir.mkdir(parents=True, exist_ok=True)
        artifacts_dir.mkdir(parents=True, exist_ok=True)

        document = read_json(input_path)
        if not isinstance(document, dict):
            raise ValueError(f"Report document must be a JSON object: {input_path}")
        write_json(inputs_dir / "document.json", document)

        orchestrator = self._orchestrator()
        started_at = utc_isoformat()
        if self.strategy == "batch":
            result = orchestrator.run_batch(document)
        else:
            result = orchestrator.run(document)
        write_json(artifacts_dir / "generated.json", result.document)

        defaults = fill_defaults(result.document)
        cleaned = polish_document(defaults.document)
        check = check_report(cleaned.document)
        if not check.valid:
            logger.error("[pipeline] report check failed after default fill: %s", check.summary())

        polisher = OutputPolisher(generator=None if self.skip_polish else orchestrator)
        polished = polisher.polish(render_report_html(cleaned.document))
        change_log = cleaned.change_log + polished.change_log

        write_json(artifacts_dir / "report.json", cleaned.document)
        write_text(artifacts_dir / "report.html", polished.text)
        write_json(artifacts_dir / "polish_log.json", [entry.as_dict() for entry in change_log])
        write_json(
            artifacts_dir / "run_stats.json",
            self._summary(result, started_at, defaults.defaulted, check.summary()),
        )
        logger.info("[pipeline] report written to %s", artifacts_dir / "report.html")

        return PipelineResult(
            document=cleaned.document,
            html=polished.text,
            stats=result.stats,
            change_log=change_log,
            defaulted=defaults.defaulted,
        )

    def _summary(
        self,
        result: OrchestratorResult,
        started_at: str,
        defaulted: List[str],
        check_summary: str,
    ) -> Dict[str, Any]:
        stats = result.stats.as_dict()
        stats.update(
            {
                "mode": self.mode,
                "started_at": started_at,
                "finished_at": utc_isoformat(),
                "defaulted": defaulted,
                "report_check": check_summary,
                "needs_review": bool(stats["approval_required"] or defaulted),
            }
        )
        return stats

    def _orchestrator(self) -> GenerationOrchestrator:
        settings = self.settings
        prompts = PromptRegistry.load(Path(settings.prompt_registry_path) if settings.prompt_registry_path else None)
        if self.mode == "mock":
            return GenerationOrchestrator(
                MockAdapter(),
                prompts=prompts,
                registry=MOCK_REGISTRY,
                dry_run=settings.dry_run,
                skip_refinement=settings.skip_refinement,
                temperature=settings.temperature,
            )

        registry = ModelRegistry.from_ids(settings.gemini_models) if settings.gemini_models else ModelRegistry.default()
        primary = self._adapter("gemini", registry)
        secondaries = [
            adapter
            for adapter in (self._adapter(provider, registry) for provider in SECONDARY_PROVIDERS)
            if adapter is not None
        ]
        return GenerationOrchestrator(
            primary,
            prompts=prompts,
            registry=registry,
            secondaries=secondaries,
            max_retries=settings.max_retries,
            retry_base_delay_ms=settings.retry_base_delay_ms,
            rate_limit_wait_ms=settings.rate_limit_wait_ms,
            paid_tier=settings.paid_tier,
            dry_run=settings.dry_run,
            force_provider=settings.force_provider,
            skip_refinement=settings.skip_refinement,
            temperature=settings.temperature,
        )

    def _adapter(self, provider: str, registry: ModelRegistry) -> Optional[LLMAdapter]:
        settings = self.settings
        if provider == "gemini":
            if not settings.gemini_api_key:
                return None
            return GeminiAdapter(
                settings.gemini_api_key,
                registry=registry,
                retry_base_delay_ms=settings.retry_base_delay_ms,
            )
        if provider == "groq":
            if not settings.groq_api_key:
                return None
            return GroqAdapter(settings.groq_api_key, retry_base_delay_ms=settings.retry_base_delay_ms)
        if not settings.openai_api_key:
            return None
        return OpenAIAdapter(settings.openai_api_key, retry_base_delay_ms=settings.retry_base_delay_ms)

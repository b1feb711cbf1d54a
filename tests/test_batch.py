import json
from types import SimpleNamespace

from audit_narrator.adapters.llm_base import GeneratedText
from audit_narrator.adapters.mock_adapter import MockAdapter
from audit_narrator.batch_prompts import build_master_prompt, plan_batch_writes
from audit_narrator.errors import FatalError
from audit_narrator.model_registry import ModelDescriptor, ModelRegistry
from audit_narrator.orchestrator import GenerationOrchestrator
from audit_narrator.placeholders import scan
from audit_narrator.prompt_registry import PromptRegistry

REGISTRY = ModelRegistry([ModelDescriptor("solo", "test", rate_limit_per_minute=60, min_delay_ms=0)])


class ReplayAdapter:
    def __init__(self, *outcomes):
        self.name = "gemini"
        self.outcomes = list(outcomes)
        self.calls = []

    def generate(self, system_prompt, user_prompt, options=None):
        self.calls.append(SimpleNamespace(system=system_prompt, user=user_prompt, options=options))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return GeneratedText(raw_text=outcome, tokens=100, model=options.model)


def _orchestrator(adapter, clock, **kwargs):
    return GenerationOrchestrator(
        adapter,
        prompts=PromptRegistry.load(),
        registry=REGISTRY,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def _stage_one():
    return json.dumps(
        {
            "document_title": "AI Process Audit: Lead Intake",
            "executive_summary": "Lead response takes <strong>14 hours</strong>.",
            "scorecard_findings": [{"row_index": 0, "summary": "Stage one summary.", "risk": "Risk: lost consults."}],
        }
    )


def test_unparseable_response_is_retried_once_then_document_is_unchanged(sample_document, clock):
    adapter = ReplayAdapter("Sorry, I can't produce JSON today.")

    result = _orchestrator(adapter, clock).run_batch(sample_document)

    assert len(adapter.calls) == 2
    assert adapter.calls[0].user == adapter.calls[1].user
    assert result.document == sample_document
    assert len(result.stats.errors) == 2
    assert len(result.stats.unresolved) == 17


def test_mock_generation_fills_every_marker(sample_document, clock):
    adapter = MockAdapter()

    result = _orchestrator(adapter, clock).run_batch(sample_document)

    assert scan(result.document) == []
    assert len(adapter.calls) == 2
    assert result.stats.api_calls == 2
    assert result.document["audit"]["scope"]["in_scope"] == ["Workflow hand-offs", "System data", "Response times"]
    assert result.document["scorecard"]["rows"][1]["finding"]["risk"].startswith("Risk:")
    gates = {item["field"]: item["gate"] for item in result.stats.approval_required}
    assert gates == {"executive_summary": "executive_review", "math_defender_text": "finance_review"}


def test_batch_call_is_json_mode_with_a_large_budget(sample_document, clock):
    adapter = ReplayAdapter(_stage_one())
    _orchestrator(adapter, clock, skip_refinement=True).run_batch(sample_document)

    assert len(adapter.calls) == 1
    assert adapter.calls[0].options.json_mode is True
    assert adapter.calls[0].options.max_output_tokens == 6000
    assert "Row 1: Response Time - Status: critical" in adapter.calls[0].user


def test_failed_refinement_keeps_stage_one_content(sample_document, clock):
    adapter = ReplayAdapter(_stage_one(), "not json", "still not json")

    result = _orchestrator(adapter, clock).run_batch(sample_document)

    assert len(adapter.calls) == 3
    assert "<generated_content>" in adapter.calls[1].user
    assert result.document["document"]["title"] == "AI Process Audit: Lead Intake"
    assert result.document["scorecard"]["rows"][0]["finding"]["summary"] == "Stage one summary."
    assert result.document["scorecard"]["rows"][1]["finding"]["summary"] == "[MARKER: finding_summary for Conversion]"


def test_refined_content_wins_over_stage_one(sample_document, clock):
    refined = json.loads(_stage_one())
    refined["document_title"] = "AI Process Audit: Refined"
    adapter = ReplayAdapter(_stage_one(), "```json\n" + json.dumps(refined) + "\n```")

    result = _orchestrator(adapter, clock).run_batch(sample_document)

    assert result.document["document"]["title"] == "AI Process Audit: Refined"
    assert result.stats.refinement_ms is not None


def test_schema_mismatch_counts_as_parse_failure(sample_document, clock):
    adapter = ReplayAdapter(json.dumps({"scorecard_findings": [{"summary": "no index"}]}))
    result = _orchestrator(adapter, clock).run_batch(sample_document)
    assert len(adapter.calls) == 2
    assert result.document == sample_document


def test_provider_failure_returns_document_unchanged(sample_document, clock):
    adapter = ReplayAdapter(FatalError("auth failed"))
    result = _orchestrator(adapter, clock).run_batch(sample_document)
    assert len(adapter.calls) == 1
    assert result.document == sample_document


def test_dry_run_batch_makes_no_calls(sample_document, clock):
    result = GenerationOrchestrator(None, prompts=PromptRegistry.load(), dry_run=True).run_batch(sample_document)
    assert result.document == sample_document
    assert result.stats.api_calls == 0


def test_existing_text_is_not_overwritten(sample_document, clock):
    sample_document["document"]["title"] = "Hand-written title"
    adapter = ReplayAdapter(_stage_one())
    result = _orchestrator(adapter, clock, skip_refinement=True).run_batch(sample_document)
    assert result.document["document"]["title"] == "Hand-written title"


def test_plan_batch_writes_drops_unknown_rows_and_wrong_types(sample_document):
    generated = {
        "document_title": 5,
        "in_scope": ["ok", 3],
        "scorecard_findings": [
            {"row_index": 7, "summary": "missing row"},
            {"row_index": True, "summary": "bool index"},
            {"row_index": 1, "summary": " Conversion lags. ", "risk": ""},
        ],
        "fixes": [{"fix_index": 0, "acceptance_criteria": ["Median response under 1 hour"]}],
    }

    writes = plan_batch_writes(sample_document, generated)

    assert [(w.field, w.path, w.value) for w in writes] == [
        ("finding.summary", ("scorecard", "rows", 1, "finding", "summary"), "Conversion lags."),
        ("fix.acceptance_criteria", ("fixes", "items", 0, "acceptance_criteria"), ["Median response under 1 hour"]),
    ]
    assert writes[0].prompt_field == "finding_summary"


def test_master_prompt_carries_document_facts(sample_document):
    prompt = build_master_prompt(sample_document)
    assert "Client: Northside Dental Group" in prompt
    assert "Systems: HubSpot, Calendly" in prompt
    assert "Total Bleed: $18,400" in prompt
    assert "Fix 1: Related to m1, Quick win: True" in prompt
    assert '"row_index": 1' in prompt

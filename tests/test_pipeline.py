import json

import pytest

from audit_narrator.main import main
from audit_narrator.pipeline_narratives import NarrativePipeline
from audit_narrator.placeholders import MARKER_PREFIX
from audit_narrator.settings import NarratorSettings

PROVIDER_ENV = ("GEMINI_API_KEY", "GROQ_API_KEY", "OPENAI_API_KEY", "NARRATOR_PROMPT_REGISTRY", "NARRATOR_DRY_RUN")


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.mark.parametrize("strategy, expected_calls", [("batch", 3), ("per-field", 18)])
def test_mock_pipeline_writes_a_marker_free_report(clean_env, sample_document_path, strategy, expected_calls):
    run_dir = clean_env / "run"
    pipeline = NarrativePipeline("mock", NarratorSettings(), strategy=strategy)

    result = pipeline.run(sample_document_path, run_dir)

    artifacts = run_dir / "artifacts"
    html = (artifacts / "report.html").read_text(encoding="utf-8")
    report = json.loads((artifacts / "report.json").read_text(encoding="utf-8"))
    stats = json.loads((artifacts / "run_stats.json").read_text(encoding="utf-8"))
    polish_log = json.loads((artifacts / "polish_log.json").read_text(encoding="utf-8"))

    assert MARKER_PREFIX not in html
    assert MARKER_PREFIX not in json.dumps(report)
    assert html.startswith("<!DOCTYPE html>")
    assert result.defaulted == []
    assert stats["strategy"] == strategy
    assert stats["api_calls"] == expected_calls
    assert stats["report_check"] == "no markers left"
    assert stats["needs_review"] is True
    assert polish_log[0]["type"] == "model_polish"
    assert (run_dir / "inputs" / "document.json").exists()


def test_dry_run_pipeline_falls_back_to_defaults(clean_env, sample_document_path):
    run_dir = clean_env / "run"
    result = NarrativePipeline("mock", NarratorSettings(dry_run=True), strategy="batch").run(
        sample_document_path, run_dir
    )

    assert result.stats.api_calls == 0
    assert len(result.defaulted) == 17
    assert MARKER_PREFIX not in result.html
    assert [entry.type for entry in result.change_log][0] == "model_polish_rejected"


def test_skip_polish_runs_only_deterministic_rules(clean_env, sample_document_path):
    result = NarrativePipeline("mock", NarratorSettings(), strategy="batch", skip_polish=True).run(
        sample_document_path, clean_env / "run"
    )
    assert result.stats.api_calls == 2
    assert all(not entry.type.startswith("model_polish") for entry in result.change_log)


def test_pipeline_cleans_json_fragments_before_rendering(clean_env, sample_document):
    sample_document["audit"]["scope"]["in_scope"] = ["[", "Lead intake", "]"]
    input_path = clean_env / "document.json"
    input_path.write_text(json.dumps(sample_document), encoding="utf-8")

    result = NarrativePipeline("mock", NarratorSettings(), strategy="batch").run(input_path, clean_env / "run")

    assert result.document["audit"]["scope"]["in_scope"] == ["Lead intake"]
    assert result.change_log[0].type == "remove_json_artifacts"
    assert result.change_log[0].count == 2
    assert "<li>[</li>" not in result.html


def test_pipeline_rejects_unknown_strategy():
    with pytest.raises(ValueError):
        NarrativePipeline("mock", NarratorSettings(), strategy="parallel")


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("GEMINI_MODELS", "gemini-2.0-flash, gemini-2.0-flash-lite")
    monkeypatch.setenv("NARRATOR_FORCE_PROVIDER", " Groq ")
    monkeypatch.setenv("NARRATOR_PAID_TIER", "true")
    monkeypatch.setenv("NARRATOR_MAX_RETRIES", "4")
    monkeypatch.setenv("ORCH_TEMPERATURE", "0.7")
    monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    settings = NarratorSettings.from_env()

    assert settings.gemini_models == ["gemini-2.0-flash", "gemini-2.0-flash-lite"]
    assert settings.force_provider == "groq"
    assert settings.paid_tier is True
    assert settings.max_retries == 4
    assert settings.temperature == 0.7
    assert settings.groq_api_key == "gsk-test"
    assert settings.gemini_api_key is None


def test_settings_reject_bad_numbers(monkeypatch):
    monkeypatch.setenv("NARRATOR_MAX_RETRIES", "many")
    with pytest.raises(RuntimeError, match="NARRATOR_MAX_RETRIES"):
        NarratorSettings.from_env()


def test_cli_mock_run(clean_env, sample_document_path, capsys):
    main(["--mode", "mock", "--input", str(sample_document_path), "--output-dir", str(clean_env / "runs")])

    [run_dir] = list((clean_env / "runs").iterdir())
    assert (run_dir / "artifacts" / "report.html").exists()
    assert "Report written to" in capsys.readouterr().out


def test_cli_live_mode_needs_a_provider_key(clean_env, sample_document_path):
    with pytest.raises(RuntimeError, match="Missing API keys"):
        main(["--mode", "live", "--input", str(sample_document_path)])

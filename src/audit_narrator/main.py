from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from audit_narrator.pipeline_narratives import STRATEGIES, NarrativePipeline
from audit_narrator.settings import NarratorSettings
from audit_narrator.utils.time import utc_timestamp

PROVIDER_KEYS = ("GEMINI_API_KEY", "GROQ_API_KEY", "OPENAI_API_KEY")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fill narrative markers in an audit report document")
    parser.add_argument("--mode", choices=["mock", "live"], required=True)
    parser.add_argument("--input", required=True, help="Report document JSON containing [MARKER: ...] strings")
    parser.add_argument("--output-dir", default="runs")
    parser.add_argument("--strategy", choices=list(STRATEGIES), default="batch")
    parser.add_argument("--provider", choices=["gemini", "groq", "openai"], help="Force a single provider")
    parser.add_argument("--dry-run", action="store_true", help="Skip every generation call")
    parser.add_argument("--skip-refinement", action="store_true")
    parser.add_argument("--skip-polish", action="store_true", help="Skip the model polish pass")
    parser.add_argument("--paid-tier", action="store_true", help="Use paid-tier rate limit spacing")
    parser.add_argument("--temperature", type=float)
    parser.add_argument("--verbose", action="store_true")
    return parser


def _ensure_env(base_dir: Path) -> None:
    load_dotenv(base_dir / ".env")
    if not any(os.getenv(key) for key in PROVIDER_KEYS):
        raise RuntimeError(
            "Missing API keys: set at least one of "
            f"{', '.join(PROVIDER_KEYS)}. Create a .env file from .env.example and set the keys."
        )


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    base_dir = Path.cwd()
    if args.mode == "live":
        if args.dry_run:
            load_dotenv(base_dir / ".env")
        else:
            _ensure_env(base_dir)

    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input document not found: {input_path}")

    settings = NarratorSettings.from_env()
    if args.provider:
        settings.force_provider = args.provider
    if args.dry_run:
        settings.dry_run = True
    if args.skip_refinement:
        settings.skip_refinement = True
    if args.paid_tier:
        settings.paid_tier = True
    if args.temperature is not None:
        settings.temperature = args.temperature

    run_dir = Path(args.output_dir) / utc_timestamp()
    pipeline = NarrativePipeline(args.mode, settings, strategy=args.strategy, skip_polish=args.skip_polish)
    result = pipeline.run(input_path, run_dir)

    print(
        f"Report written to {run_dir / 'artifacts' / 'report.html'} "
        f"(calls={result.stats.api_calls}, fallbacks={result.stats.fallback_transitions}, "
        f"defaulted={len(result.defaulted)}, approvals={len(result.stats.approval_required)})"
    )


if __name__ == "__main__":
    main()

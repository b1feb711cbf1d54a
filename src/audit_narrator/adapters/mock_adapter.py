from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .llm_base import GeneratedText, GenerationOptions, LLMAdapter, structured

_ROW_RE = re.compile(r"^Row (\d+): (.+?) - Status: (\w+)", re.MULTILINE)
_FIX_RE = re.compile(r"^Fix (\d+):", re.MULTILINE)
_GENERATED_RE = re.compile(r"<generated_content>\s*(.*?)\s*</generated_content>", re.DOTALL)
_FIELD_RE = re.compile(r"^Related finding: (.+)$", re.MULTILINE)
_HTML_RE = re.compile(r"(?:<!DOCTYPE html>\s*)?<html.*</html>", re.DOTALL | re.IGNORECASE)


@dataclass
class MockAdapter(LLMAdapter):
    """Offline adapter that answers every prompt shape the pipeline sends."""

    name: str = "mock"
    calls: List[str] = field(default_factory=list)

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> GeneratedText:
        options = options or GenerationOptions()
        self.calls.append(user_prompt)
        text = self._build_text(system_prompt, user_prompt)
        return GeneratedText(
            raw_text=text,
            tokens=len(text.split()),
            model=options.model or "mock",
            parsed=structured(text, options),
        )

    def _build_text(self, system_prompt: str, user_prompt: str) -> str:
        if "<generated_content>" in user_prompt:
            match = _GENERATED_RE.search(user_prompt)
            return match.group(1) if match else "{}"
        if "<audit_context>" in user_prompt:
            return json.dumps(self._batch_payload(user_prompt))
        page = _HTML_RE.search(user_prompt)
        if page:
            return page.group(0)
        if "JSON array" in system_prompt:
            return json.dumps(["Mock item one", "Mock item two", "Mock item three"])
        label = _FIELD_RE.search(user_prompt)
        subject = label.group(1).strip() if label else "this section"
        if '"Risk:"' in system_prompt:
            return f"Risk: delays in {subject} will keep compounding each month."
        return f"Mock narrative for {subject}."

    def _batch_payload(self, prompt: str) -> Dict:
        findings = [
            {
                "row_index": int(number) - 1,
                "category": category,
                "summary": f"{category} is <strong>{status}</strong> against its target.",
                "risk": f"Risk: {category} delays will keep compounding each month.",
            }
            for number, category, status in _ROW_RE.findall(prompt)
        ]
        fixes = [
            {
                "fix_index": int(number) - 1,
                "problem": "Manual hand-offs stall the workflow between systems.",
                "solution": "Automate the hand-off with a routed queue and alerts.",
                "impact_basis": "Removing the manual wait shortens every cycle.",
                "acceptance_criteria": [
                    "Median cycle time meets target for two weeks",
                    "No hand-off waits longer than one business day",
                ],
            }
            for number in _FIX_RE.findall(prompt)
        ]
        return {
            "document_title": "AI Process Audit: Mock Workflow",
            "scope_statement": "This audit reviewed one workflow across its connected systems.",
            "in_scope": ["Workflow hand-offs", "System data", "Response times"],
            "out_of_scope": ["Other workflows", "Staffing decisions", "Vendor contracts"],
            "limitations": ["Sample data covers one period", "Interview notes are self-reported"],
            "executive_summary": "The main bottleneck is the hand-off delay. It costs <strong>$0</strong> per month.",
            "scorecard_findings": findings,
            "math_defender": "Volume multiplied by delay cost gives the monthly total.",
            "fixes": fixes,
            "cta_headline": "Stop the Monthly Leak",
            "cta_subtext": "Book a call to plan the first fix and start recovering lost time.",
        }

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List

from audit_narrator.placeholders import Path, get_at
from audit_narrator.prompt_context import format_measurements, format_time_window, primary_workflow

MASTER_SYSTEM_PROMPT = """You are a professional business process auditor writing content for an AI Process Audit. Generate ALL narrative content for the report in a single JSON response.

RULES:
1. Use ONLY the data provided. Never invent numbers, names, or facts.
2. Be concise and professional. Use active voice and quote exact values.
3. Every field must have a value.
4. Output ONLY valid JSON, no markdown and no explanation.

FORBIDDEN PHRASES: "I think", "might be", "could be", "approximately", "around", "roughly", "I believe", "probably", "perhaps", "maybe"."""

REFINEMENT_SYSTEM_PROMPT = """You are a quality assurance editor reviewing generated content for a business report. Verify it against the source data and improve it without changing the JSON structure.

CHECKLIST:
1. All numbers match the source data exactly.
2. No fabricated information and no hedging language.
3. Complete, grammatical sentences with ending punctuation.
4. Risk statements start with "Risk:".
5. Remove placeholder text such as [INSUFFICIENT_EVIDENCE].

OUTPUT: the improved JSON with the same keys. Only modify text content."""

# Logical batch field -> prompt registry field, for constraint checks and approval gating.
BATCH_FIELD_PROMPTS: Dict[str, str] = {
    "document_title": "document_title",
    "scope_statement": "scope_statement",
    "in_scope": "scope_items",
    "out_of_scope": "out_of_scope",
    "limitations": "limitations",
    "executive_summary": "executive_summary",
    "math_defender": "math_defender_text",
    "cta_headline": "cta_headline",
    "cta_subtext": "cta_subtext",
    "finding.summary": "finding_summary",
    "finding.risk": "finding_risk",
    "fix.problem": "fix_problem",
    "fix.solution": "fix_solution",
    "fix.impact_basis": "impact_basis",
    "fix.acceptance_criteria": "acceptance_criteria",
}

TEXT_FIELD_PATHS: Dict[str, Path] = {
    "document_title": ("document", "title"),
    "scope_statement": ("audit", "scope", "scope_statement"),
    "executive_summary": ("scorecard", "executive_summary", "body"),
    "math_defender": ("bleed", "math_defender_text"),
    "cta_headline": ("cta", "headline"),
    "cta_subtext": ("cta", "subtext"),
}

LIST_FIELD_PATHS: Dict[str, Path] = {
    "in_scope": ("audit", "scope", "in_scope"),
    "out_of_scope": ("audit", "scope", "out_of_scope"),
    "limitations": ("audit", "methodology", "limitations"),
}

FINDING_FIELD_PATHS: Dict[str, Path] = {
    "summary": ("finding", "summary"),
    "risk": ("finding", "risk"),
}

FIX_TEXT_FIELD_PATHS: Dict[str, Path] = {
    "problem": ("problem",),
    "solution": ("solution",),
    "impact_basis": ("impact", "basis"),
}


@dataclass(frozen=True)
class BatchWrite:
    field: str
    path: Path
    value: Any

    @property
    def prompt_field(self) -> str:
        return BATCH_FIELD_PROMPTS[self.field]


def _rows(document: Dict[str, Any]) -> List[Any]:
    rows = get_at(document, ("scorecard", "rows"))
    return rows if isinstance(rows, list) else []


def _fixes(document: Dict[str, Any]) -> List[Any]:
    fixes = get_at(document, ("fixes", "items"))
    return fixes if isinstance(fixes, list) else []


def build_master_prompt(document: Dict[str, Any]) -> str:
    workflow = primary_workflow(document)
    bleed = document.get("bleed") if isinstance(document.get("bleed"), dict) else {}
    client_name = get_at(document, ("prepared_for", "account_name")) or "Client"
    time_window = format_time_window(get_at(document, ("audit", "scope", "time_window")), with_day=False)
    systems = get_at(document, ("audit", "scope", "systems_involved")) or []
    system_names = ", ".join(
        s.get("system_name") for s in systems if isinstance(s, dict) and s.get("system_name")
    ) or "Unknown"

    row_lines = []
    for index, row in enumerate(_rows(document)):
        row = row if isinstance(row, dict) else {}
        metrics = ", ".join(
            str(m.get("value_display")) for m in row.get("metrics") or [] if isinstance(m, dict)
        )
        row_lines.append(f"Row {index + 1}: {row.get('category')} - Status: {row.get('status')} - Metrics: {metrics}")

    fix_lines = []
    for index, fix in enumerate(_fixes(document)):
        fix = fix if isinstance(fix, dict) else {}
        related = (fix.get("related_measurement_ids") or ["general"])[0]
        fix_lines.append(
            f"Fix {index + 1}: Related to {related}, Quick win: {fix.get('quick_win')}, "
            f"Effort: {get_at(fix, ('implementation', 'effort_level'))}, "
            f"Impact tier: {get_at(fix, ('impact', 'tier'))}, "
            f"Recovery: {get_at(fix, ('impact', 'estimated_recovery', 'display')) or 'TBD'}"
        )

    shape: Dict[str, Any] = {
        "document_title": "AI Process Audit: <workflow name>",
        "scope_statement": "<2-3 sentences: what was audited, when, which systems>",
        "in_scope": ["<item>", "<item>", "<item>"],
        "out_of_scope": ["<item>", "<item>", "<item>"],
        "limitations": ["<limitation>", "<limitation>"],
        "executive_summary": "<2 sentences: critical bottleneck with exact value, then bleed amount in <strong> tags>",
        "scorecard_findings": [
            {
                "row_index": index,
                "category": (row or {}).get("category") if isinstance(row, dict) else None,
                "summary": "<one sentence on the business impact, key numbers in <strong> tags>",
                "risk": "Risk: <specific consequence if not fixed>",
            }
            for index, row in enumerate(_rows(document))
        ],
        "math_defender": "<volume x rate x cost = total, quoting every number>",
        "fixes": [
            {
                "fix_index": index,
                "problem": "<operational pain point tied to a finding>",
                "solution": "<verb + technology/process + expected outcome>",
                "impact_basis": "<mechanism that reduces the pain, no dollar amount>",
                "acceptance_criteria": ["<measurable criterion>", "<testable validation step>"],
            }
            for index in range(len(_fixes(document)))
        ],
        "cta_headline": "<3-8 word headline with urgency>",
        "cta_subtext": "<10-20 word sentence about next steps>",
    }

    return f"""Generate ALL narrative content for this audit report. Use the data below.

<audit_context>
Client: {client_name}
Workflow: {workflow.get('name') or 'Unknown'}
Trigger: {workflow.get('trigger') or 'Unknown'}
Objective: {workflow.get('objective') or 'Unknown'}
Time Window: {time_window or 'the analysis period'}
Systems: {system_names}
</audit_context>

<measurements>
{format_measurements(workflow.get('measurements'))}
</measurements>

<bleed_data>
Total Bleed: {get_at(bleed, ('total', 'display')) or '$0'}
Period: {bleed.get('period') or 'month'}
Assumptions: {json.dumps(bleed.get('assumptions') or [])}
Calculations: {json.dumps(bleed.get('calculations') or [])}
</bleed_data>

<scorecard_rows>
{chr(10).join(row_lines) or 'No rows'}
</scorecard_rows>

<fixes>
{chr(10).join(fix_lines) or 'No fixes'}
</fixes>

Return this exact JSON structure with every narrative field filled:

{json.dumps(shape, indent=2)}

Output ONLY the JSON object:"""


def refinement_source(document: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "measurements": primary_workflow(document).get("measurements"),
        "bleed": document.get("bleed"),
        "client": get_at(document, ("prepared_for", "account_name")),
    }


def build_refinement_prompt(generated: Dict[str, Any], source: Dict[str, Any]) -> str:
    return f"""Review and improve this generated content. Verify it against the source data.

<generated_content>
{json.dumps(generated, indent=2)}
</generated_content>

<source_data>
{json.dumps(source, indent=2)}
</source_data>

Verify all numbers match the source. Fix any quality issues. Return the improved JSON:"""


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_text_list(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(_is_text(item) for item in value)


def plan_batch_writes(document: Dict[str, Any], generated: Dict[str, Any]) -> List[BatchWrite]:
    """Map a generated batch object onto document paths.

    Batch field names are logical, so the paths come from the fixed tables
    above. Values of the wrong type and rows or fixes that do not exist in the
    document are ignored.
    """
    writes: List[BatchWrite] = []

    for field, path in TEXT_FIELD_PATHS.items():
        if _is_text(generated.get(field)):
            writes.append(BatchWrite(field, path, generated[field].strip()))

    for field, path in LIST_FIELD_PATHS.items():
        if _is_text_list(generated.get(field)):
            writes.append(BatchWrite(field, path, [item.strip() for item in generated[field]]))

    rows = _rows(document)
    for finding in generated.get("scorecard_findings") or []:
        if not isinstance(finding, dict):
            continue
        index = finding.get("row_index")
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(rows):
            continue
        for key, suffix in FINDING_FIELD_PATHS.items():
            if _is_text(finding.get(key)):
                writes.append(BatchWrite(f"finding.{key}", ("scorecard", "rows", index) + suffix, finding[key].strip()))

    fixes = _fixes(document)
    for fix in generated.get("fixes") or []:
        if not isinstance(fix, dict):
            continue
        index = fix.get("fix_index")
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(fixes):
            continue
        base: Path = ("fixes", "items", index)
        for key, suffix in FIX_TEXT_FIELD_PATHS.items():
            if key == "impact_basis" and not isinstance(get_at(fixes[index], ("impact",)), dict):
                continue
            if _is_text(fix.get(key)):
                writes.append(BatchWrite(f"fix.{key}", base + suffix, fix[key].strip()))
        if _is_text_list(fix.get("acceptance_criteria")):
            writes.append(
                BatchWrite(
                    "fix.acceptance_criteria",
                    base + ("acceptance_criteria",),
                    [item.strip() for item in fix["acceptance_criteria"]],
                )
            )

    return writes

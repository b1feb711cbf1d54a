from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from audit_narrator.adapters.llm_base import GenerationOptions, LLMAdapter
from audit_narrator.errors import GenerationError
from audit_narrator.gates.parsers import count_code_fences, strip_code_fences
from audit_narrator.placeholders import (
    DANGLING_MARKER_RE,
    MARKER_PREFIX,
    MARKER_RE,
    Path,
    base_field_name,
    format_path,
    get_at,
    iter_strings,
    set_at,
)
from audit_narrator.prompt_registry import INSUFFICIENT_EVIDENCE

logger = logging.getLogger(__name__)

NEUTRAL_EVIDENCE_TEXT = "Additional data would strengthen this analysis."

# Checked in order; the first substring found in the field name wins.
DEFAULT_SENTENCES: List[Tuple[str, str]] = [
    ("summary", "This metric shows a gap against its target that affects daily operations."),
    ("risk", "Risk: Leaving this gap unaddressed will continue to cost time and revenue."),
    ("problem", "The current process relies on manual steps that slow the workflow down."),
    ("solution", "Automate the manual steps and add monitoring to keep the workflow on target."),
    ("impact", "Removing the manual delay shortens each cycle and reduces repeat work."),
    ("acceptance", "The metric meets its target for two consecutive weeks."),
    ("scope", "The audit covers the primary workflow and the systems it touches."),
    ("limitation", "Findings are based on interview data and system samples from one period."),
    ("title", "AI Process Audit"),
    ("headline", "Recover Lost Revenue"),
    ("subtext", "Book a call to plan the first fix."),
    ("math", "The monthly cost follows from the documented volumes and rates."),
]
GENERIC_DEFAULT = "See the detailed analysis in this report."

TEMPLATE_TOKENS: Dict[str, str] = {
    "[specific data point]": "key metrics",
    "[start date]": "the start of the analysis period",
    "[end date]": "the end of the analysis period",
    "[missing period/segment]": "certain time periods",
    "[specific data category]": "certain data categories",
    "[level of detail]": "granular",
    "[specific area of impact]": "specific areas",
}

POLISH_SYSTEM_PROMPT = (
    "You are a copy editor for a finished HTML business report. Fix grammar, "
    "punctuation and leftover placeholder text. Do not change the HTML structure, "
    "numbers, names or facts. Return the complete HTML document only."
)

_SPACE_BEFORE_PUNCT_RE = re.compile(r"[ \t]+([.,;!?])(?=\s|$|<)")
_DOUBLE_PERIOD_RE = re.compile(r"(?<!\.)\.\.(?!\.)")
_SPACE_RUN_RE = re.compile(r"[ \t]{2,}")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_LINES_RE = re.compile(r"\n{3,}")

LIST_FIELDS: List[Path] = [
    ("audit", "scope", "in_scope"),
    ("audit", "scope", "out_of_scope"),
    ("audit", "methodology", "limitations"),
]
_JSON_ARTIFACT_RE = re.compile(r'[\[\]{}",]|```.*|".*",?', re.DOTALL)
_ITEM_QUOTES_RE = re.compile(r"""^["']|["'],?$""")
_SENTENCE_END_RE = re.compile(r"[.!?]$")


def default_sentence_for(field_name: str) -> str:
    name = base_field_name(field_name).lower()
    for needle, sentence in DEFAULT_SENTENCES:
        if needle in name:
            return sentence
    return GENERIC_DEFAULT


@dataclass
class ChangeLogEntry:
    type: str
    count: int
    reason: str

    def as_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "count": self.count, "reason": self.reason}


@dataclass
class PolishResult:
    text: str
    change_log: List[ChangeLogEntry] = field(default_factory=list)

    def changed(self) -> bool:
        return any(entry.type != "no_changes" for entry in self.change_log)


@dataclass
class DefaultsResult:
    document: Dict[str, Any]
    defaulted: List[str] = field(default_factory=list)


@dataclass
class DocumentPolishResult:
    document: Dict[str, Any]
    change_log: List[ChangeLogEntry] = field(default_factory=list)


def _replace_markers(text: str) -> Tuple[str, int]:
    return MARKER_RE.subn(lambda match: default_sentence_for(match.group(1)), text)


def _replace_dangling(text: str) -> Tuple[str, int]:
    return DANGLING_MARKER_RE.subn(lambda match: default_sentence_for(match.group(1)), text)


def _replace_tokens(text: str) -> Tuple[str, int]:
    count = 0
    for token, phrase in TEMPLATE_TOKENS.items():
        hits = text.count(token)
        if hits:
            text = text.replace(token, phrase)
            count += hits
    return text, count


def _normalize_punctuation(text: str) -> Tuple[str, int]:
    # Each fix can expose the other ("a . ." -> "a.." -> "a."), so run to a fixed point.
    total = 0
    while True:
        text, spaced = _SPACE_BEFORE_PUNCT_RE.subn(r"\1", text)
        text, doubled = _DOUBLE_PERIOD_RE.subn(".", text)
        if not spaced and not doubled:
            return text, total
        total += spaced + doubled


def _collapse_whitespace(text: str) -> Tuple[str, int]:
    text, runs = _SPACE_RUN_RE.subn(" ", text)
    text, trailing = _TRAILING_SPACE_RE.subn("", text)
    text, blanks = _BLANK_LINES_RE.subn("\n\n", text)
    return text, runs + trailing + blanks


def _strip_fences(text: str) -> Tuple[str, int]:
    count = count_code_fences(text)
    if not count:
        return text, 0
    return strip_code_fences(text), count


def _replace_evidence(text: str) -> Tuple[str, int]:
    count = text.count(INSUFFICIENT_EVIDENCE)
    return text.replace(INSUFFICIENT_EVIDENCE, NEUTRAL_EVIDENCE_TEXT), count


RULES: List[Tuple[str, Callable[[str], Tuple[str, int]], str]] = [
    ("replace_insufficient_evidence", _replace_evidence, "Insufficient-evidence sentinel replaced with neutral text"),
    ("strip_code_fences", _strip_fences, "Residual code fences removed"),
    ("fix_placeholders", _replace_markers, "Unresolved markers replaced with default sentences"),
    ("fix_dangling_markers", _replace_dangling, "Truncated markers replaced with default sentences"),
    ("replace_template_tokens", _replace_tokens, "Template tokens replaced with generic phrases"),
    ("normalize_punctuation", _normalize_punctuation, "Spacing before punctuation and doubled periods fixed"),
    ("collapse_whitespace", _collapse_whitespace, "Repeated spaces and blank lines collapsed"),
]


class OutputPolisher:
    """Final cleanup of the rendered report.

    With a generator configured, one model pass is tried first and kept only if
    every required structural marker survives. The deterministic rules always
    run afterwards, so the result never carries a marker.
    """

    def __init__(
        self,
        generator: Optional[LLMAdapter] = None,
        required_markers: Sequence[str] = ("<html", "</html>"),
        max_output_tokens: int = 8000,
        temperature: float = 0.2,
    ) -> None:
        self.generator = generator
        self.required_markers = tuple(required_markers)
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    def polish(self, text: str) -> PolishResult:
        change_log: List[ChangeLogEntry] = []
        if self.generator is not None:
            text = self._model_pass(text, change_log)

        deterministic = self.deterministic(text)
        for entry in deterministic.change_log:
            if entry.type != "no_changes" or not change_log:
                change_log.append(entry)
        return PolishResult(text=deterministic.text, change_log=change_log)

    def deterministic(self, text: str) -> PolishResult:
        change_log: List[ChangeLogEntry] = []
        for rule_type, rule, reason in RULES:
            text, count = rule(text)
            if count:
                change_log.append(ChangeLogEntry(rule_type, count, reason))
        if not change_log:
            change_log.append(ChangeLogEntry("no_changes", 0, "Text was already clean"))
        else:
            logger.info(
                "[polisher] %s",
                ", ".join(f"{entry.type}={entry.count}" for entry in change_log),
            )
        return PolishResult(text=text, change_log=change_log)

    def _model_pass(self, text: str, change_log: List[ChangeLogEntry]) -> str:
        options = GenerationOptions(
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            max_retries=1,
        )
        try:
            generated = self.generator.generate(POLISH_SYSTEM_PROMPT, text, options)
        except GenerationError as exc:
            logger.warning("[polisher] model pass failed, using deterministic rules: %s", exc)
            change_log.append(ChangeLogEntry("model_polish_failed", 0, str(exc)))
            return text

        candidate = strip_code_fences(generated.raw_text)
        lowered = candidate.lower()
        missing = [marker for marker in self.required_markers if marker.lower() not in lowered]
        if missing:
            logger.warning("[polisher] model output dropped %s, discarding it", ", ".join(missing))
            change_log.append(
                ChangeLogEntry("model_polish_rejected", 0, f"Missing structural markers: {', '.join(missing)}")
            )
            return text

        change_log.append(ChangeLogEntry("model_polish", 1, f"Model pass accepted ({generated.model or 'unknown'})"))
        return candidate


def fill_defaults(document: Dict[str, Any]) -> DefaultsResult:
    """Replace every remaining marker in a document with its default sentence.

    A singleton marker array keeps its shape and becomes a one-element list of
    the default. Returns a new document and the paths that were defaulted.
    """
    filled = copy.deepcopy(document)
    replacements: List[Tuple[Path, str]] = []
    for path, value in iter_strings(filled):
        if MARKER_PREFIX not in value:
            continue
        text, _ = _replace_markers(value)
        text, _ = _replace_dangling(text)
        replacements.append((path, text))

    for path, text in replacements:
        set_at(filled, path, text)

    defaulted = [format_path(path) for path, _ in replacements]
    if defaulted:
        logger.warning("[polisher] %d fields filled with defaults: %s", len(defaulted), ", ".join(defaulted))
    return DefaultsResult(document=filled, defaulted=defaulted)


def _clean_list_items(items: List[Any]) -> Tuple[List[Any], int]:
    cleaned: List[Any] = []
    count = 0
    for item in items:
        if not isinstance(item, str):
            cleaned.append(item)
            continue
        if _JSON_ARTIFACT_RE.fullmatch(item.strip()):
            count += 1
            continue
        unquoted = _ITEM_QUOTES_RE.sub("", item).strip()
        if unquoted != item:
            count += 1
        cleaned.append(unquoted)
    return cleaned, count


def polish_document(document: Dict[str, Any]) -> DocumentPolishResult:
    """Structural cleanup of a filled document before it is rendered.

    List fields lose JSON syntax fragments left by a half-parsed answer, and
    fix solutions cut off mid-sentence get their closing period. Returns a new
    document; the change log is empty when nothing needed fixing.
    """
    polished = copy.deepcopy(document)
    change_log: List[ChangeLogEntry] = []

    artifacts = 0
    for path in LIST_FIELDS:
        items = get_at(polished, path)
        if not isinstance(items, list):
            continue
        cleaned, count = _clean_list_items(items)
        if count:
            set_at(polished, path, cleaned)
            artifacts += count
    if artifacts:
        change_log.append(
            ChangeLogEntry("remove_json_artifacts", artifacts, "JSON syntax fragments removed from list fields")
        )

    completed = 0
    fixes = get_at(polished, ("fixes", "items"))
    for fix in fixes if isinstance(fixes, list) else []:
        solution = fix.get("solution") if isinstance(fix, dict) else None
        if not isinstance(solution, str) or not solution.strip():
            continue
        if not _SENTENCE_END_RE.search(solution.strip()):
            fix["solution"] = solution.strip() + "."
            completed += 1
    if completed:
        change_log.append(
            ChangeLogEntry("complete_fix_sentences", completed, "Missing sentence-ending punctuation added to fix solutions")
        )

    if change_log:
        logger.info(
            "[polisher] document %s",
            ", ".join(f"{entry.type}={entry.count}" for entry in change_log),
        )
    return DocumentPolishResult(document=polished, change_log=change_log)

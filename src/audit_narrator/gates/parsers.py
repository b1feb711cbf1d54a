from __future__ import annotations

import json
import re
from typing import Any, List, Optional

from audit_narrator.errors import ParseFailure

_FENCE_RE = re.compile(r"```(?:json|html|text|markdown)?[ \t]*\n?", flags=re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def count_code_fences(text: str) -> int:
    return len(_FENCE_RE.findall(text))


def try_parse_json(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def _iter_object_candidates(text: str) -> List[str]:
    candidates: List[str] = []
    stripped = strip_code_fences(text)
    candidates.append(stripped)

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start != -1 and end > start:
        candidates.append(stripped[start : end + 1])

    for match in re.finditer(r"\{", stripped):
        candidates.append(stripped[match.start() :])

    return candidates


def parse_json_object(raw_text: str) -> dict:
    parsed = try_parse_json(raw_text)
    if isinstance(parsed, dict):
        return parsed

    candidates = _iter_object_candidates(raw_text)
    for candidate in candidates:
        parsed = try_parse_json(candidate)
        if isinstance(parsed, dict):
            return parsed

    decoder = json.JSONDecoder()
    for candidate in candidates:
        try:
            parsed, _ = decoder.raw_decode(candidate.lstrip())
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    snippet = raw_text.strip().replace("\n", " ")
    snippet = (snippet[:200] + "...") if len(snippet) > 200 else snippet
    raise ParseFailure(f"No JSON object found in response. Snippet: {snippet}")


def parse_string_list(raw_text: str) -> List[str]:
    """Parse model output for an array-of-strings field.

    Prefers a JSON array anywhere in the text; otherwise falls back to one
    item per non-empty line with list bullets removed.
    """
    cleaned = strip_code_fences(raw_text)
    match = re.search(r"\[[\s\S]*\]", cleaned)
    if match:
        parsed = try_parse_json(match.group(0))
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()]

    items: List[str] = []
    for line in cleaned.splitlines():
        item = _BULLET_RE.sub("", line).strip().strip('",').strip()
        if not item or item in {"[", "]"}:
            continue
        items.append(item)
    return items

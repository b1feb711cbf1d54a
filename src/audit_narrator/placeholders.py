from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Tuple, Union

Segment = Union[str, int]
Path = Tuple[Segment, ...]

MARKER_PREFIX = "[MARKER:"
MARKER_RE = re.compile(r"\[MARKER:\s*([^\]]+)\]")
# A truncated marker spans its field token and an optional Title Case " for <Label>";
# whatever follows is report text and stays.
DANGLING_MARKER_RE = re.compile(
    r"\[MARKER:\s*([\w.-]*(?:\s+for\s+[A-Z][\w&/'-]*(?:\s+[A-Z][\w&/'-]*)*)?)"
)
CONTEXT_SEPARATOR = " for "


@dataclass(frozen=True)
class Placeholder:
    path: Path
    field_name: str
    full_match: str

    @property
    def base_name(self) -> str:
        return base_field_name(self.field_name)

    @property
    def context_label(self) -> str:
        index = self.field_name.find(CONTEXT_SEPARATOR)
        if index > 0:
            return self.field_name[index + len(CONTEXT_SEPARATOR) :].strip()
        return ""

    @property
    def path_display(self) -> str:
        return format_path(self.path)


def base_field_name(field_name: str) -> str:
    # "finding_summary for Response Time" -> "finding_summary"
    index = field_name.find(CONTEXT_SEPARATOR)
    if index > 0:
        return field_name[:index].strip()
    return field_name.strip()


def format_path(path: Path) -> str:
    parts: List[str] = []
    for segment in path:
        if isinstance(segment, int):
            parts.append(f"[{segment}]")
        elif parts:
            parts.append(f".{segment}")
        else:
            parts.append(segment)
    return "".join(parts)


def is_marker(value: Any) -> bool:
    return isinstance(value, str) and MARKER_RE.search(value) is not None


def iter_strings(document: Any, path: Path = ()) -> Iterator[Tuple[Path, str]]:
    """Yield (path, value) for every string leaf, depth-first in document order."""
    if isinstance(document, str):
        yield path, document
    elif isinstance(document, list):
        for index, item in enumerate(document):
            yield from iter_strings(item, path + (index,))
    elif isinstance(document, dict):
        for key, value in document.items():
            yield from iter_strings(value, path + (key,))


def scan(document: Any) -> List[Placeholder]:
    placeholders: List[Placeholder] = []
    for path, value in iter_strings(document):
        if MARKER_PREFIX not in value:
            continue
        match = MARKER_RE.search(value)
        if match is None:
            continue
        placeholders.append(
            Placeholder(path=path, field_name=match.group(1).strip(), full_match=match.group(0))
        )
    return placeholders


def find_dangling_markers(document: Any) -> List[Tuple[Path, str]]:
    """Strings that carry a marker prefix but no well-formed marker."""
    return [
        (path, value)
        for path, value in iter_strings(document)
        if MARKER_PREFIX in value and MARKER_RE.search(value) is None
    ]


def get_at(document: Any, path: Path) -> Any:
    current = document
    for segment in path:
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list) and isinstance(segment, int):
            if segment < 0 or segment >= len(current):
                return None
            current = current[segment]
        else:
            return None
    return current


def _empty_container(next_segment: Segment) -> Any:
    return [] if isinstance(next_segment, int) else {}


def _ensure_slot(container: Any, segment: Segment, next_segment: Segment) -> Any:
    if isinstance(container, list):
        if not isinstance(segment, int):
            raise TypeError(f"Cannot index a list with key {segment!r}")
        while len(container) <= segment:
            container.append(None)
        if container[segment] is None:
            container[segment] = _empty_container(next_segment)
        return container[segment]
    if isinstance(container, dict):
        if container.get(segment) is None:
            container[segment] = _empty_container(next_segment)
        return container[segment]
    raise TypeError(f"Cannot descend into {type(container).__name__} at segment {segment!r}")


def set_at(document: Any, path: Path, value: Any) -> None:
    if not path:
        raise ValueError("set_at needs a non-empty path")
    current = document
    for segment, next_segment in zip(path[:-1], path[1:]):
        current = _ensure_slot(current, segment, next_segment)

    last = path[-1]
    if isinstance(current, list):
        if not isinstance(last, int):
            raise TypeError(f"Cannot index a list with key {last!r}")
        while len(current) <= last:
            current.append(None)
        current[last] = value
    elif isinstance(current, dict):
        current[last] = value
    else:
        raise TypeError(f"Cannot assign into {type(current).__name__} at segment {last!r}")


def retarget_path(document: Any, path: Path, value: Any) -> Path:
    """Return the path a generated value should be written to.

    An array-typed placeholder is a singleton list holding one marker. When the
    generated value is itself a list, the whole parent list is replaced instead
    of nesting the new list inside it.
    """
    if not isinstance(value, list) or not path or not isinstance(path[-1], int):
        return path
    parent = get_at(document, path[:-1])
    if isinstance(parent, list) and len(parent) == 1 and is_marker(parent[0]):
        return path[:-1]
    return path

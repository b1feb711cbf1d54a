from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List

from audit_narrator.placeholders import find_dangling_markers, format_path, scan


@dataclass
class ReportCheck:
    valid: bool
    unresolved: List[str] = field(default_factory=list)
    dangling: List[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.valid:
            return "no markers left"
        return f"{len(self.unresolved)} unresolved, {len(self.dangling)} dangling"


def check_report(document: Any, allow_markers: bool = False) -> ReportCheck:
    """Audit a document for markers that would leak into the rendered report.

    Dangling markers always fail the check; well-formed ones only fail it
    when ``allow_markers`` is off.
    """
    unresolved = [placeholder.path_display for placeholder in scan(document)]
    dangling = [format_path(path) for path, _ in find_dangling_markers(document)]
    valid = not dangling and (allow_markers or not unresolved)
    return ReportCheck(valid=valid, unresolved=unresolved, dangling=dangling)

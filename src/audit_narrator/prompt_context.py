from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from audit_narrator.placeholders import Placeholder, get_at, is_marker

OFFER_PROMISE = "Single workflow audit with actionable fixes"
BOOKING_CTA_TEXT = "Book Implementation Call"


def format_date(value: Any, with_day: bool = True) -> Optional[str]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    if with_day:
        return f"{parsed:%B} {parsed.day}, {parsed.year}"
    return f"{parsed:%B} {parsed.year}"


def format_time_window(window: Any, with_day: bool = True) -> Optional[str]:
    if not isinstance(window, dict):
        return None
    start = format_date(window.get("start"), with_day)
    end = format_date(window.get("end"), with_day)
    if not start or not end:
        return None
    return f"{start} to {end}"


def primary_workflow(document: Dict[str, Any]) -> Dict[str, Any]:
    workflow = get_at(document, ("audit", "workflows", 0))
    return workflow if isinstance(workflow, dict) else {}


def format_measurements(measurements: Any) -> str:
    if not isinstance(measurements, list) or not measurements:
        return "No measurements"
    lines: List[str] = []
    for item in measurements:
        if not isinstance(item, dict):
            continue
        target = item.get("target") or "not set"
        status = item.get("status") or "unknown"
        lines.append(f"- {item.get('name', 'Unnamed')}: {item.get('value_display', 'n/a')} (target: {target}, status: {status})")
    return "\n".join(lines) or "No measurements"


def base_context(document: Dict[str, Any]) -> Dict[str, Any]:
    context: Dict[str, Any] = {}

    workflow = primary_workflow(document)
    if workflow:
        context["workflow_name"] = workflow.get("name")
        context["trigger"] = workflow.get("trigger")
        context["objective"] = workflow.get("objective")
        context["measurements"] = format_measurements(workflow.get("measurements"))

    scope = get_at(document, ("audit", "scope"))
    if isinstance(scope, dict):
        systems = scope.get("systems_involved") or []
        context["systems_involved"] = [
            system.get("system_name") for system in systems if isinstance(system, dict) and system.get("system_name")
        ]
        time_window = format_time_window(scope.get("time_window"))
        if time_window:
            context["time_window"] = time_window

    bleed = document.get("bleed")
    if isinstance(bleed, dict):
        context["bleed_total_display"] = get_at(bleed, ("total", "display"))
        context["period"] = bleed.get("period")
        context["assumptions"] = bleed.get("assumptions")
        context["calculations"] = bleed.get("calculations")

    client_name = get_at(document, ("prepared_for", "account_name"))
    if client_name:
        context["client_name"] = client_name

    offer = document.get("offer")
    if isinstance(offer, dict):
        context["offer_sku_name"] = offer.get("sku_name")
        context["offer_promise"] = OFFER_PROMISE
        context["booking_cta_text"] = BOOKING_CTA_TEXT

    return context


def build_placeholder_context(placeholder: Placeholder, document: Dict[str, Any]) -> Dict[str, Any]:
    """Prompt variables for one placeholder, drawn only from the source document."""
    context = base_context(document)
    context["field_context"] = placeholder.context_label or None
    path = placeholder.path

    if path[:2] == ("scorecard", "rows") and len(path) > 2 and isinstance(path[2], int):
        row = get_at(document, path[:3])
        if isinstance(row, dict):
            metrics = row.get("metrics") or []
            context["category"] = row.get("category")
            context["status"] = row.get("status")
            context["measurement_value"] = get_at(metrics, (0, "value_display"))
            context["threshold"] = get_at(metrics, (1, "value_display"))
            context["cost_signal"] = get_at(document, ("bleed", "total", "display"))

    if path[:2] == ("fixes", "items") and len(path) > 2 and isinstance(path[2], int):
        fix = get_at(document, path[:3])
        if isinstance(fix, dict):
            context["problem"] = _fact(fix.get("problem"))
            context["solution"] = _fact(fix.get("solution"))
            context["quick_win_flag"] = fix.get("quick_win")
            measurement = _related_measurement(document, fix)
            if measurement:
                context["measurement_name"] = measurement.get("name")
                context["threshold"] = measurement.get("target")
                context["measurement_value"] = measurement.get("value_display")

    if "executive_summary" in path:
        rows = get_at(document, ("scorecard", "rows")) or []
        critical = next(
            (row for row in rows if isinstance(row, dict) and row.get("status") == "critical"),
            None,
        )
        context["critical_finding"] = (critical or {}).get("category") or "Process bottleneck"

    return context


def _fact(value: Any) -> Any:
    # Sibling narrative fields are still markers in the source document.
    return None if is_marker(value) else value


def _related_measurement(document: Dict[str, Any], fix: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    related = fix.get("related_measurement_ids") or []
    if not related:
        return None
    for measurement in primary_workflow(document).get("measurements") or []:
        if isinstance(measurement, dict) and measurement.get("measurement_id") == related[0]:
            return measurement
    return None

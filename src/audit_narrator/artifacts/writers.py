from __future__ import annotations

import html
from typing import Any, Dict, List

from audit_narrator.placeholders import get_at

_ALLOWED_TAGS = ("strong",)


def _text(value: Any) -> str:
    if value is None:
        return ""
    escaped = html.escape(str(value))
    for tag in _ALLOWED_TAGS:
        escaped = escaped.replace(f"&lt;{tag}&gt;", f"<{tag}>").replace(f"&lt;/{tag}&gt;", f"</{tag}>")
    return escaped


def _items(values: Any) -> List[str]:
    if not isinstance(values, list):
        return []
    return [f"    <li>{_text(item)}</li>" for item in values if item is not None]


def _section(title: str, body: List[str]) -> List[str]:
    if not body:
        return []
    return ["  <section>", f"    <h2>{_text(title)}</h2>", *body, "  </section>"]


def render_report_html(document: Dict[str, Any]) -> str:
    """Render the report document into a plain HTML page."""
    title = get_at(document, ("document", "title")) or "AI Process Audit"
    lines: List[str] = [
        "<!DOCTYPE html>",
        "<html lang=\"en\">",
        "<head>",
        "  <meta charset=\"utf-8\">",
        f"  <title>{_text(title)}</title>",
        "</head>",
        "<body>",
        f"  <h1>{_text(title)}</h1>",
    ]
    client = get_at(document, ("prepared_for", "account_name"))
    if client:
        lines.append(f"  <p>Prepared for {_text(client)}</p>")

    summary = get_at(document, ("scorecard", "executive_summary", "body"))
    if summary:
        lines.extend(_section("Executive Summary", [f"    <p>{_text(summary)}</p>"]))

    scope = get_at(document, ("audit", "scope")) or {}
    scope_body: List[str] = []
    if isinstance(scope, dict):
        if scope.get("scope_statement"):
            scope_body.append(f"    <p>{_text(scope['scope_statement'])}</p>")
        for label, key in (("In scope", "in_scope"), ("Out of scope", "out_of_scope")):
            items = _items(scope.get(key))
            if items:
                scope_body.extend([f"    <h3>{label}</h3>", "    <ul>", *items, "    </ul>"])
    limitations = _items(get_at(document, ("audit", "methodology", "limitations")))
    if limitations:
        scope_body.extend(["    <h3>Limitations</h3>", "    <ul>", *limitations, "    </ul>"])
    lines.extend(_section("Scope", scope_body))

    rows = get_at(document, ("scorecard", "rows")) or []
    row_body: List[str] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        metrics = ", ".join(
            _text(metric.get("value_display")) for metric in row.get("metrics") or [] if isinstance(metric, dict)
        )
        row_body.extend(
            [
                "    <article>",
                f"      <h3>{_text(row.get('category'))} ({_text(row.get('status'))})</h3>",
                f"      <p>{metrics}</p>" if metrics else "",
                f"      <p>{_text(get_at(row, ('finding', 'summary')))}</p>",
                f"      <p>{_text(get_at(row, ('finding', 'risk')))}</p>",
                "    </article>",
            ]
        )
    lines.extend(_section("Scorecard", [line for line in row_body if line]))

    bleed = document.get("bleed") if isinstance(document.get("bleed"), dict) else {}
    bleed_body: List[str] = []
    if get_at(bleed, ("total", "display")):
        bleed_body.append(f"    <p><strong>{_text(bleed['total']['display'])}</strong> per {_text(bleed.get('period') or 'month')}</p>")
    if bleed.get("math_defender_text"):
        bleed_body.append(f"    <p>{_text(bleed['math_defender_text'])}</p>")
    lines.extend(_section("Revenue Bleed", bleed_body))

    fix_body: List[str] = []
    for fix in get_at(document, ("fixes", "items")) or []:
        if not isinstance(fix, dict):
            continue
        fix_body.extend(
            [
                "    <article>",
                f"      <p><strong>Problem:</strong> {_text(fix.get('problem'))}</p>",
                f"      <p><strong>Solution:</strong> {_text(fix.get('solution'))}</p>",
            ]
        )
        basis = get_at(fix, ("impact", "basis"))
        if basis:
            fix_body.append(f"      <p><strong>Impact:</strong> {_text(basis)}</p>")
        criteria = _items(fix.get("acceptance_criteria"))
        if criteria:
            fix_body.extend(["      <ul>", *criteria, "      </ul>"])
        fix_body.append("    </article>")
    lines.extend(_section("Recommended Fixes", fix_body))

    cta = document.get("cta") if isinstance(document.get("cta"), dict) else {}
    if cta.get("headline") or cta.get("subtext"):
        lines.extend(
            _section(
                str(cta.get("headline") or "Next Steps"),
                [f"    <p>{_text(cta.get('subtext'))}</p>"],
            )
        )

    lines.extend(["</body>", "</html>"])
    return "\n".join(lines) + "\n"

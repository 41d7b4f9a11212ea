"""
Report renderer: summaries of pipeline runs as text, Markdown, CSV, JSON or HTML.
Markdown and HTML are rendered from the Jinja2 templates in report/templates/.
"""

from typing import Optional, List, Dict, Any
import os
import json
import io
import csv

from jinja2 import Environment, FileSystemLoader, select_autoescape

COLUMNS = ['crash_id', 'outcome', 'reason', 'file_path', 'line_number', 'fetch_via', 'action_id', 'confidence', 'method', 'component', 'component_status', 'crash_count']

_TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), 'templates')


def _env() -> Environment:
    return Environment(loader=FileSystemLoader(_TEMPLATE_DIR), autoescape=select_autoescape(['html', 'xml', 'html.j2']), trim_blocks=True, lstrip_blocks=True)


def _row(r: Any) -> Dict[str, Any]:
    """Accept PipelineResult-like objects or plain dicts."""
    data = r.to_dict() if hasattr(r, 'to_dict') else dict(r)
    return {c: data.get(c) for c in COLUMNS}


def summarize(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    summary = {'total': len(rows), 'linked': 0, 'unlinked': 0, 'failed': 0}
    for row in rows:
        outcome = row.get('outcome')
        if outcome in summary:
            summary[outcome] += 1
    return summary


def render_text(rows: List[Dict[str, Any]]) -> str:
    """One line per crash plus a totals line."""
    lines = []
    for row in rows:
        if row['outcome'] == 'linked':
            lines.append(f"{row['crash_id']}: linked to {row['component']} ({row['confidence']} via {row['method']}; {row['crash_count']} crashes, {row['component_status']})")
        else:
            lines.append(f"{row['crash_id']}: {row['outcome']} ({row['reason']})")
    s = summarize(rows)
    lines.append(f"{s['linked']} linked, {s['unlinked']} unlinked, {s['failed']} failed of {s['total']}")
    return "\n".join(lines)


def render_csv(rows: List[Dict[str, Any]]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(COLUMNS)
    for row in rows:
        writer.writerow(['' if row[c] is None else row[c] for c in COLUMNS])
    return output.getvalue()


def render_json(rows: List[Dict[str, Any]], summary: Optional[dict] = None) -> str:
    return json.dumps({'summary': summary or summarize(rows), 'results': rows}, indent=2, default=str)


def _render_template(name: str, rows: List[Dict[str, Any]], summary: Optional[dict], generated_at: Optional[str], scope: Optional[str]) -> str:
    tmpl = _env().get_template(name)
    return tmpl.render(results=rows, summary=summary or summarize(rows), generated_at=generated_at, scope=scope, columns=COLUMNS)


def render(
    results: Optional[List[Any]] = None,
    fmt: str = 'text',
    summary: Optional[dict] = None,
    generated_at: Optional[str] = None,
    scope: Optional[str] = None,
) -> str:
    """Render pipeline results (PipelineResult objects or their dicts) in the requested format."""
    rows = [_row(r) for r in (results or [])]
    fmt_l = (fmt or 'text').lower()
    if fmt_l in ('md', 'markdown'):
        return _render_template('run.md.j2', rows, summary, generated_at, scope)
    if fmt_l == 'csv':
        return render_csv(rows)
    if fmt_l in ('html', 'htm'):
        return _render_template('run.html.j2', rows, summary, generated_at, scope)
    if fmt_l in ('json', 'js'):
        return render_json(rows, summary)
    return render_text(rows)


def render_components(components: List[Any], fmt: str = 'text') -> str:
    """Component listing used by the CLI status commands."""
    rows = [c.to_dict() if hasattr(c, 'to_dict') else dict(c) for c in components]
    if (fmt or 'text').lower() in ('json', 'js'):
        return json.dumps(rows, indent=2, default=str)
    lines = [f"{r['identifier']}: {r['status']} ({r['crash_count']}/{r['crash_threshold']} crashes, {r['status_source']})" for r in rows]
    return "\n".join(lines) if lines else 'no components'

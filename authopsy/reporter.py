import html
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Any, Optional

from . import __version__
from .config import InputError
from .findings import Severity, UNCLASSIFIED, RESOLUTION_ERROR, REQUEST_ERROR, INCONCLUSIVE, count_by_severity
from .identities import CredentialSet, SCAN_ROLES
from .probes import CATALOG_VERSION
from .scanner import ScanOutcome

logger = logging.getLogger(__name__)

ERROR_RULES = (RESOLUTION_ERROR, REQUEST_ERROR, INCONCLUSIVE)

SEVERITY_ORDER = [severity.value for severity in Severity]


def summarize_results(results: List[Dict[str, Any]]) -> Dict[str, int]:
    """
    Count endpoints by their worst severity.

    Endpoints without a severity-bearing finding are counted under ``errors``
    when any of their findings is an error outcome, otherwise ``unclassified``.
    """
    summary = {severity: 0 for severity in SEVERITY_ORDER}
    summary['errors'] = 0
    summary['unclassified'] = 0
    summary['total_findings'] = 0

    for result in results:
        findings = result.get('findings', [])
        summary['total_findings'] += len(findings)
        severity = result.get('severity')
        if severity in summary:
            summary[severity] += 1
        elif any(f.get('rule_id') in ERROR_RULES for f in findings):
            summary['errors'] += 1
        elif any(f.get('rule_id') == UNCLASSIFIED for f in findings):
            summary['unclassified'] += 1

    return summary


def build_report(outcome: ScanOutcome,
                 target: str,
                 credentials: Optional[CredentialSet] = None) -> Dict[str, Any]:
    """
    Build the JSON-serializable report for a finished session.

    Args:
        outcome: Session results
        target: Base URL that was scanned
        credentials: Used only to describe which roles carried a credential

    Returns:
        Report dictionary
    """
    results = [result.to_dict() for result in outcome.results]
    return {
        'scan_id': outcome.scan_id,
        'mode': outcome.mode,
        'generated_at': datetime.now(timezone.utc).isoformat(),
        'scanner_version': __version__,
        'catalog_version': CATALOG_VERSION if outcome.mode == 'fuzz' else None,
        'target': target,
        'credentials': credentials.describe() if credentials else None,
        'summary': summarize_results(results),
        'findings_by_severity': count_by_severity(outcome.findings),
        'stats': outcome.stats(),
        'skipped': list(outcome.skipped),
        'not_scanned': list(outcome.not_scanned),
        'results': results,
        'findings': [finding.to_dict() for finding in outcome.findings]
    }


def write_json_report(report: Dict[str, Any], output_file: str) -> str:
    """Write a report to disk and return its path."""
    path = Path(output_file)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        json.dump(report, f, indent=2, default=str)

    logger.info(f"Report written: {path}")
    return str(path)


def load_report(report_file: str) -> Dict[str, Any]:
    """
    Load a previously written JSON report.

    Raises:
        FileNotFoundError: If the report doesn't exist
        InputError: If the file is not an authopsy report
    """
    path = Path(report_file)
    if not path.exists():
        raise FileNotFoundError(f"Report not found: {report_file}")

    try:
        with open(path, 'r') as f:
            report = json.load(f)
    except json.JSONDecodeError as e:
        raise InputError(f"Invalid JSON in report {report_file}: {e}") from e

    if not isinstance(report, dict) or 'results' not in report or 'mode' not in report:
        raise InputError(f"Not an authopsy report: {report_file}")

    if 'summary' not in report:
        report['summary'] = summarize_results(report['results'])
    return report


def _cell(value: Any) -> str:
    return str(value).replace('|', '\\|').replace('\n', ' ')


def render_markdown(report: Dict[str, Any]) -> str:
    """Render a human-readable Markdown summary of a report."""
    summary = report.get('summary') or summarize_results(report.get('results', []))
    mode = report.get('mode', 'scan')

    lines = [
        f"# Authorization {'Fuzz' if mode == 'fuzz' else 'Scan'} Report",
        "",
        f"- **Target:** {report.get('target', '')}",
        f"- **Scan ID:** {report.get('scan_id', '')}",
        f"- **Generated:** {report.get('generated_at', '')}",
        f"- **Endpoints:** {len(report.get('results', []))}",
        "",
        "## Summary",
        "",
        "| Severity | Endpoints |",
        "|---|---|",
    ]
    for key in [*SEVERITY_ORDER, 'errors', 'unclassified']:
        lines.append(f"| {key} | {summary.get(key, 0)} |")

    if mode == 'scan':
        lines.extend(["", "## Status Matrix", ""])
        lines.extend(_status_matrix(report.get('results', [])))

    findings = [f for f in report.get('findings', []) if f.get('rule_id') != 'ok']
    lines.extend(["", "## Findings", ""])
    if not findings:
        lines.append("No authorization issues found.")
    else:
        lines.append("| Severity | Endpoint | Rule | Description | Remediation |")
        lines.append("|---|---|---|---|---|")
        for finding in findings:
            lines.append(
                f"| {finding.get('severity') or '-'} | {_cell(finding.get('endpoint', ''))} "
                f"| {finding.get('rule_id')} | {_cell(finding.get('description', ''))} "
                f"| {_cell(finding.get('remediation', ''))} |"
            )

    if report.get('skipped'):
        lines.extend(["", "## Skipped", ""])
        lines.extend(f"- {key}" for key in report['skipped'])

    if report.get('not_scanned'):
        lines.extend(["", "## Not Scanned (cancelled)", ""])
        lines.extend(f"- {key}" for key in report['not_scanned'])

    return '\n'.join(lines) + '\n'


def _status_matrix(results: List[Dict[str, Any]]) -> List[str]:
    header = "| Endpoint | " + " | ".join(role.label for role in SCAN_ROLES) + " | Severity |"
    lines = [header, "|---|" + "---|" * (len(SCAN_ROLES) + 1)]
    for result in results:
        roles = result.get('roles', {})
        cells = []
        for role in SCAN_ROLES:
            snap = roles.get(role.value)
            if snap is None:
                cells.append('-')
            elif snap.get('error'):
                cells.append(f"ERR ({_cell(snap['error'])})")
            else:
                cells.append(str(snap.get('status')))
        lines.append(
            f"| {result.get('method')} {_cell(result.get('path'))} | "
            + " | ".join(cells)
            + f" | {result.get('severity') or '-'} |"
        )
    return lines


def write_markdown_summary(report: Dict[str, Any], output_file: str) -> str:
    path = Path(output_file)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_markdown(report), encoding='utf-8')
    logger.info(f"Markdown summary written: {path}")
    return str(path)


HTML_STYLE = """
        body { font-family: 'Segoe UI', Tahoma, Verdana, sans-serif; color: #333; max-width: 1200px; margin: 0 auto; padding: 20px; }
        h1 { border-bottom: 2px solid #eee; padding-bottom: 10px; }
        table { border-collapse: collapse; width: 100%; margin-bottom: 20px; }
        th, td { border: 1px solid #ddd; padding: 6px 10px; text-align: left; vertical-align: top; }
        th { background: #f5f5f5; }
        .CRITICAL { color: #b71c1c; font-weight: bold; }
        .HIGH { color: #e65100; font-weight: bold; }
        .MEDIUM { color: #f9a825; }
        .LOW { color: #1565c0; }
        .OK { color: #388e3c; }
        .ERR { color: #757575; }
        ul { margin: 0; padding-left: 18px; }
"""


def _html_status(snap: Optional[Dict[str, Any]]) -> str:
    if snap is None:
        return '-'
    if snap.get('error'):
        return f'<span class="ERR">ERR ({html.escape(str(snap["error"]))})</span>'
    return html.escape(str(snap.get('status')))


def _html_findings(findings: List[Dict[str, Any]]) -> str:
    items = []
    for finding in findings:
        severity = finding.get('severity') or 'ERR'
        items.append(
            f'<li><span class="{html.escape(severity)}">{html.escape(severity)}</span> '
            f'<code>{html.escape(str(finding.get("rule_id")))}</code>: '
            f'{html.escape(str(finding.get("description", "")))}</li>'
        )
    return f"<ul>{''.join(items)}</ul>"


def render_html(report: Dict[str, Any]) -> str:
    """
    Render a standalone HTML page: summary counts plus one row per endpoint
    with the per-role statuses and the endpoint's findings.
    """
    summary = report.get('summary') or summarize_results(report.get('results', []))
    mode = report.get('mode', 'scan')
    title = f"Authorization {'Fuzz' if mode == 'fuzz' else 'Scan'} Report"

    summary_rows = ''.join(
        f'<tr><td class="{key}">{key}</td><td>{summary.get(key, 0)}</td></tr>'
        for key in [*SEVERITY_ORDER, 'errors', 'unclassified']
    )

    role_headers = ''.join(f"<th>{role.label}</th>" for role in SCAN_ROLES) if mode == 'scan' else ''
    rows = []
    for result in report.get('results', []):
        roles = result.get('roles', {})
        status_cells = ''.join(
            f"<td>{_html_status(roles.get(role.value))}</td>" for role in SCAN_ROLES
        ) if mode == 'scan' else ''
        severity = result.get('severity') or '-'
        findings = [f for f in result.get('findings', []) if f.get('rule_id') != 'ok']
        rows.append(
            f"<tr><td>{html.escape(str(result.get('method')))} {html.escape(str(result.get('path')))}</td>"
            f"{status_cells}<td class=\"{html.escape(severity)}\">{html.escape(severity)}</td>"
            f"<td>{_html_findings(findings) if findings else '-'}</td></tr>"
        )

    if rows:
        results_html = (
            f"<table><thead><tr><th>Endpoint</th>{role_headers}<th>Severity</th><th>Findings</th></tr></thead>"
            f"<tbody>{''.join(rows)}</tbody></table>"
        )
    else:
        results_html = "<p>No authorization issues found.</p>"

    skipped = ''.join(f"<li>{html.escape(key)}</li>" for key in report.get('skipped', []))
    not_scanned = ''.join(f"<li>{html.escape(key)}</li>" for key in report.get('not_scanned', []))

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>{title}</title>
    <style>{HTML_STYLE}</style>
</head>
<body>
    <h1>{title}</h1>
    <p><strong>Target:</strong> {html.escape(str(report.get('target', '')))}<br>
    <strong>Scan ID:</strong> {html.escape(str(report.get('scan_id', '')))}<br>
    <strong>Generated:</strong> {html.escape(str(report.get('generated_at', '')))}</p>
    <h2>Summary</h2>
    <table><thead><tr><th>Severity</th><th>Endpoints</th></tr></thead><tbody>{summary_rows}</tbody></table>
    <h2>Results</h2>
    {results_html}
    {f'<h2>Skipped</h2><ul>{skipped}</ul>' if skipped else ''}
    {f'<h2>Not Scanned (cancelled)</h2><ul>{not_scanned}</ul>' if not_scanned else ''}
</body>
</html>
"""


def write_html_report(report: Dict[str, Any], output_file: str) -> str:
    path = Path(output_file)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(render_html(report))
    logger.info(f"HTML report written: {path}")
    return str(path)

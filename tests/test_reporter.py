from __future__ import annotations

import json
from pathlib import Path

import pytest

from authopsy.classifier import Classifier
from authopsy.comparator import compare
from authopsy.config import InputError
from authopsy.endpoints import Endpoint
from authopsy.findings import sort_findings
from authopsy.identities import CredentialSet, Role
from authopsy.reporter import (
    build_report,
    load_report,
    render_html,
    render_markdown,
    summarize_results,
    write_html_report,
    write_json_report,
)
from authopsy.scanner import EndpointResult, ScanOutcome

from conftest import make_snapshot


def _result(path: str, admin, user, anon) -> EndpointResult:
    endpoint = Endpoint("GET", path)
    snaps = {
        Role.ADMIN: make_snapshot(Role.ADMIN, *admin, endpoint=endpoint.key),
        Role.USER: make_snapshot(Role.USER, *user, endpoint=endpoint.key),
        Role.ANONYMOUS: make_snapshot(Role.ANONYMOUS, *anon, endpoint=endpoint.key),
    }
    facts = compare(snaps[Role.ADMIN], snaps[Role.USER], snaps[Role.ANONYMOUS])
    findings = Classifier().classify(endpoint, facts)
    return EndpointResult(endpoint=endpoint, snapshots=snaps, facts=facts, findings=findings)


def _outcome() -> ScanOutcome:
    results = [
        _result("/api/admin/users", (200, [{"id": 1}]), (200, [{"id": 1}]), (401, b"")),
        _result("/api/users", (200, {"id": 1}), (403, b""), (401, b"")),
        _result("/api/gone", (404, b"nf"), (404, b"nf"), (404, b"nf")),
    ]
    outcome = ScanOutcome(mode="scan", results=results, skipped=["GET /health"], requests_sent=9)
    outcome.findings = sort_findings([f for r in results for f in r.findings])
    return outcome


def test_summary_counts_worst_severity_per_endpoint() -> None:
    report = build_report(_outcome(), "http://api.test", CredentialSet(admin="a", user="u"))

    summary = report["summary"]
    assert summary["CRITICAL"] == 1
    assert summary["OK"] == 1
    assert summary["unclassified"] == 1
    assert summary["errors"] == 0
    assert summary["total_findings"] == 3
    assert report["stats"]["requests_sent"] == 9
    assert report["credentials"]["anon"]["has_credential"] is False
    assert report["credentials"]["user"] == {"header": "Authorization", "has_credential": True}


def test_error_endpoints_are_counted_separately() -> None:
    results = [{"severity": None, "findings": [{"rule_id": "request-error"}]}]
    assert summarize_results(results)["errors"] == 1


def test_report_round_trip(tmp_path: Path) -> None:
    report = build_report(_outcome(), "http://api.test")
    path = write_json_report(report, str(tmp_path / "out" / "report.json"))

    loaded = load_report(path)

    assert loaded["scan_id"] == report["scan_id"]
    assert loaded["findings"][0]["rule_id"] == "vertical-escalation"
    assert [r["path"] for r in loaded["results"]] == ["/api/admin/users", "/api/users", "/api/gone"]


def test_markdown_summary() -> None:
    markdown = render_markdown(build_report(_outcome(), "http://api.test"))

    assert markdown.startswith("# Authorization Scan Report")
    assert "| CRITICAL | 1 |" in markdown
    assert "| GET /api/admin/users | 200 | 200 | 401 | CRITICAL |" in markdown
    assert "vertical-escalation" in markdown
    assert "## Skipped" in markdown
    assert "- GET /health" in markdown
    # ok findings stay out of the findings table.
    assert "| OK | GET /api/users" not in markdown


def test_clean_report_says_so() -> None:
    outcome = ScanOutcome(mode="fuzz")
    markdown = render_markdown(build_report(outcome, "http://api.test"))

    assert markdown.startswith("# Authorization Fuzz Report")
    assert "No authorization issues found." in markdown
    assert "## Status Matrix" not in markdown


def test_load_report_rejects_other_files(tmp_path: Path) -> None:
    path = tmp_path / "other.json"
    path.write_text(json.dumps({"hello": "world"}), encoding="utf-8")

    with pytest.raises(InputError):
        load_report(str(path))
    with pytest.raises(FileNotFoundError):
        load_report(str(tmp_path / "missing.json"))


def test_findings_are_counted_by_severity() -> None:
    report = build_report(_outcome(), "http://api.test")

    assert report["findings_by_severity"] == {"CRITICAL": 1, "HIGH": 0, "MEDIUM": 0, "LOW": 0, "OK": 1}
    assert report["catalog_version"] is None
    assert build_report(ScanOutcome(mode="fuzz"), "http://api.test")["catalog_version"] == "1"


def test_html_report_lists_statuses_and_findings(tmp_path: Path) -> None:
    report = build_report(_outcome(), "http://api.test")
    path = write_html_report(report, str(tmp_path / "html" / "report.html"))

    page = Path(path).read_text(encoding="utf-8")
    assert page.startswith("<!DOCTYPE html>")
    assert "<title>Authorization Scan Report</title>" in page
    assert '<td class="CRITICAL">CRITICAL</td><td>1</td>' in page
    assert "<td>GET /api/admin/users</td><td>200</td><td>200</td><td>401</td>" in page
    assert "<code>vertical-escalation</code>" in page
    assert "<li>GET /health</li>" in page


def test_html_report_escapes_untrusted_text() -> None:
    report = build_report(_outcome(), "http://api.test/<script>")
    report["results"][0]["findings"][0]["description"] = "<img src=x onerror=alert(1)>"

    page = render_html(report)

    assert "<script>" not in page
    assert "<img" not in page
    assert "&lt;img src=x onerror=alert(1)&gt;" in page

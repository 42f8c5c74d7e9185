from __future__ import annotations

from typing import Any

from authopsy.classifier import Classifier, resolution_error
from authopsy.comparator import Comparator, compare
from authopsy.config import PathFilters
from authopsy.endpoints import Endpoint
from authopsy.findings import Finding, Severity, sort_findings, worst_severity
from authopsy.identities import Role
from authopsy.resolver import ResolutionError

from conftest import make_snapshot


def _classify(path: str, admin: Any, user: Any, anon: Any, filters: PathFilters = PathFilters(), **kwargs):
    """Each role argument is ``(status, body)`` or an error string."""
    snaps = []
    for role, spec in ((Role.ADMIN, admin), (Role.USER, user), (Role.ANONYMOUS, anon)):
        if isinstance(spec, str):
            snaps.append(make_snapshot(role, None, error=spec))
        else:
            status, body = spec
            snaps.append(make_snapshot(role, status, body, **kwargs))
    endpoint = Endpoint("GET", path)
    return Classifier(filters).classify(endpoint, compare(*snaps))


def _rules(findings):
    return [(f.rule_id, f.severity) for f in findings]


def test_user_reaching_admin_resource_is_vertical_escalation() -> None:
    users = [{"id": 1, "name": "a"}]
    findings = _classify("/api/admin/users", (200, users), (200, users), (401, {"error": "unauthorized"}))

    assert _rules(findings) == [("vertical-escalation", Severity.CRITICAL)]
    assert findings[0].evidence["statuses"] == {"admin": 200, "user": 200, "anon": 401}


def test_expected_pattern_yields_single_ok() -> None:
    findings = _classify("/api/users", (200, [{"id": 1}]), (403, {"error": "forbidden"}), (401, {"error": "no"}))

    assert _rules(findings) == [("ok", Severity.OK)]


def test_sensitive_field_exposed_to_user() -> None:
    findings = _classify("/api/users/1", (200, {"id": 1}), (200, {"id": 1, "password": "x"}), (401, b""))

    rules = _rules(findings)
    assert ("vertical-escalation", Severity.CRITICAL) in rules
    assert ("sensitive-field", Severity.MEDIUM) in rules
    sensitive = [f for f in findings if f.rule_id == "sensitive-field"]
    assert len(sensitive) == 1
    assert sensitive[0].evidence["field"] == "password"


def test_one_sensitive_finding_per_distinct_field() -> None:
    body = {"a": {"token": "t"}, "b": {"token": "u"}, "password": "p"}
    findings = _classify("/api/me", (200, body), (403, b""), (200, body))

    sensitive = [f.evidence["field"] for f in findings if f.rule_id == "sensitive-field"]
    assert sensitive == ["password", "token"]


def test_public_endpoint_has_no_missing_auth() -> None:
    filters = PathFilters(public_paths=frozenset({"/api/health"}))
    body = {"status": "up"}
    findings = _classify("/api/health", (200, body), (200, body), (200, body), filters=filters)

    assert "missing-auth" not in [f.rule_id for f in findings]
    assert "vertical-escalation" not in [f.rule_id for f in findings]
    assert _rules(findings) == [("ok", Severity.OK)]


def test_missing_auth_is_high_alone_and_critical_with_escalation() -> None:
    body = {"id": 1}
    alone = _classify("/api/orders", (200, body), (403, b""), (200, body))
    assert ("missing-auth", Severity.HIGH) in _rules(alone)

    both = _classify("/api/orders", (200, body), (200, body), (200, body))
    assert _rules(both) == [
        ("vertical-escalation", Severity.CRITICAL),
        ("missing-auth", Severity.CRITICAL),
    ]


def test_role_confusion_when_admin_denied_but_user_allowed() -> None:
    findings = _classify("/api/reports", (403, b""), (200, {"id": 1}), (401, b""))

    assert ("role-confusion", Severity.CRITICAL) in _rules(findings)
    assert "vertical-escalation" not in [f.rule_id for f in findings]


def test_size_anomaly_without_status_difference() -> None:
    filters = PathFilters(public_paths=frozenset({"/public/*"}))
    findings = _classify(
        "/public/feed",
        (200, b"x" * 1000),
        (200, b"x" * 100),
        (200, b"x" * 100),
        filters=filters,
        content_type="text/plain",
    )

    assert _rules(findings) == [("size-anomaly", Severity.LOW)]
    assert findings[0].evidence["size_ratio_user"] == 0.9


def test_small_size_difference_is_not_an_anomaly() -> None:
    filters = PathFilters(public_paths=frozenset({"/public"}))
    findings = _classify(
        "/public/feed",
        (200, b"x" * 100),
        (200, b"x" * 97),
        (200, b"x" * 100),
        filters=filters,
        content_type="text/plain",
    )
    assert _rules(findings) == [("ok", Severity.OK)]


def test_unmatched_pattern_is_reported_as_unclassified() -> None:
    findings = _classify("/api/things", (404, b"nf"), (404, b"nf"), (404, b"nf"), content_type="text/plain")

    assert [f.rule_id for f in findings] == ["unclassified"]
    assert findings[0].severity is None


def test_partial_error_is_inconclusive() -> None:
    findings = _classify("/api/slow", (200, {"id": 1}), "timeout", (401, b""))

    assert [f.rule_id for f in findings] == ["inconclusive"]
    assert findings[0].evidence["inconclusive_roles"] == ["user"]
    assert "timeout" in findings[0].description


def test_partial_error_still_evaluates_answering_roles() -> None:
    findings = _classify("/api/open", (200, {"id": 1}), "timeout", (200, {"id": 1}))

    assert [f.rule_id for f in findings] == ["missing-auth", "inconclusive"]


def test_all_errored_is_a_single_request_error() -> None:
    findings = _classify("/api/down", "ConnectError: refused", "ConnectError: refused", "timeout")

    assert [f.rule_id for f in findings] == ["request-error"]
    assert worst_severity(findings) is None


def test_resolution_error_finding() -> None:
    finding = resolution_error(Endpoint("GET", "/x/{}"), ResolutionError("Empty placeholder"))
    assert finding.rule_id == "resolution-error"
    assert finding.is_error
    assert finding.severity is None


def test_classify_is_deterministic() -> None:
    args = ("/api/users/1", (200, {"id": 1}), (200, {"id": 1, "secret": "s", "ssn": "1"}), (200, b"{}"))
    assert _classify(*args) == _classify(*args)


def test_sort_order_places_critical_first_and_errors_last() -> None:
    def finding(rule: str, severity):
        return Finding("GET /a", rule, severity, "", "")

    shuffled = [
        finding("inconclusive", None),
        finding("ok", Severity.OK),
        finding("size-anomaly", Severity.LOW),
        finding("missing-auth", Severity.HIGH),
        finding("sensitive-field", Severity.MEDIUM),
        finding("vertical-escalation", Severity.CRITICAL),
    ]

    ordered = [f.severity for f in sort_findings(shuffled)]
    assert ordered == [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW, Severity.OK, None]
    assert worst_severity(shuffled) is Severity.CRITICAL
    assert Severity.LOW < Severity.HIGH


def test_user_getting_more_records_is_pagination_bypass() -> None:
    admin = {"items": [{"id": 1}, {"id": 2}], "meta": {"tags": ["a"]}}
    user = {"items": [{"id": i} for i in range(50)], "meta": {"tags": ["a"]}}
    findings = _classify("/api/orders", (200, admin), (200, user), (401, b""))

    assert _rules(findings) == [
        ("vertical-escalation", Severity.CRITICAL),
        ("pagination-bypass", Severity.HIGH),
        ("size-anomaly", Severity.LOW),
    ]
    bypass = findings[1]
    assert bypass.evidence["arrays"] == [{"path": "items", "admin": 2, "user": 50}]
    assert "'items' (50 vs 2)" in bypass.description


def test_top_level_list_growth_is_reported_at_root() -> None:
    findings = _classify("/api/orders", (200, [{"id": 1}]), (200, [{"id": 1}, {"id": 2}]), (401, b""))

    bypass = [f for f in findings if f.rule_id == "pagination-bypass"]
    assert bypass[0].evidence["arrays"] == [{"path": "$", "admin": 1, "user": 2}]


def test_fewer_records_for_user_is_not_pagination_bypass() -> None:
    findings = _classify("/api/orders", (200, [{"id": 1}, {"id": 2}]), (200, [{"id": 1}]), (401, b""))

    assert "pagination-bypass" not in [f.rule_id for f in findings]


def test_ignored_fields_are_excluded_from_array_growth() -> None:
    endpoint = Endpoint("GET", "/api/orders")
    admin = make_snapshot(Role.ADMIN, 200, {"audit": [1]})
    user = make_snapshot(Role.USER, 200, {"audit": [1, 2, 3]})
    anon = make_snapshot(Role.ANONYMOUS, 401, b"")

    facts = Comparator(ignore_fields=["audit"]).compare(admin, user, anon)

    assert facts.array_growth == ()
    assert "pagination-bypass" not in [f.rule_id for f in Classifier().classify(endpoint, facts)]


def test_large_timing_gap_between_admin_and_user() -> None:
    endpoint = Endpoint("GET", "/api/reports")
    body = {"id": 1}

    def classify(admin_ms: float, user_ms: float):
        facts = compare(
            make_snapshot(Role.ADMIN, 200, body, elapsed_ms=admin_ms),
            make_snapshot(Role.USER, 200, body, elapsed_ms=user_ms),
            make_snapshot(Role.ANONYMOUS, 401, b""),
        )
        return Classifier().classify(endpoint, facts)

    slow_user = classify(150.0, 900.0)
    assert _rules(slow_user) == [
        ("vertical-escalation", Severity.CRITICAL),
        ("timing-variance", Severity.LOW),
    ]
    assert slow_user[1].evidence["elapsed_ms"] == {"admin": 150.0, "user": 900.0}

    assert "timing-variance" not in [f.rule_id for f in classify(150.0, 650.0)]
    # Fast responses are never compared.
    assert "timing-variance" not in [f.rule_id for f in classify(50.0, 900.0)]


def test_public_endpoint_skips_pagination_and_timing() -> None:
    filters = PathFilters(public_paths=frozenset({"/api/catalog"}))
    endpoint = Endpoint("GET", "/api/catalog")
    facts = compare(
        make_snapshot(Role.ADMIN, 200, [1], elapsed_ms=150.0),
        make_snapshot(Role.USER, 200, [1, 2], elapsed_ms=900.0),
        make_snapshot(Role.ANONYMOUS, 200, [1, 2]),
    )

    rules = [f.rule_id for f in Classifier(filters).classify(endpoint, facts)]
    assert "pagination-bypass" not in rules
    assert "timing-variance" not in rules

from __future__ import annotations

import pytest

from authopsy.endpoints import Endpoint
from authopsy.identities import CredentialSet, Role, SCAN_ROLES
from authopsy.probes import FuzzProbe, ProbeKind
from authopsy.resolver import RequestResolver, ResolutionError, encode_body_templates

CREDS = CredentialSet(admin="Bearer admin", user="Bearer user")


def _resolver(**kwargs) -> RequestResolver:
    return RequestResolver(base_url="https://api.test/", credentials=CREDS, **kwargs)


def test_placeholders_use_fallback_literals() -> None:
    req = _resolver().resolve(Endpoint("GET", "/orgs/{slug}/users/{userId}"), Role.USER)
    assert req.url == "https://api.test/orgs/test/users/1"


def test_override_beats_spec_default_beats_fallback() -> None:
    endpoint = Endpoint("GET", "/orgs/{org}/users/{id}", path_defaults={"org": "acme", "id": "7"})

    assert _resolver().resolve(endpoint, Role.USER).url == "https://api.test/orgs/acme/users/7"
    overridden = _resolver(overrides={"id": "42"}).resolve(endpoint, Role.USER)
    assert overridden.url == "https://api.test/orgs/acme/users/42"


def test_override_values_are_url_encoded() -> None:
    req = _resolver(overrides={"name": "a b/c"}).resolve(Endpoint("GET", "/files/{name}"), Role.USER)
    assert req.url == "https://api.test/files/a%20b%2Fc"


def test_credential_injection_per_role() -> None:
    endpoint = Endpoint("GET", "/api/users")
    resolver = _resolver()

    assert resolver.resolve(endpoint, Role.ADMIN).header_dict()["Authorization"] == "Bearer admin"
    assert resolver.resolve(endpoint, Role.USER).header_dict()["Authorization"] == "Bearer user"
    assert "Authorization" not in resolver.resolve(endpoint, Role.ANONYMOUS).header_dict()


def test_custom_anonymous_credential_is_sent() -> None:
    creds = CredentialSet(admin="a", user="u", header_name="X-Api-Key", anon="guest")
    resolver = RequestResolver(base_url="https://api.test", credentials=creds)

    headers = resolver.resolve(Endpoint("GET", "/x"), Role.ANONYMOUS).header_dict()
    assert headers["X-Api-Key"] == "guest"


def test_optional_query_params_only_with_value() -> None:
    endpoint = Endpoint(
        "GET",
        "/items",
        query_params={"page": None, "sort": "asc", "limit": None},
        required_query=frozenset({"limit"}),
    )
    req = _resolver().resolve(endpoint, Role.USER)
    assert req.url == "https://api.test/items?sort=asc&limit=test"

    req = _resolver(overrides={"page": "3"}).resolve(endpoint, Role.USER)
    assert req.url == "https://api.test/items?page=3&sort=asc&limit=test"


def test_body_is_identical_for_every_role() -> None:
    endpoint = Endpoint("POST", "/api/users")
    templates = encode_body_templates({"POST /api/users": {"name": "x", "role": "user"}})
    resolver = _resolver(body_templates=templates)

    bodies = {resolver.resolve(endpoint, role).body for role in SCAN_ROLES}
    assert bodies == {b'{"name":"x","role":"user"}'}
    assert resolver.resolve(endpoint, Role.USER).header_dict()["Content-Type"] == "application/json"


def test_body_not_attached_to_get() -> None:
    endpoint = Endpoint("GET", "/api/users", body_template=b"{}")
    req = _resolver().resolve(endpoint, Role.USER)
    assert req.body is None
    assert "Content-Type" not in req.header_dict()


@pytest.mark.parametrize("path", ["/items/{}", "/items/{id", "/items/id}"])
def test_malformed_placeholders_fail(path: str) -> None:
    with pytest.raises(ResolutionError):
        _resolver().resolve(Endpoint("GET", path), Role.USER)


def test_missing_value_fails_when_defaults_disabled() -> None:
    resolver = _resolver(allow_default_params=False)
    with pytest.raises(ResolutionError):
        resolver.resolve(Endpoint("GET", "/users/{id}"), Role.USER)

    ok = resolver.resolve(Endpoint("GET", "/users/{id}", path_defaults={"id": "5"}), Role.USER)
    assert ok.url.endswith("/users/5")


def test_invalid_json_body_template_fails() -> None:
    endpoint = Endpoint("PUT", "/api/users/1", body_template=b"{not json")
    with pytest.raises(ResolutionError):
        _resolver().resolve(endpoint, Role.USER)


def test_query_probe_is_appended_and_bare_when_empty() -> None:
    endpoint = Endpoint("GET", "/items", query_params={"debug": "false"})
    resolver = _resolver()

    debug = FuzzProbe(kind=ProbeKind.QUERY, name="debug", trigger_value="true", target_endpoint=endpoint.key)
    assert resolver.resolve(endpoint, Role.USER, debug).url == "https://api.test/items?debug=true"

    search = FuzzProbe(kind=ProbeKind.QUERY, name="q", trigger_value="", target_endpoint=endpoint.key)
    assert resolver.resolve(endpoint, Role.USER, search).url == "https://api.test/items?debug=false&q"


def test_header_probe_replaces_existing_header() -> None:
    endpoint = Endpoint("GET", "/items", headers={"X-Debug": "false"})
    probe = FuzzProbe(kind=ProbeKind.HEADER, name="x-debug", trigger_value="true")

    req = _resolver().resolve(endpoint, Role.USER, probe)
    names = [name.lower() for name, _ in req.headers]
    assert names.count("x-debug") == 1
    assert req.header_dict()["x-debug"] == "true"
    assert req.probe is probe


@pytest.mark.parametrize(
    "headers, overrides",
    [
        ({"X-Tenant": "café"}, {}),
        ({"X-Tenant": None}, {"X-Tenant": "café"}),
        ({"X-Tenant": "a\r\nX-Evil: 1"}, {}),
        ({"Bad Header": "x"}, {}),
    ],
)
def test_unsendable_headers_fail_resolution(headers, overrides) -> None:
    endpoint = Endpoint("GET", "/api/tenant", headers=headers)

    with pytest.raises(ResolutionError):
        _resolver(overrides=overrides).resolve(endpoint, Role.USER)

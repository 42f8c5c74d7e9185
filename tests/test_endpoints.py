from __future__ import annotations

import pytest

from authopsy.config import InputError
from authopsy.endpoints import Endpoint, fallback_value, parse_endpoint_list


def test_parse_endpoint_list_normalizes_and_dedupes() -> None:
    endpoints = parse_endpoint_list("get /api/users, DELETE /api/users/{id},GET /api/users")

    assert [e.key for e in endpoints] == ["GET /api/users", "DELETE /api/users/{id}"]
    assert endpoints[1].placeholders == ["id"]


@pytest.mark.parametrize(
    "text",
    ["FETCH /api/users", "GET api/users", "GET", "GET /a /b", " , "],
)
def test_parse_endpoint_list_rejects_bad_input(text: str) -> None:
    with pytest.raises(InputError):
        parse_endpoint_list(text)


def test_fallback_literal_policy() -> None:
    assert fallback_value("id") == "1"
    assert fallback_value("userId") == "1"
    assert fallback_value("item_count") == "1"
    assert fallback_value("orderNum") == "1"
    assert fallback_value("slug") == "test"
    assert fallback_value("name") == "test"


def test_endpoint_accepts_body_only_for_write_methods() -> None:
    assert Endpoint("POST", "/a").accepts_body
    assert Endpoint("PATCH", "/a").accepts_body
    assert not Endpoint("GET", "/a").accepts_body
    assert not Endpoint("DELETE", "/a").accepts_body


def test_substring_match_treats_any_id_like_name_as_integer() -> None:
    assert fallback_value("userUuid") == "1"
    assert fallback_value("uuid") == "1"
    assert fallback_value("valid") == "1"
    assert fallback_value("width") == "1"
    assert fallback_value("token") == "test"

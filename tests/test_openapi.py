from __future__ import annotations

import json
from pathlib import Path

import pytest

from authopsy.config import InputError
from authopsy.openapi import UUID_DEFAULT, load_document, parse_document, parse_spec_file, spec_base_url

V3_DOC = {
    "openapi": "3.0.0",
    "servers": [{"url": "https://api.example.com/"}],
    "paths": {
        "/users/{userId}/orgs/{orgId}/files/{fileId}": {
            "parameters": [{"name": "userId", "in": "path", "required": True, "schema": {"type": "integer"}}],
            "get": {
                "parameters": [
                    {"name": "orgId", "in": "path", "required": True, "schema": {"type": "string", "format": "uuid"}},
                    {"name": "fileId", "in": "path", "required": True, "schema": {}},
                    {"name": "limit", "in": "query", "required": True, "schema": {"type": "integer"}},
                    {"name": "verbose", "in": "query", "schema": {"type": "boolean", "default": False}},
                    {"name": "X-Tenant", "in": "header", "required": True, "schema": {"type": "string"}},
                ]
            },
        },
        "/users": {
            "post": {
                "requestBody": {
                    "content": {
                        "application/json": {"examples": {"basic": {"value": {"name": "x"}}}}
                    }
                }
            },
            "x-internal": {"ignored": True},
        },
    },
}

V2_YAML = """
swagger: "2.0"
host: api.example.com
basePath: /v2
schemes: [http]
paths:
  /pets/{petId}:
    put:
      parameters:
        - name: petId
          in: path
          required: true
          type: string
          format: uuid
        - name: body
          in: body
          schema:
            example:
              name: rex
"""


def test_v3_parameters_and_defaults() -> None:
    get_files, post_users = parse_document(V3_DOC)

    assert get_files.key == "GET /users/{userId}/orgs/{orgId}/files/{fileId}"
    assert get_files.path_defaults == {"userId": "1", "orgId": UUID_DEFAULT, "fileId": "1"}
    assert get_files.required_query == frozenset({"limit"})
    assert get_files.query_params == {"limit": None, "verbose": "false"}
    assert get_files.headers == {"X-Tenant": "test"}

    assert post_users.key == "POST /users"
    assert post_users.body_template == b'{"name":"x"}'
    assert post_users.body_content_type == "application/json"


def test_v3_server_url() -> None:
    assert spec_base_url(V3_DOC) == "https://api.example.com"
    assert spec_base_url({"openapi": "3.0.0", "servers": [{"url": "/relative"}], "paths": {}}) is None


def test_v2_yaml_file(tmp_path: Path) -> None:
    spec = tmp_path / "swagger.yaml"
    spec.write_text(V2_YAML, encoding="utf-8")

    (put_pet,) = parse_spec_file(str(spec))

    assert put_pet.method == "PUT"
    assert put_pet.path_defaults == {"petId": UUID_DEFAULT}
    assert put_pet.body_template == b'{"name":"rex"}'
    assert spec_base_url(load_document(str(spec))) == "http://api.example.com/v2"


def test_json_file_is_loaded(tmp_path: Path) -> None:
    spec = tmp_path / "openapi.json"
    spec.write_text(json.dumps(V3_DOC), encoding="utf-8")

    assert [e.method for e in parse_spec_file(str(spec))] == ["GET", "POST"]


def test_unknown_version_is_rejected() -> None:
    with pytest.raises(InputError, match="version"):
        parse_document({"paths": {}})


def test_missing_paths_is_rejected() -> None:
    with pytest.raises(InputError, match="paths"):
        parse_document({"openapi": "3.0.0"})


def test_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_document(str(tmp_path / "nope.yaml"))

    broken = tmp_path / "broken.yaml"
    broken.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(InputError):
        load_document(str(broken))

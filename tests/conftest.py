from __future__ import annotations

import json
from typing import Any, Optional

import httpx
import pytest

from authopsy.dispatcher import ResponseSnapshot
from authopsy.identities import Role


def make_snapshot(
    role: Role,
    status: Optional[int],
    body: Any = b"",
    content_type: str = "application/json",
    error: Optional[str] = None,
    endpoint: str = "GET /api/test",
    elapsed_ms: float = 1.0,
) -> ResponseSnapshot:
    if not isinstance(body, bytes):
        body = json.dumps(body).encode("utf-8")
    return ResponseSnapshot(
        endpoint_key=endpoint,
        role=role,
        status=None if error else status,
        body=b"" if error else body,
        elapsed_ms=elapsed_ms,
        content_type="" if error else content_type,
        error=error,
        snapshot_id=f"{role.value}-{status}-{len(body)}",
    )


def role_of(request: httpx.Request) -> str:
    auth = request.headers.get("Authorization")
    if auth == "Bearer admin":
        return "admin"
    if auth == "Bearer user":
        return "user"
    return "anon"


@pytest.fixture
def snapshot():
    return make_snapshot

import logging
import re
from typing import Dict, List, Optional, Mapping, FrozenSet
from dataclasses import dataclass, field

from .config import InputError

logger = logging.getLogger(__name__)

HTTP_METHODS = ('GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS')
BODY_METHODS = ('POST', 'PUT', 'PATCH')

PLACEHOLDER_RE = re.compile(r'\{([^{}]*)\}')


@dataclass(frozen=True)
class Endpoint:
    """Immutable request template shared read-only by every role and probe."""
    method: str
    path_template: str
    query_params: Mapping[str, Optional[str]] = field(default_factory=dict)
    headers: Mapping[str, Optional[str]] = field(default_factory=dict)
    body_template: Optional[bytes] = None
    path_defaults: Mapping[str, str] = field(default_factory=dict)
    required_query: FrozenSet[str] = frozenset()
    body_content_type: str = 'application/json'

    @property
    def key(self) -> str:
        return f"{self.method} {self.path_template}"

    @property
    def placeholders(self) -> List[str]:
        return PLACEHOLDER_RE.findall(self.path_template)

    @property
    def accepts_body(self) -> bool:
        return self.method in BODY_METHODS

    def display_path(self) -> str:
        return f"{self.method:6} {self.path_template}"

    def to_dict(self) -> Dict[str, object]:
        return {
            'method': self.method,
            'path': self.path_template,
            'query_params': dict(self.query_params),
            'headers': dict(self.headers),
            'path_defaults': dict(self.path_defaults),
            'has_body': self.body_template is not None
        }


def is_integer_like(name: str) -> bool:
    """Placeholder names that look numeric get the "1" fallback literal."""
    lower = name.lower()
    return 'id' in lower or 'count' in lower or 'num' in lower


def fallback_value(name: str) -> str:
    return '1' if is_integer_like(name) else 'test'


def normalize_method(method: str) -> str:
    """
    Upper-case and validate an HTTP method name.

    Raises:
        InputError: If the method is not one the scanner replays
    """
    upper = method.strip().upper()
    if upper not in HTTP_METHODS:
        raise InputError(
            f"Invalid HTTP method: '{method}'. Supported: {', '.join(HTTP_METHODS)}"
        )
    return upper


def parse_endpoint_list(text: str) -> List[Endpoint]:
    """
    Parse a manual endpoint list such as ``"GET /api/users, DELETE /api/users/{id}"``.

    Args:
        text: Comma separated ``METHOD /path`` entries

    Returns:
        List of endpoints in input order, duplicates removed

    Raises:
        InputError: If any entry is malformed or the list is empty
    """
    endpoints: List[Endpoint] = []
    seen = set()

    for part in text.split(','):
        entry = part.strip()
        if not entry:
            continue

        pieces = entry.split()
        if len(pieces) != 2:
            raise InputError(f"Invalid endpoint format: '{entry}'. Expected 'METHOD /path'")

        method = normalize_method(pieces[0])
        path = pieces[1]
        if not path.startswith('/'):
            raise InputError(f"Path must start with '/': '{path}'")

        endpoint = Endpoint(method=method, path_template=path)
        if endpoint.key in seen:
            logger.debug(f"Skipping duplicate endpoint: {endpoint.key}")
            continue
        seen.add(endpoint.key)
        endpoints.append(endpoint)

    if not endpoints:
        raise InputError("No valid endpoints found in input")

    logger.info(f"Parsed {len(endpoints)} endpoints from manual list")
    return endpoints

"""
Turns an Endpoint plus a Role (and optionally a fuzz probe) into a concrete request.
"""

import json
import logging
from typing import Dict, List, Optional, Tuple, Mapping
from urllib.parse import quote
from dataclasses import dataclass, field

from .endpoints import Endpoint, PLACEHOLDER_RE, fallback_value
from .identities import CredentialSet, Role, HEADER_NAME_RE
from .probes import FuzzProbe, ProbeKind

logger = logging.getLogger(__name__)


class ResolutionError(ValueError):
    """An endpoint could not be turned into a concrete request."""


@dataclass(frozen=True)
class ResolvedRequest:
    """Fully specified HTTP request. Never mutated after construction."""
    method: str
    url: str
    headers: Tuple[Tuple[str, str], ...]
    body: Optional[bytes]
    endpoint_key: str
    role: Role
    probe: Optional[FuzzProbe] = None

    def header_dict(self) -> Dict[str, str]:
        return dict(self.headers)

    @property
    def label(self) -> str:
        suffix = f" [{self.probe.trigger}]" if self.probe else ''
        return f"{self.endpoint_key} as {self.role.label}{suffix}"


@dataclass
class RequestResolver:
    """
    Pure, I/O-free request construction for one scan session.

    Placeholder values come from ``overrides``, then the endpoint's own defaults,
    then the fixed fallback literal ("1" for integer-looking names, "test" otherwise).
    """
    base_url: str
    credentials: CredentialSet
    overrides: Mapping[str, str] = field(default_factory=dict)
    body_templates: Mapping[str, bytes] = field(default_factory=dict)
    allow_default_params: bool = True

    def resolve(self,
                endpoint: Endpoint,
                role: Role,
                probe: Optional[FuzzProbe] = None) -> ResolvedRequest:
        """
        Build the concrete request for an endpoint under a role.

        Args:
            endpoint: Request template
            role: Identity whose credential is injected
            probe: Optional fuzz mutation adding one query parameter or header

        Returns:
            ResolvedRequest

        Raises:
            ResolutionError: If a placeholder is malformed or unresolvable, a header
                cannot be encoded, or the body template is not valid JSON
        """
        path = self._resolve_path(endpoint)
        query = self._resolve_query(endpoint, probe)
        url = self.base_url.rstrip('/') + path + query

        body = self._resolve_body(endpoint)

        headers: List[Tuple[str, str]] = [('Accept', 'application/json')]
        if body is not None:
            headers.append(('Content-Type', endpoint.body_content_type))

        for name, default in endpoint.headers.items():
            if name.lower() == self.credentials.header_name.lower():
                continue
            value = self.overrides.get(name, default)
            if value is not None:
                _check_header(endpoint, name, value)
                headers.append((name, value))

        credential = self.credentials.credential_for(role)
        if credential is not None:
            headers.append((self.credentials.header_name, credential))

        if probe is not None and probe.kind is ProbeKind.HEADER:
            headers = [(k, v) for k, v in headers if k.lower() != probe.name.lower()]
            headers.append((probe.name, probe.trigger_value))

        return ResolvedRequest(
            method=endpoint.method,
            url=url,
            headers=tuple(headers),
            body=body,
            endpoint_key=endpoint.key,
            role=role,
            probe=probe
        )

    def _resolve_path(self, endpoint: Endpoint) -> str:
        template = endpoint.path_template
        leftover = PLACEHOLDER_RE.sub('', template)
        if '{' in leftover or '}' in leftover:
            raise ResolutionError(f"Unbalanced placeholder braces in path: {template}")

        def substitute(match) -> str:
            name = match.group(1).strip()
            if not name:
                raise ResolutionError(f"Empty placeholder in path: {template}")
            if name in self.overrides:
                value = self.overrides[name]
            elif name in endpoint.path_defaults:
                value = endpoint.path_defaults[name]
            elif self.allow_default_params:
                value = fallback_value(name)
            else:
                raise ResolutionError(
                    f"No value for required path parameter '{name}' in {endpoint.key}"
                )
            return quote(value, safe='')

        return PLACEHOLDER_RE.sub(substitute, template)

    def _resolve_query(self, endpoint: Endpoint, probe: Optional[FuzzProbe]) -> str:
        pairs: List[Tuple[str, str]] = []
        for name, default in endpoint.query_params.items():
            value = self.overrides.get(name, default)
            if value is None and name in endpoint.required_query:
                value = fallback_value(name)
            if value is not None:
                pairs.append((name, value))

        if probe is not None and probe.kind is ProbeKind.QUERY:
            pairs = [(k, v) for k, v in pairs if k != probe.name]
            pairs.append((probe.name, probe.trigger_value))

        if not pairs:
            return ''

        encoded = []
        for name, value in pairs:
            if value == '':
                encoded.append(quote(name, safe=''))
            else:
                encoded.append(f"{quote(name, safe='')}={quote(value, safe='')}")
        return '?' + '&'.join(encoded)

    def _resolve_body(self, endpoint: Endpoint) -> Optional[bytes]:
        if not endpoint.accepts_body:
            return None

        body = self.body_templates.get(endpoint.key, endpoint.body_template)
        if body is None:
            return None

        if 'json' in endpoint.body_content_type.lower():
            try:
                json.loads(body.decode('utf-8'))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise ResolutionError(f"Malformed JSON body template for {endpoint.key}: {e}") from e

        return body


def encode_body_templates(bodies: Mapping[str, object]) -> Dict[str, bytes]:
    """Serialize configured JSON bodies once so every role gets identical bytes."""
    templates: Dict[str, bytes] = {}
    for key, value in bodies.items():
        if isinstance(value, bytes):
            templates[key] = value
        elif isinstance(value, str):
            templates[key] = value.encode('utf-8')
        else:
            templates[key] = json.dumps(value, separators=(',', ':'), sort_keys=True).encode('utf-8')
    return templates


def _check_header(endpoint: Endpoint, name: str, value: str):
    # httpx encodes header names and values as ASCII when building the request.
    if not HEADER_NAME_RE.match(name):
        raise ResolutionError(f"Invalid header name '{name}' in {endpoint.key}")
    if not value.isascii() or '\r' in value or '\n' in value:
        raise ResolutionError(f"Header '{name}' of {endpoint.key} has a value that cannot be sent: {value!r}")

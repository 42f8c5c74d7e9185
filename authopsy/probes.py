"""
Static, versioned catalog of authorization-bypass probes.

Probes are plain data: a kind (query parameter or header), a name and a trigger
value. Extending the catalog means adding entries, not code.
"""

import logging
from enum import Enum
from typing import Dict, List, Sequence, Tuple
from dataclasses import dataclass

logger = logging.getLogger(__name__)

CATALOG_VERSION = "1"


class ProbeKind(Enum):
    QUERY = "query"
    HEADER = "header"

    @property
    def rule_id(self) -> str:
        return 'query-bypass' if self is ProbeKind.QUERY else 'header-bypass'


BYPASS_PARAMS: Tuple[Tuple[str, str], ...] = (
    ('include_details', 'true'),
    ('show_all', 'true'),
    ('all', 'true'),
    ('admin', 'true'),
    ('debug', 'true'),
    ('test', 'true'),
    ('internal', 'true'),
    ('full', 'true'),
    ('verbose', 'true'),
    ('expand', 'true'),
    ('include_private', 'true'),
    ('include_sensitive', 'true'),
    ('include_deleted', 'true'),
    ('show_hidden', 'true'),
    ('bypass', 'true'),
    ('override', 'true'),
    ('force', 'true'),
    ('raw', 'true'),
    ('detailed', 'true'),
    ('extended', 'true'),
)

SEARCH_PARAMS: Tuple[Tuple[str, str], ...] = (
    ('q', ''),
    ('query', ''),
    ('search', ''),
    ('filter', ''),
    ('keyword', ''),
    ('term', ''),
)

PAGINATION_PARAMS: Tuple[Tuple[str, str], ...] = (
    ('limit', '10000'),
    ('page_size', '10000'),
    ('per_page', '10000'),
    ('count', '10000'),
    ('size', '10000'),
    ('offset', '0'),
    ('skip', '0'),
)

DEBUG_HEADERS: Tuple[Tuple[str, str], ...] = (
    ('X-Debug', 'true'),
    ('X-Debug-Mode', 'true'),
    ('Debug', 'true'),
    ('X-Test', 'true'),
    ('X-Internal', 'true'),
)

ADMIN_HEADERS: Tuple[Tuple[str, str], ...] = (
    ('X-Admin', 'true'),
    ('X-Is-Admin', 'true'),
    ('X-Role', 'admin'),
    ('X-User-Role', 'admin'),
    ('X-Privilege', 'admin'),
    ('X-Access-Level', 'admin'),
)

IP_SPOOF_HEADERS: Tuple[Tuple[str, str], ...] = (
    ('X-Forwarded-For', '127.0.0.1'),
    ('X-Real-IP', '127.0.0.1'),
    ('X-Client-IP', '127.0.0.1'),
    ('X-Originating-IP', '127.0.0.1'),
    ('CF-Connecting-IP', '127.0.0.1'),
    ('True-Client-IP', '127.0.0.1'),
    ('X-Forwarded-Host', 'localhost'),
)

URL_OVERRIDE_HEADERS: Tuple[Tuple[str, str], ...] = (
    ('X-Original-URL', '/admin'),
    ('X-Rewrite-URL', '/admin'),
    ('X-Override-URL', '/admin'),
)

CUSTOM_HEADERS: Tuple[Tuple[str, str], ...] = (
    ('X-Custom-IP-Authorization', '127.0.0.1'),
    ('X-Bypass-Cache', 'true'),
    ('X-HTTP-Method-Override', 'GET'),
)


@dataclass(frozen=True)
class ProbeTemplate:
    """Catalog entry, independent of any endpoint."""
    kind: ProbeKind
    name: str
    trigger_value: str

    @property
    def trigger(self) -> str:
        if self.kind is ProbeKind.HEADER:
            return f"{self.name}: {self.trigger_value}"
        if self.trigger_value == '':
            return self.name
        return f"{self.name}={self.trigger_value}"


@dataclass(frozen=True)
class FuzzProbe(ProbeTemplate):
    """A catalog entry instantiated for one target endpoint."""
    target_endpoint: str = ''

    def to_dict(self) -> Dict[str, str]:
        return {
            'kind': self.kind.value,
            'name': self.name,
            'trigger_value': self.trigger_value,
            'trigger': self.trigger,
            'target_endpoint': self.target_endpoint
        }


def _entries(kind: ProbeKind, pairs: Sequence[Tuple[str, str]]) -> List[ProbeTemplate]:
    return [ProbeTemplate(kind=kind, name=name, trigger_value=value) for name, value in pairs]


def default_catalog() -> List[ProbeTemplate]:
    """Query-parameter probes first, then header probes, in catalog order."""
    catalog: List[ProbeTemplate] = []
    catalog.extend(_entries(ProbeKind.QUERY, BYPASS_PARAMS))
    catalog.extend(_entries(ProbeKind.QUERY, SEARCH_PARAMS))
    catalog.extend(_entries(ProbeKind.QUERY, PAGINATION_PARAMS))
    catalog.extend(_entries(ProbeKind.HEADER, DEBUG_HEADERS))
    catalog.extend(_entries(ProbeKind.HEADER, ADMIN_HEADERS))
    catalog.extend(_entries(ProbeKind.HEADER, IP_SPOOF_HEADERS))
    catalog.extend(_entries(ProbeKind.HEADER, URL_OVERRIDE_HEADERS))
    catalog.extend(_entries(ProbeKind.HEADER, CUSTOM_HEADERS))
    return catalog


def generate_probes(endpoint_key: str, catalog: Sequence[ProbeTemplate]) -> List[FuzzProbe]:
    """
    Instantiate every catalog entry for one endpoint.

    Args:
        endpoint_key: ``"METHOD /path"`` of the target endpoint
        catalog: Probe templates, usually ``default_catalog()``

    Returns:
        One FuzzProbe per catalog entry, same order
    """
    probes = [
        FuzzProbe(
            kind=template.kind,
            name=template.name,
            trigger_value=template.trigger_value,
            target_endpoint=endpoint_key
        )
        for template in catalog
    ]
    logger.debug(f"Generated {len(probes)} probes for {endpoint_key}")
    return probes

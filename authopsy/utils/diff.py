"""
Structural diffing and sensitive-field matching for JSON bodies
"""

import json
import re
import logging
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Set, Tuple
from deepdiff import DeepDiff

logger = logging.getLogger(__name__)

SENSITIVE_FIELD_PATTERNS: Tuple[str, ...] = (
    r'password',
    r'secret',
    r'token',
    r'api[_-]?key',
    r'private',
    r'internal',
    r'admin',
    r'ssn',
    r'credit[_-]?card',
    r'cvv',
    r'routing[_-]?number',
    r'account[_-]?number',
)

_INDEX_SUFFIX_RE = re.compile(r'(\[\d+\])+$')

_NOT_JSON = object()


def compile_sensitivity_catalog(extra: Sequence[str] = ()) -> List[Pattern[str]]:
    """Case-insensitive patterns for the built-in catalog plus configured additions."""
    return [re.compile(p, re.IGNORECASE) for p in (*SENSITIVE_FIELD_PATTERNS, *extra)]


DEFAULT_CATALOG = compile_sensitivity_catalog()


def parse_json_body(body: bytes) -> Any:
    """
    Decode a response body as JSON.

    Returns:
        The decoded document, or the module sentinel ``_NOT_JSON`` when decoding fails
    """
    if not body.strip():
        return _NOT_JSON
    try:
        return json.loads(body.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.debug(f"Body is not valid JSON: {e}")
        return _NOT_JSON


def is_json_document(value: Any) -> bool:
    return value is not _NOT_JSON


def flatten_key_paths(value: Any, prefix: str = '') -> Set[str]:
    """
    Walk a JSON document into dotted key paths.

    Object keys are joined with ``.`` and array elements appear as ``[i]``, so
    ``{"items": [{"id": 1}]}`` yields ``items``, ``items[0]`` and ``items[0].id``.
    """
    paths: Set[str] = set()
    _walk(value, prefix, paths)
    return paths


def _walk(value: Any, prefix: str, paths: Set[str]):
    if isinstance(value, dict):
        for key, child in value.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            paths.add(path)
            _walk(child, path, paths)
    elif isinstance(value, list):
        for index, child in enumerate(value):
            path = f"{prefix}[{index}]"
            paths.add(path)
            _walk(child, path, paths)


def array_lengths(value: Any) -> Dict[str, int]:
    """
    Length of every array in a JSON document, keyed by key path.

    A top-level array is keyed ``''``. Arrays nested inside an array are only
    followed through its first element, so ``{"items": [{"tags": [1, 2]}]}``
    yields ``{"items": 1, "items[0].tags": 2}``.
    """
    lengths: Dict[str, int] = {}
    _walk_arrays(value, '', lengths)
    return lengths


def _walk_arrays(value: Any, prefix: str, lengths: Dict[str, int]):
    if isinstance(value, dict):
        for key, child in value.items():
            _walk_arrays(child, f"{prefix}.{key}" if prefix else str(key), lengths)
    elif isinstance(value, list):
        lengths[prefix] = len(value)
        if value:
            _walk_arrays(value[0], f"{prefix}[0]", lengths)


def leaf_name(path: str) -> str:
    """``user.profile.api_key`` -> ``api_key``; ``tokens[3]`` -> ``tokens``."""
    trimmed = _INDEX_SUFFIX_RE.sub('', path)
    return trimmed.rsplit('.', 1)[-1]


def filter_ignored(paths: Iterable[str], ignore_patterns: Sequence[str]) -> Set[str]:
    if not ignore_patterns:
        return set(paths)
    return {p for p in paths if not any(pattern in p for pattern in ignore_patterns)}


def find_sensitive_paths(paths: Iterable[str],
                         catalog: Sequence[Pattern[str]] = DEFAULT_CATALOG) -> List[str]:
    """Key paths whose leaf name matches the sensitivity catalog, sorted."""
    hits = []
    for path in paths:
        name = leaf_name(path)
        if name and any(pattern.search(name) for pattern in catalog):
            hits.append(path)
    return sorted(hits)


def length_diff_ratio(baseline: int, other: int) -> float:
    """Relative size difference ``|a - b| / max(a, b)``; 0.0 when both are empty."""
    if baseline == 0 and other == 0:
        return 0.0
    return abs(baseline - other) / max(baseline, other)


def summarize_json_diff(original: Any, modified: Any) -> Optional[str]:
    """
    Human-readable summary of value-level differences, or None if identical.
    """
    diff = DeepDiff(original, modified, ignore_order=True)

    if not diff:
        return None

    changes = []

    if 'values_changed' in diff:
        changes.append(f"{len(diff['values_changed'])} values changed")
    if 'type_changes' in diff:
        changes.append(f"{len(diff['type_changes'])} types changed")
    if 'dictionary_item_added' in diff:
        changes.append(f"{len(diff['dictionary_item_added'])} items added")
    if 'dictionary_item_removed' in diff:
        changes.append(f"{len(diff['dictionary_item_removed'])} items removed")
    if 'iterable_item_added' in diff:
        changes.append("list items added")
    if 'iterable_item_removed' in diff:
        changes.append("list items removed")

    return '; '.join(changes) if changes else 'structural changes detected'

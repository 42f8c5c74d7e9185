"""
OpenAPI 3 / Swagger 2 document parsing into Endpoints
"""

import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List, Tuple

import yaml

from .config import InputError
from .endpoints import Endpoint, HTTP_METHODS, fallback_value

logger = logging.getLogger(__name__)

UUID_DEFAULT = '00000000-0000-0000-0000-000000000001'


def load_document(spec_path: str) -> Dict[str, Any]:
    """
    Read an OpenAPI document from a JSON or YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        InputError: If the file cannot be parsed or is not a mapping
    """
    spec_file = Path(spec_path)
    if not spec_file.exists():
        raise FileNotFoundError(f"OpenAPI spec not found: {spec_path}")

    text = spec_file.read_text(encoding='utf-8')
    try:
        if text.lstrip().startswith('{'):
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise InputError(f"Failed to parse OpenAPI spec {spec_path}: {e}") from e

    if not isinstance(data, dict):
        raise InputError(f"OpenAPI spec must be a mapping: {spec_path}")
    return data


def detect_version(document: Dict[str, Any]) -> str:
    if 'openapi' in document:
        return 'v3'
    if 'swagger' in document:
        return 'v2'
    raise InputError("Unknown OpenAPI/Swagger version: expected an 'openapi' or 'swagger' key")


def spec_base_url(document: Dict[str, Any]) -> Optional[str]:
    """Server URL declared by the document, if it is absolute."""
    if detect_version(document) == 'v3':
        servers = document.get('servers') or []
        if servers and isinstance(servers[0], dict):
            url = str(servers[0].get('url', ''))
            if url.startswith(('http://', 'https://')):
                return url.rstrip('/')
        return None

    host = document.get('host')
    if not host:
        return None
    schemes = document.get('schemes') or ['https']
    return f"{schemes[0]}://{host}{document.get('basePath', '')}".rstrip('/')


def parse_document(document: Dict[str, Any]) -> List[Endpoint]:
    """
    Convert a loaded OpenAPI document into Endpoints.

    Args:
        document: Parsed OpenAPI v3 or Swagger v2 mapping

    Returns:
        Endpoints in document order

    Raises:
        InputError: On an unknown version or a missing ``paths`` object
    """
    version = detect_version(document)
    paths = document.get('paths')
    if not isinstance(paths, dict):
        raise InputError(f"No 'paths' object found in {version} spec")

    endpoints: List[Endpoint] = []
    for path, operations in paths.items():
        if not isinstance(operations, dict):
            continue

        shared = operations.get('parameters') or []
        for method_name, operation in operations.items():
            method = method_name.upper()
            if method not in HTTP_METHODS or not isinstance(operation, dict):
                continue

            params = _merge_parameters(shared, operation.get('parameters') or [])
            endpoints.append(_build_endpoint(version, method, path, params, operation))

    logger.info(f"Parsed {len(endpoints)} endpoints from OpenAPI {version} spec")
    return endpoints


def parse_spec_file(spec_path: str) -> List[Endpoint]:
    return parse_document(load_document(spec_path))


def _merge_parameters(shared: List[Any], own: List[Any]) -> List[Dict[str, Any]]:
    # Operation parameters override path-level ones with the same name and location.
    merged: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for param in [*shared, *own]:
        if isinstance(param, dict) and 'name' in param:
            merged[(param.get('in', ''), param['name'])] = param
    return list(merged.values())


def _build_endpoint(version: str,
                    method: str,
                    path: str,
                    params: List[Dict[str, Any]],
                    operation: Dict[str, Any]) -> Endpoint:
    path_defaults: Dict[str, str] = {}
    query_params: Dict[str, Optional[str]] = {}
    headers: Dict[str, Optional[str]] = {}
    required_query = set()
    body: Optional[bytes] = None
    content_type = 'application/json'

    for param in params:
        location = param.get('in')
        name = str(param['name'])
        schema = param.get('schema', {}) if version == 'v3' else param

        if location == 'path':
            if '{' + name + '}' in path:
                path_defaults[name] = _typed_default(schema, param)
        elif location == 'query':
            query_params[name] = _declared_default(schema, param)
            if param.get('required'):
                required_query.add(name)
        elif location == 'header':
            value = _declared_default(schema, param)
            if value is None and param.get('required'):
                value = fallback_value(name)
            headers[name] = value
        elif location == 'body' and version == 'v2':
            body = _encode_example(param.get('schema', {}).get('example'), content_type)

    if version == 'v3' and isinstance(operation.get('requestBody'), dict):
        content_type, example = _request_body_example(operation['requestBody'])
        body = _encode_example(example, content_type)

    return Endpoint(
        method=method,
        path_template=path,
        query_params=query_params,
        headers=headers,
        body_template=body,
        path_defaults=path_defaults,
        required_query=frozenset(required_query),
        body_content_type=content_type
    )


def _declared_default(schema: Dict[str, Any], param: Dict[str, Any]) -> Optional[str]:
    for source in (param, schema):
        for key in ('example', 'default'):
            if key in source and source[key] is not None:
                return _literal(source[key])
    return None


def _typed_default(schema: Dict[str, Any], param: Dict[str, Any]) -> str:
    declared = _declared_default(schema, param)
    if declared is not None:
        return declared

    param_type = schema.get('type', '')
    if param_type in ('integer', 'number'):
        return '1'
    if param_type == 'string' and schema.get('format') == 'uuid':
        return UUID_DEFAULT
    if param_type == 'boolean':
        return 'true'
    return fallback_value(str(param['name']))


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def _request_body_example(request_body: Dict[str, Any]) -> Tuple[str, Any]:
    content = request_body.get('content') or {}
    if not isinstance(content, dict) or not content:
        return 'application/json', None

    media_type = 'application/json' if 'application/json' in content else next(iter(content))
    media = content.get(media_type) or {}

    if 'example' in media:
        return media_type, media['example']
    examples = media.get('examples')
    if isinstance(examples, dict):
        for example in examples.values():
            if isinstance(example, dict) and 'value' in example:
                return media_type, example['value']
    schema = media.get('schema') or {}
    return media_type, schema.get('example')


def _encode_example(example: Any, content_type: str) -> Optional[bytes]:
    if example is None:
        return None
    if 'json' in content_type.lower():
        return json.dumps(example, separators=(',', ':'), sort_keys=True).encode('utf-8')
    return str(example).encode('utf-8')

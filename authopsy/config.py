import json
import logging
import fnmatch
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_SCAN_CONCURRENCY = 50
DEFAULT_FUZZ_CONCURRENCY = 20
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_SIZE_THRESHOLD = 0.05
DEFAULT_MAX_BODY_BYTES = 1024 * 1024


class InputError(ValueError):
    """Session-fatal input problem, raised before any request is dispatched."""


@dataclass(frozen=True)
class PathFilters:
    """Paths excluded from the scan and paths that are intentionally public."""
    skip_paths: frozenset = frozenset()
    public_paths: frozenset = frozenset()

    def is_skipped(self, path: str) -> bool:
        return any(path_matches(path, pattern) for pattern in self.skip_paths)

    def is_public(self, path: str) -> bool:
        return any(path_matches(path, pattern) for pattern in self.public_paths)


@dataclass
class CredentialConfig:
    """Raw credential values as read from the config file or command line."""
    admin: Optional[str] = None
    user: Optional[str] = None
    anon: Optional[str] = None
    header_name: str = 'Authorization'


@dataclass
class OptionsConfig:
    """General scanning options."""
    follow_redirects: bool = False
    verify_ssl: bool = True
    concurrency: Optional[int] = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    size_threshold: float = DEFAULT_SIZE_THRESHOLD
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    allow_default_params: bool = True


@dataclass
class OutputConfig:
    """Output configuration."""
    output_file: Optional[str] = None
    markdown_file: Optional[str] = None
    html_file: Optional[str] = None
    evidence_dir: Optional[str] = None


@dataclass
class ScanConfig:
    """Complete scan configuration."""
    base_url: str = ''
    spec_file: Optional[str] = None
    endpoints: Optional[str] = None
    credentials: CredentialConfig = field(default_factory=CredentialConfig)
    filters: PathFilters = field(default_factory=PathFilters)
    params: Dict[str, str] = field(default_factory=dict)
    bodies: Dict[str, Any] = field(default_factory=dict)
    ignore_fields: List[str] = field(default_factory=list)
    sensitive_fields: List[str] = field(default_factory=list)
    options: OptionsConfig = field(default_factory=OptionsConfig)
    output: OutputConfig = field(default_factory=OutputConfig)


def path_matches(path: str, pattern: str) -> bool:
    """Exact, prefix, or (for patterns containing ``*``) glob match."""
    if not pattern:
        return False
    if '*' in pattern:
        return fnmatch.fnmatchcase(path, pattern)
    return path == pattern or path.startswith(pattern)


def split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def parse_params(value: Optional[str]) -> Dict[str, str]:
    """
    Parse ``name=value,other=value`` path/query overrides.

    Raises:
        InputError: If an entry has no ``=``
    """
    params: Dict[str, str] = {}
    for item in split_list(value):
        if '=' not in item:
            raise InputError(f"Invalid parameter override '{item}'. Expected name=value")
        name, literal = item.split('=', 1)
        name = name.strip()
        if not name:
            raise InputError(f"Invalid parameter override '{item}'. Name is empty")
        params[name] = literal.strip()
    return params


def load_bodies(bodies_path: str) -> Dict[str, Any]:
    """
    Load request body templates from a JSON file mapping ``"METHOD /path"`` to a body.

    Raises:
        FileNotFoundError: If the file doesn't exist
        InputError: If the file is not a JSON object
    """
    bodies_file = Path(bodies_path)
    if not bodies_file.exists():
        raise FileNotFoundError(f"Bodies file not found: {bodies_path}")

    try:
        with open(bodies_file, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise InputError(f"Invalid JSON in bodies file {bodies_path}: {e}") from e

    if not isinstance(data, dict):
        raise InputError("Bodies file must contain a JSON object keyed by 'METHOD /path'")

    return {' '.join(key.split()): value for key, value in data.items()}


def _section(data: Dict[str, Any], name: str, errors: List[str]) -> Dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        errors.append(f"'{name}' must be an object")
        return {}
    return value


def _typed(section: Dict[str, Any], key: str, kinds, default, errors: List[str], where: str = ''):
    """Return ``section[key]`` if it has one of ``kinds``, else record an error and use the default."""
    if key not in section or (section[key] is None and default is None):
        return default
    value = section[key]
    # bool is an int subclass; only accept it where a bool is asked for.
    if isinstance(value, bool) and bool not in kinds:
        ok = False
    else:
        ok = isinstance(value, kinds)
    if not ok:
        names = ' or '.join(k.__name__ for k in kinds)
        errors.append(f"'{where}{key}' must be {names}, got {type(value).__name__}: {value!r}")
        return default
    return value


def _string_list(section: Dict[str, Any], key: str, errors: List[str], where: str = '') -> List[str]:
    value = section.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        errors.append(f"'{where}{key}' must be a list of strings")
        return []
    return value


def load_config(config_path: str) -> ScanConfig:
    """
    Load configuration from JSON file.

    Every value is type checked; all problems are reported together.

    Args:
        config_path: Path to the configuration JSON file

    Returns:
        ScanConfig object with parsed configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        InputError: If config file is invalid JSON or has the wrong shape
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")

    try:
        with open(config_file, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in configuration file: {e}")
        raise InputError(f"Invalid JSON in configuration file: {e}") from e

    if not isinstance(data, dict):
        raise InputError("Configuration file must contain a JSON object")

    errors: List[str] = []

    creds_data = _section(data, 'credentials', errors)
    credentials = CredentialConfig(
        admin=_typed(creds_data, 'admin', (str,), None, errors, 'credentials.'),
        user=_typed(creds_data, 'user', (str,), None, errors, 'credentials.'),
        anon=_typed(creds_data, 'anon', (str,), None, errors, 'credentials.'),
        header_name=_typed(creds_data, 'header_name', (str,), 'Authorization', errors, 'credentials.')
    )

    paths_data = _section(data, 'paths', errors)
    filters = PathFilters(
        skip_paths=frozenset(_string_list(paths_data, 'skip', errors, 'paths.')),
        public_paths=frozenset(_string_list(paths_data, 'public', errors, 'paths.'))
    )

    options_data = _section(data, 'options', errors)
    number = (int, float)
    options = OptionsConfig(
        follow_redirects=_typed(options_data, 'follow_redirects', (bool,), False, errors, 'options.'),
        verify_ssl=_typed(options_data, 'verify_ssl', (bool,), True, errors, 'options.'),
        concurrency=_typed(options_data, 'concurrency', (int,), None, errors, 'options.'),
        timeout_seconds=_typed(options_data, 'timeout_seconds', number, DEFAULT_TIMEOUT_SECONDS, errors, 'options.'),
        size_threshold=_typed(options_data, 'size_threshold', number, DEFAULT_SIZE_THRESHOLD, errors, 'options.'),
        max_body_bytes=_typed(options_data, 'max_body_bytes', (int,), DEFAULT_MAX_BODY_BYTES, errors, 'options.'),
        allow_default_params=_typed(options_data, 'allow_default_params', (bool,), True, errors, 'options.')
    )

    output_data = _section(data, 'output', errors)
    output = OutputConfig(
        output_file=_typed(output_data, 'output_file', (str,), None, errors, 'output.'),
        markdown_file=_typed(output_data, 'markdown_file', (str,), None, errors, 'output.'),
        html_file=_typed(output_data, 'html_file', (str,), None, errors, 'output.'),
        evidence_dir=_typed(output_data, 'evidence_dir', (str,), None, errors, 'output.')
    )

    params_data = _section(data, 'params', errors)

    config = ScanConfig(
        base_url=_typed(data, 'base_url', (str,), '', errors),
        spec_file=_typed(data, 'spec', (str,), None, errors),
        endpoints=_typed(data, 'endpoints', (str,), None, errors),
        credentials=credentials,
        filters=filters,
        params={str(k): str(v) for k, v in params_data.items()},
        bodies=_section(data, 'bodies', errors),
        ignore_fields=_string_list(data, 'ignore_fields', errors),
        sensitive_fields=_string_list(data, 'sensitive_fields', errors),
        options=options,
        output=output
    )

    if errors:
        error_message = f"Invalid configuration file {config_path}:\n" + "\n".join(f"- {error}" for error in errors)
        logger.error(error_message)
        raise InputError(error_message)

    logger.info(f"Successfully loaded configuration for target: {config.base_url or '<unset>'}")
    return config


def validate_config(config: ScanConfig, mode: str = 'scan') -> bool:
    """
    Validate configuration for common issues.

    Args:
        config: Configuration to validate
        mode: ``scan`` needs admin and user credentials, ``fuzz`` only user

    Returns:
        True if configuration is valid

    Raises:
        InputError: If configuration has validation errors
    """
    errors = []

    if not config.base_url:
        errors.append("A target base URL must be specified")
    elif not config.base_url.startswith(('http://', 'https://')):
        errors.append(f"Base URL must start with http:// or https://: {config.base_url}")

    if not config.spec_file and not config.endpoints:
        errors.append("Either an OpenAPI spec or an endpoint list must be specified")

    if mode == 'scan' and not config.credentials.admin:
        errors.append("Admin credential is required for scan")
    if not config.credentials.user:
        errors.append("User credential is required")

    if config.options.concurrency is not None and config.options.concurrency <= 0:
        errors.append("concurrency must be positive")

    if config.options.timeout_seconds <= 0:
        errors.append("timeout_seconds must be positive")

    if not 0 <= config.options.size_threshold < 1:
        errors.append("size_threshold must be between 0 and 1")

    if config.options.max_body_bytes <= 0:
        errors.append("max_body_bytes must be positive")

    if errors:
        error_message = "Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors)
        logger.error(error_message)
        raise InputError(error_message)

    return True

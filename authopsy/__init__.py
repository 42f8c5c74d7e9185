"""
Authopsy - differential authorization scanner for REST APIs.

Replays every endpoint as Admin, User and Anonymous, compares the responses and
classifies authorization defects. A fuzz mode probes the User role with
client-supplied hints (query flags, debug and spoofing headers) to find bypasses.
"""

__version__ = "0.1.0"

from .config import ScanConfig, PathFilters, InputError, load_config, validate_config
from .endpoints import Endpoint, parse_endpoint_list
from .identities import Role, CredentialSet, build_credentials
from .resolver import RequestResolver, ResolvedRequest, ResolutionError
from .dispatcher import Dispatcher, ResponseSnapshot
from .comparator import Comparator, ComparisonFacts
from .findings import Finding, Severity, FindingsCollector
from .classifier import Classifier
from .probes import FuzzProbe, ProbeKind, default_catalog
from .fuzzer import ProbeEvaluator, FuzzEndpointResult
from .scanner import ScanContext, ScanOutcome, EndpointResult, run_scan, run_fuzz
from .openapi import parse_spec_file
from .evidence import EvidenceStore

__all__ = [
    'ScanConfig',
    'PathFilters',
    'InputError',
    'load_config',
    'validate_config',
    'Endpoint',
    'parse_endpoint_list',
    'Role',
    'CredentialSet',
    'build_credentials',
    'RequestResolver',
    'ResolvedRequest',
    'ResolutionError',
    'Dispatcher',
    'ResponseSnapshot',
    'Comparator',
    'ComparisonFacts',
    'Finding',
    'Severity',
    'FindingsCollector',
    'Classifier',
    'FuzzProbe',
    'ProbeKind',
    'default_catalog',
    'ProbeEvaluator',
    'FuzzEndpointResult',
    'ScanContext',
    'ScanOutcome',
    'EndpointResult',
    'run_scan',
    'run_fuzz',
    'parse_spec_file',
    'EvidenceStore'
]

"""
Scan and fuzz sessions.

A session owns one HttpSession, one Dispatcher and one FindingsCollector. Every
endpoint runs as its own task; the dispatcher's admission gate is the only
bound on concurrency, so endpoints interleave freely while no more than the
configured number of requests are ever in flight.
"""

import asyncio
import logging
import uuid
from typing import Dict, Any, Optional, List, Mapping, Sequence, Tuple, Union
from dataclasses import dataclass, field
import httpx

from .classifier import Classifier, resolution_error
from .comparator import Comparator, ComparisonFacts
from .config import (
    OptionsConfig,
    PathFilters,
    DEFAULT_FUZZ_CONCURRENCY,
    DEFAULT_SCAN_CONCURRENCY,
    DEFAULT_TIMEOUT_SECONDS,
)
from .dispatcher import Dispatcher, ResponseSnapshot, CANCELLED
from .endpoints import Endpoint
from .evidence import EvidenceStore
from .findings import Finding, FindingsCollector, Severity, UNCLASSIFIED, sort_findings, worst_severity
from .fuzzer import FuzzEndpointResult, ProbeEvaluator
from .identities import CredentialSet, Role, SCAN_ROLES
from .probes import ProbeTemplate, default_catalog, generate_probes
from .resolver import RequestResolver, ResolutionError, ResolvedRequest
from .utils.http import HttpSession

logger = logging.getLogger(__name__)


@dataclass
class EndpointResult:
    """Snapshots, facts and findings for one scanned endpoint."""
    endpoint: Endpoint
    snapshots: Dict[Role, ResponseSnapshot] = field(default_factory=dict)
    facts: Optional[ComparisonFacts] = None
    findings: List[Finding] = field(default_factory=list)

    @property
    def severity(self) -> Optional[Severity]:
        return worst_severity(self.findings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.endpoint.method,
            'path': self.endpoint.path_template,
            'roles': {role.value: snap.to_dict() for role, snap in self.snapshots.items()},
            'severity': self.severity.value if self.severity else None,
            'findings': [f.to_dict() for f in self.findings],
            'facts': self.facts.to_dict() if self.facts else None
        }


AnyResult = Union[EndpointResult, FuzzEndpointResult]


@dataclass
class ScanOutcome:
    """Everything a session produced, ready for reporting."""
    mode: str
    scan_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    results: List[AnyResult] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    not_scanned: List[str] = field(default_factory=list)
    cancelled: bool = False
    requests_sent: int = 0
    request_errors: int = 0
    max_in_flight: int = 0

    def stats(self) -> Dict[str, Any]:
        return {
            'endpoints_scanned': len(self.results),
            'endpoints_skipped': len(self.skipped),
            'endpoints_not_scanned': len(self.not_scanned),
            'requests_sent': self.requests_sent,
            'request_errors': self.request_errors,
            'max_in_flight': self.max_in_flight,
            'cancelled': self.cancelled
        }


@dataclass
class ScanContext:
    """Session state handed explicitly to every per-endpoint task."""
    resolver: RequestResolver
    dispatcher: Dispatcher
    collector: FindingsCollector
    comparator: Optional[Comparator] = None
    classifier: Optional[Classifier] = None
    evaluator: Optional[ProbeEvaluator] = None
    catalog: Sequence[ProbeTemplate] = ()
    evidence: Optional[EvidenceStore] = None
    evidence_entries: List[Dict[str, str]] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.dispatcher.cancelled

    async def record_evidence(self, requests: Sequence[ResolvedRequest], snapshots: Sequence[ResponseSnapshot]):
        """Store exchanges on a worker thread so file writes never block the event loop."""
        if self.evidence is None:
            return
        for request, snapshot in zip(requests, snapshots):
            if snapshot.error == CANCELLED:
                continue
            entry = await asyncio.to_thread(self.evidence.store_exchange, request, snapshot)
            self.evidence_entries.append(entry)


def _all_cancelled(snapshots: Sequence[ResponseSnapshot]) -> bool:
    return all(snap.error == CANCELLED for snap in snapshots)


def apply_filters(endpoints: Sequence[Endpoint], filters: PathFilters) -> Tuple[List[Endpoint], List[str]]:
    """Split endpoints into those to scan and the keys of skipped ones."""
    kept, skipped = [], []
    for endpoint in endpoints:
        if filters.is_skipped(endpoint.path_template):
            logger.info(f"Skipping {endpoint.key} (matches skip paths)")
            skipped.append(endpoint.key)
        else:
            kept.append(endpoint)
    return kept, skipped


async def scan_endpoint(ctx: ScanContext, endpoint: Endpoint) -> Optional[EndpointResult]:
    """
    Replay one endpoint as Admin, User and Anonymous, then compare and classify.

    Returns:
        EndpointResult, or None when cancellation prevented every request
    """
    try:
        requests = [ctx.resolver.resolve(endpoint, role) for role in SCAN_ROLES]
    except ResolutionError as e:
        logger.warning(f"Cannot resolve {endpoint.key}: {e}")
        findings = [resolution_error(endpoint, e)]
        ctx.collector.extend(findings)
        return EndpointResult(endpoint=endpoint, findings=findings)

    snapshots = await ctx.dispatcher.dispatch(requests)
    if _all_cancelled(snapshots):
        return None

    await ctx.record_evidence(requests, snapshots)

    # All three snapshots exist here, errored or not.
    by_role = dict(zip(SCAN_ROLES, snapshots))
    facts = ctx.comparator.compare(by_role[Role.ADMIN], by_role[Role.USER], by_role[Role.ANONYMOUS])
    findings = ctx.classifier.classify(endpoint, facts)
    ctx.collector.extend(findings)

    result = EndpointResult(endpoint=endpoint, snapshots=by_role, facts=facts, findings=findings)
    logger.info(
        f"{endpoint.key}: {facts.admin_status}/{facts.user_status}/{facts.anon_status} -> "
        f"{result.severity.value if result.severity else ', '.join(f.rule_id for f in findings)}"
    )
    return result


async def fuzz_endpoint(ctx: ScanContext, endpoint: Endpoint) -> Optional[FuzzEndpointResult]:
    """
    Send the User baseline once plus one request per catalog probe, then evaluate.

    Returns:
        FuzzEndpointResult, or None when cancellation prevented every request
    """
    probes = generate_probes(endpoint.key, ctx.catalog)
    try:
        baseline_request = ctx.resolver.resolve(endpoint, Role.USER)
        probe_requests = [ctx.resolver.resolve(endpoint, Role.USER, probe) for probe in probes]
    except ResolutionError as e:
        logger.warning(f"Cannot resolve {endpoint.key}: {e}")
        findings = [resolution_error(endpoint, e)]
        ctx.collector.extend(findings)
        return FuzzEndpointResult(endpoint=endpoint, baseline=None, findings=findings)

    requests = [baseline_request, *probe_requests]
    snapshots = await ctx.dispatcher.dispatch(requests)
    if _all_cancelled(snapshots):
        return None

    await ctx.record_evidence(requests, snapshots)

    baseline, probe_snapshots = snapshots[0], snapshots[1:]
    findings = ctx.evaluator.evaluate(endpoint, baseline, probe_snapshots)
    ctx.collector.extend(findings)

    result = FuzzEndpointResult(
        endpoint=endpoint,
        baseline=baseline,
        probe_snapshots=list(probe_snapshots),
        findings=findings
    )
    logger.info(
        f"{endpoint.key}: baseline {baseline.status or baseline.error}, "
        f"{result.probes_sent} probes, {len(findings)} findings"
    )
    return result


async def _run_session(mode: str,
                       endpoints: Sequence[Endpoint],
                       skipped: List[str],
                       ctx: ScanContext,
                       worker) -> ScanOutcome:
    tasks = [worker(ctx, endpoint) for endpoint in endpoints]
    results = await asyncio.gather(*tasks)

    outcome = ScanOutcome(mode=mode, skipped=skipped, cancelled=ctx.cancelled)
    for endpoint, result in zip(endpoints, results):
        if result is None:
            outcome.not_scanned.append(endpoint.key)
        else:
            outcome.results.append(result)

    outcome.findings = sort_findings(ctx.collector.snapshot())
    outcome.requests_sent = ctx.dispatcher.sent
    outcome.request_errors = ctx.dispatcher.errors
    outcome.max_in_flight = ctx.dispatcher.max_in_flight

    if outcome.cancelled:
        logger.warning(
            f"Session cancelled: {len(outcome.results)} endpoints completed, "
            f"{len(outcome.not_scanned)} not scanned"
        )
    unclassified = sum(1 for f in outcome.findings if f.rule_id == UNCLASSIFIED)
    if unclassified:
        logger.info(f"{unclassified} endpoints matched no rule and are reported as unclassified")

    return outcome


def _build_session(options: OptionsConfig,
                   timeout: float,
                   transport: Optional[httpx.AsyncBaseTransport]) -> HttpSession:
    return HttpSession(
        timeout=timeout,
        verify_ssl=options.verify_ssl,
        follow_redirects=options.follow_redirects,
        max_body_bytes=options.max_body_bytes,
        transport=transport
    )


async def run_scan(endpoints: Sequence[Endpoint],
                   credentials: CredentialSet,
                   filters: PathFilters,
                   overrides: Mapping[str, str],
                   concurrency: int = DEFAULT_SCAN_CONCURRENCY,
                   timeout: float = DEFAULT_TIMEOUT_SECONDS,
                   *,
                   base_url: str,
                   body_templates: Optional[Mapping[str, bytes]] = None,
                   comparator: Optional[Comparator] = None,
                   options: Optional[OptionsConfig] = None,
                   cancel_event: Optional[asyncio.Event] = None,
                   evidence: Optional[EvidenceStore] = None,
                   transport: Optional[httpx.AsyncBaseTransport] = None) -> ScanOutcome:
    """
    Run the Admin/User/Anonymous differential scan.

    Args:
        endpoints: Endpoints to scan; those matching skip paths are never sent
        credentials: The three identities
        filters: Skip and public path filters
        overrides: Path/query/header value overrides
        concurrency: Maximum requests in flight
        timeout: Per-request timeout in seconds
        base_url: Target base URL
        body_templates: Per-endpoint body bytes keyed by ``"METHOD /path"``
        comparator: Comparator carrying ignore fields and sensitivity catalog
        options: Transport and classification options
        cancel_event: Set to stop admitting new requests
        evidence: Optional store receiving every exchange
        transport: Optional httpx transport (tests)

    Returns:
        ScanOutcome with per-endpoint results and all findings sorted by severity
    """
    options = options or OptionsConfig()
    kept, skipped = apply_filters(endpoints, filters)
    logger.info(f"Scanning {len(kept)} endpoints with concurrency {concurrency}")

    async with _build_session(options, timeout, transport) as session:
        ctx = ScanContext(
            resolver=RequestResolver(
                base_url=base_url,
                credentials=credentials,
                overrides=dict(overrides),
                body_templates=dict(body_templates or {}),
                allow_default_params=options.allow_default_params
            ),
            dispatcher=Dispatcher(session, concurrency, timeout, cancel_event),
            collector=FindingsCollector(),
            comparator=comparator or Comparator(),
            classifier=Classifier(filters, options.size_threshold),
            evidence=evidence
        )
        outcome = await _run_session('scan', kept, skipped, ctx, scan_endpoint)

    if evidence is not None:
        await asyncio.to_thread(evidence.create_manifest, outcome.scan_id, ctx.evidence_entries)
    return outcome


async def run_fuzz(endpoints: Sequence[Endpoint],
                   user_credential: CredentialSet,
                   concurrency: int = DEFAULT_FUZZ_CONCURRENCY,
                   *,
                   base_url: str,
                   timeout: float = DEFAULT_TIMEOUT_SECONDS,
                   filters: Optional[PathFilters] = None,
                   overrides: Optional[Mapping[str, str]] = None,
                   body_templates: Optional[Mapping[str, bytes]] = None,
                   catalog: Optional[Sequence[ProbeTemplate]] = None,
                   ignore_fields: Sequence[str] = (),
                   options: Optional[OptionsConfig] = None,
                   cancel_event: Optional[asyncio.Event] = None,
                   evidence: Optional[EvidenceStore] = None,
                   transport: Optional[httpx.AsyncBaseTransport] = None) -> ScanOutcome:
    """
    Fuzz endpoints as User with the probe catalog and report bypasses.

    Args:
        endpoints: Endpoints to fuzz
        user_credential: Credential set; only the User identity is used
        concurrency: Maximum requests in flight
        base_url: Target base URL
        catalog: Probe templates, ``default_catalog()`` when omitted

    Returns:
        ScanOutcome whose results are FuzzEndpointResults
    """
    options = options or OptionsConfig()
    kept, skipped = apply_filters(endpoints, filters or PathFilters())
    catalog = list(catalog) if catalog is not None else default_catalog()
    logger.info(
        f"Fuzzing {len(kept)} endpoints with {len(catalog)} probes each, concurrency {concurrency}"
    )

    async with _build_session(options, timeout, transport) as session:
        ctx = ScanContext(
            resolver=RequestResolver(
                base_url=base_url,
                credentials=user_credential,
                overrides=dict(overrides or {}),
                body_templates=dict(body_templates or {}),
                allow_default_params=options.allow_default_params
            ),
            dispatcher=Dispatcher(session, concurrency, timeout, cancel_event),
            collector=FindingsCollector(),
            evaluator=ProbeEvaluator(options.size_threshold, ignore_fields),
            catalog=catalog,
            evidence=evidence
        )
        outcome = await _run_session('fuzz', kept, skipped, ctx, fuzz_endpoint)

    if evidence is not None:
        await asyncio.to_thread(evidence.create_manifest, outcome.scan_id, ctx.evidence_entries)
    return outcome

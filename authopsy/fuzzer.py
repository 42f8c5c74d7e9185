import logging
from typing import Dict, Any, Optional, List, Sequence, Set
from dataclasses import dataclass, field

from .config import DEFAULT_SIZE_THRESHOLD
from .dispatcher import ResponseSnapshot
from .endpoints import Endpoint
from .findings import Finding, Severity, INCONCLUSIVE, worst_severity
from .probes import FuzzProbe
from .utils.diff import (
    filter_ignored,
    flatten_key_paths,
    is_json_document,
    length_diff_ratio,
    parse_json_body,
)

logger = logging.getLogger(__name__)

SIZE_BYPASS = 'size-bypass'

REMEDIATION = {
    'query-bypass': "Ignore client-supplied flags when making authorization decisions; check the caller's role server-side.",
    'header-bypass': "Never trust client-controlled headers (debug flags, roles, forwarded IPs) for access control.",
    SIZE_BYPASS: "The probe changes what the User role receives; make the response depend on the role only.",
    INCONCLUSIVE: "The User baseline request failed; fix connectivity and re-run the fuzz.",
}


@dataclass
class FuzzEndpointResult:
    """Baseline, probe outcomes and findings for one fuzzed endpoint."""
    endpoint: Endpoint
    baseline: Optional[ResponseSnapshot]
    probe_snapshots: List[ResponseSnapshot] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)

    @property
    def probes_sent(self) -> int:
        return len(self.probe_snapshots)

    @property
    def probe_errors(self) -> int:
        return sum(1 for snap in self.probe_snapshots if snap.is_error)

    @property
    def severity(self) -> Optional[Severity]:
        return worst_severity(self.findings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.endpoint.method,
            'path': self.endpoint.path_template,
            'baseline': {
                'status': self.baseline.status,
                'size': self.baseline.size,
                'error': self.baseline.error,
                'snapshot_id': self.baseline.snapshot_id
            } if self.baseline else None,
            'probes_sent': self.probes_sent,
            'probe_errors': self.probe_errors,
            'severity': self.severity.value if self.severity else None,
            'findings': [f.to_dict() for f in self.findings]
        }


class ProbeEvaluator:
    """
    Classifies probe snapshots against a single User-role baseline.

    The baseline is parsed once per endpoint; each probe is compared against it
    with the same key-path mechanism the scan comparator uses.
    """

    def __init__(self,
                 size_threshold: float = DEFAULT_SIZE_THRESHOLD,
                 ignore_fields: Sequence[str] = ()):
        self.size_threshold = size_threshold
        self.ignore_fields = tuple(ignore_fields)

    def evaluate(self,
                 endpoint: Endpoint,
                 baseline: ResponseSnapshot,
                 probe_snapshots: Sequence[ResponseSnapshot]) -> List[Finding]:
        """
        Evaluate every probe of one endpoint.

        Args:
            endpoint: Fuzzed endpoint
            baseline: Unmutated User-role snapshot
            probe_snapshots: One snapshot per probe, in catalog order

        Returns:
            Findings in catalog order; a single ``inconclusive`` finding when the
            baseline itself failed
        """
        if baseline.is_error:
            return [Finding(
                endpoint_ref=endpoint.key,
                rule_id=INCONCLUSIVE,
                severity=None,
                description=f"Baseline request failed: {baseline.error}",
                remediation_hint=REMEDIATION[INCONCLUSIVE],
                evidence={'baseline_error': baseline.error, 'baseline_snapshot': baseline.snapshot_id}
            )]

        baseline_paths = self._key_paths(baseline)

        findings = []
        for snap in probe_snapshots:
            if snap.is_error:
                logger.debug(f"Probe {snap.probe.trigger if snap.probe else '?'} errored on {endpoint.key}: {snap.error}")
                continue
            finding = self._evaluate_probe(endpoint, baseline, baseline_paths, snap)
            if finding is not None:
                findings.append(finding)

        return findings

    def _evaluate_probe(self,
                        endpoint: Endpoint,
                        baseline: ResponseSnapshot,
                        baseline_paths: Optional[Set[str]],
                        snap: ResponseSnapshot) -> Optional[Finding]:
        probe: FuzzProbe = snap.probe
        transition = f"{baseline.status} -> {snap.status}"

        if baseline.is_denied and snap.is_success:
            rule_id = probe.kind.rule_id
            return Finding(
                endpoint_ref=endpoint.key,
                rule_id=rule_id,
                severity=Severity.CRITICAL,
                description=f"Access control bypassed with '{probe.trigger}' ({transition})",
                remediation_hint=REMEDIATION[rule_id],
                evidence=self._evidence(baseline, snap, [])
            )

        if snap.status != baseline.status:
            return None

        ratio = length_diff_ratio(baseline.size, snap.size)
        probe_paths = self._key_paths(snap)
        new_keys: List[str] = []
        if baseline_paths is not None and probe_paths is not None:
            new_keys = sorted(probe_paths - baseline_paths)

        if ratio <= self.size_threshold and not new_keys:
            return None

        detail = f"{len(new_keys)} new keys" if new_keys else f"size {baseline.size} -> {snap.size} bytes"
        return Finding(
            endpoint_ref=endpoint.key,
            rule_id=SIZE_BYPASS,
            severity=Severity.HIGH,
            description=f"'{probe.trigger}' changes the response with status {snap.status}: {detail}",
            remediation_hint=REMEDIATION[SIZE_BYPASS],
            evidence=self._evidence(baseline, snap, new_keys)
        )

    def _key_paths(self, snap: ResponseSnapshot) -> Optional[Set[str]]:
        if not snap.is_json:
            return None
        document = parse_json_body(snap.body)
        if not is_json_document(document):
            return None
        return filter_ignored(flatten_key_paths(document), self.ignore_fields)

    @staticmethod
    def _evidence(baseline: ResponseSnapshot, snap: ResponseSnapshot, new_keys: List[str]) -> Dict[str, Any]:
        return {
            'trigger': snap.probe.trigger,
            'kind': snap.probe.kind.value,
            'baseline_status': baseline.status,
            'probe_status': snap.status,
            'baseline_size': baseline.size,
            'probe_size': snap.size,
            'new_keys': new_keys,
            'baseline_snapshot': baseline.snapshot_id,
            'probe_snapshot': snap.snapshot_id
        }

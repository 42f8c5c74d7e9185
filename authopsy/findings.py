import threading
import logging
from enum import Enum
from typing import Dict, Any, Optional, List, Iterable, Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class Severity(Enum):
    """Strict total order: CRITICAL > HIGH > MEDIUM > LOW > OK."""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    OK = "OK"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def __lt__(self, other: 'Severity') -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def parse(cls, value: str) -> 'Severity':
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unknown severity '{value}'. Expected one of: {', '.join(s.value for s in cls)}")


_RANKS = {
    Severity.OK: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

# Outcomes that are reported but carry no severity.
RESOLUTION_ERROR = 'resolution-error'
REQUEST_ERROR = 'request-error'
INCONCLUSIVE = 'inconclusive'
UNCLASSIFIED = 'unclassified'


@dataclass(frozen=True)
class Finding:
    """One reported authorization outcome. Never mutated after creation."""
    endpoint_ref: str
    rule_id: str
    severity: Optional[Severity]
    description: str
    remediation_hint: str
    evidence: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.rule_id in (RESOLUTION_ERROR, REQUEST_ERROR, INCONCLUSIVE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'endpoint': self.endpoint_ref,
            'rule_id': self.rule_id,
            'severity': self.severity.value if self.severity else None,
            'description': self.description,
            'remediation': self.remediation_hint,
            'evidence': dict(self.evidence)
        }


def sort_key(finding: Finding):
    """Severity descending; non-severity outcomes after OK; then endpoint and rule."""
    rank = finding.severity.rank if finding.severity else -1
    return (-rank, finding.endpoint_ref, finding.rule_id)


def sort_findings(findings: Iterable[Finding]) -> List[Finding]:
    return sorted(findings, key=sort_key)


def worst_severity(findings: Iterable[Finding]) -> Optional[Severity]:
    """Worst severity among severity-bearing findings, or None if there are none."""
    severities = [f.severity for f in findings if f.severity is not None]
    return max(severities, key=lambda s: s.rank) if severities else None


def count_by_severity(findings: Iterable[Finding]) -> Dict[str, int]:
    counts = {severity.value: 0 for severity in Severity}
    for finding in findings:
        if finding.severity is not None:
            counts[finding.severity.value] += 1
    return counts


def at_or_above(findings: Iterable[Finding], threshold: Severity) -> List[Finding]:
    return [f for f in findings if f.severity is not None and f.severity.rank >= threshold.rank]


class FindingsCollector:
    """Session-scoped, append-only result set safe for concurrent producers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._findings: List[Finding] = []

    def extend(self, findings: Iterable[Finding]):
        batch = list(findings)
        with self._lock:
            self._findings.extend(batch)

    def snapshot(self) -> List[Finding]:
        with self._lock:
            return list(self._findings)

"""
Deterministic rule engine turning ComparisonFacts into Findings.

Rule slots are evaluated in a fixed order and independently of each other, so an
endpoint can produce several findings. Picking the worst one for display is left
to reporting.
"""

import logging
from typing import Dict, Any, Optional, List

from .comparator import ComparisonFacts
from .config import PathFilters, DEFAULT_SIZE_THRESHOLD
from .endpoints import Endpoint
from .findings import (
    Finding,
    Severity,
    INCONCLUSIVE,
    REQUEST_ERROR,
    RESOLUTION_ERROR,
    UNCLASSIFIED,
)
from .identities import Role
from .utils.diff import leaf_name

logger = logging.getLogger(__name__)

VERTICAL_ESCALATION = 'vertical-escalation'
MISSING_AUTH = 'missing-auth'
ROLE_CONFUSION = 'role-confusion'
SENSITIVE_FIELD = 'sensitive-field'
PAGINATION_BYPASS = 'pagination-bypass'
SIZE_ANOMALY = 'size-anomaly'
TIMING_VARIANCE = 'timing-variance'
OK = 'ok'

TIMING_DELTA_MS = 500
TIMING_FLOOR_MS = 100

REMEDIATION = {
    VERTICAL_ESCALATION: "Enforce an admin-role check on this endpoint in the authorization layer, not only in the UI.",
    MISSING_AUTH: "Require authentication for this endpoint, or list it under public paths if it is meant to be public.",
    ROLE_CONFUSION: "Review the role hierarchy: the lower-privileged role must never be granted more access than Admin.",
    SENSITIVE_FIELD: "Remove the field from the serializer for non-privileged roles or mask its value.",
    PAGINATION_BYPASS: "Enforce the page size limit server-side and scope list queries to records the caller may see.",
    SIZE_ANOMALY: "Compare the Admin and User payloads and filter fields or records by the caller's role.",
    TIMING_VARIANCE: "Check whether the slower role triggers extra work, such as a permission lookup or an unbounded query.",
    OK: "No action required.",
    RESOLUTION_ERROR: "Supply the missing path parameter with --params or fix the request body template.",
    REQUEST_ERROR: "Check that the target is reachable and increase --timeout if requests are timing out.",
    INCONCLUSIVE: "Re-run the scan for this endpoint; some roles did not get a response.",
    UNCLASSIFIED: "Review the status matrix manually; it does not match an expected access pattern.",
}


def _is_success(status: Optional[int]) -> bool:
    return status is not None and 200 <= status < 300


def _is_denied(status: Optional[int]) -> bool:
    return status in (401, 403)


class Classifier:
    """Pure and deterministic: the same facts always give the same findings."""

    def __init__(self,
                 filters: Optional[PathFilters] = None,
                 size_threshold: float = DEFAULT_SIZE_THRESHOLD):
        self.filters = filters or PathFilters()
        self.size_threshold = size_threshold

    def classify(self, endpoint: Endpoint, facts: ComparisonFacts) -> List[Finding]:
        """
        Evaluate every rule slot for one endpoint.

        Args:
            endpoint: The endpoint the facts belong to
            facts: Comparison facts for its three snapshots

        Returns:
            Findings in rule order. Never empty: when nothing else applies the
            result is a single ``ok``, ``unclassified`` or error outcome.
        """
        ref = endpoint.key
        evidence = self._status_evidence(facts)

        if facts.all_errored:
            return [Finding(
                endpoint_ref=ref,
                rule_id=REQUEST_ERROR,
                severity=None,
                description="All three requests failed: " + self._error_text(facts),
                remediation_hint=REMEDIATION[REQUEST_ERROR],
                evidence=evidence
            )]

        public = self.filters.is_public(endpoint.path_template)
        admin, user, anon = facts.admin_status, facts.user_status, facts.anon_status
        findings: List[Finding] = []

        escalation = not public and _is_success(user) and _is_success(admin)
        if escalation:
            findings.append(Finding(
                endpoint_ref=ref,
                rule_id=VERTICAL_ESCALATION,
                severity=Severity.CRITICAL,
                description=f"User can access Admin-level resource ({admin} / {user})",
                remediation_hint=REMEDIATION[VERTICAL_ESCALATION],
                evidence=evidence
            ))

        if not public and _is_success(anon):
            findings.append(Finding(
                endpoint_ref=ref,
                rule_id=MISSING_AUTH,
                severity=Severity.CRITICAL if escalation else Severity.HIGH,
                description=f"Endpoint answers {anon} without any credential",
                remediation_hint=REMEDIATION[MISSING_AUTH],
                evidence=evidence
            ))

        if not public and _is_denied(admin) and _is_success(user):
            findings.append(Finding(
                endpoint_ref=ref,
                rule_id=ROLE_CONFUSION,
                severity=Severity.CRITICAL,
                description=f"User is allowed ({user}) where Admin is denied ({admin})",
                remediation_hint=REMEDIATION[ROLE_CONFUSION],
                evidence=evidence
            ))

        findings.extend(self._sensitive_field_findings(ref, facts))

        both_succeed = not public and _is_success(admin) and _is_success(user)
        if both_succeed and facts.array_growth:
            findings.append(self._pagination_bypass(ref, facts, evidence))

        size_finding = self._size_anomaly(ref, facts, evidence)
        if size_finding is not None:
            findings.append(size_finding)

        if both_succeed:
            timing_finding = self._timing_variance(ref, facts, evidence)
            if timing_finding is not None:
                findings.append(timing_finding)

        if not findings and not facts.errors:
            findings.append(self._fallthrough(ref, facts, evidence, public))

        if facts.errors:
            findings.append(Finding(
                endpoint_ref=ref,
                rule_id=INCONCLUSIVE,
                severity=None,
                description="No response for " + self._error_text(facts),
                remediation_hint=REMEDIATION[INCONCLUSIVE],
                evidence={**evidence, 'inconclusive_roles': [r.value for r in facts.errored_roles]}
            ))

        return findings

    def _sensitive_field_findings(self, ref: str, facts: ComparisonFacts) -> List[Finding]:
        exposed: Dict[str, Dict[str, List[str]]] = {}
        for role in (Role.USER, Role.ANONYMOUS):
            for path in facts.sensitive_hits.get(role, ()):
                name = leaf_name(path)
                exposed.setdefault(name, {}).setdefault(role.value, []).append(path)

        findings = []
        for name in sorted(exposed):
            roles = exposed[name]
            findings.append(Finding(
                endpoint_ref=ref,
                rule_id=SENSITIVE_FIELD,
                severity=Severity.MEDIUM,
                description=f"Sensitive field '{name}' visible to {', '.join(_label(r) for r in roles)}",
                remediation_hint=REMEDIATION[SENSITIVE_FIELD],
                evidence={
                    'field': name,
                    'paths': roles,
                    'snapshots': {r: facts.snapshot_ids[Role(r)] for r in roles}
                }
            ))
        return findings

    def _pagination_bypass(self, ref: str, facts: ComparisonFacts, evidence: Dict[str, Any]) -> Finding:
        arrays = [{'path': path or '$', 'admin': a, 'user': u} for path, a, u in facts.array_growth]
        largest = max(arrays, key=lambda entry: entry['user'] - entry['admin'])
        return Finding(
            endpoint_ref=ref,
            rule_id=PAGINATION_BYPASS,
            severity=Severity.HIGH,
            description=(
                f"User receives more records than Admin at '{largest['path']}' "
                f"({largest['user']} vs {largest['admin']})"
            ),
            remediation_hint=REMEDIATION[PAGINATION_BYPASS],
            evidence={**evidence, 'arrays': arrays}
        )

    def _size_anomaly(self, ref: str, facts: ComparisonFacts, evidence: Dict[str, Any]) -> Optional[Finding]:
        admin, user = facts.admin_status, facts.user_status
        if admin is None or admin != user:
            return None

        structure = facts.structure.get(Role.USER)
        structural = structure is not None and not structure.is_empty
        oversized = facts.size_ratio_user > self.size_threshold

        if not structural and not oversized:
            return None

        reasons = []
        if oversized:
            reasons.append(
                f"size differs by {facts.size_ratio_user:.0%} "
                f"({facts.sizes[Role.ADMIN]} vs {facts.sizes[Role.USER]} bytes)"
            )
        if structural:
            reasons.append(f"{len(structure.extra)} extra / {len(structure.missing)} missing keys")

        return Finding(
            endpoint_ref=ref,
            rule_id=SIZE_ANOMALY,
            severity=Severity.LOW,
            description=f"Admin and User both got {admin} but " + '; '.join(reasons),
            remediation_hint=REMEDIATION[SIZE_ANOMALY],
            evidence={
                **evidence,
                'size_delta_user': facts.size_delta_user,
                'size_ratio_user': round(facts.size_ratio_user, 4),
                'threshold': self.size_threshold,
                'extra_keys': list(structure.extra) if structure else [],
                'missing_keys': list(structure.missing) if structure else []
            }
        )

    def _timing_variance(self, ref: str, facts: ComparisonFacts, evidence: Dict[str, Any]) -> Optional[Finding]:
        admin_ms = facts.elapsed_ms.get(Role.ADMIN, 0.0)
        user_ms = facts.elapsed_ms.get(Role.USER, 0.0)
        if admin_ms <= TIMING_FLOOR_MS or user_ms <= TIMING_FLOOR_MS:
            return None
        if abs(admin_ms - user_ms) <= TIMING_DELTA_MS:
            return None

        return Finding(
            endpoint_ref=ref,
            rule_id=TIMING_VARIANCE,
            severity=Severity.LOW,
            description=f"Response time differs between Admin ({admin_ms:.0f} ms) and User ({user_ms:.0f} ms)",
            remediation_hint=REMEDIATION[TIMING_VARIANCE],
            evidence={**evidence, 'elapsed_ms': {'admin': round(admin_ms, 2), 'user': round(user_ms, 2)}}
        )

    def _fallthrough(self, ref: str, facts: ComparisonFacts, evidence: Dict[str, Any], public: bool) -> Finding:
        admin, user, anon = facts.admin_status, facts.user_status, facts.anon_status
        enforced = _is_success(admin) and _is_denied(user) and _is_denied(anon)
        open_by_design = public and _is_success(admin) and _is_success(anon)

        if enforced or open_by_design:
            return Finding(
                endpoint_ref=ref,
                rule_id=OK,
                severity=Severity.OK,
                description="Public endpoint answers every role" if open_by_design
                else "Access control enforced for User and Anonymous",
                remediation_hint=REMEDIATION[OK],
                evidence=evidence
            )

        logger.debug(f"No rule matched {ref} with statuses {admin}/{user}/{anon}")
        return Finding(
            endpoint_ref=ref,
            rule_id=UNCLASSIFIED,
            severity=None,
            description=f"Status pattern {admin} / {user} / {anon} matches no rule",
            remediation_hint=REMEDIATION[UNCLASSIFIED],
            evidence=evidence
        )

    @staticmethod
    def _status_evidence(facts: ComparisonFacts) -> Dict[str, Any]:
        return {
            'statuses': {role.value: status for role, status in facts.statuses.items()},
            'sizes': {role.value: size for role, size in facts.sizes.items()},
            'snapshots': {role.value: sid for role, sid in facts.snapshot_ids.items()}
        }

    @staticmethod
    def _error_text(facts: ComparisonFacts) -> str:
        return ', '.join(f"{role.label}: {reason}" for role, reason in facts.errors.items())


def resolution_error(endpoint: Endpoint, error: Exception) -> Finding:
    """Single error outcome for an endpoint that could not be resolved."""
    return Finding(
        endpoint_ref=endpoint.key,
        rule_id=RESOLUTION_ERROR,
        severity=None,
        description=f"Request could not be built: {error}",
        remediation_hint=REMEDIATION[RESOLUTION_ERROR],
        evidence={'error': str(error)}
    )


def _label(role_value: str) -> str:
    return Role(role_value).label

import logging
from typing import Dict, Any, Optional, List, Mapping, Pattern, Sequence, Set, Tuple
from dataclasses import dataclass, field

from .dispatcher import ResponseSnapshot
from .identities import Role
from .utils.diff import (
    DEFAULT_CATALOG,
    array_lengths,
    compile_sensitivity_catalog,
    filter_ignored,
    find_sensitive_paths,
    flatten_key_paths,
    is_json_document,
    leaf_name,
    length_diff_ratio,
    parse_json_body,
    summarize_json_diff,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StructuralDiff:
    """Key-path set difference between Admin and one other role."""
    compared: bool = False
    extra: Tuple[str, ...] = ()
    missing: Tuple[str, ...] = ()
    value_summary: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.extra and not self.missing

    def to_dict(self) -> Dict[str, Any]:
        return {
            'compared': self.compared,
            'extra': list(self.extra),
            'missing': list(self.missing),
            'value_summary': self.value_summary
        }


@dataclass(frozen=True)
class ComparisonFacts:
    """Everything the classifier may know about one endpoint's three snapshots."""
    statuses: Mapping[Role, Optional[int]]
    sizes: Mapping[Role, int]
    errors: Mapping[Role, str]
    snapshot_ids: Mapping[Role, str]
    size_delta_user: int
    size_delta_anon: int
    size_ratio_user: float
    size_ratio_anon: float
    structure: Mapping[Role, StructuralDiff] = field(default_factory=dict)
    sensitive_hits: Mapping[Role, Tuple[str, ...]] = field(default_factory=dict)
    elapsed_ms: Mapping[Role, float] = field(default_factory=dict)
    array_growth: Tuple[Tuple[str, int, int], ...] = ()

    @property
    def admin_status(self) -> Optional[int]:
        return self.statuses[Role.ADMIN]

    @property
    def user_status(self) -> Optional[int]:
        return self.statuses[Role.USER]

    @property
    def anon_status(self) -> Optional[int]:
        return self.statuses[Role.ANONYMOUS]

    @property
    def errored_roles(self) -> List[Role]:
        return [role for role in self.statuses if role in self.errors]

    @property
    def all_errored(self) -> bool:
        return len(self.errors) == len(self.statuses)

    def sensitive_fields(self, role: Role) -> List[str]:
        """Distinct leaf names of sensitive key paths exposed by a role."""
        return sorted({leaf_name(path) for path in self.sensitive_hits.get(role, ())})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'statuses': {role.value: status for role, status in self.statuses.items()},
            'sizes': {role.value: size for role, size in self.sizes.items()},
            'errors': {role.value: reason for role, reason in self.errors.items()},
            'size_delta_user': self.size_delta_user,
            'size_delta_anon': self.size_delta_anon,
            'size_ratio_user': round(self.size_ratio_user, 4),
            'size_ratio_anon': round(self.size_ratio_anon, 4),
            'structure': {role.value: diff.to_dict() for role, diff in self.structure.items()},
            'sensitive_hits': {role.value: list(paths) for role, paths in self.sensitive_hits.items()},
            'elapsed_ms': {role.value: round(ms, 2) for role, ms in self.elapsed_ms.items()},
            'array_growth': [list(entry) for entry in self.array_growth]
        }


class Comparator:
    """
    Pure comparison of Admin/User/Anonymous snapshots.

    Total by construction: error snapshots are valid inputs and are recorded with
    ``status = None``.
    """

    def __init__(self,
                 ignore_fields: Sequence[str] = (),
                 sensitive_patterns: Optional[Sequence[Pattern[str]]] = None):
        self.ignore_fields = tuple(ignore_fields)
        self.catalog = list(sensitive_patterns) if sensitive_patterns is not None else DEFAULT_CATALOG

    @classmethod
    def from_config(cls, ignore_fields: Sequence[str], extra_sensitive: Sequence[str]) -> 'Comparator':
        return cls(ignore_fields, compile_sensitivity_catalog(extra_sensitive))

    def compare(self,
                admin: ResponseSnapshot,
                user: ResponseSnapshot,
                anon: ResponseSnapshot) -> ComparisonFacts:
        """
        Compute the comparison facts for one endpoint.

        Args:
            admin: Admin-role snapshot
            user: User-role snapshot
            anon: Anonymous-role snapshot

        Returns:
            ComparisonFacts
        """
        snapshots = {Role.ADMIN: admin, Role.USER: user, Role.ANONYMOUS: anon}

        documents = {}
        for role, snap in snapshots.items():
            if snap.is_error or not snap.is_json:
                continue
            document = parse_json_body(snap.body)
            if is_json_document(document):
                documents[role] = document

        key_paths = {
            role: filter_ignored(flatten_key_paths(doc), self.ignore_fields)
            for role, doc in documents.items()
        }

        structure = {
            role: self._structural_diff(documents, key_paths, role)
            for role in (Role.USER, Role.ANONYMOUS)
        }

        sensitive_hits = {}
        for role, paths in key_paths.items():
            hits = find_sensitive_paths(paths, self.catalog)
            if hits:
                sensitive_hits[role] = tuple(hits)

        return ComparisonFacts(
            statuses={role: snap.status for role, snap in snapshots.items()},
            sizes={role: snap.size for role, snap in snapshots.items()},
            errors={role: snap.error for role, snap in snapshots.items() if snap.is_error},
            snapshot_ids={role: snap.snapshot_id for role, snap in snapshots.items()},
            size_delta_user=user.size - admin.size,
            size_delta_anon=anon.size - admin.size,
            size_ratio_user=length_diff_ratio(admin.size, user.size),
            size_ratio_anon=length_diff_ratio(admin.size, anon.size),
            structure=structure,
            sensitive_hits=sensitive_hits,
            elapsed_ms={role: snap.elapsed_ms for role, snap in snapshots.items()},
            array_growth=self._array_growth(documents)
        )

    def _array_growth(self, documents: Mapping[Role, Any]) -> Tuple[Tuple[str, int, int], ...]:
        """Arrays that hold more elements for User than for Admin, as (path, admin, user)."""
        if Role.ADMIN not in documents or Role.USER not in documents:
            return ()

        admin_lengths = array_lengths(documents[Role.ADMIN])
        user_lengths = array_lengths(documents[Role.USER])
        shared = filter_ignored(admin_lengths.keys() & user_lengths.keys(), self.ignore_fields)

        return tuple(
            (path, admin_lengths[path], user_lengths[path])
            for path in sorted(shared)
            if user_lengths[path] > admin_lengths[path]
        )

    def _structural_diff(self,
                         documents: Mapping[Role, Any],
                         key_paths: Mapping[Role, Set[str]],
                         role: Role) -> StructuralDiff:
        # Only JSON on both sides is diffed; otherwise size/status facts stand alone.
        if Role.ADMIN not in documents or role not in documents:
            return StructuralDiff()

        admin_paths = key_paths[Role.ADMIN]
        role_paths = key_paths[role]

        return StructuralDiff(
            compared=True,
            extra=tuple(sorted(role_paths - admin_paths)),
            missing=tuple(sorted(admin_paths - role_paths)),
            value_summary=summarize_json_diff(documents[Role.ADMIN], documents[role])
        )


def compare(admin: ResponseSnapshot, user: ResponseSnapshot, anon: ResponseSnapshot) -> ComparisonFacts:
    """Compare with the default sensitivity catalog and no ignored fields."""
    return Comparator().compare(admin, user, anon)

import json
import shlex
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List
from datetime import datetime, timezone

from .dispatcher import ResponseSnapshot
from .resolver import ResolvedRequest

logger = logging.getLogger(__name__)

REDACTED = '<redacted>'


class EvidenceStore:
    """Stores the exchanges behind findings, addressed by snapshot id."""

    def __init__(self, base_dir: str, credential_header: str = 'Authorization'):
        """
        Initialize evidence store.

        Args:
            base_dir: Base directory for storing evidence
            credential_header: Header whose value is redacted before writing
        """
        self.base_dir = Path(base_dir)
        self.credential_header = credential_header.lower()

        self.snapshots_dir = self.base_dir / "snapshots"
        self.manifest_dir = self.base_dir / "manifests"

        for directory in [self.snapshots_dir, self.manifest_dir]:
            directory.mkdir(parents=True, exist_ok=True)

        logger.info(f"Evidence store initialized at {self.base_dir}")

    def store_exchange(self, request: ResolvedRequest, snapshot: ResponseSnapshot) -> Dict[str, str]:
        """
        Write one request/snapshot pair to ``snapshots/<snapshot_id>.json``.

        Args:
            request: The request that was sent (or would have been, for cancelled ones)
            snapshot: Captured result

        Returns:
            Dictionary with the snapshot id and file path
        """
        headers = self._redacted_headers(request)
        entry = {
            'snapshot_id': snapshot.snapshot_id,
            'endpoint': request.endpoint_key,
            'role': request.role.value,
            'probe': request.probe.to_dict() if request.probe else None,
            'request': {
                'method': request.method,
                'url': request.url,
                'headers': headers,
                'body': request.body.decode('utf-8', errors='replace') if request.body else None
            },
            'response': {
                **snapshot.to_dict(),
                'body': snapshot.body.decode('utf-8', errors='replace')
            },
            'curl': self.curl_command(request.method, request.url, headers, request.body)
        }

        evidence_file = self.snapshots_dir / f"{snapshot.snapshot_id}.json"
        with open(evidence_file, 'w') as f:
            json.dump(entry, f, indent=2)

        logger.debug(f"Stored evidence {snapshot.snapshot_id} for {request.label}")

        return {
            'snapshot_id': snapshot.snapshot_id,
            'file': str(evidence_file)
        }

    def create_manifest(self, scan_id: str, entries: List[Dict[str, str]]) -> str:
        """
        Create a manifest file listing all evidence written for a scan.

        Returns:
            Path to the manifest file
        """
        manifest = {
            'scan_id': scan_id,
            'created_at': datetime.now(timezone.utc).isoformat(),
            'evidence_count': len(entries),
            'evidence': entries,
            'base_dir': str(self.base_dir)
        }

        manifest_file = self.manifest_dir / f"{scan_id}.json"
        with open(manifest_file, 'w') as f:
            json.dump(manifest, f, indent=2)

        logger.info(f"Created evidence manifest: {manifest_file}")
        return str(manifest_file)

    def get_evidence(self, snapshot_id: str) -> Optional[Dict[str, Any]]:
        """Stored entry for a snapshot id, or None if it was never written."""
        evidence_file = self.snapshots_dir / f"{snapshot_id}.json"
        if not evidence_file.exists():
            return None
        with open(evidence_file, 'r') as f:
            return json.load(f)

    def _redacted_headers(self, request: ResolvedRequest) -> Dict[str, str]:
        return {
            name: REDACTED if name.lower() == self.credential_header else value
            for name, value in request.headers
        }

    @staticmethod
    def curl_command(method: str, url: str, headers: Dict[str, str], body: Optional[bytes]) -> str:
        """Equivalent curl invocation, shell-quoted."""
        parts = ['curl', '-sS']

        if method != 'GET':
            parts.extend(['-X', method])

        for name, value in headers.items():
            parts.extend(['-H', shlex.quote(f"{name}: {value}")])

        if body:
            parts.extend(['--data-binary', shlex.quote(body.decode('utf-8', errors='replace'))])

        parts.append(shlex.quote(url))
        return ' '.join(parts)

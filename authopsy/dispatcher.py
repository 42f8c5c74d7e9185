import asyncio
import hashlib
import logging
import time
from typing import Dict, Any, Optional, List, Sequence
from dataclasses import dataclass
import httpx

from .identities import Role
from .probes import FuzzProbe
from .resolver import ResolvedRequest
from .utils.http import HttpSession

logger = logging.getLogger(__name__)

TIMEOUT = "timeout"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class ResponseSnapshot:
    """Immutable captured result of one request attempt."""
    endpoint_key: str
    role: Role
    status: Optional[int]
    body: bytes
    elapsed_ms: float
    content_type: str
    error: Optional[str] = None
    truncated: bool = False
    snapshot_id: str = ''
    probe: Optional[FuzzProbe] = None

    @property
    def size(self) -> int:
        return len(self.body)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_success(self) -> bool:
        return self.status is not None and 200 <= self.status < 300

    @property
    def is_denied(self) -> bool:
        return self.status in (401, 403)

    @property
    def is_json(self) -> bool:
        return 'json' in self.content_type.lower()

    @classmethod
    def failed(cls, request: ResolvedRequest, reason: str, elapsed_ms: float = 0.0) -> 'ResponseSnapshot':
        return cls(
            endpoint_key=request.endpoint_key,
            role=request.role,
            status=None,
            body=b'',
            elapsed_ms=elapsed_ms,
            content_type='',
            error=reason,
            snapshot_id=_snapshot_id(request, None, reason.encode('utf-8')),
            probe=request.probe
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'size': self.size,
            'error': self.error,
            'elapsed_ms': round(self.elapsed_ms, 2),
            'content_type': self.content_type,
            'truncated': self.truncated,
            'snapshot_id': self.snapshot_id
        }


def _snapshot_id(request: ResolvedRequest, status: Optional[int], body: bytes) -> str:
    digest = hashlib.sha256()
    digest.update(f"{request.method} {request.url} {request.role.value} {status}\n".encode('utf-8'))
    if request.probe is not None:
        digest.update(request.probe.trigger.encode('utf-8'))
    digest.update(body)
    return digest.hexdigest()[:16]


class Dispatcher:
    """
    Bounded-concurrency executor turning ResolvedRequests into ResponseSnapshots.

    At most ``concurrency_limit`` requests are in flight at once. Every request is
    attempted exactly once; timeouts and transport errors become error snapshots
    and never reach the caller. Once ``cancel_event`` is set, requests that have
    not been admitted yet are recorded as cancelled without being sent.
    """

    def __init__(self,
                 session: HttpSession,
                 concurrency_limit: int,
                 timeout: float,
                 cancel_event: Optional[asyncio.Event] = None):
        if concurrency_limit <= 0:
            raise ValueError("concurrency_limit must be positive")
        self.session = session
        self.concurrency_limit = concurrency_limit
        self.timeout = timeout
        self.cancel_event = cancel_event
        self._semaphore = asyncio.Semaphore(concurrency_limit)
        self.in_flight = 0
        self.max_in_flight = 0
        self.sent = 0
        self.errors = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def dispatch(self, requests: Sequence[ResolvedRequest]) -> List[ResponseSnapshot]:
        """
        Issue a batch of requests concurrently.

        Args:
            requests: Resolved requests to send

        Returns:
            One snapshot per request, in input order
        """
        return list(await asyncio.gather(*(self.send(request) for request in requests)))

    async def send(self, request: ResolvedRequest) -> ResponseSnapshot:
        """Admit one request through the gate and capture its snapshot."""
        if self.cancelled:
            return ResponseSnapshot.failed(request, CANCELLED)

        async with self._semaphore:
            if self.cancelled:
                return ResponseSnapshot.failed(request, CANCELLED)

            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                return await self._attempt(request)
            finally:
                self.in_flight -= 1

    async def _attempt(self, request: ResolvedRequest) -> ResponseSnapshot:
        self.sent += 1
        start = time.monotonic()

        try:
            raw = await asyncio.wait_for(
                self.session.fetch(
                    request.method,
                    request.url,
                    headers=request.header_dict(),
                    content=request.body
                ),
                timeout=self.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            self.errors += 1
            logger.warning(f"Request timed out after {self.timeout}s: {request.label}")
            return ResponseSnapshot.failed(request, TIMEOUT, _elapsed_ms(start))
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            self.errors += 1
            reason = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            logger.warning(f"Request failed for {request.label}: {reason}")
            return ResponseSnapshot.failed(request, reason, _elapsed_ms(start))
        except (ValueError, TypeError) as e:
            # Raised while httpx builds the request, e.g. a header it cannot encode.
            self.errors += 1
            reason = f"{type(e).__name__}: {e}"
            logger.warning(f"Request could not be built for {request.label}: {reason}")
            return ResponseSnapshot.failed(request, reason, _elapsed_ms(start))

        elapsed_ms = _elapsed_ms(start)
        logger.debug(f"{request.label} -> {raw.status_code} ({len(raw.body)} bytes, {elapsed_ms:.0f} ms)")

        return ResponseSnapshot(
            endpoint_key=request.endpoint_key,
            role=request.role,
            status=raw.status_code,
            body=raw.body,
            elapsed_ms=elapsed_ms,
            content_type=raw.content_type,
            truncated=raw.truncated,
            snapshot_id=_snapshot_id(request, raw.status_code, raw.body),
            probe=request.probe
        )


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000

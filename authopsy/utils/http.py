"""
Wrapper around httpx for a shared, single-attempt client
"""

import logging
from typing import Dict, Optional
from dataclasses import dataclass
import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawResponse:
    """Status, content type and (possibly capped) body of one exchange."""
    status_code: int
    content_type: str
    body: bytes
    truncated: bool


class HttpSession:
    """Wrapper around httpx.AsyncClient shared read-only by every request task."""

    def __init__(self,
                 timeout: float = 10.0,
                 verify_ssl: bool = True,
                 follow_redirects: bool = False,
                 max_body_bytes: int = 1024 * 1024,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize HTTP session.

        Args:
            timeout: Per-request timeout in seconds, also applied at the socket level
            verify_ssl: Whether to verify SSL certificates
            follow_redirects: Whether to follow HTTP redirects
            max_body_bytes: Response bodies are read up to this many bytes
            transport: Optional transport override (tests use httpx.MockTransport)
        """
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.follow_redirects = follow_redirects
        self.max_body_bytes = max_body_bytes
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize the HTTP client."""
        if self._client is None:
            kwargs = {}
            if self.transport is not None:
                kwargs['transport'] = self.transport
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                verify=self.verify_ssl,
                follow_redirects=self.follow_redirects,
                **kwargs
            )

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch(self,
                    method: str,
                    url: str,
                    headers: Optional[Dict[str, str]] = None,
                    content: Optional[bytes] = None) -> RawResponse:
        """
        Make exactly one HTTP request and read its body.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Target URL
            headers: Request headers
            content: Raw request body

        Returns:
            RawResponse with the body capped at ``max_body_bytes``

        Raises:
            httpx.HTTPError: On transport failure; the caller decides how to record it
        """
        if not self._client:
            await self.start()

        logger.debug(f"Making {method} request to {url}")

        async with self._client.stream(method, url, headers=headers, content=content) as response:
            chunks = []
            received = 0
            truncated = False
            async for chunk in response.aiter_bytes():
                remaining = self.max_body_bytes - received
                if len(chunk) > remaining:
                    chunks.append(chunk[:remaining])
                    truncated = True
                    break
                chunks.append(chunk)
                received += len(chunk)

            logger.debug(f"Response: {response.status_code} for {method} {url}")

            return RawResponse(
                status_code=response.status_code,
                content_type=response.headers.get('content-type', ''),
                body=b''.join(chunks),
                truncated=truncated
            )

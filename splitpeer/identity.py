"""
Peer identity acquisition for splitpeer.

Supports two modes:
1. SignalingIdentityService: asks a PeerJS-compatible signaling server for
   a fresh peer id (GET {url}/{key}/id) over httpx
2. StaticIdentityService: hands out preconfigured ids (loopback runs, tests)
"""

import time
import uuid
from typing import Iterable, Optional

import httpx


# Peer ids longer than this are rejected as a broken server response.
MAX_PEER_ID_LENGTH = 256


class IdentityError(RuntimeError):
    """The signaling service could not provide a peer identity."""


class IdentityService:
    """Abstract base class for identity providers."""

    async def acquire(self) -> str:
        """Obtain a new local peer id."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SignalingIdentityService(IdentityService):
    """Obtain peer ids from a signaling server."""

    def __init__(self, base_url: str, key: str = "peerjs", timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.key = key
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def acquire(self) -> str:
        client = self._get_client()
        try:
            response = await client.get(
                f"{self.base_url}/{self.key}/id",
                params={"ts": f"{int(time.time() * 1000)}{uuid.uuid4().int % 1000}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise IdentityError(f"signaling request failed: {e}") from e

        peer_id = response.text.strip()
        if not peer_id or len(peer_id) > MAX_PEER_ID_LENGTH:
            raise IdentityError(f"signaling server returned an invalid id: {peer_id[:32]!r}")
        return peer_id

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class StaticIdentityService(IdentityService):
    """Return the given ids in order, then random ones."""

    def __init__(self, peer_ids: Iterable[str] = ()):
        self._peer_ids = list(peer_ids)

    async def acquire(self) -> str:
        if self._peer_ids:
            return self._peer_ids.pop(0)
        return uuid.uuid4().hex

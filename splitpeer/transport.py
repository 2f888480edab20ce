"""
Peer transport abstraction for splitpeer.

The real peer-connection library (signaling, NAT traversal, data
channels) lives outside this package. It is reached through two small
interfaces:

- TransportInterface: listen for inbound links under a local peer id,
  open outbound links, destroy an identity.
- TransportLink: one reliable, ordered, bidirectional channel exposing
  on(event, callback) / send / close, with events "open", "data",
  "close" and "error".

LoopbackTransport is an in-process implementation that delivers every
event through the running asyncio loop. It is used by the tests and for
running several replicas inside one process.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional


# Identity-level failures that require destroying and recreating the peer id.
FATAL_ERROR_TYPES = frozenset({
    "network",
    "server-error",
    "socket-error",
    "socket-closed",
    "webrtc",
})

# Failures that only concern one connect attempt; surfaced to the user.
NOTICE_ERROR_TYPES = frozenset({
    "peer-unavailable",
    "invalid-id",
})

LINK_EVENTS = ("open", "data", "close", "error")


class TransportError(Exception):
    """A transport failure, classified by a short type string."""

    def __init__(self, type_: str, message: str = "", peer: Optional[str] = None):
        super().__init__(message or type_)
        self.type = type_
        self.peer = peer

    @property
    def is_fatal(self) -> bool:
        return self.type in FATAL_ERROR_TYPES


class TransportLink:
    """Abstract base class for one bidirectional peer link."""

    @property
    def peer(self) -> str:
        """Remote peer id."""
        raise NotImplementedError

    @property
    def open(self) -> bool:
        raise NotImplementedError

    def on(self, event: str, callback: Callable[..., None]) -> None:
        """Register a listener for "open", "data", "close" or "error"."""
        raise NotImplementedError

    def send(self, data: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class TransportInterface:
    """Abstract base class for a peer-connection provider."""

    def listen(self, peer_id: str,
               on_connection: Callable[[TransportLink], None],
               on_error: Callable[[TransportError], None]) -> None:
        """Accept inbound links for `peer_id` and report identity-level errors."""
        raise NotImplementedError

    def connect(self, peer_id: str, remote_id: str) -> TransportLink:
        """Start an outbound link; it reports "open" asynchronously."""
        raise NotImplementedError

    def destroy(self, peer_id: str) -> None:
        """Tear down an identity and every link it owns."""
        raise NotImplementedError


class LoopbackLink(TransportLink):
    """One end of an in-process link pair."""

    def __init__(self, hub: "LoopbackTransport", owner: str, remote: str):
        self._hub = hub
        self.owner = owner
        self._remote = remote
        self._open = False
        self._closed = False
        self.partner: Optional["LoopbackLink"] = None
        self._listeners: Dict[str, List[Callable[..., None]]] = {e: [] for e in LINK_EVENTS}

    @property
    def peer(self) -> str:
        return self._remote

    @property
    def open(self) -> bool:
        return self._open

    def on(self, event: str, callback: Callable[..., None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"unknown link event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as e:
                self._hub._log(f"{event} listener error on {self.owner}->{self._remote}: {e}",
                               level="warning")

    def _mark_open(self) -> None:
        if self._closed or self._open:
            return
        self._open = True
        self._emit("open")

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        self._emit("close")

    def send(self, data: str) -> None:
        if not self._open:
            raise RuntimeError(f"link to {self._remote} is not open")
        partner = self.partner
        # call_soon is FIFO, so per-link ordering is preserved.
        self._hub._schedule(lambda: partner._emit("data", data) if not partner._closed else None)

    def close(self) -> None:
        if self._closed:
            return
        partner = self.partner
        self._hub._schedule(self._mark_closed)
        if partner is not None:
            self._hub._schedule(partner._mark_closed)

    def fail(self, error: TransportError) -> None:
        """Report a link-level error (test hook)."""
        self._hub._schedule(lambda: self._emit("error", error))


class LoopbackTransport(TransportInterface):
    """In-process hub connecting any number of local peer identities."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("splitpeer")
        self._listeners: Dict[str, Dict[str, Callable[..., None]]] = {}
        self._links: List[LoopbackLink] = []

    def _log(self, msg: str, level: str = "info") -> None:
        getattr(self.logger, level)(f"splitpeer: loopback: {msg}")

    def _schedule(self, callback: Callable[[], None]) -> None:
        asyncio.get_running_loop().call_soon(callback)

    def listen(self, peer_id, on_connection, on_error) -> None:
        if peer_id in self._listeners:
            raise RuntimeError(f"peer id already in use: {peer_id}")
        self._listeners[peer_id] = {"connection": on_connection, "error": on_error}

    def connect(self, peer_id: str, remote_id: str) -> LoopbackLink:
        local = LoopbackLink(self, owner=peer_id, remote=remote_id)
        remote = LoopbackLink(self, owner=remote_id, remote=peer_id)
        local.partner = remote
        remote.partner = local
        self._schedule(lambda: self._handshake(local, remote))
        return local

    def _handshake(self, local: LoopbackLink, remote: LoopbackLink) -> None:
        target = self._listeners.get(remote.owner)
        origin = self._listeners.get(local.owner)
        if target is None:
            local._closed = True
            if origin is not None:
                origin["error"](TransportError(
                    "peer-unavailable",
                    f"could not connect to peer {remote.owner}",
                    peer=remote.owner,
                ))
            return
        self._links.extend([local, remote])
        try:
            target["connection"](remote)
        except Exception as e:
            self._log(f"connection listener error on {remote.owner}: {e}", level="warning")
        self._schedule(local._mark_open)
        self._schedule(remote._mark_open)

    def destroy(self, peer_id: str) -> None:
        self._listeners.pop(peer_id, None)
        for link in list(self._links):
            if link.owner == peer_id:
                link.close()
        self._links = [link for link in self._links if link.owner != peer_id and
                       link.peer != peer_id]

    def fail(self, peer_id: str, error_type: str, message: str = "") -> None:
        """Report an identity-level error for `peer_id` (test hook)."""
        listener = self._listeners.get(peer_id)
        if listener is None:
            return
        error = TransportError(error_type, message)
        self._schedule(lambda: listener["error"](error))

    def is_listening(self, peer_id: str) -> bool:
        return peer_id in self._listeners

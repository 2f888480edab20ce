"""
Connection supervisor for splitpeer.

Owns the local peer identity and the registry of PeerSessions:

- Identity: obtained asynchronously from an IdentityService and registered
  with the transport. A fatal identity-level error destroys it and
  recreates it after a fixed delay; sessions tied to the old identity are
  abandoned and the remote side must reconnect.
- Outbound connect: one session per remote identity. Connecting to a peer
  that is already registered or pending is a no-op.
- Teardown: a closed or failed session is unregistered; there is no
  automatic reconnection.
- Broadcast: every registered session gets an independent send attempt.

Runs entirely on one asyncio loop, so the registry needs no locking.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from .config import SplitPeerConfig
from .identity import IdentityError, IdentityService
from .protocol import Message
from .session import PeerSession
from .transport import (
    FATAL_ERROR_TYPES,
    NOTICE_ERROR_TYPES,
    TransportError,
    TransportInterface,
    TransportLink,
)


PEER_UNAVAILABLE_NOTICE = (
    "Could not connect to peer. The ID might be invalid or the user is offline."
)


class ConnectionSupervisor:
    """Peer identity lifecycle, session registry and broadcast."""

    def __init__(self, transport: TransportInterface, identity_service: IdentityService,
                 handler, config: Optional[SplitPeerConfig] = None,
                 on_notice: Optional[Callable[[str], None]] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            transport: Peer-connection provider
            identity_service: Source of local peer ids
            handler: ProtocolHandler for inbound messages; its broadcaster
                is pointed at this supervisor
            config: Node configuration (reinit delay)
            on_notice: Receives user-visible notices (unreachable peers)
        """
        self.transport = transport
        self.identity_service = identity_service
        self.handler = handler
        self.config = config or SplitPeerConfig()
        self.on_notice = on_notice
        # Called with the remote id when an outbound connect is refused.
        self.on_peer_unavailable: Optional[Callable[[str], None]] = None
        self.logger = logger or logging.getLogger("splitpeer")

        handler.broadcaster = self

        self.peer_id: Optional[str] = None
        self._generation = 0
        self._sessions: Dict[str, PeerSession] = {}
        self._pending: Dict[str, PeerSession] = {}
        self._reinit_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Event] = None
        self._stopped = False

    def _log(self, msg: str, level: str = "info") -> None:
        getattr(self.logger, level)(f"splitpeer: supervisor: {msg}")

    def _notice(self, message: str) -> None:
        self._log(message, level="warning")
        if self.on_notice:
            try:
                self.on_notice(message)
            except Exception as e:
                self._log(f"notice callback error: {e}", level="warning")

    def _ready_event(self) -> asyncio.Event:
        if self._ready is None:
            self._ready = asyncio.Event()
        return self._ready

    # =========================================================================
    # IDENTITY LIFECYCLE
    # =========================================================================

    async def start(self) -> Optional[str]:
        """
        Acquire and register a local identity.

        Returns the peer id, or None if acquisition failed, in which case a
        re-initialization cycle has been scheduled.
        """
        self._stopped = False
        try:
            return await self._open_identity()
        except IdentityError as e:
            self._log(f"identity acquisition failed: {e}", level="error")
            self._schedule_reinit()
            return None

    async def _open_identity(self) -> str:
        peer_id = await self.identity_service.acquire()
        self._generation += 1
        generation = self._generation
        self.transport.listen(
            peer_id,
            on_connection=self._on_incoming,
            on_error=lambda error: self._on_identity_error(error, generation),
        )
        self.peer_id = peer_id
        self._ready_event().set()
        self._log(f"identity ready: {peer_id}")
        return peer_id

    async def wait_ready(self, timeout: Optional[float] = None) -> str:
        """Wait until a local identity is available and return it."""
        if self.peer_id is not None:
            return self.peer_id
        await asyncio.wait_for(self._ready_event().wait(), timeout)
        return self.peer_id

    def _abandon_identity(self) -> None:
        """Destroy the current identity and forget every session tied to it."""
        old_peer_id = self.peer_id
        self.peer_id = None
        self._ready_event().clear()
        self._sessions = {}
        self._pending = {}
        if old_peer_id is not None:
            self.transport.destroy(old_peer_id)

    def _on_identity_error(self, error: TransportError, generation: int) -> None:
        if generation != self._generation:
            return  # stale identity

        if error.type in NOTICE_ERROR_TYPES:
            if error.peer:
                self._pending.pop(error.peer, None)
            self._notice(PEER_UNAVAILABLE_NOTICE)
            if error.peer and self.on_peer_unavailable is not None:
                self.on_peer_unavailable(error.peer)
        elif error.type in FATAL_ERROR_TYPES:
            self._log(f"fatal transport error ({error.type}): {error}", level="error")
            self._schedule_reinit()
        else:
            self._log(f"transport error ({error.type}): {error}", level="warning")

    def _schedule_reinit(self) -> None:
        if self._stopped:
            return
        if self._reinit_task is not None and not self._reinit_task.done():
            return
        self._abandon_identity()
        self._reinit_task = asyncio.get_running_loop().create_task(self._reinitialize())

    async def _reinitialize(self) -> None:
        """Recreate the identity after a fixed delay, retrying until it works."""
        delay = self.config.reinit_delay_seconds
        while not self._stopped:
            self._log(f"recreating identity in {delay:.1f}s")
            await asyncio.sleep(delay)
            if self._stopped:
                return
            try:
                await self._open_identity()
                return
            except IdentityError as e:
                self._log(f"identity re-initialization failed: {e}", level="error")

    async def stop(self) -> None:
        """Close every session and release the identity."""
        self._stopped = True
        if self._reinit_task is not None and not self._reinit_task.done():
            self._reinit_task.cancel()
            try:
                await self._reinit_task
            except asyncio.CancelledError:
                pass
        for session in self.sessions:
            session.close()
        self._abandon_identity()
        await self.identity_service.close()

    @property
    def reinitializing(self) -> bool:
        return self._reinit_task is not None and not self._reinit_task.done()

    # =========================================================================
    # SESSIONS
    # =========================================================================

    @property
    def sessions(self) -> List[PeerSession]:
        """Snapshot of the registered sessions."""
        return list(self._sessions.values())

    def is_connected(self, remote_id: str) -> bool:
        return remote_id in self._sessions

    def connect(self, remote_id: str, name: str) -> Optional[PeerSession]:
        """
        Open an outbound session and send JOIN_REQUEST once it is open.

        Returns the new session, or None when the request is a no-op
        (empty id, our own id, or a peer already connected or pending).
        """
        if self.peer_id is None:
            raise RuntimeError("local peer identity is not ready")
        remote_id = (remote_id or "").strip()
        if not remote_id or remote_id == self.peer_id:
            return None
        if remote_id in self._sessions or remote_id in self._pending:
            self._log(f"already connected to {remote_id}", level="debug")
            return None

        link = self.transport.connect(self.peer_id, remote_id)
        session = self._attach(link, join_name=name)
        self._pending[remote_id] = session
        return session

    def _on_incoming(self, link: TransportLink) -> None:
        self._log(f"inbound connection from {link.peer}")
        self._attach(link)

    def _attach(self, link: TransportLink, join_name: Optional[str] = None) -> PeerSession:
        return PeerSession(
            link,
            self.handler,
            join_name=join_name,
            on_open=self._register,
            on_closed=self._unregister,
            logger=self.logger,
        )

    def _register(self, session: PeerSession) -> None:
        remote_id = session.remote_id
        if self._pending.get(remote_id) is session:
            del self._pending[remote_id]
        if remote_id in self._sessions:
            self._log(f"duplicate session from {remote_id} left unregistered", level="debug")
            return
        self._sessions[remote_id] = session
        self._log(f"session open: {remote_id} ({len(self._sessions)} connected)")

    def _unregister(self, session: PeerSession) -> None:
        remote_id = session.remote_id
        if self._pending.get(remote_id) is session:
            del self._pending[remote_id]
        if self._sessions.get(remote_id) is session:
            del self._sessions[remote_id]
            self._log(f"session closed: {remote_id} ({len(self._sessions)} connected)")

    def broadcast(self, message: Message, exclude: Optional[PeerSession] = None) -> int:
        """
        Send `message` to every registered open session except `exclude`.

        A failed send is logged and never affects the other sessions.
        Returns the number of successful sends.
        """
        sent = 0
        for session in self.sessions:
            if session is exclude or not session.is_open:
                continue
            try:
                session.send(message)
                sent += 1
            except Exception as e:
                self._log(f"broadcast to {session.remote_id} failed: {e}", level="warning")
        return sent

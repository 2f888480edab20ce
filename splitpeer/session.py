"""
Peer session for splitpeer.

A PeerSession wraps one TransportLink as an explicit state machine:

    CONNECTING --open--> OPEN --close/error--> CLOSED
    CONNECTING --close/error--> CLOSED

Side effects run on transitions only: registering with the supervisor and
sending the JOIN_REQUEST happen on entering OPEN, unregistering happens on
entering CLOSED. Listeners are attached in the constructor, before the
link can report "open", so the first inbound frame is never lost.
"""

import logging
from enum import Enum
from typing import Callable, Optional

from .protocol import Message, ProtocolError, create_join_request, decode, encode
from .transport import TransportLink


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


_TRANSITIONS = {
    SessionState.CONNECTING: {SessionState.OPEN, SessionState.CLOSED},
    SessionState.OPEN: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class PeerSession:
    """One live link to a remote replica holder."""

    def __init__(self, link: TransportLink, handler,
                 join_name: Optional[str] = None,
                 on_open: Optional[Callable[["PeerSession"], None]] = None,
                 on_closed: Optional[Callable[["PeerSession"], None]] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            link: Transport link, typically not yet open
            handler: ProtocolHandler receiving decoded inbound messages
            join_name: If set, this is an outbound session and a
                JOIN_REQUEST with this name is sent once the link opens
            on_open: Called after the transition to OPEN
            on_closed: Called after the transition to CLOSED
        """
        self.link = link
        self.handler = handler
        self.join_name = join_name
        self._on_open = on_open
        self._on_closed = on_closed
        self.logger = logger or logging.getLogger("splitpeer")
        self.state = SessionState.CONNECTING

        link.on("data", self._on_link_data)
        link.on("open", self._on_link_open)
        link.on("close", self._on_link_close)
        link.on("error", self._on_link_error)

        if link.open:
            self._on_link_open()

    def _log(self, msg: str, level: str = "info") -> None:
        getattr(self.logger, level)(f"splitpeer: session {self.remote_id}: {msg}")

    @property
    def remote_id(self) -> str:
        return self.link.peer

    @property
    def outbound(self) -> bool:
        return self.join_name is not None

    @property
    def is_open(self) -> bool:
        return self.state == SessionState.OPEN

    def _transition(self, new_state: SessionState) -> bool:
        if new_state not in _TRANSITIONS[self.state]:
            return False
        self._log(f"{self.state.value} -> {new_state.value}", level="debug")
        self.state = new_state
        return True

    # =========================================================================
    # LINK EVENTS
    # =========================================================================

    def _on_link_open(self) -> None:
        if not self._transition(SessionState.OPEN):
            return
        if self._on_open:
            self._on_open(self)
        if self.join_name is not None:
            self.send(create_join_request(self.join_name))

    def _on_link_data(self, data) -> None:
        if self.state == SessionState.CLOSED:
            return
        try:
            message = decode(data)
        except ProtocolError as e:
            self._log(f"dropping malformed message: {e}", level="warning")
            return
        try:
            self.handler.handle(message, self)
        except Exception as e:
            self._log(f"error handling {message.type.value}: {e}", level="error")

    def _on_link_close(self) -> None:
        self._enter_closed()

    def _on_link_error(self, error) -> None:
        self._log(f"link error: {error}", level="warning")
        self._enter_closed()

    def _enter_closed(self) -> None:
        if not self._transition(SessionState.CLOSED):
            return
        if self._on_closed:
            self._on_closed(self)

    # =========================================================================
    # OUTBOUND
    # =========================================================================

    def send(self, message: Message) -> None:
        """Encode and send one message; raises RuntimeError if not open."""
        if self.state != SessionState.OPEN:
            raise RuntimeError(f"session to {self.remote_id} is {self.state.value}")
        self.link.send(encode(message))

    def close(self) -> None:
        self.link.close()

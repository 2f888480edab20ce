"""Tests for the PeerSession state machine."""

import json
from unittest.mock import MagicMock

import pytest

from splitpeer.models import Group
from splitpeer.protocol import JoinRequest, create_group_update, encode
from splitpeer.session import PeerSession, SessionState


class _FakeLink:
    """Minimal TransportLink recording listeners and sent frames."""

    def __init__(self, peer="remote-1", is_open=False):
        self.peer = peer
        self.open = is_open
        self.listeners = {}
        self.sent = []
        self.closed = False

    def on(self, event, callback):
        self.listeners.setdefault(event, []).append(callback)

    def emit(self, event, *args):
        for callback in self.listeners.get(event, []):
            callback(*args)

    def send(self, data):
        self.sent.append(data)

    def close(self):
        self.closed = True


@pytest.fixture
def link():
    return _FakeLink()


@pytest.fixture
def handler():
    return MagicMock()


class TestLifecycle:

    def test_listeners_attached_before_open(self, link, handler):
        PeerSession(link, handler)
        assert set(link.listeners) == {"open", "data", "close", "error"}

    def test_open_then_close(self, link, handler):
        opened, closed = [], []
        session = PeerSession(link, handler, on_open=opened.append, on_closed=closed.append)
        assert session.state == SessionState.CONNECTING

        link.emit("open")
        assert session.state == SessionState.OPEN
        assert opened == [session]

        link.emit("close")
        assert session.state == SessionState.CLOSED
        assert closed == [session]

    def test_close_fires_once(self, link, handler):
        closed = []
        PeerSession(link, handler, on_closed=closed.append)
        link.emit("open")
        link.emit("error", RuntimeError("reset"))
        link.emit("close")
        assert len(closed) == 1

    def test_closed_session_cannot_reopen(self, link, handler):
        session = PeerSession(link, handler)
        link.emit("close")
        link.emit("open")
        assert session.state == SessionState.CLOSED

    def test_already_open_link(self, handler):
        link = _FakeLink(is_open=True)
        session = PeerSession(link, handler)
        assert session.is_open


class TestOutbound:

    def test_join_request_sent_on_open(self, link, handler):
        session = PeerSession(link, handler, join_name="Carol")
        assert session.outbound
        assert link.sent == []

        link.emit("open")

        assert json.loads(link.sent[0]) == {"type": "JOIN_REQUEST", "name": "Carol"}

    def test_inbound_session_sends_nothing_on_open(self, link, handler):
        PeerSession(link, handler)
        link.emit("open")
        assert link.sent == []

    def test_send_requires_open(self, link, handler):
        session = PeerSession(link, handler)
        with pytest.raises(RuntimeError):
            session.send(JoinRequest(name="x"))

    def test_close_delegates_to_link(self, link, handler):
        PeerSession(link, handler).close()
        assert link.closed


class TestInbound:

    def test_decoded_message_dispatched(self, link, handler):
        session = PeerSession(link, handler)
        link.emit("open")
        link.emit("data", encode(create_group_update(Group(id="g1", name="T"))))

        message, origin = handler.handle.call_args[0]
        assert message.group.id == "g1"
        assert origin is session

    def test_malformed_message_dropped(self, link, handler):
        logger = MagicMock()
        session = PeerSession(link, handler, logger=logger)
        link.emit("open")
        link.emit("data", "{not json")

        handler.handle.assert_not_called()
        assert logger.warning.called
        assert session.is_open
        assert link.sent == []

    def test_handler_error_does_not_close_session(self, link, handler):
        handler.handle.side_effect = RuntimeError("bad state")
        session = PeerSession(link, handler, logger=MagicMock())
        link.emit("open")
        link.emit("data", encode(JoinRequest(name="x")))
        assert session.is_open

    def test_data_after_close_ignored(self, link, handler):
        PeerSession(link, handler)
        link.emit("close")
        link.emit("data", encode(JoinRequest(name="x")))
        handler.handle.assert_not_called()

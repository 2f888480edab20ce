"""
Inbound message dispatch for splitpeer.

ProtocolHandler applies decoded messages to a ReplicaStore. There is one
handler per MessageType and the table is checked for completeness at
construction time, so adding a message kind without a handler fails fast.

Consistency model: GROUP_UPDATE and GROUP_SYNC replace a replica
wholesale (last-write-wins, no merge); ADD_COMMENT only appends, so it is
never lost to a concurrent snapshot from another peer.
"""

import logging
from typing import Callable, Dict, List, Optional

from .ledger import add_user, find_user_by_name
from .models import Group
from .protocol import (
    AddComment,
    GroupSync,
    GroupUpdate,
    JoinRequest,
    Message,
    MessageType,
    create_group_sync,
    create_group_update,
)
from .replica_store import ReplicaStore


# Listener events
EVENT_GROUP_UPDATED = "group_updated"
EVENT_GROUP_SYNCED = "group_synced"
EVENT_COMMENT_ADDED = "comment_added"
EVENT_USER_JOINED = "user_joined"


class ProtocolHandler:
    """Apply inbound protocol messages to the local replica store."""

    def __init__(self, store: ReplicaStore, broadcaster=None,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            store: ReplicaStore owned by this process
            broadcaster: Object with broadcast(message, exclude=None), usually
                the ConnectionSupervisor; may be wired after construction
        """
        self.store = store
        self.broadcaster = broadcaster
        self.logger = logger or logging.getLogger("splitpeer")
        # Local identity adopted from the last GROUP_SYNC.
        self.local_user_id: Optional[str] = None
        self._listeners: List[Callable[[str, Group], None]] = []
        # Called with (remote_id, group) when a GROUP_SYNC arrives on a session.
        self.on_synced: Optional[Callable[[str, Group], None]] = None

        self._handlers: Dict[MessageType, Callable] = {
            MessageType.GROUP_UPDATE: self._handle_group_update,
            MessageType.JOIN_REQUEST: self._handle_join_request,
            MessageType.GROUP_SYNC: self._handle_group_sync,
            MessageType.ADD_COMMENT: self._handle_add_comment,
        }
        missing = set(MessageType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"no handler for: {sorted(m.value for m in missing)}")

    def _log(self, msg: str, level: str = "info") -> None:
        getattr(self.logger, level)(f"splitpeer: dispatch: {msg}")

    def add_listener(self, callback: Callable[[str, Group], None]) -> None:
        """Register callback(event, group) fired after every applied change."""
        self._listeners.append(callback)

    def _notify(self, event: str, group: Group) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, group)
            except Exception as e:
                self._log(f"listener error on {event}: {e}", level="warning")

    def handle(self, message: Message, session) -> None:
        """Dispatch one decoded message received on `session`."""
        self._handlers[message.type](message, session)

    # =========================================================================
    # HANDLERS
    # =========================================================================

    def _handle_group_update(self, message: GroupUpdate, session) -> None:
        if self.store.apply_remote_update(message.group):
            self._notify(EVENT_GROUP_UPDATED, message.group)

    def _handle_join_request(self, message: JoinRequest, session) -> None:
        group = self.store.active_group()
        if group is None:
            self._log(f"join request from {session.remote_id} ignored: no active group",
                      level="warning")
            return

        user = find_user_by_name(group, message.name)
        if user is None:
            group = add_user(group, message.name)
            user = find_user_by_name(group, message.name)
            self.store.upsert_local(group)
            self._log(f"created user '{user.name}' for peer {session.remote_id}")
            if self.broadcaster is not None:
                self.broadcaster.broadcast(create_group_update(group), exclude=session)
            self._notify(EVENT_USER_JOINED, group)

        session.send(create_group_sync(group, user))

    def _handle_group_sync(self, message: GroupSync, session) -> None:
        group = message.group
        self.store.insert_or_replace(group)
        self.store.set_active(group.id)
        self.local_user_id = message.assigned_user.id
        self._log(f"synced group {group.id} as '{message.assigned_user.name}'")
        self._notify(EVENT_GROUP_SYNCED, group)
        if self.on_synced is not None:
            self.on_synced(session.remote_id, group)

    def _handle_add_comment(self, message: AddComment, session) -> None:
        if self.store.append_comment(message.group_id, message.expense_id, message.comment):
            self._notify(EVENT_COMMENT_ADDED, self.store.get(message.group_id))

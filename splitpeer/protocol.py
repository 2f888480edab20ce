"""
Wire protocol for splitpeer replica sync.

Every message is a UTF-8 JSON object tagged by a "type" field, with the
payload fields flattened beside it:

    {"type": "GROUP_UPDATE", "group": {...}}
    {"type": "JOIN_REQUEST", "name": "alice"}
    {"type": "GROUP_SYNC", "group": {...}, "assignedUser": {...}}
    {"type": "ADD_COMMENT", "groupId": "...", "expenseId": "...", "comment": {...}}

There is no version field, no compression and no encryption; the transport
provides a reliable, ordered channel per link.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from .models import Comment, Group, User


class MessageType(str, Enum):
    GROUP_UPDATE = "GROUP_UPDATE"
    JOIN_REQUEST = "JOIN_REQUEST"
    GROUP_SYNC = "GROUP_SYNC"
    ADD_COMMENT = "ADD_COMMENT"


# Join names longer than this are rejected at decode time.
MAX_JOIN_NAME_LENGTH = 100


class ProtocolError(ValueError):
    """Raised when an inbound frame cannot be decoded into a message."""


@dataclass
class GroupUpdate:
    group: Group
    type = MessageType.GROUP_UPDATE

    def to_payload(self) -> Dict[str, Any]:
        return {"group": self.group.to_dict()}


@dataclass
class JoinRequest:
    name: str
    type = MessageType.JOIN_REQUEST

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name}


@dataclass
class GroupSync:
    group: Group
    assigned_user: User
    type = MessageType.GROUP_SYNC

    def to_payload(self) -> Dict[str, Any]:
        return {"group": self.group.to_dict(), "assignedUser": self.assigned_user.to_dict()}


@dataclass
class AddComment:
    group_id: str
    expense_id: str
    comment: Comment
    type = MessageType.ADD_COMMENT

    def to_payload(self) -> Dict[str, Any]:
        return {
            "groupId": self.group_id,
            "expenseId": self.expense_id,
            "comment": self.comment.to_dict(),
        }


Message = Union[GroupUpdate, JoinRequest, GroupSync, AddComment]


# =============================================================================
# FACTORIES
# =============================================================================

def create_group_update(group: Group) -> GroupUpdate:
    return GroupUpdate(group=group)


def create_join_request(name: str) -> JoinRequest:
    name = (name or "").strip()
    if not name:
        raise ValueError("name is required")
    return JoinRequest(name=name)


def create_group_sync(group: Group, assigned_user: User) -> GroupSync:
    return GroupSync(group=group, assigned_user=assigned_user)


def create_add_comment(group_id: str, expense_id: str, comment: Comment) -> AddComment:
    return AddComment(group_id=group_id, expense_id=expense_id, comment=comment)


# =============================================================================
# ENCODING
# =============================================================================

def coerce_message_type(value: Any) -> Optional[MessageType]:
    """Best-effort conversion of a wire tag to MessageType."""
    if isinstance(value, MessageType):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    # Accept "GROUP_UPDATE", "group_update" and "MessageType.GROUP_UPDATE"
    name = raw.split(".")[-1].upper()
    try:
        return MessageType[name]
    except KeyError:
        return None


def encode(message: Message) -> str:
    """Encode a message to its JSON text form."""
    frame = {"type": message.type.value}
    frame.update(message.to_payload())
    return json.dumps(frame, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not allowed")


def _parse_payload(msg_type: MessageType, frame: Dict[str, Any]) -> Message:
    if msg_type == MessageType.GROUP_UPDATE:
        return GroupUpdate(group=Group.from_dict(frame.get("group")))

    if msg_type == MessageType.JOIN_REQUEST:
        name = frame.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("JOIN_REQUEST requires a non-empty name")
        if len(name) > MAX_JOIN_NAME_LENGTH:
            raise ValueError("JOIN_REQUEST name too long")
        return JoinRequest(name=name.strip())

    if msg_type == MessageType.GROUP_SYNC:
        return GroupSync(
            group=Group.from_dict(frame.get("group")),
            assigned_user=User.from_dict(frame.get("assignedUser")),
        )

    if msg_type == MessageType.ADD_COMMENT:
        group_id = frame.get("groupId")
        expense_id = frame.get("expenseId")
        if not isinstance(group_id, str) or not isinstance(expense_id, str):
            raise ValueError("ADD_COMMENT requires groupId and expenseId")
        return AddComment(
            group_id=group_id,
            expense_id=expense_id,
            comment=Comment.from_dict(frame.get("comment")),
        )

    raise ValueError(f"unhandled message type: {msg_type}")


def decode(data: Union[str, bytes]) -> Message:
    """
    Decode one inbound frame.

    Raises ProtocolError for anything that is not exactly one of the four
    known messages with a well-formed payload.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"frame is not valid UTF-8: {e}")
    if not isinstance(data, str):
        raise ProtocolError(f"unsupported frame type: {type(data).__name__}")

    try:
        frame = json.loads(data, parse_constant=_reject_constant)
    except (ValueError, RecursionError) as e:
        raise ProtocolError(f"frame is not valid JSON: {e}")
    if not isinstance(frame, dict):
        raise ProtocolError("frame must be a JSON object")

    msg_type = coerce_message_type(frame.get("type"))
    if msg_type is None:
        raise ProtocolError(f"unknown message type: {frame.get('type')!r}")

    try:
        return _parse_payload(msg_type, frame)
    except (ValueError, OverflowError, RecursionError) as e:
        raise ProtocolError(f"invalid {msg_type.value} payload: {e}")

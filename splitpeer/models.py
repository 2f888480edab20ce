"""
Ledger data model for splitpeer.

Every aggregate is a plain dataclass with to_dict()/from_dict() helpers.
The dict form is the wire and storage encoding, so it keeps the camelCase
keys (userId, splitType, ...) used by the browser clients we interoperate
with.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


class SplitType(str, Enum):
    """How an expense amount is divided among its participants."""
    EQUAL = "equal"
    AMOUNT = "amount"
    PERCENTAGE = "percentage"


def _require(data: Dict[str, Any], key: str, kind: str) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"{kind} must be an object")
    if key not in data:
        raise ValueError(f"{kind} is missing '{key}'")
    return data[key]


def _number(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{what} must be a number")
    try:
        number = float(value)
    except OverflowError:
        raise ValueError(f"{what} is out of range")
    if not math.isfinite(number):
        raise ValueError(f"{what} must be finite")
    return number


def _list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} must be a list")
    return value


@dataclass
class User:
    id: str
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(_require(data, "id", "user")),
            name=str(_require(data, "name", "user")),
        )


@dataclass
class Payer:
    """Portion of an expense total paid by one user."""
    user_id: str
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "amount": self.amount}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Payer":
        return cls(
            user_id=str(_require(data, "userId", "payer")),
            amount=_number(_require(data, "amount", "payer"), "payer amount"),
        )


@dataclass
class Participant:
    """A user sharing an expense; share is an amount or a percentage."""
    user_id: str
    share: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "share": self.share}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        return cls(
            user_id=str(_require(data, "userId", "participant")),
            share=_number(data.get("share", 0), "participant share"),
        )


@dataclass
class Comment:
    id: str
    user_id: str
    user_name: str
    text: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "userName": self.user_name,
            "text": self.text,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Comment":
        return cls(
            id=str(_require(data, "id", "comment")),
            user_id=str(data.get("userId", "")),
            user_name=str(data.get("userName", "")),
            text=str(data.get("text", "")),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class Expense:
    id: str
    title: str
    amount: float
    payers: List[Payer] = field(default_factory=list)
    participants: List[Participant] = field(default_factory=list)
    split_type: SplitType = SplitType.EQUAL
    date: str = ""
    # Append-only; see ReplicaStore.append_comment.
    comments: List[Comment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "amount": self.amount,
            "payers": [p.to_dict() for p in self.payers],
            "participants": [p.to_dict() for p in self.participants],
            "splitType": self.split_type.value,
            "date": self.date,
            "comments": [c.to_dict() for c in self.comments],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Expense":
        raw_split = _require(data, "splitType", "expense")
        try:
            split_type = SplitType(raw_split)
        except ValueError:
            raise ValueError(f"unknown splitType: {raw_split!r}")
        return cls(
            id=str(_require(data, "id", "expense")),
            title=str(data.get("title", "")),
            amount=_number(_require(data, "amount", "expense"), "expense amount"),
            payers=[Payer.from_dict(p) for p in _list(data.get("payers"), "payers")],
            participants=[
                Participant.from_dict(p)
                for p in _list(data.get("participants"), "participants")
            ],
            split_type=split_type,
            date=str(data.get("date", "")),
            # Older clients may omit comments entirely.
            comments=[Comment.from_dict(c) for c in _list(data.get("comments"), "comments")],
        )


@dataclass
class Group:
    """Unit of replication: replaced wholesale on full-group messages."""
    id: str
    name: str
    users: List[User] = field(default_factory=list)
    expenses: List[Expense] = field(default_factory=list)

    def find_user(self, user_id: str):
        for user in self.users:
            if user.id == user_id:
                return user
        return None

    def find_expense(self, expense_id: str):
        for expense in self.expenses:
            if expense.id == expense_id:
                return expense
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "users": [u.to_dict() for u in self.users],
            "expenses": [e.to_dict() for e in self.expenses],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Group":
        return cls(
            id=str(_require(data, "id", "group")),
            name=str(data.get("name", "")),
            users=[User.from_dict(u) for u in _list(data.get("users"), "users")],
            expenses=[Expense.from_dict(e) for e in _list(data.get("expenses"), "expenses")],
        )


@dataclass
class Balance:
    """Derived, never persisted. Positive = owed money, negative = owes money."""
    user: User
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return {"user": self.user.to_dict(), "amount": self.amount}


@dataclass
class Transaction:
    """A settlement instruction: from_user pays to_user."""
    from_user: User
    to_user: User
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_user.to_dict(),
            "to": self.to_user.to_dict(),
            "amount": self.amount,
        }

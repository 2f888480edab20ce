"""
Group editing helpers for splitpeer.

Local edits never mutate a stored replica in place: each helper returns a
new Group which the caller hands to ReplicaStore.upsert_local() and then
broadcasts as a GROUP_UPDATE. The only exception is comment append, which
goes through ReplicaStore.append_comment().
"""

import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional

from .models import Comment, Expense, Group, SplitType, User
from .settlement import SETTLEMENT_EPSILON


def new_id() -> str:
    """Generate an id unique across peers."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def create_group(name: str, group_id: Optional[str] = None) -> Group:
    name = (name or "").strip()
    if not name:
        raise ValueError("group name is required")
    return Group(id=group_id or new_id(), name=name)


def find_user_by_name(group: Group, name: str) -> Optional[User]:
    """Case-insensitive name lookup."""
    wanted = (name or "").strip().casefold()
    for user in group.users:
        if user.name.casefold() == wanted:
            return user
    return None


def add_user(group: Group, name: str, user_id: Optional[str] = None) -> Group:
    """
    Return a copy of `group` with a new user appended.

    Names are unique case-insensitively; adding an existing name returns
    the group unchanged.
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("user name is required")
    if find_user_by_name(group, name) is not None:
        return group
    user = User(id=user_id or new_id(), name=name)
    return replace(group, users=group.users + [user])


def remove_user(group: Group, user_id: str) -> Group:
    """
    Return a copy of `group` without the user and without references to it.

    Expenses the user paid for are dropped, the user is removed from the
    participants of the rest, and expenses left with no participants are
    dropped too.
    """
    expenses: List[Expense] = []
    for expense in group.expenses:
        if any(p.user_id == user_id for p in expense.payers):
            continue
        participants = [p for p in expense.participants if p.user_id != user_id]
        if not participants:
            continue
        expenses.append(replace(expense, participants=participants))

    return replace(
        group,
        users=[u for u in group.users if u.id != user_id],
        expenses=expenses,
    )


def save_expense(group: Group, expense: Expense) -> Group:
    """
    Add or edit an expense.

    An expense whose id already exists replaces the old one but keeps the
    existing comment thread. New expenses start with an empty thread.
    """
    existing = group.find_expense(expense.id)
    if existing is None:
        return replace(group, expenses=group.expenses + [replace(expense, comments=[])])

    edited = replace(expense, comments=list(existing.comments))
    return replace(
        group,
        expenses=[edited if e.id == expense.id else e for e in group.expenses],
    )


def remove_expense(group: Group, expense_id: str) -> Group:
    return replace(group, expenses=[e for e in group.expenses if e.id != expense_id])


def new_comment(user: User, text: str) -> Comment:
    text = (text or "").strip()
    if not text:
        raise ValueError("comment text is required")
    return Comment(
        id=new_id(),
        user_id=user.id,
        user_name=user.name,
        text=text,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


def validate_expense(expense: Expense, group: Optional[Group] = None) -> List[str]:
    """
    Check the data-entry invariants an expense must satisfy before it is
    stored or transmitted.

    Returns a list of human-readable errors; an empty list means valid.
    """
    errors: List[str] = []

    if not expense.title.strip():
        errors.append("title is required")
    if expense.amount <= 0:
        errors.append("amount must be positive")
    if not expense.payers:
        errors.append("at least one payer is required")
    if not expense.participants:
        errors.append("at least one participant is required")

    if expense.payers:
        paid = sum(p.amount for p in expense.payers)
        if abs(paid - expense.amount) > SETTLEMENT_EPSILON:
            errors.append(
                f"payer amounts must sum to {expense.amount:.2f} (got {paid:.2f})"
            )

    if expense.participants and expense.split_type != SplitType.EQUAL:
        total_share = sum(p.share for p in expense.participants)
        if expense.split_type == SplitType.AMOUNT:
            if abs(total_share - expense.amount) > SETTLEMENT_EPSILON:
                errors.append(
                    f"custom amounts must sum to {expense.amount:.2f} (got {total_share:.2f})"
                )
        elif abs(total_share - 100) > SETTLEMENT_EPSILON:
            errors.append(f"percentages must sum to 100 (got {total_share:.2f})")

    if group is not None:
        known = {u.id for u in group.users}
        referenced = [p.user_id for p in expense.payers] + [p.user_id for p in expense.participants]
        unknown = sorted({uid for uid in referenced if uid not in known})
        if unknown:
            errors.append(f"unknown users: {', '.join(unknown)}")

    return errors

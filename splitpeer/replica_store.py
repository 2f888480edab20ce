"""
Replica store for splitpeer.

Owns this process's copies of every Group it holds and the id of the
locally active group. Local edits and remote full-group messages replace a
replica wholesale (last-write-wins); the only field-level merge is comment
append, which dedupes by comment id so redelivery is harmless.

The store performs no I/O. Persistence and UI refresh are triggered by the
caller after a mutation.
"""

import logging
from typing import Dict, List, Optional, Tuple

from .models import Comment, Group


class ReplicaStore:
    """In-memory set of Group replicas, keyed by group id in insertion order."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("splitpeer")
        self._groups: Dict[str, Group] = {}
        self._active_group_id: Optional[str] = None

    def _log(self, msg: str, level: str = "info") -> None:
        getattr(self.logger, level)(f"splitpeer: store: {msg}")

    # =========================================================================
    # WRITES
    # =========================================================================

    def upsert_local(self, group: Group) -> None:
        """Local edit path: insert or replace the replica in full."""
        self._groups[group.id] = group

    def apply_remote_update(self, group: Group) -> bool:
        """
        Inbound GROUP_UPDATE: replace the replica in full.

        Updates for a group we do not hold are ignored; a replica is only
        created locally or through GROUP_SYNC. Returns True if applied.
        """
        if group.id not in self._groups:
            self._log(f"ignoring update for unknown group {group.id}", level="debug")
            return False
        self._groups[group.id] = group
        return True

    def insert_or_replace(self, group: Group) -> bool:
        """Inbound GROUP_SYNC: store the replica. Returns True if it was new."""
        is_new = group.id not in self._groups
        self._groups[group.id] = group
        return is_new

    def append_comment(self, group_id: str, expense_id: str, comment: Comment) -> bool:
        """
        Append a comment to an expense's thread.

        A comment whose id is already present is a no-op. Returns True if
        the comment was appended.
        """
        group = self._groups.get(group_id)
        if group is None:
            self._log(f"comment for unknown group {group_id} dropped", level="debug")
            return False
        expense = group.find_expense(expense_id)
        if expense is None:
            self._log(f"comment for unknown expense {expense_id} dropped", level="debug")
            return False
        if any(existing.id == comment.id for existing in expense.comments):
            return False
        expense.comments.append(comment)
        return True

    def remove(self, group_id: str) -> bool:
        """Drop a replica. Deletion is always caller-driven."""
        removed = self._groups.pop(group_id, None) is not None
        if removed and self._active_group_id == group_id:
            self._active_group_id = None
        return removed

    def clear(self) -> None:
        self._groups.clear()
        self._active_group_id = None

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, group_id: str) -> Optional[Group]:
        return self._groups.get(group_id)

    def list_all(self) -> List[Group]:
        return list(self._groups.values())

    def __len__(self) -> int:
        return len(self._groups)

    def __contains__(self, group_id: str) -> bool:
        return group_id in self._groups

    # =========================================================================
    # ACTIVE GROUP
    # =========================================================================

    @property
    def active_group_id(self) -> Optional[str]:
        """
        Id of the locally active group.

        A stale or missing id falls back to the first held group, or None
        when the store is empty.
        """
        if self._active_group_id in self._groups:
            return self._active_group_id
        if self._groups:
            return next(iter(self._groups))
        return None

    def set_active(self, group_id: Optional[str]) -> None:
        if group_id is not None and group_id not in self._groups:
            raise ValueError(f"unknown group: {group_id}")
        self._active_group_id = group_id

    def active_group(self) -> Optional[Group]:
        group_id = self.active_group_id
        return self._groups.get(group_id) if group_id else None

    # =========================================================================
    # PERSISTENCE HELPERS
    # =========================================================================

    def snapshot(self) -> Tuple[List[Group], Optional[str]]:
        """Return (groups, active_group_id) for the persistence layer."""
        return self.list_all(), self.active_group_id

    def restore(self, groups: List[Group], active_group_id: Optional[str]) -> None:
        """Replace all state with previously persisted values."""
        self._groups = {group.id: group for group in groups}
        self._active_group_id = active_group_id

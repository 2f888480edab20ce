"""
Local persistence for splitpeer.

State is two independently keyed values in a get/set blob store:

- "expense_groups": JSON list of every Group replica
- "active_group_id": JSON string (or null)

Both are read once at startup and rewritten after every mutation. There
is no schema version and no migration path.
"""

import json
import logging
import sqlite3
import time
from typing import Dict, List, Optional, Tuple

from .models import Group
from .replica_store import ReplicaStore


GROUPS_KEY = "expense_groups"
ACTIVE_GROUP_KEY = "active_group_id"


class BlobStore:
    """Abstract base class for a string key-value store."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release any underlying resources."""


class MemoryBlobStore(BlobStore):
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key):
        return self._data.get(key)

    def set(self, key, value):
        self._data[key] = value

    def delete(self, key):
        self._data.pop(key, None)


class SqliteBlobStore(BlobStore):
    """Blob store backed by a single sqlite table."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, isolation_level=None)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS splitpeer_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
        return self._conn

    def get(self, key):
        row = self._get_connection().execute(
            "SELECT value FROM splitpeer_state WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    def set(self, key, value):
        self._get_connection().execute(
            "INSERT OR REPLACE INTO splitpeer_state (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, int(time.time())),
        )

    def delete(self, key):
        self._get_connection().execute("DELETE FROM splitpeer_state WHERE key = ?", (key,))

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class StatePersister:
    """Read and write a ReplicaStore's state through a BlobStore."""

    def __init__(self, blobs: BlobStore, logger: Optional[logging.Logger] = None):
        self.blobs = blobs
        self.logger = logger or logging.getLogger("splitpeer")

    def _log(self, msg: str, level: str = "info") -> None:
        getattr(self.logger, level)(f"splitpeer: storage: {msg}")

    def load(self) -> Tuple[List[Group], Optional[str]]:
        """
        Read persisted state.

        Unreadable values are logged and treated as absent so a corrupt
        entry never blocks startup.
        """
        groups: List[Group] = []
        raw_groups = self.blobs.get(GROUPS_KEY)
        if raw_groups:
            try:
                data = json.loads(raw_groups)
                if not isinstance(data, list):
                    raise ValueError("expected a list")
                groups = [Group.from_dict(item) for item in data]
            except (ValueError, RecursionError) as e:
                self._log(f"ignoring unreadable {GROUPS_KEY}: {e}", level="error")
                groups = []

        active_group_id = None
        raw_active = self.blobs.get(ACTIVE_GROUP_KEY)
        if raw_active:
            try:
                value = json.loads(raw_active)
                active_group_id = value if isinstance(value, str) else None
            except ValueError as e:
                self._log(f"ignoring unreadable {ACTIVE_GROUP_KEY}: {e}", level="error")

        return groups, active_group_id

    def load_into(self, store: ReplicaStore) -> None:
        groups, active_group_id = self.load()
        store.restore(groups, active_group_id)
        self._log(f"loaded {len(groups)} group(s)")

    def save(self, store: ReplicaStore) -> None:
        groups, active_group_id = store.snapshot()
        self.blobs.set(
            GROUPS_KEY,
            json.dumps([g.to_dict() for g in groups], separators=(",", ":"), allow_nan=False),
        )
        self.blobs.set(ACTIVE_GROUP_KEY, json.dumps(active_group_id))

    def reset(self) -> None:
        self.blobs.delete(GROUPS_KEY)
        self.blobs.delete(ACTIVE_GROUP_KEY)

"""
Application facade for a splitpeer node.

LedgerNode wires the pieces together for a UI or script:

    storage  -> ReplicaStore <- ProtocolHandler <- PeerSession
                     |                                  ^
                SettlementEngine          ConnectionSupervisor

Every local edit replaces the active group in the store, persists, and
broadcasts a GROUP_UPDATE; comments are broadcast as ADD_COMMENT instead.
Inbound changes are persisted by a handler listener.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from . import ledger
from .config import SplitPeerConfig
from .dispatch import ProtocolHandler
from .identity import IdentityService, SignalingIdentityService
from .invite import build_invite_link, parse_invite
from .models import Balance, Comment, Expense, Group, Transaction, User
from .protocol import create_add_comment, create_group_update
from .replica_store import ReplicaStore
from .settlement import SettlementEngine, SettlementPlan
from .storage import BlobStore, MemoryBlobStore, SqliteBlobStore, StatePersister
from .supervisor import ConnectionSupervisor
from .transport import TransportInterface


JOIN_TIMEOUT_NOTICE = "Joining is taking longer than expected. The host may be offline."
IDENTITY_NOT_READY_NOTICE = "Still connecting to the network. Try joining again in a moment."


class LedgerNode:
    """One replica-holding peer process."""

    def __init__(self, transport: TransportInterface,
                 config: Optional[SplitPeerConfig] = None,
                 identity_service: Optional[IdentityService] = None,
                 blobs: Optional[BlobStore] = None,
                 on_notice: Optional[Callable[[str], None]] = None,
                 on_change: Optional[Callable[[], None]] = None,
                 logger: Optional[logging.Logger] = None):
        self.config = config or SplitPeerConfig()
        self.logger = logger or logging.getLogger("splitpeer")
        self.on_notice = on_notice
        self.on_change = on_change

        self._owns_blobs = blobs is None
        if blobs is None:
            if self.config.state_db_path:
                blobs = SqliteBlobStore(self.config.state_db_path)
            else:
                blobs = MemoryBlobStore()
        if identity_service is None:
            identity_service = SignalingIdentityService(
                self.config.signaling_url,
                key=self.config.signaling_key,
                timeout=self.config.signaling_timeout,
            )

        self.store = ReplicaStore(logger=self.logger)
        self.persister = StatePersister(blobs, logger=self.logger)
        self.handler = ProtocolHandler(self.store, logger=self.logger)
        self.handler.add_listener(self._on_replica_change)
        self.supervisor = ConnectionSupervisor(
            transport,
            identity_service,
            self.handler,
            config=self.config,
            on_notice=self._notice,
            logger=self.logger,
        )
        self.handler.on_synced = self._on_synced
        self.supervisor.on_peer_unavailable = self._on_peer_unavailable
        # Pending join() calls, keyed by the remote peer id being joined.
        self._sync_waiters: Dict[str, asyncio.Future] = {}

    def _log(self, msg: str, level: str = "info") -> None:
        getattr(self.logger, level)(f"splitpeer: node: {msg}")

    def _notice(self, message: str) -> None:
        if self.on_notice:
            self.on_notice(message)

    def _changed(self) -> None:
        self.persister.save(self.store)
        if self.on_change:
            try:
                self.on_change()
            except Exception as e:
                self._log(f"change callback error: {e}", level="warning")

    def _on_replica_change(self, event: str, group: Group) -> None:
        self._changed()

    def _resolve_join(self, remote_id: str, joined: bool) -> None:
        waiter = self._sync_waiters.pop(remote_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(joined)

    def _on_synced(self, remote_id: str, group: Group) -> None:
        self._resolve_join(remote_id, True)

    def _on_peer_unavailable(self, remote_id: str) -> None:
        self._resolve_join(remote_id, False)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> Optional[str]:
        """Load persisted state and acquire a peer identity."""
        self.persister.load_into(self.store)
        return await self.supervisor.start()

    async def stop(self) -> None:
        await self.supervisor.stop()
        for remote_id in list(self._sync_waiters):
            self._resolve_join(remote_id, False)
        if self._owns_blobs:
            self.persister.blobs.close()

    @property
    def peer_id(self) -> Optional[str]:
        return self.supervisor.peer_id

    # =========================================================================
    # READS
    # =========================================================================

    @property
    def active_group(self) -> Optional[Group]:
        return self.store.active_group()

    @property
    def current_user(self) -> Optional[User]:
        """Local identity in the active group; defaults to its first user."""
        group = self.active_group
        if group is None or not group.users:
            return None
        if self.handler.local_user_id:
            user = group.find_user(self.handler.local_user_id)
            if user is not None:
                return user
        return group.users[0]

    def set_current_user(self, user_id: str) -> None:
        group = self._require_active()
        if group.find_user(user_id) is None:
            raise ValueError(f"unknown user: {user_id}")
        self.handler.local_user_id = user_id

    def settlement(self) -> Optional[SettlementPlan]:
        group = self.active_group
        return SettlementEngine.settle(group) if group else None

    def balances(self) -> List[Balance]:
        plan = self.settlement()
        return plan.balances if plan else []

    def transactions(self) -> List[Transaction]:
        plan = self.settlement()
        return plan.transactions if plan else []

    # =========================================================================
    # LOCAL EDITS
    # =========================================================================

    def _require_active(self) -> Group:
        group = self.active_group
        if group is None:
            raise RuntimeError("no active group")
        return group

    def _commit(self, group: Group) -> Group:
        self.store.upsert_local(group)
        self._changed()
        self.supervisor.broadcast(create_group_update(group))
        return group

    def create_group(self, name: str) -> Group:
        """Create a group and make it active. Groups are shared by invite, not broadcast."""
        group = ledger.create_group(name)
        self.store.upsert_local(group)
        self.store.set_active(group.id)
        self._changed()
        return group

    def select_group(self, group_id: str) -> None:
        self.store.set_active(group_id)
        self._changed()

    def delete_group(self, group_id: str) -> bool:
        removed = self.store.remove(group_id)
        if removed:
            self._changed()
        return removed

    def add_user(self, name: str) -> Group:
        group = self._require_active()
        updated = ledger.add_user(group, name)
        if updated is group:
            return group
        return self._commit(updated)

    def delete_user(self, user_id: str) -> Group:
        return self._commit(ledger.remove_user(self._require_active(), user_id))

    def save_expense(self, expense: Expense) -> Group:
        """Add or edit an expense after validating it; raises ValueError if invalid."""
        group = self._require_active()
        errors = ledger.validate_expense(expense, group)
        if errors:
            raise ValueError("; ".join(errors))
        return self._commit(ledger.save_expense(group, expense))

    def delete_expense(self, expense_id: str) -> Group:
        return self._commit(ledger.remove_expense(self._require_active(), expense_id))

    def add_comment(self, expense_id: str, text: str) -> Comment:
        group = self._require_active()
        user = self.current_user
        if user is None:
            raise RuntimeError("no current user")
        if group.find_expense(expense_id) is None:
            raise ValueError(f"unknown expense: {expense_id}")

        comment = ledger.new_comment(user, text)
        self.store.append_comment(group.id, expense_id, comment)
        self._changed()
        self.supervisor.broadcast(create_add_comment(group.id, expense_id, comment))
        return comment

    def reset_data(self) -> None:
        """Delete every group and the persisted state."""
        self.store.clear()
        self.persister.reset()
        if self.on_change:
            self.on_change()

    # =========================================================================
    # COLLABORATION
    # =========================================================================

    def invite_code(self) -> Optional[str]:
        return self.peer_id

    def invite_link(self) -> Optional[str]:
        if not self.peer_id:
            return None
        return build_invite_link(self.config.invite_base_url, self.peer_id)

    async def join(self, invite: str, name: str, timeout: Optional[float] = None) -> bool:
        """
        Connect to the peer named by `invite` (raw id or link) and ask to join
        its active group as `name`.

        Returns True once that peer answers with GROUP_SYNC. Returns False
        when the peer is unreachable or on the soft timeout; the connection
        attempt is not cancelled, so a late GROUP_SYNC still applies.
        """
        remote_id = parse_invite(invite)
        name = (name or "").strip()
        if not name:
            raise ValueError("name is required")
        if timeout is None:
            timeout = self.config.join_timeout_seconds

        try:
            await self.supervisor.wait_ready(timeout)
        except asyncio.TimeoutError:
            self._notice(IDENTITY_NOT_READY_NOTICE)
            return False

        session = self.supervisor.connect(remote_id, name)
        if session is None:
            self._log(f"join to {remote_id} skipped: already connected or own id")
            return self.supervisor.is_connected(remote_id)

        waiter = asyncio.get_running_loop().create_future()
        self._sync_waiters[remote_id] = waiter
        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except asyncio.TimeoutError:
            if self._sync_waiters.get(remote_id) is waiter:
                del self._sync_waiters[remote_id]
            self._notice(JOIN_TIMEOUT_NOTICE)
            return False

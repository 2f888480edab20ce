"""
End-to-end tests for LedgerNode: two or three replicas joined over the
loopback transport, editing, commenting and settling.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from splitpeer.app import IDENTITY_NOT_READY_NOTICE, JOIN_TIMEOUT_NOTICE, LedgerNode
from splitpeer.config import SplitPeerConfig
from splitpeer.identity import IdentityError, IdentityService, StaticIdentityService
from splitpeer.models import Expense, Participant, Payer, SplitType
from splitpeer.storage import MemoryBlobStore
from splitpeer.supervisor import PEER_UNAVAILABLE_NOTICE
from splitpeer.transport import LoopbackTransport


async def _drain(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _node(hub, peer_id, blobs=None, notices=None, **config):
    config.setdefault("reinit_delay_seconds", 0.0)
    return LedgerNode(
        hub,
        config=SplitPeerConfig(**config),
        identity_service=StaticIdentityService([peer_id]),
        blobs=blobs if blobs is not None else MemoryBlobStore(),
        on_notice=notices.append if notices is not None else None,
    )


def _expense(node, amount=100.0, payer_name="Alice", expense_id="e1"):
    group = node.active_group
    by_name = {u.name: u for u in group.users}
    return Expense(
        id=expense_id,
        title="Dinner",
        amount=amount,
        payers=[Payer(user_id=by_name[payer_name].id, amount=amount)],
        participants=[Participant(user_id=u.id) for u in group.users],
        split_type=SplitType.EQUAL,
        date="2024-06-01",
    )


async def _joined_pair(hub):
    host = _node(hub, "host")
    guest = _node(hub, "guest")
    await host.start()
    await guest.start()
    host.create_group("Trip")
    host.add_user("Alice")
    assert await guest.join(host.invite_link(), "Bob", timeout=1.0)
    await _drain()
    return host, guest


class TestLocalEdits:

    def test_edits_are_persisted(self):
        async def scenario():
            blobs = MemoryBlobStore()
            node = _node(LoopbackTransport(), "solo", blobs=blobs)
            await node.start()
            node.create_group("Flat")
            node.add_user("Alice")
            node.add_user("Bob")
            node.save_expense(_expense(node, amount=60.0))
            await node.stop()

            restarted = _node(LoopbackTransport(), "solo-2", blobs=blobs)
            await restarted.start()
            group = restarted.active_group
            assert group.name == "Flat"
            assert [u.name for u in group.users] == ["Alice", "Bob"]
            assert len(group.expenses) == 1

        asyncio.run(scenario())

    def test_invalid_expense_rejected_and_not_stored(self):
        node = _node(LoopbackTransport(), "solo")
        node.create_group("Flat")
        node.add_user("Alice")
        expense = _expense(node)
        expense.payers[0].amount = 10.0
        with pytest.raises(ValueError, match="payer amounts"):
            node.save_expense(expense)
        assert node.active_group.expenses == []

    def test_duplicate_user_name_ignored(self):
        node = _node(LoopbackTransport(), "solo")
        node.create_group("Flat")
        node.add_user("Alice")
        node.add_user("ALICE")
        assert len(node.active_group.users) == 1

    def test_delete_user_prunes_expenses(self):
        node = _node(LoopbackTransport(), "solo")
        node.create_group("Flat")
        node.add_user("Alice")
        node.add_user("Bob")
        node.save_expense(_expense(node, payer_name="Bob"))
        bob = node.active_group.users[1]
        node.delete_user(bob.id)
        assert node.active_group.expenses == []

    def test_settlement_for_active_group(self):
        node = _node(LoopbackTransport(), "solo")
        assert node.settlement() is None
        assert node.balances() == []
        node.create_group("Flat")
        node.add_user("Alice")
        node.add_user("Bob")
        node.save_expense(_expense(node, amount=100.0))

        balances = {b.user.name: b.amount for b in node.balances()}
        assert balances == {"Alice": 50.0, "Bob": -50.0}
        [tx] = node.transactions()
        assert (tx.from_user.name, tx.to_user.name, tx.amount) == ("Bob", "Alice", 50.0)

    def test_edit_without_active_group(self):
        node = _node(LoopbackTransport(), "solo")
        with pytest.raises(RuntimeError):
            node.add_user("Alice")

    def test_reset_data(self):
        blobs = MemoryBlobStore()
        node = _node(LoopbackTransport(), "solo", blobs=blobs)
        node.create_group("Flat")
        node.reset_data()
        assert node.store.list_all() == []
        assert blobs.get("expense_groups") is None


class TestCollaboration:

    def test_join_via_link_adopts_identity(self):
        async def scenario():
            hub = LoopbackTransport()
            host, guest = await _joined_pair(hub)
            assert guest.active_group == host.active_group
            assert guest.current_user.name == "Bob"
            assert host.current_user.name == "Alice"

        asyncio.run(scenario())

    def test_expense_edit_replicates_both_ways(self):
        async def scenario():
            hub = LoopbackTransport()
            host, guest = await _joined_pair(hub)

            guest.save_expense(_expense(guest, amount=80.0, payer_name="Bob"))
            await _drain()
            assert host.active_group == guest.active_group

            host.delete_expense("e1")
            await _drain()
            assert guest.active_group.expenses == []

        asyncio.run(scenario())

    def test_comment_replicates_without_replacing_group(self):
        async def scenario():
            hub = LoopbackTransport()
            host, guest = await _joined_pair(hub)
            host.save_expense(_expense(host))
            await _drain()

            comment = guest.add_comment("e1", "I'll pay tomorrow")
            await _drain()

            [received] = host.active_group.find_expense("e1").comments
            assert received == comment
            assert received.user_name == "Bob"

        asyncio.run(scenario())

    def test_balances_agree_across_replicas(self):
        async def scenario():
            hub = LoopbackTransport()
            host, guest = await _joined_pair(hub)
            host.save_expense(_expense(host, amount=90.0))
            await _drain()

            host_plan = host.settlement().to_dict()
            guest_plan = guest.settlement().to_dict()
            assert host_plan == guest_plan

        asyncio.run(scenario())

    def test_join_unreachable_host_fails_fast(self):
        """An unreachable host yields a notice and False; the user can retry."""
        async def scenario():
            hub = LoopbackTransport()
            notices = []
            guest = _node(hub, "guest", notices=notices)
            await guest.start()

            joined = await guest.join("late-host", "Bob", timeout=5.0)
            assert joined is False
            assert PEER_UNAVAILABLE_NOTICE in notices
            assert JOIN_TIMEOUT_NOTICE not in notices

            host = _node(hub, "late-host")
            await host.start()
            host.create_group("Trip")
            # The first attempt failed as unreachable; the user retries.
            assert await guest.join("late-host", "Bob", timeout=1.0)
            assert guest.active_group.name == "Trip"

        asyncio.run(scenario())

    def test_late_sync_after_timeout_still_applies(self):
        async def scenario():
            hub = LoopbackTransport()
            host = _node(hub, "host")
            guest = _node(hub, "guest")
            await host.start()
            await guest.start()
            host.create_group("Trip")

            # Zero-length soft timeout: returns before the handshake completes.
            assert await guest.join("host", "Bob", timeout=0) is False
            await _drain()

            assert guest.active_group is not None
            assert guest.active_group.name == "Trip"
            assert guest.current_user.name == "Bob"

        asyncio.run(scenario())

    def test_join_already_connected_returns_true(self):
        async def scenario():
            hub = LoopbackTransport()
            host, guest = await _joined_pair(hub)
            assert await guest.join("host", "Bob", timeout=1.0) is True

        asyncio.run(scenario())

    def test_invite_code_and_link(self):
        async def scenario():
            node = _node(LoopbackTransport(), "abc123", invite_base_url="https://x.example/")
            assert node.invite_link() is None
            await node.start()
            assert node.invite_code() == "abc123"
            assert node.invite_link() == "https://x.example/?join=abc123"

        asyncio.run(scenario())

    def test_concurrent_joins_resolve_per_peer(self):
        async def scenario():
            hub = LoopbackTransport()
            host = _node(hub, "host")
            guest = _node(hub, "guest")
            await host.start()
            await guest.start()
            host.create_group("Trip")

            ghost, real = await asyncio.gather(
                guest.join("ghost", "Bob", timeout=0.5),
                guest.join(host.invite_link(), "Bob", timeout=0.5),
            )

            assert ghost is False
            assert real is True
            assert guest._sync_waiters == {}

        asyncio.run(scenario())

    def test_host_without_active_group_times_out(self):
        async def scenario():
            hub = LoopbackTransport()
            notices = []
            host = _node(hub, "host")
            guest = _node(hub, "guest", notices=notices)
            await host.start()
            await guest.start()

            assert await guest.join("host", "Bob", timeout=0.05) is False
            assert JOIN_TIMEOUT_NOTICE in notices
            assert guest._sync_waiters == {}

        asyncio.run(scenario())


class _UnavailableIdentity(IdentityService):

    async def acquire(self):
        raise IdentityError("signaling server unreachable")


class TestLifecycle:

    def test_join_before_identity_ready(self):
        async def scenario():
            notices = []
            node = LedgerNode(
                LoopbackTransport(),
                config=SplitPeerConfig(reinit_delay_seconds=300),
                identity_service=_UnavailableIdentity(),
                blobs=MemoryBlobStore(),
                on_notice=notices.append,
            )
            assert await node.start() is None

            assert await node.join("host", "Bob", timeout=0.01) is False
            assert notices == [IDENTITY_NOT_READY_NOTICE]
            await node.stop()

        asyncio.run(scenario())

    def test_stop_closes_owned_sqlite_store(self, tmp_path):
        async def scenario():
            node = LedgerNode(
                LoopbackTransport(),
                config=SplitPeerConfig(state_db_path=str(tmp_path / "state.db")),
                identity_service=StaticIdentityService(["solo"]),
            )
            await node.start()
            node.create_group("Flat")
            await node.stop()
            return node

        node = asyncio.run(scenario())
        assert node.persister.blobs._conn is None

    def test_stop_leaves_injected_store_open(self):
        blobs = MagicMock()
        blobs.get.return_value = None
        node = _node(LoopbackTransport(), "solo", blobs=blobs)

        async def scenario():
            await node.start()
            await node.stop()

        asyncio.run(scenario())
        blobs.close.assert_not_called()

#!/usr/bin/env python3
"""
splitpeer state inspector - look at and settle a node's persisted groups

Reads the sqlite state file a LedgerNode writes (state_db_path) without
starting any networking.

Usage:
    # List stored groups
    ./splitpeer-state.py --db state.db show

    # Print balances and the simplified transfer plan for a group
    ./splitpeer-state.py --db state.db settle --group <group-id>

    # Wipe all persisted groups
    ./splitpeer-state.py --db state.db reset --yes

Environment:
    SPLITPEER_CONFIG - Path to a JSON config file (alternative to --config)
    SPLITPEER_STATE_DB_PATH - Path to the state database (alternative to --db)
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from splitpeer.config import SplitPeerConfig
from splitpeer.replica_store import ReplicaStore
from splitpeer.settlement import SettlementEngine
from splitpeer.storage import SqliteBlobStore, StatePersister

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("splitpeer")


def _open_store(args):
    config = SplitPeerConfig.from_file(args.config) if args.config else SplitPeerConfig.from_env()
    db_path = args.db or config.state_db_path
    if not db_path:
        print("ERROR: no state database given (use --db or SPLITPEER_STATE_DB_PATH)")
        sys.exit(2)
    if not Path(db_path).exists():
        print(f"ERROR: state database not found at {db_path}")
        sys.exit(2)

    blobs = SqliteBlobStore(db_path)
    persister = StatePersister(blobs, logger=logger)
    store = ReplicaStore(logger=logger)
    persister.load_into(store)
    return blobs, persister, store


def cmd_show(args):
    blobs, _, store = _open_store(args)
    try:
        active = store.active_group_id
        rows = []
        for group in store.list_all():
            rows.append({
                "id": group.id,
                "name": group.name,
                "users": len(group.users),
                "expenses": len(group.expenses),
                "total": round(sum(e.amount for e in group.expenses), 2),
                "active": group.id == active,
            })
        print(json.dumps(rows, indent=2))
    finally:
        blobs.close()


def cmd_settle(args):
    blobs, _, store = _open_store(args)
    try:
        group = store.get(args.group) if args.group else store.active_group()
        if group is None:
            print("ERROR: no such group")
            sys.exit(1)
        print(json.dumps(SettlementEngine.settle(group).to_dict(), indent=2))
    finally:
        blobs.close()


def cmd_reset(args):
    if not args.yes:
        print("Refusing to reset without --yes")
        sys.exit(1)
    blobs, persister, store = _open_store(args)
    try:
        count = len(store)
        persister.reset()
        logger.info(f"splitpeer: state: removed {count} group(s)")
    finally:
        blobs.close()


def main():
    parser = argparse.ArgumentParser(
        description="splitpeer state inspector - show, settle and reset persisted groups"
    )
    parser.add_argument("--config", "-c", help="Path to a JSON config file")
    parser.add_argument("--db", help="Path to the sqlite state database")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("show", help="List stored groups")

    settle_parser = subparsers.add_parser("settle", help="Print balances and transfers")
    settle_parser.add_argument("--group", "-g", help="Group id (default: active group)")

    reset_parser = subparsers.add_parser("reset", help="Delete all persisted groups")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the reset")

    args = parser.parse_args()

    if args.command == "show":
        cmd_show(args)
    elif args.command == "settle":
        cmd_settle(args)
    elif args.command == "reset":
        cmd_reset(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

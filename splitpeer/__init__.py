"""splitpeer: serverless shared-expense ledger replicated between peers."""

from .app import LedgerNode
from .config import SplitPeerConfig
from .models import (
    Balance,
    Comment,
    Expense,
    Group,
    Participant,
    Payer,
    SplitType,
    Transaction,
    User,
)
from .replica_store import ReplicaStore
from .settlement import SettlementEngine, calculate_balances, simplify_debts

__version__ = "0.1.0"

__all__ = [
    "Balance",
    "Comment",
    "Expense",
    "Group",
    "LedgerNode",
    "Participant",
    "Payer",
    "ReplicaStore",
    "SettlementEngine",
    "SplitPeerConfig",
    "SplitType",
    "Transaction",
    "User",
    "calculate_balances",
    "simplify_debts",
]

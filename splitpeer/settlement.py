"""
Settlement engine for splitpeer.

Turns a Group snapshot into per-user balances and a short list of
payments that zeroes them.

Settlement Flow:
1. Credit every payer with what they paid on each expense
2. Debit every participant with their share (equal / amount / percentage)
3. Sort balances descending (stable, so ties keep user-list order)
4. Greedily match the largest debtor with the largest creditor until
   one side is exhausted

Pure computation: no state, no I/O. Safe to call on every UI refresh.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from .models import Balance, Expense, Group, SplitType, Transaction, User


# Absolute tolerance tied to 2-decimal currency rounding.
SETTLEMENT_EPSILON = 0.01


@dataclass
class SettlementPlan:
    """Balances and the payments that settle them, for one group snapshot."""
    group_id: str
    balances: List[Balance] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)

    @property
    def is_settled(self) -> bool:
        return not self.transactions

    def to_dict(self) -> Dict:
        return {
            "group_id": self.group_id,
            "balances": [b.to_dict() for b in self.balances],
            "transactions": [t.to_dict() for t in self.transactions],
        }


class SettlementEngine:
    """
    Compute balances and simplified debts from ledger snapshots.

    All methods are static; the engine holds no state between calls.
    """

    @staticmethod
    def participant_debits(expense: Expense) -> List[float]:
        """Return the amount each participant owes, in participant order."""
        participants = expense.participants
        if expense.split_type == SplitType.EQUAL:
            if not participants:
                return []
            share = expense.amount / len(participants)
            return [share for _ in participants]
        if expense.split_type == SplitType.AMOUNT:
            return [p.share for p in participants]
        if expense.split_type == SplitType.PERCENTAGE:
            return [expense.amount * p.share / 100 for p in participants]
        raise ValueError(f"unknown split type: {expense.split_type!r}")

    @staticmethod
    def calculate_balances(users: List[User], expenses: List[Expense]) -> List[Balance]:
        """
        Compute the net balance of every user.

        References to user ids that are not in `users` are ignored; callers
        prune them when a user is deleted.

        Returns balances sorted descending by amount. Python's sort is
        stable, so users with equal balances keep their original order.
        """
        if not users:
            return []

        totals: Dict[str, float] = {user.id: 0.0 for user in users}

        for expense in expenses:
            for payer in expense.payers:
                if payer.user_id in totals:
                    totals[payer.user_id] += payer.amount

            debits = SettlementEngine.participant_debits(expense)
            for participant, debit in zip(expense.participants, debits):
                if participant.user_id in totals:
                    totals[participant.user_id] -= debit

        balances = [Balance(user=user, amount=totals[user.id]) for user in users]
        balances.sort(key=lambda b: b.amount, reverse=True)
        return balances

    @staticmethod
    def simplify_debts(balances: List[Balance]) -> List[Transaction]:
        """
        Greedy minimum-transaction matching.

        Each round settles the largest remaining debtor against the largest
        remaining creditor, so at least one side drops out per round and the
        output never exceeds (non-zero users - 1) payments. This is a
        heuristic, not a globally optimal solver.
        """
        # Working copies: [user, remaining magnitude]
        debtors = [[b.user, -b.amount] for b in balances if b.amount <= -SETTLEMENT_EPSILON]
        creditors = [[b.user, b.amount] for b in balances if b.amount >= SETTLEMENT_EPSILON]

        transactions: List[Transaction] = []
        while debtors and creditors:
            # Stable re-sort keeps input order among equal magnitudes.
            debtors.sort(key=lambda entry: entry[1], reverse=True)
            creditors.sort(key=lambda entry: entry[1], reverse=True)

            debtor = debtors[0]
            creditor = creditors[0]
            settle = min(debtor[1], creditor[1])

            transactions.append(Transaction(
                from_user=debtor[0],
                to_user=creditor[0],
                amount=settle,
            ))

            debtor[1] -= settle
            creditor[1] -= settle

            if debtor[1] < SETTLEMENT_EPSILON:
                debtors.pop(0)
            if creditor[1] < SETTLEMENT_EPSILON:
                creditors.pop(0)

        return transactions

    @staticmethod
    def settle(group: Group) -> SettlementPlan:
        """Compute balances and payments for a group snapshot."""
        balances = SettlementEngine.calculate_balances(group.users, group.expenses)
        return SettlementPlan(
            group_id=group.id,
            balances=balances,
            transactions=SettlementEngine.simplify_debts(balances),
        )


def calculate_balances(users: List[User], expenses: List[Expense]) -> List[Balance]:
    return SettlementEngine.calculate_balances(users, expenses)


def simplify_debts(balances: List[Balance]) -> List[Transaction]:
    return SettlementEngine.simplify_debts(balances)

from typing import MutableMapping, Optional

from models import TransactionType
from schemas import BudgetData

MonthlyBudget = MutableMapping[str, BudgetData]


def joint_balance(data: BudgetData) -> float:
    balance = data.joint_account.initial_balance
    for txn in data.joint_account.transactions:
        if txn.type == TransactionType.deposit:
            balance += txn.amount
        else:
            balance -= txn.amount
    return balance


def _anchor_key(months: MonthlyBudget, start_key: str) -> Optional[str]:
    if start_key in months:
        return start_key
    earlier = [key for key in months if key < start_key]
    return max(earlier) if earlier else None


def recarry_from(months: MonthlyBudget, start_key: str) -> MonthlyBudget:
    """Fold the joint balance forward from ``start_key`` into every later month.

    When ``start_key`` is no longer materialized (a deleted month), the fold is
    anchored at the closest earlier month instead.
    """
    anchor = _anchor_key(months, start_key)
    if anchor is None:
        return months

    running_balance = joint_balance(months[anchor])
    for key in sorted(key for key in months if key > anchor):
        month = months[key]
        month.joint_account.initial_balance = running_balance
        running_balance = joint_balance(month)
    return months


def recarry_all(months: MonthlyBudget) -> MonthlyBudget:
    if not months:
        return months
    return recarry_from(months, min(months))

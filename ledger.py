from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Any, Callable, Iterable, Mapping, Optional

from carryover import recarry_all, recarry_from
from models import LineKind, PersonKey, TransactionType
from normalize import (
    coerce_number,
    default_budget_data,
    new_id,
    normalize_budget_data,
    serialize_budget_data,
)
from periods import add_months, is_valid_month_key, months_between
from propagation import (
    DEFAULT_RECURRING_MONTHS,
    PropagationResult,
    TemplatePropagationEngine,
)
from recurrence import is_active_in
from schemas import BudgetData, JointTransaction, LineItem
from summary import MonthSummary, summarize_month

logger = logging.getLogger(__name__)

ChangeListener = Callable[[set[str]], None]

DEFAULT_LINE_NAMES = {
    LineKind.income_sources: "New income source",
    LineKind.fixed_expenses: "New fixed expense",
    LineKind.categories: "New category",
}
DEFAULT_TRANSACTION_DESCRIPTIONS = {
    TransactionType.deposit: "New deposit",
    TransactionType.expense: "New expense",
}
_TRANSACTION_FIELDS = ("date", "description", "amount", "type", "person")


class MonthStore:
    """Owns the month map of one signed-in session.

    The map is materialized by :meth:`open` and cleared by :meth:`close`. All
    mutations go through the methods below so propagation and carryover always
    run before listeners are told which months changed.
    """

    def __init__(self, engine: Optional[TemplatePropagationEngine] = None) -> None:
        self.engine = engine or TemplatePropagationEngine()
        self.lock = threading.RLock()
        self._months: dict[str, BudgetData] = {}
        self._listeners: list[ChangeListener] = []
        self.is_open = False

    # lifecycle

    def open(self, months: Mapping[str, Any]) -> None:
        with self.lock:
            self._months = {
                key: normalize_budget_data(raw)
                for key, raw in months.items()
                if is_valid_month_key(key)
            }
            recarry_all(self._months)
            self.is_open = True
        logger.info(f"month_store_open: months={len(self._months)}")

    def close(self) -> None:
        with self.lock:
            self._months = {}
            self.is_open = False
        logger.info("month_store_closed")

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, keys: Iterable[str]) -> None:
        touched = set(keys)
        if not touched:
            return
        for listener in list(self._listeners):
            listener(touched)

    def _require_open(self) -> None:
        if not self.is_open:
            raise RuntimeError("Month store is not open")

    def _require_month(self, month_key: str) -> BudgetData:
        self._require_open()
        data = self._months.get(month_key)
        if data is None:
            raise ValueError(f"Month not found: {month_key}")
        return data

    def _recarry(self, start_key: str) -> set[str]:
        before = {
            key: data.joint_account.initial_balance
            for key, data in self._months.items()
        }
        recarry_from(self._months, start_key)
        return {
            key
            for key, data in self._months.items()
            if before.get(key) != data.joint_account.initial_balance
        }

    # reads

    def keys(self) -> list[str]:
        with self.lock:
            return sorted(self._months)

    def __contains__(self, month_key: object) -> bool:
        return month_key in self._months

    def __len__(self) -> int:
        return len(self._months)

    def get(self, month_key: str) -> Optional[BudgetData]:
        with self.lock:
            data = self._months.get(month_key)
            return data.model_copy(deep=True) if data is not None else None

    def snapshot(self) -> dict[str, BudgetData]:
        with self.lock:
            return {key: data.model_copy(deep=True) for key, data in self._months.items()}

    def serialized(self) -> dict[str, str]:
        with self.lock:
            return {
                key: serialize_budget_data(data) for key, data in self._months.items()
            }

    def summary(self, month_key: str) -> MonthSummary:
        with self.lock:
            return summarize_month(month_key, self._require_month(month_key))

    # months

    def ensure_month(self, month_key: str) -> bool:
        """Create default data for ``month_key`` when it is missing."""
        with self.lock:
            self._require_open()
            if month_key in self._months:
                return False
            if not is_valid_month_key(month_key):
                raise ValueError(f"Invalid month key: {month_key}")
            self._months[month_key] = default_budget_data()
            touched = {month_key} | self._recarry(min(self._months))
        self._notify(touched)
        return True

    def add_next_month(self, from_key: str) -> str:
        """Materialize the month after ``from_key`` by cloning it."""
        with self.lock:
            previous = self._require_month(from_key)
            month_key = add_months(from_key, 1)
            if month_key in self._months:
                return month_key
            self._months[month_key] = clone_for_month(previous, month_key)
            touched = {month_key} | self._recarry(from_key)
        logger.info(f"month_materialized: month={month_key} from={from_key}")
        self._notify(touched)
        return month_key

    def materialize_through(self, from_key: str, until_key: str) -> list[str]:
        created: list[str] = []
        current = from_key
        for _ in range(max(months_between(from_key, until_key), 0)):
            next_key = add_months(current, 1)
            if next_key not in self._months:
                self.add_next_month(current)
                created.append(next_key)
            current = next_key
        return created

    def materialize_year(self, seed_key: str) -> list[str]:
        return self.materialize_through(seed_key, add_months(seed_key, 11))

    def delete_month(self, month_key: str) -> Optional[str]:
        """Remove a month; returns the month carryover was re-anchored at."""
        with self.lock:
            self._require_month(month_key)
            del self._months[month_key]
            remaining = sorted(self._months)
            previous = [key for key in remaining if key < month_key]
            anchor = previous[-1] if previous else (remaining[0] if remaining else None)
            touched = self._recarry(anchor) if anchor else set()
        logger.info(f"month_deleted: month={month_key} anchor={anchor}")
        self._notify(touched | {month_key})
        return anchor

    def replace_month(self, month_key: str, raw: Any) -> None:
        """Adopt a month value coming from outside (remote reconciliation)."""
        with self.lock:
            self._require_open()
            self._months[month_key] = normalize_budget_data(raw)
            touched = {month_key} | self._recarry(month_key)
        self._notify(touched)

    # line items

    def add_line(
        self,
        month_key: str,
        person: PersonKey,
        kind: LineKind,
        name: Optional[str] = None,
        amount: Any = 0,
        **fields: Any,
    ) -> LineItem:
        kind = LineKind(kind)
        item = LineItem(
            id=new_id(),
            name=DEFAULT_LINE_NAMES[kind] if name is None else name,
            amount=coerce_number(amount),
            **fields,
        )
        if item.is_recurring:
            item.recurring_months = item.recurring_months or DEFAULT_RECURRING_MONTHS
            item.start_month = item.start_month or month_key
        with self.lock:
            self._require_month(month_key)
            result = self.engine.create(self._months, month_key, person, kind, item)
        self._notify(result.touched)
        return item

    def update_line(
        self,
        month_key: str,
        person: PersonKey,
        kind: LineKind,
        line_id: str,
        **changes: Any,
    ) -> PropagationResult:
        with self.lock:
            self._require_month(month_key)
            result = self.engine.update(
                self._months, month_key, person, kind, line_id, changes
            )
        self._notify(result.touched)
        return result

    def delete_line(
        self, month_key: str, person: PersonKey, kind: LineKind, line_id: str
    ) -> PropagationResult:
        with self.lock:
            self._require_month(month_key)
            result = self.engine.delete(self._months, month_key, person, kind, line_id)
        self._notify(result.touched)
        return result

    def set_propagate(
        self,
        month_key: str,
        person: PersonKey,
        kind: LineKind,
        line_id: str,
        enabled: bool,
    ) -> PropagationResult:
        with self.lock:
            self._require_month(month_key)
            result = self.engine.set_propagate(
                self._months, month_key, person, kind, line_id, enabled
            )
        self._notify(result.touched)
        return result

    def move_line(
        self,
        month_key: str,
        person: PersonKey,
        source_kind: LineKind,
        target_kind: LineKind,
        line_id: str,
    ) -> PropagationResult:
        with self.lock:
            self._require_month(month_key)
            result = self.engine.move(
                self._months, month_key, person, source_kind, target_kind, line_id
            )
        self._notify(result.touched)
        return result

    def reorder_line(
        self,
        month_key: str,
        person: PersonKey,
        kind: LineKind,
        line_id: str,
        direction: str,
    ) -> bool:
        with self.lock:
            self._require_month(month_key)
            items = self.engine.items(self._months, month_key, person, kind)
            moved = _swap(items, line_id, direction)
        if moved:
            self._notify({month_key})
        return moved

    # joint account

    def set_initial_balance(self, month_key: str, value: Any) -> None:
        with self.lock:
            data = self._require_month(month_key)
            data.joint_account.initial_balance = coerce_number(value)
            touched = {month_key} | self._recarry(month_key)
        self._notify(touched)

    def add_transaction(
        self,
        month_key: str,
        txn_type: TransactionType,
        description: Optional[str] = None,
        amount: Any = 0,
        txn_date: Optional[str] = None,
        person: Optional[str] = None,
    ) -> JointTransaction:
        txn_type = TransactionType(txn_type)
        with self.lock:
            data = self._require_month(month_key)
            txn = JointTransaction(
                id=new_id(),
                date=txn_date or date.today().isoformat(),
                description=(
                    DEFAULT_TRANSACTION_DESCRIPTIONS[txn_type]
                    if description is None
                    else description
                ),
                amount=coerce_number(amount),
                type=txn_type,
                person=data.person1.name if person is None else person,
            )
            data.joint_account.transactions.append(txn)
            touched = {month_key} | self._recarry(month_key)
        self._notify(touched)
        return txn

    def update_transaction(self, month_key: str, txn_id: str, **changes: Any) -> None:
        unknown = set(changes) - set(_TRANSACTION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown transaction field: {', '.join(sorted(unknown))}")
        with self.lock:
            data = self._require_month(month_key)
            txn = _find_transaction(data, txn_id)
            for name, value in changes.items():
                if name == "amount":
                    value = coerce_number(value)
                elif name == "type":
                    value = TransactionType(value)
                else:
                    value = "" if value is None else str(value)
                setattr(txn, name, value)
            touched = {month_key} | self._recarry(month_key)
        self._notify(touched)

    def delete_transaction(self, month_key: str, txn_id: str) -> None:
        with self.lock:
            data = self._require_month(month_key)
            txn = _find_transaction(data, txn_id)
            data.joint_account.transactions = [
                entry for entry in data.joint_account.transactions if entry is not txn
            ]
            touched = {month_key} | self._recarry(month_key)
        self._notify(touched)

    def reorder_transaction(self, month_key: str, txn_id: str, direction: str) -> bool:
        with self.lock:
            data = self._require_month(month_key)
            moved = _swap(data.joint_account.transactions, txn_id, direction)
            touched = ({month_key} | self._recarry(month_key)) if moved else set()
        self._notify(touched)
        return moved

    # persons

    def rename_person(self, month_key: str, person: PersonKey, name: str) -> None:
        with self.lock:
            data = self._require_month(month_key)
            getattr(data, PersonKey(person).value).name = name
        self._notify({month_key})

    def link_person(
        self, person: PersonKey, user_id: Optional[str], label: str
    ) -> set[str]:
        """Attach a person slot to a user identity in every month.

        Joint transactions attributed to the previous person name follow the rename.
        """
        person = PersonKey(person)
        touched: set[str] = set()
        with self.lock:
            self._require_open()
            for key, data in self._months.items():
                budget = getattr(data, person.value)
                user_field = f"{person.value}_user_id"
                if getattr(data, user_field) == user_id and budget.name == label:
                    continue
                previous_name = budget.name
                setattr(data, user_field, user_id)
                budget.name = label
                if previous_name and previous_name != label:
                    for txn in data.joint_account.transactions:
                        if txn.person == previous_name:
                            txn.person = label
                touched.add(key)
        self._notify(touched)
        return touched


def clone_for_month(previous: BudgetData, month_key: str) -> BudgetData:
    """Build a new month from the one before it.

    Income sources, fixed expenses and non-recurring categories are copied,
    recurring categories only when their window covers ``month_key``. Copies
    get fresh ids and start unchecked; the joint account starts empty.
    """

    def copy_line(item: LineItem) -> LineItem:
        return item.model_copy(update={"id": new_id(), "is_checked": False}, deep=True)

    data = default_budget_data()
    data.person1_user_id = previous.person1_user_id
    data.person2_user_id = previous.person2_user_id
    for slot in (PersonKey.person1, PersonKey.person2):
        source = getattr(previous, slot.value)
        target = getattr(data, slot.value)
        target.name = source.name
        target.income_sources = [copy_line(item) for item in source.income_sources]
        target.fixed_expenses = [copy_line(item) for item in source.fixed_expenses]
        target.categories = [
            copy_line(item)
            for item in source.categories
            if is_active_in(item, month_key)
        ]
    data.joint_account.transactions = []
    return data


def _find_transaction(data: BudgetData, txn_id: str) -> JointTransaction:
    for txn in data.joint_account.transactions:
        if txn.id == txn_id:
            return txn
    raise ValueError(f"Transaction not found: {txn_id}")


def _swap(entries: list, entry_id: str, direction: str) -> bool:
    if direction not in ("up", "down"):
        raise ValueError(f"Invalid direction: {direction}")
    index = next((i for i, entry in enumerate(entries) if entry.id == entry_id), -1)
    target = index - 1 if direction == "up" else index + 1
    if index == -1 or target < 0 or target >= len(entries):
        return False
    entries[index], entries[target] = entries[target], entries[index]
    return True


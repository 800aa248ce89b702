"""Forward propagation of line-item edits across materialized months.

An edit made in month M is replicated into every materialized month after M
that holds "the same" line. Lines are matched in two tiers: a shared
``template_id`` first, then the normalized name for records that do not carry a
template id yet. Months before M are never touched.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, MutableMapping, Optional

from models import ConflictPolicy, LineKind, PersonKey
from normalize import coerce_bool, coerce_number, new_id
from periods import is_valid_month_key, later_keys
from recurrence import is_active_in
from schemas import BudgetData, LineItem

logger = logging.getLogger(__name__)

MonthlyBudget = MutableMapping[str, BudgetData]

PROPAGATED_FIELDS = (
    "name",
    "amount",
    "category_override_id",
    "date",
    "account",
    "icon",
    "is_recurring",
    "recurring_months",
    "start_month",
)
WINDOW_FIELDS = frozenset({"is_recurring", "recurring_months", "start_month"})
PROTECTED_FIELDS = frozenset({"id", "template_id"})
DEFAULT_RECURRING_MONTHS = 3

_PLACEHOLDER_NAMES = (
    "New income source",
    "New fixed expense",
    "New category",
    "New expense",
    "Nouvelle source de revenu",
    "Nouveau revenu",
    "Nouvelle dépense fixe",
    "Nouvelle charge fixe",
    "Nouvelle catégorie",
    "Nouvelle dépense",
)


def normalize_label(value: Optional[str]) -> str:
    decomposed = unicodedata.normalize("NFKD", value or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", " ", stripped.lower()).strip()


PLACEHOLDER_LABELS = frozenset(normalize_label(name) for name in _PLACEHOLDER_NAMES)


def is_placeholder_name(name: Optional[str]) -> bool:
    label = normalize_label(name)
    return not label or label in PLACEHOLDER_LABELS


def is_propagation_eligible(item: LineItem) -> bool:
    if not item.propagate:
        return False
    if item.template_id:
        return True
    return not is_placeholder_name(item.name)


class TemplateMatcher:
    """Find the copy of a conceptual line inside another month's list.

    Tier one compares ``template_id``; tier two compares normalized names and
    only applies to records without a template id.
    """

    def __init__(self, template_id: Optional[str], fallback_name: Optional[str]) -> None:
        self.template_id = template_id or None
        if fallback_name is None or is_placeholder_name(fallback_name):
            self.fallback_label = None
        else:
            self.fallback_label = normalize_label(fallback_name)

    def matches_template(self, item: LineItem) -> bool:
        return self.template_id is not None and item.template_id == self.template_id

    def matches_name(self, item: LineItem) -> bool:
        if self.fallback_label is None:
            return False
        if item.template_id and self.template_id:
            return False
        return normalize_label(item.name) == self.fallback_label

    def find(self, items: list[LineItem]) -> Optional[LineItem]:
        for item in items:
            if self.matches_template(item):
                return item
        for item in items:
            if self.matches_name(item):
                return item
        return None


@dataclass(frozen=True)
class Divergence:
    """A later copy whose field values no longer follow the edited line."""

    month_key: str
    line_id: str
    fields: dict[str, tuple[Any, Any]]


ConfirmOverwrite = Callable[[list[Divergence]], bool]


@dataclass
class PropagationResult:
    touched: set[str] = field(default_factory=set)
    inserted: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    pinned: list[str] = field(default_factory=list)
    diverged: list[Divergence] = field(default_factory=list)
    diverged_skipped: list[str] = field(default_factory=list)

    def merge(self, other: "PropagationResult") -> "PropagationResult":
        self.touched |= other.touched
        self.inserted.extend(other.inserted)
        self.updated.extend(other.updated)
        self.removed.extend(other.removed)
        self.pinned.extend(other.pinned)
        self.diverged.extend(other.diverged)
        self.diverged_skipped.extend(other.diverged_skipped)
        return self


def _field_name(key: str) -> str:
    if key in LineItem.model_fields:
        return key
    for name, info in LineItem.model_fields.items():
        if info.alias == key:
            return name
    raise ValueError(f"Unknown line field: {key}")


def _coerce_field(name: str, value: Any) -> Any:
    if name == "amount":
        return coerce_number(value)
    if name == "is_checked":
        return coerce_bool(value, False)
    if name in ("propagate", "is_recurring"):
        return coerce_bool(value, name == "propagate")
    if name == "recurring_months":
        return None if value is None else int(coerce_number(value))
    if name == "start_month":
        return value if is_valid_month_key(value) else None
    if name == "name":
        return "" if value is None else str(value)
    return value


class TemplatePropagationEngine:
    def __init__(
        self,
        policy: ConflictPolicy = ConflictPolicy.never_overwrite,
        confirm: Optional[ConfirmOverwrite] = None,
    ) -> None:
        self.policy = policy
        self.confirm = confirm

    @staticmethod
    def items(
        months: MonthlyBudget, month_key: str, person: PersonKey, kind: LineKind
    ) -> list[LineItem]:
        if month_key not in months:
            raise ValueError(f"Month not found: {month_key}")
        budget = getattr(months[month_key], PersonKey(person).value)
        return getattr(budget, LineKind(kind).name)

    @staticmethod
    def find_line(items: list[LineItem], line_id: str) -> LineItem:
        for item in items:
            if item.id == line_id:
                return item
        raise ValueError(f"Line not found: {line_id}")

    @staticmethod
    def _should_exist(item: LineItem, kind: LineKind, month_key: str) -> bool:
        if LineKind(kind) is not LineKind.categories:
            return True
        return is_active_in(item, month_key)

    @staticmethod
    def _copy_for_month(source: LineItem) -> LineItem:
        return source.model_copy(
            update={"id": new_id(), "is_checked": False}, deep=True
        )

    def create(
        self,
        months: MonthlyBudget,
        month_key: str,
        person: PersonKey,
        kind: LineKind,
        item: LineItem,
    ) -> PropagationResult:
        self.items(months, month_key, person, kind).append(item)
        result = PropagationResult(touched={month_key})
        if is_propagation_eligible(item):
            self._seed_forward(months, month_key, person, kind, item, result)
        return result

    def update(
        self,
        months: MonthlyBudget,
        month_key: str,
        person: PersonKey,
        kind: LineKind,
        line_id: str,
        changes: dict[str, Any],
    ) -> PropagationResult:
        item = self.find_line(self.items(months, month_key, person, kind), line_id)
        values = {_field_name(key): value for key, value in changes.items()}
        protected = PROTECTED_FIELDS.intersection(values)
        if protected:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(protected))}")
        propagate = values.pop("propagate", None)
        if propagate is not None:
            propagate = coerce_bool(propagate, True)

        result = PropagationResult(touched={month_key})
        if propagate is False:
            result.merge(
                self.set_propagate(months, month_key, person, kind, line_id, False)
            )

        previous = item.model_copy(deep=True)
        for name, value in values.items():
            setattr(item, name, _coerce_field(name, value))
        if item.is_recurring and not previous.is_recurring:
            item.recurring_months = item.recurring_months or DEFAULT_RECURRING_MONTHS
            item.start_month = item.start_month or month_key

        changed = [
            name
            for name in PROPAGATED_FIELDS
            if getattr(previous, name) != getattr(item, name)
        ]
        if changed and is_propagation_eligible(item):
            if is_propagation_eligible(previous):
                self._sync_forward(
                    months, month_key, person, kind, item, previous, changed, result
                )
            else:
                # A placeholder row that just got a real name starts propagating.
                self._seed_forward(months, month_key, person, kind, item, result)

        if propagate:
            result.merge(
                self.set_propagate(months, month_key, person, kind, line_id, True)
            )
        return result

    def delete(
        self,
        months: MonthlyBudget,
        month_key: str,
        person: PersonKey,
        kind: LineKind,
        line_id: str,
    ) -> PropagationResult:
        items = self.items(months, month_key, person, kind)
        item = self.find_line(items, line_id)
        items[:] = [entry for entry in items if entry is not item]
        result = PropagationResult(touched={month_key})
        if not is_propagation_eligible(item):
            return result

        matcher = TemplateMatcher(item.template_id, item.name)
        for key in later_keys(months, month_key):
            later_items = self.items(months, key, person, kind)
            match = matcher.find(later_items)
            if match is None:
                continue
            if not match.propagate:
                result.pinned.append(key)
                continue
            later_items[:] = [entry for entry in later_items if entry is not match]
            result.removed.append(key)
            result.touched.add(key)
        logger.info(
            f"propagation_delete: month={month_key} template={item.template_id} "
            f"removed={len(result.removed)} pinned={len(result.pinned)}"
        )
        return result

    def set_propagate(
        self,
        months: MonthlyBudget,
        month_key: str,
        person: PersonKey,
        kind: LineKind,
        line_id: str,
        enabled: bool,
    ) -> PropagationResult:
        item = self.find_line(self.items(months, month_key, person, kind), line_id)
        item.propagate = enabled
        result = PropagationResult(touched={month_key})
        if enabled and is_propagation_eligible(item):
            self._seed_forward(months, month_key, person, kind, item, result)
        return result

    def move(
        self,
        months: MonthlyBudget,
        month_key: str,
        person: PersonKey,
        source_kind: LineKind,
        target_kind: LineKind,
        line_id: str,
    ) -> PropagationResult:
        """Move a line between fixed expenses and categories, all months or none."""
        kinds = {LineKind(source_kind), LineKind(target_kind)}
        if kinds != {LineKind.fixed_expenses, LineKind.categories}:
            raise ValueError("Lines move only between fixed expenses and categories")

        snapshot = {
            key: months[key].model_copy(deep=True) for key in months if key >= month_key
        }
        try:
            item = self.find_line(
                self.items(months, month_key, person, source_kind), line_id
            )
            if is_propagation_eligible(item) and not item.template_id:
                item.template_id = new_id()
            moved = item.model_copy(deep=True)
            if LineKind(target_kind) is LineKind.fixed_expenses:
                moved.is_recurring = False
                moved.recurring_months = None
                moved.start_month = None
            result = self.delete(months, month_key, person, source_kind, line_id)
            result.merge(self.create(months, month_key, person, target_kind, moved))
        except Exception:
            months.update(snapshot)
            raise
        return result

    def _seed_forward(
        self,
        months: MonthlyBudget,
        month_key: str,
        person: PersonKey,
        kind: LineKind,
        source: LineItem,
        result: PropagationResult,
    ) -> None:
        if not source.template_id:
            source.template_id = new_id()
        matcher = TemplateMatcher(source.template_id, source.name)
        for key in later_keys(months, month_key):
            items = self.items(months, key, person, kind)
            match = matcher.find(items)
            if match is not None:
                if match.propagate and match.template_id != source.template_id:
                    match.template_id = source.template_id
                    result.touched.add(key)
                continue
            if not self._should_exist(source, kind, key):
                continue
            items.append(self._copy_for_month(source))
            result.inserted.append(key)
            result.touched.add(key)
        logger.info(
            f"propagation_seed: month={month_key} template={source.template_id} "
            f"inserted={len(result.inserted)}"
        )

    def _sync_forward(
        self,
        months: MonthlyBudget,
        month_key: str,
        person: PersonKey,
        kind: LineKind,
        item: LineItem,
        previous: LineItem,
        changed: list[str],
        result: PropagationResult,
    ) -> None:
        if not item.template_id:
            item.template_id = new_id()
        window_changed = bool(WINDOW_FIELDS.intersection(changed))
        matcher = TemplateMatcher(item.template_id, previous.name)

        plans: list[tuple[str, str, Optional[LineItem]]] = []
        divergences: dict[str, Divergence] = {}
        for key in later_keys(months, month_key):
            match = matcher.find(self.items(months, key, person, kind))
            should_exist = self._should_exist(item, kind, key)
            if match is None:
                if should_exist and window_changed:
                    plans.append(("insert", key, None))
                continue
            if not match.propagate:
                result.pinned.append(key)
                continue
            if not should_exist:
                plans.append(("remove", key, match))
                continue
            diff = {
                name: (getattr(match, name), getattr(item, name))
                for name in changed
                if getattr(match, name) != getattr(previous, name)
                and getattr(match, name) != getattr(item, name)
            }
            if diff:
                divergences[key] = Divergence(key, match.id, diff)
            plans.append(("update", key, match))

        result.diverged.extend(divergences.values())
        overwrite = self._overwrite_diverged(list(divergences.values()))

        for action, key, match in plans:
            items = self.items(months, key, person, kind)
            if action == "insert":
                items.append(self._copy_for_month(item))
                result.inserted.append(key)
            elif action == "remove":
                items[:] = [entry for entry in items if entry is not match]
                result.removed.append(key)
            else:
                fields = changed
                if key in divergences and not overwrite:
                    fields = [n for n in changed if n not in divergences[key].fields]
                    result.diverged_skipped.append(key)
                match.template_id = item.template_id
                for name in fields:
                    setattr(match, name, getattr(item, name))
                result.updated.append(key)
            result.touched.add(key)

        logger.info(
            f"propagation_update: month={month_key} template={item.template_id} "
            f"fields={','.join(changed)} updated={len(result.updated)} "
            f"inserted={len(result.inserted)} removed={len(result.removed)} "
            f"pinned={len(result.pinned)} diverged_skipped={len(result.diverged_skipped)}"
        )

    def _overwrite_diverged(self, divergences: list[Divergence]) -> bool:
        if not divergences:
            return True
        if self.policy is ConflictPolicy.always_overwrite:
            return True
        if self.policy is ConflictPolicy.ask_caller and self.confirm is not None:
            return bool(self.confirm(divergences))
        return False

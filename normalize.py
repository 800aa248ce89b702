"""Canonicalize budget payloads coming from storage, the network or the queue.

Every ingestion boundary goes through :func:`normalize_budget_data`, so the
rest of the ledger can rely on fully typed values. Nothing in here raises on
bad input; malformed fields fall back to their defaults.
"""

from __future__ import annotations

import json
import math
import re
import uuid
from decimal import Decimal
from typing import Any, Optional

from models import TransactionType
from periods import is_valid_month_key
from schemas import BudgetData, JointAccount, JointTransaction, LineItem, PersonBudget

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_TRUE_STRINGS = {"1", "true", "yes", "y", "on"}
_FALSE_STRINGS = {"0", "false", "no", "n", "off", ""}

_LINE_FIELDS = {
    "id",
    "templateId",
    "name",
    "amount",
    "categoryOverrideId",
    "isChecked",
    "propagate",
    "icon",
    "isRecurring",
    "recurringMonths",
    "startMonth",
    "date",
    "account",
} | set(LineItem.model_fields)
_TRANSACTION_FIELDS = {"id", "date", "description", "amount", "type", "person"} | set(
    JointTransaction.model_fields
)
_PERSON_FIELDS = {"name", "incomeSources", "fixedExpenses", "categories"} | set(
    PersonBudget.model_fields
)
_JOINT_FIELDS = {"initialBalance", "transactions"} | set(JointAccount.model_fields)
_BUDGET_FIELDS = {
    "person1",
    "person2",
    "jointAccount",
    "person1UserId",
    "person2UserId",
} | set(BudgetData.model_fields)


def new_id() -> str:
    return uuid.uuid4().hex


def parse_number(raw: str) -> float:
    clean = raw.strip()
    if clean == "":
        return 0.0
    if "," in clean and "." not in clean:
        clean = clean.replace(",", ".")
    clean = re.sub(r"^([+-]?)0+(?=\d)", r"\1", clean)
    if not _NUMBER_RE.match(clean):
        return 0.0
    value = float(clean)
    return value if math.isfinite(value) else 0.0


def coerce_number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else 0.0
    if isinstance(value, str):
        return parse_number(value)
    return 0.0


def coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return default


def _optional_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value)
    return text or None


def _text(value: Any, default: str = "") -> str:
    if value is None or isinstance(value, (dict, list)):
        return default
    return str(value)


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(coerce_number(value))


def _extras(raw: dict, known: set[str]) -> dict[str, Any]:
    return {
        key: value
        for key, value in raw.items()
        if key not in known and value is not None and isinstance(key, str)
    }


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def normalize_line(raw: Any, fallback_id: str) -> LineItem:
    raw = _as_dict(raw)
    start_month = raw.get("startMonth")
    return LineItem.model_validate(
        {
            **_extras(raw, _LINE_FIELDS),
            "id": _optional_str(raw.get("id")) or fallback_id,
            "templateId": _optional_str(raw.get("templateId")),
            "name": _text(raw.get("name")),
            "amount": coerce_number(raw.get("amount")),
            "categoryOverrideId": _optional_str(raw.get("categoryOverrideId")),
            "isChecked": coerce_bool(raw.get("isChecked"), False),
            "propagate": coerce_bool(raw.get("propagate"), True),
            "icon": _optional_str(raw.get("icon")),
            "isRecurring": coerce_bool(raw.get("isRecurring"), False),
            "recurringMonths": _optional_int(raw.get("recurringMonths")),
            "startMonth": start_month if is_valid_month_key(start_month) else None,
            "date": _optional_str(raw.get("date")),
            "account": _optional_str(raw.get("account")),
        }
    )


def normalize_transaction(raw: Any, fallback_id: str) -> JointTransaction:
    raw = _as_dict(raw)
    txn_type = (
        TransactionType.deposit
        if raw.get("type") == TransactionType.deposit.value
        else TransactionType.expense
    )
    return JointTransaction.model_validate(
        {
            **_extras(raw, _TRANSACTION_FIELDS),
            "id": _optional_str(raw.get("id")) or fallback_id,
            "date": _text(raw.get("date")),
            "description": _text(raw.get("description")),
            "amount": coerce_number(raw.get("amount")),
            "type": txn_type,
            "person": _text(raw.get("person")),
        }
    )


def normalize_person(raw: Any, slot: str) -> PersonBudget:
    raw = _as_dict(raw)
    lists: dict[str, list[LineItem]] = {}
    for field in ("incomeSources", "fixedExpenses", "categories"):
        lists[field] = [
            normalize_line(item, f"{slot}-{field}-{index + 1}")
            for index, item in enumerate(_as_list(raw.get(field)))
        ]
    return PersonBudget.model_validate(
        {**_extras(raw, _PERSON_FIELDS), "name": _text(raw.get("name")), **lists}
    )


def _coerce_raw(raw: Any) -> dict:
    if isinstance(raw, BudgetData):
        return raw.to_payload()
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    return _as_dict(raw)


def normalize_budget_data(raw: Any) -> BudgetData:
    raw = _coerce_raw(raw)
    joint = _as_dict(raw.get("jointAccount"))
    joint_account = JointAccount.model_validate(
        {
            **_extras(joint, _JOINT_FIELDS),
            "initialBalance": coerce_number(joint.get("initialBalance")),
            "transactions": [
                normalize_transaction(txn, f"txn-{index + 1}")
                for index, txn in enumerate(_as_list(joint.get("transactions")))
            ],
        }
    )
    return BudgetData.model_validate(
        {
            **_extras(raw, _BUDGET_FIELDS),
            "person1": normalize_person(raw.get("person1"), "person1"),
            "person2": normalize_person(raw.get("person2"), "person2"),
            "jointAccount": joint_account,
            "person1UserId": _optional_str(raw.get("person1UserId")),
            "person2UserId": _optional_str(raw.get("person2UserId")),
        }
    )


def serialize_budget_data(data: BudgetData) -> str:
    return json.dumps(data.to_payload(), sort_keys=True, separators=(",", ":"))


def default_budget_data() -> BudgetData:
    def line(name: str, amount: float, **extra: Any) -> dict[str, Any]:
        return {"id": new_id(), "name": name, "amount": amount, **extra}

    return normalize_budget_data(
        {
            "person1": {
                "name": "Personne 1",
                "incomeSources": [line("Salaire", 2500)],
                "fixedExpenses": [line("Loyer", 800), line("Electricite", 60)],
                "categories": [
                    line("Alimentation", 300, icon="🍽️"),
                    line("Transport", 100, icon="🚗"),
                    line("Loisirs", 150, icon="🎮"),
                ],
            },
            "person2": {
                "name": "Personne 2",
                "incomeSources": [line("Salaire", 2800)],
                "fixedExpenses": [line("Assurance", 120), line("Internet", 40)],
                "categories": [
                    line("Alimentation", 280, icon="🍽️"),
                    line("Shopping", 200, icon="🛍️"),
                    line("Sport", 80, icon="⚽"),
                ],
            },
            "jointAccount": {"initialBalance": 0, "transactions": []},
        }
    )

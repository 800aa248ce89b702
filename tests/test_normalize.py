import json

from models import TransactionType
from normalize import (
    coerce_bool,
    coerce_number,
    default_budget_data,
    normalize_budget_data,
    parse_number,
    serialize_budget_data,
)
from schemas import BudgetData


def test_parse_number_accepts_number_like_strings():
    assert parse_number(" 0042 ") == 42.0
    assert parse_number("12,5") == 12.5
    assert parse_number("-007.25") == -7.25
    assert parse_number("1e3") == 1000.0
    assert parse_number("") == 0.0
    assert parse_number("abc") == 0.0
    assert parse_number("12.5€") == 0.0
    assert parse_number("inf") == 0.0


def test_coerce_number_rejects_non_finite_and_bools():
    assert coerce_number(float("nan")) == 0.0
    assert coerce_number(float("inf")) == 0.0
    assert coerce_number(True) == 0.0
    assert coerce_number(None) == 0.0
    assert coerce_number([1]) == 0.0
    assert coerce_number(3) == 3.0


def test_coerce_bool_defaults_per_field():
    assert coerce_bool(None, True) is True
    assert coerce_bool(None, False) is False
    assert coerce_bool("false", True) is False
    assert coerce_bool("yes", False) is True
    assert coerce_bool(0, True) is False
    assert coerce_bool({"x": 1}, True) is True


def test_normalize_coerces_malformed_month():
    raw = {
        "person1": {
            "name": "Alice",
            "fixedExpenses": [
                {"id": "rent", "name": "Rent", "amount": " 0800 ", "isChecked": "true"},
                {"name": "Water", "amount": None, "propagate": "false"},
                "garbage",
            ],
            "categories": [
                {
                    "id": "gifts",
                    "name": "Gifts",
                    "amount": "50",
                    "isRecurring": 1,
                    "recurringMonths": "3",
                    "startMonth": "2024-13",
                }
            ],
        },
        "person2": None,
        "jointAccount": {
            "initialBalance": "100",
            "transactions": [
                {"id": "t1", "type": "deposit", "amount": "50"},
                {"type": "withdrawal", "amount": 30},
            ],
        },
    }

    data = normalize_budget_data(raw)

    rent, water, garbage = data.person1.fixed_expenses
    assert rent.amount == 800.0
    assert rent.is_checked is True
    assert rent.propagate is True
    assert water.amount == 0.0
    assert water.propagate is False
    assert water.id == "person1-fixedExpenses-2"
    assert garbage.name == ""

    gifts = data.person1.categories[0]
    assert gifts.is_recurring is True
    assert gifts.recurring_months == 3
    assert gifts.start_month is None

    assert data.person2.name == ""
    assert data.person2.income_sources == []

    assert data.joint_account.initial_balance == 100.0
    deposit, fallback = data.joint_account.transactions
    assert deposit.type == TransactionType.deposit
    assert fallback.type == TransactionType.expense
    assert fallback.id == "txn-2"


def test_normalize_never_raises_on_garbage():
    for raw in (None, 42, "not json", b"\xff\xfe", [], {"person1": []}, "[1, 2]"):
        data = normalize_budget_data(raw)
        assert isinstance(data, BudgetData)
        assert data.joint_account.initial_balance == 0.0


def test_normalize_is_idempotent():
    samples = [
        {},
        {"person1": {"fixedExpenses": [{"amount": "12,50", "isChecked": "1"}]}},
        {"jointAccount": {"initialBalance": "abc", "transactions": [{}, None]}},
        default_budget_data().to_payload(),
        json.dumps({"person2": {"categories": [{"name": "Café", "propagate": 0}]}}),
    ]
    for raw in samples:
        once = normalize_budget_data(raw)
        twice = normalize_budget_data(once)
        assert serialize_budget_data(once) == serialize_budget_data(twice)
        again = normalize_budget_data(serialize_budget_data(once))
        assert again == once


def test_unknown_fields_survive_normalization():
    raw = {
        "theme": "dark",
        "person1": {"fixedExpenses": [{"id": "a", "name": "Rent", "note": "landlord"}]},
    }

    payload = normalize_budget_data(raw).to_payload()

    assert payload["theme"] == "dark"
    assert payload["person1"]["fixedExpenses"][0]["note"] == "landlord"


def test_payload_uses_camel_case_keys():
    data = normalize_budget_data(
        {"person1": {"categories": [{"id": "c", "name": "Gifts", "isRecurring": True}]}}
    )

    payload = data.to_payload()

    assert "jointAccount" in payload
    assert payload["jointAccount"]["initialBalance"] == 0.0
    category = payload["person1"]["categories"][0]
    assert category["isRecurring"] is True
    assert "is_recurring" not in category


def test_default_budget_data_has_two_people():
    data = default_budget_data()

    assert data.person1.name == "Personne 1"
    assert data.person2.name == "Personne 2"
    assert data.person1.income_sources[0].amount == 2500
    ids = [item.id for item in data.person1.fixed_expenses + data.person2.fixed_expenses]
    assert len(set(ids)) == len(ids)

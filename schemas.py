from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import TransactionType


class _Payload(BaseModel):
    """Base for budget payload parts: camelCase on the wire, unknown keys kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class LineItem(_Payload):
    id: str
    template_id: Optional[str] = None
    name: str = ""
    amount: float = 0.0
    category_override_id: Optional[str] = None
    is_checked: bool = False
    propagate: bool = True
    # Flexible categories only.
    icon: Optional[str] = None
    is_recurring: bool = False
    recurring_months: Optional[int] = None
    start_month: Optional[str] = None
    date: Optional[str] = None
    account: Optional[str] = None


class PersonBudget(_Payload):
    name: str = ""
    income_sources: list[LineItem] = Field(default_factory=list)
    fixed_expenses: list[LineItem] = Field(default_factory=list)
    categories: list[LineItem] = Field(default_factory=list)


class JointTransaction(_Payload):
    id: str
    date: str = ""
    description: str = ""
    amount: float = 0.0
    type: TransactionType = TransactionType.expense
    person: str = ""


class JointAccount(_Payload):
    initial_balance: float = 0.0
    transactions: list[JointTransaction] = Field(default_factory=list)


class BudgetData(_Payload):
    person1: PersonBudget = Field(default_factory=PersonBudget)
    person2: PersonBudget = Field(default_factory=PersonBudget)
    joint_account: JointAccount = Field(default_factory=JointAccount)
    person1_user_id: Optional[str] = None
    person2_user_id: Optional[str] = None


class MonthIn(BaseModel):
    data: dict[str, Any]


from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    deposit = "deposit"
    expense = "expense"


class PersonKey(str, Enum):
    person1 = "person1"
    person2 = "person2"


class LineKind(str, Enum):
    income_sources = "incomeSources"
    fixed_expenses = "fixedExpenses"
    categories = "categories"


class ConflictPolicy(str, Enum):
    always_overwrite = "always_overwrite"
    never_overwrite = "never_overwrite"
    ask_caller = "ask_caller"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class MonthlyBudgetRecord(Base, TimestampMixin):
    __tablename__ = "monthly_budgets"

    month_key: Mapped[str] = mapped_column(String(7), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        CheckConstraint("length(month_key) = 7", name="ck_monthly_budgets_key_len"),
    )


class AppSettingsRecord(Base):
    __tablename__ = "app_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

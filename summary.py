from dataclasses import dataclass

from carryover import joint_balance
from schemas import BudgetData, PersonBudget


@dataclass(frozen=True)
class PersonSummary:
    name: str
    total_income: float
    total_fixed: float
    total_categories: float
    checked_fixed: float
    checked_categories: float

    @property
    def available(self) -> float:
        return self.total_income - self.total_fixed - self.total_categories

    @property
    def remaining_to_pay(self) -> float:
        return (
            self.total_fixed
            - self.checked_fixed
            + self.total_categories
            - self.checked_categories
        )


@dataclass(frozen=True)
class MonthSummary:
    month_key: str
    person1: PersonSummary
    person2: PersonSummary
    joint_opening_balance: float
    joint_closing_balance: float


def summarize_person(person: PersonBudget) -> PersonSummary:
    return PersonSummary(
        name=person.name,
        total_income=sum(src.amount for src in person.income_sources),
        total_fixed=sum(exp.amount for exp in person.fixed_expenses),
        total_categories=sum(cat.amount for cat in person.categories),
        checked_fixed=sum(exp.amount for exp in person.fixed_expenses if exp.is_checked),
        checked_categories=sum(
            cat.amount for cat in person.categories if cat.is_checked
        ),
    )


def summarize_month(month_key: str, data: BudgetData) -> MonthSummary:
    return MonthSummary(
        month_key=month_key,
        person1=summarize_person(data.person1),
        person2=summarize_person(data.person2),
        joint_opening_balance=data.joint_account.initial_balance,
        joint_closing_balance=joint_balance(data),
    )

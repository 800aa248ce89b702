from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import AppSettingsRecord, MonthlyBudgetRecord, utcnow
from periods import is_valid_month_key

SETTINGS_ROW_ID = 1


class MonthNotFound(ValueError):
    pass


def _require_key(month_key: str) -> str:
    if not is_valid_month_key(month_key):
        raise ValueError(f"Invalid month key: {month_key}")
    return month_key


def _next_timestamp(previous: Optional[datetime]) -> datetime:
    # Writes to the same row must be strictly ordered for reconciliation.
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class MonthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[MonthlyBudgetRecord]:
        stmt = select(MonthlyBudgetRecord).order_by(MonthlyBudgetRecord.month_key)
        return self.session.scalars(stmt).all()

    def get(self, month_key: str) -> MonthlyBudgetRecord:
        record = self.session.get(MonthlyBudgetRecord, _require_key(month_key))
        if record is None:
            raise MonthNotFound(f"Month not found: {month_key}")
        return record

    def upsert(self, month_key: str, data: dict[str, Any]) -> MonthlyBudgetRecord:
        if not isinstance(data, dict):
            raise ValueError("Month data must be an object")
        record = self.session.get(MonthlyBudgetRecord, _require_key(month_key))
        if record is None:
            now = utcnow()
            record = MonthlyBudgetRecord(
                month_key=month_key, data=data, created_at=now, updated_at=now
            )
            self.session.add(record)
        else:
            record.data = data
            record.updated_at = _next_timestamp(record.updated_at)
        self.session.commit()
        self.session.refresh(record)
        return record

    def delete(self, month_key: str) -> None:
        record = self.get(month_key)
        self.session.delete(record)
        self.session.commit()


class SettingsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _record(self) -> Optional[AppSettingsRecord]:
        return self.session.get(AppSettingsRecord, SETTINGS_ROW_ID)

    def get(self) -> dict[str, Any]:
        record = self._record()
        return dict(record.data) if record else {}

    def patch(self, partial: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(partial, dict):
            raise ValueError("Settings patch must be an object")
        record = self._record()
        if record is None:
            record = AppSettingsRecord(id=SETTINGS_ROW_ID, data=dict(partial), updated_at=utcnow())
            self.session.add(record)
        else:
            merged = dict(record.data or {})
            merged.update(partial)
            record.data = merged
            record.updated_at = _next_timestamp(record.updated_at)
        self.session.commit()
        self.session.refresh(record)
        return dict(record.data)

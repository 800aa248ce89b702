"""Durable client-side state: offline snapshot, sync queue and view state.

Values live in a single key-value table of a local SQLite database, under a
stable ``budget:`` key namespace, so a restarted client can rehydrate without
a network round-trip.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, ContextManager, Mapping, Optional

from sqlalchemy import DateTime, String, Text, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings
from database import enable_sqlite_pragmas, session_scope
from models import utcnow

SNAPSHOT_KEY = "budget:snapshot"
QUEUE_KEY = "budget:sync-queue"
SYNCED_DIGESTS_KEY = "budget:synced-digests"
LAST_MONTH_KEY = "budget:last-month"


class LocalBase(DeclarativeBase):
    pass


class ClientStateEntry(LocalBase):
    __tablename__ = "client_state"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


def create_local_engine(url: Optional[str] = None) -> Engine:
    url = url or get_settings().local_store_url
    connect_args: dict[str, object] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    if ":memory:" in url:
        eng = create_engine(url, connect_args=connect_args, poolclass=StaticPool)
    else:
        eng = create_engine(url, connect_args=connect_args)
    if url.startswith("sqlite") and ":memory:" not in url:
        event.listen(eng, "connect", enable_sqlite_pragmas)
    LocalBase.metadata.create_all(eng)
    return eng


class LocalStateStore:
    def __init__(self, engine: Optional[Engine] = None) -> None:
        self.engine = engine or create_local_engine()
        LocalBase.metadata.create_all(self.engine)
        self._sessions = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    def _session(self) -> ContextManager[Session]:
        return session_scope(self._sessions)

    def get_json(self, key: str, default: Any = None) -> Any:
        with self._session() as session:
            entry = session.get(ClientStateEntry, key)
            if entry is None:
                return default
            try:
                return json.loads(entry.value)
            except ValueError:
                return default

    def set_json(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, sort_keys=True)
        with self._session() as session:
            entry = session.get(ClientStateEntry, key)
            if entry is None:
                session.add(ClientStateEntry(key=key, value=encoded))
            else:
                entry.value = encoded
                entry.updated_at = utcnow()

    def delete(self, key: str) -> None:
        with self._session() as session:
            entry = session.get(ClientStateEntry, key)
            if entry is not None:
                session.delete(entry)

    def keys(self) -> list[str]:
        with self._session() as session:
            return list(
                session.scalars(select(ClientStateEntry.key).order_by(ClientStateEntry.key))
            )

    def load_snapshot(self) -> dict[str, Any]:
        snapshot = self.get_json(SNAPSHOT_KEY, {})
        return snapshot if isinstance(snapshot, dict) else {}

    def save_snapshot(self, months: Mapping[str, Any]) -> None:
        self.set_json(SNAPSHOT_KEY, dict(months))

    def load_queue(self) -> dict[str, Any]:
        queue = self.get_json(QUEUE_KEY, {})
        return queue if isinstance(queue, dict) else {}

    def save_queue(self, queue: Mapping[str, Any]) -> None:
        self.set_json(QUEUE_KEY, dict(queue))

    def load_synced_digests(self) -> dict[str, str]:
        digests = self.get_json(SYNCED_DIGESTS_KEY, {})
        if not isinstance(digests, dict):
            return {}
        return {str(k): str(v) for k, v in digests.items()}

    def save_synced_digests(self, digests: Mapping[str, str]) -> None:
        self.set_json(SYNCED_DIGESTS_KEY, dict(digests))

    @staticmethod
    def _last_month_key(user_id: Optional[str]) -> str:
        return f"{LAST_MONTH_KEY}:{user_id}" if user_id else LAST_MONTH_KEY

    def get_last_month(self, user_id: Optional[str] = None) -> Optional[str]:
        value = self.get_json(self._last_month_key(user_id))
        return value if isinstance(value, str) else None

    def set_last_month(self, month_key: str, user_id: Optional[str] = None) -> None:
        self.set_json(self._last_month_key(user_id), month_key)

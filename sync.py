"""Offline sync queue and reconciler.

Local edits are written to the remote store right away when possible. When the
client is offline, or a write fails with a retryable error, the serialized
month is parked in :class:`SyncQueue` (persisted on every change) and replayed
by :meth:`SyncEngine.flush`. During a flush, a remote record strictly newer
than the queued local edit, holding something other than what this client last
synced, wins and is adopted locally; otherwise the local value is pushed.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ledger import MonthStore
from local_store import LocalStateStore
from normalize import normalize_budget_data, serialize_budget_data
from periods import is_valid_month_key
from remote import (
    ClientRejected,
    RemoteMonth,
    RemoteStore,
    TransientError,
    Unauthorized,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def payload_digest(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class QueuedUpsert:
    payload: str
    updated_at: datetime


@dataclass
class QueuedDelete:
    updated_at: datetime


@dataclass
class QueuedSettings:
    payload: dict[str, Any]
    updated_at: datetime


class SyncQueue:
    """Pending remote writes, keyed by month.

    A newer local edit replaces the queued entry for its month. Callers holding
    an entry across a remote call drop it with ``entry=...`` so an edit queued
    in the meantime survives.
    """

    def __init__(self, on_change: Optional[Callable[["SyncQueue"], None]] = None) -> None:
        self.upserts: dict[str, QueuedUpsert] = {}
        self.deletes: dict[str, QueuedDelete] = {}
        self.settings: Optional[QueuedSettings] = None
        self._on_change = on_change
        self._lock = threading.RLock()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self)

    def __len__(self) -> int:
        return len(self.upserts) + len(self.deletes) + (1 if self.settings else 0)

    def is_empty(self) -> bool:
        return len(self) == 0

    def queue_upsert(self, month_key: str, payload: str, at: datetime) -> QueuedUpsert:
        with self._lock:
            entry = QueuedUpsert(payload=payload, updated_at=at)
            self.deletes.pop(month_key, None)
            self.upserts[month_key] = entry
        self._changed()
        return entry

    def queue_delete(self, month_key: str, at: datetime) -> QueuedDelete:
        with self._lock:
            entry = QueuedDelete(updated_at=at)
            self.upserts.pop(month_key, None)
            self.deletes[month_key] = entry
        self._changed()
        return entry

    def queue_settings(self, partial: dict[str, Any], at: datetime) -> QueuedSettings:
        with self._lock:
            merged = dict(self.settings.payload) if self.settings else {}
            merged.update(partial)
            self.settings = QueuedSettings(payload=merged, updated_at=at)
            entry = self.settings
        self._changed()
        return entry

    def drop_upsert(self, month_key: str, entry: Optional[QueuedUpsert] = None) -> bool:
        with self._lock:
            current = self.upserts.get(month_key)
            if current is None or (entry is not None and current is not entry):
                return False
            del self.upserts[month_key]
        self._changed()
        return True

    def drop_delete(self, month_key: str, entry: Optional[QueuedDelete] = None) -> bool:
        with self._lock:
            current = self.deletes.get(month_key)
            if current is None or (entry is not None and current is not entry):
                return False
            del self.deletes[month_key]
        self._changed()
        return True

    def drop_settings(self, entry: Optional[QueuedSettings] = None) -> bool:
        with self._lock:
            if self.settings is None or (entry is not None and self.settings is not entry):
                return False
            self.settings = None
        self._changed()
        return True

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "upserts": {
                    key: {"payload": entry.payload, "updatedAt": entry.updated_at.isoformat()}
                    for key, entry in self.upserts.items()
                },
                "deletes": {
                    key: {"updatedAt": entry.updated_at.isoformat()}
                    for key, entry in self.deletes.items()
                },
                "settings": (
                    {
                        "payload": self.settings.payload,
                        "updatedAt": self.settings.updated_at.isoformat(),
                    }
                    if self.settings
                    else None
                ),
            }

    @classmethod
    def from_dict(
        cls,
        raw: Any,
        on_change: Optional[Callable[["SyncQueue"], None]] = None,
    ) -> "SyncQueue":
        queue = cls(on_change=on_change)
        if not isinstance(raw, dict):
            return queue
        upserts = raw.get("upserts")
        if isinstance(upserts, dict):
            for key, entry in upserts.items():
                if not is_valid_month_key(key) or not isinstance(entry, dict):
                    continue
                payload = entry.get("payload")
                if not isinstance(payload, str):
                    continue
                queue.upserts[key] = QueuedUpsert(
                    payload=payload, updated_at=parse_timestamp(entry.get("updatedAt"))
                )
        deletes = raw.get("deletes")
        if isinstance(deletes, dict):
            for key, entry in deletes.items():
                if not is_valid_month_key(key) or not isinstance(entry, dict):
                    continue
                queue.deletes[key] = QueuedDelete(
                    updated_at=parse_timestamp(entry.get("updatedAt"))
                )
        settings = raw.get("settings")
        if isinstance(settings, dict) and isinstance(settings.get("payload"), dict):
            queue.settings = QueuedSettings(
                payload=settings["payload"],
                updated_at=parse_timestamp(settings.get("updatedAt")),
            )
        return queue


@dataclass
class FlushReport:
    skipped: bool = False
    aborted: bool = False
    pushed: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    adopted: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    settings_pushed: bool = False


@dataclass(frozen=True)
class SyncStatus:
    online: bool
    session_expired: bool
    flush_in_progress: bool
    pending: int
    dirty: int

    @property
    def state(self) -> str:
        if self.session_expired:
            return "session_expired"
        if self.flush_in_progress:
            return "syncing"
        if self.pending or self.dirty:
            return "pending"
        if not self.online:
            return "offline"
        return "clean"


class SyncEngine:
    def __init__(
        self,
        store: MonthStore,
        remote: RemoteStore,
        local: LocalStateStore,
        *,
        clock: Optional[Clock] = None,
        on_session_expired: Optional[Callable[[], None]] = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.local = local
        self.clock = clock or utc_clock
        self.on_session_expired = on_session_expired
        self.queue = SyncQueue.from_dict(local.load_queue(), on_change=self._persist_queue)
        self.online = True
        self.session_expired = False
        self.flush_in_progress = False
        self._flush_lock = threading.Lock()
        self._synced = local.load_synced_digests()
        self._rejected: dict[str, str] = {}

    # bookkeeping

    def _persist_queue(self, queue: SyncQueue) -> None:
        self.local.save_queue(queue.to_dict())

    def _mark_synced(self, month_key: str, payload: str) -> None:
        self._synced[month_key] = payload_digest(payload)
        self.local.save_synced_digests(self._synced)

    def _forget(self, month_key: str) -> None:
        if self._synced.pop(month_key, None) is not None:
            self.local.save_synced_digests(self._synced)

    def _expire(self) -> None:
        if self.session_expired:
            return
        self.session_expired = True
        logger.warning(f"sync_session_expired: pending={len(self.queue)}")
        if self.on_session_expired is not None:
            self.on_session_expired()

    def persist_snapshot(self) -> None:
        self.local.save_snapshot(
            {key: json.loads(payload) for key, payload in self.store.serialized().items()}
        )

    def dirty_keys(self) -> list[str]:
        return sorted(
            key
            for key, payload in self.store.serialized().items()
            if payload_digest(payload) != self._synced.get(key)
        )

    def status(self) -> SyncStatus:
        dirty = [key for key in self.dirty_keys() if key not in self.queue.upserts]
        return SyncStatus(
            online=self.online,
            session_expired=self.session_expired,
            flush_in_progress=self.flush_in_progress,
            pending=len(self.queue),
            dirty=len(dirty),
        )

    def resume_session(self) -> None:
        self.session_expired = False

    # loading

    def hydrate(self) -> bool:
        """Open the month store from the remote copy, falling back to the snapshot.

        Months with queued edits keep their local value until the next flush
        reconciles them. Returns False when the remote could not be read.
        """
        try:
            remote_months = self.remote.list_months()
        except Unauthorized:
            self._expire()
            self.store.open(self.local.load_snapshot())
            return False
        except (TransientError, ClientRejected) as exc:
            logger.warning(f"sync_hydrate_offline: error={exc}")
            self.online = False
            self.store.open(self.local.load_snapshot())
            return False

        months: dict[str, Any] = {}
        for remote_month in remote_months:
            key = remote_month.month_key
            if not is_valid_month_key(key) or key in self.queue.deletes:
                continue
            queued = self.queue.upserts.get(key)
            if queued is not None:
                # The flush compares the remote copy against what was synced before.
                months[key] = json.loads(queued.payload)
                continue
            months[key] = remote_month.data
            self._synced[key] = payload_digest(
                serialize_budget_data(normalize_budget_data(remote_month.data))
            )
        for key, queued in self.queue.upserts.items():
            months.setdefault(key, json.loads(queued.payload))
        stale = [
            key for key in self._synced if key not in months and key not in self.queue.deletes
        ]
        for key in stale:
            del self._synced[key]
        self.local.save_synced_digests(self._synced)
        self.store.open(months)
        self.online = True
        logger.info(f"sync_hydrated: remote={len(remote_months)} queued={len(self.queue)}")
        return True

    # writes

    def push_dirty(self) -> list[str]:
        """Write every month whose payload differs from the last synced one.

        This is the debounced writer: a month is written directly when the
        client is online and nothing is queued for it yet, otherwise it goes
        through the queue.
        """
        pushed: list[str] = []
        needs_flush = False
        payloads = self.store.serialized()
        for key in self.dirty_keys():
            payload = payloads.get(key)
            if payload is None:
                continue
            digest = payload_digest(payload)
            if self._rejected.get(key) == digest:
                continue
            if not self.online or self.session_expired:
                self.queue.queue_upsert(key, payload, self.clock())
                continue
            if key in self.queue.upserts:
                self.queue.queue_upsert(key, payload, self.clock())
                needs_flush = True
                continue
            try:
                self.remote.put_month(key, json.loads(payload))
            except Unauthorized:
                self.queue.queue_upsert(key, payload, self.clock())
                self._expire()
            except TransientError as exc:
                logger.warning(f"sync_write_queued: month={key} error={exc}")
                self.queue.queue_upsert(key, payload, self.clock())
            except ClientRejected as exc:
                logger.error(f"sync_write_rejected: month={key} error={exc}")
                self._rejected[key] = digest
            else:
                self._mark_synced(key, payload)
                pushed.append(key)
        if needs_flush and self.online and not self.session_expired:
            self.flush()
        return pushed

    def delete_month(self, month_key: str) -> Optional[str]:
        anchor = self.store.delete_month(month_key)
        self._rejected.pop(month_key, None)
        self.queue.queue_delete(month_key, self.clock())
        if self.online and not self.session_expired:
            self.flush()
        return anchor

    def update_settings(self, partial: dict[str, Any]) -> None:
        self.queue.queue_settings(partial, self.clock())
        if self.online and not self.session_expired:
            self.flush()

    def set_online(self, online: bool) -> Optional[FlushReport]:
        was_online = self.online
        self.online = online
        logger.info(f"sync_connectivity: online={online}")
        if online and not was_online:
            return self.flush()
        return None

    # reconciliation

    def flush(self) -> FlushReport:
        """Replay the queue against the remote store, deletes first.

        Only one flush runs at a time; a concurrent call returns a skipped
        report. Entries are re-read from the live queue at every step.
        """
        if not self._flush_lock.acquire(blocking=False):
            return FlushReport(skipped=True)
        try:
            if not self.online or self.session_expired or self.queue.is_empty():
                return FlushReport(skipped=True)
            self.flush_in_progress = True
            report = FlushReport()
            try:
                for key in list(self.queue.deletes):
                    self._flush_delete(key, report)
                for key in list(self.queue.upserts):
                    self._flush_upsert(key, report)
                self._flush_settings(report)
            except Unauthorized:
                report.aborted = True
                self._expire()
            logger.info(
                f"sync_flush: pushed={len(report.pushed)} deleted={len(report.deleted)} "
                f"adopted={len(report.adopted)} dropped={len(report.dropped)} "
                f"retained={len(report.retained)} settings={report.settings_pushed} "
                f"aborted={report.aborted}"
            )
            return report
        finally:
            self.flush_in_progress = False
            self._flush_lock.release()

    def _flush_delete(self, month_key: str, report: FlushReport) -> None:
        entry = self.queue.deletes.get(month_key)
        if entry is None:
            return
        try:
            remote_month = self.remote.get_month(month_key)
            if remote_month is not None and self._remote_changed(remote_month, entry.updated_at):
                if self.queue.drop_delete(month_key, entry):
                    self._adopt(remote_month)
                    report.adopted.append(month_key)
                return
            if remote_month is not None:
                self.remote.delete_month(month_key)
            if self.queue.drop_delete(month_key, entry):
                self._forget(month_key)
            report.deleted.append(month_key)
        except TransientError as exc:
            logger.warning(f"sync_delete_retained: month={month_key} error={exc}")
            report.retained.append(month_key)
        except ClientRejected as exc:
            logger.error(f"sync_delete_dropped: month={month_key} error={exc}")
            self.queue.drop_delete(month_key, entry)
            report.dropped.append(month_key)

    def _flush_upsert(self, month_key: str, report: FlushReport) -> None:
        entry = self.queue.upserts.get(month_key)
        if entry is None:
            return
        try:
            remote_month = self.remote.get_month(month_key)
            if remote_month is not None and self._remote_changed(remote_month, entry.updated_at):
                if self.queue.drop_upsert(month_key, entry):
                    self._adopt(remote_month)
                    report.adopted.append(month_key)
                return
            self.remote.put_month(month_key, json.loads(entry.payload))
            self._mark_synced(month_key, entry.payload)
            self.queue.drop_upsert(month_key, entry)
            report.pushed.append(month_key)
        except TransientError as exc:
            logger.warning(f"sync_upsert_retained: month={month_key} error={exc}")
            report.retained.append(month_key)
        except ClientRejected as exc:
            logger.error(f"sync_upsert_dropped: month={month_key} error={exc}")
            self._rejected[month_key] = payload_digest(entry.payload)
            self.queue.drop_upsert(month_key, entry)
            report.dropped.append(month_key)

    def _flush_settings(self, report: FlushReport) -> None:
        entry = self.queue.settings
        if entry is None:
            return
        try:
            self.remote.patch_settings(entry.payload)
            self.queue.drop_settings(entry)
            report.settings_pushed = True
        except TransientError as exc:
            logger.warning(f"sync_settings_retained: error={exc}")
            report.retained.append("settings")
        except ClientRejected as exc:
            logger.error(f"sync_settings_dropped: error={exc}")
            self.queue.drop_settings(entry)
            report.dropped.append("settings")

    def _remote_changed(self, remote_month: RemoteMonth, queued_at: datetime) -> bool:
        """True when someone else wrote the month after the local edit was queued.

        A newer record holding exactly what this client last synced is the echo of
        its own write, not a concurrent change.
        """
        if remote_month.updated_at <= queued_at:
            return False
        remote_payload = serialize_budget_data(normalize_budget_data(remote_month.data))
        return payload_digest(remote_payload) != self._synced.get(remote_month.month_key)

    def _adopt(self, remote_month: RemoteMonth) -> None:
        data = normalize_budget_data(remote_month.data)
        self._mark_synced(remote_month.month_key, serialize_budget_data(data))
        self._rejected.pop(remote_month.month_key, None)
        if self.store.is_open:
            self.store.replace_month(remote_month.month_key, data)
        logger.info(
            f"sync_adopted_remote: month={remote_month.month_key} "
            f"remote_updated_at={remote_month.updated_at.isoformat()}"
        )

"""Client session wiring: month store, durable local state, sync and scheduling."""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Optional

from config import get_settings
from ledger import MonthStore
from local_store import LocalStateStore
from models import ConflictPolicy
from periods import current_month_key, is_valid_month_key
from propagation import ConfirmOverwrite, TemplatePropagationEngine
from remote import RemoteStore
from scheduler import SyncScheduler
from sync import Clock, SyncEngine, SyncStatus

logger = logging.getLogger(__name__)


class BudgetSession:
    """One signed-in user's view of the shared budget.

    ``sign_in`` loads months (remote first, local snapshot when offline) and
    starts the scheduler; every store change is snapshotted locally and queued
    for a debounced save. ``sign_out`` drains the pending save and closes the
    store.
    """

    def __init__(
        self,
        remote: Optional[RemoteStore] = None,
        local: Optional[LocalStateStore] = None,
        *,
        policy: Optional[ConflictPolicy] = None,
        confirm: Optional[ConfirmOverwrite] = None,
        clock: Optional[Clock] = None,
        debounce_ms: Optional[int] = None,
        flush_interval_secs: Optional[int] = None,
        start_scheduler: bool = True,
    ) -> None:
        settings = get_settings()
        self.remote = remote or RemoteStore()
        self.local = local or LocalStateStore()
        policy = ConflictPolicy(policy or settings.conflict_policy)
        self.store = MonthStore(TemplatePropagationEngine(policy, confirm))
        self.sync = SyncEngine(
            self.store,
            self.remote,
            self.local,
            clock=clock,
            on_session_expired=self._handle_session_expired,
        )
        self.scheduler = SyncScheduler(self.sync, debounce_ms, flush_interval_secs)
        self.start_scheduler = start_scheduler
        self.user_id: Optional[str] = None
        self.signed_in = False
        self._expired_listeners: list[Callable[[], None]] = []

    def on_session_expired(self, listener: Callable[[], None]) -> None:
        self._expired_listeners.append(listener)

    def _handle_session_expired(self) -> None:
        logger.warning(f"session_expired: user={self.user_id}")
        for listener in list(self._expired_listeners):
            listener()

    def _on_store_change(self, touched: set[str]) -> None:
        self.sync.persist_snapshot()
        self.scheduler.schedule_save(touched)

    def sign_in(self, user_id: Optional[str] = None, today: Optional[date] = None) -> str:
        """Load the months and return the month key to display."""
        if self.signed_in:
            self.sign_out()
        self.user_id = user_id
        self.sync.resume_session()
        loaded = self.sync.hydrate()
        self.store.subscribe(self._on_store_change)
        self.signed_in = True

        current = current_month_key(today)
        self.store.ensure_month(current)
        if self.start_scheduler:
            self.scheduler.start()
        if loaded and not self.sync.queue.is_empty():
            self.sync.flush()

        last = self.local.get_last_month(user_id)
        month_key = last if last in self.store else current
        logger.info(
            f"session_signed_in: user={user_id} months={len(self.store)} "
            f"online={loaded} month={month_key}"
        )
        return month_key

    def sign_out(self) -> None:
        if not self.signed_in:
            return
        self.scheduler.stop(flush_pending=True)
        self.store.unsubscribe(self._on_store_change)
        self.store.close()
        self.signed_in = False
        logger.info(f"session_signed_out: user={self.user_id}")
        self.user_id = None
        # The worker pool of a shut down scheduler cannot be restarted.
        self.scheduler = SyncScheduler(
            self.sync,
            int(self.scheduler.debounce.total_seconds() * 1000),
            self.scheduler.flush_interval_secs,
        )

    def view_month(self, month_key: str) -> None:
        if not is_valid_month_key(month_key):
            raise ValueError(f"Invalid month key: {month_key}")
        self.local.set_last_month(month_key, self.user_id)

    def delete_month(self, month_key: str) -> Optional[str]:
        return self.sync.delete_month(month_key)

    def update_settings(self, partial: dict) -> None:
        self.sync.update_settings(partial)

    def set_online(self, online: bool) -> None:
        self.sync.set_online(online)

    def save_now(self) -> None:
        self.scheduler.save_now()

    def status(self) -> SyncStatus:
        return self.sync.status()

import time
from datetime import date

from client import BudgetSession
from ledger import MonthStore
from local_store import LocalStateStore, create_local_engine
from models import ConflictPolicy, LineKind, PersonKey
from remote import TransientError, Unauthorized
from scheduler import SAVE_JOB_ID, SyncScheduler
from sync import SyncEngine

from fakes import FakeRemote

P1 = PersonKey.person1
FIXED = LineKind.fixed_expenses


def _session(remote=None, local=None, **kwargs) -> BudgetSession:
    remote = remote or FakeRemote()
    local = local or LocalStateStore(create_local_engine("sqlite:///:memory:"))
    return BudgetSession(
        remote,
        local,
        clock=remote.clock,
        start_scheduler=False,
        policy=ConflictPolicy.never_overwrite,
        **kwargs,
    )


def test_sign_in_creates_current_month():
    remote = FakeRemote()
    remote.write_from_other_device("2024-01", {"person1": {"name": "Alice"}})
    session = _session(remote)

    month = session.sign_in("alice", today=date(2024, 3, 10))

    assert month == "2024-03"
    assert session.store.keys() == ["2024-01", "2024-03"]
    assert session.scheduler.scheduler.get_job(SAVE_JOB_ID) is not None

    session.save_now()

    assert "2024-03" in remote.months
    assert session.status().state == "clean"


def test_edits_are_snapshotted_and_saved_on_sign_out():
    remote = FakeRemote()
    local = LocalStateStore(create_local_engine("sqlite:///:memory:"))
    session = _session(remote, local)
    session.sign_in(today=date(2024, 1, 5))
    session.save_now()

    session.store.add_line("2024-01", P1, FIXED, "Rent", 800)

    snapshot = local.load_snapshot()
    assert snapshot["2024-01"]["person1"]["fixedExpenses"][-1]["name"] == "Rent"
    assert remote.puts() == ["2024-01"]

    session.sign_out()

    assert remote.puts() == ["2024-01", "2024-01"]
    assert session.signed_in is False
    assert session.store.is_open is False


def test_last_viewed_month_is_restored_per_user():
    remote = FakeRemote()
    local = LocalStateStore(create_local_engine("sqlite:///:memory:"))
    remote.write_from_other_device("2024-01", {})
    session = _session(remote, local)

    session.sign_in("alice", today=date(2024, 2, 1))
    session.view_month("2024-01")
    session.sign_out()

    assert session.sign_in("alice", today=date(2024, 2, 1)) == "2024-01"
    session.sign_out()
    assert session.sign_in("bob", today=date(2024, 2, 1)) == "2024-02"


def test_session_expiry_is_signalled():
    remote = FakeRemote()
    session = _session(remote)
    expired = []
    session.on_session_expired(lambda: expired.append(True))
    session.sign_in(today=date(2024, 1, 5))

    remote.failures["put"] = Unauthorized("token expired", 401)
    session.save_now()

    assert expired == [True]
    assert session.status().state == "session_expired"
    assert "2024-01" in session.sync.queue.upserts


def test_offline_sign_in_uses_snapshot_and_flushes_later():
    remote = FakeRemote()
    local = LocalStateStore(create_local_engine("sqlite:///:memory:"))
    session = _session(remote, local)
    session.sign_in(today=date(2024, 1, 5))
    session.store.rename_person("2024-01", P1, "Alice")
    session.save_now()
    session.sign_out()

    remote.failures["list"] = TransientError("offline")
    assert session.sign_in(today=date(2024, 1, 5)) == "2024-01"
    assert session.sync.online is False
    assert session.store.get("2024-01").person1.name == "Alice"
    del remote.failures["list"]

    session.store.rename_person("2024-01", P1, "Alicia")
    session.save_now()
    assert "2024-01" in session.sync.queue.upserts

    session.set_online(True)

    assert session.sync.queue.is_empty()
    assert remote.months["2024-01"].data["person1"]["name"] == "Alicia"


def test_debounced_save_coalesces_edits():
    remote = FakeRemote()
    remote.write_from_other_device("2024-01", {})
    store = MonthStore()
    engine = SyncEngine(
        store,
        remote,
        LocalStateStore(create_local_engine("sqlite:///:memory:")),
        clock=remote.clock,
    )
    engine.hydrate()
    scheduler = SyncScheduler(engine, debounce_ms=200, flush_interval_secs=3600)
    store.subscribe(scheduler.schedule_save)
    scheduler.start()
    try:
        for balance in (1, 2, 3):
            store.set_initial_balance("2024-01", balance)

        deadline = time.monotonic() + 5
        while not remote.puts() and time.monotonic() < deadline:
            time.sleep(0.02)
        time.sleep(0.4)
    finally:
        scheduler.stop()

    assert remote.puts() == ["2024-01"]
    assert remote.months["2024-01"].data["jointAccount"]["initialBalance"] == 3

from local_store import (
    QUEUE_KEY,
    SNAPSHOT_KEY,
    LocalStateStore,
    create_local_engine,
)


def test_snapshot_survives_a_new_store_on_the_same_file(tmp_path):
    url = f"sqlite:///{tmp_path / 'offline.db'}"
    store = LocalStateStore(create_local_engine(url))
    store.save_snapshot({"2024-01": {"jointAccount": {"initialBalance": 12}}})
    store.save_queue({"upserts": {}, "deletes": {"2024-02": {"updatedAt": "2024-01-01T00:00:00+00:00"}}})

    reopened = LocalStateStore(create_local_engine(url))

    assert reopened.load_snapshot() == {"2024-01": {"jointAccount": {"initialBalance": 12}}}
    assert "2024-02" in reopened.load_queue()["deletes"]
    assert reopened.keys() == [QUEUE_KEY, SNAPSHOT_KEY]


def test_missing_values_fall_back_to_defaults():
    store = LocalStateStore(create_local_engine("sqlite:///:memory:"))

    assert store.load_snapshot() == {}
    assert store.load_queue() == {}
    assert store.load_synced_digests() == {}
    assert store.get_last_month() is None


def test_overwrite_and_delete():
    store = LocalStateStore(create_local_engine("sqlite:///:memory:"))

    store.set_json("budget:misc", [1, 2])
    store.set_json("budget:misc", {"a": 1})
    assert store.get_json("budget:misc") == {"a": 1}

    store.delete("budget:misc")
    assert store.get_json("budget:misc", "gone") == "gone"


def test_wrongly_shaped_values_are_ignored():
    store = LocalStateStore(create_local_engine("sqlite:///:memory:"))
    store.set_json(SNAPSHOT_KEY, ["not", "a", "map"])

    assert store.load_snapshot() == {}


def test_last_month_is_tracked_per_user():
    store = LocalStateStore(create_local_engine("sqlite:///:memory:"))

    store.set_last_month("2024-03")
    store.set_last_month("2024-07", user_id="alice")

    assert store.get_last_month() == "2024-03"
    assert store.get_last_month("alice") == "2024-07"
    assert store.get_last_month("bob") is None

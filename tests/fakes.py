import copy
from datetime import datetime, timedelta, timezone

from remote import RemoteMonth


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class FakeRemote:
    """In-memory remote store sharing the test clock, with failure injection."""

    def __init__(self, clock=None) -> None:
        self.clock = clock or FakeClock()
        self.months: dict[str, RemoteMonth] = {}
        self.settings: dict = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, object]] = []
        self.on_call = None

    def _call(self, name: str, key=None) -> None:
        self.calls.append((name, key))
        if self.on_call is not None:
            self.on_call(name, key)
        if name in self.failures:
            raise self.failures[name]

    def write_from_other_device(self, key: str, data: dict) -> None:
        self.months[key] = RemoteMonth(key, copy.deepcopy(data), self.clock())

    def list_months(self):
        self._call("list")
        return list(self.months.values())

    def get_month(self, key):
        self._call("get", key)
        return self.months.get(key)

    def put_month(self, key, data):
        self._call("put", key)
        self.write_from_other_device(key, data)
        return self.months[key].updated_at

    def delete_month(self, key):
        self._call("delete", key)
        self.months.pop(key, None)

    def get_settings(self):
        self._call("get_settings")
        return dict(self.settings)

    def patch_settings(self, partial):
        self._call("patch", partial)
        self.settings.update(partial)
        return dict(self.settings)

    def puts(self) -> list:
        return [key for name, key in self.calls if name == "put"]

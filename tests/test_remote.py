from datetime import datetime, timezone

import httpx
import pytest

from remote import (
    ClientRejected,
    RemoteStore,
    TransientError,
    Unauthorized,
    classify_status,
    parse_timestamp,
)


def _remote(handler) -> RemoteStore:
    client = httpx.Client(
        base_url="http://budget.test", transport=httpx.MockTransport(handler)
    )
    return RemoteStore(client=client, token="secret")


def test_remote_store_against_api(api_client):
    remote = RemoteStore(client=api_client, token="test-token")

    assert remote.get_month("2024-01") is None
    updated_at = remote.put_month("2024-01", {"person1": {"name": "Alice"}})
    assert updated_at.tzinfo is not None

    month = remote.get_month("2024-01")
    assert month.data == {"person1": {"name": "Alice"}}
    assert month.updated_at == updated_at
    assert [m.month_key for m in remote.list_months()] == ["2024-01"]

    remote.delete_month("2024-01")
    remote.delete_month("2024-01")
    assert remote.list_months() == []

    assert remote.patch_settings({"theme": "dark"}) == {"theme": "dark"}
    assert remote.get_settings() == {"theme": "dark"}


def test_wrong_token_is_unauthorized(api_client):
    remote = RemoteStore(client=api_client, token="wrong")

    with pytest.raises(Unauthorized):
        remote.list_months()


def test_bearer_token_is_sent():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"months": []})

    _remote(handler).list_months()

    assert seen["auth"] == "Bearer secret"


@pytest.mark.parametrize(
    "status, error",
    [
        (401, Unauthorized),
        (400, ClientRejected),
        (403, ClientRejected),
        (408, TransientError),
        (429, TransientError),
        (500, TransientError),
        (503, TransientError),
    ],
)
def test_status_classification(status, error):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"detail": "nope"})

    with pytest.raises(error) as excinfo:
        _remote(handler).put_month("2024-01", {})

    assert excinfo.value.status == status
    assert str(excinfo.value) == "nope"
    assert isinstance(classify_status(status, "x"), error)


def test_network_failure_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientError):
        _remote(handler).get_month("2024-01")


def test_garbled_response_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>proxy</html>")

    with pytest.raises(TransientError):
        _remote(handler).list_months()


def test_parse_timestamp_normalizes_to_utc():
    assert parse_timestamp("2024-01-02T03:04:05.000006Z") == datetime(
        2024, 1, 2, 3, 4, 5, 6, tzinfo=timezone.utc
    )
    assert parse_timestamp("2024-01-02T03:04:05").tzinfo == timezone.utc
    assert parse_timestamp(None) == datetime.fromtimestamp(0, timezone.utc)

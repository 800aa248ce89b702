AUTH = {"Authorization": "Bearer test-token"}


def test_health_is_public(api_client):
    assert api_client.get("/api/health").json() == {"status": "ok"}


def test_requests_without_token_are_rejected(api_client):
    assert api_client.get("/api/months").status_code == 401
    assert (
        api_client.get("/api/months", headers={"Authorization": "Bearer nope"}).status_code
        == 401
    )


def test_missing_server_token_is_a_configuration_error(api_client, monkeypatch):
    from config import get_settings

    monkeypatch.setenv("BUDGET_API_TOKEN", "")
    get_settings.cache_clear()

    response = api_client.get("/api/months", headers=AUTH)

    assert response.status_code == 500
    assert response.json()["detail"] == "Auth not configured"


def test_month_round_trip(api_client):
    data = {"person1": {"name": "Alice"}, "jointAccount": {"initialBalance": 5}}

    put = api_client.put("/api/months/2024-01", json={"data": data}, headers=AUTH)
    assert put.status_code == 200
    assert put.json()["monthKey"] == "2024-01"
    assert put.json()["updatedAt"].endswith("Z")

    fetched = api_client.get("/api/months/2024-01", headers=AUTH).json()
    assert fetched["data"] == data
    assert fetched["updatedAt"] == put.json()["updatedAt"]

    listed = api_client.get("/api/months", headers=AUTH).json()["months"]
    assert [month["monthKey"] for month in listed] == ["2024-01"]


def test_rewrites_get_strictly_newer_timestamps(api_client):
    first = api_client.put("/api/months/2024-01", json={"data": {}}, headers=AUTH).json()
    second = api_client.put("/api/months/2024-01", json={"data": {"x": 1}}, headers=AUTH).json()

    assert second["updatedAt"] > first["updatedAt"]


def test_delete_month(api_client):
    api_client.put("/api/months/2024-02", json={"data": {}}, headers=AUTH)

    assert api_client.delete("/api/months/2024-02", headers=AUTH).status_code == 204
    assert api_client.get("/api/months/2024-02", headers=AUTH).status_code == 404
    assert api_client.delete("/api/months/2024-02", headers=AUTH).status_code == 404


def test_invalid_month_key_is_a_bad_request(api_client):
    assert api_client.get("/api/months/2024-13", headers=AUTH).status_code == 400
    response = api_client.put("/api/months/202401", json={"data": {}}, headers=AUTH)
    assert response.status_code == 400


def test_body_without_data_is_rejected(api_client):
    response = api_client.put("/api/months/2024-01", json={"month": {}}, headers=AUTH)

    assert response.status_code == 422


def test_settings_patch_merges(api_client):
    assert api_client.get("/api/settings", headers=AUTH).json() == {"settings": {}}

    api_client.patch("/api/settings", json={"currency": "EUR", "theme": "light"}, headers=AUTH)
    merged = api_client.patch("/api/settings", json={"theme": "dark"}, headers=AUTH).json()

    assert merged == {"settings": {"currency": "EUR", "theme": "dark"}}
    assert api_client.get("/api/settings", headers=AUTH).json() == merged

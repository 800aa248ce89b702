from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from config import get_settings

logger = logging.getLogger(__name__)

_RETRYABLE_CLIENT_STATUSES = {408, 429}


class RemoteError(Exception):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class Unauthorized(RemoteError):
    """The session is no longer valid; terminal for the current flush."""


class ClientRejected(RemoteError):
    """The server refused the request; retrying the same payload cannot help."""


class TransientError(RemoteError):
    """Network failure, timeout or server error; worth retrying later."""


@dataclass(frozen=True)
class RemoteMonth:
    month_key: str
    data: dict[str, Any]
    updated_at: datetime


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.fromtimestamp(0, timezone.utc)
    else:
        return datetime.fromtimestamp(0, timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def classify_status(status: int, message: str) -> RemoteError:
    if status == 401:
        return Unauthorized(message, status)
    if status >= 500 or status in _RETRYABLE_CLIENT_STATUSES:
        return TransientError(message, status)
    return ClientRejected(message, status)


class RemoteStore:
    """Client for the month and settings endpoints of the budget API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        *,
        client: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.token = token if token is not None else settings.api_token
        if client is None:
            client = httpx.Client(
                base_url=base_url or settings.api_url,
                timeout=timeout if timeout is not None else settings.http_timeout_secs,
            )
        self.client = client

    def close(self) -> None:
        self.client.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[httpx.Response]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.client.request(method, path, json=json, headers=headers)
        except httpx.TransportError as exc:
            raise TransientError(f"{method} {path} failed: {exc}") from exc

        if allow_not_found and response.status_code == 404:
            return None
        if response.status_code >= 400:
            message = _error_message(response, f"{method} {path} failed")
            raise classify_status(response.status_code, message)
        return response

    def list_months(self) -> list[RemoteMonth]:
        response = self._request("GET", "/api/months")
        months = _json(response).get("months")
        if not isinstance(months, list):
            return []
        return [
            RemoteMonth(
                month_key=entry["monthKey"],
                data=entry.get("data") or {},
                updated_at=parse_timestamp(entry.get("updatedAt")),
            )
            for entry in months
            if isinstance(entry, dict) and isinstance(entry.get("monthKey"), str)
        ]

    def get_month(self, month_key: str) -> Optional[RemoteMonth]:
        response = self._request(
            "GET", f"/api/months/{month_key}", allow_not_found=True
        )
        if response is None:
            return None
        payload = _json(response)
        return RemoteMonth(
            month_key=month_key,
            data=payload.get("data") or {},
            updated_at=parse_timestamp(payload.get("updatedAt")),
        )

    def put_month(self, month_key: str, data: dict[str, Any]) -> datetime:
        response = self._request("PUT", f"/api/months/{month_key}", json={"data": data})
        return parse_timestamp(_json(response).get("updatedAt"))

    def delete_month(self, month_key: str) -> None:
        self._request("DELETE", f"/api/months/{month_key}", allow_not_found=True)

    def get_settings(self) -> dict[str, Any]:
        response = self._request("GET", "/api/settings")
        settings = _json(response).get("settings")
        return settings if isinstance(settings, dict) else {}

    def patch_settings(self, partial: dict[str, Any]) -> dict[str, Any]:
        response = self._request("PATCH", "/api/settings", json=partial)
        settings = _json(response).get("settings")
        return settings if isinstance(settings, dict) else {}


def _json(response: Optional[httpx.Response]) -> dict[str, Any]:
    if response is None or response.status_code == 204 or not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError as exc:
        raise TransientError("Unexpected response from budget API") from exc
    return payload if isinstance(payload, dict) else {}


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"{fallback} ({response.status_code})"
    if isinstance(payload, dict):
        detail = payload.get("detail") or payload.get("error")
        if isinstance(detail, str):
            return detail
    return f"{fallback} ({response.status_code})"

from __future__ import annotations

import logging
from typing import Any

import httpx

from .models import Upload

logger = logging.getLogger(__name__)


class HandlerError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("detail", "error", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return response.text.strip() or f"HTTP {response.status_code}"


class HandlerClient:
    """Async client for the symptom checker request handlers."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        token: str | None = None,
        user_id: str | None = None,
        timeout_seconds: float = 90.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers: dict[str, str] = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if user_id:
            headers["X-User-Id"] = user_id
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def __aenter__(self) -> "HandlerClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def analyze_text(self, symptoms: str) -> dict[str, Any]:
        return await self._request("POST", "/api/analyze-text", json={"symptoms": symptoms})

    async def analyze_image(self, upload: Upload) -> dict[str, Any]:
        files = {"image": (upload.name, upload.data, upload.content_type)}
        return await self._request("POST", "/api/analyze-image", files=files)

    async def read_image(self, image_name: str) -> dict[str, Any]:
        return await self._request("GET", "/api/analyze-image", params={"imageName": image_name})

    async def transcribe_audio(self, upload: Upload) -> dict[str, Any]:
        files = {"audio": (upload.name, upload.data, upload.content_type)}
        return await self._request("POST", "/api/transcribe-audio", files=files)

    async def list_history(self, limit: int | None = None) -> list[dict[str, Any]]:
        params = {"limit": limit} if limit is not None else None
        payload = await self._request("GET", "/api/history", params=params)
        items = payload.get("items")
        if not isinstance(items, list):
            raise HandlerError("History response is missing items.")
        return items

    async def update_history(self, record_id: str, symptoms: str) -> dict[str, Any]:
        return await self._request("PATCH", f"/api/history/{record_id}", json={"symptoms": symptoms})

    async def delete_history(self, record_id: str) -> bool:
        payload = await self._request("DELETE", f"/api/history/{record_id}")
        return bool(payload.get("deleted"))

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise HandlerError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise HandlerError(
                f"{method} {path} returned {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise HandlerError(f"{method} {path} returned a non-JSON body.") from exc
        if not isinstance(payload, dict):
            raise HandlerError(f"{method} {path} returned an unexpected body.")
        return payload

"""HTTP storage adapter for a remote key/value service."""

from __future__ import annotations

from typing import Any, cast

import httpx

from zenquery.errors import StorageError


class AsyncHttpAdapter:
    """Async adapter storing objects in a remote key/value service.

    Endpoints (all ``POST`` with JSON bodies):

        /v1/storage/read    {"key": ...}            -> {"value": {...} | null}
        /v1/storage/write   {"key": ..., "value": {...}}
        /v1/storage/delete  {"key": ...}
        /v1/storage/clear   {}
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    async def _request(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        """Make a POST request to the storage API."""
        try:
            response = await self._client.post(endpoint, json=body)
        except httpx.HTTPError as e:
            raise StorageError(f"Storage request to {endpoint} failed: {e}") from e
        if not response.is_success:
            try:
                error = response.json().get("error", "Request failed")
            except ValueError:
                error = f"HTTP {response.status_code}"
            raise StorageError(error)
        if not response.content:
            return {}
        return cast(dict[str, Any], response.json())

    async def write(self, key: str, json: dict[str, Any]) -> None:
        """Store a JSON object under key."""
        await self._request("/v1/storage/write", {"key": key, "value": json})

    async def read(self, key: str) -> dict[str, Any] | None:
        """Read the JSON object stored under key."""
        data = await self._request("/v1/storage/read", {"key": key})
        value = data.get("value")
        if value is None:
            return None
        return cast(dict[str, Any], value)

    async def delete(self, key: str) -> None:
        """Delete a stored object."""
        await self._request("/v1/storage/delete", {"key": key})

    async def clear(self) -> None:
        """Delete every stored object."""
        await self._request("/v1/storage/clear", {})

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

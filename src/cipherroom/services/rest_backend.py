"""HTTP adapter for a hosted backend-as-a-service.

This module provides the RestBackend class, which implements the identity
directory, channel grant store and channel registry protocols against a
PostgREST-style row API (``/rest/v1/<table>`` with ``column=eq.value``
filters). It includes:

- A lazily created ``httpx.AsyncClient`` shared by all calls
- API key and per-user access token headers
- Mapping of non-2xx responses to ``BackendError``
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from cipherroom.core.settings import settings
from cipherroom.services.directory import ChannelRecord
from cipherroom.services.errors import BackendError

# Configure logger for this module
logger = logging.getLogger(__name__)

REST_PREFIX = "/rest/v1"
HTTP_MULTIPLE_CHOICES = 300


@dataclass(frozen=True)
class RestBackendConfig:
    """Immutable configuration for backend requests."""

    base_url: str
    api_key: str | None
    timeout_seconds: float


def load_backend_config() -> RestBackendConfig:
    """Build configuration object from global settings."""

    if not settings.backend_url:
        raise BackendError("CIPHERROOM_BACKEND_URL is not configured")
    return RestBackendConfig(
        base_url=settings.backend_url,
        api_key=settings.backend_api_key,
        timeout_seconds=float(settings.backend_http_timeout_seconds),
    )


def _eq(value: str) -> str:
    return f"eq.{value}"


class RestBackend:
    """Row API client implementing the encryption core's backend protocols."""

    def __init__(
        self,
        config: RestBackendConfig | None = None,
        *,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_backend_config()
        self._access_token = access_token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers["apikey"] = self.config.api_key
        token = self._access_token or self.config.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Mapping[str, str] | None = None,
        json_data: Any | None = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(
                method,
                f"{REST_PREFIX}/{table}",
                params=params,
                json=json_data,
                headers=self._headers(prefer),
            )
        except httpx.HTTPError as exc:
            raise BackendError(f"Backend request failed: {exc}") from exc

        if response.status_code >= HTTP_MULTIPLE_CHOICES:
            logger.warning("%s %s returned %s", method, table, response.status_code)
            raise BackendError(f"Backend responded with {response.status_code} for {table}")
        return response

    async def _select_one(self, table: str, params: Mapping[str, str]) -> dict[str, Any] | None:
        response = await self._request("GET", table, params=params)
        rows = response.json()
        if not isinstance(rows, list):
            raise BackendError(f"Unexpected backend payload for {table}")
        return rows[0] if rows else None

    # --- Identity directory --------------------------------------------------------
    async def get_public_key(self, user_id: str) -> str | None:
        row = await self._select_one("profiles", {"id": _eq(user_id), "select": "public_key"})
        return row.get("public_key") if row else None

    async def set_public_key(self, user_id: str, public_key: str) -> None:
        response = await self._request(
            "PATCH",
            "profiles",
            params={"id": _eq(user_id)},
            json_data={"public_key": public_key},
            prefer="return=representation",
        )
        # A filter matching no profile row is still a 2xx with an empty body.
        rows = response.json()
        if not isinstance(rows, list) or not rows:
            raise BackendError(f"No profile row for {user_id}; public key not recorded")

    # --- Channel grant store -------------------------------------------------------
    async def get_grant(self, channel_id: str, user_id: str) -> str | None:
        row = await self._select_one(
            "channel_keys",
            {"channel_id": _eq(channel_id), "user_id": _eq(user_id), "select": "encrypted_key"},
        )
        return row.get("encrypted_key") if row else None

    async def put_grant(self, channel_id: str, user_id: str, wrapped_key: str) -> None:
        await self._request(
            "POST",
            "channel_keys",
            json_data={"channel_id": channel_id, "user_id": user_id, "encrypted_key": wrapped_key},
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def delete_grant(self, channel_id: str, user_id: str) -> None:
        await self._request(
            "DELETE",
            "channel_keys",
            params={"channel_id": _eq(channel_id), "user_id": _eq(user_id)},
        )

    # --- Channel registry ----------------------------------------------------------
    @staticmethod
    def _record(row: Mapping[str, Any]) -> ChannelRecord:
        return ChannelRecord(
            channel_id=str(row["id"]),
            encryption_enabled=bool(row.get("encryption_enabled")),
            encryption_resolved=bool(row.get("encryption_resolved")),
        )

    async def get_channel(self, channel_id: str) -> ChannelRecord | None:
        row = await self._select_one(
            "channels",
            {"id": _eq(channel_id), "select": "id,encryption_enabled,encryption_resolved"},
        )
        return self._record(row) if row else None

    async def resolve_encryption(self, channel_id: str, enabled: bool) -> ChannelRecord:
        # Only unresolved channels match the filter, so a decision is never overwritten.
        response = await self._request(
            "PATCH",
            "channels",
            params={"id": _eq(channel_id), "encryption_resolved": "is.false"},
            json_data={"encryption_enabled": enabled, "encryption_resolved": True},
            prefer="return=representation",
        )
        rows = response.json()
        if isinstance(rows, list) and rows:
            return self._record(rows[0])

        existing = await self.get_channel(channel_id)
        if existing is None:
            raise BackendError(f"Channel {channel_id} does not exist")
        return existing

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

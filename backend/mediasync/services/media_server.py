"""HTTP client for Jellyfin-compatible media servers."""
from __future__ import annotations

import logging
from typing import Any

import httpx

from mediasync.config import get_settings
from mediasync.errors import (
    MediaServerError,
    MediaServerResponseError,
    MediaServerUnreachableError,
)

logger = logging.getLogger(__name__)

ITEM_FIELDS = ",".join([
    "Overview",
    "Genres",
    "Tags",
    "Studios",
    "OriginalTitle",
    "PremiereDate",
    "ProductionYear",
    "OfficialRating",
    "CommunityRating",
    "ParentId",
    "SeriesStudio",
])

PLAYED_ITEM_FIELDS = "UserData,RunTimeTicks,SeriesName,SeriesId,SeasonId"


class MediaServerClient:
    """Read-only access to the media server API, authenticated with X-Emby-Token."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        items_timeout: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._items_timeout = items_timeout

    @classmethod
    def from_server(cls, server, settings=None) -> MediaServerClient:
        settings = settings or get_settings()
        return cls(
            server.url,
            server.api_key,
            timeout=settings.media_request_timeout_seconds,
            items_timeout=settings.media_items_timeout_seconds,
        )

    async def _get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Authenticated GET returning the decoded JSON body."""
        try:
            async with httpx.AsyncClient(timeout=timeout or self._timeout) as client:
                resp = await client.get(
                    f"{self._base_url}{path}",
                    params=params,
                    headers={"X-Emby-Token": self._api_key, "Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise MediaServerUnreachableError(f"timeout requesting {path}") from exc
        except httpx.TransportError as exc:
            raise MediaServerUnreachableError(f"{type(exc).__name__}: {exc}") from exc
        except httpx.HTTPError as exc:
            # DecodingError, TooManyRedirects
            raise MediaServerResponseError(f"{type(exc).__name__}: {exc}") from exc

        if resp.status_code >= 400:
            raise MediaServerError(resp.status_code, resp.reason_phrase, path)
        try:
            return resp.json()
        except ValueError as exc:
            raise MediaServerResponseError(f"{path} returned invalid JSON: {exc}") from exc

    async def _get_object(self, path: str, **kwargs) -> dict:
        data = await self._get(path, **kwargs)
        if not isinstance(data, dict):
            raise MediaServerResponseError(
                f"{path} returned {type(data).__name__}, expected an object"
            )
        return data

    async def _get_list(self, path: str, **kwargs) -> list[dict]:
        data = await self._get(path, **kwargs)
        if not isinstance(data, list):
            raise MediaServerResponseError(
                f"{path} returned {type(data).__name__}, expected a list"
            )
        return data

    async def _get_items(self, path: str, **kwargs) -> list[dict]:
        """Unwrap the ``{"Items": [...]}`` envelope of query endpoints."""
        items = (await self._get_object(path, **kwargs)).get("Items") or []
        if not isinstance(items, list):
            raise MediaServerResponseError(f"{path} returned a non-list Items field")
        return items

    async def get_system_info(self) -> dict:
        return await self._get_object("/System/Info")

    async def get_users(self) -> list[dict]:
        return await self._get_list("/Users")

    async def get_libraries(self) -> list[dict]:
        return await self._get_list("/Library/VirtualFolders")

    async def get_library_items(self, library_id: str) -> list[dict]:
        """All items under a library. The API scopes recursive listing by parent."""
        return await self._get_items(
            "/Items",
            params={
                "ParentId": library_id,
                "Recursive": "true",
                "Fields": ITEM_FIELDS,
            },
            timeout=self._items_timeout,
        )

    async def get_activity_log(self, limit: int = 100, start_index: int = 0) -> list[dict]:
        return await self._get_items(
            "/System/ActivityLog/Entries",
            params={"limit": limit, "startIndex": start_index},
        )

    async def get_user_played_items(self, user_id: str) -> list[dict]:
        return await self._get_items(
            f"/Users/{user_id}/Items",
            params={
                "Filters": "IsPlayed",
                "Recursive": "true",
                "IncludeItemTypes": "Movie,Episode",
                "Fields": PLAYED_ITEM_FIELDS,
            },
            timeout=self._items_timeout,
        )

    async def get_recent_items(self, library_id: str, limit: int = 100) -> list[dict]:
        """Newest ``limit`` items of a library, by date added."""
        return await self._get_items(
            "/Items",
            params={
                "ParentId": library_id,
                "Recursive": "true",
                "SortBy": "DateCreated",
                "SortOrder": "Descending",
                "Limit": limit,
                "Fields": ITEM_FIELDS,
            },
            timeout=self._items_timeout,
        )

    async def get_items_people(self, item_ids: list[str]) -> list[dict]:
        """Cast and crew for a batch of items. Item sync leaves People out."""
        return await self._get_items(
            "/Items",
            params={"Ids": ",".join(item_ids), "Fields": "People"},
            timeout=self._items_timeout,
        )

"""Storefront commerce client and its paged-source adapter.

``CommerceClient`` fetches one cursor page at a time from the storefront's
search and recommendation endpoints.  ``HttpPagedSource`` wraps a page
function in the observable ``items`` / ``loading`` / ``error`` /
``has_next_page`` / ``fetch_more`` shape the fetch runner drives.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from quizrec.config import Settings
from quizrec.protocols.http import HttpClientError, JsonHttpClient

logger = structlog.get_logger(__name__)


class CommerceClientError(HttpClientError):
    """Raised when a storefront request fails after retries."""


@dataclass
class CommercePage:
    """One page of storefront results, container shape left untouched."""

    items: Any
    has_next_page: bool = False
    end_cursor: str | None = None


def _page_from_payload(data: Any) -> CommercePage:
    if not isinstance(data, dict):
        return CommercePage(items=data)

    page_info = data.get("pageInfo")
    if page_info is None and isinstance(data.get("products"), dict):
        page_info = data["products"].get("pageInfo")
    page_info = page_info or {}

    has_next = page_info.get("hasNextPage", data.get("has_next_page", False))
    cursor = page_info.get("endCursor", data.get("next_cursor"))

    if "products" in data:
        items = data["products"]
    else:
        items = {k: v for k, v in data.items() if k in ("edges", "items", "results")}

    return CommercePage(items=items, has_next_page=bool(has_next), end_cursor=cursor)


class CommerceClient(JsonHttpClient):
    """Async client for storefront product search and recommendations."""

    error_class = CommerceClientError

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> CommerceClient:
        headers = {}
        if settings.commerce_api_token:
            headers["Authorization"] = f"Bearer {settings.commerce_api_token}"
        return cls(
            settings.commerce_api_url,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            headers=headers,
            transport=transport,
        )

    async def search_products(
        self,
        query: str,
        first: int = 10,
        after: str | None = None,
    ) -> CommercePage:
        params: dict[str, Any] = {"query": query, "first": first}
        if after:
            params["after"] = after
        return _page_from_payload(await self._request("GET", "/products/search", params=params))

    async def recommended_products(
        self,
        first: int = 6,
        after: str | None = None,
    ) -> CommercePage:
        params: dict[str, Any] = {"first": first}
        if after:
            params["after"] = after
        return _page_from_payload(
            await self._request("GET", "/products/recommended", params=params)
        )


PageFetcher = Callable[[str | None], Awaitable[CommercePage]]


class HttpPagedSource:
    """Observable paged query over a cursor page function.

    The first page starts loading as soon as the source is created inside a
    running event loop.
    """

    def __init__(self, fetch_page: PageFetcher) -> None:
        self._fetch_page = fetch_page
        self.items: Any = None
        self.loading = True
        self.error: BaseException | None = None
        self.has_next_page = False
        self._cursor: str | None = None
        self._task = asyncio.get_running_loop().create_task(self._load(None))

    async def _load(self, cursor: str | None) -> None:
        self.loading = True
        try:
            page = await self._fetch_page(cursor)
        except Exception as exc:
            logger.warning("commerce_page_failed", cursor=cursor, error=str(exc))
            self.error = exc
            self.loading = False
            return
        self.items = page.items
        self.has_next_page = page.has_next_page
        self._cursor = page.end_cursor
        self.loading = False

    async def fetch_more(self) -> None:
        if not self.has_next_page:
            return
        await self._load(self._cursor)


class CommerceSources:
    """Source factory for the search and recommended collection roles."""

    def __init__(self, client: CommerceClient) -> None:
        self._client = client

    def search(self, query: str, page_size: int) -> HttpPagedSource:
        async def fetch(cursor: str | None) -> CommercePage:
            return await self._client.search_products(query, first=page_size, after=cursor)

        return HttpPagedSource(fetch)

    def recommended(self, page_size: int) -> HttpPagedSource:
        async def fetch(cursor: str | None) -> CommercePage:
            return await self._client.recommended_products(first=page_size, after=cursor)

        return HttpPagedSource(fetch)

    async def close(self) -> None:
        await self._client.close()

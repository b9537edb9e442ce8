"""Paginated fetch runner.

Drains a reactive, paginated product source (``items`` / ``loading`` /
``error`` / ``has_next_page`` / ``fetch_more``) up to a page cap and returns
one flat batch.  The source is a black box that the runner polls.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_STALL_TIMEOUT = 6.0
DEFAULT_POLL_INTERVAL = 0.05


@runtime_checkable
class PagedDataSource(Protocol):
    """Observable state of a paginated external product query."""

    @property
    def items(self) -> Any: ...

    @property
    def loading(self) -> bool: ...

    @property
    def error(self) -> BaseException | None: ...

    @property
    def has_next_page(self) -> bool: ...

    async def fetch_more(self) -> None: ...


class SourceFactory(Protocol):
    """Builds paged sources for the two collection roles."""

    def search(self, query: str, page_size: int) -> PagedDataSource: ...

    def recommended(self, page_size: int) -> PagedDataSource: ...


@dataclass
class FetchOutcome:
    """Everything a single runner pass collected."""

    items: list[Any] = field(default_factory=list)
    error: BaseException | None = None
    pages: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def normalize_container_shape(products: Any) -> list[Any]:
    """Flatten whichever container the source hands back into a list."""
    if not products:
        return []
    if isinstance(products, (list, tuple)):
        return list(products)
    if isinstance(products, dict):
        if "edges" in products:
            return [
                edge.get("node")
                for edge in products.get("edges") or []
                if isinstance(edge, dict) and edge.get("node") is not None
            ]
        for key in ("items", "results", "products"):
            if key in products:
                return normalize_container_shape(products[key])
    return []


async def _wait_settled(
    source: PagedDataSource,
    timeout: float,
    poll_interval: float,
) -> bool:
    """Poll until *source* stops loading.  Returns ``False`` on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while source.loading:
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(poll_interval)
    return True


async def run_paged(
    source: PagedDataSource,
    page_cap: int,
    *,
    stall_timeout: float = DEFAULT_STALL_TIMEOUT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> FetchOutcome:
    """Drain *source* until it runs out of pages or *page_cap* is reached.

    The first page counts toward *page_cap*.  An error ends the run
    immediately with whatever was collected so far; so does a page that
    takes longer than *stall_timeout* to settle.
    """
    outcome = FetchOutcome()

    while True:
        settled = await _wait_settled(source, stall_timeout, poll_interval)
        if not settled:
            logger.warning(
                "paged_source_stalled",
                pages=outcome.pages,
                collected=len(outcome.items),
                timeout=stall_timeout,
            )
            outcome.timed_out = True
            return outcome

        if source.error is not None:
            outcome.error = source.error
            logger.warning(
                "paged_source_error",
                pages=outcome.pages,
                collected=len(outcome.items),
                error=str(source.error),
            )
            return outcome

        outcome.items.extend(normalize_container_shape(source.items))
        outcome.pages += 1

        if not source.has_next_page or outcome.pages >= page_cap:
            return outcome

        try:
            await source.fetch_more()
        except Exception as exc:
            outcome.error = exc
            logger.warning(
                "paged_source_fetch_more_failed",
                pages=outcome.pages,
                error=str(exc),
            )
            return outcome

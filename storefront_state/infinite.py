"""Incremental pagination over a filtered product view."""

import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .errors import StoreError, describe_error
from .models import ProductFilters
from .reactive import Observable

logger = logging.getLogger(__name__)

T = TypeVar("T")

FetchPage = Callable[[ProductFilters, int, int], Awaitable[list[T]]]


class InfiniteList(Generic[T]):
    """
    Appends one page of results per `load_more()` call.

    Each request asks for one row beyond the page so that a full final page
    already sets `done`; N rows at page size p finish in ceil(N/p) calls.
    """

    def __init__(
        self,
        fetch: FetchPage,
        per_page: int = 6,
        filters: Optional[ProductFilters] = None,
    ) -> None:
        """
        Initialize the list.

        Args:
            fetch: Coroutine returning up to `limit` rows from `offset` for the filters
            per_page: Rows per page
            filters: Initial filters
        """
        if per_page < 1:
            raise ValueError(f"per_page must be at least 1, got {per_page}")
        self.fetch = fetch
        self.per_page = per_page
        self.filters = filters or ProductFilters()

        self.items: Observable[list[T]] = Observable([])
        self.page: Observable[int] = Observable(1)
        self.done: Observable[bool] = Observable(False)
        self.loading: Observable[bool] = Observable(False)
        self.error: Observable[Optional[str]] = Observable(None)

        self._generation = 0

    async def load_more(self) -> None:
        """Fetch and append the next page; no-op while loading or when done."""
        if self.loading.value or self.done.value:
            return
        generation = self._generation
        page = self.page.value
        self.loading.value = True
        self.error.value = None
        try:
            rows = await self.fetch(self.filters, (page - 1) * self.per_page, self.per_page + 1)
        except StoreError as e:
            if generation == self._generation:
                self.error.value = describe_error(e)
                logger.warning(f"Failed to load page {page}: {e}")
            return
        finally:
            if generation == self._generation:
                self.loading.value = False

        if generation != self._generation:
            logger.debug(f"Discarding page {page} fetched for superseded filters")
            return

        self.items.value = self.items.value + list(rows[:self.per_page])
        self.page.value = page + 1
        if len(rows) <= self.per_page:
            self.done.value = True

    def reset(self) -> None:
        """Forget loaded rows; results of in-flight requests are discarded."""
        self._generation += 1
        self.items.value = []
        self.page.value = 1
        self.done.value = False
        self.loading.value = False
        self.error.value = None

    async def set_filters(self, filters: ProductFilters) -> None:
        """Replace the filters, reset and load the first page."""
        self.filters = filters
        self.reset()
        await self.load_more()

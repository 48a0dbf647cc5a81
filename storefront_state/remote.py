"""Remote store contracts and the change feed channel."""

import asyncio
from typing import Callable, Optional, Protocol, TypeVar

from .models import ChangeEvent, CouponRule, Product, ProductFilters

EntryT = TypeVar("EntryT")

_CLOSED = object()


class ChangeFeed:
    """
    Channel of remote change events for one subscription.

    Producers publish events; a single consumer iterates the feed and
    acknowledges each event once applied. Closing the feed ends iteration.
    """

    def __init__(self, on_close: Optional[Callable[[], None]] = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def fail(self, error: Exception) -> None:
        """Deliver an error to the consumer; iteration raises it."""
        if not self._closed:
            self._queue.put_nowait(error)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            self._on_close()

    def ack(self) -> None:
        """Mark the last delivered event as applied."""
        self._queue.task_done()

    async def drained(self) -> None:
        """Wait until every published event has been acknowledged."""
        if self._closed:
            return
        await self._queue.join()

    def __aiter__(self) -> "ChangeFeed":
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.task_done()
            raise StopAsyncIteration
        if isinstance(item, Exception):
            self._queue.task_done()
            raise item
        return item


class RemoteTable(Protocol[EntryT]):
    """Per-domain CRUD against the remote backend, scoped by owner."""

    async def list(self, owner_id: str) -> dict[str, EntryT]: ...

    async def upsert(self, owner_id: str, entry: EntryT) -> None: ...

    async def delete(self, owner_id: str, key: str) -> None: ...

    async def subscribe(self, owner_id: str) -> ChangeFeed: ...


class CouponRules(Protocol):
    """Lookup of backend coupon definitions."""

    async def lookup(self, code: str) -> Optional[CouponRule]: ...


class ProductSource(Protocol):
    """Read access to the product catalog backend."""

    async def list_products(self) -> list[Product]: ...

    async def fetch_product(self, product_id: str) -> Optional[Product]: ...

    async def query(self, filters: ProductFilters, offset: int, limit: int) -> list[Product]: ...

    async def subscribe(self) -> ChangeFeed: ...

"""In-process backend implementing the remote contracts."""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Optional

from .errors import RemoteReadError, RemoteWriteError
from .models import ChangeEvent, ChangeKind, CouponRule, Product, ProductFilters
from .remote import ChangeFeed

logger = logging.getLogger(__name__)

_READ_OPS = {"list", "subscribe", "lookup", "products"}

PRODUCTS = "products"


class MemoryBackend:
    """
    Backend that keeps every table in memory.

    Writes publish change events to open feeds the same way a live backend
    echoes them. Failures can be queued per (domain, operation) to exercise
    error paths.
    """

    def __init__(self, latency: float = 0.0) -> None:
        """
        Initialize the backend.

        Args:
            latency: Seconds every call sleeps before running
        """
        self.latency = latency
        self.rows: dict[str, dict[str, dict[str, Any]]] = defaultdict(lambda: defaultdict(dict))
        self.coupon_rules: dict[str, CouponRule] = {}
        self.products: dict[str, Product] = {}
        self.calls: list[tuple[str, str]] = []
        self._feeds: dict[tuple[str, Optional[str]], list[ChangeFeed]] = defaultdict(list)
        self._failures: dict[tuple[str, str], list[Optional[Exception]]] = defaultdict(list)

    def table(self, domain: str, model: Optional[type] = None) -> "MemoryTable":
        """Table for a domain; rows are kept as models, so `model` is unused."""
        return MemoryTable(self, domain)

    def coupons(self) -> "MemoryCouponRules":
        return MemoryCouponRules(self)

    def product_source(self) -> "MemoryProductSource":
        return MemoryProductSource(self)

    def fail_next(
        self, domain: str, op: str, error: Optional[Exception] = None, times: int = 1, after: int = 0
    ) -> None:
        """
        Make the next `times` calls of `op` on `domain` raise.

        Args:
            domain: Table name (or "coupons" / "products")
            op: list, upsert, delete, subscribe, lookup or products
            error: Exception to raise; defaults to the matching remote error
            times: Number of failing calls
            after: Number of calls to let through before failing
        """
        if error is None:
            error_type = RemoteReadError if op in _READ_OPS else RemoteWriteError
            error = error_type(f"{domain}.{op} failed")
        self._failures[(domain, op)].extend([None] * after + [error] * times)

    def call_count(self, domain: str, op: Optional[str] = None) -> int:
        return sum(1 for d, o in self.calls if d == domain and (op is None or o == op))

    async def _enter(self, domain: str, op: str) -> None:
        self.calls.append((domain, op))
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)
        failures = self._failures.get((domain, op))
        if failures:
            error = failures.pop(0)
            if error is not None:
                logger.debug(f"Injected failure for {domain}.{op}")
                raise error

    def seed(self, domain: str, owner_id: str, entries: list[Any]) -> None:
        """Insert rows without publishing events."""
        for entry in entries:
            self.rows[domain][owner_id][entry.key] = entry

    def _publish(self, domain: str, owner_id: Optional[str], event: ChangeEvent) -> None:
        for feed in list(self._feeds.get((domain, owner_id), [])):
            feed.publish(event)

    def _open_feed(self, domain: str, owner_id: Optional[str]) -> ChangeFeed:
        feeds = self._feeds[(domain, owner_id)]

        def on_close() -> None:
            if feed in feeds:
                feeds.remove(feed)

        feed = ChangeFeed(on_close=on_close)
        feeds.append(feed)
        return feed

    def open_feeds(self, domain: str, owner_id: Optional[str] = None) -> int:
        return len(self._feeds.get((domain, owner_id), []))

    async def close(self) -> None:
        """Close every open change feed."""
        for feeds in list(self._feeds.values()):
            for feed in list(feeds):
                feed.close()

    def write(self, domain: str, owner_id: str, entry: Any) -> None:
        """Write a row as another device would, publishing the change."""
        rows = self.rows[domain][owner_id]
        kind = ChangeKind.UPDATE if entry.key in rows else ChangeKind.INSERT
        rows[entry.key] = entry
        self._publish(domain, owner_id, ChangeEvent(kind=kind, owner_id=owner_id, key=entry.key, entry=entry))

    def remove(self, domain: str, owner_id: str, key: str) -> None:
        """Delete a row as another device would, publishing the change."""
        rows = self.rows[domain][owner_id]
        if key in rows:
            del rows[key]
            self._publish(domain, owner_id, ChangeEvent(kind=ChangeKind.DELETE, owner_id=owner_id, key=key))

    def put_rule(self, code: str, active: bool = True, percent: float = 0) -> None:
        self.coupon_rules[code] = CouponRule(code=code, active=active, percent=percent)

    def put_product(self, product: Product) -> None:
        kind = ChangeKind.UPDATE if product.id in self.products else ChangeKind.INSERT
        self.products[product.id] = product
        self._publish(PRODUCTS, None, ChangeEvent(kind=kind, key=product.id, entry=product))

    def remove_product(self, product_id: str) -> None:
        if self.products.pop(product_id, None) is not None:
            self._publish(PRODUCTS, None, ChangeEvent(kind=ChangeKind.DELETE, key=product_id))


class MemoryTable:
    """RemoteTable over one MemoryBackend domain."""

    def __init__(self, backend: MemoryBackend, domain: str) -> None:
        self.backend = backend
        self.domain = domain

    async def list(self, owner_id: str) -> dict[str, Any]:
        await self.backend._enter(self.domain, "list")
        return dict(self.backend.rows[self.domain][owner_id])

    async def upsert(self, owner_id: str, entry: Any) -> None:
        await self.backend._enter(self.domain, "upsert")
        self.backend.write(self.domain, owner_id, entry)

    async def delete(self, owner_id: str, key: str) -> None:
        await self.backend._enter(self.domain, "delete")
        self.backend.remove(self.domain, owner_id, key)

    async def subscribe(self, owner_id: str) -> ChangeFeed:
        await self.backend._enter(self.domain, "subscribe")
        return self.backend._open_feed(self.domain, owner_id)


class MemoryCouponRules:
    """CouponRules over MemoryBackend.coupon_rules."""

    def __init__(self, backend: MemoryBackend) -> None:
        self.backend = backend

    async def lookup(self, code: str) -> Optional[CouponRule]:
        await self.backend._enter("coupons", "lookup")
        return self.backend.coupon_rules.get(code)


class MemoryProductSource:
    """ProductSource over MemoryBackend.products."""

    def __init__(self, backend: MemoryBackend) -> None:
        self.backend = backend

    def _active(self) -> list[Product]:
        products = [p for p in self.backend.products.values() if p.is_active]
        return sorted(products, key=lambda p: p.created_at)

    async def list_products(self) -> list[Product]:
        await self.backend._enter(PRODUCTS, "products")
        return self._active()

    async def fetch_product(self, product_id: str) -> Optional[Product]:
        await self.backend._enter(PRODUCTS, "products")
        return self.backend.products.get(product_id)

    async def query(self, filters: ProductFilters, offset: int, limit: int) -> list[Product]:
        await self.backend._enter(PRODUCTS, "products")
        matching = [p for p in self._active() if filters.matches(p)]
        return matching[offset:offset + limit]

    async def subscribe(self) -> ChangeFeed:
        await self.backend._enter(PRODUCTS, "subscribe")
        return self.backend._open_feed(PRODUCTS, None)

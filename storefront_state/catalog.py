"""Product catalog store."""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from .errors import RemoteReadError, StoreError, describe_error
from .models import Product, ProductFilters
from .reactive import Computed, Observable
from .remote import ChangeFeed, ProductSource

logger = logging.getLogger(__name__)


def _distinct(values) -> list[str]:
    return sorted({value for value in values if value})


class ProductCatalog:
    """
    Read-mostly cache of the product catalog.

    Facets are derived from the cached products. Queries run client-side
    once the catalog is loaded and are pushed to the product source
    otherwise.
    """

    def __init__(
        self,
        source: ProductSource,
        price_fallback: tuple[Decimal, Decimal] = (Decimal("0"), Decimal("0")),
    ) -> None:
        """
        Initialize the catalog.

        Args:
            source: Backend product source
            price_fallback: Price bounds reported while the catalog is empty
        """
        self.source = source
        self.price_fallback = price_fallback

        self.items: Observable[list[Product]] = Observable([])
        self.loaded: Observable[bool] = Observable(False)
        self.loading: Observable[bool] = Observable(False)
        self.error: Observable[Optional[str]] = Observable(None)

        self.categories: Computed[list[str]] = Computed(
            lambda items: _distinct(p.category for p in items), self.items
        )
        self.colors: Computed[list[str]] = Computed(
            lambda items: _distinct(c for p in items for c in p.colors), self.items
        )
        self.sizes: Computed[list[str]] = Computed(
            lambda items: _distinct(s for p in items for s in p.sizes), self.items
        )
        self.price_bounds: Computed[tuple[Decimal, Decimal]] = Computed(self._price_bounds, self.items)

        self._feed: Optional[ChangeFeed] = None
        self._watch_task: Optional[asyncio.Task] = None

    def _price_bounds(self, items: list[Product]) -> tuple[Decimal, Decimal]:
        if not items:
            return self.price_fallback
        prices = [p.price for p in items]
        return min(prices), max(prices)

    async def load(self) -> list[Product]:
        """
        Load every active product into the cache.

        Raises:
            RemoteReadError: If the source could not be read
        """
        self.loading.value = True
        try:
            products = await self.source.list_products()
        except RemoteReadError as e:
            self.error.value = describe_error(e)
            logger.warning(f"catalog: load failed: {e}")
            raise
        finally:
            self.loading.value = False
        self.items.value = [p for p in products if p.is_active]
        self.loaded.value = True
        self.error.value = None
        logger.info(f"catalog: loaded {len(self.items.value)} products")
        return self.items.value

    async def get(self, product_id: str) -> Optional[Product]:
        """Return a product from the cache, fetching it when missing."""
        for product in self.items.value:
            if product.id == product_id:
                return product
        return await self.source.fetch_product(product_id)

    def filter(self, filters: ProductFilters) -> list[Product]:
        """Filter the cached products."""
        return [p for p in self.items.value if filters.matches(p)]

    @staticmethod
    def paginate(products: list[Product], page: int, per_page: int) -> list[Product]:
        """Slice out a 1-based page."""
        if page < 1 or per_page < 1:
            return []
        start = (page - 1) * per_page
        return products[start:start + per_page]

    async def query(self, filters: ProductFilters, offset: int, limit: int) -> list[Product]:
        """Return up to `limit` matching products starting at `offset`."""
        if self.loaded.value:
            return self.filter(filters)[offset:offset + limit]
        return await self.source.query(filters, offset, limit)

    async def fetch_page(self, filters: ProductFilters, page: int, per_page: int) -> list[Product]:
        if page < 1 or per_page < 1:
            return []
        return await self.query(filters, (page - 1) * per_page, per_page)

    # ===== Live refresh =====

    async def start(self, live: bool = True) -> None:
        """
        Load the catalog and, if live, reload on any remote product change.

        A failed initial load is recorded in `error`.
        """
        await self._reload()
        if not live or self._watch_task is not None:
            return
        try:
            self._feed = await self.source.subscribe()
        except RemoteReadError as e:
            self.error.value = describe_error(e)
            logger.warning(f"catalog: subscribe failed: {e}")
            return
        self._watch_task = asyncio.get_running_loop().create_task(self._watch(self._feed))

    async def _reload(self) -> None:
        try:
            await self.load()
        except RemoteReadError:
            # load() already recorded it in error
            return

    async def _watch(self, feed: ChangeFeed) -> None:
        try:
            async for event in feed:
                try:
                    logger.debug(f"catalog: {event.kind.value} {event.key}, reloading")
                    await self._reload()
                finally:
                    feed.ack()
        except StoreError as e:
            self.error.value = describe_error(e)
            logger.warning(f"catalog: change feed failed: {e}")
        except Exception as e:
            self.error.value = describe_error(e)
            logger.error(f"catalog: change feed crashed: {e}", exc_info=True)
        finally:
            feed.close()
            if self._feed is feed:
                self._feed = None
                self._watch_task = None

    async def close(self) -> None:
        feed, task = self._feed, self._watch_task
        self._feed = None
        self._watch_task = None
        if feed is not None:
            feed.close()
        if task is not None:
            await task

    async def wait_idle(self) -> None:
        """Wait until every delivered product change has been applied."""
        if self._feed is not None:
            await self._feed.drained()

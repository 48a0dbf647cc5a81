"""Store context wiring the stores to their dependencies."""

import asyncio
import logging
from typing import Optional, Union

from .cart import CartStore
from .catalog import ProductCatalog
from .config import Settings
from .coupon import CouponStore
from .identity import IdentityProvider, IdentitySignal, SessionIdentityProvider
from .infinite import InfiniteList
from .memory_backend import MemoryBackend
from .models import CartLine, Coupon, Order, Product, WishlistEntry
from .orders import OrdersStore
from .rest_client import RestBackend
from .storage import JsonFileStorage, LocalStorage, MemoryStorage
from .sync import SyncedStore
from .wishlist import WishlistStore

logger = logging.getLogger(__name__)

Backend = Union[MemoryBackend, RestBackend]


class StoreContext:
    """
    One set of stores sharing an identity, local storage and backend.

    Stores are created once per context; create a second context for an
    independent session.
    """

    def __init__(
        self,
        storage: LocalStorage,
        backend: Backend,
        provider: Optional[IdentityProvider] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize the context.

        Args:
            storage: Local storage for guest state and the session
            backend: Remote backend
            provider: Identity provider the stores follow
            settings: Runtime settings (defaults when omitted)
        """
        self.settings = settings or Settings()
        self.storage = storage
        self.backend = backend
        self.provider = provider
        self.identity = IdentitySignal(provider)

        self.cart = CartStore(self.identity, storage, backend.table("cart", CartLine))
        self.wishlist = WishlistStore(self.identity, storage, backend.table("wishlist", WishlistEntry))
        self.coupon = CouponStore(
            self.identity, storage, backend.table("coupon", Coupon), backend.coupons()
        )
        self.orders = OrdersStore(self.identity, storage, backend.table("orders", Order))
        self.catalog = ProductCatalog(backend.product_source(), price_fallback=self.settings.price_fallback)
        self.products: InfiniteList[Product] = InfiniteList(self.catalog.query, per_page=self.settings.page_size)

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, provider: Optional[IdentityProvider] = None
    ) -> "StoreContext":
        """
        Build a context from settings.

        Uses the REST backend when a remote URL is configured and the
        in-memory backend otherwise. Guest state is kept in JSON files.
        """
        settings = settings or Settings.from_env()
        storage = JsonFileStorage(str(settings.storage_dir))
        if settings.remote_url:
            backend: Backend = RestBackend(
                settings.remote_url, settings.remote_key, poll_interval=settings.poll_interval
            )
            logger.info(f"Using REST backend at {settings.remote_url}")
        else:
            backend = MemoryBackend()
            logger.info("No remote URL configured, using in-memory backend")
        if provider is None:
            provider = SessionIdentityProvider(storage, settings.user_id)
        return cls(storage, backend, provider, settings)

    @classmethod
    def in_memory(
        cls,
        backend: Optional[MemoryBackend] = None,
        storage: Optional[LocalStorage] = None,
        user_id: Optional[str] = None,
    ) -> "StoreContext":
        """Context over in-memory storage and backend with a session provider."""
        storage = storage if storage is not None else MemoryStorage()
        backend = backend if backend is not None else MemoryBackend()
        return cls(storage, backend, SessionIdentityProvider(storage, user_id))

    @property
    def stores(self) -> list[SyncedStore]:
        return [self.cart, self.wishlist, self.coupon, self.orders]

    async def start(self, live_catalog: bool = True) -> None:
        """Wait for the identity and start every store."""
        await self.identity.wait_ready()
        await asyncio.gather(*(store.start() for store in self.stores))
        await self.catalog.start(live=live_catalog)

    async def wait_idle(self) -> None:
        await asyncio.gather(*(store.wait_idle() for store in self.stores))
        await self.catalog.wait_idle()

    async def close(self) -> None:
        """Stop the stores and release the backend."""
        await asyncio.gather(*(store.close() for store in self.stores))
        await self.catalog.close()
        self.identity.detach()
        await self.backend.close()

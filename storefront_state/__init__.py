"""Client-side storefront state: catalog, cart, wishlist, coupon and orders."""

from .cart import CartStore
from .catalog import ProductCatalog
from .config import Settings, configure_logging
from .context import StoreContext
from .coupon import CouponStore
from .errors import (
    AuthRequiredError,
    RemoteReadError,
    RemoteWriteError,
    StorageError,
    StoreError,
    ValidationError,
    describe_error,
)
from .identity import IdentitySignal, SessionIdentityProvider
from .infinite import InfiniteList
from .memory_backend import MemoryBackend
from .orders import OrdersStore
from .rest_client import RestBackend
from .storage import JsonFileStorage, MemoryStorage
from .wishlist import WishlistStore

__version__ = "0.1.0"

__all__ = [
    "AuthRequiredError",
    "CartStore",
    "CouponStore",
    "InfiniteList",
    "IdentitySignal",
    "JsonFileStorage",
    "MemoryBackend",
    "MemoryStorage",
    "OrdersStore",
    "ProductCatalog",
    "RemoteReadError",
    "RemoteWriteError",
    "RestBackend",
    "SessionIdentityProvider",
    "Settings",
    "StorageError",
    "StoreContext",
    "StoreError",
    "ValidationError",
    "WishlistStore",
    "configure_logging",
    "describe_error",
]

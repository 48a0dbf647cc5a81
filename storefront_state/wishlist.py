"""Wishlist store."""

import logging
from typing import Optional

from .errors import ValidationError
from .identity import IdentitySignal
from .models import WishlistEntry, utcnow
from .reactive import Computed
from .remote import RemoteTable
from .storage import GUEST_WISHLIST_KEY, LocalStorage
from .sync import SyncedStore

logger = logging.getLogger(__name__)


class WishlistStore(SyncedStore[WishlistEntry]):
    """Set of wishlisted product ids; on merge the remote entry wins."""

    domain = "wishlist"
    guest_key = GUEST_WISHLIST_KEY
    entry_model = WishlistEntry

    def __init__(
        self, identity: IdentitySignal, storage: LocalStorage, remote: RemoteTable[WishlistEntry]
    ) -> None:
        super().__init__(identity, storage, remote)
        self.ids: Computed[list[str]] = Computed(lambda items: list(items), self.items)

    def contains(self, product_id: str) -> bool:
        return (product_id or "").strip() in self.items.value

    async def toggle(self, product_id: str) -> bool:
        """
        Add the product if absent, remove it if present.

        Returns:
            True if the product is in the wishlist afterwards
        """
        product_id = _product_id(product_id)

        def build(items: dict[str, WishlistEntry]) -> dict[str, Optional[WishlistEntry]]:
            if product_id in items:
                return {product_id: None}
            return {product_id: WishlistEntry(product_id=product_id, added_at=utcnow())}

        mutation = await self._commit(build)
        present = mutation.after[product_id] is not None
        logger.info(f"wishlist: {'added' if present else 'removed'} {product_id}")
        return present

    async def add(self, product_id: str) -> None:
        product_id = _product_id(product_id)
        await self._commit(
            lambda items: None
            if product_id in items
            else {product_id: WishlistEntry(product_id=product_id, added_at=utcnow())}
        )

    async def remove(self, product_id: str) -> None:
        product_id = _product_id(product_id)
        await self._commit(lambda items: {product_id: None} if product_id in items else None)

    async def clear(self) -> None:
        await self._commit(lambda items: {key: None for key in items} or None)

    def order_entries(self, entries: dict[str, WishlistEntry]) -> dict[str, WishlistEntry]:
        return dict(sorted(entries.items(), key=lambda item: item[1].added_at))


def _product_id(value: str) -> str:
    product_id = (value or "").strip()
    if not product_id:
        raise ValidationError("Product id is required")
    return product_id

"""Cart store."""

import logging
from decimal import Decimal
from typing import Optional

from .errors import ValidationError
from .identity import IdentitySignal
from .models import CartLine, Product, line_key, utcnow
from .reactive import Computed
from .remote import RemoteTable
from .storage import GUEST_CART_KEY, LocalStorage
from .sync import SyncedStore

logger = logging.getLogger(__name__)


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip()


def _quantity(value: object) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Quantity must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Quantity must be an integer, got {value!r}") from None


class CartStore(SyncedStore[CartLine]):
    """
    Shopping cart shared by guest and signed-in sessions.

    Lines are keyed by (product_id, color, size) so that a guest line and a
    line the user already owns remotely collapse into one on merge, with
    their quantities summed.
    """

    domain = "cart"
    guest_key = GUEST_CART_KEY
    entry_model = CartLine

    def __init__(self, identity: IdentitySignal, storage: LocalStorage, remote: RemoteTable[CartLine]) -> None:
        super().__init__(identity, storage, remote)
        self.lines: Computed[list[CartLine]] = Computed(
            lambda items: sorted(items.values(), key=lambda line: line.added_at), self.items
        )
        self.subtotal: Computed[Decimal] = Computed(
            lambda items: sum((line.line_total for line in items.values()), Decimal("0")), self.items
        )
        self.count: Computed[int] = Computed(
            lambda items: sum(line.quantity for line in items.values()), self.items
        )

    @staticmethod
    def compound_id(product_id: str, color: str, size: str) -> str:
        """Key of the line for a product variant."""
        return line_key(_normalize(product_id), _normalize(color), _normalize(size))

    def merge_entry(self, remote: Optional[CartLine], guest: CartLine) -> Optional[CartLine]:
        if remote is None:
            return guest
        return remote.model_copy(update={"quantity": remote.quantity + guest.quantity})

    async def add(self, product: Product, color: str = "", size: str = "", quantity: int = 1) -> CartLine:
        """
        Add a product variant, incrementing the line if it already exists.

        Args:
            product: Product being added
            color: Selected color
            size: Selected size
            quantity: Units to add (at least 1)

        Returns:
            The resulting cart line

        Raises:
            ValidationError: If the product id is empty or quantity is below 1
            RemoteWriteError: If the signed-in write failed (change rolled back)
        """
        product_id = _normalize(product.id)
        if not product_id:
            raise ValidationError("Product id is required")
        quantity = _quantity(quantity)
        if quantity < 1:
            raise ValidationError(f"Quantity must be at least 1, got {quantity}")
        color, size = _normalize(color), _normalize(size)
        key = line_key(product_id, color, size)

        def build(items: dict[str, CartLine]) -> dict[str, Optional[CartLine]]:
            existing = items.get(key)
            if existing is not None:
                return {key: existing.model_copy(update={"quantity": existing.quantity + quantity})}
            return {
                key: CartLine(
                    product_id=product_id,
                    color=color,
                    size=size,
                    quantity=quantity,
                    unit_price=product.price,
                    title=product.title,
                    image=product.image,
                    added_at=utcnow(),
                )
            }

        mutation = await self._commit(build)
        logger.info(f"cart: added {quantity} x {key}")
        return mutation.after[key]

    async def set_quantity(self, key: str, quantity: int) -> None:
        """
        Set the quantity of an existing line; zero or less removes it.

        Unknown keys are ignored.
        """
        key = _normalize(key)
        if not key:
            raise ValidationError("Cart line key is required")
        quantity = _quantity(quantity)
        if quantity <= 0:
            await self.remove(key)
            return

        def build(items: dict[str, CartLine]) -> Optional[dict[str, Optional[CartLine]]]:
            existing = items.get(key)
            if existing is None or existing.quantity == quantity:
                return None
            return {key: existing.model_copy(update={"quantity": quantity})}

        await self._commit(build)

    async def remove(self, key: str) -> None:
        """Remove a line by key."""
        key = _normalize(key)
        if not key:
            raise ValidationError("Cart line key is required")
        await self._commit(lambda items: {key: None} if key in items else None)

    async def clear(self) -> None:
        """Remove every line."""
        await self._commit(lambda items: {key: None for key in items} or None)

    def order_entries(self, entries: dict[str, CartLine]) -> dict[str, CartLine]:
        return dict(sorted(entries.items(), key=lambda item: item[1].added_at))

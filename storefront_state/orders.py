"""Orders store."""

import logging
import uuid
from decimal import Decimal

from .errors import RemoteWriteError, StoreError, ValidationError
from .identity import IdentitySignal
from .models import Order, OrderDraft, utcnow
from .reactive import Computed
from .remote import RemoteTable
from .storage import LocalStorage
from .sync import SyncedStore

logger = logging.getLogger(__name__)


class OrdersStore(SyncedStore[Order]):
    """Order history of the signed-in user; guests have none."""

    domain = "orders"
    guest_key = None
    entry_model = Order

    def __init__(self, identity: IdentitySignal, storage: LocalStorage, remote: RemoteTable[Order]) -> None:
        super().__init__(identity, storage, remote)
        self.list: Computed[list[Order]] = Computed(
            lambda items: sorted(items.values(), key=lambda order: order.created_at, reverse=True),
            self.items,
        )

    async def place_order(self, draft: OrderDraft) -> str:
        """
        Submit an order for the current user.

        Args:
            draft: Delivery details, line items and amounts

        Returns:
            The new order's id

        Raises:
            AuthRequiredError: If no user is signed in
            ValidationError: If the order has no items or a negative total
            RemoteWriteError: If the backend rejected the order
        """
        owner_id = self.identity.require_identity()
        if not draft.line_items:
            raise ValidationError("Order has no items")
        if draft.amounts.total < Decimal("0"):
            raise ValidationError(f"Order total must not be negative, got {draft.amounts.total}")

        await self._settled()
        order = Order(id=uuid.uuid4().hex, created_at=utcnow(), **draft.model_dump())
        try:
            await self.remote.upsert(owner_id, order)
        except RemoteWriteError as e:
            self._record(e, f"order for {owner_id}")
            raise
        except StoreError as e:
            self._record(e, f"order for {owner_id}")
            raise RemoteWriteError(f"Could not place order: {e}") from e

        if self._owner == owner_id and order.id not in self.items.value:
            self.items.value = {**self.items.value, order.id: order}
        logger.info(f"orders: placed {order.id} for {owner_id} ({len(order.line_items)} items)")
        return order.id

"""Coupon store."""

import logging
from typing import Optional

from .errors import RemoteReadError, RemoteWriteError
from .identity import IdentitySignal
from .models import COUPON_KEY, Coupon, CouponRule
from .reactive import Computed
from .remote import CouponRules, RemoteTable
from .storage import GUEST_COUPON_KEY, LocalStorage
from .sync import SyncedStore

logger = logging.getLogger(__name__)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _from_rule(code: str, rule: Optional[CouponRule]) -> Coupon:
    if rule is None or not rule.active:
        return Coupon(code=code, valid=False)
    return Coupon(code=code, valid=True, percent=rule.percent)


class CouponStore(SyncedStore[Coupon]):
    """
    The single coupon applied by the current owner.

    The coupon is looked up against the backend rules every time it is
    applied, and again after every load so a coupon deactivated on the
    backend stops discounting without user action.
    """

    domain = "coupon"
    guest_key = GUEST_COUPON_KEY
    entry_model = Coupon

    def __init__(
        self,
        identity: IdentitySignal,
        storage: LocalStorage,
        remote: RemoteTable[Coupon],
        rules: CouponRules,
    ) -> None:
        super().__init__(identity, storage, remote)
        self.rules = rules
        self.coupon: Computed[Optional[Coupon]] = Computed(lambda items: items.get(COUPON_KEY), self.items)
        self.code: Computed[str] = Computed(lambda coupon: coupon.code if coupon else "", self.coupon)
        self.valid: Computed[bool] = Computed(lambda coupon: bool(coupon and coupon.valid), self.coupon)
        self.percent: Computed[float] = Computed(
            lambda coupon: coupon.percent if coupon and coupon.valid else 0, self.coupon
        )
        self.discount: Computed[float] = Computed(
            lambda coupon: coupon.percent / 100 if coupon and coupon.valid and coupon.percent > 0 else 0,
            self.coupon,
        )

    async def apply(self, code: str) -> bool:
        """
        Apply a coupon code.

        Args:
            code: Code as typed; blank input resets the coupon

        Returns:
            True if the coupon is active on the backend

        Raises:
            RemoteWriteError: If the signed-in write failed (change rolled back)
        """
        code = normalize_code(code)
        if not code:
            await self.reset()
            return False

        try:
            rule = await self.rules.lookup(code)
        except RemoteReadError as e:
            self._record(e, f"lookup of {code}")
            return False

        coupon = _from_rule(code, rule)
        await self._commit(lambda items: None if items.get(COUPON_KEY) == coupon else {COUPON_KEY: coupon})
        logger.info(f"coupon: applied {code} (valid={coupon.valid}, percent={coupon.percent})")
        return coupon.valid

    async def reset(self) -> None:
        """Remove the applied coupon."""
        await self._commit(lambda items: {COUPON_KEY: None} if COUPON_KEY in items else None)

    async def after_load(self, owner_id: Optional[str]) -> None:
        stored = self.items.value.get(COUPON_KEY)
        if stored is None:
            return
        try:
            rule = await self.rules.lookup(stored.code)
        except RemoteReadError as e:
            self._record(e, f"revalidation of {stored.code}")
            return

        refreshed = _from_rule(stored.code, rule)
        if refreshed == stored:
            return
        logger.info(f"coupon: {stored.code} revalidated (valid={refreshed.valid})")
        self.items.value = {**self.items.value, COUPON_KEY: refreshed}
        if owner_id is None:
            self._write_guest(self.items.value)
            return
        try:
            await self.remote.upsert(owner_id, refreshed)
        except RemoteWriteError as e:
            self._record(e, f"revalidated write for {owner_id}")

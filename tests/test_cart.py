"""
Tests for the cart store.

Covers:
- Guest mutations and persistence
- Login merge with quantity summing
- Rollback of failed signed-in writes
- Live changes and echo handling
- Serialized identity transitions
"""

import asyncio
from decimal import Decimal

import pytest

from storefront_state.context import StoreContext
from storefront_state.errors import RemoteReadError, RemoteWriteError, StorageError, ValidationError
from storefront_state.models import CartLine, line_key
from storefront_state.storage import GUEST_CART_KEY, MemoryStorage


def remote_line(product_id, quantity, price="10.00"):
    return CartLine(product_id=product_id, quantity=quantity, unit_price=Decimal(price), title=product_id)


def quantities(cart):
    return {line.product_id: line.quantity for line in cart.lines.value}


class TestGuestCart:
    """Test the cart without a signed-in user."""

    @pytest.mark.asyncio
    async def test_add_increments_existing_line(self, context, make_product):
        """Test adding the same variant twice sums quantities"""
        await context.start()
        product = make_product("A")

        await context.cart.add(product, "red", "M", quantity=3)
        line = await context.cart.add(product, " red ", "M", quantity=2)

        assert line.quantity == 5
        assert list(context.cart.items.value) == [line_key("A", "red", "M")]
        assert context.cart.is_guest.value is True

    @pytest.mark.asyncio
    async def test_variants_are_separate_lines(self, context, make_product):
        """Test color and size are part of the line key"""
        await context.start()
        product = make_product("A")

        await context.cart.add(product, "red", "M")
        await context.cart.add(product, "red", "L")
        await context.cart.add(product, "blue", "M")

        assert context.cart.count.value == 3
        assert len(context.cart.lines.value) == 3

    @pytest.mark.asyncio
    async def test_subtotal_and_count(self, context, make_product):
        """Test derived totals"""
        await context.start()

        await context.cart.add(make_product("A", "10.50"), quantity=2)
        await context.cart.add(make_product("B", "3.00"))

        assert context.cart.subtotal.value == Decimal("24.00")
        assert context.cart.count.value == 3

    @pytest.mark.asyncio
    async def test_guest_cart_persists(self, backend, storage, make_product):
        """Test a new session restores the guest cart from storage"""
        first = StoreContext.in_memory(backend=backend, storage=storage)
        await first.start()
        await first.cart.add(make_product("A"), quantity=2)
        await first.close()

        second = StoreContext.in_memory(backend=backend, storage=storage)
        await second.start()

        assert quantities(second.cart) == {"A": 2}
        assert backend.call_count("cart") == 0

    @pytest.mark.asyncio
    async def test_set_quantity(self, context, make_product):
        """Test set_quantity updates, ignores unknown keys and removes at zero"""
        await context.start()
        line = await context.cart.add(make_product("A"))

        await context.cart.set_quantity(line.key, 4)
        assert quantities(context.cart) == {"A": 4}

        await context.cart.set_quantity("missing||", 2)
        assert quantities(context.cart) == {"A": 4}

        await context.cart.set_quantity(line.key, 0)
        assert context.cart.items.value == {}
        assert context.storage.read(GUEST_CART_KEY) is None

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, context, make_product):
        """Test removing one line and clearing the rest"""
        await context.start()
        a = await context.cart.add(make_product("A"))
        await context.cart.add(make_product("B"))
        await context.cart.add(make_product("C"))

        await context.cart.remove(a.key)
        assert set(quantities(context.cart)) == {"B", "C"}

        await context.cart.clear()
        assert context.cart.items.value == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1, "two", True])
    async def test_add_rejects_bad_quantity(self, context, make_product, quantity):
        """Test invalid quantities are rejected before any change"""
        await context.start()

        with pytest.raises(ValidationError):
            await context.cart.add(make_product("A"), quantity=quantity)

        assert context.cart.items.value == {}

    @pytest.mark.asyncio
    async def test_add_rejects_blank_product_id(self, context, make_product):
        """Test a product without an id cannot be added"""
        await context.start()
        with pytest.raises(ValidationError):
            await context.cart.add(make_product("  "))

    @pytest.mark.asyncio
    async def test_storage_failure_keeps_change(self, backend, make_product):
        """Test a full device storage is reported but the line stays"""
        storage = MemoryStorage(quota_bytes=10)
        context = StoreContext.in_memory(backend=backend, storage=storage)
        await context.start()

        await context.cart.add(make_product("A"))

        assert quantities(context.cart) == {"A": 1}
        assert isinstance(context.cart.last_error, StorageError)
        assert context.cart.error.value

    @pytest.mark.asyncio
    async def test_malformed_guest_entries_are_skipped(self, backend, storage):
        """Test unreadable guest lines are dropped on load"""
        storage.write(
            GUEST_CART_KEY,
            {
                "A||": remote_line("A", 2).model_dump(mode="json"),
                "bad": {"product_id": "", "quantity": 0},
            },
        )
        context = StoreContext.in_memory(backend=backend, storage=storage)
        await context.start()

        assert quantities(context.cart) == {"A": 2}


class TestCartMerge:
    """Test merging the guest cart at login."""

    def test_merge_entry_sums_quantities(self, context):
        """Test remote quantity 3 plus guest quantity 2 gives 5"""
        merged = context.cart.merge_entry(remote_line("A", 3), remote_line("A", 2))
        assert merged.quantity == 5
        assert context.cart.merge_entry(None, remote_line("A", 2)).quantity == 2

    @pytest.mark.asyncio
    async def test_login_merge_sums_quantities(self, context, backend, make_product):
        """Test guest {A:2} merged into remote {A:1, B:1} gives {A:3, B:1}"""
        backend.seed("cart", "u1", [remote_line("A", 1), remote_line("B", 1)])
        await context.start()
        await context.cart.add(make_product("A"), quantity=2)

        context.provider.sign_in("u1")
        await context.wait_idle()

        assert quantities(context.cart) == {"A": 3, "B": 1}
        assert {key: line.quantity for key, line in backend.rows["cart"]["u1"].items()} == {
            "A||": 3,
            "B||": 1,
        }
        assert context.cart.is_guest.value is False
        assert context.cart.owner_id == "u1"

    @pytest.mark.asyncio
    async def test_guest_storage_purged_after_merge(self, context, make_product):
        """Test the guest cart is erased once merged"""
        await context.start()
        await context.cart.add(make_product("A"))

        context.provider.sign_in("u1")
        await context.wait_idle()

        assert context.storage.read(GUEST_CART_KEY) is None

    @pytest.mark.asyncio
    async def test_merge_is_idempotent(self, context, backend, make_product):
        """Test signing out and in again does not re-apply merged lines"""
        await context.start()
        await context.cart.add(make_product("A"), quantity=3)
        context.provider.sign_in("u1")
        await context.wait_idle()

        context.provider.sign_out()
        await context.wait_idle()
        assert context.cart.items.value == {}

        context.provider.sign_in("u1")
        await context.wait_idle()

        assert quantities(context.cart) == {"A": 3}
        assert backend.rows["cart"]["u1"]["A||"].quantity == 3

    @pytest.mark.asyncio
    async def test_failed_merge_keeps_unuploaded_lines(self, context, backend, make_product):
        """Test a failed upload is retried at the next login without duplicates"""
        backend.seed("cart", "u1", [remote_line("A", 1)])
        await context.start()
        await context.cart.add(make_product("A"), quantity=2)
        await context.cart.add(make_product("C"))
        backend.fail_next("cart", "upsert")

        context.provider.sign_in("u1")
        await context.wait_idle()

        assert context.cart.owner_id == "u1"
        assert quantities(context.cart) == {"A": 1}
        assert isinstance(context.cart.last_error, RemoteWriteError)
        assert set(context.storage.read(GUEST_CART_KEY)) == {"A||", "C||"}

        context.provider.sign_out()
        await context.wait_idle()
        context.provider.sign_in("u1")
        await context.wait_idle()

        assert quantities(context.cart) == {"A": 3, "C": 1}
        assert context.storage.read(GUEST_CART_KEY) is None

    @pytest.mark.asyncio
    async def test_failed_merge_read_keeps_guest_cart(self, context, backend, make_product):
        """Test a failed remote read leaves every guest line in storage"""
        await context.start()
        await context.cart.add(make_product("A"))
        backend.fail_next("cart", "list")

        context.provider.sign_in("u1")
        await context.wait_idle()

        assert isinstance(context.cart.last_error, RemoteReadError)
        assert set(context.storage.read(GUEST_CART_KEY)) == {"A||"}
        assert backend.rows["cart"]["u1"] == {}

    @pytest.mark.asyncio
    async def test_start_signed_in_merges_leftover_guest_cart(self, backend, storage, make_product):
        """Test guest lines left by a previous session merge at start-up"""
        guest = StoreContext.in_memory(backend=backend, storage=storage)
        await guest.start()
        await guest.cart.add(make_product("A"))
        await guest.close()

        signed_in = StoreContext.in_memory(backend=backend, storage=storage, user_id="u1")
        await signed_in.start()

        assert quantities(signed_in.cart) == {"A": 1}
        assert storage.read(GUEST_CART_KEY) is None

    @pytest.mark.asyncio
    async def test_logout_returns_to_guest_cart(self, context, backend, make_product):
        """Test signing out shows the (empty) guest cart again"""
        backend.seed("cart", "u1", [remote_line("B", 2)])
        await context.start()
        context.provider.sign_in("u1")
        await context.wait_idle()
        assert quantities(context.cart) == {"B": 2}

        context.provider.sign_out()
        await context.wait_idle()

        assert context.cart.is_guest.value is True
        assert context.cart.items.value == {}
        assert backend.open_feeds("cart", "u1") == 0


class TestSignedInCart:
    """Test the cart for a signed-in user."""

    @pytest.fixture
    def signed_in(self, backend, storage):
        """Context for user u1."""
        return StoreContext.in_memory(backend=backend, storage=storage, user_id="u1")

    @pytest.mark.asyncio
    async def test_add_writes_remotely(self, signed_in, backend, make_product):
        """Test owned mutations reach the backend, not local storage"""
        await signed_in.start()

        await signed_in.cart.add(make_product("A"), quantity=2)

        assert backend.rows["cart"]["u1"]["A||"].quantity == 2
        assert signed_in.storage.read(GUEST_CART_KEY) is None

    @pytest.mark.asyncio
    async def test_failed_add_rolls_back(self, signed_in, backend, make_product):
        """Test a failed remote write restores the exact prior state"""
        backend.seed("cart", "u1", [remote_line("A", 1), remote_line("B", 1)])
        await signed_in.start()
        before = signed_in.cart.items.value
        backend.fail_next("cart", "upsert")

        with pytest.raises(RemoteWriteError):
            await signed_in.cart.add(make_product("A"), quantity=5)

        assert signed_in.cart.items.value == before
        assert list(signed_in.cart.items.value) == list(before)
        assert signed_in.cart.error.value

    @pytest.mark.asyncio
    async def test_failed_remove_rolls_back(self, signed_in, backend):
        """Test a failed delete brings the line back"""
        backend.seed("cart", "u1", [remote_line("A", 2)])
        await signed_in.start()
        backend.fail_next("cart", "delete")

        with pytest.raises(RemoteWriteError):
            await signed_in.cart.remove("A||")

        assert quantities(signed_in.cart) == {"A": 2}

    @pytest.mark.asyncio
    async def test_failed_clear_restores_every_line(self, signed_in, backend):
        """Test a clear failing midway restores the whole cart locally and remotely"""
        backend.seed("cart", "u1", [remote_line("A", 1), remote_line("B", 1)])
        await signed_in.start()
        before = signed_in.cart.items.value
        backend.fail_next("cart", "delete", after=1)

        with pytest.raises(RemoteWriteError):
            await signed_in.cart.clear()
        await signed_in.wait_idle()

        assert signed_in.cart.items.value == before
        assert backend.rows["cart"]["u1"] == before

    @pytest.mark.asyncio
    async def test_failed_set_quantity_rolls_back(self, signed_in, backend):
        """Test a failed quantity update restores the prior line"""
        backend.seed("cart", "u1", [remote_line("A", 2), remote_line("B", 1)])
        await signed_in.start()
        before = signed_in.cart.items.value
        backend.fail_next("cart", "upsert")

        with pytest.raises(RemoteWriteError):
            await signed_in.cart.set_quantity("A||", 7)

        assert signed_in.cart.items.value == before
        assert backend.rows["cart"]["u1"]["A||"].quantity == 2
        assert signed_in.cart.error.value

    @pytest.mark.asyncio
    async def test_failed_subscribe_keeps_items(self, backend, storage):
        """Test a failed subscription still binds and loads the cart"""
        backend.seed("cart", "u1", [remote_line("A", 2)])
        backend.fail_next("cart", "subscribe")
        context = StoreContext.in_memory(backend=backend, storage=storage, user_id="u1")

        await context.start()
        await context.wait_idle()

        assert context.cart.is_guest.value is False
        assert context.cart.owner_id == "u1"
        assert quantities(context.cart) == {"A": 2}
        assert isinstance(context.cart.last_error, RemoteReadError)
        assert context.cart.error.value

    @pytest.mark.asyncio
    async def test_feed_error_keeps_stale_items(self, signed_in, backend):
        """Test a broken change feed is closed and the cart keeps its lines"""
        backend.seed("cart", "u1", [remote_line("A", 2)])
        await signed_in.start()
        before = signed_in.cart.items.value

        signed_in.cart._feed.fail(RemoteReadError("channel dropped"))
        await signed_in.cart._reconcile_task
        backend.write("cart", "u1", remote_line("B", 1))
        await asyncio.wait_for(signed_in.wait_idle(), 1.0)

        assert signed_in.cart.items.value == before
        assert signed_in.cart.is_guest.value is False
        assert isinstance(signed_in.cart.last_error, RemoteReadError)
        assert backend.open_feeds("cart", "u1") == 0

    @pytest.mark.asyncio
    async def test_echo_does_not_notify_twice(self, signed_in, make_product):
        """Test our own write coming back through the feed is a no-op"""
        await signed_in.start()
        changes = []
        signed_in.cart.items.subscribe(changes.append)

        await signed_in.cart.add(make_product("A"))
        await signed_in.wait_idle()

        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_changes_from_another_device(self, signed_in, backend):
        """Test remote inserts, updates and deletes reach the store"""
        await signed_in.start()

        backend.write("cart", "u1", remote_line("A", 1))
        await signed_in.wait_idle()
        assert quantities(signed_in.cart) == {"A": 1}

        backend.write("cart", "u1", remote_line("A", 4))
        await signed_in.wait_idle()
        assert quantities(signed_in.cart) == {"A": 4}

        backend.remove("cart", "u1", "A||")
        await signed_in.wait_idle()
        assert signed_in.cart.items.value == {}

    @pytest.mark.asyncio
    async def test_other_owner_changes_are_ignored(self, signed_in, backend):
        """Test rows written for another user never show up"""
        await signed_in.start()

        backend.write("cart", "u2", remote_line("Z", 1))
        await signed_in.wait_idle()

        assert signed_in.cart.items.value == {}

    @pytest.mark.asyncio
    async def test_refresh_reloads(self, signed_in, backend):
        """Test refresh picks up rows written without an event"""
        await signed_in.start()
        backend.seed("cart", "u1", [remote_line("A", 2)])

        await signed_in.cart.refresh()

        assert quantities(signed_in.cart) == {"A": 2}

    @pytest.mark.asyncio
    async def test_failed_load_records_error(self, backend, storage):
        """Test a failed initial load binds with an empty cart and an error"""
        backend.seed("cart", "u1", [remote_line("A", 1)])
        backend.fail_next("cart", "list")
        context = StoreContext.in_memory(backend=backend, storage=storage, user_id="u1")

        await context.start()

        assert context.cart.owner_id == "u1"
        assert context.cart.items.value == {}
        assert isinstance(context.cart.last_error, RemoteReadError)


class TestTransitions:
    """Test identity transitions."""

    @pytest.mark.asyncio
    async def test_account_switch_rebinds(self, context, backend):
        """Test switching users loads the second user's cart"""
        backend.seed("cart", "u1", [remote_line("A", 1)])
        backend.seed("cart", "u2", [remote_line("B", 2)])
        await context.start()

        context.provider.sign_in("u1")
        await context.wait_idle()
        context.provider.sign_in("u2")
        await context.wait_idle()

        assert quantities(context.cart) == {"B": 2}
        assert backend.open_feeds("cart", "u1") == 0
        assert backend.open_feeds("cart", "u2") == 1

    @pytest.mark.asyncio
    async def test_rapid_changes_follow_latest_identity(self, context, backend, make_product):
        """Test a change queued behind another is applied to the current identity"""
        backend.seed("cart", "u2", [remote_line("B", 1)])
        await context.start()
        await context.cart.add(make_product("A"))

        context.provider.sign_in("u1")
        context.provider.sign_in("u2")
        await context.wait_idle()

        assert context.cart.owner_id == "u2"
        assert quantities(context.cart) == {"A": 1, "B": 1}
        assert backend.rows["cart"]["u1"] == {}

    @pytest.mark.asyncio
    async def test_mutation_waits_for_transition(self, context, backend, make_product):
        """Test a mutation issued during login lands in the owned cart"""
        await context.start()

        context.provider.sign_in("u1")
        await context.cart.add(make_product("A"))

        assert context.cart.owner_id == "u1"
        assert backend.rows["cart"]["u1"]["A||"].quantity == 1
        assert context.storage.read(GUEST_CART_KEY) is None

    @pytest.mark.asyncio
    async def test_close_stops_following_identity(self, context):
        """Test a closed store ignores later identity changes"""
        await context.start()
        await context.close()

        context.provider.sign_in("u1")

        assert context.cart.is_guest.value is True
        assert context.cart.owner_id is None

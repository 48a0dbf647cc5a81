"""
Guest/owned synchronization shared by the domain stores.

A SyncedStore keeps one reactive collection that is backed either by local
storage (guest) or by a remote table scoped to the signed-in user (owned).
Identity changes are handled one at a time under a per-store lock; every
handler re-reads the current identity, so a change that arrives mid-merge is
applied against the identity that is current when it runs.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError

from .errors import (
    AuthRequiredError,
    RemoteReadError,
    RemoteWriteError,
    StorageError,
    StoreError,
    describe_error,
)
from .identity import IdentitySignal
from .models import ChangeEvent, ChangeKind, Identity
from .reactive import Observable, Unsubscribe
from .remote import ChangeFeed, RemoteTable
from .storage import LocalStorage

logger = logging.getLogger(__name__)

EntryT = TypeVar("EntryT", bound=BaseModel)


@dataclass
class Mutation(Generic[EntryT]):
    """
    An optimistic change with the entries it replaces.

    `after[key] is None` deletes the key. `before` is the snapshot used to
    roll the change back.
    """

    before: dict[str, Optional[EntryT]]
    after: dict[str, Optional[EntryT]]
    order: list[str] = field(default_factory=list)

    @classmethod
    def capture(cls, items: dict[str, EntryT], after: dict[str, Optional[EntryT]]) -> "Mutation[EntryT]":
        return cls(
            before={key: items.get(key) for key in after},
            after=after,
            order=list(items),
        )

    def apply(self, items: dict[str, EntryT]) -> dict[str, EntryT]:
        result = dict(items)
        for key, entry in self.after.items():
            if entry is None:
                result.pop(key, None)
            else:
                result[key] = entry
        return result

    def revert(self, items: dict[str, EntryT], skip: frozenset = frozenset()) -> dict[str, EntryT]:
        """
        Restore the captured entries.

        Keys in `skip` and keys changed by someone else since the mutation
        was applied are left alone. Restored keys return to their original
        position.
        """
        restore = {
            key: entry
            for key, entry in self.before.items()
            if key not in skip and items.get(key) == self.after[key]
        }
        if not restore:
            return items

        result: dict[str, EntryT] = {}
        for key in self.order:
            if key in restore:
                if restore[key] is not None:
                    result[key] = restore[key]
            elif key in items:
                result[key] = items[key]
        for key, entry in items.items():
            if key not in result and key not in restore:
                result[key] = entry
        return result


class SyncedStore(Generic[EntryT]):
    """
    Base class for the cart, wishlist, coupon and order stores.

    Subclasses set `domain`, `entry_model` and `guest_key` (None disables
    guest mode), and may override `merge_entry` and `after_load`.
    """

    domain: str = "store"
    guest_key: Optional[str] = None
    entry_model: type[BaseModel] = BaseModel

    def __init__(self, identity: IdentitySignal, storage: LocalStorage, remote: RemoteTable) -> None:
        self.identity = identity
        self.storage = storage
        self.remote = remote

        self.items: Observable[dict[str, EntryT]] = Observable({})
        self.is_guest: Observable[bool] = Observable(True)
        self.loading: Observable[bool] = Observable(False)
        self.error: Observable[Optional[str]] = Observable(None)
        self.last_error: Optional[BaseException] = None

        self._owner: Optional[str] = None
        self._entered = False
        self._transition_lock = asyncio.Lock()
        self._feed: Optional[ChangeFeed] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self._identity_unsub: Optional[Unsubscribe] = None

    @property
    def owner_id(self) -> Optional[str]:
        return self._owner

    # ===== Lifecycle =====

    async def start(self) -> None:
        """Enter the state matching the current identity and follow its changes."""
        if self._identity_unsub is not None:
            return
        await self.identity.wait_ready()
        self._identity_unsub = self.identity.subscribe(self._on_identity_change)
        await self._sync_to_identity()

    async def close(self) -> None:
        """Stop following identity changes and close the change feed."""
        if self._identity_unsub is not None:
            self._identity_unsub()
            self._identity_unsub = None
        await self.wait_transitions()
        async with self._transition_lock:
            await self._unbind()

    def _on_identity_change(self, identity: Identity) -> None:
        task = asyncio.get_running_loop().create_task(self._sync_to_identity())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_transitions(self) -> None:
        """Wait for queued identity transitions to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
        async with self._transition_lock:
            pass

    async def wait_idle(self) -> None:
        """Wait for transitions and for every delivered change to be applied."""
        await self.wait_transitions()
        if self._feed is not None:
            await self._feed.drained()

    async def _settled(self) -> None:
        if self._pending or self._transition_lock.locked():
            await self.wait_transitions()

    # ===== State machine =====

    async def _sync_to_identity(self) -> None:
        async with self._transition_lock:
            target = self.identity.user_id
            if self._entered and target == self._owner:
                return
            previous = self._owner
            self.error.value = None
            try:
                if target is None:
                    await self._enter_guest()
                elif previous is None:
                    await self._merge_then_bind(target)
                else:
                    await self._rebind(target)
            finally:
                self._entered = True

    async def _enter_guest(self) -> None:
        await self._unbind()
        self._owner = None
        self.is_guest.value = True
        self.items.value = self._read_guest()
        await self.after_load(None)
        logger.info(f"{self.domain}: guest mode with {len(self.items.value)} entries")

    async def _merge_then_bind(self, owner_id: str) -> None:
        await self._unbind()
        self.loading.value = True
        try:
            guest = self._read_guest()
            if guest:
                await self._merge(owner_id, guest)
            await self._bind(owner_id)
        finally:
            self.loading.value = False

    async def _rebind(self, owner_id: str) -> None:
        await self._unbind()
        self.loading.value = True
        try:
            await self._bind(owner_id)
        finally:
            self.loading.value = False

    async def _merge(self, owner_id: str, guest: dict[str, EntryT]) -> None:
        """
        Upload guest entries into owner_id's remote state.

        Entries are dropped from guest storage only once uploaded, so a
        merge retried after a failure never applies an entry twice.
        """
        try:
            remote = await self.remote.list(owner_id)
        except RemoteReadError as e:
            self._record(e, f"merge read for {owner_id}")
            return

        remaining = dict(guest)
        uploaded = 0
        for key, entry in guest.items():
            merged = self.merge_entry(remote.get(key), entry)
            if merged is not None:
                try:
                    await self.remote.upsert(owner_id, merged)
                except RemoteWriteError as e:
                    self._record(e, f"merge of {key} for {owner_id}")
                    self._write_guest(remaining)
                    return
                uploaded += 1
            del remaining[key]

        self._erase_guest()
        logger.info(f"{self.domain}: merged {uploaded} of {len(guest)} guest entries into {owner_id}")

    async def _bind(self, owner_id: str) -> None:
        self._owner = owner_id
        self.is_guest.value = False

        feed: Optional[ChangeFeed] = None
        try:
            feed = await self.remote.subscribe(owner_id)
        except RemoteReadError as e:
            self._record(e, f"subscribe for {owner_id}")

        try:
            entries = await self.remote.list(owner_id)
        except RemoteReadError as e:
            self._record(e, f"load for {owner_id}")
            entries = {}

        if self.identity.user_id != owner_id:
            logger.debug(f"{self.domain}: discarding load for {owner_id}, identity moved on")
            entries = {}

        self.items.value = self.order_entries(entries)
        if feed is not None:
            self._feed = feed
            self._reconcile_task = asyncio.get_running_loop().create_task(
                self._reconcile(feed, owner_id)
            )
        await self.after_load(owner_id)
        logger.info(f"{self.domain}: bound to {owner_id} with {len(self.items.value)} entries")

    async def _unbind(self) -> None:
        feed, task = self._feed, self._reconcile_task
        self._feed = None
        self._reconcile_task = None
        if feed is not None:
            feed.close()
        if task is not None:
            await task

    async def refresh(self) -> None:
        """Reload the authoritative realm."""
        await self._settled()
        async with self._transition_lock:
            if self.is_guest.value:
                self.items.value = self._read_guest()
                await self.after_load(None)
                return
            owner_id = self._owner
            self.loading.value = True
            try:
                entries = await self.remote.list(owner_id)
            except RemoteReadError as e:
                self._record(e, f"refresh for {owner_id}")
                return
            finally:
                self.loading.value = False
            if self._owner == owner_id and self.identity.user_id == owner_id:
                self.items.value = self.order_entries(entries)

    # ===== Live changes =====

    async def _reconcile(self, feed: ChangeFeed, owner_id: str) -> None:
        try:
            async for event in feed:
                try:
                    self._apply_event(owner_id, event)
                finally:
                    feed.ack()
        except StoreError as e:
            self._record(e, f"change feed for {owner_id}")
        except Exception as e:
            logger.error(f"{self.domain}: change feed for {owner_id} crashed: {e}", exc_info=True)
            self._record(e, f"change feed for {owner_id}")
        finally:
            feed.close()
            if self._feed is feed:
                self._feed = None
                self._reconcile_task = None

    def _apply_event(self, owner_id: str, event: ChangeEvent) -> None:
        if owner_id != self._owner or (event.owner_id is not None and event.owner_id != owner_id):
            return
        items = self.items.value
        if event.kind == ChangeKind.DELETE:
            if event.key not in items:
                return
            updated = dict(items)
            del updated[event.key]
        else:
            if items.get(event.key) == event.entry:
                logger.debug(f"{self.domain}: ignoring echo for {event.key}")
                return
            updated = dict(items)
            updated[event.key] = event.entry
        self.items.value = updated

    # ===== Mutations =====

    async def _commit(
        self, build: Callable[[dict[str, EntryT]], Optional[dict[str, Optional[EntryT]]]]
    ) -> Optional[Mutation[EntryT]]:
        """
        Apply a change to the authoritative realm.

        `build` receives the current items and returns the entries to write
        (None values delete), or None for a no-op.

        Raises:
            AuthRequiredError: Guest mode is not supported by this store
            RemoteWriteError: The remote write failed; the change was rolled back
        """
        await self._settled()
        after = build(self.items.value)
        if not after:
            return None
        mutation = Mutation.capture(self.items.value, after)

        if self.is_guest.value:
            if self.guest_key is None:
                raise AuthRequiredError(f"{self.domain} requires sign-in")
            self.items.value = mutation.apply(self.items.value)
            self._write_guest(self.items.value)
            return mutation

        owner_id = self._owner
        self.items.value = mutation.apply(self.items.value)
        done: set[str] = set()
        try:
            for key, entry in after.items():
                if entry is None:
                    await self.remote.delete(owner_id, key)
                else:
                    await self.remote.upsert(owner_id, entry)
                done.add(key)
        except RemoteWriteError as e:
            unrestored = await self._undo_remote(owner_id, mutation, done)
            if self._owner == owner_id:
                self.items.value = mutation.revert(self.items.value, skip=frozenset(unrestored))
            self._record(e, f"write for {owner_id}")
            raise
        self.error.value = None
        return mutation

    async def _undo_remote(self, owner_id: str, mutation: Mutation[EntryT], done: set[str]) -> set[str]:
        """Write back the prior entries of keys already written; returns the keys that could not be."""
        unrestored: set[str] = set()
        for key in done:
            previous = mutation.before[key]
            try:
                if previous is None:
                    await self.remote.delete(owner_id, key)
                else:
                    await self.remote.upsert(owner_id, previous)
            except RemoteWriteError as e:
                logger.error(f"{self.domain}: could not restore {key} for {owner_id}: {e}")
                unrestored.add(key)
        return unrestored

    # ===== Guest storage =====

    def _read_guest(self) -> dict[str, EntryT]:
        if self.guest_key is None:
            return {}
        try:
            raw = self.storage.read(self.guest_key)
        except StorageError as e:
            self._record(e, "guest read")
            return {}
        if not isinstance(raw, dict):
            return {}

        entries: dict[str, EntryT] = {}
        for blob in raw.values():
            try:
                entry = self.entry_model.model_validate(blob)
            except ModelValidationError as e:
                logger.warning(f"{self.domain}: skipping malformed guest entry: {e}")
                continue
            entries[entry.key] = entry
        return self.order_entries(entries)

    def _write_guest(self, items: dict[str, EntryT]) -> None:
        if self.guest_key is None:
            return
        if not items:
            self._erase_guest()
            return
        try:
            self.storage.write(
                self.guest_key,
                {key: entry.model_dump(mode="json") for key, entry in items.items()},
            )
        except StorageError as e:
            self._record(e, "guest write")

    def _erase_guest(self) -> None:
        if self.guest_key is None:
            return
        try:
            self.storage.erase(self.guest_key)
        except StorageError as e:
            self._record(e, "guest erase")

    # ===== Hooks =====

    def merge_entry(self, remote: Optional[EntryT], guest: EntryT) -> Optional[EntryT]:
        """Entry to upload for a guest entry; the remote entry wins by default."""
        return guest if remote is None else None

    def order_entries(self, entries: dict[str, EntryT]) -> dict[str, EntryT]:
        return dict(entries)

    async def after_load(self, owner_id: Optional[str]) -> None:
        """Called inside a transition once the realm's entries are loaded."""

    def _record(self, error: BaseException, context: str) -> None:
        self.last_error = error
        self.error.value = describe_error(error)
        logger.warning(f"{self.domain}: {context} failed: {error}")

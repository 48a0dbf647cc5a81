"""Identity signal and session-backed identity provider."""

import asyncio
import logging
import os
from typing import Callable, Optional, Protocol

from .errors import AuthRequiredError, StorageError
from .models import Identity, SessionData
from .reactive import Observable, Unsubscribe
from .storage import GUEST_CART_KEY, GUEST_WISHLIST_KEY, SESSION_KEY, LocalStorage

logger = logging.getLogger(__name__)

IdentityCallback = Callable[[Identity], None]


class IdentityProvider(Protocol):
    """Source of the current user identity."""

    def current(self) -> Identity: ...

    def on_change(self, callback: IdentityCallback) -> Unsubscribe: ...


class IdentitySignal:
    """
    Exposes the current identity to the stores.

    `ready` flips to True once, after the provider's first resolution, and
    never reverts.
    """

    def __init__(self, provider: Optional[IdentityProvider] = None) -> None:
        self.identity: Observable[Identity] = Observable(Identity())
        self._ready = asyncio.Event()
        self._provider_unsub: Optional[Unsubscribe] = None
        if provider is not None:
            self.attach(provider)

    def attach(self, provider: IdentityProvider) -> None:
        """Follow a provider, replacing any previously attached one."""
        self.detach()
        self._provider_unsub = provider.on_change(self._update)
        self._update(provider.current())

    def detach(self) -> None:
        if self._provider_unsub is not None:
            self._provider_unsub()
            self._provider_unsub = None

    def _update(self, identity: Identity) -> None:
        if self.identity.value.ready and not identity.ready:
            identity = identity.model_copy(update={"ready": True})
        previous = self.identity.value
        self.identity.value = identity
        if identity.ready and not self._ready.is_set():
            self._ready.set()
        if previous.id != identity.id:
            logger.info(f"Identity changed: {previous.id or 'guest'} -> {identity.id or 'guest'}")

    @property
    def current(self) -> Identity:
        return self.identity.value

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.value.id

    @property
    def ready(self) -> bool:
        return self.identity.value.ready

    def subscribe(self, callback: IdentityCallback) -> Unsubscribe:
        return self.identity.subscribe(callback)

    async def wait_ready(self) -> Identity:
        """Wait for the provider's initial resolution."""
        await self._ready.wait()
        return self.identity.value

    def require_identity(self) -> str:
        """
        Return the current user id.

        Raises:
            AuthRequiredError: If no identity is resolved
        """
        user_id = self.identity.value.id
        if not user_id:
            raise AuthRequiredError("Sign-in required")
        return user_id


class SessionIdentityProvider:
    """Manages the signed-in session and its persistence."""

    def __init__(self, storage: LocalStorage, user_id: Optional[str] = None) -> None:
        """
        Initialize the provider.

        Args:
            storage: Local storage holding the session blob
            user_id: Identity to sign in immediately (falls back to STOREFRONT_USER_ID)
        """
        self.storage = storage
        self._callbacks: list[IdentityCallback] = []
        self.session: SessionData = self._load_session()

        if user_id is None:
            user_id = os.environ.get("STOREFRONT_USER_ID")
        if user_id:
            logger.info("Loaded user id from configuration")
            self.session = SessionData(user_id=user_id, is_authenticated=True)
            self._save_session()

    def _load_session(self) -> SessionData:
        """Load session data if it exists."""
        try:
            data = self.storage.read(SESSION_KEY)
        except StorageError as e:
            logger.warning(f"Could not load session: {e}")
            return SessionData()
        if not data:
            return SessionData()
        try:
            return SessionData(**data)
        except (TypeError, ValueError):
            # If the blob is corrupted, start fresh
            logger.warning("Discarding corrupted session blob")
            return SessionData()

    def _save_session(self) -> None:
        try:
            self.storage.write(SESSION_KEY, self.session.model_dump())
        except StorageError as e:
            logger.error(f"Could not save session: {e}")

    def current(self) -> Identity:
        user_id = self.session.user_id if self.is_authenticated() else None
        return Identity(id=user_id, ready=True)

    def on_change(self, callback: IdentityCallback) -> Unsubscribe:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        identity = self.current()
        for callback in list(self._callbacks):
            callback(identity)

    def is_authenticated(self) -> bool:
        """Check if there's an active authenticated session."""
        return self.session.is_authenticated and bool(self.session.user_id)

    def sign_in(self, user_id: str, user_email: Optional[str] = None) -> None:
        """
        Record a successful sign-in.

        Args:
            user_id: Authenticated user's id
            user_email: User's email address
        """
        if not user_id:
            raise ValueError("user_id must not be empty")
        self.session = SessionData(user_id=user_id, user_email=user_email, is_authenticated=True)
        self._save_session()
        logger.info(f"Signed in as {user_email or user_id}")
        self._notify()

    def sign_out(self, clear_guest: bool = False) -> None:
        """
        Clear the session.

        Guest cart and wishlist blobs are kept unless clear_guest is set.
        """
        self.session = SessionData()
        try:
            self.storage.erase(SESSION_KEY)
            if clear_guest:
                self.storage.erase(GUEST_CART_KEY)
                self.storage.erase(GUEST_WISHLIST_KEY)
        except StorageError as e:
            logger.warning(f"Could not clear session storage: {e}")
        logger.info("Session cleared")
        self._notify()

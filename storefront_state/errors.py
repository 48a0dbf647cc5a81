"""Error taxonomy for the storefront stores."""

from typing import Optional


class StoreError(Exception):
    """Base class for errors raised by the stores and their adapters."""


class ValidationError(StoreError):
    """Malformed input to a mutation; raised before any state change."""


class AuthRequiredError(StoreError):
    """An owned-mode operation was attempted without a resolved identity."""


class RemoteWriteError(StoreError):
    """A remote write failed; the optimistic change has been rolled back."""


class RemoteReadError(StoreError):
    """A remote load, lookup or change feed failed."""


class StorageError(StoreError):
    """Local persistence failed (quota, permissions, corrupt blob)."""


_MESSAGES = {
    ValidationError: "Invalid input",
    AuthRequiredError: "Please sign in to continue",
    RemoteWriteError: "Could not save your change, please retry",
    RemoteReadError: "Could not load the latest data",
    StorageError: "Could not save data on this device",
}


def describe_error(error: Optional[BaseException]) -> str:
    """
    Map an exception to a short human-readable message.

    Store errors carrying their own message keep it; others fall back to a
    generic message for their category.

    Args:
        error: Exception to describe (None gives an empty string)

    Returns:
        Message suitable for passive display
    """
    if error is None:
        return ""
    message = str(error).strip()
    for error_type, fallback in _MESSAGES.items():
        if isinstance(error, error_type):
            return message or fallback
    return message or error.__class__.__name__

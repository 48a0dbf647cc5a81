"""Configuration loaded from environment variables."""

import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    """Runtime settings for a store context."""

    storage_dir: Path = Field(
        default_factory=lambda: Path.home() / ".storefront_state",
        description="Directory holding guest state blobs",
    )
    remote_url: Optional[str] = Field(None, description="REST backend base URL")
    remote_key: Optional[str] = Field(None, description="REST backend API key")
    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between change-feed polls")
    page_size: int = Field(default=6, ge=1, description="Infinite list page size")
    price_fallback: tuple[Decimal, Decimal] = Field(
        default=(Decimal("0"), Decimal("0")),
        description="Price bounds reported for an empty catalog",
    )
    log_level: str = Field(default="INFO", description="Logging level name")
    user_id: Optional[str] = Field(None, description="Pre-resolved user id for the session provider")

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "Settings":
        """
        Build settings from STOREFRONT_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            Settings with unset variables left at their defaults
        """
        env = os.environ if environ is None else environ
        values: dict = {}

        storage_dir = env.get("STOREFRONT_STORAGE_DIR")
        if storage_dir:
            values["storage_dir"] = Path(storage_dir).expanduser()

        if env.get("STOREFRONT_REMOTE_URL"):
            values["remote_url"] = env["STOREFRONT_REMOTE_URL"].rstrip("/")
        if env.get("STOREFRONT_REMOTE_KEY"):
            values["remote_key"] = env["STOREFRONT_REMOTE_KEY"]
        if env.get("STOREFRONT_LOG_LEVEL"):
            values["log_level"] = env["STOREFRONT_LOG_LEVEL"].upper()
        if env.get("STOREFRONT_USER_ID"):
            values["user_id"] = env["STOREFRONT_USER_ID"]

        parsed = {
            "poll_interval": _parse(env, "STOREFRONT_POLL_INTERVAL", float, lambda v: v > 0),
            "page_size": _parse(env, "STOREFRONT_PAGE_SIZE", int, lambda v: v >= 1),
            "price_fallback": _parse(env, "STOREFRONT_PRICE_FALLBACK", _price_range, lambda v: v[0] <= v[1]),
        }
        values.update({name: value for name, value in parsed.items() if value is not None})

        return cls(**values)


def _price_range(raw: str) -> tuple[Decimal, Decimal]:
    low, high = (Decimal(part.strip()) for part in raw.split(","))
    return low, high


def _parse(env: Mapping[str, str], name: str, convert: Callable[[str], Any],
           accept: Callable[[Any], bool]) -> Any:
    """Converted value of an env variable; None when unset or malformed."""
    raw = env.get(name)
    if not raw:
        return None
    try:
        value = convert(raw.strip())
    except (ValueError, ArithmeticError):
        value = None
    if value is None or not accept(value):
        logger.warning(f"Ignoring malformed {name}: {raw!r}")
        return None
    return value


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for applications embedding the stores."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

"""Data models for storefront state entities."""

import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Gender = Literal["men", "women"]

COUPON_KEY = "coupon"


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def line_key(product_id: str, color: str, size: str) -> str:
    """Stable cart line key shared by the guest and owned realms."""
    return f"{product_id}|{color}|{size}"


def parse_array(value: Any) -> list[str]:
    """Decode an array column that may arrive as a list, JSON text or null."""
    if not value:
        return []
    if isinstance(value, list):
        return [str(item) for item in value]
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            return []
        if isinstance(decoded, list):
            return [str(item) for item in decoded]
    return []


class Identity(BaseModel):
    """Current user identity as reported by the identity provider."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(None, description="User id, None for a guest")
    ready: bool = Field(default=False, description="Provider finished its initial resolution")


class CartLine(BaseModel):
    """A purchasable cart line, unique per (product, color, size)."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(min_length=1, description="Product ID")
    color: str = Field(default="", description="Selected color")
    size: str = Field(default="", description="Selected size")
    quantity: int = Field(ge=1, description="Quantity of the product")
    unit_price: Decimal = Field(default=Decimal("0"), description="Unit price")
    title: str = Field(default="", description="Product title at the time it was added")
    image: str = Field(default="", description="Product image URL")
    added_at: datetime = Field(default_factory=utcnow, description="When the line was created")

    @property
    def key(self) -> str:
        return line_key(self.product_id, self.color, self.size)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class WishlistEntry(BaseModel):
    """A wishlisted product."""

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(min_length=1, description="Product ID")
    added_at: datetime = Field(default_factory=utcnow, description="When the product was saved")

    @property
    def key(self) -> str:
        return self.product_id


class Coupon(BaseModel):
    """The single coupon applied by an owner."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(description="Normalized coupon code")
    valid: bool = Field(default=False, description="Coupon is active on the backend")
    percent: float = Field(default=0, ge=0, le=100, description="Discount percentage")

    @model_validator(mode="before")
    @classmethod
    def _invalid_has_no_discount(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("valid"):
            return {**data, "percent": 0}
        return data

    @property
    def key(self) -> str:
        return COUPON_KEY


class CouponRule(BaseModel):
    """Backend coupon definition."""

    code: str
    active: bool = False
    percent: float = Field(default=0, ge=0, le=100)


class DeliveryForm(BaseModel):
    """Delivery details captured at checkout."""

    full_name: str
    phone: str
    city: str
    address: str
    zip: Optional[str] = None


class OrderLineItem(BaseModel):
    """Represents an item in an order."""

    product_id: str
    title: str
    unit_price: Decimal
    color: str = ""
    size: str = ""
    quantity: int = Field(ge=1)
    image: Optional[str] = None

    @classmethod
    def from_cart_line(cls, line: CartLine) -> "OrderLineItem":
        return cls(
            product_id=line.product_id,
            title=line.title,
            unit_price=line.unit_price,
            color=line.color,
            size=line.size,
            quantity=line.quantity,
            image=line.image or None,
        )


class OrderAmounts(BaseModel):
    """Monetary summary of an order."""

    subtotal: Decimal
    discount: Decimal = Decimal("0")
    total: Decimal


class OrderDraft(BaseModel):
    """Order payload before submission."""

    delivery: DeliveryForm
    line_items: list[OrderLineItem] = Field(default_factory=list)
    amounts: OrderAmounts
    coupon_code: Optional[str] = None


class Order(OrderDraft):
    """Immutable order record."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Order ID")
    created_at: datetime = Field(default_factory=utcnow, description="Order creation timestamp")

    @property
    def key(self) -> str:
        return self.id


class Product(BaseModel):
    """Represents a catalog product."""

    id: str = Field(description="Product ID")
    title: str = Field(description="Product name")
    gender: Gender = Field(description="Target gender")
    category: str = Field(description="Product category")
    price: Decimal = Field(default=Decimal("0"), description="Product price")
    colors: list[str] = Field(default_factory=list)
    sizes: list[str] = Field(default_factory=list)
    image_urls: list[str] = Field(default_factory=list)
    description: str = ""
    extra: dict[str, str] = Field(default_factory=dict)
    video_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    is_active: bool = True

    @property
    def key(self) -> str:
        return self.id

    @property
    def image(self) -> str:
        return self.image_urls[0] if self.image_urls else ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Product":
        """Map a backend products row (snake_case, nullable columns)."""
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            gender=row.get("gender"),
            category=row.get("category") or "",
            price=Decimal(str(row.get("price") or 0)),
            colors=parse_array(row.get("colors")),
            sizes=parse_array(row.get("sizes")),
            image_urls=parse_array(row.get("image_urls")),
            description=row.get("description") or "",
            extra=row.get("extra") or {},
            video_url=row.get("video_url"),
            created_at=row.get("created_at") or utcnow(),
            is_active=True if row.get("is_active") is None else bool(row["is_active"]),
        )


class ProductFilters(BaseModel):
    """Catalog filter set; blank strings mean "no filter"."""

    model_config = ConfigDict(frozen=True)

    gender: Optional[Gender] = None
    category: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None
    price_range: Optional[tuple[Decimal, Decimal]] = None
    query: Optional[str] = None

    @field_validator("gender", "category", "color", "size", "query", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    def matches(self, product: Product) -> bool:
        """Return True if product passes every set filter."""
        if self.gender and product.gender != self.gender:
            return False
        if self.category and product.category != self.category:
            return False
        if self.color and self.color not in product.colors:
            return False
        if self.size and self.size not in product.sizes:
            return False
        if self.price_range is not None:
            low, high = self.price_range
            if product.price < low or product.price > high:
                return False
        if self.query and self.query.lower() not in product.title.lower():
            return False
        return True


class ChangeKind(str, Enum):
    """Kind of remote change delivered through a change feed."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A single remote change scoped to one owner."""

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    owner_id: Optional[str] = Field(None, description="Owner the row belongs to")
    key: str = Field(description="Entry key")
    entry: Optional[Any] = Field(None, description="New entry for insert/update")


class SessionData(BaseModel):
    """Persisted session for the signed-in user."""

    user_id: Optional[str] = Field(None, description="User ID")
    user_email: Optional[str] = Field(None, description="User email")
    is_authenticated: bool = Field(default=False, description="Authentication status")

"""Shared fixtures for the storefront state tests."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from storefront_state.context import StoreContext
from storefront_state.memory_backend import MemoryBackend
from storefront_state.models import Product
from storefront_state.storage import MemoryStorage

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def no_preset_user(monkeypatch):
    """Keep a user id from the environment out of the session provider."""
    monkeypatch.delenv("STOREFRONT_USER_ID", raising=False)


@pytest.fixture
def backend():
    """In-memory backend with a test coupon rule."""
    backend = MemoryBackend()
    backend.put_rule("SAVE10", active=True, percent=10)
    return backend


@pytest.fixture
def storage():
    """In-memory local storage."""
    return MemoryStorage()


@pytest.fixture
def context(backend, storage):
    """Store context for a guest session."""
    return StoreContext.in_memory(backend=backend, storage=storage)


@pytest.fixture
def make_product():
    """Factory for catalog products."""

    def factory(product_id="A", price="10.00", **overrides):
        values = {
            "id": product_id,
            "title": f"Product {product_id}",
            "gender": "women",
            "category": "dresses",
            "price": Decimal(price),
            "colors": ["red"],
            "sizes": ["M"],
            "image_urls": [f"https://cdn.example.com/{product_id}.jpg"],
            "created_at": EPOCH,
        }
        values.update(overrides)
        return Product(**values)

    return factory


@pytest.fixture
def catalog_products(make_product):
    """Five products with varied facets, created one minute apart."""
    rows = [
        ("p1", "19.99", "women", "dresses", ["red", "black"], ["S", "M"]),
        ("p2", "49.00", "men", "shirts", ["blue"], ["L"]),
        ("p3", "5.50", "women", "accessories", ["black"], []),
        ("p4", "120.00", "men", "jackets", ["green", "blue"], ["M", "L", "XL"]),
        ("p5", "35.00", "women", "dresses", ["white"], ["M"]),
    ]
    return [
        make_product(
            product_id,
            price,
            gender=gender,
            category=category,
            colors=colors,
            sizes=sizes,
            created_at=EPOCH + timedelta(minutes=index),
        )
        for index, (product_id, price, gender, category, colors, sizes) in enumerate(rows)
    ]

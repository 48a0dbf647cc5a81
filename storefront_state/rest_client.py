"""REST backend adapter for a PostgREST-style API."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError

from .errors import RemoteReadError, RemoteWriteError
from .models import ChangeEvent, ChangeKind, CouponRule, Product, ProductFilters
from .remote import ChangeFeed

logger = logging.getLogger(__name__)

Snapshot = dict[str, Any]


class RestBackend:
    """
    Client for the storefront REST backend.

    Every per-owner table stores rows of (owner_id, entry_key, payload).
    Change feeds are emulated by polling and diffing snapshots.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        poll_interval: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the backend client.

        Args:
            base_url: API root, e.g. https://project.example.com/rest/v1
            api_key: Key sent as `apikey` and bearer token
            poll_interval: Seconds between change-feed polls
            client: Preconfigured client to use instead of creating one
        """
        self.poll_interval = poll_interval
        self._owns_client = client is None
        if client is None:
            headers = {"Accept": "application/json"}
            if api_key:
                headers["apikey"] = api_key
                headers["Authorization"] = f"Bearer {api_key}"
            client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=30.0, headers=headers)
        self.client = client

    def table(self, name: str, model: type[BaseModel]) -> "RestTable":
        return RestTable(self, name, model)

    def coupons(self) -> "RestCouponRules":
        return RestCouponRules(self)

    def product_source(self) -> "RestProductSource":
        return RestProductSource(self)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def request(self, method: str, path: str, read: bool = True, **kwargs: Any) -> httpx.Response:
        """
        Send a request, mapping transport and HTTP errors to store errors.

        Raises:
            RemoteReadError: For a failed read
            RemoteWriteError: For a failed write
        """
        error_type = RemoteReadError if read else RemoteWriteError
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise error_type(f"{method} {path} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise error_type(f"{method} {path} failed: {e}") from e
        return response

    async def get_rows(self, path: str, params: Any) -> list[dict[str, Any]]:
        response = await self.request("GET", path, params=params)
        try:
            rows = response.json()
        except ValueError as e:
            raise RemoteReadError(f"GET {path} returned invalid JSON") from e
        if not isinstance(rows, list):
            raise RemoteReadError(f"GET {path} returned {type(rows).__name__}, expected a list")
        return rows

    def poll(self, fetch: Callable[[], Awaitable[Snapshot]], snapshot: Snapshot,
             owner_id: Optional[str] = None) -> "PollingFeed":
        return PollingFeed(fetch, snapshot, self.poll_interval, owner_id)


class PollingFeed(ChangeFeed):
    """Change feed that polls a snapshot and publishes the differences."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Snapshot]],
        snapshot: Snapshot,
        interval: float,
        owner_id: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.fetch = fetch
        self.snapshot = dict(snapshot)
        self.interval = interval
        self.owner_id = owner_id
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.interval)
            try:
                current = await self.fetch()
            except RemoteReadError as e:
                logger.warning(f"Change feed poll failed, retrying: {e}")
                continue
            except Exception as e:
                logger.error(f"Change feed poll crashed, stopping: {e}", exc_info=True)
                self.fail(e)
                return
            if self.closed:
                return
            self.publish_diff(current)

    def publish_diff(self, current: Snapshot) -> int:
        """Publish events turning the last snapshot into `current`."""
        published = 0
        for key, entry in current.items():
            if key not in self.snapshot:
                kind = ChangeKind.INSERT
            elif self.snapshot[key] != entry:
                kind = ChangeKind.UPDATE
            else:
                continue
            self.publish(ChangeEvent(kind=kind, owner_id=self.owner_id, key=key, entry=entry))
            published += 1
        for key in self.snapshot:
            if key not in current:
                self.publish(ChangeEvent(kind=ChangeKind.DELETE, owner_id=self.owner_id, key=key))
                published += 1
        self.snapshot = dict(current)
        return published

    def close(self) -> None:
        super().close()
        self._task.cancel()


class RestTable:
    """RemoteTable over one REST resource."""

    def __init__(self, backend: RestBackend, name: str, model: type[BaseModel]) -> None:
        self.backend = backend
        self.name = name
        self.model = model

    @property
    def path(self) -> str:
        return f"/{self.name}"

    async def list(self, owner_id: str) -> dict[str, Any]:
        rows = await self.backend.get_rows(
            self.path, {"owner_id": f"eq.{owner_id}", "select": "entry_key,payload"}
        )
        entries: dict[str, Any] = {}
        for row in rows:
            try:
                entry = self.model.model_validate(row.get("payload"))
            except ModelValidationError as e:
                logger.warning(f"Skipping malformed {self.name} row {row.get('entry_key')}: {e}")
                continue
            entries[entry.key] = entry
        return entries

    async def upsert(self, owner_id: str, entry: Any) -> None:
        await self.backend.request(
            "POST",
            self.path,
            read=False,
            params={"on_conflict": "owner_id,entry_key"},
            json={
                "owner_id": owner_id,
                "entry_key": entry.key,
                "payload": entry.model_dump(mode="json"),
            },
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def delete(self, owner_id: str, key: str) -> None:
        await self.backend.request(
            "DELETE",
            self.path,
            read=False,
            params={"owner_id": f"eq.{owner_id}", "entry_key": f"eq.{key}"},
        )

    async def subscribe(self, owner_id: str) -> ChangeFeed:
        snapshot = await self.list(owner_id)
        return self.backend.poll(lambda: self.list(owner_id), snapshot, owner_id)


class RestCouponRules:
    """CouponRules over the `coupons` resource."""

    def __init__(self, backend: RestBackend) -> None:
        self.backend = backend

    async def lookup(self, code: str) -> Optional[CouponRule]:
        rows = await self.backend.get_rows(
            "/coupons", {"code": f"eq.{code}", "select": "code,active,percent", "limit": "1"}
        )
        if not rows:
            return None
        try:
            return CouponRule.model_validate(rows[0])
        except ModelValidationError as e:
            raise RemoteReadError(f"Malformed coupon row for {code}") from e


class RestProductSource:
    """ProductSource over the `products` resource."""

    path = "/products"

    def __init__(self, backend: RestBackend) -> None:
        self.backend = backend

    def _parse(self, rows: list[dict[str, Any]]) -> list[Product]:
        products = []
        for row in rows:
            try:
                products.append(Product.from_row(row))
            except (KeyError, ModelValidationError) as e:
                logger.warning(f"Skipping malformed product row {row.get('id')}: {e}")
        return products

    async def list_products(self) -> list[Product]:
        rows = await self.backend.get_rows(
            self.path, {"select": "*", "is_active": "eq.true", "order": "created_at.asc"}
        )
        return self._parse(rows)

    async def fetch_product(self, product_id: str) -> Optional[Product]:
        rows = await self.backend.get_rows(
            self.path, {"select": "*", "id": f"eq.{product_id}", "limit": "1"}
        )
        products = self._parse(rows)
        return products[0] if products else None

    async def query(self, filters: ProductFilters, offset: int, limit: int) -> list[Product]:
        params: list[tuple[str, str]] = [("select", "*"), ("is_active", "eq.true")]
        if filters.gender:
            params.append(("gender", f"eq.{filters.gender}"))
        if filters.category:
            params.append(("category", f"eq.{filters.category}"))
        if filters.color:
            params.append(("colors", f"cs.{{{filters.color}}}"))
        if filters.size:
            params.append(("sizes", f"cs.{{{filters.size}}}"))
        if filters.price_range is not None:
            low, high = filters.price_range
            params.append(("price", f"gte.{low}"))
            params.append(("price", f"lte.{high}"))
        if filters.query:
            params.append(("title", f"ilike.*{filters.query}*"))
        params += [("order", "created_at.asc"), ("offset", str(offset)), ("limit", str(limit))]
        return self._parse(await self.backend.get_rows(self.path, params))

    async def subscribe(self) -> ChangeFeed:
        async def snapshot() -> Snapshot:
            return {product.id: product for product in await self.list_products()}

        return self.backend.poll(snapshot, await snapshot())

"""Async client for the PrestaShop webservice (JSON output)."""

import logging
from urllib.parse import urlsplit, urlunsplit

import httpx

from jenn.connectors.errors import ConnectorError
from jenn.schemas.connectors import PrestashopConnection

logger = logging.getLogger(__name__)

CONNECTOR = "prestashop"


def normalize_base_url(url: str) -> str:
    """Accept either the shop URL or the webservice URL and return the shop URL.

    ``https://shop.example.com/api/`` and ``https://shop.example.com`` both
    become ``https://shop.example.com``.
    """
    parts = urlsplit(url)
    path = parts.path.rstrip("/")
    if path.lower().endswith("/api"):
        path = path[:-4]
    return urlunsplit((parts.scheme, parts.netloc, path, "", "")).rstrip("/")


# --- Response normalizers ---
# The webservice wraps single resources as {"order": {...}} and lists as
# {"orders": [...]}; an empty list comes back as [] or {}.


def _unwrap(raw: object, singular: str, plural: str) -> dict | None:
    if not raw or not isinstance(raw, dict):
        return None
    if isinstance(raw.get(singular), dict):
        return raw[singular]
    many = raw.get(plural)
    if isinstance(many, list):
        return many[0] if many else None
    if isinstance(many, dict) and isinstance(many.get(singular), dict):
        return many[singular]
    if plural in raw or singular in raw:
        return None
    return raw


def normalize_order(raw: object) -> dict | None:
    return _unwrap(raw, "order", "orders")


def normalize_customer(raw: object) -> dict | None:
    return _unwrap(raw, "customer", "customers")


def normalize_list(raw: object, plural: str) -> list[dict]:
    if not isinstance(raw, dict):
        return []
    items = raw.get(plural)
    return items if isinstance(items, list) else []


def order_rows(order: dict) -> list[dict]:
    """Line items of a normalized order."""
    associations = order.get("associations") or {}
    rows = associations.get("order_rows") or associations.get("order_row") or []
    if isinstance(rows, dict):
        rows = rows.get("order_row") or []
    if isinstance(rows, dict):
        rows = [rows]
    return rows if isinstance(rows, list) else []


class PrestashopClient:
    """Read-only access to orders, customers and products.

    Usage::

        async with PrestashopClient(connection) as shop:
            orders = await shop.list_orders(limit=5)
    """

    def __init__(self, connection: PrestashopConnection, *, timeout: float = 30.0) -> None:
        self._base_url = normalize_base_url(connection.base_url)
        self._client = httpx.AsyncClient(
            base_url=f"{self._base_url}/api",
            params={"ws_key": connection.api_key, "output_format": "JSON"},
            headers={"Output-Format": "JSON", "Accept": "application/json"},
            timeout=timeout,
        )

    async def __aenter__(self) -> "PrestashopClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict | None = None) -> dict:
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "PrestaShop API error: status=%d path=%s body=%s",
                exc.response.status_code,
                path,
                exc.response.text[:200],
            )
            raise ConnectorError(
                CONNECTOR,
                exc.response.text or f"API error {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.TransportError as exc:
            raise ConnectorError(CONNECTOR, f"connection failed: {exc}") from exc
        if not response.content:
            return {}
        data = response.json()
        # Empty collections come back as a bare list.
        return data if isinstance(data, dict) else {}

    async def ping(self) -> None:
        """Check the webservice is enabled and the key can read customers."""
        await self._get("customers", {"limit": 1})

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def list_orders(
        self,
        *,
        limit: int = 10,
        reference: str | None = None,
        customer_id: int | None = None,
    ) -> list[dict]:
        params: dict = {"display": "full", "limit": limit, "sort": "[id_DESC]"}
        if reference:
            params["filter[reference]"] = f"[{reference}]"
        if customer_id is not None:
            params["filter[id_customer]"] = f"[{customer_id}]"
        return normalize_list(await self._get("orders", params), "orders")

    async def get_order(self, order_id: int) -> dict | None:
        try:
            return normalize_order(await self._get(f"orders/{order_id}"))
        except ConnectorError as exc:
            if exc.status_code == 404:
                return None
            raise

    async def find_order_by_reference(self, reference: str) -> dict | None:
        orders = await self.list_orders(limit=1, reference=reference)
        return orders[0] if orders else None

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def get_customer(self, customer_id: int) -> dict | None:
        try:
            return normalize_customer(await self._get(f"customers/{customer_id}"))
        except ConnectorError as exc:
            if exc.status_code == 404:
                return None
            raise

    async def search_customers(
        self,
        *,
        email: str | None = None,
        name: str | None = None,
        limit: int = 10,
    ) -> list[dict]:
        """Search by exact email or partial first/last name.

        The webservice cannot OR filters across fields, so a name search
        runs once per name field and merges the results.
        """
        base: dict = {"display": "full", "limit": limit}
        if email:
            data = await self._get("customers", {**base, "filter[email]": f"[{email}]"})
            return normalize_list(data, "customers")

        if not name:
            return normalize_list(await self._get("customers", base), "customers")

        found: dict[str, dict] = {}
        for field in ("firstname", "lastname"):
            data = await self._get("customers", {**base, f"filter[{field}]": f"%[{name}]%"})
            for customer in normalize_list(data, "customers"):
                found.setdefault(str(customer.get("id")), customer)
        return list(found.values())[:limit]

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    async def search_products(
        self,
        *,
        reference: str | None = None,
        name: str | None = None,
        limit: int = 10,
    ) -> list[dict]:
        params: dict = {"display": "full", "limit": limit}
        if reference:
            params["filter[reference]"] = f"%[{reference}]%"
        if name:
            params["filter[name]"] = f"%[{name}]%"
        return normalize_list(await self._get("products", params), "products")

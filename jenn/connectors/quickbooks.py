"""Async client for the QuickBooks Online accounting API."""

import logging

import httpx

from jenn.connectors.errors import ConnectorError
from jenn.schemas.connectors import QuickBooksConnection

logger = logging.getLogger(__name__)

CONNECTOR = "quickbooks"
MINOR_VERSION = 65


def escape_query_value(value: str) -> str:
    """Escape a string literal for the QuickBooks query language."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class QuickBooksClient:
    """Bearer-token client scoped to one company (realm).

    Usage::

        async with QuickBooksClient(connection) as qb:
            customers = await qb.query("SELECT * FROM Customer MAXRESULTS 5")
    """

    def __init__(self, connection: QuickBooksConnection, *, timeout: float = 30.0) -> None:
        self._realm_id = connection.realm_id
        self._client = httpx.AsyncClient(
            base_url=connection.base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {connection.access_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
        )

    async def __aenter__(self) -> "QuickBooksClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, resource: str, **kwargs) -> dict:
        path = f"/v3/company/{self._realm_id}/{resource}"
        params = {"minorversion": MINOR_VERSION, **kwargs.pop("params", {})}
        try:
            response = await self._client.request(method, path, params=params, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "QuickBooks API error: status=%d resource=%s body=%s",
                exc.response.status_code,
                resource,
                exc.response.text[:200],
            )
            raise ConnectorError(
                CONNECTOR,
                exc.response.text or f"API error {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.TransportError as exc:
            raise ConnectorError(CONNECTOR, f"connection failed: {exc}") from exc
        return response.json() if response.content else {}

    async def query(self, statement: str) -> dict:
        """Run a query and return its ``QueryResponse`` object."""
        data = await self._request("GET", "query", params={"query": statement})
        return data.get("QueryResponse", {})

    async def create_customer(self, payload: dict) -> dict:
        data = await self._request("POST", "customer", json=payload)
        return data.get("Customer", data)

    async def create_invoice(self, payload: dict) -> dict:
        data = await self._request("POST", "invoice", json=payload)
        return data.get("Invoice", data)

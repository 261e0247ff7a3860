"""Async Odoo client over the external XML-RPC API.

xmlrpc.client is synchronous; every remote call runs in asyncio.to_thread().

Usage::

    async with OdooClient(connection) as odoo:
        leads = await odoo.search_read("crm.lead", [], ["name", "email_from"], limit=5)
"""

import asyncio
import logging
import xmlrpc.client
from typing import Any

from jenn.connectors.errors import ConnectorError
from jenn.schemas.connectors import OdooConnection

logger = logging.getLogger(__name__)

CONNECTOR = "odoo"


class OdooClient:
    """Odoo ``execute_kw`` wrapper with lazy authentication."""

    def __init__(self, connection: OdooConnection) -> None:
        self._connection = connection
        base = connection.url.rstrip("/")
        self._common = xmlrpc.client.ServerProxy(f"{base}/xmlrpc/2/common", allow_none=True)
        self._object = xmlrpc.client.ServerProxy(f"{base}/xmlrpc/2/object", allow_none=True)
        self._uid: int | None = None

    async def __aenter__(self) -> "OdooClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        def _close() -> None:
            self._common("close")()
            self._object("close")()

        await asyncio.to_thread(_close)

    async def _call(self, fn, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except xmlrpc.client.Fault as exc:
            raise ConnectorError(CONNECTOR, exc.faultString) from exc
        except xmlrpc.client.ProtocolError as exc:
            raise ConnectorError(CONNECTOR, exc.errmsg, status_code=exc.errcode) from exc
        except OSError as exc:
            raise ConnectorError(CONNECTOR, f"connection failed: {exc}") from exc

    async def authenticate(self) -> int:
        """Log in and cache the user id.

        Raises:
            ConnectorError: If Odoo rejects the credentials.
        """
        c = self._connection
        uid = await self._call(self._common.authenticate, c.db, c.username, c.password, {})
        if not uid:
            raise ConnectorError(CONNECTOR, "Authentication failed")
        self._uid = int(uid)
        logger.info("Authenticated to Odoo %s as %s (uid=%d)", c.url, c.username, self._uid)
        return self._uid

    async def execute_kw(
        self,
        model: str,
        method: str,
        args: list | None = None,
        kwargs: dict | None = None,
    ) -> Any:
        if self._uid is None:
            await self.authenticate()
        c = self._connection
        return await self._call(
            self._object.execute_kw,
            c.db,
            self._uid,
            c.password,
            model,
            method,
            args or [],
            kwargs or {},
        )

    async def search_read(
        self,
        model: str,
        domain: list | None = None,
        fields: list[str] | None = None,
        limit: int = 10,
    ) -> list[dict]:
        return await self.execute_kw(
            model, "search_read", [domain or []], {"fields": fields or [], "limit": limit}
        )

    async def create(self, model: str, values: dict) -> int:
        return int(await self.execute_kw(model, "create", [values]))


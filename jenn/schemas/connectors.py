"""Schemas for external business-system connections and the order bridge.

Connection credentials are stored encrypted and validated once, on load,
into one of the typed connection models below.
"""

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

# --- Connections ---


class ConnectorKind(StrEnum):
    ODOO = "odoo"
    PRESTASHOP = "prestashop"
    QUICKBOOKS = "quickbooks"


class OdooConnection(BaseModel):
    """Odoo XML-RPC credentials. ``password`` may be an API key."""

    kind: Literal["odoo"] = "odoo"
    url: str
    db: str
    username: str
    password: str


class PrestashopConnection(BaseModel):
    """PrestaShop webservice credentials."""

    kind: Literal["prestashop"] = "prestashop"
    base_url: str  # shop URL or webservice URL (".../api")
    api_key: str


class QuickBooksConnection(BaseModel):
    """QuickBooks Online OAuth access token for one company (realm)."""

    kind: Literal["quickbooks"] = "quickbooks"
    access_token: str
    realm_id: str
    base_url: str = "https://quickbooks.api.intuit.com"


Connection = Annotated[
    OdooConnection | PrestashopConnection | QuickBooksConnection,
    Field(discriminator="kind"),
]

CONNECTION_ADAPTER: TypeAdapter[OdooConnection | PrestashopConnection | QuickBooksConnection] = (
    TypeAdapter(Connection)
)


class StoredConnection(BaseModel):
    """A decrypted, validated connection row."""

    account_id: str
    connection: Connection
    is_active: bool = True
    updated_at: datetime


# --- Order bridge ---


class BridgeCreated(BaseModel):
    """A new Odoo sale order was created from a PrestaShop order."""

    status: Literal["created"] = "created"
    prestashop_order_id: int | None = None
    prestashop_reference: str | None = None
    odoo_order_id: int
    customer_id: int
    line_count: int
    confirmed: bool = False


class BridgeAlreadyExists(BaseModel):
    """An Odoo sale order already carries this PrestaShop reference."""

    status: Literal["already_exists"] = "already_exists"
    prestashop_order_id: int | None = None
    prestashop_reference: str | None = None
    odoo_order_id: int
    odoo_order_name: str = ""
    message: str = (
        "Odoo sale order already exists for this PrestaShop reference "
        "(client_order_ref). No new order was created."
    )


BridgeSyncResult = Annotated[BridgeCreated | BridgeAlreadyExists, Field(discriminator="status")]

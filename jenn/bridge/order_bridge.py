"""PrestaShop -> Odoo order bridge.

Creates an Odoo sale order from a PrestaShop order, keyed by the PrestaShop
order reference stored in Odoo's ``client_order_ref``. Running it twice for
the same order creates one sale order; the second run reports
``already_exists``.

Customers and products are resolved with the same cascade: exact key,
then fuzzy name match, then create. A product that cannot be created does
not fail the sync; its line is kept with a free-text description.
"""

import logging

from jenn.connectors.errors import ConfigurationError, ConnectorError, OrderNotFoundError
from jenn.connectors.odoo import OdooClient
from jenn.connectors.prestashop import PrestashopClient, order_rows
from jenn.connectors.store import ConnectionStore
from jenn.schemas.connectors import (
    BridgeAlreadyExists,
    BridgeCreated,
    ConnectorKind,
    OdooConnection,
    PrestashopConnection,
)

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_NAME = "PrestaShop customer"
DEFAULT_PRODUCT_NAME = "PrestaShop product"


def _float(value: object, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


async def _fetch_order(
    prestashop: PrestashopClient, order_id: int | None, reference: str | None
) -> dict:
    if order_id is not None:
        order = await prestashop.get_order(order_id)
    else:
        order = await prestashop.find_order_by_reference(reference)
    if not order:
        raise OrderNotFoundError(
            "prestashop", f"Could not find order {order_id if order_id is not None else reference!r}"
        )
    return order


async def _find_existing(odoo: OdooClient, reference: str) -> dict | None:
    found = await odoo.search_read(
        "sale.order",
        [["client_order_ref", "=", reference]],
        ["id", "name", "state", "amount_total"],
        limit=1,
    )
    return found[0] if found else None


async def ensure_customer(prestashop: PrestashopClient, odoo: OdooClient, order: dict) -> int:
    """Return the Odoo partner id for the order's customer, creating it if needed."""
    customer_id = order.get("id_customer")
    if not customer_id:
        raise ConnectorError("prestashop", f"Order {order.get('id')} is missing id_customer")

    customer = await prestashop.get_customer(int(customer_id)) or {}
    email = (customer.get("email") or "").strip()
    full_name = (
        " ".join(p for p in (customer.get("firstname"), customer.get("lastname")) if p)
        or email
        or DEFAULT_CUSTOMER_NAME
    )

    if email:
        found = await odoo.search_read("res.partner", [["email", "=ilike", email]], ["id"], limit=1)
        if found:
            return found[0]["id"]
    found = await odoo.search_read("res.partner", [["name", "ilike", full_name]], ["id"], limit=1)
    if found:
        return found[0]["id"]

    values = {"name": full_name}
    if email:
        values["email"] = email
    partner_id = await odoo.create("res.partner", values)
    logger.info("Created Odoo partner %d for %s (%s)", partner_id, full_name, email or "no email")
    return partner_id


async def _resolve_product(
    odoo: OdooClient, reference: str | None, name: str | None, unit_price: float
) -> int | None:
    if reference:
        found = await odoo.search_read(
            "product.product", [["default_code", "=", reference]], ["id"], limit=1
        )
        if found:
            return found[0]["id"]
    if name:
        found = await odoo.search_read("product.product", [["name", "ilike", name]], ["id"], limit=1)
        if found:
            return found[0]["id"]
    if not (reference or name):
        return None

    values: dict = {"name": name or reference or DEFAULT_PRODUCT_NAME}
    if reference:
        values["default_code"] = reference
    if unit_price > 0:
        values["list_price"] = unit_price
    try:
        product_id = await odoo.create("product.product", values)
    except ConnectorError as exc:
        logger.warning("Could not create Odoo product %r (ref=%s): %s", values["name"], reference, exc)
        return None
    logger.info("Created Odoo product %d: %s (ref=%s)", product_id, values["name"], reference)
    return product_id


async def build_order_lines(odoo: OdooClient, order: dict) -> list[dict]:
    """Odoo ``sale.order.line`` values for each PrestaShop order row."""
    rows = order_rows(order)
    if not rows:
        logger.warning("PrestaShop order %s has no order rows", order.get("id"))

    lines: list[dict] = []
    for row in rows:
        reference = row.get("product_reference") or None
        name = row.get("product_name") or None
        quantity = _float(row.get("product_quantity"), 1.0) or 1.0
        unit_price = _float(
            row.get("unit_price_tax_excl")
            or row.get("unit_price_tax_incl")
            or row.get("original_product_price")
        )

        product_id = await _resolve_product(odoo, reference, name, unit_price)

        values: dict = {"product_uom_qty": quantity}
        if product_id is not None:
            values["product_id"] = product_id
        else:
            values["name"] = name or reference or DEFAULT_PRODUCT_NAME
        if unit_price > 0:
            values["price_unit"] = unit_price
        lines.append(values)
    return lines


async def sync_order(
    prestashop: PrestashopClient,
    odoo: OdooClient,
    *,
    order_id: int | None = None,
    reference: str | None = None,
    confirm: bool = False,
) -> BridgeCreated | BridgeAlreadyExists:
    """Bridge one order between two open clients.

    Raises:
        ValueError: Unless exactly one of ``order_id``/``reference`` is given.
        OrderNotFoundError: The PrestaShop order does not exist.
    """
    if (order_id is None) == (reference is None):
        raise ValueError("Provide exactly one of order_id or reference")

    order = await _fetch_order(prestashop, order_id, reference)
    ps_order_id = int(order["id"]) if order.get("id") else None
    ps_reference = order.get("reference") or None

    if ps_reference:
        existing = await _find_existing(odoo, ps_reference)
        if existing:
            logger.info(
                "Odoo order %s already exists for PrestaShop %s", existing.get("name"), ps_reference
            )
            return BridgeAlreadyExists(
                prestashop_order_id=ps_order_id,
                prestashop_reference=ps_reference,
                odoo_order_id=existing["id"],
                odoo_order_name=existing.get("name") or "",
            )
    else:
        logger.warning("PrestaShop order %s has no reference, duplicates cannot be detected", ps_order_id)

    customer_id = await ensure_customer(prestashop, odoo, order)
    lines = await build_order_lines(odoo, order)

    values: dict = {"partner_id": customer_id, "order_line": [[0, 0, v] for v in lines]}
    if ps_reference:
        values["client_order_ref"] = ps_reference
    odoo_order_id = await odoo.create("sale.order", values)
    logger.info(
        "Created Odoo sale order %d from PrestaShop %s (%d line(s))",
        odoo_order_id,
        ps_reference or ps_order_id,
        len(lines),
    )

    confirmed = False
    if confirm:
        try:
            await odoo.execute_kw("sale.order", "action_confirm", [[odoo_order_id]])
            confirmed = True
        except ConnectorError as exc:
            logger.warning("Failed to confirm Odoo sale order %d: %s", odoo_order_id, exc)

    return BridgeCreated(
        prestashop_order_id=ps_order_id,
        prestashop_reference=ps_reference,
        odoo_order_id=odoo_order_id,
        customer_id=customer_id,
        line_count=len(lines),
        confirmed=confirmed,
    )


async def sync_prestashop_order_to_odoo(
    *,
    account_id: str,
    connections: ConnectionStore,
    order_id: int | None = None,
    reference: str | None = None,
    confirm: bool = False,
) -> BridgeCreated | BridgeAlreadyExists:
    """Bridge one order using the account's stored connections.

    Raises:
        ConfigurationError: PrestaShop or Odoo is not connected for the account.
    """
    if (order_id is None) == (reference is None):
        raise ValueError("Provide exactly one of order_id or reference")

    ps_conn = connections.get_active(account_id, ConnectorKind.PRESTASHOP)
    odoo_conn = connections.get_active(account_id, ConnectorKind.ODOO)
    if not isinstance(ps_conn, PrestashopConnection):
        raise ConfigurationError("prestashop", f"PrestaShop is not connected for account {account_id}")
    if not isinstance(odoo_conn, OdooConnection):
        raise ConfigurationError("odoo", f"Odoo is not connected for account {account_id}")

    async with PrestashopClient(ps_conn) as prestashop, OdooClient(odoo_conn) as odoo:
        return await sync_order(
            prestashop, odoo, order_id=order_id, reference=reference, confirm=confirm
        )

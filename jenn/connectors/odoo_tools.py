"""Agent tools backed by an Odoo connection."""

import logging

from pydantic import BaseModel, Field, TypeAdapter

from jenn.connectors.errors import ConnectorError
from jenn.connectors.odoo import OdooClient
from jenn.llm.tools import Tool

logger = logging.getLogger(__name__)

LEAD_FIELDS = ["name", "email_from", "partner_name", "stage_id", "probability"]
PARTNER_FIELDS = ["name", "email", "phone", "mobile", "is_company", "parent_id"]
ORDER_FIELDS = ["name", "partner_id", "state", "amount_total", "date_order", "client_order_ref"]


# --- Parameters ---


class LeadListParams(BaseModel):
    limit: int = 5
    query: str | None = Field(default=None, description="Search by lead name or email")


class LeadCreateParams(BaseModel):
    name: str = Field(description="Lead name/subject")
    email_from: str | None = None
    partner_name: str | None = None
    description: str | None = None


class PartnerSearchParams(BaseModel):
    query: str = Field(description="Matched against name, email, phone or mobile")
    limit: int = 10


class SaleOrderListParams(BaseModel):
    limit: int = 5
    partner_id: int | None = Field(default=None, description="Filter by customer id")
    query: str | None = Field(default=None, description="Filter by order name")


class LineInput(BaseModel):
    product_id: int | None = None
    product: str | None = Field(default=None, description="Product name to look up")
    name: str | None = None
    qty: float = 1
    price_unit: float | None = None


_LINES = TypeAdapter(list[LineInput])

_LINES_DESCRIPTION = (
    'JSON array of lines. Each item: {"product_id"?: number, "product"?: string, '
    '"name"?: string, "qty": number, "price_unit"?: number}'
)


class SaleOrderCreateParams(BaseModel):
    partner_id: int = Field(description="Customer ID (res.partner)")
    lines_json: str = Field(description=_LINES_DESCRIPTION)
    confirm: bool = Field(default=False, description="Confirm the order after create")
    note: str | None = None


class SaleOrderConfirmParams(BaseModel):
    order_id: int = Field(description="Sale order ID")


class InvoiceCreateParams(BaseModel):
    partner_id: int = Field(description="Customer ID (res.partner)")
    lines_json: str = Field(description=_LINES_DESCRIPTION)
    post: bool = Field(default=False, description="Post the invoice after create")
    invoice_date: str | None = Field(default=None, description="ISO date")


class TaskCreateParams(BaseModel):
    name: str
    project_id: int | None = None
    description: str | None = None


# --- Helpers ---


def _compact(values: dict) -> dict:
    return {k: v for k, v in values.items() if v is not None}


def _or_domain(fields: list[str], query: str) -> list:
    """``field1 ilike q OR field2 ilike q ...`` in Odoo's prefix notation."""
    return ["|"] * (len(fields) - 1) + [[f, "ilike", query] for f in fields]


async def _line_commands(odoo: OdooClient, lines_json: str, qty_field: str) -> list:
    """Parse ``lines_json`` into one2many create commands, resolving product names."""
    lines = _LINES.validate_json(lines_json)
    commands = []
    for line in lines:
        product_id = line.product_id
        if product_id is None and line.product:
            found = await odoo.search_read(
                "product.product", [["name", "ilike", line.product]], ["name"], limit=1
            )
            if found:
                product_id = found[0]["id"]
        values: dict = {qty_field: line.qty}
        if product_id is not None:
            values["product_id"] = product_id
        elif line.name or line.product:
            values["name"] = line.name or line.product
        if line.price_unit is not None:
            values["price_unit"] = line.price_unit
        commands.append([0, 0, values])
    return commands


def build_odoo_tools(odoo: OdooClient) -> list[Tool]:
    """Tools for CRM leads, partners, sale orders, invoices and tasks."""

    async def crm_lead_list(p: LeadListParams):
        domain = _or_domain(["name", "email_from"], p.query) if p.query else []
        return await odoo.search_read("crm.lead", domain, LEAD_FIELDS, limit=p.limit)

    async def crm_lead_create(p: LeadCreateParams):
        lead_id = await odoo.create("crm.lead", _compact(p.model_dump()))
        return {"id": lead_id, "message": "Lead created successfully"}

    async def res_partner_search(p: PartnerSearchParams):
        domain = _or_domain(["name", "email", "phone", "mobile"], p.query)
        return await odoo.search_read("res.partner", domain, PARTNER_FIELDS, limit=p.limit)

    async def sale_order_list(p: SaleOrderListParams):
        domain: list = []
        if p.query:
            domain.append(["name", "ilike", p.query])
        if p.partner_id is not None:
            domain.append(["partner_id", "=", p.partner_id])
        return await odoo.search_read("sale.order", domain, ORDER_FIELDS, limit=p.limit)

    async def sale_order_create(p: SaleOrderCreateParams):
        values: dict = {
            "partner_id": p.partner_id,
            "order_line": await _line_commands(odoo, p.lines_json, "product_uom_qty"),
        }
        if p.note:
            values["note"] = p.note
        order_id = await odoo.create("sale.order", values)
        confirmed = False
        if p.confirm:
            try:
                await odoo.execute_kw("sale.order", "action_confirm", [[order_id]])
                confirmed = True
            except ConnectorError as exc:
                logger.warning("Created sale order %d but confirm failed: %s", order_id, exc)
        return {"id": order_id, "confirmed": confirmed}

    async def sale_order_confirm(p: SaleOrderConfirmParams):
        await odoo.execute_kw("sale.order", "action_confirm", [[p.order_id]])
        return {"id": p.order_id, "status": "confirmed"}

    async def invoice_create(p: InvoiceCreateParams):
        values: dict = {
            "move_type": "out_invoice",
            "partner_id": p.partner_id,
            "invoice_line_ids": await _line_commands(odoo, p.lines_json, "quantity"),
        }
        if p.invoice_date:
            values["invoice_date"] = p.invoice_date
        move_id = await odoo.create("account.move", values)
        posted = False
        if p.post:
            try:
                await odoo.execute_kw("account.move", "action_post", [[move_id]])
                posted = True
            except ConnectorError as exc:
                logger.warning("Created invoice %d but posting failed: %s", move_id, exc)
        return {"id": move_id, "posted": posted}

    async def project_task_create(p: TaskCreateParams):
        task_id = await odoo.create("project.task", _compact(p.model_dump()))
        return {"id": task_id, "message": "Task created successfully"}

    return [
        Tool("crm_lead_list", "List CRM leads from Odoo", LeadListParams, crm_lead_list),
        Tool("crm_lead_create", "Create a new CRM lead in Odoo", LeadCreateParams, crm_lead_create),
        Tool(
            "res_partner_search",
            "Search customers/companies (res.partner) by name, email, phone or mobile",
            PartnerSearchParams,
            res_partner_search,
        ),
        Tool("sale_order_list", "List sale orders", SaleOrderListParams, sale_order_list),
        Tool(
            "sale_order_create",
            "Create a quotation/order (sale.order). Optionally confirm it.",
            SaleOrderCreateParams,
            sale_order_create,
        ),
        Tool(
            "sale_order_confirm",
            "Confirm a sale order (turn quotation into order)",
            SaleOrderConfirmParams,
            sale_order_confirm,
        ),
        Tool(
            "invoice_create",
            "Create a customer invoice (account.move, out_invoice). Optionally post it.",
            InvoiceCreateParams,
            invoice_create,
        ),
        Tool("project_task_create", "Create a project task", TaskCreateParams, project_task_create),
    ]

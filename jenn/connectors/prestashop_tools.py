"""Agent tools backed by a PrestaShop connection."""

from pydantic import BaseModel, Field, model_validator

from jenn.bridge.order_bridge import sync_order
from jenn.connectors.odoo import OdooClient
from jenn.connectors.prestashop import PrestashopClient
from jenn.llm.tools import Tool


class OrderListParams(BaseModel):
    limit: int = 5
    reference: str | None = Field(default=None, description="Exact order reference")
    customer_id: int | None = None


class OrderLookupParams(BaseModel):
    order_id: int | None = Field(default=None, description="PrestaShop order ID")
    reference: str | None = Field(default=None, description="PrestaShop order reference")

    @model_validator(mode="after")
    def _exactly_one(self) -> "OrderLookupParams":
        if (self.order_id is None) == (self.reference is None):
            raise ValueError("Provide exactly one of order_id or reference")
        return self


class CustomerSearchParams(BaseModel):
    email: str | None = Field(default=None, description="Exact email address")
    name: str | None = Field(default=None, description="Partial first or last name")
    limit: int = 10


class ProductSearchParams(BaseModel):
    reference: str | None = Field(default=None, description="Partial product reference (SKU)")
    name: str | None = Field(default=None, description="Partial product name")
    limit: int = 10


class SyncOrderParams(OrderLookupParams):
    confirm: bool = Field(default=False, description="Confirm the Odoo order after creating it")


def build_prestashop_tools(
    prestashop: PrestashopClient, odoo: OdooClient | None = None
) -> list[Tool]:
    """Read tools for orders, customers and products.

    With an Odoo client, adds ``sync_order_to_odoo``.
    """

    async def order_list(p: OrderListParams):
        return await prestashop.list_orders(
            limit=p.limit, reference=p.reference, customer_id=p.customer_id
        )

    async def order_detail(p: OrderLookupParams):
        if p.order_id is not None:
            order = await prestashop.get_order(p.order_id)
        else:
            order = await prestashop.find_order_by_reference(p.reference)
        return order or {"error": "Order not found"}

    async def customer_search(p: CustomerSearchParams):
        return await prestashop.search_customers(email=p.email, name=p.name, limit=p.limit)

    async def product_search(p: ProductSearchParams):
        return await prestashop.search_products(
            reference=p.reference, name=p.name, limit=p.limit
        )

    tools = [
        Tool(
            "order_list",
            "List recent PrestaShop orders (optionally filter by reference or customer id)",
            OrderListParams,
            order_list,
        ),
        Tool(
            "order_detail",
            "Get a PrestaShop order, including its lines, by ID or reference",
            OrderLookupParams,
            order_detail,
        ),
        Tool(
            "customer_search",
            "Search PrestaShop customers by exact email or partial name",
            CustomerSearchParams,
            customer_search,
        ),
        Tool(
            "product_search",
            "Search PrestaShop products by reference (SKU) or name",
            ProductSearchParams,
            product_search,
        ),
    ]

    if odoo is not None:

        async def sync_order_to_odoo(p: SyncOrderParams):
            return await sync_order(
                prestashop, odoo, order_id=p.order_id, reference=p.reference, confirm=p.confirm
            )

        tools.append(
            Tool(
                "sync_order_to_odoo",
                "Create an Odoo sale order from a PrestaShop order. Safe to repeat: "
                "an order already synced is reported, not duplicated.",
                SyncOrderParams,
                sync_order_to_odoo,
            )
        )

    return tools

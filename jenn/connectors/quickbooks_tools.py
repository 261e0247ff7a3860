"""Agent tools backed by a QuickBooks Online connection."""

import logging

from pydantic import BaseModel, Field, TypeAdapter

from jenn.connectors.quickbooks import QuickBooksClient, escape_query_value
from jenn.llm.tools import Tool

logger = logging.getLogger(__name__)


class QbCustomerSearchParams(BaseModel):
    query: str | None = Field(default=None, description="Partial display name")
    limit: int = 5


class QbCustomerCreateParams(BaseModel):
    display_name: str
    email: str | None = None


class QbLine(BaseModel):
    description: str = ""
    amount: float


_LINES = TypeAdapter(list[QbLine])


class QbInvoiceCreateParams(BaseModel):
    customer_id: str | None = Field(default=None, description="QuickBooks customer Id")
    customer_name: str | None = Field(
        default=None, description="Display name; the customer is created if missing"
    )
    lines_json: str = Field(
        description='JSON array of lines. Each: {"description"?: string, "amount": number}'
    )
    currency: str | None = None


def build_quickbooks_tools(qb: QuickBooksClient) -> list[Tool]:
    """Customer lookup/creation and invoice creation."""

    async def find_customer(display_name: str) -> dict | None:
        result = await qb.query(
            "SELECT Id, DisplayName, PrimaryEmailAddr FROM Customer "
            f"WHERE DisplayName = '{escape_query_value(display_name)}'"
        )
        customers = result.get("Customer") or []
        return customers[0] if customers else None

    async def qb_customer_search(p: QbCustomerSearchParams):
        where = f" WHERE DisplayName LIKE '%{escape_query_value(p.query)}%'" if p.query else ""
        result = await qb.query(
            f"SELECT Id, DisplayName, PrimaryEmailAddr FROM Customer{where} "
            f"ORDERBY MetaData.CreateTime DESC MAXRESULTS {p.limit}"
        )
        return result.get("Customer") or []

    async def qb_customer_create(p: QbCustomerCreateParams):
        existing = await find_customer(p.display_name)
        if existing:
            return {"id": existing.get("Id"), "created": False}
        payload: dict = {"DisplayName": p.display_name}
        if p.email:
            payload["PrimaryEmailAddr"] = {"Address": p.email}
        customer = await qb.create_customer(payload)
        return {"id": customer.get("Id"), "created": True}

    async def qb_invoice_create(p: QbInvoiceCreateParams):
        customer_id = p.customer_id
        if customer_id is None and p.customer_name:
            customer = await find_customer(p.customer_name)
            if customer is None:
                customer = await qb.create_customer({"DisplayName": p.customer_name})
                logger.info("Created QuickBooks customer %s", p.customer_name)
            customer_id = str(customer.get("Id") or "") or None
        if not customer_id:
            return {"error": "Customer not found or created"}

        lines = _LINES.validate_json(p.lines_json)
        if not lines:
            return {"error": "No lines to invoice"}

        payload: dict = {
            "CustomerRef": {"value": customer_id},
            "Line": [
                {
                    "DetailType": "DescriptionOnly",
                    "Amount": line.amount,
                    "Description": line.description,
                    "DescriptionLineDetail": {},
                }
                for line in lines
            ],
        }
        if p.currency:
            payload["CurrencyRef"] = {"value": p.currency}
        invoice = await qb.create_invoice(payload)
        return {
            "id": invoice.get("Id"),
            "doc_number": invoice.get("DocNumber"),
            "total": invoice.get("TotalAmt"),
        }

    return [
        Tool(
            "qb_customer_search",
            "Search QuickBooks customers by display name",
            QbCustomerSearchParams,
            qb_customer_search,
        ),
        Tool(
            "qb_customer_create",
            "Create a QuickBooks customer (returns the existing one if the name is taken)",
            QbCustomerCreateParams,
            qb_customer_create,
        ),
        Tool(
            "qb_invoice_create",
            "Create a QuickBooks invoice with description-only lines",
            QbInvoiceCreateParams,
            qb_invoice_create,
        ),
    ]

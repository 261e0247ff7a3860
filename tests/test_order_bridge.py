"""Tests for the PrestaShop -> Odoo order bridge (jenn/bridge/order_bridge.py).

Both systems are replaced by small in-memory fakes that understand the
handful of Odoo domain operators the bridge uses.
"""

import os
from unittest.mock import patch

import pytest

from jenn.bridge.order_bridge import (
    build_order_lines,
    ensure_customer,
    sync_order,
    sync_prestashop_order_to_odoo,
)
from jenn.connectors.errors import ConfigurationError, ConnectorError, OrderNotFoundError
from jenn.connectors.store import ConnectionStore
from jenn.schemas.connectors import (
    BridgeAlreadyExists,
    BridgeCreated,
    OdooConnection,
    PrestashopConnection,
)

# --- Fakes ---


def _match(record: dict, clause: list) -> bool:
    field, op, value = clause
    actual = record.get(field)
    if op == "=":
        return actual == value
    if op == "=ilike":
        return isinstance(actual, str) and actual.lower() == value.lower()
    if op == "ilike":
        return isinstance(actual, str) and value.lower() in actual.lower()
    raise AssertionError(f"unsupported operator {op}")


class FakeOdoo:
    def __init__(self, fail_create: set[str] = frozenset(), fail_confirm: bool = False):
        self.records: dict[str, list[dict]] = {}
        self.fail_create = fail_create
        self.fail_confirm = fail_confirm
        self.confirmed: list[int] = []
        self._next_id = 100

    def seed(self, model: str, **values) -> int:
        self._next_id += 1
        self.records.setdefault(model, []).append({"id": self._next_id, **values})
        return self._next_id

    async def search_read(self, model, domain=None, fields=None, limit=10):
        found = [r for r in self.records.get(model, []) if all(_match(r, c) for c in domain or [])]
        return found[:limit]

    async def create(self, model, values):
        if model in self.fail_create:
            raise ConnectorError("odoo", f"cannot create {model}")
        return self.seed(model, **values)

    async def execute_kw(self, model, method, args=None, kwargs=None):
        if method == "action_confirm":
            if self.fail_confirm:
                raise ConnectorError("odoo", "Missing warehouse")
            self.confirmed.extend(args[0])
            return True
        raise AssertionError(f"unexpected call {model}.{method}")

    def orders(self) -> list[dict]:
        return self.records.get("sale.order", [])


class FakePrestashop:
    def __init__(self, orders=None, customers=None):
        self.orders = orders or {}
        self.customers = customers or {}

    async def get_order(self, order_id):
        return self.orders.get(order_id)

    async def find_order_by_reference(self, reference):
        return next((o for o in self.orders.values() if o.get("reference") == reference), None)

    async def get_customer(self, customer_id):
        return self.customers.get(customer_id)


def _order(order_id=5, reference="XKBKNABJK", rows=None, customer_id=7) -> dict:
    if rows is None:
        rows = [
            {
                "product_reference": "TEA-GREEN",
                "product_name": "Green tea 100g",
                "product_quantity": "2",
                "unit_price_tax_excl": "4.50",
            },
            {
                "product_reference": "",
                "product_name": "Gift wrap",
                "product_quantity": "1",
                "unit_price_tax_incl": "1.20",
            },
        ]
    return {
        "id": order_id,
        "reference": reference,
        "id_customer": customer_id,
        "associations": {"order_rows": rows},
    }


def _shop(order=None) -> FakePrestashop:
    order = order or _order()
    return FakePrestashop(
        orders={order["id"]: order},
        customers={7: {"id": 7, "email": "Jane@Example.com", "firstname": "Jane", "lastname": "Doe"}},
    )


# --- sync_order ---


class TestSyncOrder:
    async def test_creates_order_with_reference(self):
        odoo = FakeOdoo()

        result = await sync_order(_shop(), odoo, order_id=5)

        assert isinstance(result, BridgeCreated)
        assert result.prestashop_reference == "XKBKNABJK"
        assert result.line_count == 2
        assert result.confirmed is False
        [order] = odoo.orders()
        assert order["client_order_ref"] == "XKBKNABJK"
        assert order["partner_id"] == result.customer_id
        lines = [cmd[2] for cmd in order["order_line"]]
        assert lines[0]["product_uom_qty"] == 2.0
        assert lines[0]["price_unit"] == 4.5

    async def test_second_run_reports_existing_order(self):
        odoo = FakeOdoo()
        shop = _shop()

        first = await sync_order(shop, odoo, order_id=5)
        partners_after_first = len(odoo.records["res.partner"])
        second = await sync_order(shop, odoo, reference="XKBKNABJK")

        assert isinstance(second, BridgeAlreadyExists)
        assert second.odoo_order_id == first.odoo_order_id
        assert len(odoo.orders()) == 1
        assert len(odoo.records["res.partner"]) == partners_after_first

    async def test_existing_order_short_circuits_resolution(self):
        odoo = FakeOdoo()
        odoo.seed("sale.order", name="S00042", client_order_ref="XKBKNABJK")

        result = await sync_order(_shop(), odoo, order_id=5)

        assert isinstance(result, BridgeAlreadyExists)
        assert result.odoo_order_name == "S00042"
        assert "res.partner" not in odoo.records
        assert "product.product" not in odoo.records

    async def test_confirm(self):
        odoo = FakeOdoo()
        result = await sync_order(_shop(), odoo, order_id=5, confirm=True)
        assert result.confirmed is True
        assert odoo.confirmed == [result.odoo_order_id]

    async def test_confirm_failure_keeps_the_order(self):
        odoo = FakeOdoo(fail_confirm=True)

        result = await sync_order(_shop(), odoo, order_id=5, confirm=True)

        assert isinstance(result, BridgeCreated)
        assert result.confirmed is False
        assert len(odoo.orders()) == 1

    async def test_unknown_order(self):
        with pytest.raises(OrderNotFoundError):
            await sync_order(_shop(), FakeOdoo(), order_id=999)

    @pytest.mark.parametrize("kwargs", [{}, {"order_id": 5, "reference": "XKBKNABJK"}])
    async def test_exactly_one_identifier(self, kwargs):
        with pytest.raises(ValueError):
            await sync_order(_shop(), FakeOdoo(), **kwargs)

    async def test_order_without_reference_is_created(self):
        odoo = FakeOdoo()
        result = await sync_order(_shop(_order(reference="")), odoo, order_id=5)
        assert isinstance(result, BridgeCreated)
        assert "client_order_ref" not in odoo.orders()[0]


# --- Customers ---


class TestEnsureCustomer:
    async def test_matches_email_case_insensitively(self):
        odoo = FakeOdoo()
        partner_id = odoo.seed("res.partner", name="J. Doe", email="jane@example.com")

        assert await ensure_customer(_shop(), odoo, _order()) == partner_id

    async def test_falls_back_to_name(self):
        odoo = FakeOdoo()
        partner_id = odoo.seed("res.partner", name="Jane Doe", email="other@example.com")

        assert await ensure_customer(_shop(), odoo, _order()) == partner_id

    async def test_creates_partner(self):
        odoo = FakeOdoo()

        partner_id = await ensure_customer(_shop(), odoo, _order())

        [partner] = odoo.records["res.partner"]
        assert partner["id"] == partner_id
        assert partner["name"] == "Jane Doe"
        assert partner["email"] == "Jane@Example.com"

    async def test_missing_customer_id(self):
        with pytest.raises(ConnectorError):
            await ensure_customer(_shop(), FakeOdoo(), _order(customer_id=None))


# --- Lines ---


class TestBuildOrderLines:
    async def test_resolves_product_by_reference_then_name(self):
        odoo = FakeOdoo()
        tea = odoo.seed("product.product", name="Tea", default_code="TEA-GREEN")
        wrap = odoo.seed("product.product", name="Gift wrap (red)")

        lines = await build_order_lines(odoo, _order())

        assert [line["product_id"] for line in lines] == [tea, wrap]
        assert lines[1]["price_unit"] == 1.2

    async def test_creates_missing_products(self):
        odoo = FakeOdoo()

        await build_order_lines(odoo, _order())

        created = odoo.records["product.product"]
        assert created[0]["default_code"] == "TEA-GREEN"
        assert created[0]["list_price"] == 4.5
        assert created[1]["name"] == "Gift wrap"
        assert "default_code" not in created[1]

    async def test_product_creation_failure_keeps_free_text_line(self):
        odoo = FakeOdoo(fail_create={"product.product"})

        lines = await build_order_lines(odoo, _order())

        assert lines[0] == {"product_uom_qty": 2.0, "name": "Green tea 100g", "price_unit": 4.5}

    async def test_single_row_shape(self):
        order = _order()
        order["associations"] = {
            "order_rows": {"order_row": {"product_name": "Mug", "product_quantity": "0"}}
        }

        lines = await build_order_lines(FakeOdoo(), order)

        assert len(lines) == 1
        assert lines[0]["product_uom_qty"] == 1.0
        assert "price_unit" not in lines[0]


# --- Stored connections ---


class TestSyncFromStoredConnections:
    @pytest.fixture
    def store(self, tmp_path):
        s = ConnectionStore(tmp_path / "connections.db", os.urandom(32))
        yield s
        s.close()

    async def test_missing_connection(self, store):
        store.save("acc_1", PrestashopConnection(base_url="https://shop.example", api_key="K"))

        with pytest.raises(ConfigurationError) as exc_info:
            await sync_prestashop_order_to_odoo(account_id="acc_1", connections=store, order_id=5)

        assert exc_info.value.connector == "odoo"

    async def test_opens_clients_and_syncs(self, store):
        store.save("acc_1", PrestashopConnection(base_url="https://shop.example/api/", api_key="K"))
        store.save(
            "acc_1",
            OdooConnection(url="https://odoo.example", db="prod", username="bot", password="pw"),
        )
        shop, odoo = _shop(), FakeOdoo()

        class _Async:
            def __init__(self, inner):
                self.inner = inner

            async def __aenter__(self):
                return self.inner

            async def __aexit__(self, *exc):
                return None

        with (
            patch("jenn.bridge.order_bridge.PrestashopClient", return_value=_Async(shop)) as ps_cls,
            patch("jenn.bridge.order_bridge.OdooClient", return_value=_Async(odoo)) as odoo_cls,
        ):
            result = await sync_prestashop_order_to_odoo(
                account_id="acc_1", connections=store, reference="XKBKNABJK", confirm=True
            )

        assert isinstance(result, BridgeCreated)
        assert result.confirmed is True
        assert ps_cls.call_args.args[0].api_key == "K"
        assert odoo_cls.call_args.args[0].db == "prod"

"""Tests for the encrypted connection store (jenn/connectors/store.py)."""

import base64
import os
import sqlite3

import pytest

from jenn.connectors.errors import ConfigurationError
from jenn.connectors.store import ConnectionStore, decode_key, generate_key
from jenn.schemas.connectors import (
    ConnectorKind,
    OdooConnection,
    PrestashopConnection,
    QuickBooksConnection,
)

ODOO = OdooConnection(url="https://odoo.example", db="prod", username="bot", password="s3cret")
SHOP = PrestashopConnection(base_url="https://shop.example", api_key="WSKEY")


@pytest.fixture
def key():
    return os.urandom(32)


@pytest.fixture
def store(tmp_path, key):
    s = ConnectionStore(tmp_path / "connections.db", key)
    yield s
    s.close()


class TestKeys:
    def test_generate_and_decode(self):
        assert len(decode_key(generate_key())) == 32

    def test_rejects_short_key(self):
        with pytest.raises(ValueError, match="32 bytes"):
            decode_key(base64.b64encode(b"short").decode())

    def test_rejects_non_base64(self):
        with pytest.raises(ValueError, match="base64"):
            decode_key("not base64!!")

    def test_store_rejects_bad_key_length(self, tmp_path):
        with pytest.raises(ValueError):
            ConnectionStore(tmp_path / "c.db", b"x" * 16)


class TestConnectionStore:
    def test_round_trip_is_typed(self, store):
        store.save("acc_1", ODOO)

        loaded = store.get_active("acc_1", ConnectorKind.ODOO)

        assert isinstance(loaded, OdooConnection)
        assert loaded == ODOO

    def test_credentials_are_not_stored_in_clear(self, store, tmp_path):
        store.save("acc_1", ODOO)
        for path in tmp_path.glob("connections.db*"):
            assert b"s3cret" not in path.read_bytes()

    def test_missing_connection_is_none(self, store):
        assert store.get_active("acc_1", ConnectorKind.QUICKBOOKS) is None

    def test_save_replaces(self, store):
        store.save("acc_1", SHOP)
        store.save("acc_1", PrestashopConnection(base_url="https://new.example", api_key="NEW"))

        loaded = store.get_active("acc_1", ConnectorKind.PRESTASHOP)

        assert loaded.api_key == "NEW"
        assert len(store.list_for_account("acc_1")) == 1

    def test_list_active_and_deactivate(self, store):
        store.save("acc_1", ODOO)
        store.save("acc_1", SHOP)
        store.save("acc_2", QuickBooksConnection(access_token="t", realm_id="1"))

        assert {c.kind for c in store.list_active("acc_1")} == {"odoo", "prestashop"}

        assert store.deactivate("acc_1", ConnectorKind.ODOO) is True
        assert store.get_active("acc_1", ConnectorKind.ODOO) is None
        assert [c.kind for c in store.list_active("acc_1")] == ["prestashop"]
        stored = {s.connection.kind: s.is_active for s in store.list_for_account("acc_1")}
        assert stored == {"odoo": False, "prestashop": True}

    def test_save_reactivates(self, store):
        store.save("acc_1", ODOO)
        store.deactivate("acc_1", ConnectorKind.ODOO)
        store.save("acc_1", ODOO)
        assert store.get_active("acc_1", ConnectorKind.ODOO) == ODOO

    def test_delete(self, store):
        store.save("acc_1", ODOO)
        assert store.delete("acc_1", ConnectorKind.ODOO) is True
        assert store.delete("acc_1", ConnectorKind.ODOO) is False

    def test_wrong_key_is_a_configuration_error(self, tmp_path, key):
        path = tmp_path / "connections.db"
        with ConnectionStore(path, key) as first:
            first.save("acc_1", ODOO)

        with ConnectionStore(path, os.urandom(32)) as second:
            with pytest.raises(ConfigurationError):
                second.get_active("acc_1", ConnectorKind.ODOO)
            assert second.list_active("acc_1") == []

    def test_blob_cannot_move_to_another_account(self, store, tmp_path):
        store.save("acc_1", ODOO)
        conn = sqlite3.connect(tmp_path / "connections.db")
        conn.execute("UPDATE connections SET account_id = 'acc_2'")
        conn.commit()
        conn.close()

        with pytest.raises(ConfigurationError):
            store.get_active("acc_2", ConnectorKind.ODOO)

"""Tests for the Jenn CLI entry point."""

from unittest.mock import AsyncMock, patch

import click.testing
import pytest

from jenn.audit.error_notices import ErrorNoticeStore
from jenn.audit.usage_log import UsageLog
from jenn.cli import cli
from jenn.connectors.store import ConnectionStore, decode_key, generate_key
from jenn.schemas.connectors import (
    BridgeAlreadyExists,
    ConnectorKind,
    OdooConnection,
    PrestashopConnection,
)
from jenn.schemas.llm import ErrorType, Usage
from jenn.schemas.mail import MailAccountConfig, MessagePreview, SyncSummary


@pytest.fixture()
def runner():
    return click.testing.CliRunner()


@pytest.fixture()
def paths(tmp_path, monkeypatch):
    """Point every CLI storage path at tmp_path."""
    p = {
        "cursors": tmp_path / "cursors.db",
        "usage": tmp_path / "usage.jsonl",
        "notices": tmp_path / "notices.db",
        "connections": tmp_path / "connections.db",
    }
    monkeypatch.setattr("jenn.cli.CURSOR_DB_PATH", str(p["cursors"]))
    monkeypatch.setattr("jenn.cli.USAGE_LOG_PATH", str(p["usage"]))
    monkeypatch.setattr("jenn.cli.ERROR_NOTICE_DB_PATH", str(p["notices"]))
    monkeypatch.setattr("jenn.cli.CONNECTION_DB_PATH", str(p["connections"]))
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", "")
    monkeypatch.setattr("jenn.cli.PRIMARY_MODEL", "ollama:llama3.1:8b")
    monkeypatch.setattr("jenn.cli.BACKUP_MODEL", "")
    monkeypatch.setattr("jenn.cli.FALLBACK_MODELS", [])
    return p


def _account() -> MailAccountConfig:
    return MailAccountConfig(
        id="acc_1", name="Shop", server="imap.example.com", email="shop@example.com", password="x"
    )


# ------------------------------------------------------------------
# jenn usage
# ------------------------------------------------------------------


def test_usage_empty(runner, paths):
    result = runner.invoke(cli, ["usage"])
    assert result.exit_code == 0
    assert "No usage in the last 30 day(s)." in result.output


def test_usage_summary(runner, paths):
    log = UsageLog(paths["usage"])
    log.record(
        account_email="shop@example.com",
        provider="ollama",
        model="llama3.1:8b",
        label="Draft reply",
        usage=Usage(prompt_tokens=100, completion_tokens=20),
    )

    result = runner.invoke(cli, ["usage", "--account", "shop@example.com"])

    assert result.exit_code == 0
    assert "ollama/llama3.1:8b" in result.output
    assert "120 tokens" in result.output


# ------------------------------------------------------------------
# jenn errors
# ------------------------------------------------------------------


def test_errors_list_and_clear(runner, paths):
    with ErrorNoticeStore(paths["notices"]) as notices:
        notices.add("shop@example.com", ErrorType.INCORRECT_API_KEY, "Fix your OpenAI key")

    result = runner.invoke(cli, ["errors", "shop@example.com", "--clear"])

    assert result.exit_code == 0
    assert "incorrect_api_key: Fix your OpenAI key" in result.output
    assert "Cleared 1 notice(s)." in result.output
    with ErrorNoticeStore(paths["notices"]) as notices:
        assert notices.list_for_account("shop@example.com") == []


def test_errors_none(runner, paths):
    result = runner.invoke(cli, ["errors", "shop@example.com"])
    assert result.exit_code == 0
    assert "No error notices." in result.output


# ------------------------------------------------------------------
# jenn connect
# ------------------------------------------------------------------


def test_connect_without_key_suggests_one(runner, paths):
    result = runner.invoke(
        cli,
        ["connect", "prestashop", "acc_1", "--base-url", "https://shop.example"],
        input="WSKEY\n",
    )
    assert result.exit_code != 0
    assert "JENN_CREDENTIAL_KEY is not set" in result.output


def test_connect_saves_encrypted_connection(runner, paths, monkeypatch):
    key = generate_key()
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", key)

    result = runner.invoke(
        cli,
        [
            "connect",
            "odoo",
            "acc_1",
            "--url",
            "https://odoo.example",
            "--db",
            "prod",
            "--username",
            "bot",
        ],
        input="s3cret\n",
    )

    assert result.exit_code == 0, result.output
    assert "Saved odoo connection for acc_1." in result.output
    with ConnectionStore(paths["connections"], decode_key(key)) as store:
        saved = store.get_active("acc_1", ConnectorKind.ODOO)
    assert saved == OdooConnection(
        url="https://odoo.example", db="prod", username="bot", password="s3cret"
    )


def test_connect_missing_options(runner, paths, monkeypatch):
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", generate_key())

    result = runner.invoke(cli, ["connect", "odoo", "acc_1", "--url", "https://odoo.example"], input="pw\n")

    assert result.exit_code != 0
    assert "Missing or invalid options for odoo" in result.output
    assert "db" in result.output


# ------------------------------------------------------------------
# jenn connections
# ------------------------------------------------------------------


def _save_connections(path, key: str) -> None:
    with ConnectionStore(path, decode_key(key)) as store:
        store.save("acc_1", PrestashopConnection(base_url="https://shop.example", api_key="K"))
        store.save(
            "acc_1",
            OdooConnection(url="https://odoo.example", db="prod", username="bot", password="pw"),
        )


def test_connections_lists_stored_systems(runner, paths, monkeypatch):
    key = generate_key()
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", key)
    _save_connections(paths["connections"], key)

    result = runner.invoke(cli, ["connections", "acc_1"])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0].startswith("odoo")
    assert lines[1].startswith("prestashop")
    assert all("active" in line and "inactive" not in line for line in lines)


def test_connections_none(runner, paths, monkeypatch):
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", generate_key())

    result = runner.invoke(cli, ["connections", "acc_1"])

    assert result.exit_code == 0
    assert "No connections for acc_1." in result.output


def test_connections_deactivate(runner, paths, monkeypatch):
    key = generate_key()
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", key)
    _save_connections(paths["connections"], key)

    result = runner.invoke(cli, ["connections", "acc_1", "--deactivate", "odoo"])

    assert result.exit_code == 0, result.output
    assert "Deactivated odoo connection for acc_1." in result.output
    with ConnectionStore(paths["connections"], decode_key(key)) as store:
        assert store.get_active("acc_1", ConnectorKind.ODOO) is None
        assert store.get_active("acc_1", ConnectorKind.PRESTASHOP) is not None

    listing = runner.invoke(cli, ["connections", "acc_1"])
    assert "inactive" in listing.output.splitlines()[0]


def test_connections_remove(runner, paths, monkeypatch):
    key = generate_key()
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", key)
    _save_connections(paths["connections"], key)

    result = runner.invoke(cli, ["connections", "acc_1", "--remove", "prestashop"])

    assert result.exit_code == 0, result.output
    assert "Removed prestashop connection for acc_1." in result.output
    with ConnectionStore(paths["connections"], decode_key(key)) as store:
        assert [s.connection.kind for s in store.list_for_account("acc_1")] == ["odoo"]


def test_connections_remove_missing_exits_nonzero(runner, paths, monkeypatch):
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", generate_key())

    result = runner.invoke(cli, ["connections", "acc_1", "--remove", "quickbooks"])

    assert result.exit_code != 0
    assert "No quickbooks connection for acc_1." in result.output


def test_connections_unreadable_with_wrong_key(runner, paths, monkeypatch):
    _save_connections(paths["connections"], generate_key())
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", generate_key())

    result = runner.invoke(cli, ["connections", "acc_1"])

    assert result.exit_code != 0
    assert "reconnect it" in result.output


# ------------------------------------------------------------------
# jenn bridge-order
# ------------------------------------------------------------------


def test_bridge_order_requires_one_identifier(runner, paths):
    result = runner.invoke(cli, ["bridge-order", "acc_1"])
    assert result.exit_code != 0
    assert "exactly one of --order-id or --reference" in result.output


def test_bridge_order_reports_missing_connection(runner, paths, monkeypatch):
    key = generate_key()
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", key)
    with ConnectionStore(paths["connections"], decode_key(key)) as store:
        store.save("acc_1", PrestashopConnection(base_url="https://shop.example", api_key="K"))

    result = runner.invoke(cli, ["bridge-order", "acc_1", "--order-id", "5"])

    assert result.exit_code != 0
    assert "Odoo is not connected" in result.output


def test_bridge_order_already_exists(runner, paths, monkeypatch):
    monkeypatch.setattr("jenn.cli.CREDENTIAL_KEY", generate_key())
    existing = BridgeAlreadyExists(
        prestashop_order_id=5,
        prestashop_reference="XKBKNABJK",
        odoo_order_id=42,
        odoo_order_name="S00042",
    )

    with patch(
        "jenn.bridge.order_bridge.sync_prestashop_order_to_odoo",
        new_callable=AsyncMock,
        return_value=existing,
    ) as mock_bridge:
        result = runner.invoke(cli, ["bridge-order", "acc_1", "--reference", "XKBKNABJK"])

    assert result.exit_code == 0, result.output
    assert "Already in Odoo: S00042 (id 42)" in result.output
    assert mock_bridge.call_args.kwargs["reference"] == "XKBKNABJK"


# ------------------------------------------------------------------
# jenn sync / sync-now
# ------------------------------------------------------------------


def test_sync_without_accounts(runner, paths, monkeypatch):
    monkeypatch.setattr("jenn.cli.load_accounts", lambda: [])
    result = runner.invoke(cli, ["sync"])
    assert result.exit_code == 0
    assert "No mailboxes configured." in result.output


def test_sync_now_unknown_account(runner, paths, monkeypatch):
    monkeypatch.setattr("jenn.cli.load_accounts", lambda: [_account()])
    result = runner.invoke(cli, ["sync-now", "other@example.com"])
    assert result.exit_code != 0
    assert "No mailbox configured for other@example.com" in result.output


def test_sync_now_prints_summary(runner, paths, monkeypatch):
    monkeypatch.setattr("jenn.cli.load_accounts", lambda: [_account()])
    summary = SyncSummary(
        message="Synced 1 new message(s)",
        count=1,
        processed=1,
        last_uid=12,
        messages=[MessagePreview(id="12", subject="Order question", from_address="jane@example.com")],
    )

    with patch("jenn.sync.mail_sync.sync_now", new_callable=AsyncMock, return_value=summary) as mock_sync:
        result = runner.invoke(cli, ["sync-now", "shop@example.com"])

    assert result.exit_code == 0, result.output
    assert "Synced 1 new message(s)" in result.output
    assert "[12] Order question  <jane@example.com>" in result.output
    assert mock_sync.call_args.kwargs["limit"] == 100


def test_sync_now_conflict_exits_nonzero(runner, paths, monkeypatch):
    monkeypatch.setattr("jenn.cli.load_accounts", lambda: [_account()])
    summary = SyncSummary(success=False, message="Another sync is already running for this mailbox")

    with patch("jenn.sync.mail_sync.sync_now", new_callable=AsyncMock, return_value=summary):
        result = runner.invoke(cli, ["sync-now", "shop@example.com"])

    assert result.exit_code != 0
    assert "already running" in result.output


def test_sync_now_connection_failure_exits_nonzero(runner, paths, monkeypatch):
    monkeypatch.setattr("jenn.cli.load_accounts", lambda: [_account()])

    with patch(
        "jenn.integrations.imap.ImapClient.__aenter__",
        new_callable=AsyncMock,
        side_effect=ConnectionRefusedError("imap down"),
    ):
        result = runner.invoke(cli, ["sync-now", "shop@example.com"])

    assert result.exit_code != 0
    assert "Sync failed: imap down" in result.output
    assert not isinstance(result.exception, ConnectionRefusedError)

"""CLI entry point for Jenn.

Commands:
    jenn sync           — sync every configured mailbox (scheduled run)
    jenn sync-now       — sync one mailbox now and print a summary
    jenn bridge-order   — copy a PrestaShop order into Odoo
    jenn connect        — store encrypted credentials for a business system
    jenn connections    — list, deactivate or remove stored connections
    jenn usage          — token usage per model
    jenn errors         — list or clear account error notices
"""

import asyncio
import logging
import sys
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import UTC, datetime, timedelta

import click

from jenn.config import (
    ANTHROPIC_API_KEY,
    BACKUP_MODEL,
    CONNECTION_DB_PATH,
    CREDENTIAL_KEY,
    CURSOR_DB_PATH,
    ERROR_NOTICE_DB_PATH,
    FALLBACK_MODELS,
    LLM_MAX_RETRIES,
    LLM_TIMEOUT_S,
    OLLAMA_BASE_URL,
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
    PRIMARY_MODEL,
    SYNC_BATCH_LIMIT,
    SYNC_NOW_LIMIT,
    USAGE_LOG_PATH,
    load_accounts,
)

logger = logging.getLogger("jenn")


def _credential_key() -> bytes:
    """Decode the connection encryption key, or exit with a hint."""
    from jenn.connectors.store import decode_key, generate_key

    if not CREDENTIAL_KEY:
        click.echo("Error: JENN_CREDENTIAL_KEY is not set.", err=True)
        click.echo(f"Generate one and add it to secrets/jenn.env, e.g.: {generate_key()}", err=True)
        sys.exit(1)
    try:
        return decode_key(CREDENTIAL_KEY)
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _model_options():
    from jenn.llm.providers import ProviderSettings, build_model_options

    settings = ProviderSettings(
        ollama_base_url=OLLAMA_BASE_URL,
        openai_base_url=OPENAI_BASE_URL,
        openai_api_key=OPENAI_API_KEY,
        anthropic_api_key=ANTHROPIC_API_KEY,
        timeout_s=LLM_TIMEOUT_S,
        max_retries=LLM_MAX_RETRIES,
    )
    try:
        return build_model_options(
            PRIMARY_MODEL, settings, backup=BACKUP_MODEL or None, fallbacks=FALLBACK_MODELS
        )
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@asynccontextmanager
async def _pipeline(options, key: bytes | None):
    """A RulePipeline wired to the configured models, logs and connections.

    Without a credential key the business agent gets no tools. Model
    adapters and stores are closed on exit.
    """
    from jenn.audit.error_notices import ErrorNoticeStore
    from jenn.audit.usage_log import UsageLog
    from jenn.connectors.registry import build_agent_tools
    from jenn.connectors.store import ConnectionStore
    from jenn.llm.router import LLMRouter
    from jenn.sync.pipeline import RulePipeline

    usage_log = UsageLog(USAGE_LOG_PATH)

    async with AsyncExitStack() as stack:
        models = [options.model, options.backup_model, *(t.model for t in options.fallbacks)]
        for model in filter(None, models):
            await stack.enter_async_context(model)
        notices = stack.enter_context(ErrorNoticeStore(ERROR_NOTICE_DB_PATH))

        agent_tools = None
        if key is not None:
            connections = stack.enter_context(ConnectionStore(CONNECTION_DB_PATH, key))

            def agent_tools(account_id: str):
                return build_agent_tools(connections.list_active(account_id))
        else:
            logger.info("JENN_CREDENTIAL_KEY not set; business agent has no tools")

        def router_factory(account, label: str) -> LLMRouter:
            return LLMRouter(
                account=account,
                label=label,
                model_options=options,
                usage_log=usage_log,
                error_notices=notices,
            )

        yield RulePipeline(router_factory=router_factory, agent_tools=agent_tools)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Jenn: mail automation with model fallback and business-system tools."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# ------------------------------------------------------------------
# jenn sync / sync-now
# ------------------------------------------------------------------


@cli.command()
@click.option(
    "--contiguous",
    is_flag=True,
    help="Stop the watermark before the first failed message so it is retried.",
)
def sync(contiguous: bool) -> None:
    """Sync every configured mailbox (run from cron)."""
    from jenn.schemas.mail import WatermarkPolicy

    accounts = load_accounts()
    if not accounts:
        click.echo("No mailboxes configured.")
        return

    policy = WatermarkPolicy.CONTIGUOUS_SUCCESS if contiguous else WatermarkPolicy.MAX_SEEN
    key = _credential_key() if CREDENTIAL_KEY else None
    results = asyncio.run(_sync_async(accounts, _model_options(), key, policy))

    for r in results:
        if r.no_new_messages:
            click.echo(f"{r.mailbox}: no new messages (UID {r.new_watermark})")
        else:
            click.echo(
                f"{r.mailbox}: {r.fetched} fetched, {r.processed} processed, "
                f"{r.failed} failed, UID {r.previous_watermark} -> {r.new_watermark}"
            )
    failed = len(accounts) - len(results)
    if failed:
        click.echo(f"{failed} mailbox(es) failed; see log.", err=True)


async def _sync_async(accounts, options, key, policy):
    from jenn.sync.cursor_store import CursorStore
    from jenn.sync.mail_sync import sync_all_mailboxes

    with CursorStore(CURSOR_DB_PATH) as cursors:
        async with _pipeline(options, key) as pipeline:
            return await sync_all_mailboxes(
                accounts, cursors, pipeline, limit=SYNC_BATCH_LIMIT, policy=policy
            )


@cli.command("sync-now")
@click.argument("account_email")
def sync_now_cmd(account_email: str) -> None:
    """Sync one mailbox now and print what was found."""
    account = next((a for a in load_accounts() if a.email == account_email), None)
    if account is None:
        click.echo(f"Error: No mailbox configured for {account_email}", err=True)
        sys.exit(1)

    key = _credential_key() if CREDENTIAL_KEY else None
    summary = asyncio.run(_sync_now_async(account, _model_options(), key))

    click.echo(summary.message)
    if not summary.success:
        sys.exit(1)
    for msg in summary.messages:
        click.echo(f"  [{msg.id}] {msg.subject}  <{msg.from_address}>")
    if summary.count:
        click.echo(f"Processed {summary.processed}/{summary.count}; last UID {summary.last_uid}")


async def _sync_now_async(account, options, key):
    from jenn.sync.cursor_store import CursorStore
    from jenn.sync.mail_sync import sync_now

    with CursorStore(CURSOR_DB_PATH) as cursors:
        async with _pipeline(options, key) as pipeline:
            return await sync_now(account, cursors, pipeline, limit=SYNC_NOW_LIMIT)


# ------------------------------------------------------------------
# jenn bridge-order
# ------------------------------------------------------------------


@cli.command("bridge-order")
@click.argument("account_id")
@click.option("--order-id", type=int, default=None, help="PrestaShop order ID.")
@click.option("--reference", default=None, help="PrestaShop order reference.")
@click.option("--confirm", is_flag=True, help="Confirm the Odoo order after creating it.")
def bridge_order(account_id: str, order_id: int | None, reference: str | None, confirm: bool) -> None:
    """Create an Odoo sale order from a PrestaShop order."""
    from jenn.connectors.errors import ConnectorError

    if (order_id is None) == (reference is None):
        click.echo("Error: Pass exactly one of --order-id or --reference.", err=True)
        sys.exit(1)

    key = _credential_key()
    try:
        result = asyncio.run(_bridge_async(account_id, key, order_id, reference, confirm))
    except ConnectorError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if result.status == "already_exists":
        click.echo(
            f"Already in Odoo: {result.odoo_order_name} (id {result.odoo_order_id}) "
            f"for PrestaShop {result.prestashop_reference}"
        )
    else:
        click.echo(
            f"Created Odoo order {result.odoo_order_id} for PrestaShop "
            f"{result.prestashop_reference or result.prestashop_order_id}: "
            f"{result.line_count} line(s), customer {result.customer_id}"
            + (", confirmed" if result.confirmed else "")
        )


async def _bridge_async(account_id, key, order_id, reference, confirm):
    from jenn.bridge.order_bridge import sync_prestashop_order_to_odoo
    from jenn.connectors.store import ConnectionStore

    with ConnectionStore(CONNECTION_DB_PATH, key) as store:
        return await sync_prestashop_order_to_odoo(
            account_id=account_id,
            connections=store,
            order_id=order_id,
            reference=reference,
            confirm=confirm,
        )


# ------------------------------------------------------------------
# jenn connect
# ------------------------------------------------------------------


@cli.command()
@click.argument("kind", type=click.Choice(["odoo", "prestashop", "quickbooks"]))
@click.argument("account_id")
@click.option("--url", help="Odoo URL.")
@click.option("--db", help="Odoo database.")
@click.option("--username", help="Odoo username.")
@click.option("--base-url", help="PrestaShop shop or webservice URL.")
@click.option("--realm-id", help="QuickBooks company (realm) id.")
def connect(
    kind: str,
    account_id: str,
    url: str | None,
    db: str | None,
    username: str | None,
    base_url: str | None,
    realm_id: str | None,
) -> None:
    """Store encrypted credentials for a business system.

    The secret (password, API key or access token) is prompted for.
    """
    from pydantic import ValidationError

    from jenn.connectors.store import ConnectionStore
    from jenn.schemas.connectors import CONNECTION_ADAPTER

    secret = click.prompt("Secret", hide_input=True)
    fields = {
        "odoo": {"url": url, "db": db, "username": username, "password": secret},
        "prestashop": {"base_url": base_url, "api_key": secret},
        "quickbooks": {"realm_id": realm_id, "access_token": secret},
    }[kind]

    try:
        connection = CONNECTION_ADAPTER.validate_python(
            {"kind": kind, **{k: v for k, v in fields.items() if v is not None}}
        )
    except ValidationError as exc:
        missing = ", ".join(str(e["loc"][-1]) for e in exc.errors())
        click.echo(f"Error: Missing or invalid options for {kind}: {missing}", err=True)
        sys.exit(1)

    with ConnectionStore(CONNECTION_DB_PATH, _credential_key()) as store:
        store.save(account_id, connection)
    click.echo(f"Saved {kind} connection for {account_id}.")


_KINDS = click.Choice(["odoo", "prestashop", "quickbooks"])


@cli.command()
@click.argument("account_id")
@click.option("--deactivate", "deactivate_kind", type=_KINDS, help="Stop the agent using this system.")
@click.option("--remove", "remove_kind", type=_KINDS, help="Delete the stored credentials.")
def connections(account_id: str, deactivate_kind: str | None, remove_kind: str | None) -> None:
    """List an account's stored connections, or deactivate or remove one.

    ``jenn connect`` reactivates a deactivated connection.
    """
    from jenn.connectors.errors import ConfigurationError
    from jenn.connectors.store import ConnectionStore
    from jenn.schemas.connectors import ConnectorKind

    if deactivate_kind and remove_kind:
        click.echo("Error: Pass at most one of --deactivate or --remove.", err=True)
        sys.exit(1)

    with ConnectionStore(CONNECTION_DB_PATH, _credential_key()) as store:
        if deactivate_kind or remove_kind:
            kind = deactivate_kind or remove_kind
            if deactivate_kind:
                changed, verb = store.deactivate(account_id, ConnectorKind(kind)), "Deactivated"
            else:
                changed, verb = store.delete(account_id, ConnectorKind(kind)), "Removed"
            if not changed:
                click.echo(f"Error: No {kind} connection for {account_id}.", err=True)
                sys.exit(1)
            click.echo(f"{verb} {kind} connection for {account_id}.")
            return

        try:
            stored = store.list_for_account(account_id)
        except ConfigurationError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    if not stored:
        click.echo(f"No connections for {account_id}.")
        return
    for s in stored:
        state = "active" if s.is_active else "inactive"
        click.echo(f"{s.connection.kind:<11} {state:<8} updated {s.updated_at:%Y-%m-%d %H:%M}")


# ------------------------------------------------------------------
# jenn usage / errors
# ------------------------------------------------------------------


@cli.command()
@click.option("--days", default=30, show_default=True, help="Look back this many days.")
@click.option("--account", "account_email", default=None, help="Only this account's usage.")
def usage(days: int, account_email: str | None) -> None:
    """Show calls and tokens per model."""
    from jenn.audit.usage_log import UsageLog

    since = datetime.now(UTC) - timedelta(days=days)
    summary = UsageLog(USAGE_LOG_PATH).summarize(since=since, account_email=account_email)
    if not summary:
        click.echo(f"No usage in the last {days} day(s).")
        return
    width = max(len(k) for k in summary)
    for model, row in sorted(summary.items(), key=lambda kv: -kv[1]["tokens"]):
        click.echo(f"{model:<{width}}  {row['calls']:>6} calls  {row['tokens']:>10} tokens")


@cli.command()
@click.argument("account_email")
@click.option("--clear", is_flag=True, help="Clear the notices after listing them.")
def errors(account_email: str, clear: bool) -> None:
    """List error notices recorded for an account."""
    from jenn.audit.error_notices import ErrorNoticeStore

    with ErrorNoticeStore(ERROR_NOTICE_DB_PATH) as notices:
        items = notices.list_for_account(account_email)
        if not items:
            click.echo("No error notices.")
            return
        for n in items:
            click.echo(f"[{n.created_at:%Y-%m-%d %H:%M}] {n.error_type.value}: {n.message}")
        if clear:
            removed = notices.clear(account_email)
            click.echo(f"Cleared {removed} notice(s).")

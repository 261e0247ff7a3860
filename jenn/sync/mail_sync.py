"""Incremental mail sync driven by per-mailbox UID watermarks.

One pass over a mailbox:
1. Read the watermark ``w`` from the cursor store.
2. Fetch messages with UID > ``w`` (ascending, capped by ``limit``).
3. Hand each to the rule pipeline; a failure is logged and does not stop
   the batch.
4. Advance the watermark (compare-and-raise against ``w``).

Usage::

    with CursorStore(cursor_db) as cursors:
        async with ImapClient(account) as imap:
            result = await sync_mailbox(imap, account, cursors, pipeline, limit=100)
"""

import logging
from collections.abc import Callable
from typing import Any

from jenn.integrations.imap import ImapClient, MailProvider
from jenn.schemas.mail import (
    FetchedMessage,
    HistoryItem,
    MailAccountConfig,
    MessagePreview,
    SyncResult,
    SyncSummary,
    WatermarkPolicy,
)
from jenn.sync.cursor_store import CursorConflictError, CursorStore
from jenn.sync.pipeline import PipelineContext, RulePipeline

logger = logging.getLogger(__name__)

SYNC_NOW_LIMIT = 100
MAX_PREVIEWS = 10

ProviderFactory = Callable[[MailAccountConfig], Any]


def _next_watermark(
    previous: int,
    messages: list[FetchedMessage],
    failed_uids: set[int],
    policy: WatermarkPolicy,
) -> int:
    if policy is WatermarkPolicy.MAX_SEEN:
        return max([previous, *(m.uid for m in messages)])

    watermark = previous
    for msg in messages:
        if msg.uid in failed_uids:
            break
        watermark = max(watermark, msg.uid)
    return watermark


async def sync_mailbox(
    provider: MailProvider,
    account: MailAccountConfig,
    cursors: CursorStore,
    pipeline: RulePipeline,
    *,
    limit: int = 0,
    policy: WatermarkPolicy = WatermarkPolicy.MAX_SEEN,
) -> SyncResult:
    """Run one incremental sync pass over a mailbox.

    Args:
        provider: An open mail provider for the account.
        account: The mailbox configuration (rules, AI access).
        cursors: Watermark store.
        pipeline: Rule pipeline receiving each message.
        limit: Maximum messages per pass (0 = no cap).
        policy: How far the watermark advances past failed messages.

    Raises:
        CursorConflictError: Another pass advanced the watermark meanwhile.
    """
    mailbox = account.email
    previous = cursors.get(mailbox).last_seen_uid

    messages = await provider.fetch_after_uid(previous, limit=limit)
    messages = sorted((m for m in messages if m.uid > previous), key=lambda m: m.uid)

    if not messages:
        logger.info("No new messages for %s (watermark %d)", mailbox, previous)
        return SyncResult(
            mailbox=mailbox,
            previous_watermark=previous,
            new_watermark=previous,
            no_new_messages=True,
        )

    logger.info("Fetched %d new message(s) for %s after UID %d", len(messages), mailbox, previous)
    ctx = PipelineContext(
        provider=provider,
        account=account,
        rules=account.rules,
        has_ai_access=account.has_ai_access,
    )

    processed = 0
    failed_uids: set[int] = set()
    for msg in messages:
        try:
            await pipeline.process_history_item(
                HistoryItem(message_id=str(msg.uid), pre_fetched_message=msg), ctx
            )
            processed += 1
        except Exception:
            logger.exception("Failed to process UID %d for %s", msg.uid, mailbox)
            failed_uids.add(msg.uid)

    new_watermark = _next_watermark(previous, messages, failed_uids, policy)
    cursors.advance(mailbox, expected=previous, new_uid=new_watermark)

    return SyncResult(
        mailbox=mailbox,
        fetched=len(messages),
        processed=processed,
        failed=len(failed_uids),
        previous_watermark=previous,
        new_watermark=new_watermark,
        previews=[
            MessagePreview(id=str(m.uid), subject=m.subject, from_address=m.from_address)
            for m in messages[:MAX_PREVIEWS]
        ],
    )


async def sync_all_mailboxes(
    accounts: list[MailAccountConfig],
    cursors: CursorStore,
    pipeline: RulePipeline,
    *,
    limit: int = 0,
    policy: WatermarkPolicy = WatermarkPolicy.MAX_SEEN,
    provider_factory: ProviderFactory = ImapClient,
) -> list[SyncResult]:
    """Scheduled sync of every mailbox. One mailbox failing does not stop the rest."""
    results: list[SyncResult] = []
    for account in accounts:
        try:
            async with provider_factory(account) as provider:
                result = await sync_mailbox(
                    provider, account, cursors, pipeline, limit=limit, policy=policy
                )
        except CursorConflictError as exc:
            logger.warning("Skipped %s: %s", account.email, exc)
            continue
        except Exception:
            logger.exception("Sync failed for %s", account.email)
            continue
        results.append(result)
    return results


async def sync_now(
    account: MailAccountConfig,
    cursors: CursorStore,
    pipeline: RulePipeline,
    *,
    limit: int = SYNC_NOW_LIMIT,
    policy: WatermarkPolicy = WatermarkPolicy.MAX_SEEN,
    provider_factory: ProviderFactory = ImapClient,
) -> SyncSummary:
    """User-triggered sync of one mailbox, capped at ``limit`` messages."""
    try:
        async with provider_factory(account) as provider:
            result = await sync_mailbox(
                provider, account, cursors, pipeline, limit=limit, policy=policy
            )
    except CursorConflictError:
        return SyncSummary(
            success=False,
            message="Another sync is already running for this mailbox",
            last_uid=cursors.get(account.email).last_seen_uid,
        )
    except Exception as exc:
        logger.exception("Sync now failed for %s", account.email)
        return SyncSummary(
            success=False,
            message=f"Sync failed: {exc}",
            last_uid=cursors.get(account.email).last_seen_uid,
        )

    if result.no_new_messages:
        return SyncSummary(message="No new messages", last_uid=result.new_watermark)

    return SyncSummary(
        message=f"Synced {result.fetched} new message(s)",
        count=result.fetched,
        processed=result.processed,
        last_uid=result.new_watermark,
        messages=result.previews,
    )

"""Rule pipeline: the consumer of freshly synced messages.

The sync layer hands over one message at a time via ``process_history_item``.
The first enabled rule whose conditions all match runs its actions in order.
AI-backed actions (``draft_reply``, ``call_agent``) only run when the account
has AI access and a router factory was supplied.

Errors propagate to the caller, which isolates them per message.
"""

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from functools import partial

from jenn.agent.business_agent import run_business_agent
from jenn.integrations.imap import MailProvider
from jenn.llm.router import LLMRouter
from jenn.llm.tools import Tool
from jenn.schemas.llm import AccountRef
from jenn.schemas.mail import (
    FetchedMessage,
    HistoryItem,
    MailAccountConfig,
    ProcessOutcome,
    Rule,
    RuleAction,
    RuleActionType,
)

logger = logging.getLogger(__name__)

DRAFT_REPLY_LABEL = "Draft reply"

ToolSource = Callable[[str], AbstractAsyncContextManager[list[Tool]]]

_AI_ACTIONS = {RuleActionType.DRAFT_REPLY, RuleActionType.CALL_AGENT}

_DRAFT_SYSTEM_PROMPT = """\
You are an email assistant writing a reply on behalf of the mailbox owner.
Write only the body of the reply: no subject line, no placeholders.
Keep it short, polite and specific to the message. Do not invent facts.
If business data is provided below, use it; otherwise do not promise
anything you cannot confirm."""


@dataclass
class PipelineContext:
    """Per-mailbox state handed to the pipeline for each message."""

    provider: MailProvider
    account: MailAccountConfig
    rules: list[Rule] = field(default_factory=list)
    has_ai_access: bool = True


def _account_ref(ctx: PipelineContext) -> AccountRef:
    return AccountRef(email=ctx.account.email, id=ctx.account.id)


def rule_matches(rule: Rule, message: FetchedMessage) -> bool:
    """True when every non-empty condition of an enabled rule matches (case-insensitive)."""
    if not rule.enabled:
        return False
    checks = [
        (rule.from_contains, f"{message.from_name} {message.from_address}"),
        (rule.subject_contains, message.subject),
        (rule.body_contains, message.body_text),
    ]
    active = [(needle, haystack) for needle, haystack in checks if needle]
    if not active:
        return False
    return all(needle.lower() in haystack.lower() for needle, haystack in active)


def find_matching_rule(rules: list[Rule], message: FetchedMessage) -> Rule | None:
    for rule in rules:
        if rule_matches(rule, message):
            return rule
    return None


class RulePipeline:
    """Applies account rules to synced messages.

    Args:
        router_factory: Builds an ``LLMRouter`` for an account and a call
            label (``None`` disables AI actions).
        agent_tools: Opens the business tools of an account (by account id)
            for ``call_agent``; ``None`` means no connectors.
    """

    def __init__(
        self,
        router_factory: Callable[[AccountRef, str], LLMRouter] | None = None,
        agent_tools: ToolSource | None = None,
    ) -> None:
        self._router_factory = router_factory
        self._agent_tools = agent_tools

    async def process_history_item(self, item: HistoryItem, ctx: PipelineContext) -> ProcessOutcome:
        message = item.pre_fetched_message
        if message is None:
            message = await ctx.provider.fetch_message(int(item.message_id))

        rule = find_matching_rule(ctx.rules, message)
        if rule is None:
            logger.debug("No rule matched UID %d (%s)", message.uid, message.subject)
            return ProcessOutcome.SKIPPED

        logger.info("Rule %r matched UID %d (%s)", rule.name, message.uid, message.subject)
        agent_findings: str | None = None
        for action in rule.actions:
            if action.action_type in _AI_ACTIONS and not self._ai_enabled(ctx):
                logger.info(
                    "Skipping %s for %s: AI access not available",
                    action.action_type.value,
                    ctx.account.email,
                )
                continue
            findings = await self._run_action(action, message, ctx, agent_findings)
            if findings:
                agent_findings = findings
        return ProcessOutcome.PROCESSED

    def _ai_enabled(self, ctx: PipelineContext) -> bool:
        return ctx.has_ai_access and self._router_factory is not None

    async def _run_action(
        self,
        action: RuleAction,
        message: FetchedMessage,
        ctx: PipelineContext,
        agent_findings: str | None,
    ) -> str | None:
        match action.action_type:
            case RuleActionType.ARCHIVE:
                await ctx.provider.archive([message.uid])
            case RuleActionType.LABEL:
                if not action.label:
                    logger.warning("Label action without a label on UID %d", message.uid)
                    return None
                await ctx.provider.move([message.uid], action.label)
            case RuleActionType.MARK_READ:
                await ctx.provider.mark_read([message.uid])
            case RuleActionType.DRAFT_REPLY:
                await self._draft_reply(action, message, ctx, agent_findings)
            case RuleActionType.CALL_AGENT:
                return await self._call_agent(message, ctx)
        return None

    async def _draft_reply(
        self,
        action: RuleAction,
        message: FetchedMessage,
        ctx: PipelineContext,
        agent_findings: str | None,
    ) -> None:
        router = self._router_factory(_account_ref(ctx), DRAFT_REPLY_LABEL)
        prompt_parts = [
            f"From: {message.from_name} <{message.from_address}>",
            f"Subject: {message.subject}",
            "",
            message.body_text[:4000],
        ]
        if action.instructions:
            prompt_parts += ["", f"Instructions: {action.instructions}"]
        if agent_findings:
            prompt_parts += ["", "Business data:", agent_findings]

        result = await router.generate_text(
            system=_DRAFT_SYSTEM_PROMPT, prompt="\n".join(prompt_parts)
        )
        await ctx.provider.save_draft(message.from_address, message.subject, result.text)

    async def _call_agent(self, message: FetchedMessage, ctx: PipelineContext) -> str | None:
        if self._agent_tools is None:
            logger.info("Agent skipped for UID %d: no tools connected", message.uid)
            return None
        account = _account_ref(ctx)
        async with self._agent_tools(ctx.account.id) as tools:
            result = await run_business_agent(
                account=account,
                messages=[message],
                tools=tools,
                router_factory=partial(self._router_factory, account),
            )
        if result is None:
            logger.info("Agent skipped for UID %d: no tools connected", message.uid)
            return None
        logger.info(
            "Agent finished for UID %d: %s (%d tool call(s))",
            message.uid,
            result.outcome.kind,
            len(result.tool_calls),
        )
        return result.response

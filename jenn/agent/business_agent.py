"""Tool-calling business agent.

Reads an email thread, uses whichever connector tools the account has
enabled (Odoo, PrestaShop, QuickBooks) to look things up or act, then
reports a structured outcome: ``actionable`` with a summary, or
``no_action``.

Two model calls per run, both through the fallback orchestrator:
1. a bounded tool loop (at most ``MAX_AGENT_STEPS`` model calls),
2. a structured-output call turning the loop's transcript into an
   ``AgentOutcome``.
"""

import logging
from collections.abc import Callable

from jenn.llm.router import LLMRouter
from jenn.llm.tools import Tool
from jenn.schemas.agent import AGENT_OUTCOME_ADAPTER, ActionableOutcome, AgentRunResult
from jenn.schemas.llm import AccountRef, GenerationStep, TextGenerationResult
from jenn.schemas.mail import FetchedMessage

logger = logging.getLogger(__name__)

MAX_AGENT_STEPS = 10
MAX_THREAD_MESSAGES = 5
MESSAGE_MAX_LENGTH = 1000

AGENT_LABEL = "Business agent"
OUTCOME_LABEL = "Business agent outcome"

SYSTEM_PROMPT = """\
You are an operations assistant connected to the user's business systems.
The tools you have are exactly the ones the user has connected. Use ONLY
those tools to gather information and, when appropriate, act inside those
systems on the user's behalf.

OBJECTIVE:
- Understand the request and the recent email context.
- Pick the relevant tools and complete the task end-to-end.

CONSTRAINTS:
- Call only tools present in your tool list. Tool names carry a connector
  prefix only when two connectors share a name. Never invent tools or
  parameters.
- Read before you write. Create or update records only when the intent is
  explicit or strongly implied by the email (an inbound lead becomes a CRM
  lead; a customer asking for a quote becomes a draft sale order).
- When a required field is missing, infer it from the email. If it is still
  unknown, do not write: look things up and summarize instead.
- If a needed system is not connected, say so briefly and continue with what
  is available.

WORKFLOW:
1) Infer the intent from the latest messages.
2) Select the relevant tool(s).
3) Map values from the email to tool parameters.
4) Chain reads before writes (find the partner, then create the order).
5) Finish with a concise summary of what you found or did, with record
   names and IDs when available."""

OUTCOME_SYSTEM_PROMPT = """\
You review the work of an operations assistant and report its outcome as JSON.

Respond with exactly one JSON object, either
{"kind": "actionable", "text": "<concise summary of what was found or done>"}
or
{"kind": "no_action", "reason": "<why nothing relevant was found or done>"}

Use "actionable" when the assistant performed an action or retrieved
information relevant to the email. Keep the summary factual; do not mention
internal tool names unless essential."""


def _format_message(message: FetchedMessage) -> str:
    body = message.body_text or message.body_html
    if len(body) > MESSAGE_MAX_LENGTH:
        body = body[:MESSAGE_MAX_LENGTH] + "..."
    return (
        "<email>\n"
        f"<from>{message.from_name} <{message.from_address}></from>\n"
        f"<subject>{message.subject}</subject>\n"
        f"<date>{message.date.isoformat()}</date>\n"
        f"<body>{body}</body>\n"
        "</email>"
    )


def build_thread_prompt(
    account: AccountRef, messages: list[FetchedMessage], user_info: str | None = None
) -> str:
    """Prompt with the mailbox owner and the last few messages of the thread."""
    recent = messages[-MAX_THREAD_MESSAGES:]
    lines = [f"<user_info>\n<email>{account.email}</email>"]
    if user_info:
        lines.append(f"<about>{user_info}</about>")
    lines.append("</user_info>")
    lines += [
        "",
        "The last emails in the thread are:",
        "",
        "<thread>",
        "\n".join(_format_message(m) for m in recent),
        "</thread>",
    ]
    return "\n".join(lines)


def _build_outcome_prompt(thread_prompt: str, result: TextGenerationResult) -> str:
    records = result.tool_call_records()
    if records:
        calls = "\n".join(
            f"- {r.tool_name}({r.arguments}) -> {r.result}" for r in records
        )
    else:
        calls = "(no tools were called)"
    return (
        f"{thread_prompt}\n\n"
        f"Tool calls made by the assistant:\n{calls}\n\n"
        f"Assistant's final answer:\n{result.text or '(empty)'}\n\n"
        "Report the outcome as JSON."
    )


async def _log_step(step: GenerationStep) -> None:
    logger.debug(
        "Agent step finished: text=%r tool_calls=%s",
        step.text[:200],
        [c.name for c in step.tool_calls],
    )


async def run_business_agent(
    *,
    account: AccountRef,
    messages: list[FetchedMessage],
    tools: list[Tool],
    router_factory: Callable[[str], LLMRouter],
    user_info: str | None = None,
    max_steps: int = MAX_AGENT_STEPS,
) -> AgentRunResult | None:
    """Run the agent over an email thread.

    Returns ``None`` without touching the model layer when there are no
    messages or no enabled tools.
    """
    if not messages:
        return None
    if not tools:
        logger.debug("No tools enabled for %s, skipping agent", account.email)
        return None

    thread_prompt = build_thread_prompt(account, messages, user_info)

    router = router_factory(AGENT_LABEL)
    result = await router.generate_text(
        system=SYSTEM_PROMPT,
        prompt=thread_prompt,
        tools=tools,
        max_steps=max_steps,
        on_step_finish=_log_step,
    )

    outcome_router = router_factory(OUTCOME_LABEL)
    judged = await outcome_router.generate_object(
        AGENT_OUTCOME_ADAPTER,
        system=OUTCOME_SYSTEM_PROMPT,
        prompt=_build_outcome_prompt(thread_prompt, result),
    )
    outcome = judged.object

    if isinstance(outcome, ActionableOutcome):
        response = outcome.text
    else:
        response = None
        logger.debug("No relevant information found: %s", outcome.reason)

    return AgentRunResult(
        response=response,
        outcome=outcome,
        tool_calls=result.tool_call_records(),
        steps=len(result.steps),
    )

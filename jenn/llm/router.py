"""Model fallback orchestrator: text, structured-object and streaming generation.

Each call walks the execution plan (primary -> backup -> fallbacks) strictly
in order. After a failed attempt ``classify_error`` decides what happens:

- ``advance_plan``: try the next model,
- ``retry_same_model``: structured output only; up to ``OBJECT_MAX_RETRIES``
  extra attempts on the same model, ``OBJECT_RETRY_DELAY_S`` apart,
- ``fatal``: log, persist a user-facing notice when the error has a
  category, and re-raise.

Exactly one usage record is written per successful call, tagged with the
model that actually served it.

Usage::

    router = LLMRouter(
        account=AccountRef(email="a@example.com", id="acc_1"),
        label="Draft reply",
        model_options=options,
        usage_log=usage_log,
        error_notices=notices,
    )
    result = await router.generate_text(system="...", prompt="...")
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from json_repair import repair_json
from pydantic import TypeAdapter, ValidationError

from jenn.audit.error_notices import ErrorNoticeStore
from jenn.audit.usage_log import UsageLog
from jenn.llm.errors import (
    AllModelsExhaustedError,
    EmptyExecutionPlanError,
    GenerationTimeoutError,
    NoObjectGeneratedError,
    classify_error,
    user_error_type,
)
from jenn.llm.plan import build_execution_plan
from jenn.llm.tools import Tool, execute_tool_call
from jenn.schemas.llm import (
    AccountRef,
    ChatMessage,
    GenerationStep,
    ModelOptions,
    ModelTarget,
    ObjectGenerationResult,
    RecoveryAction,
    StreamChunk,
    TextGenerationResult,
    Usage,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_LOG_LENGTH = 200
OBJECT_MAX_RETRIES = 2
OBJECT_RETRY_DELAY_S = 1.0
ALL_MODELS_EXHAUSTED = "all-models-exhausted"

StepCallback = Callable[[GenerationStep], Awaitable[None]]


@dataclass
class _ToolLoop:
    """Conversation and steps of one text generation, shared across plan attempts.

    A fallback model continues from here, so tools that already ran are
    never executed again.
    """

    conversation: list[ChatMessage]
    steps: list[GenerationStep] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)


def _truncate(text: str | None) -> str:
    return (text or "")[:MAX_LOG_LENGTH]


def _build_messages(
    system: str | None,
    prompt: str | None,
    messages: list[ChatMessage] | None,
) -> list[ChatMessage]:
    out: list[ChatMessage] = []
    if system:
        out.append(ChatMessage(role="system", content=system))
    out.extend(messages or [])
    if prompt:
        out.append(ChatMessage(role="user", content=prompt))
    if not any(m.role != "system" for m in out):
        raise ValueError("A prompt or at least one non-system message is required")
    return out


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped


def parse_object(text: str, schema: type[T] | TypeAdapter) -> T:
    """Validate model output against ``schema``, repairing malformed JSON first.

    Raises:
        NoObjectGeneratedError: If nothing JSON-like could be recovered.
        pydantic.ValidationError: If the (repaired) JSON does not match the schema.
    """
    adapter = schema if isinstance(schema, TypeAdapter) else TypeAdapter(schema)
    candidate = _strip_code_fence(text)
    try:
        return adapter.validate_json(candidate)
    except ValidationError as exc:
        if not candidate:
            raise NoObjectGeneratedError(
                "No object generated: response was empty", text=text, cause=exc
            ) from exc
        repaired = repair_json(candidate)
        if not repaired or repaired == '""':
            raise NoObjectGeneratedError(
                "No object generated: response was not JSON", text=text, cause=exc
            ) from exc
        if repaired == candidate:
            raise
        logger.info("Repaired malformed JSON output (%d chars)", len(candidate))
        return adapter.validate_json(repaired)


class LLMRouter:
    """Runs generations against an execution plan with tiered error recovery."""

    def __init__(
        self,
        *,
        account: AccountRef,
        label: str,
        model_options: ModelOptions,
        usage_log: UsageLog | None = None,
        error_notices: ErrorNoticeStore | None = None,
    ) -> None:
        self._account = account
        self._label = label
        self._usage_log = usage_log
        self._error_notices = error_notices
        self.plan = build_execution_plan(model_options)

    # ------------------------------------------------------------------
    # Shared bookkeeping
    # ------------------------------------------------------------------

    def _record_usage(self, target: ModelTarget, usage: Usage) -> None:
        if self._usage_log is None:
            return
        self._usage_log.record(
            account_email=self._account.email,
            provider=target.provider,
            model=target.name,
            label=self._label,
            usage=usage,
        )

    def _handle_error(self, error: BaseException, model_name: str) -> None:
        """Log a fatal error and persist a category-specific notice."""
        logger.error(
            "Error in LLM call: label=%s account=%s (%s) model=%s: %r",
            self._label,
            self._account.email,
            self._account.id,
            model_name,
            error,
        )
        error_type = user_error_type(error)
        if error_type is not None and self._error_notices is not None:
            self._error_notices.add(
                self._account.email,
                error_type,
                getattr(error, "message", None) or str(error),
            )

    def _log_fallback(self, target: ModelTarget, previous: BaseException | None, kind: str) -> None:
        logger.info(
            "Falling back to next model for %s: label=%s next=%s (%s) previous_error=%r",
            kind,
            self._label,
            target.name,
            target.provider,
            previous,
        )

    async def _with_deadline(self, coro: Awaitable[T], timeout: float | None) -> T:
        if timeout is None:
            return await coro
        try:
            async with asyncio.timeout(timeout):
                return await coro
        except TimeoutError as exc:
            logger.error(
                "LLM call timed out after %.1fs: label=%s account=%s",
                timeout,
                self._label,
                self._account.email,
            )
            raise GenerationTimeoutError(
                f"{self._label}: no model succeeded within {timeout:.1f}s"
            ) from exc

    def _exhausted(self, last_error: BaseException | None, attempted: list[str]) -> Exception:
        if last_error is None:
            return EmptyExecutionPlanError("No models available in execution plan")
        self._handle_error(last_error, ALL_MODELS_EXHAUSTED)
        return AllModelsExhaustedError(last_error, attempted)

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    async def generate_text(
        self,
        *,
        system: str | None = None,
        prompt: str | None = None,
        messages: list[ChatMessage] | None = None,
        tools: list[Tool] | None = None,
        max_steps: int = 1,
        temperature: float = 0.2,
        on_step_finish: StepCallback | None = None,
        timeout: float | None = None,
    ) -> TextGenerationResult:
        """Generate text, optionally running a bounded tool-calling loop.

        A step is one model call. When the model requests tools, they are
        executed and their results fed back, up to ``max_steps`` model calls.
        A capacity error on any step hands the conversation so far, including
        executed tool calls and their results, to the next model in the plan.
        Completed steps count toward ``max_steps``; there is no same-model retry.
        """
        transcript = _build_messages(system, prompt, messages)
        logger.debug(
            "Generating text: label=%s system=%r prompt=%r",
            self._label,
            _truncate(system),
            _truncate(prompt),
        )
        return await self._with_deadline(
            self._text_plan(transcript, tools, max_steps, temperature, on_step_finish),
            timeout,
        )

    async def _text_plan(self, transcript, tools, max_steps, temperature, on_step_finish):
        last_error: BaseException | None = None
        attempted: list[str] = []
        loop = _ToolLoop(conversation=list(transcript))

        for i, target in enumerate(self.plan):
            if i > 0:
                self._log_fallback(target, last_error, "generate_text")
            attempted.append(target.name)
            try:
                return await self._text_attempt(
                    target, loop, tools, max_steps, temperature, on_step_finish
                )
            except Exception as exc:
                last_error = exc
                if classify_error(exc) is RecoveryAction.FATAL:
                    self._handle_error(exc, target.name)
                    raise
                logger.warning(
                    "Model %s unavailable for %s: %r", target.name, self._label, exc
                )

        raise self._exhausted(last_error, attempted) from last_error

    async def _text_attempt(
        self,
        target: ModelTarget,
        loop: _ToolLoop,
        tools: list[Tool] | None,
        max_steps: int,
        temperature: float,
        on_step_finish: StepCallback | None,
    ) -> TextGenerationResult:
        conversation, steps = loop.conversation, loop.steps
        tool_map = {t.name: t for t in tools or []}
        specs = [t.spec() for t in tools] if tools else None

        for _ in range(max(1, max_steps) - len(steps)):
            completion = await target.model.chat(
                conversation, tools=specs, temperature=temperature
            )
            loop.usage = loop.usage + completion.usage
            step = GenerationStep(
                text=completion.text,
                tool_calls=completion.tool_calls,
                usage=completion.usage,
                finish_reason=completion.finish_reason,
            )
            steps.append(step)

            if completion.tool_calls:
                conversation.append(
                    ChatMessage(
                        role="assistant",
                        content=completion.text,
                        tool_calls=completion.tool_calls,
                    )
                )
                for call in completion.tool_calls:
                    output = await execute_tool_call(call, tool_map)
                    step.tool_results[call.id] = output
                    conversation.append(
                        ChatMessage(
                            role="tool",
                            content=output,
                            tool_call_id=call.id,
                            name=call.name,
                        )
                    )

            if on_step_finish is not None:
                await on_step_finish(step)

            if not completion.tool_calls:
                break
        else:
            logger.info(
                "Step limit reached: label=%s model=%s steps=%d",
                self._label,
                target.name,
                len(steps),
            )

        self._record_usage(target, loop.usage)
        return TextGenerationResult(
            text=steps[-1].text,
            steps=steps,
            usage=loop.usage,
            model_name=target.name,
            provider=target.provider,
        )

    # ------------------------------------------------------------------
    # Structured object
    # ------------------------------------------------------------------

    async def generate_object(
        self,
        schema: type[T] | TypeAdapter,
        *,
        system: str | None = None,
        prompt: str | None = None,
        messages: list[ChatMessage] | None = None,
        temperature: float = 0.2,
        timeout: float | None = None,
    ) -> ObjectGenerationResult:
        """Generate an object matching ``schema``.

        Malformed output is repaired before validation. A validation failure
        retries the same model; once those retries are spent the plan
        advances as for a capacity error.
        """
        transcript = _build_messages(system, prompt, messages)
        if "JSON" not in (system or "") and "JSON" not in (prompt or ""):
            logger.warning("Missing JSON in prompt: label=%s", self._label)
        return await self._with_deadline(
            self._object_plan(schema, transcript, temperature), timeout
        )

    async def _object_plan(self, schema, transcript, temperature):
        last_error: BaseException | None = None
        attempted: list[str] = []

        for i, target in enumerate(self.plan):
            if i > 0:
                self._log_fallback(target, last_error, "generate_object")
            attempted.append(target.name)

            for attempt in range(OBJECT_MAX_RETRIES + 1):
                if attempt > 0:
                    logger.info(
                        "Retrying generate_object after validation error: "
                        "label=%s attempt=%d/%d model=%s",
                        self._label,
                        attempt,
                        OBJECT_MAX_RETRIES,
                        target.name,
                    )
                try:
                    completion = await target.model.chat(
                        transcript, temperature=temperature, json_mode=True
                    )
                    obj = parse_object(completion.text, schema)
                except Exception as exc:
                    last_error = exc
                    action = classify_error(exc)
                    if action is RecoveryAction.ADVANCE_PLAN:
                        logger.warning(
                            "Rate limit/availability error, switching model: %s: %r",
                            target.name,
                            exc,
                        )
                        break
                    if action is RecoveryAction.RETRY_SAME_MODEL:
                        if attempt < OBJECT_MAX_RETRIES:
                            logger.warning(
                                "Validation error, will retry same model: label=%s "
                                "attempt=%d model=%s: %s",
                                self._label,
                                attempt,
                                target.name,
                                exc,
                            )
                            await asyncio.sleep(OBJECT_RETRY_DELAY_S)
                            continue
                        logger.warning(
                            "Validation retries exhausted on %s for %s",
                            target.name,
                            self._label,
                        )
                        break
                    self._handle_error(exc, target.name)
                    raise

                self._record_usage(target, completion.usage)
                return ObjectGenerationResult(
                    object=obj,
                    raw_text=completion.text,
                    usage=completion.usage,
                    model_name=target.name,
                    provider=target.provider,
                    attempts=attempt + 1,
                )

        raise self._exhausted(last_error, attempted) from last_error

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream_text(
        self,
        *,
        system: str | None = None,
        prompt: str | None = None,
        messages: list[ChatMessage] | None = None,
        temperature: float = 0.2,
        on_finish: Callable[[str, Usage], Awaitable[None]] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        timeout: float | None = None,
    ) -> "TextStream":
        """Open a text stream on the first model that accepts the request.

        Fallback only covers establishing the stream (up to the first chunk).
        Once chunks flow, errors are logged, passed to ``on_error`` and
        raised to the consumer without switching models.
        """
        transcript = _build_messages(system, prompt, messages)
        return await self._with_deadline(
            self._stream_plan(transcript, temperature, on_finish, on_error), timeout
        )

    async def _stream_plan(self, transcript, temperature, on_finish, on_error):
        last_error: BaseException | None = None
        attempted: list[str] = []

        for i, target in enumerate(self.plan):
            if i > 0:
                self._log_fallback(target, last_error, "stream_text")
            attempted.append(target.name)
            source = target.model.stream_chat(transcript, temperature=temperature)
            try:
                first = await anext(source)
            except StopAsyncIteration:
                first = None
            except Exception as exc:
                last_error = exc
                await source.aclose()
                if classify_error(exc) is RecoveryAction.FATAL:
                    self._handle_error(exc, target.name)
                    raise
                continue

            return TextStream(
                router=self,
                target=target,
                first=first,
                source=source,
                on_finish=on_finish,
                on_error=on_error,
            )

        raise self._exhausted(last_error, attempted) from last_error


class TextStream:
    """An established stream bound to the model that accepted it.

    Iterate for text deltas, or ``await stream.text()`` to collect them.
    Usage is recorded once the provider reports it at end of stream.
    """

    def __init__(
        self,
        *,
        router: LLMRouter,
        target: ModelTarget,
        first: StreamChunk | None,
        source: AsyncIterator[StreamChunk],
        on_finish: Callable[[str, Usage], Awaitable[None]] | None,
        on_error: Callable[[BaseException], None] | None,
    ) -> None:
        self._router = router
        self._target = target
        self._first = first
        self._source = source
        self._on_finish = on_finish
        self._on_error = on_error
        self._consumed = False

    @property
    def model_name(self) -> str:
        return self._target.name

    @property
    def provider(self) -> str:
        return self._target.provider

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("TextStream can only be consumed once")
        self._consumed = True
        return self._iterate()

    async def _chunks(self) -> AsyncIterator[StreamChunk]:
        # No first chunk means the provider closed the stream immediately.
        if self._first is None:
            return
        yield self._first
        async for chunk in self._source:
            yield chunk

    async def _iterate(self) -> AsyncIterator[str]:
        parts: list[str] = []
        usage = Usage()
        try:
            async for chunk in self._chunks():
                if chunk.usage is not None:
                    usage = chunk.usage
                if chunk.text:
                    parts.append(chunk.text)
                    yield chunk.text
        except Exception as exc:
            logger.error(
                "Error in chat completion stream: label=%s account=%s model=%s: %r",
                self._router._label,
                self._router._account.email,
                self._target.name,
                exc,
            )
            if self._on_error is not None:
                self._on_error(exc)
            raise

        text = "".join(parts)
        self._router._record_usage(self._target, usage)
        if self._on_finish is not None:
            try:
                await self._on_finish(text, usage)
            except Exception:
                logger.exception("Error in on_finish callback: label=%s", self._router._label)

    async def text(self) -> str:
        """Consume the whole stream and return the concatenated text."""
        return "".join([part async for part in self])


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    retry_if: Callable[[BaseException], bool],
    max_retries: int,
    delay_s: float,
) -> T:
    """Call ``fn`` up to ``max_retries`` times while ``retry_if`` accepts the error."""
    attempts = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            attempts += 1
            if not retry_if(exc) or attempts >= max_retries:
                raise
            logger.warning("Operation failed (attempt %d/%d), retrying: %r", attempts, max_retries, exc)
            await asyncio.sleep(delay_s)

"""Schemas for the LLM invocation layer.

Covers the full lifecycle of one logical generation request:
  model options -> execution plan -> attempts -> generation result -> usage record
"""

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# --- Messages ---


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    """One entry in a chat transcript."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None  # for role="tool"
    name: str | None = None  # tool name for role="tool"


# --- Usage ---


class Usage(BaseModel):
    """Token usage reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class ChatCompletion(BaseModel):
    """One model turn, as returned by a provider adapter."""

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str = ""


class StreamChunk(BaseModel):
    """One increment of a streamed completion.

    The final chunk carries ``usage`` and ``finish_reason``.
    """

    text: str = ""
    usage: Usage | None = None
    finish_reason: str | None = None


# --- Execution plan ---


class ModelTarget(BaseModel):
    """One invocable backend in an execution plan."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    model: Any  # a jenn.llm.providers.LanguageModel
    name: str
    provider: str


class ModelOptions(BaseModel):
    """A user's configured primary model plus backup and fallbacks."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: Any
    model_name: str
    provider: str
    backup_model: Any | None = None
    fallbacks: list[ModelTarget] = Field(default_factory=list)


class AccountRef(BaseModel):
    """The account a generation is billed to."""

    email: str
    id: str


# --- Results ---


class ToolCallRecord(BaseModel):
    """A tool call made during a generation, kept for audit."""

    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: str


class GenerationStep(BaseModel):
    """One model call inside a (possibly multi-step) text generation."""

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: dict[str, str] = Field(default_factory=dict)  # tool_call_id -> output
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str = ""


class TextGenerationResult(BaseModel):
    """Result of generate_text."""

    text: str
    steps: list[GenerationStep] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    model_name: str
    provider: str

    def tool_call_records(self, max_result_chars: int = 200) -> list[ToolCallRecord]:
        """Flatten tool calls and their results across all steps."""
        records: list[ToolCallRecord] = []
        for step in self.steps:
            for call in step.tool_calls:
                output = step.tool_results.get(call.id)
                records.append(
                    ToolCallRecord(
                        tool_name=call.name,
                        arguments=call.arguments,
                        result=(
                            f"{output[:max_result_chars]}..." if output else "No result"
                        ),
                    )
                )
        return records


class ObjectGenerationResult(BaseModel):
    """Result of generate_object."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    object: Any
    raw_text: str
    usage: Usage = Field(default_factory=Usage)
    model_name: str
    provider: str
    attempts: int = 1


# --- Error handling ---


class RecoveryAction(StrEnum):
    """What the orchestrator should do after a failed attempt."""

    ADVANCE_PLAN = "advance_plan"
    RETRY_SAME_MODEL = "retry_same_model"
    FATAL = "fatal"


class ErrorType(StrEnum):
    """Category of a user-facing error notice."""

    INCORRECT_API_KEY = "incorrect_api_key"
    INVALID_MODEL = "invalid_model"
    API_KEY_DEACTIVATED = "api_key_deactivated"
    PROVIDER_RETRY_ERROR = "provider_retry_error"
    INSUFFICIENT_BALANCE = "insufficient_balance"


class UserErrorNotice(BaseModel):
    """An account-visible error message (latest per category wins)."""

    account_email: str
    error_type: ErrorType
    message: str
    created_at: datetime


class UsageRecord(BaseModel):
    """A billing/analytics row written once per successful generation."""

    timestamp: datetime
    account_email: str
    provider: str
    model: str
    label: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

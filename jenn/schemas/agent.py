"""Schemas for the tool-calling business agent."""

from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from jenn.schemas.llm import ToolCallRecord


class ActionableOutcome(BaseModel):
    """The agent found or did something worth reporting."""

    kind: Literal["actionable"] = "actionable"
    text: str = Field(description="Concise summary of what was found or done")


class NoActionOutcome(BaseModel):
    """Nothing relevant could be found or done."""

    kind: Literal["no_action"] = "no_action"
    reason: str = ""


AgentOutcome = Annotated[ActionableOutcome | NoActionOutcome, Field(discriminator="kind")]

AGENT_OUTCOME_ADAPTER: TypeAdapter[ActionableOutcome | NoActionOutcome] = TypeAdapter(AgentOutcome)


class AgentRunResult(BaseModel):
    """What the agent returns to its caller.

    ``response`` is None exactly when the outcome is ``no_action``.
    """

    response: str | None
    outcome: AgentOutcome
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    steps: int = 0

"""Tool definitions exposed to the model during multi-step generation."""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from jenn.schemas.llm import ToolCall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tool:
    """A named operation the model may call.

    ``parameters`` is a pydantic model; arguments from the model are
    validated against it before ``handler`` runs.
    """

    name: str
    description: str
    parameters: type[BaseModel]
    handler: Callable[[BaseModel], Awaitable[Any]]

    def spec(self) -> dict:
        """JSON-schema tool description sent to providers."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters.model_json_schema(),
        }

    def renamed(self, name: str) -> "Tool":
        return Tool(name, self.description, self.parameters, self.handler)


def _stringify(output: Any) -> str:
    if isinstance(output, str):
        return output
    if isinstance(output, BaseModel):
        return output.model_dump_json()
    return json.dumps(output, default=str)


async def execute_tool_call(call: ToolCall, tools: dict[str, Tool]) -> str:
    """Run one tool call and return its output as text.

    Unknown tools, invalid arguments and handler failures are reported back
    to the model as ``Error: ...`` text so the loop can continue.
    """
    tool = tools.get(call.name)
    if tool is None:
        logger.warning("Model requested unknown tool %s", call.name)
        return f"Error: unknown tool {call.name!r}"

    try:
        args = tool.parameters.model_validate(call.arguments)
    except ValidationError as exc:
        logger.warning("Invalid arguments for tool %s: %s", call.name, exc)
        return f"Error: invalid arguments for {call.name}: {exc}"

    try:
        output = await tool.handler(args)
    except Exception as exc:
        logger.exception("Tool %s failed", call.name)
        return f"Error: {call.name} failed: {exc}"

    return _stringify(output)

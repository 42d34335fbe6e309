"""Tool registry: tool capability interface, schema generation, risk and dispatch."""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from aiq.agent.providers.base import ToolSchema
from aiq.errors import ToolCancelledError, error_from_exception, tool_error_payload
from aiq.security.risk import RiskDecision, RiskRule, assess_risk
from aiq.trace import get_current_turn_id
from aiq.ui.base import NullUI, UserInterface

if TYPE_CHECKING:
    from aiq.db.client import QueryResult

logger = logging.getLogger(__name__)

# Cross-cutting argument properties every tool schema accepts.
COMMON_PROPERTIES: dict[str, dict] = {
    "risk_level": {
        "type": "string",
        "enum": ["low", "medium", "high"],
        "description": "Your assessment of the operation's risk. Anything other than low requires user confirmation.",
    },
    "task_type": {
        "type": "string",
        "enum": ["definitive", "exploratory"],
        "description": "definitive: a single well-defined goal. exploratory: results will drive further steps.",
    },
}


@dataclass(slots=True)
class ToolContext:
    ui: UserInterface
    output_mode: str = "streaming"  # "full" | "streaming"


class Tool(ABC):
    name: str = ""
    description: str = ""
    input_schema: dict = {"type": "object", "properties": {}}
    risk_rules: tuple[RiskRule, ...] = ()
    waiting_label = "Waiting..."
    cancelled_message = "operation cancelled by user"
    cancelled_warning = "Operation cancelled."
    show_elapsed = False

    def describe(self) -> ToolSchema:
        schema = dict(self.input_schema)
        properties = dict(schema.get("properties", {}))
        for key, value in COMMON_PROPERTIES.items():
            properties.setdefault(key, value)
        schema["properties"] = properties
        return ToolSchema(name=self.name, description=self.description, input_schema=schema)

    def assess_risk(self, args: dict[str, Any]) -> RiskDecision:
        return assess_risk(self.name, args, static_rules=self.risk_rules)

    def describe_call(self, args: dict[str, Any]) -> str:
        display = json.dumps(
            {k: v for k, v in args.items() if k not in COMMON_PROPERTIES and k != "output_mode"},
            ensure_ascii=False,
        )
        return f"Calling tool [{self.name}] with args: {truncate(display, 60)}"

    def confirmation(self, args: dict[str, Any]) -> tuple[str, str, str]:
        """Title, body and question shown before a high-risk call."""
        return "Tool call:", self.describe_call(args), "Execute this operation?"

    def show_confirmation(self, ui: UserInterface, args: dict[str, Any]) -> str:
        title, body, question = self.confirmation(args)
        ui.show_info(title)
        ui.stream_line(body)
        return question

    @abstractmethod
    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]: ...

    def present(self, payload: dict[str, Any], ui: UserInterface) -> dict[str, Any]:
        """Show a final artifact to the user and return what the model should see."""
        return payload

    def query_result(self, payload: dict[str, Any]) -> QueryResult | None:
        return None


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def to_schemas(self) -> list[ToolSchema]:
        return [tool.describe() for tool in self._tools.values()]

    def assess_risk(self, name: str, args: dict[str, Any]) -> RiskDecision:
        tool = self._tools.get(name)
        if tool is None:
            return assess_risk(name, args)
        return tool.assess_risk(args)

    async def execute(self, name: str, args: dict[str, Any], ctx: ToolContext | None = None) -> dict[str, Any]:
        tool = self._tools.get(name)
        if tool is None:
            return {"status": "error", "error": f"unknown tool: {name}"}
        ctx = ctx or ToolContext(ui=NullUI())
        try:
            return await tool.execute(args, ctx)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            error = ToolCancelledError(f"{name} execution cancelled")
            logger.info("tool %s cancelled code=%s", name, _error_code(error))
            return tool_error_payload(error)
        except Exception as exc:
            logger.info("tool %s failed code=%s: %s", name, _error_code(exc), exc)
            return tool_error_payload(exc)


def _error_code(exc: BaseException) -> str:
    return error_from_exception(exc, get_current_turn_id() or "")["code"]


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."

"""Conversation message types shared by the loop, providers and session store."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from aiq.errors import ToolArgumentsError

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"


@dataclass(slots=True)
class ToolCall:
    id: str
    name: str
    arguments: str = ""

    def parse_arguments(self) -> dict[str, Any]:
        raw = self.arguments.strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ToolArgumentsError(f"failed to parse tool arguments: {exc.msg}") from exc
        # some models double-encode the argument object as a JSON string
        if isinstance(parsed, str):
            try:
                parsed = json.loads(parsed)
            except json.JSONDecodeError as exc:
                raise ToolArgumentsError(f"failed to parse tool arguments: {exc.msg}") from exc
        if not isinstance(parsed, dict):
            raise ToolArgumentsError("tool arguments must be a JSON object")
        return parsed

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(slots=True)
class ToolResult:
    tool_call_id: str
    content: str
    status: str = "success"  # "success" | "error" | "cancelled"

    def to_message(self) -> Message:
        return Message(role=TOOL, content=self.content, tool_call_id=self.tool_call_id)


@dataclass(slots=True)
class Message:
    role: str  # "system" | "user" | "assistant" | "tool"
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role=ASSISTANT, content=content or "", tool_calls=list(tool_calls or []))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        content = data.get("content")
        return cls(
            role=str(data.get("role", USER)),
            content=content if isinstance(content, str) else ("" if content is None else str(content)),
            tool_calls=[
                ToolCall(id=str(tc.get("id", "")), name=str(tc.get("name", "")), arguments=str(tc.get("arguments", "")))
                for tc in data.get("tool_calls") or []
            ],
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass(slots=True)
class ChatResponse:
    finish_reason: str  # "stop" | "tool_calls" | "length" | ...
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)

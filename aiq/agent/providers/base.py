"""Provider base types: ToolSchema / ChatRequest / ProviderAdapter."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from aiq.agent.messages import ChatResponse, Message


@dataclass(slots=True)
class ToolSchema:
    name: str
    description: str
    input_schema: dict


@dataclass(slots=True)
class ChatRequest:
    model: str
    messages: list[Message]
    tools: list[ToolSchema] = field(default_factory=list)
    max_tokens: int = 4096
    temperature: float = 0.0


class ProviderAdapter(ABC):
    @abstractmethod
    async def chat(self, request: ChatRequest) -> ChatResponse: ...

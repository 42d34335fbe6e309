"""OpenAI-compatible Chat Completions provider with function calling."""
from __future__ import annotations

import uuid

from openai import AsyncOpenAI

from aiq.agent.messages import ASSISTANT, SYSTEM, TOOL, USER, ChatResponse, Message, ToolCall
from aiq.agent.providers.base import ChatRequest, ProviderAdapter, ToolSchema


class OpenAIProvider(ProviderAdapter):
    def __init__(self, api_key: str, base_url: str | None = None) -> None:
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        payload: dict = {
            "model": request.model,
            "messages": _build_messages(request.messages),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.tools:
            payload["tools"] = _build_tools(request.tools)

        response = await self.client.chat.completions.create(**payload)
        if not response.choices:
            raise ValueError("no choices in response")
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCall] = []
        for tc in message.tool_calls or []:
            tool_calls.append(ToolCall(
                id=tc.id or f"call_{uuid.uuid4().hex[:8]}",
                name=tc.function.name,
                arguments=tc.function.arguments or "",
            ))

        usage: dict[str, int] = {}
        if response.usage:
            usage = {
                "input_tokens": response.usage.prompt_tokens,
                "output_tokens": response.usage.completion_tokens or 0,
            }

        return ChatResponse(
            finish_reason=choice.finish_reason or "",
            text=message.content or "",
            tool_calls=tool_calls,
            usage=usage,
        )


def _build_messages(messages: list[Message]) -> list[dict]:
    """Convert internal Messages to OpenAI chat format."""
    result: list[dict] = []
    for msg in messages:
        if msg.role in (SYSTEM, USER):
            result.append({"role": msg.role, "content": msg.content})
        elif msg.role == ASSISTANT:
            entry: dict = {"role": ASSISTANT, "content": msg.content}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments or "{}"},
                    }
                    for tc in msg.tool_calls
                ]
            result.append(entry)
        elif msg.role == TOOL:
            result.append({
                "role": TOOL,
                "tool_call_id": msg.tool_call_id,
                "content": msg.content,
            })
    return result


def _build_tools(tools: list[ToolSchema]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]

"""Anthropic Messages API provider with native tool_use support."""
from __future__ import annotations

import json

from anthropic import AsyncAnthropic

from aiq.agent.messages import ASSISTANT, SYSTEM, TOOL, USER, ChatResponse, Message, ToolCall
from aiq.agent.providers.base import ChatRequest, ProviderAdapter, ToolSchema

# Anthropic stop reasons mapped onto the OpenAI-style finish_reason the loop expects
_FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


class AnthropicProvider(ProviderAdapter):
    def __init__(self, api_key: str, base_url: str | None = None) -> None:
        self.client = AsyncAnthropic(api_key=api_key, base_url=base_url)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        system_prompt, messages = _build_messages(request.messages)

        payload: dict = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": messages,
            "temperature": request.temperature,
        }
        if system_prompt:
            payload["system"] = system_prompt
        if request.tools:
            payload["tools"] = _build_tools(request.tools)

        response = await self.client.messages.create(**payload)

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.id,
                    name=block.name,
                    arguments=json.dumps(block.input if isinstance(block.input, dict) else {}),
                ))

        return ChatResponse(
            finish_reason=_FINISH_REASONS.get(response.stop_reason or "", response.stop_reason or ""),
            text="\n".join(text_parts),
            tool_calls=tool_calls,
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
        )


def _build_messages(messages: list[Message]) -> tuple[str, list[dict]]:
    """Split out the leading system prompt and convert the rest to Anthropic blocks.

    System messages after the first non-system message become user text, and
    consecutive tool results are folded into one user turn.
    """
    system_parts: list[str] = []
    result: list[dict] = []
    for msg in messages:
        if msg.role == SYSTEM and not result:
            system_parts.append(msg.content)
        elif msg.role in (SYSTEM, USER):
            text = msg.content if msg.role == USER else f"[system] {msg.content}"
            _append_user_block(result, {"type": "text", "text": text or " "})
        elif msg.role == ASSISTANT:
            content: list[dict] = []
            if msg.content:
                content.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                try:
                    tool_input = tc.parse_arguments()
                except ValueError:
                    tool_input = {}
                content.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tool_input})
            if not content:
                content.append({"type": "text", "text": " "})
            result.append({"role": ASSISTANT, "content": content})
        elif msg.role == TOOL:
            _append_user_block(result, {
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.content,
            })
    return "\n\n".join(system_parts), result


def _append_user_block(result: list[dict], block: dict) -> None:
    if result and result[-1]["role"] == USER:
        result[-1]["content"].append(block)
    else:
        result.append({"role": USER, "content": [block]})


def _build_tools(tools: list[ToolSchema]) -> list[dict]:
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.input_schema,
        }
        for t in tools
    ]

"""Context budget management: token estimation, cascading compression, skill eviction.

The prompt (system prompt + joined history + current input) is measured
against the context window at three thresholds. Each step recomputes usage so
one step can trigger the next:

- 80%: summarize history toward half its size, else keep the last 10 entries.
- 90%: summarize toward 30%, else keep the last 5; drop skills below RELEVANT.
- 95%: summarize toward 20%, else keep the last 3; compress each remaining
  skill and keep only ACTIVE ones. A summary with more than 3 entries is cut
  back to its last 3 behind one marker.

Summaries come from an optional async delegate. Its results are cached by
content hash and its failures always fall back to truncation.
"""
from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable

from aiq.agent.messages import Message
from aiq.agent.skills import Priority, Skill, evict_below

if TYPE_CHECKING:
    from aiq.agent.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

THRESHOLD_COMPRESS_HISTORY = 0.80
THRESHOLD_EVICT_SKILLS = 0.90
THRESHOLD_AGGRESSIVE = 0.95
DEFAULT_CONTEXT_WINDOW = 100_000
CHARS_PER_TOKEN = 3.5
MESSAGE_SEPARATOR = "\n---MESSAGE---\n"

COMPRESSION_SYSTEM_PROMPT = (
    "You are a helpful assistant that compresses text while preserving key information. "
    "Return only the compressed content, no explanations."
)

Summarizer = Callable[[str], Awaitable[str]]


def estimate_tokens(*parts: str) -> int:
    """Rough token estimate: total chars / 3.5."""
    return int(sum(len(part) for part in parts) / CHARS_PER_TOKEN)


def estimate_prompt_tokens(system_prompt: str, history: list[str], current_input: str) -> int:
    return estimate_tokens(system_prompt, "\n".join(history), current_input)


def compressed_marker(count: int) -> str:
    return f"[Previous conversation: {count} messages compressed]"


def truncate_history(history: list[str], keep_last: int) -> list[str]:
    """Keep the last ``keep_last`` entries behind one synthetic marker."""
    if len(history) <= keep_last:
        return list(history)
    dropped = len(history) - keep_last
    return [compressed_marker(dropped), *history[-keep_last:]]


def parse_compressed_history(response: str) -> list[str]:
    if MESSAGE_SEPARATOR in response:
        return response.split(MESSAGE_SEPARATOR)
    if "\n\n" in response:
        return response.split("\n\n")
    return [response]


def build_history_prompt(history: list[str], target_ratio: float) -> str:
    lines = [
        "Compress the following conversation history while preserving key information.",
        "",
        f"Target compression: reduce to approximately {target_ratio * 100:.0f}% of original length.",
        "",
        "PRESERVE:",
        "- User preferences and important decisions",
        "- Key query results and data",
        "- Active context and ongoing tasks",
        "- Important facts and conclusions",
        "",
        "REMOVE:",
        "- Redundant information",
        "- Outdated context",
        "- Irrelevant details",
        "",
        "Conversation history:",
    ]
    lines.extend(f"Message {i}: {entry}" for i, entry in enumerate(history, start=1))
    lines.append("")
    lines.append(
        "Return the compressed conversation history, maintaining essential context. "
        "Separate messages with a line containing only ---MESSAGE---."
    )
    return "\n".join(lines)


def build_skill_prompt(skill: Skill) -> str:
    return "\n".join([
        "Compress the following Skill content while preserving essential information.",
        "",
        f"Skill: {skill.name}",
        f"Description: {skill.description}",
        "",
        "PRESERVE:",
        "- Relevant instructions and steps",
        "- Key examples and code snippets",
        "- Important context and prerequisites",
        "",
        "REMOVE:",
        "- Redundant explanations",
        "- Outdated information",
        "- Irrelevant details",
        "",
        "Skill content:",
        skill.content,
        "",
        "Return the compressed Skill content, maintaining essential information.",
    ])


@dataclass(slots=True)
class CompressionResult:
    compressed_history: list[str]
    remaining_skills: list[Skill] = field(default_factory=list)
    compressed: bool = False


class Compressor:
    def __init__(self, context_window: int = DEFAULT_CONTEXT_WINDOW, summarizer: Summarizer | None = None) -> None:
        self.context_window = context_window if context_window > 0 else DEFAULT_CONTEXT_WINDOW
        self.summarizer = summarizer
        self._cache: dict[str, str] = {}
        self._cache_lock = threading.Lock()

    def utilization(self, system_prompt: str, history: list[str], current_input: str) -> float:
        return estimate_prompt_tokens(system_prompt, history, current_input) / self.context_window

    async def compress(
        self,
        history: list[str],
        skills: list[Skill],
        system_prompt: str,
        current_input: str,
    ) -> CompressionResult:
        result = CompressionResult(compressed_history=list(history), remaining_skills=list(skills))
        usage = self.utilization(system_prompt, history, current_input)
        if usage < THRESHOLD_COMPRESS_HISTORY:
            return result

        logger.info("context usage %.0f%%, compressing %d history entries", usage * 100, len(history))
        result.compressed_history = await self._compress_history(history, 0.5, keep_last=10)
        result.compressed = True
        usage = self.utilization(system_prompt, result.compressed_history, current_input)

        if usage >= THRESHOLD_EVICT_SKILLS:
            result.compressed_history = await self._compress_history(history, 0.3, keep_last=5)
            result.remaining_skills = evict_below(result.remaining_skills, Priority.RELEVANT)
            usage = self.utilization(system_prompt, result.compressed_history, current_input)

        if usage >= THRESHOLD_AGGRESSIVE:
            summarized = await self._compress_history(history, 0.2, keep_last=3)
            # a summary longer than the cap is truncated like any other history
            result.compressed_history = truncate_history(summarized, 3)
            remaining = evict_below(result.remaining_skills, Priority.ACTIVE)
            result.remaining_skills = await self._compress_skills(remaining)

        logger.info(
            "compression done: history %d -> %d, skills %d -> %d",
            len(history),
            len(result.compressed_history),
            len(skills),
            len(result.remaining_skills),
        )
        return result

    async def _compress_history(self, history: list[str], target_ratio: float, *, keep_last: int) -> list[str]:
        if not history:
            return []
        if self.summarizer is not None:
            key = _hash_content("\n".join(history) + f"\n@{target_ratio}")
            cached = self._cache_get(key)
            if cached is not None:
                return cached.split(MESSAGE_SEPARATOR)
            try:
                response = await self.summarizer(build_history_prompt(history, target_ratio))
            except Exception as exc:
                logger.warning("history summarization failed, truncating instead: %s", exc)
            else:
                if response.strip():
                    compressed = [entry for entry in parse_compressed_history(response.strip()) if entry.strip()]
                    self._cache_put(key, MESSAGE_SEPARATOR.join(compressed))
                    return compressed
        return truncate_history(history, keep_last)

    async def _compress_skills(self, skills: list[Skill]) -> list[Skill]:
        if self.summarizer is None:
            return skills
        compressed: list[Skill] = []
        for skill in skills:
            key = _hash_content(skill.content)
            cached = self._cache_get(key)
            if cached is not None:
                compressed.append(skill.with_content(cached))
                continue
            try:
                content = await self.summarizer(build_skill_prompt(skill))
            except Exception as exc:
                logger.warning("skill compression failed for %s: %s", skill.name, exc)
                compressed.append(skill)
                continue
            if not content.strip():
                compressed.append(skill)
                continue
            self._cache_put(key, content)
            compressed.append(skill.with_content(content))
        return compressed

    def _cache_get(self, key: str) -> str | None:
        with self._cache_lock:
            return self._cache.get(key)

    def _cache_put(self, key: str, value: str) -> None:
        with self._cache_lock:
            self._cache[key] = value


def _hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def flatten_messages(messages: list[Message]) -> list[str]:
    """Render messages as ``role: content`` lines for the compressor."""
    lines: list[str] = []
    for msg in messages:
        content = msg.content
        if msg.tool_calls:
            calls = ", ".join(f"{tc.name}({tc.arguments})" for tc in msg.tool_calls)
            content = f"{content} [tool calls: {calls}]".strip()
        lines.append(f"{msg.role}: {content}")
    return lines


def unflatten_history(entries: list[str]) -> list[Message]:
    """Inverse of ``flatten_messages`` for plain conversation entries.

    Entries without a ``role: `` prefix (summaries, the compression marker)
    become user-role context messages.
    """
    messages: list[Message] = []
    for entry in entries:
        role, sep, content = entry.partition(": ")
        if sep and role in ("user", "assistant"):
            messages.append(Message(role=role, content=content))
        else:
            messages.append(Message.user(entry))
    return messages


def provider_summarizer(provider: ProviderAdapter, model: str, *, max_tokens: int = 2048) -> Summarizer:
    """Build a compression delegate that calls the conversation model without tools."""
    from aiq.agent.providers.base import ChatRequest

    async def summarize(prompt: str) -> str:
        response = await provider.chat(ChatRequest(
            model=model,
            messages=[Message.system(COMPRESSION_SYSTEM_PROMPT), Message.user(prompt)],
            max_tokens=max_tokens,
            temperature=0.0,
        ))
        if not response.text:
            raise ValueError("empty content in response")
        return response.text

    return summarize

from __future__ import annotations

import pytest

from aiq.agent.context_manager import (
    Compressor,
    compressed_marker,
    estimate_tokens,
    flatten_messages,
    parse_compressed_history,
    truncate_history,
    unflatten_history,
)
from aiq.agent.messages import Message, ToolCall
from aiq.agent.skills import Priority, Skill

WINDOW = 1000


def _history(entries: int, size: int) -> list[str]:
    return [f"user: {'x' * size} #{i}" for i in range(entries)]


def _skills() -> list[Skill]:
    return [
        Skill("active", "a", "active content", Priority.ACTIVE),
        Skill("relevant", "r", "relevant content", Priority.RELEVANT),
        Skill("inactive", "i", "inactive content", Priority.INACTIVE),
    ]


class CountingSummarizer:
    def __init__(self, reply: str = "summary one\n---MESSAGE---\nsummary two") -> None:
        self.reply = reply
        self.calls = 0

    async def __call__(self, prompt: str) -> str:
        self.calls += 1
        return self.reply


class FailingSummarizer:
    async def __call__(self, prompt: str) -> str:
        raise RuntimeError("model unavailable")


# ─── Helper tests ────────────────────────────────────────────────────────────

def test_estimate_tokens_is_a_char_proxy():
    assert estimate_tokens("a" * 35) == 10
    assert estimate_tokens("a" * 20, "b" * 15) == 10


def test_truncate_history_adds_marker():
    history = [str(i) for i in range(12)]
    assert truncate_history(history, 3) == [compressed_marker(9), "9", "10", "11"]
    assert truncate_history(history[:2], 3) == ["0", "1"]


def test_parse_compressed_history_separators():
    assert parse_compressed_history("a\n---MESSAGE---\nb") == ["a", "b"]
    assert parse_compressed_history("a\n\nb") == ["a", "b"]
    assert parse_compressed_history("single") == ["single"]


def test_flatten_and_unflatten():
    messages = [
        Message.user("hi"),
        Message.assistant("", [ToolCall(id="1", name="execute_sql", arguments='{"sql": "SELECT 1"}')]),
        Message(role="tool", content='{"status": "success"}', tool_call_id="1"),
        Message.assistant("done"),
    ]
    flat = flatten_messages(messages)
    assert flat[0] == "user: hi"
    assert "execute_sql" in flat[1]
    assert flat[3] == "assistant: done"

    rebuilt = unflatten_history(["user: hi", "assistant: done", compressed_marker(4)])
    assert [(m.role, m.content) for m in rebuilt] == [
        ("user", "hi"),
        ("assistant", "done"),
        ("user", compressed_marker(4)),
    ]


# ─── Compressor tests ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_no_op_below_eighty_percent():
    compressor = Compressor(context_window=WINDOW)
    history = _history(3, 10)
    result = await compressor.compress(history, _skills(), "system", "question")
    assert result.compressed is False
    assert result.compressed_history == history
    assert len(result.remaining_skills) == 3


@pytest.mark.asyncio
async def test_eighty_percent_truncates_to_last_ten():
    compressor = Compressor(context_window=WINDOW)
    # ~830 tokens of a 1000 token window; the last ten entries fit under 90%
    history = [f"user: {'x' * 235}" for _ in range(12)]
    result = await compressor.compress(history, _skills(), "", "")
    assert result.compressed is True
    assert result.compressed_history[0] == compressed_marker(2)
    assert len(result.compressed_history) == 11
    assert len(result.remaining_skills) == 3


@pytest.mark.asyncio
async def test_ninety_five_percent_keeps_three_and_only_active_skills():
    compressor = Compressor(context_window=WINDOW)
    history = _history(40, 1000)
    result = await compressor.compress(history, _skills(), "", "")
    assert result.compressed is True
    assert len(result.compressed_history) <= 4
    assert result.compressed_history[0] == compressed_marker(37)
    assert [skill.name for skill in result.remaining_skills] == ["active"]


@pytest.mark.asyncio
async def test_ninety_five_percent_measured_after_earlier_steps():
    compressor = Compressor(context_window=WINDOW)
    # the system prompt alone keeps usage above 95% after every history step
    system_prompt = "s" * 4000
    result = await compressor.compress(_history(5, 10), _skills(), system_prompt, "")
    assert len(result.compressed_history) == 4
    assert [skill.name for skill in result.remaining_skills] == ["active"]


@pytest.mark.asyncio
async def test_summarizer_output_replaces_history():
    summarizer = CountingSummarizer()
    compressor = Compressor(context_window=WINDOW, summarizer=summarizer)
    result = await compressor.compress(_history(40, 1000), [], "", "")
    assert result.compressed_history == ["summary one", "summary two"]


@pytest.mark.asyncio
async def test_summarizer_failure_falls_back_to_truncation():
    compressor = Compressor(context_window=WINDOW, summarizer=FailingSummarizer())
    result = await compressor.compress(_history(40, 1000), _skills(), "", "")
    assert result.compressed is True
    assert result.compressed_history[0] == compressed_marker(37)
    assert [skill.content for skill in result.remaining_skills] == ["active content"]


@pytest.mark.asyncio
async def test_summaries_are_cached_by_content():
    summarizer = CountingSummarizer()
    compressor = Compressor(context_window=WINDOW, summarizer=summarizer)
    history = _history(40, 1000)

    await compressor.compress(history, [], "", "")
    first = summarizer.calls
    await compressor.compress(history, [], "", "")
    assert summarizer.calls == first


@pytest.mark.asyncio
async def test_skill_content_compressed_at_ninety_five_percent():
    summarizer = CountingSummarizer(reply="short")
    compressor = Compressor(context_window=WINDOW, summarizer=summarizer)
    result = await compressor.compress([], _skills(), "s" * 4000, "")
    assert [(skill.name, skill.content) for skill in result.remaining_skills] == [("active", "short")]


@pytest.mark.asyncio
async def test_long_summary_is_capped_at_ninety_five_percent():
    entries = [f"summary {i} {'y' * 500}" for i in range(8)]
    summarizer = CountingSummarizer(reply="\n---MESSAGE---\n".join(entries))
    compressor = Compressor(context_window=WINDOW, summarizer=summarizer)
    result = await compressor.compress(_history(20, 400), _skills(), "", "")
    assert len(result.compressed_history) <= 4
    assert result.compressed_history == [compressed_marker(5), *entries[-3:]]
    assert [skill.name for skill in result.remaining_skills] == ["active"]

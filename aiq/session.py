"""Conversation session: flattened history plus the full structured message log."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from aiq.agent.messages import SYSTEM, Message

DEFAULT_HISTORY_LIMIT = 20


@dataclass(slots=True)
class HistoryEntry:
    role: str
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class SessionStore(Protocol):
    def add_message(self, role: str, content: str) -> None: ...

    def history(self) -> list[HistoryEntry]: ...

    def raw_messages(self) -> list[Message]: ...

    def set_raw_messages(self, messages: list[Message]) -> None: ...

    def clear(self) -> None: ...


class InMemorySession:
    """Keeps the last ``history_limit`` user/assistant pairs and ten times as many raw messages."""

    def __init__(self, *, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.history_limit = history_limit
        self._history: list[HistoryEntry] = []
        self._raw: list[Message] = []

    def add_message(self, role: str, content: str) -> None:
        self._history.append(HistoryEntry(role=role, content=content))
        max_entries = self.history_limit * 2
        if len(self._history) > max_entries:
            del self._history[: len(self._history) - max_entries]

    def history(self) -> list[HistoryEntry]:
        return list(self._history)

    def history_dicts(self) -> list[dict[str, str]]:
        return [entry.to_dict() for entry in self._history]

    def raw_messages(self) -> list[Message]:
        return list(self._raw)

    def set_raw_messages(self, messages: list[Message]) -> None:
        # the system prompt is rebuilt every turn
        raw = [msg for msg in messages if msg.role != SYSTEM]
        limit = self.history_limit * 10
        if len(raw) > limit:
            raw = raw[-limit:]
            # a tool result must not lose the assistant message that requested it
            while raw and raw[0].role != "user":
                raw.pop(0)
        self._raw = raw

    def clear(self) -> None:
        self._history.clear()
        self._raw.clear()

"""Risk decision audit trail.

One line per assessed tool call, ``[timestamp] Tool: <name>, RiskLevel: <level>,
Reason: <rationale>``, appended to a log file or kept in memory for tests.
"""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Protocol, TextIO

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class AuditSink(Protocol):
    def record(self, *, tool_name: str, decision: str, rationale: str) -> None: ...


class RiskAuditLog:
    """Append-only risk decision log.

    The file is opened on the first write and kept open for the life of the
    instance. A single orchestrator owns it, so writes are not locked.
    """

    def __init__(self, path: Path, *, enabled: bool = True):
        self.path = path
        self.enabled = enabled
        self._handle: TextIO | None = None

    def record(self, *, tool_name: str, decision: str, rationale: str) -> None:
        self.write(f"Tool: {tool_name}, RiskLevel: {decision}, Reason: {rationale}")

    def write(self, message: str) -> None:
        if not self.enabled:
            return
        handle = self._open()
        handle.write(f"[{datetime.now().strftime(TIMESTAMP_FORMAT)}] {message}\n")
        handle.flush()

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def _open(self) -> TextIO:
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("a", encoding="utf-8")
        return self._handle


class MemoryAuditLog:
    def __init__(self) -> None:
        self.lines: list[str] = []

    def record(self, *, tool_name: str, decision: str, rationale: str) -> None:
        self.lines.append(f"Tool: {tool_name}, RiskLevel: {decision}, Reason: {rationale}")

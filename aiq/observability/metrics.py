from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass(slots=True)
class RuntimeMetrics:
    turns_total: int = 0
    turns_failed_total: int = 0
    model_calls_total: int = 0
    tool_calls_total: Dict[str, int] = field(default_factory=dict)
    tool_failures_total: Dict[str, int] = field(default_factory=dict)
    confirmations_declined_total: int = 0
    hallucination_corrections_total: int = 0
    compressions_total: int = 0

    def increment_tool_call(self, tool_name: str) -> None:
        self.tool_calls_total[tool_name] = self.tool_calls_total.get(tool_name, 0) + 1

    def increment_tool_failure(self, tool_name: str) -> None:
        self.tool_failures_total[tool_name] = self.tool_failures_total.get(tool_name, 0) + 1

    def snapshot(self) -> dict:
        return {
            "turns_total": self.turns_total,
            "turns_failed_total": self.turns_failed_total,
            "model_calls_total": self.model_calls_total,
            "tool_calls_total": dict(self.tool_calls_total),
            "tool_failures_total": dict(self.tool_failures_total),
            "confirmations_declined_total": self.confirmations_declined_total,
            "hallucination_corrections_total": self.hallucination_corrections_total,
            "compressions_total": self.compressions_total,
        }


_runtime_metrics = RuntimeMetrics()


def get_runtime_metrics() -> RuntimeMetrics:
    return _runtime_metrics


def reset_runtime_metrics() -> None:
    global _runtime_metrics
    _runtime_metrics = RuntimeMetrics()

"""Risk assessment for model-requested tool calls.

A call is classified by an ordered chain of rules; the first rule that returns
a decision wins:

1. an explicit ``risk_level`` hint in the arguments,
2. the tool's static allow-list of read-only operations,
3. the default, which requires confirmation.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Sequence

from aiq.security.command_guard import program_name


class RiskLevel(str, Enum):
    LOW = "low"
    HIGH = "high"


@dataclass(slots=True, frozen=True)
class RiskDecision:
    level: RiskLevel
    rationale: str


RiskRule = Callable[[str, dict[str, Any]], RiskDecision | None]

SAFE_SQL_PATTERN = re.compile(r"^\s*(SELECT|SHOW|DESCRIBE|DESC|EXPLAIN)\s", re.IGNORECASE)
SAFE_SQL_PREFIXES = ("CREATE TABLE",)

SAFE_COMMANDS = frozenset({
    "ls",
    "cat",
    "pwd",
    "echo",
    "grep",
    "head",
    "tail",
    "wc",
    "find",
    "which",
    "type",
    "whereis",
    "locate",
    "stat",
    "file",
    "date",
    "uptime",
    "whoami",
    "id",
    "env",
    "printenv",
})

SAFE_FILE_OPERATIONS = frozenset({"read", "list", "exists"})
SAFE_HTTP_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def hint_rule(tool_name: str, args: dict[str, Any]) -> RiskDecision | None:
    hint = args.get("risk_level")
    if not isinstance(hint, str):
        return None
    if hint.strip().lower() == "low":
        return RiskDecision(RiskLevel.LOW, "model provided risk_level=low")
    return RiskDecision(RiskLevel.HIGH, f"model provided risk_level={hint}")


def sql_rule(tool_name: str, args: dict[str, Any]) -> RiskDecision | None:
    sql = args.get("sql")
    if not isinstance(sql, str):
        return None
    statement = sql.lstrip()
    if statement.upper().startswith(SAFE_SQL_PREFIXES) or SAFE_SQL_PATTERN.match(statement):
        return RiskDecision(RiskLevel.LOW, "read-only or schema-creating statement")
    return None


def command_rule(tool_name: str, args: dict[str, Any]) -> RiskDecision | None:
    command = args.get("command")
    if not isinstance(command, str):
        return None
    name = program_name(command)
    if name in SAFE_COMMANDS:
        return RiskDecision(RiskLevel.LOW, f"read-only command '{name}'")
    return None


def file_operations_rule(tool_name: str, args: dict[str, Any]) -> RiskDecision | None:
    operation = args.get("operation")
    if isinstance(operation, str) and operation.lower() in SAFE_FILE_OPERATIONS:
        return RiskDecision(RiskLevel.LOW, f"read-only file operation '{operation}'")
    return None


def http_rule(tool_name: str, args: dict[str, Any]) -> RiskDecision | None:
    method = args.get("method") or "GET"
    if isinstance(method, str) and method.upper() in SAFE_HTTP_METHODS:
        return RiskDecision(RiskLevel.LOW, f"safe HTTP method {method.upper()}")
    return None


def display_rule(tool_name: str, args: dict[str, Any]) -> RiskDecision | None:
    return RiskDecision(RiskLevel.LOW, "display only")


def default_rule(tool_name: str, args: dict[str, Any]) -> RiskDecision:
    return RiskDecision(RiskLevel.HIGH, "no allow-list match, confirmation required")


STATIC_RULES: dict[str, RiskRule] = {
    "execute_sql": sql_rule,
    "execute_command": command_rule,
    "file_operations": file_operations_rule,
    "http_request": http_rule,
}


def assess_risk(
    tool_name: str,
    args: dict[str, Any],
    *,
    static_rules: Sequence[RiskRule] | None = None,
) -> RiskDecision:
    """Run the rule chain for one call.

    ``static_rules`` overrides the built-in allow-list for ``tool_name``; an
    unknown tool with no rules falls through to the default.
    """
    if static_rules is None:
        known = STATIC_RULES.get(tool_name)
        static_rules = (known,) if known else ()

    for rule in (hint_rule, *static_rules):
        decision = rule(tool_name, args)
        if decision is not None:
            return decision
    return default_rule(tool_name, args)

"""Structured diagnosis of free-text tool failures.

Categories are detected first-match, case-insensitively, in this order:
foreign_key_constraint, syntax_error, permission_denied, resource_not_found,
resource_exists, connection_error, timeout, unknown. Each category then tries
targeted extraction (MySQL- and Postgres-style phrasings) to recover the names
the model needs to plan a fix.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field

_CATEGORY_PHRASES: list[tuple[str, tuple[str, ...]]] = [
    ("foreign_key_constraint", ("foreign key", "referenced by", "violates foreign key")),
    ("syntax_error", ("syntax error", "error in your sql syntax")),
    ("permission_denied", ("permission denied", "access denied", "insufficient privileges", "privilege")),
    ("resource_not_found", ("doesn't exist", "does not exist", "not found")),
    ("resource_exists", ("already exists",)),
    ("connection_error", ("connection", "connect", "network")),
    ("timeout", ("timeout", "timed out")),
]

_CODE_PATTERNS = [
    re.compile(r"Error\s+(\d+)\s*\(", re.IGNORECASE),
    re.compile(r"ERROR:\s*([0-9A-Z]+):", re.IGNORECASE),
]

# (affected, constraint, dependency) in group order 1, 2, 3
_FK_PATTERNS = [
    re.compile(
        r"Cannot drop (?:table|column)\s+['\"]([^'\"]+)['\"].*?foreign key constraint\s+['\"]([^'\"]+)['\"]"
        r".*?(?:on|in) (?:table|column)\s+['\"]([^'\"]+)['\"]",
        re.IGNORECASE,
    ),
    re.compile(
        r"Cannot drop (?:table|column)\s+['\"]([^'\"]+)['\"].*?referenced by foreign key\s+['\"]([^'\"]+)['\"]"
        r".*?from (?:table|column)\s+['\"]([^'\"]+)['\"]",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:update|delete|drop).*?table\s+['\"]([^'\"]+)['\"].*?violates foreign key constraint\s+['\"]([^'\"]+)['\"]"
        r".*?on table\s+['\"]([^'\"]+)['\"]",
        re.IGNORECASE,
    ),
]

_SYNTAX_PATTERNS = [
    re.compile(r"(?:You have an error in your SQL syntax|syntax error).*?(?:near|at)\s+['\"]([^'\"]+)['\"]", re.IGNORECASE),
    re.compile(r"syntax error.*?(?:at or near|near)\s+['\"]([^'\"]+)['\"]", re.IGNORECASE),
]

_PERMISSION_PATTERNS = [
    re.compile(r"Access denied.*?(?:for user|to database|to table)\s+['\"]([^'\"]+)['\"]", re.IGNORECASE),
    re.compile(r"permission denied.*?(?:for|on)\s+(?:table|database|schema)\s+['\"]?([^'\"]+)['\"]?", re.IGNORECASE),
]

_NOT_FOUND_PATTERNS = [
    re.compile(r"(?:Table|Column|Database|Schema)\s+['\"]([^'\"]+)['\"].*?doesn't exist", re.IGNORECASE),
    re.compile(r"(?:relation|table|column|database|schema)\s+['\"]([^'\"]+)['\"].*?does not exist", re.IGNORECASE),
]

_EXISTS_PATTERNS = [
    re.compile(r"(?:Table|Column|Database|Schema)\s+['\"]([^'\"]+)['\"].*?already exists", re.IGNORECASE),
    re.compile(r"(?:relation|table|column|database|schema)\s+['\"]([^'\"]+)['\"].*?already exists", re.IGNORECASE),
]

_QUOTED_NAME = re.compile(r"['\"]([^'\"]+)['\"]")


@dataclass(slots=True)
class ErrorInfo:
    error_code: str = ""
    error_type: str = ""
    affected_resources: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    suggested_actions: list[str] = field(default_factory=list)


def extract_error_info(error: BaseException | str | None) -> ErrorInfo:
    """Classify a tool failure. ``None`` yields an empty ``ErrorInfo``."""
    if error is None:
        return ErrorInfo()

    message = str(error)
    info = ErrorInfo(error_type=categorize_error(message))
    info.error_code = extract_error_code(message)

    if info.error_type == "foreign_key_constraint":
        found = _extract_foreign_key(message)
        if found:
            affected, dependency, constraint = found
            info.affected_resources.append(affected)
            info.dependencies.append(dependency)
            info.suggested_actions.append(
                f"Drop the dependent table '{dependency}' first, or drop the foreign key constraint '{constraint}'"
            )
    elif info.error_type == "syntax_error":
        affected = _extract_syntax_error(message)
        if affected:
            info.affected_resources.append(affected)
            info.suggested_actions.append("Check SQL syntax and correct the error")
    elif info.error_type == "permission_denied":
        affected = _first_group(_PERMISSION_PATTERNS, message) or "resource"
        info.affected_resources.append(affected)
        info.suggested_actions.append("Check user permissions and grant necessary privileges")
    elif info.error_type == "resource_not_found":
        affected = _extract_named_resource(message, _NOT_FOUND_PATTERNS, ("doesn't exist", "does not exist"))
        if affected:
            info.affected_resources.append(affected)
            info.suggested_actions.append("Verify the resource exists or create it first")
    elif info.error_type == "resource_exists":
        affected = _extract_named_resource(message, _EXISTS_PATTERNS, ("already exists",))
        if affected:
            info.affected_resources.append(affected)
            info.suggested_actions.append("Use IF NOT EXISTS clause or drop existing resource first")
    elif info.error_type == "connection_error":
        info.suggested_actions.append("Check database connection and network connectivity")
    elif info.error_type == "timeout":
        info.suggested_actions.append("Operation timed out, consider increasing timeout or optimizing query")

    return info


def categorize_error(message: str) -> str:
    lowered = message.lower()
    for category, phrases in _CATEGORY_PHRASES:
        if any(phrase in lowered for phrase in phrases):
            return category
    return "unknown"


def extract_error_code(message: str) -> str:
    """Return a bare code from ``Error 3730 (HY000)`` or ``ERROR: 42P01:`` envelopes."""
    for pattern in _CODE_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group(1)
    return ""


def _first_group(patterns: list[re.Pattern[str]], message: str) -> str:
    for pattern in patterns:
        match = pattern.search(message)
        if match:
            return match.group(1)
    return ""


def _extract_foreign_key(message: str) -> tuple[str, str, str] | None:
    for pattern in _FK_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group(1), match.group(3), match.group(2)
    return None


def _extract_syntax_error(message: str) -> str:
    near = _first_group(_SYNTAX_PATTERNS, message)
    if near:
        return near
    if "syntax error" in message.lower():
        return "SQL query"
    return ""


def _extract_named_resource(message: str, patterns: list[re.Pattern[str]], phrases: tuple[str, ...]) -> str:
    name = _first_group(patterns, message)
    if name:
        return name
    lowered = message.lower()
    if any(phrase in lowered for phrase in phrases):
        quoted = _QUOTED_NAME.search(message)
        return quoted.group(1) if quoted else "resource"
    return ""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import httpx

from aiq.security.command_guard import CommandBlockedError
from aiq.security.path_guard import PathGuardError
from aiq.tools.error_extractor import ErrorInfo, extract_error_info

DEFAULT_INTERNAL_MESSAGE = "Internal error"


class AgentLoopError(Exception):
    """Fatal loop failure. ``messages`` holds the turn's conversation so far."""

    code = "E_AGENT_LOOP"

    def __init__(self, message: str, *, messages: list | None = None) -> None:
        super().__init__(message)
        self.messages = list(messages or [])


class ModelCallError(AgentLoopError):
    code = "E_MODEL_CALL"


class EmptyResponseError(AgentLoopError):
    code = "E_EMPTY_RESPONSE"


class MaxIterationsError(AgentLoopError):
    code = "E_MAX_ITERATIONS"


class CommandTimeoutError(Exception):
    pass


class ToolCancelledError(Exception):
    pass


class CommandCancelledError(ToolCancelledError):
    pass


class ToolArgumentsError(ValueError):
    pass


def build_aiq_error(
    *,
    code: str,
    message: str,
    turn_id: str,
    retryable: bool,
    details: dict[str, Any] | None = None,
    cause: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "code": code,
        "message": message,
        "turn_id": turn_id,
        "retryable": retryable,
        "ts": datetime.now(tz=timezone.utc).isoformat(),
    }
    if details:
        payload["details"] = details
    if cause:
        payload["cause"] = cause
    return payload


def error_from_exception(exc: BaseException, turn_id: str) -> dict[str, Any]:
    """Map a loop or tool failure to the structured error logged for the turn."""
    if isinstance(exc, AgentLoopError):
        return build_aiq_error(
            code=exc.code,
            message=str(exc),
            turn_id=turn_id,
            retryable=isinstance(exc, ModelCallError),
            cause=exc.__class__.__name__,
        )

    if isinstance(exc, PathGuardError):
        return build_aiq_error(
            code="E_PATH_ESCAPE",
            message="Path escapes the allowed directory.",
            turn_id=turn_id,
            retryable=False,
            cause="path_guard",
        )

    if isinstance(exc, CommandBlockedError):
        return build_aiq_error(
            code="E_TOOL_DENIED",
            message="Tool execution denied by policy.",
            turn_id=turn_id,
            retryable=False,
            cause="command_guard",
        )

    if isinstance(exc, ToolCancelledError):
        return build_aiq_error(
            code="E_TOOL_CANCELLED",
            message="Tool execution cancelled.",
            turn_id=turn_id,
            retryable=False,
            cause="cancelled",
        )

    if isinstance(exc, (CommandTimeoutError, asyncio.TimeoutError)):
        return build_aiq_error(
            code="E_TOOL_TIMEOUT",
            message="Operation timed out.",
            turn_id=turn_id,
            retryable=True,
            cause="timeout",
        )

    if isinstance(exc, httpx.TimeoutException):
        return build_aiq_error(
            code="E_NETWORK_TIMEOUT",
            message="Network timeout.",
            turn_id=turn_id,
            retryable=True,
            cause="network_timeout",
        )

    if isinstance(exc, httpx.HTTPStatusError):
        status = int(exc.response.status_code)
        if status in {401, 403}:
            code, message, retryable = "E_PROVIDER_AUTH", "Provider authentication failed.", False
        elif status == 429:
            code, message, retryable = "E_PROVIDER_RATE_LIMIT", "Provider rate limited request.", True
        else:
            code, message, retryable = "E_NETWORK", "Network request failed.", status >= 500
        return build_aiq_error(
            code=code,
            message=message,
            turn_id=turn_id,
            retryable=retryable,
            details={"status": status},
            cause="http_status_error",
        )

    if isinstance(exc, (ToolArgumentsError, KeyError, ValueError, TypeError)):
        return build_aiq_error(
            code="E_SCHEMA_INVALID",
            message="Invalid tool arguments or payload shape.",
            turn_id=turn_id,
            retryable=False,
            cause=exc.__class__.__name__,
        )

    return build_aiq_error(
        code="E_INTERNAL",
        message=DEFAULT_INTERNAL_MESSAGE,
        turn_id=turn_id,
        retryable=False,
        cause=exc.__class__.__name__,
    )


def merge_error_info(payload: dict[str, Any], info: ErrorInfo) -> dict[str, Any]:
    """Copy every populated classifier field into ``payload``."""
    if info.error_code:
        payload["error_code"] = info.error_code
    if info.error_type and info.error_type != "unknown":
        payload["error_type"] = info.error_type
    if info.affected_resources:
        payload["affected_resources"] = info.affected_resources
    if info.dependencies:
        payload["dependencies"] = info.dependencies
    if info.suggested_actions:
        payload["suggested_actions"] = info.suggested_actions
    return payload


def tool_error_payload(error: BaseException | str) -> dict[str, Any]:
    """Build the model-facing error result, merging classifier fields when present."""
    payload: dict[str, Any] = {"status": "error", "error": str(error)}
    return merge_error_info(payload, extract_error_info(error))

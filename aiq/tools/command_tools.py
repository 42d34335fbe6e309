"""execute_command tool: runs a shell command line and reports its output and exit status.

Non-zero exits carry the error classifier's fields so the model can react
to failures such as foreign key violations.
"""
from __future__ import annotations

import shlex
from typing import Any

from aiq.agent.tool_registry import Tool, ToolContext, truncate
from aiq.errors import merge_error_info
from aiq.security.risk import command_rule
from aiq.tools.command_executor import CommandExecutor
from aiq.tools.error_extractor import extract_error_info

ROLLING_HEIGHT = 3


def build_command_line(command: str, args: Any) -> str:
    if not args:
        return command
    if not isinstance(args, list):
        raise ValueError("args must be an array of strings")
    return " ".join([command, *(shlex.quote(str(arg)) for arg in args)])


class ExecuteCommandTool(Tool):
    name = "execute_command"
    description = (
        "Execute a shell command and return its exit code and the tail of stdout/stderr. "
        "Interactive programs and destructive system commands are refused. Read-only commands "
        "(ls, cat, grep, ...) run without confirmation."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Command line, run through /bin/sh -c"},
            "args": {"type": "array", "items": {"type": "string"}, "description": "Extra arguments, shell-quoted and appended"},
            "working_dir": {"type": "string", "description": "Working directory"},
            "timeout": {"type": "number", "description": "Idle timeout in seconds: how long the command may stay silent"},
            "output_mode": {
                "type": "string",
                "enum": ["full", "streaming"],
                "description": "'full' prints every output line (the output is the answer); 'streaming' shows a short rolling window (the output is an intermediate step).",
            },
        },
        "required": ["command"],
    }
    risk_rules = (command_rule,)
    show_elapsed = True

    def __init__(self, executor: CommandExecutor) -> None:
        self.executor = executor

    def describe_call(self, args: dict[str, Any]) -> str:
        return f"Calling tool [{self.name}] with command: {truncate(str(args.get('command', '')), 80)}"

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        command = args.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ValueError("command parameter is required")
        command = build_command_line(command, args.get("args"))
        working_dir = args.get("working_dir") or None
        timeout = args.get("timeout")

        rolling = None
        if ctx.output_mode == "full":
            on_line = ctx.ui.stream_line
        else:
            rolling = ctx.ui.rolling_output(ROLLING_HEIGHT)
            on_line = rolling.add_line
        try:
            result = await self.executor.execute(
                command,
                working_dir=working_dir,
                timeout=float(timeout) if isinstance(timeout, (int, float)) else None,
                on_line=on_line,
            )
        finally:
            if rolling is not None:
                rolling.finish()

        payload: dict[str, Any] = {
            "status": "success" if result.exit_code == 0 else "error",
            "exit_code": result.exit_code,
            "stdout": result.truncated_stdout,
            "stderr": result.truncated_stderr,
        }
        if result.exit_code != 0:
            payload["error"] = f"Command exited with code {result.exit_code}"
            merge_error_info(payload, extract_error_info(result.truncated_stderr))
        return payload

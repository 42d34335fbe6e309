from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from aiq.agent.tool_registry import Tool, ToolContext
from aiq.security.path_guard import resolve_in_root
from aiq.security.risk import file_operations_rule

FILE_OPERATIONS = ("read", "write", "list", "exists")
MAX_READ_BYTES = 1024 * 1024


def read_file(root: str | Path, path: str, *, max_bytes: int = MAX_READ_BYTES) -> str:
    target = resolve_in_root(root, path)
    if target.stat().st_size > max_bytes:
        raise ValueError(f"file too large to read: {path} ({target.stat().st_size} bytes)")
    return target.read_text(encoding="utf-8")


def write_file(root: str | Path, path: str, content: str) -> str:
    target = resolve_in_root(root, path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    return f"wrote {len(content.encode('utf-8'))} bytes to {target}"


def list_dir(root: str | Path, path: str = ".") -> list[str]:
    target = resolve_in_root(root, path)
    if not target.is_dir():
        raise NotADirectoryError(f"not a directory: {path}")
    return sorted(entry.name + ("/" if entry.is_dir() else "") for entry in target.iterdir())


def path_exists(root: str | Path, path: str) -> bool:
    return resolve_in_root(root, path).exists()


class FileOperationsTool(Tool):
    name = "file_operations"
    description = (
        "Read, write, list or check files on the local filesystem. Paths are resolved against the "
        "workspace directory and may not leave it. Operations: read, write, list, exists."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "operation": {
                "type": "string",
                "enum": list(FILE_OPERATIONS),
                "description": "read: return file content. write: replace file content. list: directory entries. exists: check a path.",
            },
            "path": {"type": "string", "description": "File or directory path, relative to the workspace"},
            "content": {"type": "string", "description": "Content to write (write only)"},
        },
        "required": ["operation", "path"],
    }
    risk_rules = (file_operations_rule,)

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root else Path(os.getcwd())

    def describe_call(self, args: dict[str, Any]) -> str:
        return f"Calling tool [{self.name}] {args.get('operation', '')}: {args.get('path', '')}"

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        operation = str(args.get("operation") or "").lower()
        path = args.get("path")
        if operation not in FILE_OPERATIONS:
            raise ValueError(f"unsupported operation: {operation or '<empty>'}")
        if not isinstance(path, str) or not path:
            raise ValueError("path parameter is required")

        result: dict[str, Any] = {"status": "success", "operation": operation, "path": path}
        if operation == "read":
            result["content"] = read_file(self.root, path)
        elif operation == "write":
            content = args.get("content")
            if not isinstance(content, str):
                raise ValueError("content parameter is required for write")
            result["message"] = write_file(self.root, path, content)
        elif operation == "list":
            result["files"] = list_dir(self.root, path)
        else:
            result["exists"] = path_exists(self.root, path)
        return result

from __future__ import annotations

import logging
from typing import Any

import httpx

from aiq.agent.tool_registry import Tool, ToolContext, truncate
from aiq.security.risk import http_rule

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
DEFAULT_HTTP_TIMEOUT = 30.0
MAX_BODY_CHARS = 10_000


class HttpRequestTool(Tool):
    name = "http_request"
    description = (
        "Send an HTTP request and return the status code, response headers and body. "
        "GET, HEAD and OPTIONS run without confirmation; other methods ask the user first."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "method": {"type": "string", "enum": list(HTTP_METHODS), "description": "HTTP method (default GET)"},
            "url": {"type": "string", "description": "Absolute http(s) URL"},
            "headers": {"type": "object", "additionalProperties": {"type": "string"}},
            "body": {"type": "string", "description": "Raw request body"},
            "timeout": {"type": "number", "description": "Timeout in seconds (default 30)"},
        },
        "required": ["url"],
    }
    risk_rules = (http_rule,)
    waiting_label = "Waiting for HTTP response..."

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    def describe_call(self, args: dict[str, Any]) -> str:
        method = str(args.get("method") or "GET").upper()
        return f"Calling tool [{self.name}] {method} {truncate(str(args.get('url', '')), 60)}"

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        method = str(args.get("method") or "GET").upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"unsupported HTTP method: {method}")
        url = args.get("url")
        if not isinstance(url, str) or not url:
            raise ValueError("url parameter is required")
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"invalid URL: {url}")

        headers = args.get("headers") or {}
        if not isinstance(headers, dict):
            raise ValueError("headers must be an object")
        timeout = _timeout_seconds(args.get("timeout"))
        body = args.get("body")

        async with httpx.AsyncClient(transport=self._transport, timeout=timeout, follow_redirects=True) as client:
            response = await client.request(
                method,
                url,
                headers={str(k): str(v) for k, v in headers.items()},
                content=body.encode("utf-8") if isinstance(body, str) and body else None,
            )
        logger.debug("http %s %s -> %s", method, url, response.status_code)

        text = response.text
        result: dict[str, Any] = {
            "status": "success" if response.status_code < 400 else "error",
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": text if len(text) <= MAX_BODY_CHARS else text[:MAX_BODY_CHARS] + "\n... (truncated)",
        }
        if response.status_code >= 400:
            result["error"] = f"HTTP {response.status_code} {response.reason_phrase}".strip()
        return result


def _timeout_seconds(value: Any) -> float:
    if value is None or value == "":
        return DEFAULT_HTTP_TIMEOUT
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid timeout: {value}") from exc
    return seconds if seconds > 0 else DEFAULT_HTTP_TIMEOUT

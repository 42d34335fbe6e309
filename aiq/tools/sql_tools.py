"""SQL execution and result rendering tools.

``execute_sql`` and ``render_chart`` show their artifact to the user as soon
as they succeed and hand the model a short acknowledgement instead of the
data, so the answer does not repeat what is already on screen.
"""
from __future__ import annotations

from typing import Any

from aiq.agent.tool_registry import Tool, ToolContext, truncate
from aiq.db.client import QueryResult, SqlClient
from aiq.security.risk import display_rule, sql_rule
from aiq.tools.render_tools import CHART_TYPES, coerce_rows, render_chart_string, render_table_string
from aiq.ui.base import UserInterface

SQL_DISPLAYED_INSTRUCTION = (
    "CRITICAL: Results are already displayed to the user in table format. Do NOT repeat the results "
    "in your response. Return finish_reason='stop' with empty content (no text output). "
    "The user can see the results above."
)
CHART_DISPLAYED_INSTRUCTION = (
    "Chart already displayed to user. Task completed. "
    "Return finish_reason='stop' with no content and no tool_calls to finish."
)

_ROWS_SCHEMA = {
    "columns": {"type": "array", "items": {"type": "string"}, "description": "Column names"},
    "rows": {
        "type": "array",
        "items": {"type": "array", "items": {"type": "string"}},
        "description": "Row data, each row is an array of string values",
    },
}


def format_query_result_summary(result: QueryResult | None) -> str:
    """One-line description of a query result for the conversation history."""
    if result is None or not result.columns:
        return "Query executed successfully."
    columns = f"[{', '.join(result.columns)}]"
    if not result.rows:
        return f"Query executed successfully. No rows returned. Columns: {columns}"
    sample = ", ".join(f"[{', '.join(row)}]" for row in result.rows[:3])
    return (
        f"Query executed successfully. Returned {len(result.rows)} row(s) with columns: {columns}. "
        f"Sample data: {sample}"
    )


class ExecuteSqlTool(Tool):
    name = "execute_sql"
    description = (
        "**MANDATORY TOOL CALL**: Execute a SQL query against the database and return the results. "
        "When the user requests database operations (SELECT, INSERT, UPDATE, DELETE, CREATE, DROP, "
        "ALTER, SHOW, etc.), you MUST call this tool. Do NOT describe what you will do in text, "
        "call the tool directly."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "sql": {"type": "string", "description": "The SQL query to execute"},
            "output_mode": {
                "type": "string",
                "enum": ["full", "streaming"],
                "description": "'full' = the result is the final goal (e.g. 'show tables'); 'streaming' = the result is an intermediate step.",
            },
        },
        "required": ["sql"],
    }
    risk_rules = (sql_rule,)
    waiting_label = "Executing SQL..."
    cancelled_message = "query execution cancelled by user"
    cancelled_warning = "Query execution cancelled."

    def __init__(self, client: SqlClient) -> None:
        self.client = client

    def describe_call(self, args: dict[str, Any]) -> str:
        return f"Calling tool [{self.name}] with SQL: {truncate(str(args.get('sql', '')), 80)}"

    def confirmation(self, args: dict[str, Any]) -> tuple[str, str, str]:
        return "Generated SQL:", str(args.get("sql", "")), "Execute this query?"

    def show_confirmation(self, ui: UserInterface, args: dict[str, Any]) -> str:
        title, sql, question = self.confirmation(args)
        ui.show_info(title)
        ui.show_code(sql, "sql")
        return question

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        sql = args.get("sql")
        if not isinstance(sql, str) or not sql.strip():
            raise ValueError("sql parameter is required")
        result = await self.client.query(sql)
        return {
            "status": "success",
            "columns": result.columns,
            "rows": result.rows,
            "row_count": result.row_count,
        }

    def query_result(self, payload: dict[str, Any]) -> QueryResult | None:
        if payload.get("status") != "success":
            return None
        return QueryResult(columns=list(payload.get("columns") or []), rows=list(payload.get("rows") or []))

    def present(self, payload: dict[str, Any], ui: UserInterface) -> dict[str, Any]:
        if payload.get("status") != "success":
            return payload
        columns = payload.get("columns") or []
        rows = payload.get("rows") or []
        if columns and rows:
            ui.display_table(columns, rows)
            ui.stream_line(f"{len(rows)} row(s) in set")
        elif columns:
            ui.stream_line("Empty set")
        else:
            ui.show_success("Query OK")
        return {
            "status": "success",
            "row_count": len(rows),
            "displayed": True,
            "instruction": SQL_DISPLAYED_INSTRUCTION,
        }


class RenderTableTool(Tool):
    name = "render_table"
    description = (
        "Format query results as a table string. If recent query results are available in the "
        "conversation history, use that data directly instead of querying again."
    )
    input_schema = {"type": "object", "properties": dict(_ROWS_SCHEMA), "required": ["columns", "rows"]}
    risk_rules = (display_rule,)

    def describe_call(self, args: dict[str, Any]) -> str:
        rows = args.get("rows")
        return f"Calling tool [{self.name}] with {len(rows) if isinstance(rows, list) else 0} row(s)"

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        columns, rows = coerce_rows(args.get("columns"), args.get("rows"))
        return {
            "status": "success",
            "format": "table",
            "output": render_table_string(columns, rows),
            "row_count": len(rows),
        }


class RenderChartTool(Tool):
    name = "render_chart"
    description = (
        "**MANDATORY TOOL CALL**: When the user requests a chart (pie, bar, line, scatter), you MUST call "
        "this tool. The chart is displayed in the terminal. Take columns and rows from recent query "
        "results in the conversation when available."
    )
    input_schema = {
        "type": "object",
        "properties": {
            **_ROWS_SCHEMA,
            "chart_type": {"type": "string", "enum": list(CHART_TYPES), "description": "Type of chart"},
        },
        "required": ["columns", "rows", "chart_type"],
    }
    risk_rules = (display_rule,)

    def describe_call(self, args: dict[str, Any]) -> str:
        rows = args.get("rows")
        return f"Calling tool [{self.name}] with {len(rows) if isinstance(rows, list) else 0} row(s)"

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        columns, rows = coerce_rows(args.get("columns"), args.get("rows"))
        chart_type = str(args.get("chart_type") or "bar").lower()
        return {
            "status": "success",
            "format": "chart",
            "output": render_chart_string(columns, rows, chart_type),
            "chart_type": chart_type,
            "row_count": len(rows),
        }

    def present(self, payload: dict[str, Any], ui: UserInterface) -> dict[str, Any]:
        if payload.get("status") != "success":
            return payload
        ui.display_chart(str(payload.get("output", "")), str(payload.get("chart_type", "")), f"Chart ({payload.get('row_count', 0)} rows)")
        return {
            "status": "success",
            "chart_type": payload.get("chart_type"),
            "row_count": payload.get("row_count", 0),
            "displayed": True,
            "instruction": CHART_DISPLAYED_INSTRUCTION,
        }

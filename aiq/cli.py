"""Command line entry point: wires settings, provider, tools and UI into a chat REPL."""
from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from aiq.agent.context_manager import Compressor, provider_summarizer
from aiq.agent.loop import ToolCallLoop
from aiq.agent.provider_router import build_provider
from aiq.agent.system_prompts import PromptLoader
from aiq.agent.tool_registry import ToolRegistry
from aiq.config import Settings, load_settings, resolve_api_key
from aiq.db.client import SqlClient, SqliteClient
from aiq.errors import AgentLoopError, error_from_exception
from aiq.observability.logging import configure_logging
from aiq.services.audit_service import RiskAuditLog
from aiq.session import InMemorySession
from aiq.tools.command_executor import CommandExecutor
from aiq.tools.command_tools import ExecuteCommandTool
from aiq.tools.file_tools import FileOperationsTool
from aiq.tools.http_tools import HttpRequestTool
from aiq.tools.sql_tools import ExecuteSqlTool, RenderChartTool, RenderTableTool, format_query_result_summary
from aiq.trace import get_current_turn_id
from aiq.ui.console import ConsoleUI

logger = logging.getLogger(__name__)

COMMANDS = {
    "/exit": "Exit chat mode",
    "/help": "Show this help message",
    "/history": "View conversation history",
    "/clear": "Clear conversation history",
}


def build_registry(settings: Settings, ui: ConsoleUI, sql_client: SqlClient | None) -> ToolRegistry:
    registry = ToolRegistry()
    if sql_client is not None:
        registry.register(ExecuteSqlTool(sql_client))
    registry.register(RenderTableTool())
    registry.register(RenderChartTool())
    registry.register(ExecuteCommandTool(CommandExecutor(confirm=ui.confirm, idle_timeout=settings.command_idle_timeout)))
    registry.register(HttpRequestTool())
    registry.register(FileOperationsTool(settings.workspace_root))
    return registry


async def describe_database(client: SqlClient, name: str) -> str:
    schema = await client.describe_schema()
    if not schema:
        return f"Currently connected to database: {name}\nNo schema information available yet."
    return f"Currently connected to database: {name}\n\n{schema}"


@dataclass(slots=True)
class ChatSession:
    loop: ToolCallLoop
    ui: ConsoleUI
    session: InMemorySession
    schema_context: str = ""
    database_type: str = ""

    async def ask(self, query: str) -> None:
        try:
            result = await self.loop.run(
                query,
                schema_context=self.schema_context,
                database_type=self.database_type,
                history=self.session.history_dicts(),
                prior_messages=self.session.raw_messages(),
            )
        except AgentLoopError as exc:
            error = error_from_exception(exc, get_current_turn_id() or "")
            logger.warning("turn failed code=%s", error["code"])
            self.ui.show_error(f"Failed to process request: {exc}")
            self.ui.show_info("Please check your LLM configuration and try again.")
            return

        self.session.add_message("user", query)
        self.session.set_raw_messages(result.messages)
        answer = result.text
        if result.last_query_result is not None:
            summary = format_query_result_summary(result.last_query_result)
            answer = f"{answer}\n\n{summary}" if answer else summary
            if result.text:
                self.ui.print_answer(result.text)
        elif answer:
            self.ui.print_answer(answer)
        if answer:
            self.session.add_message("assistant", answer)

    def show_history(self) -> None:
        history = self.session.history()
        if not history:
            self.ui.show_info("No conversation history.")
            return
        self.ui.show_info("Conversation History:")
        for index, entry in enumerate(history, start=1):
            label = "Assistant" if entry.role == "assistant" else "User"
            self.ui.stream_line(f"[{index}] {label} ({entry.timestamp.astimezone().strftime('%H:%M:%S')}):")
            self.ui.stream_line(entry.content)
            self.ui.stream_line("")

    async def handle_command(self, command: str) -> bool:
        """Run a slash command. Returns False when the REPL should stop."""
        command = command.lower()
        if command == "/exit":
            return False
        if command == "/help":
            self.ui.show_info("Available commands:")
            for name, description in COMMANDS.items():
                self.ui.stream_line(f"  {name:<9} - {description}")
        elif command == "/history":
            self.show_history()
        elif command == "/clear":
            if await self.ui.confirm("Clear conversation history?"):
                self.session.clear()
                self.ui.show_info("Conversation history cleared.")
        else:
            self.ui.show_warning(f"Unknown command: {command}. Type /help for commands.")
        return True

    async def repl(self) -> None:
        self.ui.show_info("Tip: Use '/help' for commands, ask questions in natural language")
        while True:
            try:
                line = await asyncio.to_thread(self.ui.console.input, "[bold cyan]aiq>[/bold cyan] ")
            except (EOFError, KeyboardInterrupt):
                self.ui.stream_line("")
                return
            query = line.strip()
            if not query:
                continue
            if query.startswith("/"):
                if not await self.handle_command(query):
                    return
                continue
            await self.ask(query)


async def run(settings: Settings, query: str | None = None) -> int:
    ui = ConsoleUI(Console())
    try:
        provider = build_provider(settings.provider, settings.api_key, settings.base_url)
    except ValueError as exc:
        ui.show_error(str(exc))
        return 2

    sql_client: SqlClient | None = None
    schema_context = ""
    if settings.database_path is not None:
        sql_client = SqliteClient(settings.database_path)
        schema_context = await describe_database(sql_client, settings.database_path.name)

    audit = RiskAuditLog(settings.audit_log_path, enabled=settings.audit_enabled)
    loop = ToolCallLoop(
        provider=provider,
        model=settings.model,
        registry=build_registry(settings, ui, sql_client),
        ui=ui,
        audit=audit,
        compressor=Compressor(settings.context_window, provider_summarizer(provider, settings.model)),
        prompt_loader=PromptLoader(settings.home / "prompts"),
        max_iterations=settings.max_iterations,
    )
    chat = ChatSession(
        loop=loop,
        ui=ui,
        session=InMemorySession(),
        schema_context=schema_context,
        database_type=sql_client.engine if sql_client is not None else "",
    )
    try:
        if query:
            await chat.ask(query)
        else:
            await chat.repl()
    finally:
        audit.close()
        if sql_client is not None:
            await sql_client.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aiq", description="Chat with your database and system through an LLM agent.")
    parser.add_argument("query", nargs="?", help="Ask a single question and exit")
    parser.add_argument("--provider", help="Model provider (overrides AIQ_PROVIDER)")
    parser.add_argument("--model", help="Model name (overrides AIQ_MODEL)")
    parser.add_argument("--database", help="SQLite database file (overrides AIQ_DATABASE)")
    parser.add_argument("--log-level", help="Log level (overrides AIQ_LOG_LEVEL)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    if args.provider:
        settings.provider = args.provider.lower()
        settings.api_key = resolve_api_key(settings.provider)
    if args.model:
        settings.model = args.model
    if args.database:
        settings.database_path = Path(args.database).expanduser()
    if args.log_level:
        settings.log_level = args.log_level.upper()
    configure_logging(settings.log_level)
    try:
        return asyncio.run(run(settings, args.query))
    except KeyboardInterrupt:
        return 130

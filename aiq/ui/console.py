"""Rich-backed terminal implementation of the user interface port."""
from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable

from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm
from rich.syntax import Syntax
from rich.text import Text

from aiq.tools.render_tools import build_table


class ConsoleRolling:
    """Live window over the last ``height`` lines of a command's output."""

    def __init__(self, console: Console, height: int) -> None:
        self._lines: deque[str] = deque(maxlen=height)
        self._count = 0
        self._console = console
        self._live = Live(Text(""), console=console, refresh_per_second=8, transient=True)
        self._live.start()

    def add_line(self, line: str) -> None:
        self._lines.append(line)
        self._count += 1
        self._live.update(Text("\n".join(self._lines), style="dim"))

    def finish(self) -> None:
        self._live.stop()
        if self._count:
            self._console.print(f"[dim]({self._count} lines of output)[/dim]")


class ConsoleUI:
    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    async def confirm(self, prompt: str) -> bool:
        self.console.print()
        return await asyncio.to_thread(Confirm.ask, prompt, console=self.console, default=False)

    def show_loading(self, label: str) -> Callable[[], None]:
        status = self.console.status(f"[cyan]{label}[/cyan]")
        status.start()
        return status.stop

    def show_info(self, message: str) -> None:
        self.console.print(f"[cyan]ℹ[/cyan] {message}", highlight=False)

    def show_success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {message}", highlight=False)

    def show_warning(self, message: str) -> None:
        self.console.print(f"[yellow]⚠ {message}[/yellow]", highlight=False)

    def show_error(self, message: str) -> None:
        self.console.print(f"[red]✗ {message}[/red]", highlight=False)

    def show_code(self, code: str, language: str = "sql") -> None:
        self.console.print(Syntax(code, language, word_wrap=True))

    def stream_line(self, line: str) -> None:
        self.console.print(line, markup=False, highlight=False)

    def rolling_output(self, height: int) -> ConsoleRolling:
        return ConsoleRolling(self.console, height)

    def display_table(self, columns: list[str], rows: list[list[str]]) -> None:
        self.console.print(build_table(columns, rows))

    def display_chart(self, output: str, chart_type: str, title: str) -> None:
        self.console.print(Panel(Text(output), title=f"{title} [{chart_type}]", expand=False))

    def print_answer(self, text: str) -> None:
        self.console.print()
        self.console.print(Markdown(text))

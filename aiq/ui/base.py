"""User interface port consumed by the loop and the tools."""
from __future__ import annotations

from typing import Awaitable, Callable, Protocol


class RollingOutput(Protocol):
    def add_line(self, line: str) -> None: ...

    def finish(self) -> None: ...


class UserInterface(Protocol):
    def confirm(self, prompt: str) -> Awaitable[bool] | bool: ...

    def show_loading(self, label: str) -> Callable[[], None]: ...

    def show_info(self, message: str) -> None: ...

    def show_success(self, message: str) -> None: ...

    def show_warning(self, message: str) -> None: ...

    def show_error(self, message: str) -> None: ...

    def show_code(self, code: str, language: str = "sql") -> None: ...

    def stream_line(self, line: str) -> None: ...

    def rolling_output(self, height: int) -> RollingOutput: ...

    def display_table(self, columns: list[str], rows: list[list[str]]) -> None: ...

    def display_chart(self, output: str, chart_type: str, title: str) -> None: ...


class NullUI:
    """Headless UI: approves nothing and prints nothing."""

    def __init__(self, *, approve: bool = False) -> None:
        self.approve = approve

    def confirm(self, prompt: str) -> bool:
        return self.approve

    def show_loading(self, label: str) -> Callable[[], None]:
        return lambda: None

    def show_info(self, message: str) -> None:
        pass

    def show_success(self, message: str) -> None:
        pass

    def show_warning(self, message: str) -> None:
        pass

    def show_error(self, message: str) -> None:
        pass

    def show_code(self, code: str, language: str = "sql") -> None:
        pass

    def stream_line(self, line: str) -> None:
        pass

    def rolling_output(self, height: int) -> RollingOutput:
        return _NullRolling()

    def display_table(self, columns: list[str], rows: list[list[str]]) -> None:
        pass

    def display_chart(self, output: str, chart_type: str, title: str) -> None:
        pass


class _NullRolling:
    def add_line(self, line: str) -> None:
        pass

    def finish(self) -> None:
        pass

"""Text rendering of tabular results for the terminal and for the model."""
from __future__ import annotations

import io
from typing import Any

from rich import box
from rich.console import Console
from rich.table import Table

CHART_TYPES = ("bar", "line", "pie", "scatter")
CHART_WIDTH = 40


def coerce_rows(columns: Any, rows: Any) -> tuple[list[str], list[list[str]]]:
    if not isinstance(columns, list):
        raise ValueError("invalid columns parameter")
    if not isinstance(rows, list):
        raise ValueError("invalid rows parameter")
    cols = [str(col) for col in columns]
    data: list[list[str]] = []
    for row in rows:
        if not isinstance(row, list):
            raise ValueError("invalid row format")
        data.append(["NULL" if value is None else str(value) for value in row])
    return cols, data


def build_table(columns: list[str], rows: list[list[str]]) -> Table:
    table = Table(box=box.ASCII, show_lines=False, header_style="bold")
    for column in columns:
        table.add_column(column, overflow="fold")
    for row in rows:
        table.add_row(*row)
    return table


def render_table_string(columns: list[str], rows: list[list[str]], *, width: int = 120) -> str:
    buffer = io.StringIO()
    console = Console(file=buffer, width=width, color_system=None, force_terminal=False)
    console.print(build_table(columns, rows))
    return buffer.getvalue().rstrip("\n")


def _numeric(value: str) -> float | None:
    try:
        return float(value.replace(",", ""))
    except ValueError:
        return None


def _series(columns: list[str], rows: list[list[str]]) -> list[tuple[str, float]]:
    """Pick the first column as labels and the first numeric column as values."""
    if not columns or not rows:
        raise ValueError("chart needs at least one column and one row")
    value_index = None
    for index in range(len(columns) - 1, -1, -1):
        if all(len(row) > index and _numeric(row[index]) is not None for row in rows):
            value_index = index
            break
    if value_index is None:
        raise ValueError("chart needs a numeric column")
    label_index = 0 if value_index != 0 or len(columns) == 1 else 1
    return [
        (row[label_index] if label_index < len(row) else "", _numeric(row[value_index]) or 0.0)
        for row in rows
    ]


def render_chart_string(columns: list[str], rows: list[list[str]], chart_type: str) -> str:
    chart_type = (chart_type or "bar").lower()
    if chart_type not in CHART_TYPES:
        raise ValueError(f"unsupported chart type: {chart_type}")
    series = _series(columns, rows)
    label_width = max(len(label) for label, _ in series)
    peak = max((abs(value) for _, value in series), default=0.0) or 1.0

    lines: list[str] = []
    if chart_type == "pie":
        total = sum(value for _, value in series) or 1.0
        for label, value in series:
            share = value / total
            lines.append(f"{label.ljust(label_width)} | {'#' * round(share * CHART_WIDTH):<{CHART_WIDTH}} {share:6.1%}")
    elif chart_type == "bar":
        for label, value in series:
            lines.append(f"{label.ljust(label_width)} | {'#' * round(abs(value) / peak * CHART_WIDTH)} {value:g}")
    else:
        marker = "*" if chart_type == "line" else "o"
        for label, value in series:
            offset = round(abs(value) / peak * CHART_WIDTH)
            lines.append(f"{label.ljust(label_width)} | {' ' * offset}{marker} {value:g}")
    return "\n".join(lines)

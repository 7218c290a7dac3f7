"""Output formatting helpers for CLI."""

from __future__ import annotations

import json
from typing import Any, Iterable, List, Optional, Sequence

import click


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """Format a simple table with padded columns."""
    rows_list: List[List[str]] = [list(map(str, row)) for row in rows]
    widths = [len(str(h)) for h in headers]
    for row in rows_list:
        for idx, cell in enumerate(row):
            if idx >= len(widths):
                widths.append(len(cell))
            else:
                widths[idx] = max(widths[idx], len(cell))

    header_line = " ".join(str(h).ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-" * len(header_line)
    body_lines = [
        " ".join(cell.ljust(widths[i]) for i, cell in enumerate(row))
        for row in rows_list
    ]
    return "\n".join([header_line, separator] + body_lines)


def echo_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    """Echo a simple table."""
    click.echo(format_table(headers, rows))


def echo_json(data: Any) -> None:
    """Echo JSON with UTF-8 characters preserved.

    UUID や datetime など JSON 非対応の値は文字列化する。
    """
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def format_percent(value: Optional[float], digits: int = 2) -> str:
    """比率（0.05）をパーセント表記（5.00%）に変換。None は '-'。"""
    if value is None:
        return "-"
    return f"{value * 100:.{digits}f}%"


def format_optional(value: Any) -> str:
    """None を '-' で表示"""
    return "-" if value is None else str(value)

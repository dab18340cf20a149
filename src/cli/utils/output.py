"""Output formatting helpers for CLI."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

import click


def format_table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> str:
    """Format a simple table with padded columns."""
    rows_list: List[List[str]] = [[_cell(c) for c in row] for row in rows]
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
        " ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip()
        for row in rows_list
    ]
    return "\n".join([header_line.rstrip(), separator] + body_lines)


def echo_table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> None:
    """Echo a simple table."""
    click.echo(format_table(headers, rows))


def echo_json(data) -> None:
    """Echo JSON with UTF-8 characters preserved (datetimes as ISO strings)."""
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=_json_default))


def format_number(value: Optional[float], digits: int = 4) -> str:
    """Format an optional float; None becomes N/A."""
    if value is None:
        return "N/A"
    return f"{value:.{digits}f}"


def _cell(value: object) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return format_number(value)
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    return str(value)


def _json_default(value: object) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)

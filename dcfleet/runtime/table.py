"""Plain-text workspace table.

Column widths are computed on the unstyled text; colour is applied after
padding so ANSI escapes never skew the alignment.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

import click

from dcfleet.runtime.models.enums import Status
from dcfleet.runtime.models.workspace import Workspace

HEADER = ("NAME", "STATUS", "CREATED", "MEM", "CPU", "EXECS", "PORTS")
_RIGHT_ALIGNED = frozenset({"MEM", "CPU", "EXECS"})

_AGE_UNITS = (
    (60, 1, "s"),
    (3600, 60, "m"),
    (86400, 3600, "h"),
    (604800, 86400, "d"),
    (2_592_000, 604800, "w"),
    (31_536_000, 2_592_000, "mo"),
)


def format_bytes(n: int) -> str:
    """Binary units like ``docker stats``: ``512B``, ``1.5KiB``, ``2.0GiB``."""
    if n < 1024:
        return f"{n}B"
    value = float(n)
    for unit in ("KiB", "MiB", "GiB"):
        value /= 1024
        if value < 1024:
            return f"{value:.1f}{unit}"
    return f"{value / 1024:.1f}TiB"


def format_age(created: datetime | None, now: datetime | None = None) -> str:
    """Coarse age: ``42s``, ``5m``, ``3h``, ``2d``, ``1w``, ``4mo``, ``2y``."""
    if created is None:
        return "-"
    secs = int(((now or datetime.now(UTC)) - created).total_seconds())
    if secs < 0:
        return "-"
    for limit, size, suffix in _AGE_UNITS:
        if secs < limit:
            return f"{secs // size}{suffix}"
    return f"{secs // 31_536_000}y"


def _status_color(status: Status) -> str | None:
    if status is Status.RUNNING:
        return "green"
    if status in (Status.EXITED, Status.DEAD):
        return "red"
    if status is Status.NONE:
        return None
    return "yellow"


# A cell is (plain text, styled text).
_Cell = tuple[str, str]


def _plain(text: str) -> _Cell:
    return text, text


def _row(ws: Workspace) -> list[_Cell]:
    name = f"{ws.name}*" if ws.dirty else ws.name

    label = ws.status.label
    color = _status_color(ws.status)
    status = (label, click.style(label, fg=color) if color else click.style(label, dim=True))

    mem = format_bytes(ws.stats.ram) if ws.stats is not None else "-"
    cpu = f"{ws.stats.cpu:.1f}%" if ws.stats is not None and ws.stats.cpu is not None else "-"
    execs = str(len(ws.execs)) if ws.execs else "-"

    forwarded = [str(p) for p in sorted(ws.forwarded_ports)]
    published = [str(p) for p in sorted(ws.published_ports - ws.forwarded_ports)]
    ports_plain = ",".join(forwarded + published) or "-"
    ports_styled = ",".join([click.style(p, fg="blue") for p in forwarded] + published) or "-"

    return [
        _plain(name),
        status,
        _plain(format_age(ws.created)),
        _plain(mem),
        _plain(cpu),
        _plain(execs),
        (ports_plain, ports_styled),
    ]


def workspace_table(workspaces: Iterable[Workspace], roots: Iterable[Path] = ()) -> str:
    """Render *workspaces* with a header row, project roots first."""
    root_set = set(roots)
    ordered = sorted(workspaces, key=lambda ws: (ws.path not in root_set, ws.name))

    rows = [[_plain(h) for h in HEADER], *(_row(ws) for ws in ordered)]
    widths = [max(len(row[i][0]) for row in rows) for i in range(len(HEADER))]

    lines = []
    for row in rows:
        cells = []
        for heading, width, (plain, styled) in zip(HEADER, widths, row, strict=True):
            pad = " " * (width - len(plain))
            cells.append(pad + styled if heading in _RIGHT_ALIGNED else styled + pad)
        lines.append("  ".join(cells).rstrip())
    return "\n".join(lines) + "\n"

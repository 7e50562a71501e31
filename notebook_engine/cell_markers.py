"""Parsing of ``# %%`` cell markers in plain python sources."""

import re
from typing import List, Tuple

from .models import CellKind

CODE_MARKER = "# %%"
MARKDOWN_MARKER = "# %% [markdown]"

_CELL_MARKER_RE = re.compile(r"^\s*#\s*%%")
_MARKDOWN_MARKER_RE = re.compile(r"^\s*#\s*%%\s*\[markdown\]", re.IGNORECASE)


def _split_lines(source: str) -> List[str]:
    return source.replace("\r\n", "\n").split("\n")


def is_cell_marker(line: str) -> bool:
    return bool(_CELL_MARKER_RE.match(line))


def is_markdown(source: str) -> bool:
    """True when the first line of ``source`` is a markdown cell marker."""
    first = _split_lines(source.lstrip("\n"))[0]
    return bool(_MARKDOWN_MARKER_RE.match(first))


def strip_marker(source: str) -> str:
    """Drop a leading cell marker line, if any."""
    lines = _split_lines(source)
    if lines and is_cell_marker(lines[0]):
        lines = lines[1:]
    return "\n".join(lines)


def markdown_text(source: str) -> str:
    """
    Render a markdown cell's commented body to markdown text.

    One ``#`` and one following space are removed per line, so
    ``"# #HEADER"`` becomes ``"#HEADER"``.
    """
    lines = []
    for line in _split_lines(strip_marker(source.lstrip("\n"))):
        stripped = line.lstrip()
        if stripped.startswith("#"):
            stripped = stripped[1:]
            if stripped.startswith(" "):
                stripped = stripped[1:]
        lines.append(stripped)
    return "\n".join(lines).strip("\n")


def comment_markdown(text: str) -> str:
    """Inverse of :func:`markdown_text` for the importer."""
    return "\n".join(f"# {line}" if line else "#" for line in _split_lines(text))


def locate_cells(text: str) -> List[Tuple[CellKind, str, int]]:
    """
    Split a marker-delimited script into ``(kind, source, line)`` triples.

    ``line`` is the zero-based line of the cell's first source line (the
    marker line for markdown cells). Text before the first marker forms a
    code cell of its own when it is not blank. Markdown sources keep their
    marker so they can be executed as-is.
    """
    cells: List[Tuple[CellKind, str, int]] = []
    current: List[str] = []
    current_kind = CellKind.CODE
    start = 0

    def flush():
        offset = start
        lines = list(current)
        while lines and not lines[0].strip() and current_kind is CellKind.CODE:
            lines.pop(0)
            offset += 1
        source = "\n".join(lines).strip("\n")
        if current_kind is CellKind.MARKDOWN or source.strip():
            cells.append((current_kind, source, offset))

    started = False
    for number, line in enumerate(_split_lines(text)):
        if is_cell_marker(line):
            if started or "\n".join(current).strip():
                flush()
            started = True
            current_kind = CellKind.MARKDOWN if _MARKDOWN_MARKER_RE.match(line) else CellKind.CODE
            if current_kind is CellKind.MARKDOWN:
                current, start = [line], number
            else:
                current, start = [], number + 1
            continue
        current.append(line)
    if started or "\n".join(current).strip():
        flush()
    return cells


def split_cells(text: str) -> List[Tuple[CellKind, str]]:
    """Split a marker-delimited script into ``(kind, source)`` pairs."""
    return [(kind, source) for kind, source, _ in locate_cells(text)]

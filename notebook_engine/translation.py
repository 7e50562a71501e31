"""
Translation between executed cells and nbformat v4 documents.

Export keeps code cell outputs and execution counts; import produces a
``# %%``-delimited python source in which every code cell of the document is
a separate block and markdown cells are commented out under
``# %% [markdown]``.
"""

import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Union

import nbformat

from .cell_markers import CODE_MARKER, MARKDOWN_MARKER, comment_markdown, is_markdown, markdown_text, strip_marker
from .models import Cell, CellKind
from .observability import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]


def _atomic_write_notebook(nb: nbformat.NotebookNode, path: Path) -> None:
    """Write ``nb`` through a temp file in the target directory and ``os.replace``."""
    temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
            nbformat.write(nb, f)
        os.replace(temp_path, str(path))
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class NotebookExporter:
    """Cells -> notebook document."""

    def __init__(self, kernel_name: str = "python3", display_name: str = "Python 3"):
        self.kernel_name = kernel_name
        self.display_name = display_name

    def _markdown_source(self, cell: Cell) -> str:
        # Executed markdown cells already hold rendered text
        return markdown_text(cell.source) if is_markdown(cell.source) else cell.source

    def translate_to_notebook(self, cells: Iterable[Cell], language_version: Optional[str] = None) -> nbformat.NotebookNode:
        nb = nbformat.v4.new_notebook()
        nb.metadata["kernelspec"] = {
            "name": self.kernel_name,
            "display_name": self.display_name,
            "language": "python",
        }
        language_info = {"name": "python"}
        if language_version:
            language_info["version"] = language_version
        nb.metadata["language_info"] = language_info

        for cell in cells:
            if cell.kind is CellKind.MARKDOWN:
                nb.cells.append(nbformat.v4.new_markdown_cell(self._markdown_source(cell)))
                continue
            code_cell = nbformat.v4.new_code_cell(
                strip_marker(cell.source).strip("\n"),
                execution_count=cell.execution_count,
            )
            code_cell.outputs = [nbformat.from_dict(output) for output in cell.outputs]
            nb.cells.append(code_cell)
        return nb

    def export_to_file(self, cells: Iterable[Cell], path: PathLike, language_version: Optional[str] = None) -> Path:
        """Write the translated document to ``path`` atomically."""
        target = Path(path)
        nb = self.translate_to_notebook(cells, language_version=language_version)
        _atomic_write_notebook(nb, target)
        logger.info(f"Exported {len(nb.cells)} cell(s) to {target}")
        return target


class NotebookImporter:
    """Notebook document -> marker-delimited python source."""

    def import_from_notebook(self, nb: nbformat.NotebookNode) -> str:
        blocks = []
        for cell in nb.cells:
            if cell.cell_type == "code":
                blocks.append(f"{CODE_MARKER}\n{cell.source}".rstrip("\n"))
            elif cell.cell_type == "markdown":
                blocks.append(f"{MARKDOWN_MARKER}\n{comment_markdown(cell.source)}".rstrip("\n"))
        return "\n\n".join(blocks) + "\n" if blocks else ""

    def import_from_file(self, path: PathLike) -> str:
        with open(path, "r", encoding="utf-8") as f:
            nb = nbformat.read(f, as_version=4)
        return self.import_from_notebook(nb)

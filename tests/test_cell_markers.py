"""
Tests for # %% cell marker parsing.
"""

from notebook_engine.cell_markers import (
    comment_markdown,
    is_cell_marker,
    is_markdown,
    locate_cells,
    markdown_text,
    split_cells,
    strip_marker,
)
from notebook_engine.models import CellKind


class TestMarkers:

    def test_marker_variants(self):
        assert is_cell_marker("# %%")
        assert is_cell_marker("#%%")
        assert is_cell_marker("   # %% some title")
        assert not is_cell_marker("x = 1  # %%")

    def test_markdown_detection_is_case_insensitive(self):
        assert is_markdown("# %% [markdown]\n# Title")
        assert is_markdown("#%% [MARKDOWN]\n# Title")
        assert not is_markdown("# %%\nprint(1)")
        assert not is_markdown("print(1)")

    def test_strip_marker(self):
        assert strip_marker("# %%\na = 1") == "a = 1"
        assert strip_marker("a = 1") == "a = 1"


class TestMarkdownText:

    def test_one_hash_and_one_space_are_removed(self):
        """A commented header keeps its own '#'."""
        assert markdown_text("#%% [markdown]#\n# #HEADER") == "#HEADER"

    def test_plain_comment_lines(self):
        source = "# %% [markdown]\n# Some *text*\n#\n# more"
        assert markdown_text(source) == "Some *text*\n\nmore"

    def test_comment_markdown_inverts_markdown_text(self):
        text = "# Title\n\nbody"
        assert markdown_text("# %% [markdown]\n" + comment_markdown(text)) == text


class TestSplitCells:

    def test_split_keeps_kinds_and_order(self):
        script = "\n".join([
            "import os",
            "# %%",
            "a = 1",
            "# %% [markdown]",
            "# Notes",
            "# %%",
            "a",
        ])
        cells = split_cells(script)

        assert [kind for kind, _ in cells] == [CellKind.CODE, CellKind.CODE, CellKind.MARKDOWN, CellKind.CODE]
        assert cells[0][1] == "import os"
        assert cells[1][1] == "a = 1"
        assert cells[2][1] == "# %% [markdown]\n# Notes"
        assert cells[3][1] == "a"

    def test_blank_code_cells_are_skipped(self):
        assert split_cells("# %%\n\n# %%\nx = 1\n") == [(CellKind.CODE, "x = 1")]

    def test_locate_cells_reports_source_lines(self):
        script = "# %%\n\nx = 1\n# %% [markdown]\n# hi\n# %%\ny = 2"
        located = locate_cells(script)

        assert [(kind, line) for kind, _, line in located] == [
            (CellKind.CODE, 2),
            (CellKind.MARKDOWN, 3),
            (CellKind.CODE, 6),
        ]

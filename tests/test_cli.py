"""
Tests for the command line entry point that need no kernel.
"""

import nbformat
import pytest

from notebook_engine.__main__ import main
from notebook_engine.observability import add_otel_trace_info, configure_logging


def test_import_prints_marker_source(tmp_path, capsys):
    nb = nbformat.v4.new_notebook()
    nb.cells = [nbformat.v4.new_markdown_cell("Intro"), nbformat.v4.new_code_cell("x = 1")]
    path = tmp_path / "in.ipynb"
    nbformat.write(nb, str(path))

    assert main(["--log-level", "WARNING", "import", str(path)]) == 0

    assert capsys.readouterr().out == "# %% [markdown]\n# Intro\n\n# %%\nx = 1\n"


def test_unknown_command_exits():
    with pytest.raises(SystemExit):
        main(["frobnicate"])


def test_log_events_outside_a_span_carry_no_trace_ids():
    configure_logging("WARNING", json_output=True)
    assert add_otel_trace_info(None, "info", {"event": "x"}) == {"event": "x"}

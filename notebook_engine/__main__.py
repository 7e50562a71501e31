"""
Command line entry point: ``python -m notebook_engine``.

Subcommands:
  probe                       report the usable interpreter and capabilities
  run SCRIPT [--timeout N]    execute the ``# %%`` cells of SCRIPT in order
  export SCRIPT OUT.ipynb     execute SCRIPT and save the results as a notebook
  import NOTEBOOK             print NOTEBOOK as ``# %%``-delimited source
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

from .cell_markers import locate_cells
from .config import get_settings
from .engine import JupyterExecution
from .environment import LocalInterpreterService
from .exceptions import EngineError
from .models import Cell, CellKind, CellState
from .observability import configure_logging, get_logger
from .process import AsyncioProcessService
from .translation import NotebookExporter, NotebookImporter
from .utils import render_output, truncate_output

logger = get_logger(__name__)


def _build_engine() -> JupyterExecution:
    env = dict(os.environ)
    process_service = AsyncioProcessService()
    return JupyterExecution(
        LocalInterpreterService(process_service, env),
        env=env,
        process_service=process_service,
    )


async def _probe() -> int:
    async with _build_engine() as engine:
        try:
            environment = await engine.get_usable_environment()
        except EngineError as e:
            print(f"No usable environment: {e}")
            return 1
        capabilities = await engine.get_capabilities()
    print(f"Environment: {environment.label} [{environment.path}]")
    print(f"  notebook:      {capabilities.notebook}")
    print(f"  kernel create: {capabilities.kernel_create}")
    print(f"  import:        {capabilities.import_supported}")
    return 0


async def _execute_script(script: Path, timeout: Optional[float], echo: bool) -> List[Cell]:
    text = script.read_text(encoding="utf-8")
    results: List[Cell] = []
    async with _build_engine() as engine:
        session = await engine.connect_to_notebook_server(timeout=timeout, cwd=str(script.parent.resolve()))
        for kind, source, line in locate_cells(text):
            cell = await session.run_cell(source, str(script), line)
            results.append(cell)
            if echo and kind is CellKind.CODE:
                for output in cell.outputs:
                    sys.stdout.write(truncate_output(render_output(output)))
    return results


async def _run(script: Path, timeout: Optional[float]) -> int:
    cells = await _execute_script(script, timeout, echo=True)
    failed = [cell for cell in cells if cell.state is CellState.ERROR]
    if failed:
        logger.error(f"{len(failed)} of {len(cells)} cell(s) failed")
        return 1
    return 0


async def _export(script: Path, target: Path, timeout: Optional[float]) -> int:
    cells = await _execute_script(script, timeout, echo=False)
    exporter = NotebookExporter(kernel_name=get_settings().kernel_name)
    exporter.export_to_file(cells, target)
    print(f"Exported {len(cells)} cell(s) to {target}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="notebook_engine", description="Notebook execution engine")
    parser.add_argument("--log-level", default=None, help="Override NBENGINE_LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("probe", help="Report the usable interpreter and its capabilities")

    run_parser = subparsers.add_parser("run", help="Execute the # %% cells of a script")
    run_parser.add_argument("script", type=Path)
    run_parser.add_argument("--timeout", type=float, default=None, help="Seconds allowed for connecting")

    export_parser = subparsers.add_parser("export", help="Execute a script and save it as a notebook")
    export_parser.add_argument("script", type=Path)
    export_parser.add_argument("output", type=Path)
    export_parser.add_argument("--timeout", type=float, default=None, help="Seconds allowed for connecting")

    import_parser = subparsers.add_parser("import", help="Print a notebook as # %% source")
    import_parser.add_argument("notebook", type=Path)

    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level, json_output=settings.log_json or None)

    if args.command == "import":
        sys.stdout.write(NotebookImporter().import_from_file(args.notebook))
        return 0

    try:
        if args.command == "probe":
            return asyncio.run(_probe())
        if args.command == "run":
            return asyncio.run(_run(args.script, args.timeout))
        return asyncio.run(_export(args.script, args.output, args.timeout))
    except EngineError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())

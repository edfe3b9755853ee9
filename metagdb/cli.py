# metagdb/cli.py
"""
Command-line interface for the metagdb importer, powered by Typer.
"""

import typer
from pathlib import Path
from typing import Optional
from datetime import datetime
import enum

from rich.console import Console
from rich.table import Table

from metagdb.utils.logging import setup_logger, get_logger
from metagdb.utils.config import load_config, resolve_path
from metagdb.db import api as db_api
from metagdb.pipeline.tasks import TASK_REGISTRY

# Create the main Typer application
app = typer.Typer(
    no_args_is_help=True,
    help="metagdb: import clinical-study metadata, reads and classifications, and export them.",
    context_settings={"help_option_names": ["-h", "--help"]},
)

# A shared dictionary to store global state from the callback
state = {}

DEFAULT_DB_NAME = "metagdb.sqlite"


class RunStep(str, enum.Enum):
    """Enum for available run steps."""

    import_ = "import"
    standards = "standards"
    export = "export"


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose (DEBUG) logging."
    ),
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to the SQLite database file. Defaults to run.db from config.",
        writable=True,
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Path to a file for logging, in addition to the console.",
    ),
):
    """
    Main callback to set up logging and global state.
    """
    state["verbose"] = verbose
    state["db"] = db
    state["log_file"] = log_file

    setup_logger(logfile=log_file, verbose=verbose)
    log = get_logger(__name__)
    log.debug("CLI context initialized. verbose=%s, db=%s", verbose, db)


def _db_path(cfg: dict, config_dir: Path) -> Path:
    if state.get("db") is not None:
        return Path(state["db"])
    configured = resolve_path((cfg.get("run") or {}).get("db"), config_dir)
    return configured or config_dir / DEFAULT_DB_NAME


@app.command()
def run(
    ctx: typer.Context,
    step: RunStep = typer.Argument(..., help="The import step to execute."),
    config_path: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        resolve_path=True,
        help="Path to the run configuration file.",
    ),
):
    """
    Execute an import step in a single transaction, or export samples.
    """
    log = get_logger(__name__)
    log.info("Executing 'run' command for step: '%s'", step.value)

    conn = None
    try:
        cfg = load_config(config_path)
        config_dir = config_path.parent

        conn = db_api.connect(_db_path(cfg, config_dir))
        db_api.init_schema(conn)

        task_cls = TASK_REGISTRY.get(step.value)
        if task_cls is None:
            log.error("Task '%s' is not available in this build.", step.value)
            raise typer.Exit(code=1)

        result = task_cls().exec(conn, cfg, verbose=state.get("verbose", False), config_dir=config_dir)
        if step is RunStep.export:
            typer.echo(f"Exported {len(result.samples)} sample(s) to {result.path}")
        elif result.committed:
            typer.echo(f"Imported change {result.id_change}")
        else:
            typer.echo("Nothing new to import")

    except typer.Exit:
        raise
    except Exception as e:
        log.exception("Failed to execute task '%s': %s", step.value, e)
        raise typer.Exit(code=1)
    finally:
        if conn is not None:
            conn.close()
            log.debug("Database connection closed.")


@app.command()
def ls(
    ctx: typer.Context,
    limit: Optional[int] = typer.Option(
        None, "--limit", "-n", min=1, help="Show only the most recent N changes."
    ),
):
    """
    List the committed import runs.
    """
    log = get_logger(__name__)
    db_path = state.get("db") or Path.cwd() / DEFAULT_DB_NAME
    if not Path(db_path).exists():
        log.error("Database not found: %s", db_path)
        raise typer.Exit(code=1)

    conn = db_api.connect(Path(db_path))
    try:
        db_api.init_schema(conn)
        rows = db_api.list_changes(conn, limit=limit)
    finally:
        conn.close()

    table = Table(title="Changes")
    for col in ("id", "user", "time", "origin", "samples", "sequences"):
        table.add_column(col)
    for r in rows:
        table.add_row(
            str(r["id"]),
            r["username"],
            datetime.fromtimestamp(r["ts"]).strftime("%Y-%m-%d %H:%M:%S"),
            r["ip"],
            str(r["samples"]),
            str(r["sequences"]),
        )
    Console().print(table)


if __name__ == "__main__":
    app()

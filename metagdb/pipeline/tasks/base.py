# metagdb/pipeline/tasks/base.py
"""
Defines the abstract base class for tasks and the context for their execution.
"""

import abc
import getpass
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from metagdb.db import api as db_api
from metagdb.pipeline.tasks.stages import ImportResult
from metagdb.utils.logging import get_logger

log = get_logger(__name__)


def default_operator() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "metagdb"


@dataclass
class TaskContext:
    """
    Execution context shared by all stages of one run.
    """
    db: sqlite3.Connection
    operator: str
    origin: str
    batch_size: int
    config_dir: Optional[Path] = None


class Task(abc.ABC):
    """
    An abstract base class for a runnable task.

    `exec` prepares inputs from the configuration (parsing files, before any
    database access) and then hands them to `consume_outputs`. Import tasks
    write inside a single locked transaction (`run_in_transaction`); the
    export task only reads.
    """
    name: str = "base_task"

    def exec(self, db_conn: sqlite3.Connection, cfg: Dict[str, Any],
             verbose: bool = False, config_dir: Optional[Path] = None) -> Any:
        """
        Orchestrates the full lifecycle of a task execution.
        """
        run_cfg = cfg.get("run", {}) or {}
        batch_size = int(run_cfg.get("batch_size") or db_api.DEFAULT_BATCH_SIZE)
        if batch_size < 1:
            raise ValueError(f"run.batch_size must be at least 1, got {batch_size}")

        ctx = TaskContext(
            db=db_conn,
            operator=str(run_cfg.get("operator") or default_operator()),
            origin=str(run_cfg.get("origin") or "127.0.0.1"),
            batch_size=batch_size,
            config_dir=config_dir,
        )

        log.info("Executing task '%s'", self.name)
        inputs, params = self.prepare(cfg, config_dir=config_dir)
        result = self.consume_outputs(ctx, inputs, params)
        log.info("Task '%s' finished.", self.name)
        return result

    def run_in_transaction(self, ctx: TaskContext, body: Callable[[ImportResult], None]) -> ImportResult:
        """
        Run `body` inside the locked run transaction.

        Commits (after refreshing derived tables) only if `body` added
        something; otherwise, and on any error, everything including the
        change record is rolled back.
        """
        conn = ctx.db
        db_api.begin_exclusive(conn)
        result = ImportResult()
        try:
            result.id_change = db_api.insert_change(conn, ctx.operator, ctx.origin)
            body(result)
            if not result.is_new:
                # Also restores the AUTOINCREMENT counter: the next run reuses this change id.
                conn.rollback()
                log.info("Nothing to insert.")
                return result
            log.debug("Refreshing derived tables.")
            db_api.refresh_views(conn)
            conn.commit()
            result.committed = True
            log.info("Insert successful (change id=%s).", result.id_change)
            return result
        except Exception:
            log.error("Rolling back run (change id=%s).", result.id_change)
            conn.rollback()
            raise

    @abc.abstractmethod
    def prepare(self, cfg: Dict[str, Any], config_dir: Optional[Path] = None) -> Tuple[Any, Any]:
        """
        Prepare inputs and parameters for the task from the configuration.

        Returns:
            A tuple of (inputs, params).
        """
        raise NotImplementedError

    @abc.abstractmethod
    def consume_outputs(self, ctx: TaskContext, inputs: Any, params: Any) -> Any:
        """
        Write the prepared inputs to the database, or read from it.
        """
        raise NotImplementedError

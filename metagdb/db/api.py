# metagdb/db/api.py
"""
This module provides a minimal, stateless API for database interactions:
connection setup, the run-level write lock, the idempotent bulk upsert used
by every import stage, and refreshing of the derived v_* tables.
"""

import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from metagdb.db.schema import ALL_TABLES, ALL_INDEXES, VIEW_QUERIES
from metagdb.errors import ImportLockError, UpsertIntegrityError
from metagdb.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_BATCH_SIZE = 80

# Keeps the id-resolution statements below SQLite's historic parameter limit.
_MAX_VARIABLES = 999

_LOCK_RETRY_MESSAGES: tuple = (
    "database is locked",
    "database is busy",
    "database is in use",
)


def _is_lock_error(err: sqlite3.Error) -> bool:
    """Return True if the sqlite error looks like a lock/busy condition."""
    msg = str(err).lower()
    return any(token in msg for token in _LOCK_RETRY_MESSAGES)


def _run_with_retry(
    conn: sqlite3.Connection,
    operation: Callable[[], Any],
    description: str,
    *,
    retries: int = 5,
    initial_delay: float = 0.1,
    backoff: float = 2.0,
) -> Any:
    """
    Execute `operation`, retrying when SQLite reports a lock/busy error.

    Only used outside of an import run (schema setup); the run itself never
    retries.
    """
    delay = initial_delay
    last_error: Optional[sqlite3.Error] = None
    for attempt in range(1, retries + 1):
        try:
            return operation()
        except sqlite3.OperationalError as err:
            last_error = err
            if not _is_lock_error(err):
                raise
            if attempt == retries:
                break
            log.warning(
                "SQLite busy during %s (attempt %s/%s); retrying in %.2fs",
                description,
                attempt,
                retries,
                delay,
            )
            if conn.in_transaction:
                conn.rollback()
            time.sleep(delay)
            delay *= backoff
    if last_error is not None:
        raise last_error


def _iter_chunks(items: Iterable[Any], size: int) -> Iterable[List[Any]]:
    """Yield successive chunks from an iterable."""
    chunk: List[Any] = []
    for item in items:
        chunk.append(item)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def connect(db_path: Path) -> sqlite3.Connection:
    """
    Establishes a connection to the SQLite database.

    Args:
        db_path: The file path to the SQLite database.

    Returns:
        A sqlite3.Connection object.
    """
    try:
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        log.debug("Database connection established to %s", db_path)
        return conn
    except sqlite3.Error as e:
        log.exception("Database connection failed: %s", e)
        raise


def init_schema(conn: sqlite3.Connection):
    """
    Initializes the database schema by creating all tables and indexes.

    Args:
        conn: An active sqlite3.Connection object.
    """
    def _create():
        with conn:
            for table_sql in ALL_TABLES:
                conn.execute(table_sql)
            for index_sql in ALL_INDEXES:
                conn.execute(index_sql)

    try:
        _run_with_retry(conn, _create, "schema initialization")
        log.debug("Database schema initialized successfully.")
    except sqlite3.Error as e:
        log.exception("Schema initialization failed: %s", e)
        raise


# ---------------------------------------------------------------------------
# Run transaction
# ---------------------------------------------------------------------------

def begin_exclusive(conn: sqlite3.Connection):
    """
    Open the run transaction and take the database write lock.

    The lock is held until commit or rollback. A second importer fails
    immediately instead of waiting.

    Raises:
        ImportLockError: if another connection holds the write lock.
    """
    if conn.in_transaction:
        raise RuntimeError("A transaction is already open on this connection.")
    conn.execute("PRAGMA busy_timeout = 0")
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as err:
        if _is_lock_error(err):
            raise ImportLockError("Another instance is already running") from err
        raise
    finally:
        conn.execute("PRAGMA busy_timeout = 5000")
    log.debug("Acquired database write lock.")


def insert_change(conn: sqlite3.Connection, username: str, origin: str = "127.0.0.1",
                  ts: Optional[int] = None) -> int:
    """Register the audit record of the current run and return its id."""
    if not username:
        raise ValueError("A username is required for the change record.")
    ts = int(time.time()) if ts is None else int(ts)
    cur = conn.execute(
        "INSERT INTO change (username, ts, ip) VALUES (?, ?, ?)",
        (username, ts, origin or "127.0.0.1"),
    )
    change_id = cur.lastrowid
    if change_id is None:
        raise UpsertIntegrityError("Registration of change ID failed")
    log.debug("Registered change id=%s for user '%s'", change_id, username)
    return change_id


# ---------------------------------------------------------------------------
# Idempotent bulk upsert
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RelationSpec:
    """
    Describes a relation for bulk_upsert.

    Attributes:
        name: Table name.
        columns: Columns supplied for every candidate row, in row order.
        key_columns: The natural key, a subset of `columns`.
        id_column: Column holding the generated identifier.
    """
    name: str
    columns: Tuple[str, ...]
    key_columns: Tuple[str, ...]
    id_column: str = "id"

    def __post_init__(self):
        missing = [k for k in self.key_columns if k not in self.columns]
        if missing:
            raise ValueError(f"Key columns {missing} not among columns of '{self.name}'")
        if not self.key_columns:
            raise ValueError(f"Relation '{self.name}' needs at least one key column")

    @property
    def key_positions(self) -> Tuple[int, ...]:
        return tuple(self.columns.index(k) for k in self.key_columns)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _dedupe_rows(spec: RelationSpec, rows: Iterable[Sequence[Any]]) -> Dict[tuple, tuple]:
    """Normalize rows and keep the first row per natural key, in input order."""
    positions = spec.key_positions
    unique: Dict[tuple, tuple] = {}
    for row in rows:
        if len(row) != len(spec.columns):
            raise ValueError(
                f"Row for '{spec.name}' has {len(row)} values, expected {len(spec.columns)}: {row!r}"
            )
        norm = tuple(_normalize_value(v) for v in row)
        key = tuple(norm[i] for i in positions)
        if key not in unique:
            unique[key] = norm
    return unique


def _resolve_ids(conn: sqlite3.Connection, spec: RelationSpec, keys: List[tuple]) -> Dict[tuple, int]:
    """
    Look up identifiers for `keys`.

    Keys are joined through a VALUES list carrying their position, so the
    result maps back to the exact key tuples that were submitted. NULL key
    parts match NULL (IS comparison).
    """
    width = len(spec.key_columns)
    cte_cols = ", ".join(["ord"] + [f"k{i}" for i in range(width)])
    row_ph = "(" + ", ".join(["?"] * (width + 1)) + ")"
    cond = " AND ".join(
        f"t.{_quote(col)} IS k.k{i}" for i, col in enumerate(spec.key_columns)
    )
    sql = (
        f"WITH k({cte_cols}) AS (VALUES {', '.join([row_ph] * len(keys))}) "
        f"SELECT k.ord, t.{_quote(spec.id_column)} FROM {_quote(spec.name)} t "
        f"INNER JOIN k ON {cond}"
    )
    params: List[Any] = []
    for i, key in enumerate(keys):
        params.append(i)
        params.extend(key)

    resolved: Dict[tuple, int] = {}
    for ordinal, ident in conn.execute(sql, params).fetchall():
        key = keys[ordinal]
        if key in resolved and resolved[key] != ident:
            raise UpsertIntegrityError(
                f"Natural key {key!r} of '{spec.name}' matches more than one row"
            )
        resolved[key] = ident
    return resolved


def bulk_upsert(
    conn: sqlite3.Connection,
    spec: RelationSpec,
    rows: Iterable[Sequence[Any]],
    *,
    is_new: bool = False,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> Tuple[Dict[tuple, int], bool]:
    """
    Insert rows that do not exist yet and resolve the id of every row.

    Rows are deduplicated by natural key (first occurrence wins), inserted in
    batches of at most `batch_size` with conflicts ignored, and then every
    distinct key is resolved to its identifier, whether it was just inserted
    or already stored. Existing rows are never modified.

    Args:
        conn: Connection inside the run transaction.
        spec: Relation description.
        rows: Candidate rows aligned with `spec.columns`.
        is_new: Running "something new" flag of the current run.
        batch_size: Maximum rows per insert batch. Does not affect the result.

    Returns:
        A tuple (key -> id, updated is_new flag). Keys are tuples in
        `spec.key_columns` order with blank strings normalized to None.

    Raises:
        UpsertIntegrityError: if not every key could be resolved.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")

    unique = _dedupe_rows(spec, rows)
    if not unique:
        return {}, is_new

    cols = ", ".join(_quote(c) for c in spec.columns)
    placeholders = ", ".join(["?"] * len(spec.columns))
    insert_sql = (
        f"INSERT INTO {_quote(spec.name)} ({cols}) VALUES ({placeholders}) "
        f"ON CONFLICT DO NOTHING"
    )

    inserted = 0
    for chunk in _iter_chunks(unique.values(), batch_size):
        before = conn.total_changes
        conn.executemany(insert_sql, chunk)
        inserted += conn.total_changes - before

    keys = list(unique.keys())
    lookup_size = max(1, min(batch_size, _MAX_VARIABLES // (len(spec.key_columns) + 1)))
    ids: Dict[tuple, int] = {}
    for chunk in _iter_chunks(keys, lookup_size):
        ids.update(_resolve_ids(conn, spec, chunk))

    if len(ids) != len(keys):
        missing = [k for k in keys if k not in ids][:5]
        raise UpsertIntegrityError(
            f"Resolved {len(ids)} id(s) for {len(keys)} distinct key(s) in '{spec.name}'. "
            f"Unresolved (first 5): {missing}"
        )

    log.debug(
        "Upserted %d row(s) into %s: %d new, %d existing",
        len(keys), spec.name, inserted, len(keys) - inserted,
    )
    return ids, is_new or inserted > 0


def insert_links(
    conn: sqlite3.Connection,
    spec: RelationSpec,
    rows: Iterable[Sequence[Any]],
    id_change: int,
    *,
    is_new: bool = False,
    batch_size: int = 100000,
) -> bool:
    """
    Duplicate-tolerant bulk insert for link tables.

    No identifiers are resolved. Whether anything was added is decided by
    looking for a row tagged with the current change id.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")
    if "id_change" not in spec.columns:
        raise ValueError(f"Relation '{spec.name}' has no id_change column")

    cols = ", ".join(_quote(c) for c in spec.columns)
    placeholders = ", ".join(["?"] * len(spec.columns))
    insert_sql = (
        f"INSERT INTO {_quote(spec.name)} ({cols}) VALUES ({placeholders}) "
        f"ON CONFLICT DO NOTHING"
    )
    total = 0
    for chunk in _iter_chunks((tuple(r) for r in rows), batch_size):
        conn.executemany(insert_sql, chunk)
        total += len(chunk)

    row = conn.execute(
        f"SELECT 1 FROM {_quote(spec.name)} WHERE id_change = ? LIMIT 1", (id_change,)
    ).fetchone()
    log.debug("Submitted %d link row(s) to %s; new rows present: %s", total, spec.name, row is not None)
    return is_new or row is not None


# ---------------------------------------------------------------------------
# Queries used by the import stages
# ---------------------------------------------------------------------------

def earliest_case_dates(conn: sqlite3.Connection, patient_ids: Iterable[int]) -> Dict[int, str]:
    """Return the earliest stored non-control sample date per patient."""
    ids = sorted(set(patient_ids))
    out: Dict[int, str] = {}
    for chunk in _iter_chunks(ids, _MAX_VARIABLES):
        ph = ", ".join(["?"] * len(chunk))
        rows = conn.execute(
            f"SELECT id_patient, min(createdate) FROM sample "
            f"WHERE iscontrol = 'f' AND id_patient IN ({ph}) GROUP BY id_patient",
            chunk,
        ).fetchall()
        for id_patient, first_date in rows:
            out[id_patient] = first_date
    return out


def failed_sample_checks(conn: sqlite3.Connection, sample_ids: Iterable[int]) -> List[sqlite3.Row]:
    """Rows of v_samples with isok = 'f' among `sample_ids`."""
    ids = sorted(set(sample_ids))
    out: List[sqlite3.Row] = []
    for chunk in _iter_chunks(ids, _MAX_VARIABLES):
        ph = ", ".join(["?"] * len(chunk))
        out.extend(conn.execute(
            f"SELECT id, id_patient, alias, createdate, timepoint, iscontrol FROM v_samples "
            f"WHERE isok = 'f' AND id IN ({ph}) ORDER BY id",
            chunk,
        ).fetchall())
    return out


def refresh_views(conn: sqlite3.Connection, names: Optional[Iterable[str]] = None):
    """Recompute the derived v_* tables (all of them by default)."""
    wanted = list(VIEW_QUERIES) if names is None else list(names)
    for name in wanted:
        if name not in VIEW_QUERIES:
            raise ValueError(f"Unknown derived table: {name}")
    for name in VIEW_QUERIES:
        if name not in wanted:
            continue
        conn.execute(f"DELETE FROM {_quote(name)}")
        conn.execute(f"INSERT INTO {_quote(name)} {VIEW_QUERIES[name]}")
        log.debug("Refreshed %s", name)


def list_changes(conn: sqlite3.Connection, limit: Optional[int] = None) -> List[sqlite3.Row]:
    """Change records with the number of samples and sequences they created."""
    sql = """
        SELECT c.id, c.username, c.ts, c.ip,
            (SELECT count(*) FROM sample s WHERE s.id_change = c.id) AS samples,
            (SELECT count(*) FROM sequence q WHERE q.id_change = c.id) AS sequences
        FROM change c ORDER BY c.id DESC
    """
    params: Tuple[Any, ...] = ()
    if limit is not None:
        sql += " LIMIT ?"
        params = (int(limit),)
    return conn.execute(sql, params).fetchall()


def natural_key(spec: RelationSpec, row: Sequence[Any]) -> tuple:
    """The key bulk_upsert uses for `row` in its returned mapping."""
    return tuple(_normalize_value(row[i]) for i in spec.key_positions)


# ---------------------------------------------------------------------------
# Queries used by the export
# ---------------------------------------------------------------------------

def lineage_counts(conn: sqlite3.Connection, sample_ids: Iterable[int],
                   batch_size: int = DEFAULT_BATCH_SIZE) -> List[sqlite3.Row]:
    """v_lineages rows of `sample_ids` with the sample's timepoint and control flag."""
    ids = sorted(set(sample_ids))
    out: List[sqlite3.Row] = []
    for chunk in _iter_chunks(ids, min(batch_size, _MAX_VARIABLES)):
        ph = ", ".join(["?"] * len(chunk))
        out.extend(conn.execute(
            f"""
            SELECT vl.id_sample, vl.samplename, vl.program, vl."database", vl.lineage, vl.count,
                vs.timepoint, vs.iscontrol
            FROM v_lineages vl INNER JOIN v_samples vs ON vs.id = vl.id_sample
            WHERE vl.id_sample IN ({ph})
            ORDER BY vl.id_sample, vl.lineage
            """,
            chunk,
        ).fetchall())
    log.debug("Fetched %d lineage row(s) for %d sample id(s)", len(out), len(ids))
    return out


def sample_metadata(conn: sqlite3.Connection, sample_ids: Iterable[int], names: Sequence[str],
                    statics: Sequence[str], batch_size: int = DEFAULT_BATCH_SIZE) -> List[sqlite3.Row]:
    """
    Measurements named in `names` for the case samples among `sample_ids`.

    Besides a sample's own measurements, the `statics` stored on the earliest
    case sample of its patient are reported for every case sample of that
    patient.
    """
    names = list(names)
    statics = list(statics)
    ids = sorted(set(sample_ids))
    size = max(1, min(batch_size, _MAX_VARIABLES - len(names) - len(statics)))
    out: List[sqlite3.Row] = []
    for chunk in _iter_chunks(ids, size):
        ph = ", ".join(["?"] * len(chunk))
        names_ph = ", ".join(["?"] * len(names))
        statics_ph = ", ".join(["?"] * len(statics))
        out.extend(conn.execute(
            f"""
            WITH firstdate AS (
                SELECT id_patient, min(createdate) AS createdate FROM sample
                WHERE iscontrol = 'f' GROUP BY id_patient
            )
            SELECT DISTINCT s.id AS id_sample, t.name, m.value
            FROM sample s
                INNER JOIN firstdate fd ON fd.id_patient = s.id_patient
                INNER JOIN sample src ON src.id_patient = s.id_patient AND src.iscontrol = 'f'
                INNER JOIN measurement m ON m.id_sample = src.id
                INNER JOIN type t ON t.id = m.id_type
            WHERE s.iscontrol = 'f' AND s.id IN ({ph}) AND t.name IN ({names_ph})
                AND (src.id = s.id OR (src.createdate = fd.createdate AND t.name IN ({statics_ph})))
            ORDER BY s.id, t.name
            """,
            [*chunk, *names, *statics],
        ).fetchall())
    return out

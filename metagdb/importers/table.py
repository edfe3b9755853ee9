# metagdb/importers/table.py
"""
Reads the study sheet and merges its rows into one record per subject.

A merged record is a plain dict::

    {
        "<static column>": value,                 # one entry per static column
        "_times_": {
            "<timepoint>": {"<measurement column>": value, ...},
        },
    }

Blank cells become None. Duplicate rows for a subject are merged; diverging
values abort the whole parse. Measurements and statics differ in one rule:
a measurement that is missing in one row but present in another row for the
same timepoint is a conflict, while a static that is missing in one row is
simply filled from the row that has it.
"""

from __future__ import annotations

import io
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd

from metagdb.errors import ImportConflictError, TableFormatError
from metagdb.utils.files import extract_bytes, read_bytes
from metagdb.utils.logging import get_logger

log = get_logger(__name__)

TIMES_KEY = "_times_"

# Spreadsheet engines render pre-epoch dates as negative serial numbers.
_NEGATIVE_INT_RE = re.compile(r"^-[0-9]+$")

SUPPORTED_FORMATS = ("csv", "tsv", "xlsx", "xls", "ods")
COMPRESSION_SUFFIXES = (".gz", ".bz2", ".zip")

_EXCEL_ENGINES = {"xlsx": "openpyxl", "xls": "xlrd", "ods": "odf"}


@dataclass(frozen=True)
class ColumnRoles:
    """Column indices per role. `id` and `timepoint` use their first index."""
    id: Sequence[int]
    timepoint: Sequence[int]
    static: Sequence[int] = field(default_factory=tuple)
    measurement: Sequence[int] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.id or not self.timepoint:
            raise TableFormatError("Column roles need an id and a timepoint column")

    @property
    def expected_fields(self) -> int:
        return len(self.id) + len(self.timepoint) + len(self.static) + len(self.measurement)

    @classmethod
    def from_config(cls, block: Optional[Mapping[str, Any]]) -> "ColumnRoles":
        if not block:
            return DEFAULT_ROLES
        try:
            return cls(
                id=tuple(int(i) for i in block["id"]),
                timepoint=tuple(int(i) for i in block["timepoint"]),
                static=tuple(int(i) for i in block.get("static", []) or []),
                measurement=tuple(int(i) for i in block.get("measurement", []) or []),
            )
        except KeyError as e:
            raise TableFormatError(f"Incomplete column roles, missing {e}") from e


# Layout of the SGA study sheet.
DEFAULT_ROLES = ColumnRoles(
    id=(0,),
    timepoint=(5,),
    static=(1, 2, 3, 9, 13, 15, 16, 17, 22, 23, 24),
    measurement=(6, 10, 11, 12, 25, 26, 27),
)

# Columns holding dates, aside from the timepoint column.
DEFAULT_DATE_COLUMNS = frozenset({"birth date", "mother's birth date"})


def _blank_to_none(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _cell(row: Sequence[Any], idx: int) -> Any:
    return row[idx] if idx < len(row) else None


def _check_date(value: Any, what: str):
    if value is not None and _NEGATIVE_INT_RE.match(str(value)):
        raise ImportConflictError(f"Invalid date '{value}' in {what}.")


def merge_rows(
    rows: Sequence[Sequence[Any]],
    roles: ColumnRoles = DEFAULT_ROLES,
    dates: Iterable[str] = DEFAULT_DATE_COLUMNS,
) -> Dict[str, Dict[str, Any]]:
    """
    Merge sheet rows (header first) into per-subject records.

    Raises:
        TableFormatError: for a blank header cell, a header shorter than the
            declared roles or role indices outside the header.
        ImportConflictError: for missing or invalid dates, reserved names,
            unknown date columns and diverging duplicate values.
    """
    if not rows:
        raise TableFormatError("Empty sheet")

    headers = [_blank_to_none(h) for h in rows[0]]
    if any(h is None for h in headers):
        raise TableFormatError("Empty field in header")
    headers = [str(h) for h in headers]
    if roles.expected_fields > len(headers):
        raise TableFormatError(
            f"Too few fields in header. Expected: {roles.expected_fields}; found: {len(headers)}"
        )
    for idx in (*roles.id, *roles.timepoint, *roles.static, *roles.measurement):
        if idx < 0 or idx >= len(headers):
            raise TableFormatError(f"Column index {idx} outside of header with {len(headers)} fields")

    static_names = [headers[i] for i in roles.static]
    if TIMES_KEY in static_names:
        raise ImportConflictError(f"Illegal static name {TIMES_KEY}")

    id_idx = roles.id[0]
    time_idx = roles.timepoint[0]
    time_header = headers[time_idx]
    date_columns = sorted(set(dates or ()))

    data: Dict[str, Dict[str, Any]] = {}
    for row in rows[1:]:
        subject = _blank_to_none(_cell(row, id_idx))
        if subject is None:
            continue
        subject = str(subject)

        time = _blank_to_none(_cell(row, time_idx))
        if time is None:
            raise ImportConflictError(f"No date for id '{subject}'.")
        time = str(time)
        _check_date(time, f"timepoint of id '{subject}'")

        measures = {headers[i]: _blank_to_none(_cell(row, i)) for i in roles.measurement}
        statics = {headers[i]: _blank_to_none(_cell(row, i)) for i in roles.static}

        for date_col in date_columns:
            if date_col in statics:
                _check_date(statics[date_col], f"'{date_col}' of id '{subject}'")
            elif date_col in measures:
                _check_date(measures[date_col], f"'{date_col}' of id '{subject}'")
            elif date_col != time_header:
                raise ImportConflictError(f"Wrong column name '{date_col}' in dates")

        record = data.get(subject)
        if record is None:
            data[subject] = {TIMES_KEY: {time: dict(measures)}, **statics}
            continue

        _merge_measures(record[TIMES_KEY], time, measures)
        _merge_statics(record, subject, statics)

    log.debug("Merged %d row(s) into %d subject(s)", max(len(rows) - 1, 0), len(data))
    return data


def _merge_measures(times: Dict[str, Dict[str, Any]], time: str, measures: Mapping[str, Any]):
    stored = times.get(time)
    if stored is None:
        times[time] = dict(measures)
        return
    for name, value in measures.items():
        if name not in stored:
            stored[name] = value
            continue
        old = stored[name]
        if old is None and value is None:
            continue
        if old is None or value is None or old != value:
            raise ImportConflictError(f"Different values for '{name}' at time '{time}'")


def _merge_statics(record: Dict[str, Any], subject: str, statics: Mapping[str, Any]):
    for name, value in statics.items():
        if name not in record or record[name] is None:
            record[name] = value
            continue
        if value is None:
            continue
        if record[name] != value:
            raise ImportConflictError(f"Different values for '{name}' for id '{subject}'")


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def _cell_to_str(value: Any) -> Optional[str]:
    """Render a spreadsheet cell the way it reads in the sheet."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float):
        if pd.isna(value):
            return None
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, (pd.Timestamp, datetime)):
        if (value.hour, value.minute, value.second, value.microsecond) == (0, 0, 0, 0):
            return value.strftime("%Y-%m-%d")
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip() or None


def split_format(fmt: str) -> tuple:
    """'csv.gz' -> ('csv', True)."""
    fmt = (fmt or "").strip().lower().lstrip(".")
    compressed = False
    for suffix in COMPRESSION_SUFFIXES:
        if fmt.endswith(suffix):
            fmt = fmt[: -len(suffix)]
            compressed = True
            break
    if fmt not in SUPPORTED_FORMATS:
        raise TableFormatError(f"Unsupported format '{fmt}'")
    return fmt, compressed


def read_table(path: Union[str, Path], fmt: str) -> List[List[Optional[str]]]:
    """
    Read the first (and only) sheet of a table file as rows of strings.

    `fmt` is one of csv, tsv, xlsx, xls or ods, optionally followed by .gz,
    .bz2 or .zip; compressed content is unwrapped by one level. Spreadsheet
    containers are never unwrapped themselves.
    """
    base_fmt, compressed = split_format(fmt)
    content = read_bytes(path)
    if compressed:
        content = extract_bytes(content, max_level=1)
    if not content or not content.strip():
        raise TableFormatError(f"Empty table file: {path}")

    try:
        if base_fmt in ("csv", "tsv"):
            text = content.decode("utf-8-sig")
            df = pd.read_csv(
                io.StringIO(text),
                sep="," if base_fmt == "csv" else "\t",
                header=None,
                dtype=str,
                keep_default_na=False,
            )
            if df.map(lambda v: isinstance(v, str) and ("\n" in v or "\r" in v)).any().any():
                raise TableFormatError("Newlines in fields not supported for CSV")
        else:
            sheets = pd.read_excel(
                io.BytesIO(content),
                sheet_name=None,
                header=None,
                dtype=object,
                engine=_EXCEL_ENGINES[base_fmt],
            )
            if len(sheets) > 1:
                raise TableFormatError("More than one sheet found")
            df = next(iter(sheets.values()))
    except TableFormatError:
        raise
    except (ValueError, UnicodeDecodeError, pd.errors.ParserError) as e:
        raise TableFormatError(f"Could not parse spreadsheet {path}: {e}") from e

    if df.empty:
        raise TableFormatError(f"Empty sheet: {path}")

    rows = [[_cell_to_str(v) for v in record] for record in df.itertuples(index=False, name=None)]
    log.debug("Read %d row(s) from %s (%s)", len(rows), path, fmt)
    return rows


def parse_table(
    path: Union[str, Path],
    fmt: str,
    roles: ColumnRoles = DEFAULT_ROLES,
    dates: Iterable[str] = DEFAULT_DATE_COLUMNS,
) -> Dict[str, Dict[str, Any]]:
    """Read a study table and merge it into per-subject records."""
    rows = read_table(path, fmt)
    data = merge_rows(rows, roles, dates)
    if not data:
        raise TableFormatError(f"No subjects found in table {path}")
    log.info("Parsed %d subject(s) from %s", len(data), Path(path).name)
    return data


def infer_format(path: Union[str, Path]) -> str:
    """Guess the table format from the file name, e.g. 'study.csv.gz' -> 'csv.gz'."""
    suffixes = [s.lower().lstrip(".") for s in Path(path).suffixes]
    if not suffixes:
        raise TableFormatError(f"Cannot infer table format of {path}; set it explicitly")
    if "." + suffixes[-1] in COMPRESSION_SUFFIXES and len(suffixes) >= 2:
        return f"{suffixes[-2]}.{suffixes[-1]}"
    return suffixes[-1]

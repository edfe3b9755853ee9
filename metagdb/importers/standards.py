# metagdb/importers/standards.py
"""
Parser for the WHO child growth standard tables (weight-for-age, LMS method).

Each table has a header row followed by rows whose first four columns are
age in days, L, M and S.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from metagdb.errors import FormatError
from metagdb.importers.table import infer_format, read_table
from metagdb.utils.logging import get_logger

log = get_logger(__name__)

WEIGHT_FOR_AGE = "weight_for_age"


@dataclass(frozen=True)
class StandardRow:
    name: str
    sex: str
    age: int
    l: float
    m: float
    s: float

    def as_tuple(self):
        return (self.name, self.sex, self.age, self.l, self.m, self.s)


def _number(value: Optional[str], row_no: int, path: Path) -> float:
    if value is None or not str(value).strip():
        raise FormatError(f"Empty value in row {row_no} of {path.name}")
    try:
        return float(value)
    except ValueError as e:
        raise FormatError(f"Non-numeric value {value!r} in row {row_no} of {path.name}") from e


def parse_standard(path: Union[str, Path], sex: str, name: str = WEIGHT_FOR_AGE,
                   fmt: Optional[str] = None) -> List[StandardRow]:
    """Parse one WHO table for `sex` ('f' or 'm')."""
    if sex not in ("f", "m"):
        raise ValueError(f"Sex must be 'f' or 'm', got {sex!r}")
    path = Path(path)
    rows = read_table(path, fmt or infer_format(path))
    out: List[StandardRow] = []
    for row_no, row in enumerate(rows[1:], start=2):
        cells = list(row[:4]) + [None] * (4 - len(row[:4]))
        age, l, m, s = (_number(c, row_no, path) for c in cells)
        if not age.is_integer():
            raise FormatError(f"Age {age} in row {row_no} of {path.name} is not a whole number of days")
        out.append(StandardRow(name=name, sex=sex, age=int(age), l=l, m=m, s=s))
    if not out:
        raise FormatError(f"No data rows in {path}")
    log.debug("Parsed %d standard row(s) for sex=%s from %s", len(out), sex, path.name)
    return out


def parse_who(girls: Union[str, Path], boys: Union[str, Path]) -> List[StandardRow]:
    """Parse the girls' and boys' weight-for-age tables."""
    return parse_standard(girls, "f") + parse_standard(boys, "m")

import csv
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from metagdb.db import api as db_api

STUDY_HEADER = [
    "id", "hospital code", "birth date", "date", "body mass",
    "number of run and barcode", "program", "database",
]

STUDY_COLUMNS = {
    "id": [0],
    "timepoint": [3],
    "static": [1, 2],
    "measurement": [4, 5, 6, 7],
}


@pytest.fixture
def cli_runner():
    """Reusable Typer CLI runner with stderr merged into stdout for assertions."""
    return CliRunner()


@pytest.fixture
def conn(tmp_path):
    c = db_api.connect(tmp_path / "metagdb.sqlite")
    db_api.init_schema(c)
    yield c
    c.close()


def write_csv(path: Path, rows) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="") as fh:
        csv.writer(fh).writerows(rows)
    return path


def write_study(base_dir: Path, rows, name: str = "study.csv") -> Path:
    """Write a study sheet with STUDY_HEADER; rows may omit trailing columns."""
    padded = [list(r) + [""] * (len(STUDY_HEADER) - len(r)) for r in rows]
    return write_csv(base_dir / name, [STUDY_HEADER] + padded)


def fastq_record(read_id: str, seq: str = "ACGT", qual: str = "IIII",
                 runid: str = "run1", barcode: str = "barcode01") -> str:
    return f"@{read_id} runid={runid} barcode={barcode} flow_cell_id=FC1\n{seq}\n+\n{qual}\n"


def write_run(data_dir: Path, pattern: str, read_ids, classified=None) -> Path:
    """
    Create <data_dir>/<pattern>/ with a FASTQ of `read_ids` and, if given, a
    MetaG file classifying `classified` (read id -> [(rank, taxon), ...]).
    """
    run_dir = data_dir / pattern
    run_dir.mkdir(parents=True, exist_ok=True)
    (run_dir / "reads.fastq").write_text("".join(fastq_record(r) for r in read_ids))
    if classified is not None:
        lines = []
        for read_id, lineage in classified.items():
            lines.append(f">{read_id}")
            lines.extend(f"{rank}: {taxon}: 10(100)" for rank, taxon in lineage)
        (run_dir / "out.calc.LIN.txt").write_text("\n".join(lines) + "\n")
    return run_dir


def write_config(base_dir: Path, import_block: dict, **run) -> Path:
    cfg = {
        "run": {"operator": "tester", "origin": "10.0.0.1", **run},
        "import": {"columns": STUDY_COLUMNS, "dates": ["birth date"], **import_block},
    }
    cfg_path = base_dir / "import.yaml"
    cfg_path.write_text(yaml.safe_dump(cfg))
    return cfg_path


def count(conn, table: str) -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def write_taxonomy(tax_dir: Path) -> Path:
    """Minimal NCBI taxonomy dump: root > Bacteria > Bacillota > S. aureus."""
    tax_dir.mkdir(parents=True, exist_ok=True)
    nodes = [
        (1, 1, "no rank"),
        (2, 1, "superkingdom"),
        (1239, 2, "phylum"),
        (1280, 1239, "species"),
    ]
    names = [
        (1, "root"),
        (2, "Bacteria"),
        (1239, "Bacillota"),
        (1280, "Staphylococcus aureus"),
    ]
    (tax_dir / "nodes.dmp").write_text(
        "".join(f"{t}\t|\t{p}\t|\t{r}\t|\n" for t, p, r in nodes)
    )
    (tax_dir / "names.dmp").write_text(
        "".join(f"{t}\t|\t{n}\t|\t\t|\tscientific name\t|\n" for t, n in names)
        + "1280\t|\tS. aureus\t|\t\t|\tsynonym\t|\n"
    )
    return tax_dir

import gzip
import shutil
from pathlib import Path

import pytest

from conftest import STUDY_COLUMNS, count, write_config, write_csv, write_run, write_study, write_taxonomy
from metagdb.db import api as db_api
from metagdb.errors import ClassificationMismatchError, FileAmbiguityError, ImportConflictError, ImportLockError
from metagdb.pipeline.plugins.classifiers import UNMATCHED
from metagdb.pipeline.tasks import TASK_REGISTRY, ImportTask, StandardsTask
from metagdb.pipeline.tasks.base import TaskContext
from metagdb.pipeline.tasks.stages import FILTERED, ImportResult, TYPE_CATALOG, insert_measurements
from metagdb.utils.config import load_config

LINEAGE = [("domain", "Bacteria"), ("phylum", "Bacillota")]


def run_import(conn, cfg_path: Path, task=None):
    task = task or ImportTask()
    return task.exec(conn, load_config(cfg_path), config_dir=cfg_path.parent)


def measurement_values(conn):
    return dict(conn.execute(
        "SELECT t.name, m.value FROM measurement m INNER JOIN type t ON t.id = m.id_type"
    ).fetchall())


def test_single_measurement_roundtrip(conn, tmp_path):
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-02", "4m"]])
    cfg = write_config(tmp_path, {"table": "study.csv"})

    result = run_import(conn, cfg)

    assert result.is_new and result.committed
    assert result.id_change == 1
    assert count(conn, "patient") == 1
    assert count(conn, "sample") == 1
    assert count(conn, "measurement") == 1
    assert count(conn, "type") == len(TYPE_CATALOG)
    assert measurement_values(conn) == {"body mass": "4m"}
    row = conn.execute("SELECT createdby, iscontrol, id_change FROM sample").fetchone()
    assert tuple(row) == ("tester", "f", 1)
    assert tuple(conn.execute("SELECT timepoint, isok FROM v_samples").fetchone()) == ("meconium", "t")
    change = conn.execute("SELECT username, ip FROM change").fetchone()
    assert tuple(change) == ("tester", "10.0.0.1")

    again = run_import(conn, cfg)

    assert again.is_new is False
    assert again.committed is False
    assert count(conn, "change") == 1
    assert count(conn, "sample") == 1
    assert count(conn, "measurement") == 1
    assert not conn.in_transaction

    # The rolled-back change id is handed out again.
    write_study(tmp_path, [["P2", "H002", "2020-01-01", "2020-01-02", "5m"]])
    assert run_import(conn, cfg).id_change == 2


def test_first_date_cannot_move_earlier(conn, tmp_path):
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-15", "3"]])
    cfg = write_config(tmp_path, {"table": "study.csv"})
    assert run_import(conn, cfg).committed

    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-03", "2"]], name="earlier.csv")
    cfg = write_config(tmp_path, {"table": "earlier.csv"})
    with pytest.raises(ImportConflictError, match="new first date"):
        run_import(conn, cfg)

    assert count(conn, "change") == 1
    assert count(conn, "sample") == 1
    assert not conn.in_transaction


def test_later_dates_and_statics(conn, tmp_path):
    header = ["id", "hospital code", "birth date", "date", "body mass", "mother's height"]
    columns = {"id": [0], "timepoint": [3], "static": [1, 2, 5], "measurement": [4]}
    write_csv(tmp_path / "first.csv", [header, ["P1", "H001", "2020-01-01", "2020-01-15", "3", "170"]])
    cfg = write_config(tmp_path, {"table": "first.csv", "columns": columns})
    run_import(conn, cfg)

    write_csv(tmp_path / "second.csv", [
        header,
        ["P1", "H001", "2020-01-01", "2020-01-15", "3", "170"],
        ["P1", "H001", "2020-01-01", "2020-02-15", "5", "170"],
    ])
    cfg = write_config(tmp_path, {"table": "second.csv", "columns": columns})
    result = run_import(conn, cfg)

    assert result.committed
    assert count(conn, "sample") == 2
    # The static stays on the first sample only.
    rows = conn.execute(
        "SELECT s.createdate, t.name, m.value FROM measurement m "
        "INNER JOIN sample s ON s.id = m.id_sample INNER JOIN type t ON t.id = m.id_type "
        "ORDER BY s.createdate, t.name"
    ).fetchall()
    assert [tuple(r) for r in rows] == [
        ("2020-01-15", "body mass", "3"),
        ("2020-01-15", "mother's height", "170"),
        ("2020-02-15", "body mass", "5"),
    ]


def test_ambiguous_timepoint_rolls_back(conn, tmp_path):
    write_study(tmp_path, [
        ["P1", "H001", "2020-01-01", "2020-01-12", "3"],
        ["P1", "H001", "2020-01-01", "2020-01-14", "4"],
    ])
    cfg = write_config(tmp_path, {"table": "study.csv"})
    with pytest.raises(ImportConflictError, match="invalid or not unique"):
        run_import(conn, cfg)
    assert count(conn, "patient") == 0
    assert count(conn, "change") == 0


def test_unbucketed_timepoint_rolls_back(conn, tmp_path):
    # Seven days after birth falls between the 3d and 2w buckets.
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-08", "3"]])
    cfg = write_config(tmp_path, {"table": "study.csv"})
    with pytest.raises(ImportConflictError, match="Timepoint 'NA'"):
        run_import(conn, cfg)
    assert count(conn, "patient") == 0
    assert count(conn, "sample") == 0
    assert count(conn, "change") == 0
    assert not conn.in_transaction


def test_coded_values_are_translated(conn, tmp_path):
    header = ["id", "hospital code", "birth date", "date", "sex", "probiotics", "mother's birth date"]
    columns = {"id": [0], "timepoint": [3], "static": [1, 2, 6], "measurement": [4, 5]}
    write_csv(tmp_path / "coded.csv", [header, ["P1", "H001", "2020-01-01", "2020-01-01", "2", "1", "01.02.1990"]])
    cfg = write_config(tmp_path, {
        "table": "coded.csv", "columns": columns, "dates": ["birth date", "mother's birth date"],
    })
    run_import(conn, cfg)
    assert measurement_values(conn) == {
        "sex": "f", "probiotics": "yes", "mother's birth date": "1990-02-01",
    }


def test_untranslatable_and_unknown_types(conn, tmp_path):
    ctx = TaskContext(db=conn, operator="tester", origin="127.0.0.1", batch_size=80)
    result = ImportResult(id_change=db_api.insert_change(conn, "tester"))
    with pytest.raises(ImportConflictError, match="cannot be translated"):
        insert_measurements(ctx, result, {1: {"_isControl_": "f", "sex": "m"}}, {"sex": 1})
    with pytest.raises(ImportConflictError, match="Unexpected type"):
        insert_measurements(ctx, result, {1: {"_isControl_": "f", "shoe size": "42"}}, {"sex": 1})
    # Controls, blacklisted and empty attributes are skipped.
    assert insert_measurements(ctx, result, {
        1: {"_isControl_": "t", "shoe size": "42"},
        2: {"_isControl_": "f", "program": "MetaG", "sex": None, "body mass": "  "},
    }, {"sex": 1}) == 0


def test_sequences_and_filtered_reads(conn, tmp_path):
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-02", "0", "run1_bar01", "MetaG", "db1"]])
    write_run(tmp_path / "data", "run1_bar01", ["r1", "r2"], classified={"r1": LINEAGE})
    cfg = write_config(tmp_path, {"table": "study.csv", "data": "data"})

    result = run_import(conn, cfg)

    assert result.committed
    # Case and water control; the control run is absent.
    assert count(conn, "sample") == 2
    assert count(conn, "sequence") == 2
    assert count(conn, "classification") == 2
    assert measurement_values(conn) == {"body mass": "0"}

    seq = conn.execute("SELECT runid, barcode, flowcellid, seqlen, seqerr FROM sequence WHERE readid = 'r1'").fetchone()
    assert tuple(seq)[:4] == ("run1", "barcode01", "FC1", 4)
    assert seq[4] == pytest.approx(1e-4)

    lineage = dict(conn.execute(
        "SELECT t.rank, t.name FROM taxonomy t "
        "INNER JOIN taxclass tc ON tc.id_taxonomy = t.id "
        "INNER JOIN classification c ON c.id = tc.id_classification "
        "INNER JOIN sequence s ON s.id = c.id_sequence WHERE s.readid = ?", ("r2",)
    ).fetchall())
    assert set(lineage.values()) == {FILTERED}
    assert len(lineage) == 10

    r1 = dict(conn.execute(
        "SELECT t.rank, t.name FROM taxonomy t "
        "INNER JOIN taxclass tc ON tc.id_taxonomy = t.id "
        "INNER JOIN classification c ON c.id = tc.id_classification "
        "INNER JOIN sequence s ON s.id = c.id_sequence WHERE s.readid = ?", ("r1",)
    ).fetchall())
    assert r1["domain"] == "Bacteria"
    assert r1["phylum"] == "Bacillota"
    assert r1["strain"] == "UNMATCHED"
    assert count(conn, "taxclass") == 20
    assert count(conn, "v_lineages") == 2
    assert count(conn, "v_taxa") == 20

    again = run_import(conn, cfg)
    assert again.is_new is False
    assert count(conn, "taxclass") == 20


def test_classified_read_missing_from_fastq_is_fatal(conn, tmp_path):
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-02", "3", "run1_bar01", "MetaG", "db1"]])
    write_run(tmp_path / "data", "run1_bar01", ["r1"], classified={"r1": LINEAGE, "r9": LINEAGE})
    cfg = write_config(tmp_path, {"table": "study.csv", "data": "data"})

    with pytest.raises(ClassificationMismatchError, match="run1_bar01"):
        run_import(conn, cfg)
    assert count(conn, "sequence") == 0
    assert count(conn, "change") == 0


def test_missing_files_are_skipped(conn, tmp_path):
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-02", "3", "run7_bar01", "MetaG", "db1"]])
    (tmp_path / "data").mkdir()
    cfg = write_config(tmp_path, {"table": "study.csv", "data": "data"})

    result = run_import(conn, cfg)
    assert result.committed
    assert count(conn, "sample") == 2
    assert count(conn, "sequence") == 0


def test_ambiguous_data_directories_abort_the_run(conn, tmp_path):
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-02", "3", "run1_bar01", "MetaG", "db1"]])
    write_run(tmp_path / "data" / "a", "run1_bar01", ["r1"])
    write_run(tmp_path / "data" / "b", "run1_bar01", ["r1"])
    cfg = write_config(tmp_path, {"table": "study.csv", "data": "data"})
    with pytest.raises(FileAmbiguityError, match="too unspecific"):
        run_import(conn, cfg)
    assert count(conn, "sequence") == 0
    assert count(conn, "change") == 0


def test_duplicate_data_files_abort_the_run(conn, tmp_path):
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-02", "3", "run1_bar01", "MetaG", "db1"]])
    run_dir = write_run(tmp_path / "data", "run1_bar01", ["r1"])
    (run_dir / "reads.fastq.gz").write_bytes(gzip.compress((run_dir / "reads.fastq").read_bytes()))
    cfg = write_config(tmp_path, {"table": "study.csv", "data": "data"})
    with pytest.raises(FileAmbiguityError, match="duplicate"):
        run_import(conn, cfg)
    assert count(conn, "sample") == 0
    assert count(conn, "change") == 0


def read_lineage(conn, read_id: str):
    return dict(conn.execute(
        "SELECT t.rank, t.name FROM taxonomy t "
        "INNER JOIN taxclass tc ON tc.id_taxonomy = t.id "
        "INNER JOIN classification c ON c.id = tc.id_classification "
        "INNER JOIN sequence s ON s.id = c.id_sequence WHERE s.readid = ?", (read_id,)
    ).fetchall())


def test_kraken_import_resolves_lineages(conn, tmp_path):
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-02", "3", "run1_bar01", "Kraken2", "standard"]])
    run_dir = write_run(tmp_path / "data", "run1_bar01", ["r1", "r2", "r3"])
    (run_dir / "out.kraken2").write_text("C\tr1\t1280\t150\t1280:10\nU\tr2\t0\t140\t0:10\n")
    write_taxonomy(tmp_path / "taxonomy")
    cfg = write_config(tmp_path, {"table": "study.csv", "data": "data", "taxonomy": "taxonomy"})

    result = run_import(conn, cfg)

    assert result.committed
    assert count(conn, "sequence") == 3
    assert [tuple(r) for r in conn.execute('SELECT DISTINCT program, "database" FROM classification')] == [
        ("Kraken2", "standard"),
    ]
    r1 = read_lineage(conn, "r1")
    assert r1["domain"] == "Bacteria"
    assert r1["phylum"] == "Bacillota"
    assert r1["genus"] is None
    assert r1["species"] == "Staphylococcus aureus"
    assert r1["strain"] == UNMATCHED
    assert set(read_lineage(conn, "r2").values()) == {UNMATCHED}
    assert set(read_lineage(conn, "r3").values()) == {FILTERED}
    assert count(conn, "v_lineages") == 3

    assert run_import(conn, cfg).is_new is False


def test_case_samples_cannot_share_a_run(conn, tmp_path):
    write_study(tmp_path, [
        ["P1", "H001", "2020-01-01", "2020-01-02", "3", "run1_bar01", "MetaG", "db1"],
        ["P2", "H002", "2020-01-01", "2020-01-02", "3", "run1_bar01", "MetaG", "db1"],
    ])
    write_run(tmp_path / "data", "run1_bar01", ["r1"])
    cfg = write_config(tmp_path, {"table": "study.csv", "data": "data"})
    with pytest.raises(ImportConflictError, match="same directory pattern"):
        run_import(conn, cfg)


def test_controls_share_a_run_and_unknown_classifier(conn, tmp_path):
    write_study(tmp_path, [
        ["P1", "H001", "2020-01-01", "2020-01-02", "3", "run1_bar01", "MetaG", "db1"],
        ["P2", "H002", "2020-01-01", "2020-01-02", "3", "run1_bar02", "MetaG", "db1"],
    ])
    data = tmp_path / "data"
    write_run(data, "run1_bar99", ["c1"], classified={})
    cfg = write_config(tmp_path, {"table": "study.csv", "data": "data"})

    result = run_import(conn, cfg)
    assert result.committed
    # One control read per control sample, all FILTERED.
    assert count(conn, "sequence") == 2
    assert {r[0] for r in conn.execute("SELECT name FROM taxonomy")} == {FILTERED}

    write_study(tmp_path, [["P3", "H003", "2020-01-01", "2020-01-02", "3", "run2_bar01", "blast", "db1"]], name="next.csv")
    write_run(data, "run2_bar01", ["r1"])
    cfg = write_config(tmp_path, {"table": "next.csv", "data": "data"})
    with pytest.raises(ValueError, match="Unknown classifier"):
        run_import(conn, cfg)


def test_data_archive_is_extracted(conn, tmp_path):
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-02", "3", "run1_bar01", "MetaG", "db1"]])
    write_run(tmp_path / "staging", "run1_bar01", ["r1", "r2"], classified={"r1": LINEAGE})
    archive = shutil.make_archive(str(tmp_path / "runs"), "zip", tmp_path / "staging")
    cfg = write_config(tmp_path, {"table": "study.csv", "data": Path(archive).name})

    assert run_import(conn, cfg).committed
    assert count(conn, "sequence") == 2


def test_lock_held_by_other_importer(tmp_path):
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-02", "3"]])
    cfg = write_config(tmp_path, {"table": "study.csv"})
    db_path = tmp_path / "shared.sqlite"

    holder = db_api.connect(db_path)
    db_api.init_schema(holder)
    holder.execute("BEGIN IMMEDIATE")
    conn = db_api.connect(db_path)
    try:
        with pytest.raises(ImportLockError):
            run_import(conn, cfg)
    finally:
        holder.rollback()
        holder.close()
    assert run_import(conn, cfg).committed
    conn.close()


def write_standards(base_dir: Path):
    header = ["Day", "L", "M", "S"]
    write_csv(base_dir / "wfa_girls.csv", [header, ["0", "0.3809", "3.2322", "0.14171"], ["1", "0.3259", "3.1957", "0.14578"]])
    write_csv(base_dir / "wfa_boys.csv", [header, ["0", "0.3487", "3.3464", "0.14602"]])


def test_standards_task(conn, tmp_path):
    write_standards(tmp_path)
    cfg = write_config(tmp_path, {"standards": {"girls": "wfa_girls.csv", "boys": "wfa_boys.csv"}})
    task = TASK_REGISTRY["standards"]()
    assert isinstance(task, StandardsTask)

    assert run_import(conn, cfg, task).committed
    rows = conn.execute("SELECT name, sex, age, m FROM standard ORDER BY sex, age").fetchall()
    assert [tuple(r) for r in rows] == [
        ("weight_for_age", "f", 0, 3.2322),
        ("weight_for_age", "f", 1, 3.1957),
        ("weight_for_age", "m", 0, 3.3464),
    ]
    assert run_import(conn, cfg, task).is_new is False


def test_standards_need_both_tables(conn, tmp_path):
    write_standards(tmp_path)
    write_study(tmp_path, [["P1", "H001", "2020-01-01", "2020-01-02", "3"]])
    cfg = write_config(tmp_path, {"table": "study.csv", "standards": {"girls": "wfa_girls.csv"}})
    with pytest.raises(ValueError, match="both girls and boys"):
        run_import(conn, cfg)

    cfg = write_config(tmp_path, {
        "table": "study.csv", "standards": {"girls": "wfa_girls.csv", "boys": "wfa_boys.csv"},
    })
    assert run_import(conn, cfg).committed
    assert count(conn, "standard") == 3


def test_missing_import_section_and_table(conn, tmp_path):
    with pytest.raises(ValueError, match="import"):
        ImportTask().exec(conn, {"run": {"operator": "tester"}})
    cfg = write_config(tmp_path, {"table": "missing.csv"})
    with pytest.raises(FileNotFoundError):
        run_import(conn, cfg)
    assert STUDY_COLUMNS["id"] == [0]

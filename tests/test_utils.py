import bz2
import gzip
import io
import zipfile

import pytest

from metagdb.errors import FileAmbiguityError, FileDiscoveryError, FormatError
from metagdb.utils.config import load_config, resolve_path
from metagdb.utils.files import extract_bytes, find_files, read_bytes, read_text, strip_extensions
from metagdb.utils.logging import get_logger, setup_logger


def test_load_config_reads_yaml(tmp_path):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        "run:\n"
        "  operator: tester\n"
        "import:\n"
        "  dates:\n"
        "    - birth date\n"
    )

    data = load_config(cfg_path)
    assert data["run"]["operator"] == "tester"
    assert data["import"]["dates"] == ["birth date"]


def test_load_config_empty_and_invalid(tmp_path):
    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert load_config(empty) == {}

    listed = tmp_path / "list.yaml"
    listed.write_text("- a\n- b\n")
    with pytest.raises(ValueError):
        load_config(listed)


def test_resolve_path_relative_to_config(tmp_path):
    assert resolve_path("data/study.csv", tmp_path) == (tmp_path / "data" / "study.csv").resolve()
    assert resolve_path(str(tmp_path / "x"), None) == (tmp_path / "x").resolve()
    assert resolve_path("", tmp_path) is None
    assert resolve_path(None, tmp_path) is None


def test_setup_logger_creates_file(tmp_path):
    log_path = tmp_path / "metagdb.log"
    logger = setup_logger(logfile=log_path, verbose=True)
    child = get_logger("metagdb.tests")

    child.debug("debug message")
    child.info("info message")

    for handler in logger.handlers:
        flush = getattr(handler, "flush", None)
        if callable(flush):
            flush()

    assert log_path.is_file()
    contents = log_path.read_text()
    assert "info message" in contents
    assert get_logger("elsewhere").name == "metagdb.elsewhere"


def test_extract_bytes_unwraps_nested_levels():
    payload = b"@r1\nACGT\n+\nIIII\n"
    nested = gzip.compress(bz2.compress(payload))

    assert extract_bytes(nested) == payload
    assert extract_bytes(nested, max_level=1).startswith(b"BZh")
    assert extract_bytes(nested, max_level=0) == nested
    assert extract_bytes(payload) == payload
    with pytest.raises(ValueError):
        extract_bytes(payload, max_level=-1)


def test_extract_bytes_skips_resource_forks():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("reads.txt", "content\n")
        zf.writestr("__MACOSX/._reads.txt", "fork")
    assert extract_bytes(buf.getvalue()) == b"content\n"


def test_read_bytes_size_limit(tmp_path):
    f = tmp_path / "big.txt"
    f.write_bytes(b"0123456789")
    assert read_bytes(f) == b"0123456789"
    with pytest.raises(ValueError):
        read_bytes(f, max_size=5)
    with pytest.raises(FileNotFoundError):
        read_bytes(tmp_path / "missing.txt")


def test_strip_extensions():
    assert strip_extensions("reads.fastq.gz") == "reads"
    assert strip_extensions("reads") == "reads"


def test_find_files_matches_directory_suffix(tmp_path):
    run = tmp_path / "2023" / "run1_bar01"
    run.mkdir(parents=True)
    (run / "b.fastq").write_text("x")
    (run / "a.fastq.gz").write_bytes(gzip.compress(b"x"))
    (run / "._a.fastq").write_text("fork")
    (run / "notes.txt").write_text("x")
    (tmp_path / "2023" / "run1_bar011").mkdir()
    (tmp_path / "2023" / "run1_bar011" / "c.fastq").write_text("x")

    files = find_files(tmp_path, "run1_bar01", r"\.fastq.*")
    assert [f.name for f in files] == ["a.fastq.gz", "b.fastq"]


def test_find_files_errors(tmp_path):
    for parent in ("x", "y"):
        d = tmp_path / parent / "run1_bar01"
        d.mkdir(parents=True)
        (d / "a.fastq").write_text("x")

    with pytest.raises(FileAmbiguityError, match="too unspecific"):
        find_files(tmp_path, "run1_bar01", r"\.fastq.*")
    with pytest.raises(FileDiscoveryError, match="No results"):
        find_files(tmp_path, "run9_bar01", r"\.fastq.*")

    (tmp_path / "x" / "run1_bar01" / "a.fastq.gz").write_text("x")
    with pytest.raises(FileAmbiguityError, match="duplicate"):
        find_files(tmp_path / "x", "run1_bar01", r"\.fastq.*")

    with pytest.raises(ValueError):
        find_files(tmp_path, "", r"\.fastq.*")


def test_read_text_rejects_invalid_utf8(tmp_path):
    good = tmp_path / "reads.fastq.gz"
    good.write_bytes(gzip.compress("@r1 µ\nACGT\n+\nIIII\n".encode("utf-8")))
    assert read_text(good).startswith("@r1 µ")

    bad = tmp_path / "broken.fastq"
    bad.write_bytes(b"@r1\nAC\xffGT\n+\nIIII\n")
    with pytest.raises(FormatError, match="broken.fastq"):
        read_text(bad)

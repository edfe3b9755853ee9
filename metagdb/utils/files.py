# metagdb/utils/files.py
"""
File helpers for the importer: size-limited reading, decompression of
gzip/bzip2/zip payloads sniffed by content, and discovery of per-sample data
files below a base directory.
"""

import bz2
import gzip
import io
import os
import re
import zipfile
from pathlib import Path
from typing import List, Optional, Union

from metagdb.errors import FileAmbiguityError, FileDiscoveryError, FormatError
from .logging import get_logger

log = get_logger(__name__)

MAX_FILE_SIZE = 3 * 1024 ** 3

_GZIP_MAGIC = b"\x1f\x8b"
_BZIP2_MAGIC = b"BZh"
_ZIP_MAGICS = (b"PK\x03\x04", b"PK\x05\x06")

# Everything after the first dot-separated alphanumeric extension run.
_EXTENSIONS_RE = re.compile(r"^(.+?)(\.[a-zA-Z0-9]+)+$")


def read_bytes(path: Union[str, Path], max_size: int = MAX_FILE_SIZE) -> bytes:
    """Read a whole file, refusing anything larger than `max_size` bytes."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Input file not found: {path}")
    size = path.stat().st_size
    if size > max_size:
        raise ValueError(f"Input file {path} is bigger than the file size limit ({max_size} bytes)")
    return path.read_bytes()


def sniff_compression(data: bytes) -> Optional[str]:
    """Return 'gzip', 'bzip2', 'zip' or None for uncompressed content."""
    if data.startswith(_GZIP_MAGIC):
        return "gzip"
    if data.startswith(_BZIP2_MAGIC):
        return "bzip2"
    if data.startswith(_ZIP_MAGICS):
        return "zip"
    return None


def _unzip(data: bytes) -> bytes:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        names = zf.namelist()
        if len(set(names)) != len(names):
            raise FormatError(
                f"Found {len(set(names))} unique member names, but expected {len(names)}"
            )
        out = []
        for name in names:
            # macOS resource forks
            if name.startswith("._") or "/._" in name or name.endswith("/"):
                continue
            out.append(zf.read(name))
    return b"".join(out)


def extract_bytes(data: bytes, max_level: Optional[int] = None) -> bytes:
    """
    Unwrap compressed content until plain data is reached.

    Args:
        data: Raw file content.
        max_level: Maximum number of compression levels to unwrap; None for
            no limit, 0 to return the input unchanged.

    Returns:
        The decompressed bytes.
    """
    if max_level is not None and max_level < 0:
        raise ValueError(f"Illegal value for max_level: {max_level}")
    level = 0
    while data and data.strip():
        if max_level is not None and level >= max_level:
            break
        kind = sniff_compression(data)
        if kind is None:
            break
        if kind == "gzip":
            data = gzip.decompress(data)
        elif kind == "bzip2":
            data = bz2.decompress(data)
        else:
            data = _unzip(data)
        level += 1
        if not data.strip():
            log.warning("No content after extraction (level %d)", level)
    return data


def read_text(path: Union[str, Path], max_size: int = MAX_FILE_SIZE) -> str:
    """Read, decompress and decode a data file."""
    raw = extract_bytes(read_bytes(path, max_size=max_size))
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise FormatError(f"File {path} is not valid UTF-8 text: {e}") from e


def strip_extensions(name: str) -> str:
    """'reads.fastq.gz' -> 'reads'."""
    return _EXTENSIONS_RE.sub(r"\1", name)


def find_files(base_dir: Union[str, Path], dir_pattern: str, file_pattern: str) -> List[Path]:
    """
    Locate data files for one sample.

    Walks `base_dir` and keeps files whose parent directory path ends with
    `dir_pattern` and whose full path matches `file_pattern` (both regular
    expressions). Resource forks (``._*``) are ignored.

    Raises:
        FileDiscoveryError: if no directory matches.
        FileAmbiguityError: if more than one directory matches, or if two
            files only differ by their extensions.
    """
    for name, value in (("base_dir", base_dir), ("dir_pattern", dir_pattern), ("file_pattern", file_pattern)):
        if value in (None, ""):
            raise ValueError(f"Missing value for {name}")

    dir_re = re.compile(f"(?:{dir_pattern})$")
    file_re = re.compile(file_pattern)

    files: List[Path] = []
    seen_basenames = set()
    dirs = set()
    for root, subdirs, names in os.walk(base_dir):
        subdirs.sort()
        if not dir_re.search(root):
            continue
        for name in sorted(names):
            full = os.path.join(root, name)
            if name.startswith("._") or not file_re.search(full):
                continue
            basename = os.path.join(root, strip_extensions(name))
            if basename in seen_basenames:
                raise FileAmbiguityError(
                    f"Found possible duplicate with different extension: {basename}"
                )
            seen_basenames.add(basename)
            files.append(Path(full))
            dirs.add(root)

    if len(dirs) > 1:
        raise FileAmbiguityError(
            f"Directory pattern '{dir_pattern}' too unspecific. Matches: {'; '.join(sorted(dirs))}"
        )
    if not dirs:
        raise FileDiscoveryError(
            f"No results for directory pattern '{dir_pattern}' and file pattern '{file_pattern}'"
        )
    log.debug("Found %d file(s) for directory pattern '%s'", len(files), dir_pattern)
    return sorted(files)

# metagdb/importers/fastq.py
"""
FASTQ parsing for the sequence stage.

Header lines carry space-separated ``key=value`` metadata (as written by
Nanopore basecallers); only the keys requested by the caller are kept.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from metagdb.errors import FormatError

# Metadata kept from read headers.
METADATA_FIELDS = ("runid", "barcode", "flow_cell_id", "basecall_model_version_id")

_RESERVED_KEYS = ("_seq_", "_qual_")


@dataclass
class FastqRead:
    read_id: str
    sequence: str
    quality: str
    metadata: Dict[str, Optional[str]] = field(default_factory=dict)

    def get(self, key: str) -> Optional[str]:
        return self.metadata.get(key)


def split_lines(text: str) -> List[str]:
    """Split on LF or CRLF and drop blank lines."""
    if not text or not text.strip():
        return []
    return [line for line in text.splitlines() if line.strip()]


def parse_fastq(text: str, fields: Iterable[str] = METADATA_FIELDS) -> Dict[str, FastqRead]:
    """
    Parse FASTQ text into reads keyed by read id.

    A later record with the same read id replaces the earlier one.

    Raises:
        FormatError: if the line count is not a non-zero multiple of four, a
            header does not start with '@', a separator does not start with
            '+', or a reserved metadata key is requested.
    """
    wanted = tuple(fields)
    for key in wanted:
        if key in _RESERVED_KEYS:
            raise FormatError(f"Header metadata cannot contain special key {key}")

    lines = split_lines(text)
    if not lines or len(lines) % 4 != 0:
        raise FormatError(f"Invalid FASTQ; {len(lines)} lines")

    reads: Dict[str, FastqRead] = {}
    for i in range(0, len(lines), 4):
        header, seq, spacer, qual = lines[i:i + 4]
        tokens = header.split()
        if not tokens or not tokens[0].startswith("@"):
            raise FormatError(f"Invalid FASTQ header: {header!r}")
        if not spacer.startswith("+"):
            raise FormatError(f"Invalid FASTQ format near read {tokens[0]!r}")
        read_id = tokens[0][1:]

        metadata: Dict[str, Optional[str]] = {key: None for key in wanted}
        for token in tokens[1:]:
            key, _, value = token.partition("=")
            if key in metadata:
                metadata[key] = value
        reads[read_id] = FastqRead(read_id=read_id, sequence=seq, quality=qual, metadata=metadata)
    return reads


def mean_error(quality: str) -> Optional[float]:
    """Mean per-base error probability of a Sanger (Phred+33) quality string."""
    if not quality:
        return None
    total = 0.0
    for char in quality:
        code = ord(char)
        if code < 33 or code > 126:
            raise FormatError(f"Invalid quality encoding. Char {char!r} is not in range 33-126")
        total += 10 ** ((code - 33) / -10)
    return total / len(quality)

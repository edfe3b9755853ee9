"""
MetaG plugin.

MetaG writes one block per read to ``*.calc.LIN.txt``::

    >read1
    domain: Bacteria: 12(100)
    phylum: Firmicutes: 12(100)
    class: unclassified: 0(0)
    No match for read2

Rank lines follow the configured rank order; lineages may stop early.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Sequence

from metagdb.errors import FormatError
from metagdb.importers.fastq import split_lines

from .base import Assignments, ClassifierPlugin, UNMATCHED

_NO_MATCH_RE = re.compile(r"^No match for ([a-zA-Z0-9\-_]+)")


class MetaGPlugin(ClassifierPlugin):
    name = "metag"
    file_pattern = r".*calc\.LIN\.txt.*"

    def parse(self, text: str, ranks: Optional[Sequence[str]] = None) -> Assignments:
        ranks = self.check_ranks(ranks)
        lines = split_lines(text)
        if not lines:
            raise FormatError("Empty taxonomy file")

        res: Assignments = {}
        read_id: Optional[str] = None
        pos = 0

        def close_read():
            # Fill ranks below the last assignment of the current read.
            if read_id is None or pos > len(ranks) - 1:
                return
            if read_id not in res:
                raise FormatError(f"No classification for {read_id}")
            for rank in ranks[pos:]:
                res[read_id][rank] = UNMATCHED

        for line in lines:
            if line.startswith(">"):
                close_read()
                read_id = line[1:]
                if read_id in res:
                    raise FormatError(f"Read {read_id} has been classified twice")
                pos = 0
            elif line.startswith("No matches for"):
                raise FormatError(f"Statement {line!r} should not appear in classification file")
            elif line.startswith("No match for"):
                close_read()
                m = _NO_MATCH_RE.match(line)
                if m:
                    read_id = m.group(1)
                if not read_id:
                    raise FormatError("No read ID for unclassified read")
                if read_id in res:
                    raise FormatError(f"Read {read_id} has been classified twice")
                res[read_id] = {rank: UNMATCHED for rank in ranks}
                pos = len(ranks)
            else:
                if not read_id:
                    raise FormatError("No read ID for classification")
                if pos >= len(ranks):
                    raise FormatError(f"Too few ranks provided. Read {read_id}")
                rank = ranks[pos]
                parts = line.split(": ")
                if parts[0] != rank:
                    raise FormatError(
                        f"Rank {parts[0]!r} in classification file does not match expected rank "
                        f"{rank!r}. Read {read_id}"
                    )
                taxon: Optional[str] = parts[1] if len(parts) > 1 else None
                if taxon == "unclassified":
                    taxon = None
                res.setdefault(read_id, {})[rank] = taxon
                pos += 1

        close_read()
        return res

"""
Kraken2 plugin.

Kraken2 writes one tab-separated line per read::

    C   read1   1234    1520    0:12 1234:30 ...
    U   read2   0       1480    0:1446

Only the first three columns are used; length and k-mer columns are
optional. Lineages of the assigned taxonomy ids are resolved from the
``nodes.dmp`` and ``names.dmp`` files of the Kraken2 database taxonomy.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from metagdb.errors import FormatError
from metagdb.importers.fastq import split_lines
from metagdb.utils.logging import get_logger

from .base import Assignments, ClassifierPlugin, UNMATCHED

log = get_logger(__name__)

_TAXID_NAME_RE = re.compile(r"\(taxid (\d+)\)\s*$")

# Node ranks accepted for an expected rank, when they differ from its name.
_RANK_ALIASES = {
    "domain": ("domain", "superkingdom"),
}


def _split_dmp(line: str) -> List[str]:
    return [part.strip() for part in line.rstrip("\n").rstrip("|").split("\t|\t")]


class Kraken2Plugin(ClassifierPlugin):
    name = "kraken2"
    file_pattern = r".*kraken2.*"
    requires_taxonomy = True

    def __init__(self, taxonomy_dir: Optional[Path] = None):
        super().__init__(taxonomy_dir)
        self._nodes: Optional[Dict[int, Tuple[int, str]]] = None
        self._names: Optional[Dict[int, str]] = None

    # ---- Taxonomy ----
    def _load_taxonomy(self):
        if self._nodes is not None:
            return
        tax_dir = self.taxonomy_dir
        nodes_path = tax_dir / "nodes.dmp"
        names_path = tax_dir / "names.dmp"
        for p in (nodes_path, names_path):
            if not p.is_file():
                raise FileNotFoundError(f"Taxonomy file not found: {p}")

        nodes: Dict[int, Tuple[int, str]] = {}
        with nodes_path.open("r", encoding="utf-8") as fh:
            for line in fh:
                if not line.strip():
                    continue
                parts = _split_dmp(line)
                if len(parts) < 3:
                    raise FormatError(f"Invalid nodes.dmp line: {line!r}")
                nodes[int(parts[0])] = (int(parts[1]), parts[2])

        names: Dict[int, str] = {}
        with names_path.open("r", encoding="utf-8") as fh:
            for line in fh:
                if not line.strip():
                    continue
                parts = _split_dmp(line)
                if len(parts) < 4:
                    raise FormatError(f"Invalid names.dmp line: {line!r}")
                if parts[3] == "scientific name":
                    names[int(parts[0])] = parts[1]

        log.debug("Loaded %d taxonomy node(s) from %s", len(nodes), tax_dir)
        self._nodes = nodes
        self._names = names

    def lineage(self, taxid: int, ranks: Sequence[str]) -> Dict[str, Optional[str]]:
        """Rank assignments for `taxid`: names up to its deepest rank, UNMATCHED below."""
        self._load_taxonomy()
        if taxid not in self._nodes:
            raise FormatError(f"Could not get lineage for taxonomy ID {taxid}")

        by_rank: Dict[str, str] = {}
        seen = set()
        current = taxid
        while current not in seen:
            seen.add(current)
            parent, node_rank = self._nodes[current]
            by_rank.setdefault(node_rank, self._names.get(current, ""))
            if parent == current or parent not in self._nodes:
                break
            current = parent

        found: Dict[str, Optional[str]] = {}
        deepest = -1
        for i, rank in enumerate(ranks):
            for alias in _RANK_ALIASES.get(rank, (rank,)):
                if alias in by_rank:
                    found[rank] = by_rank[alias]
                    deepest = i
                    break
        return {
            rank: (found.get(rank) if i <= deepest else UNMATCHED)
            for i, rank in enumerate(ranks)
        }

    # ---- Output ----
    def parse(self, text: str, ranks: Optional[Sequence[str]] = None) -> Assignments:
        ranks = self.check_ranks(ranks)
        lines = split_lines(text)
        if not lines:
            raise FormatError("Empty taxonomy file")

        res: Assignments = {}
        unclassified = set()
        for line in lines:
            cols = line.split("\t")
            if len(cols) < 3 or len(cols) > 5:
                raise FormatError(f"Invalid Kraken2 report format: {line!r}")
            status, read_id, taxid_field = (c.strip() for c in cols[:3])
            if status not in ("C", "U") or not read_id or not taxid_field:
                raise FormatError(f"Invalid Kraken2 report format: {line!r}")
            m = _TAXID_NAME_RE.search(taxid_field)
            taxid_str = m.group(1) if m else taxid_field
            if not taxid_str.isdigit():
                raise FormatError(f"Invalid Kraken2 report format: {line!r}")
            taxid = int(taxid_str)

            if status == "U":
                if taxid != 0:
                    raise FormatError(f"Invalid Kraken2 report format: {line!r}")
                if read_id in unclassified:
                    raise FormatError(f"Read {read_id} marked as unclassified more than once")
                if read_id in res:
                    raise FormatError(f"Read {read_id} classified more than once")
                unclassified.add(read_id)
                res[read_id] = {rank: UNMATCHED for rank in ranks}
            else:
                if taxid == 0:
                    raise FormatError(f"Invalid Kraken2 report format: {line!r}")
                if read_id in res:
                    raise FormatError(f"Read {read_id} classified more than once")
                res[read_id] = self.lineage(taxid, ranks)
        return res

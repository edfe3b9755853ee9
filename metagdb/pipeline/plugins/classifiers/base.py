"""
Base interface for classifier-output plugins.

Plugins are responsible for:
- Declaring the file-name pattern of the classifier's per-read output
- Parsing that output into per-read rank assignments

Parsed assignments map every expected rank to a taxon name. Two sentinel
values exist: None for a rank the classifier left empty above its deepest
assignment, and UNMATCHED for every rank below it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence
import abc

from metagdb.db.schema import RANKS

UNMATCHED = "UNMATCHED"
FILTERED = "FILTERED"

Assignments = Dict[str, Dict[str, Optional[str]]]


class ClassifierPlugin(abc.ABC):
    """Abstract base class for classifier output parsers."""

    name: str = ""
    file_pattern: str = ""
    requires_taxonomy: bool = False

    def __init__(self, taxonomy_dir: Optional[Path] = None):
        if self.requires_taxonomy and not taxonomy_dir:
            raise ValueError(f"Taxonomy path required for {self.name}")
        self.taxonomy_dir = Path(taxonomy_dir) if taxonomy_dir else None

    @staticmethod
    def check_ranks(ranks: Optional[Sequence[str]]) -> List[str]:
        ranks = list(RANKS if ranks is None else ranks)
        if not ranks:
            raise ValueError("Ranks empty")
        if len(set(ranks)) != len(ranks):
            raise ValueError(f"Duplicate rank in {ranks}")
        return ranks

    @abc.abstractmethod
    def parse(self, text: str, ranks: Optional[Sequence[str]] = None) -> Assignments:
        """
        Parse classifier output.

        Returns:
            read id -> {rank -> taxon name, None or UNMATCHED} for every rank.
        """
        raise NotImplementedError

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .base import ClassifierPlugin, FILTERED, UNMATCHED
from .kraken2 import Kraken2Plugin
from .metag import MetaGPlugin

__all__ = [
    "ClassifierPlugin",
    "Kraken2Plugin",
    "MetaGPlugin",
    "FILTERED",
    "UNMATCHED",
    "load_classifier",
]


def load_classifier(name: str, taxonomy_dir: Optional[Path] = None) -> ClassifierPlugin:
    key = (name or "").strip().lower()
    if "metag" in key:
        return MetaGPlugin(taxonomy_dir=taxonomy_dir)
    if "kraken2" in key:
        return Kraken2Plugin(taxonomy_dir=taxonomy_dir)
    raise ValueError(f"Unknown classifier: {name}")

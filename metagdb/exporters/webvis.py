# metagdb/exporters/webvis.py
"""
OTU, taxonomy and metadata tables for web visualization tools.

Supported are the marker-data profiling module of MicrobiomeAnalyst and
Namco. Both read three tab-separated files:

  • OTU table        one row per lineage (OTU0, OTU1, ...), one column per sample
  • taxonomy table   the lineage of every OTU id, split into seven ranks
  • metadata table   one row per sample; `z_score_category` is the grouping
                     column and always comes first
"""

from typing import Dict, Mapping, Optional, Tuple

import pandas as pd

from metagdb.errors import ExportError
from metagdb.pipeline.plugins.classifiers.base import UNMATCHED
from metagdb.utils.logging import get_logger

log = get_logger(__name__)

EXPORT_RANKS = ["Kingdom", "Phylum", "Class", "Order", "Family", "Genus", "Species"]

PRIMARY_META = "z_score_category"

# tool -> (OTU table label, metadata label, taxonomy label)
TOOL_HEADERS: Dict[str, Tuple[str, str, str]] = {
    "microbiomeanalyst": ("#NAME", "#NAME", "#TAXONOMY"),
    "namco": ("Name", "Name", "Taxa"),
}


def _to_tsv(df: pd.DataFrame, label: str) -> str:
    return df.to_csv(sep="\t", index_label=label, lineterminator="\n").rstrip("\n")


def _taxon_label(name: str) -> str:
    if not name:
        return "NoName"
    if name == UNMATCHED:
        return "NA"
    return name


def otu_table(counts: Mapping[str, Mapping[str, Optional[int]]], label: str) -> Tuple[str, Dict[str, str]]:
    """
    Build the OTU count table.

    Args:
        counts: sample name -> lineage -> read count. Lineages join rank
            names with ';'.
        label: Text of the top-left header cell.

    Returns:
        The table text and OTU id -> lineage for the taxonomy table. Lineages
        missing from a sample are counted as 0.
    """
    if not counts:
        raise ExportError("No classifications to export")

    records = []
    for sample, by_lineage in counts.items():
        if not sample:
            raise ExportError("Invalid sample name")
        if not by_lineage:
            raise ExportError(f"No classifications for sample '{sample}'")
        for lineage, n in by_lineage.items():
            if not lineage:
                raise ExportError(f"Invalid classification name in sample '{sample}'")
            records.append((sample, lineage, int(n or 0)))

    df = pd.DataFrame(records, columns=["sample", "lineage", "count"])
    wide = (
        df.pivot_table(index="lineage", columns="sample", values="count", aggfunc="sum", fill_value=0)
        .sort_index()
        .sort_index(axis=1)
        .astype(int)
    )
    otu_ids = {f"OTU{i}": lineage for i, lineage in enumerate(wide.index)}
    wide.index = list(otu_ids)
    wide = wide.rename_axis(index=None, columns=None)
    return _to_tsv(wide, label), otu_ids


def taxonomy_table(otu_ids: Mapping[str, str], label: str) -> str:
    """
    Split the lineage of every OTU id into the export ranks.

    Lineages must hold at least as many ranks as EXPORT_RANKS; surplus ranks
    are dropped. Empty names become "NoName" and UNMATCHED becomes "NA".
    """
    if not otu_ids:
        raise ExportError("No OTU ids to describe")

    rows = []
    for otu_id, lineage in otu_ids.items():
        names = (lineage or "NoName").split(";")
        if len(names) < len(EXPORT_RANKS):
            raise ExportError(f"Not enough ranks in classification of {otu_id}: '{lineage}'")
        rows.append([_taxon_label(n) for n in names[:len(EXPORT_RANKS)]])
    df = pd.DataFrame(rows, index=list(otu_ids), columns=EXPORT_RANKS)
    return _to_tsv(df, label)


def metadata_table(metas: Mapping[str, Mapping[str, Optional[str]]], label: str) -> str:
    """Sample metadata with PRIMARY_META first; missing values are "NA"."""
    if not metas:
        raise ExportError("No metadata to export")

    names = set()
    for sample, meta in metas.items():
        if not sample:
            raise ExportError("Invalid sample name")
        if not meta:
            raise ExportError(f"No metadata for sample '{sample}'")
        for name in meta:
            if not name:
                raise ExportError(f"Invalid metadata name for sample '{sample}'")
            if name.lower() != PRIMARY_META:
                names.add(name)
    columns = [PRIMARY_META] + sorted(names)

    samples = sorted(metas)
    rows = [[metas[s].get(c) or "NA" for c in columns] for s in samples]
    df = pd.DataFrame(rows, index=samples, columns=columns)
    return _to_tsv(df, label)


def web_vis(counts: Mapping[str, Mapping[str, Optional[int]]],
            metas: Mapping[str, Mapping[str, Optional[str]]], tool: str) -> Tuple[str, str, str]:
    """
    Build the OTU, taxonomy and metadata tables for `tool`.

    Both mappings are keyed by sample name and must name the same samples.
    """
    key = (tool or "").lower()
    if key not in TOOL_HEADERS:
        raise ExportError(f"Unrecognized tool '{tool}'")
    if sorted(counts) != sorted(metas):
        raise ExportError("Classifications and metadata must have the same sample names")

    otu_label, meta_label, tax_label = TOOL_HEADERS[key]
    otu, otu_ids = otu_table(counts, otu_label)
    tax = taxonomy_table(otu_ids, tax_label)
    meta = metadata_table(metas, meta_label)
    log.info("Built %s tables: %d OTU(s), %d sample(s)", key, len(otu_ids), len(metas))
    return otu, tax, meta

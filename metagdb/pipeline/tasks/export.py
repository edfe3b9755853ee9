# metagdb/pipeline/tasks/export.py
"""
Export task: writes the classifications and metadata of selected samples as
a zip archive of OTU, taxonomy and metadata tables.
"""

import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from metagdb.db import api as db_api
from metagdb.errors import ExportError
from metagdb.exporters.webvis import TOOL_HEADERS, web_vis
from metagdb.pipeline.plugins.classifiers.base import FILTERED, UNMATCHED
from metagdb.utils.config import resolve_path
from metagdb.utils.logging import get_logger

from .base import Task, TaskContext

log = get_logger(__name__)

# Positions of domain, phylum, class, order, family, genus and species in a
# stored lineage; subclass, suborder and strain are folded into their parents.
EXPORT_RANK_POSITIONS = (0, 1, 2, 4, 6, 7, 8)

EXPORT_META_NAMES = (
    "antibiotics",
    "birth mode",
    "category of difference in body mass at delivery",
    "feeding mode",
    "maternal antibiotics during pregnancy",
    "maternal illness during pregnancy",
    "mother's age at delivery",
    "mother's pre-pregnancy BMI category",
    "pregnancy order",
    "probiotics",
    "sex",
    "z-score category",
    "z-score subcategory",
)

# Describe the patient rather than the sample; reported for every sample.
PATIENT_META_NAMES = (
    "sex",
    "birth mode",
    "mother's age at delivery",
    "mother's pre-pregnancy BMI category",
    "category of difference in body mass at delivery",
    "pregnancy order",
    "maternal illness during pregnancy",
    "maternal antibiotics during pregnancy",
)

_META_STRIP_RE = re.compile(r"'")
_META_SPACE_RE = re.compile(r"[ -]")


@dataclass
class ExportInputs:
    tool: str
    ids: List[int]
    blacklist: List[str]
    keep_controls: bool
    output: Path


@dataclass
class ExportResult:
    """Where the archive went and which requested samples made it in."""
    path: Optional[Path] = None
    samples: List[str] = field(default_factory=list)
    removed: List[int] = field(default_factory=list)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [str(value).strip()]


def parse_ids(value: Any) -> List[int]:
    """Sample ids from a list or a comma-separated string."""
    ids = []
    for item in _as_list(value):
        if not item.isdigit():
            raise ValueError(f"Sample id '{item}' is not a number. Ids must be separated by ','")
        ids.append(int(item))
    if not ids:
        raise ValueError("export.ids is required")
    return ids


def parse_blacklist(value: Any) -> List[str]:
    """Taxa whose lineages are dropped; 'NA' stands for UNMATCHED."""
    return [UNMATCHED if name == "NA" else name for name in _as_list(value)]


def sanitize_meta(text: Any) -> str:
    """Drop apostrophes and turn spaces and hyphens into underscores."""
    return _META_SPACE_RE.sub("_", _META_STRIP_RE.sub("", str(text)))


def export_lineage(lineage: str) -> str:
    names = lineage.split(";")
    if len(names) <= max(EXPORT_RANK_POSITIONS):
        raise ExportError(f"Not enough ranks in stored lineage '{lineage}'")
    return ";".join(names[i] for i in EXPORT_RANK_POSITIONS)


def collect_lineages(rows: Sequence[Any], blacklist: Sequence[str], keep_controls: bool
                     ) -> Tuple[Dict[int, str], Dict[str, Dict[str, int]], Dict[str, Dict[str, str]]]:
    """
    Fold v_lineages rows into per-sample counts of export lineages.

    Returns:
        sample id -> export sample name, sample name -> lineage -> count, and
        sample name -> base metadata (program, database, control, timepoint).
    """
    blocked = set(blacklist)
    names: Dict[int, str] = {}
    counts: Dict[str, Dict[str, int]] = {}
    metas: Dict[str, Dict[str, str]] = {}
    for row in rows:
        if row["iscontrol"] == "t":
            if not keep_controls:
                continue
            control = "yes"
        elif row["iscontrol"] == "f":
            control = "no"
        else:
            raise ExportError(f"Unknown value '{row['iscontrol']}' for iscontrol")

        lineage = row["lineage"]
        if lineage.split(";", 1)[0] in blocked:
            continue

        name = f"{row['samplename']}_{row['program']}_{row['database']}"
        if names.setdefault(row["id_sample"], name) != name:
            raise ExportError(
                f"Sample id {row['id_sample']} has classifications of more than one program or database"
            )
        by_lineage = counts.setdefault(name, {})
        key = export_lineage(lineage)
        by_lineage[key] = by_lineage.get(key, 0) + int(row["count"])
        metas[name] = {
            "program": row["program"],
            "database": row["database"],
            "control": control,
            "timepoint": row["timepoint"],
        }

    if len(set(names.values())) != len(names):
        raise ExportError("Sample names in classifications not unique")
    return names, counts, metas


def write_archive(path: Path, tool: str, tables: Dict[str, str]) -> Path:
    """Store `tables` (suffix -> text) uncompressed in a zip at `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as zf:
        for suffix, text in tables.items():
            zf.writestr(f"{tool}_{suffix}.txt", text)
    return path


class ExportTask(Task):
    """
    Exports the classifications of selected samples for MicrobiomeAnalyst or
    Namco. Control samples and lineages whose domain is blacklisted
    (FILTERED by default) are left out.
    """
    name = "export"

    def prepare(self, cfg: Dict[str, Any], config_dir: Optional[Path] = None) -> Tuple[ExportInputs, Dict[str, Any]]:
        block = cfg.get("export")
        if not isinstance(block, dict):
            raise ValueError("Config must define an 'export' section")

        tool = str(block.get("format") or "").strip().lower()
        if not tool:
            raise ValueError("export.format is required")
        if tool not in TOOL_HEADERS:
            raise ValueError(f"Unknown export format: {tool}")

        blacklist = block.get("blacklist", [FILTERED])
        output = block.get("output") or f"{tool}_export.zip"
        inputs = ExportInputs(
            tool=tool,
            ids=parse_ids(block.get("ids")),
            blacklist=parse_blacklist(blacklist),
            keep_controls=bool(block.get("keep_controls", False)),
            output=resolve_path(output, config_dir),
        )
        return inputs, {"tool": tool}

    def consume_outputs(self, ctx: TaskContext, inputs: ExportInputs, params: Dict[str, Any]) -> ExportResult:
        rows = db_api.lineage_counts(ctx.db, inputs.ids, batch_size=ctx.batch_size)
        names, counts, metas = collect_lineages(rows, inputs.blacklist, inputs.keep_controls)
        if not counts:
            raise ExportError("None of the requested samples has classifications to export")

        for row in db_api.sample_metadata(ctx.db, names, EXPORT_META_NAMES, PATIENT_META_NAMES,
                                          batch_size=ctx.batch_size):
            metas[names[row["id_sample"]]][sanitize_meta(row["name"])] = sanitize_meta(row["value"])

        otu, tax, meta = web_vis(counts, metas, inputs.tool)
        tables = {"otu": otu, "tax": tax, "meta": meta}

        result = ExportResult(samples=sorted(counts))
        result.removed = sorted(set(inputs.ids) - set(names))
        if result.removed:
            removed = ", ".join(str(i) for i in result.removed)
            warning = f"WARNING: {len(result.removed)} sample ID(s) were removed: {removed}"
            log.warning("%s", warning)
            tables["WARNINGS"] = warning

        result.path = write_archive(inputs.output, inputs.tool, tables)
        log.info("Exported %d sample(s) to %s", len(result.samples), result.path)
        return result

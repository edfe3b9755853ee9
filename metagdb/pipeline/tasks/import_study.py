# metagdb/pipeline/tasks/import_study.py
"""
Import tasks: the full study import and the reference-standard import.
"""

import tarfile
import tempfile
import zipfile
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from metagdb.importers.standards import StandardRow, parse_who
from metagdb.importers.table import DEFAULT_DATE_COLUMNS, ColumnRoles, infer_format, parse_table
from metagdb.pipeline.tasks import stages
from metagdb.utils.config import resolve_path
from metagdb.utils.logging import get_logger

from .base import Task, TaskContext
from .stages import ImportResult

log = get_logger(__name__)


@dataclass
class ImportInputs:
    data: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    standards: List[StandardRow] = field(default_factory=list)
    data_path: Optional[Path] = None
    taxonomy_dir: Optional[Path] = None


def _import_block(cfg: Dict[str, Any]) -> Dict[str, Any]:
    block = cfg.get("import")
    if not isinstance(block, dict):
        raise ValueError("Config must define an 'import' section")
    return block


def _resolve_existing(value: Any, base_dir: Optional[Path], what: str) -> Optional[Path]:
    path = resolve_path(value, base_dir)
    if path is not None and not path.exists():
        raise FileNotFoundError(f"{what} not found: {path}")
    return path


def _prepare_standards(block: Dict[str, Any], base_dir: Optional[Path]) -> List[StandardRow]:
    std = block.get("standards") or {}
    if not isinstance(std, dict):
        raise ValueError("import.standards must be a mapping with 'girls' and 'boys'")
    girls = _resolve_existing(std.get("girls"), base_dir, "Standard table for girls")
    boys = _resolve_existing(std.get("boys"), base_dir, "Standard table for boys")
    if (girls is None) != (boys is None):
        raise ValueError("Standard tables for both girls and boys need to be specified")
    if girls is None:
        return []
    return parse_who(girls, boys)


def unpack_data(path: Path, dest: Path) -> Path:
    """Extract a zip or tar archive of the data directory into `dest`."""
    if zipfile.is_zipfile(path):
        with zipfile.ZipFile(path) as zf:
            zf.extractall(dest)
    elif tarfile.is_tarfile(path):
        with tarfile.open(path) as tf:
            if hasattr(tarfile, "data_filter"):
                tf.extractall(dest, filter="data")
            else:
                tf.extractall(dest)
    else:
        raise ValueError(f"Data is neither a directory nor a zip or tar archive: {path}")
    log.info("Extracted data archive %s", path.name)
    return dest


class ImportTask(Task):
    """
    Imports a study table, its sequencing reads, their classifications and
    optionally the WHO reference standards in one transaction.
    """
    name = "import"

    def prepare(self, cfg: Dict[str, Any], config_dir: Optional[Path] = None) -> Tuple[ImportInputs, Dict[str, Any]]:
        block = _import_block(cfg)

        table = _resolve_existing(block.get("table"), config_dir, "Table")
        if table is None:
            raise ValueError("import.table is required")
        fmt = block.get("format") or infer_format(table)
        roles = ColumnRoles.from_config(block.get("columns"))
        dates = block.get("dates")
        if dates is None:
            dates = DEFAULT_DATE_COLUMNS

        inputs = ImportInputs(
            data=parse_table(table, fmt, roles, dates),
            standards=_prepare_standards(block, config_dir),
            data_path=_resolve_existing(block.get("data"), config_dir, "Data"),
            taxonomy_dir=_resolve_existing(block.get("taxonomy"), config_dir, "Taxonomy directory"),
        )
        params = {"table": table.name, "format": fmt}
        return inputs, params

    def consume_outputs(self, ctx: TaskContext, inputs: ImportInputs, params: Dict[str, Any]) -> ImportResult:
        with ExitStack() as stack:
            base_dir = inputs.data_path
            if base_dir is not None and base_dir.is_file():
                tmp = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="metagdb_")))
                base_dir = unpack_data(base_dir, tmp)

            def body(result: ImportResult):
                self.run_stages(ctx, result, inputs, base_dir)

            log.info("Importing %s (%s)", params["table"], params["format"])
            return self.run_in_transaction(ctx, body)

    @staticmethod
    def run_stages(ctx: TaskContext, result: ImportResult, inputs: ImportInputs,
                   base_dir: Optional[Path]):
        patients = stages.insert_patients(ctx, result, inputs.data)
        samples = stages.insert_samples(ctx, result, inputs.data, patients)
        types = stages.insert_types(ctx, result)
        stages.insert_measurements(ctx, result, samples, types)

        if base_dir is None:
            log.info("No data directory configured; skipping sequencing stages.")
        else:
            seq_map = stages.insert_sequences(ctx, result, samples, base_dir)
            if seq_map:
                taxa = stages.insert_taxonomy(ctx, result, samples, seq_map, base_dir, inputs.taxonomy_dir)
                if taxa:
                    classifications = stages.insert_classifications(ctx, result, taxa)
                    stages.insert_taxclass(ctx, result, classifications)

        if inputs.standards:
            stages.insert_standards(ctx, result, inputs.standards)


class StandardsTask(Task):
    """Imports only the WHO reference standards, usually once per database."""
    name = "standards"

    def prepare(self, cfg: Dict[str, Any], config_dir: Optional[Path] = None) -> Tuple[List[StandardRow], Dict[str, Any]]:
        rows = _prepare_standards(_import_block(cfg), config_dir)
        if not rows:
            raise ValueError("import.standards with 'girls' and 'boys' tables is required")
        return rows, {}

    def consume_outputs(self, ctx: TaskContext, inputs: List[StandardRow], params: Dict[str, Any]) -> ImportResult:
        return self.run_in_transaction(ctx, lambda result: stages.insert_standards(ctx, result, inputs))

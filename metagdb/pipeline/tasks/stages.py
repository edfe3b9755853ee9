# metagdb/pipeline/tasks/stages.py
"""
The import stages, in dependency order.

Each stage takes the ids produced by the previous one, calls the bulk upsert
with its relation's natural key and folds the "something new" flag into the
run's ImportResult. Stages only raise; rollback is done by the caller.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from metagdb.db import api as db_api
from metagdb.db.api import RelationSpec, natural_key
from metagdb.db.schema import RANKS
from metagdb.errors import (
    ClassificationMismatchError,
    FileDiscoveryError,
    FormatError,
    ImportConflictError,
    UpsertIntegrityError,
)
from metagdb.importers.fastq import mean_error, parse_fastq
from metagdb.importers.standards import StandardRow
from metagdb.importers.table import TIMES_KEY
from metagdb.pipeline.plugins.classifiers import load_classifier
from metagdb.pipeline.plugins.classifiers.base import FILTERED
from metagdb.utils.files import find_files, read_text
from metagdb.utils.logging import get_logger

log = get_logger(__name__)

# Reserved attribute marking a sample as water control ('t') or case ('f').
CONTROL_KEY = "_isControl_"

ACCESSION_KEY = "hospital code"
BIRTHDATE_KEY = "birth date"
PROGRAM_KEY = "program"
DATABASE_KEY = "database"
RUN_BARCODE_KEY = "number of run and barcode"

FASTQ_FILE_PATTERN = r"\.fastq.*"

# Water controls of a run share one barcode.
_BARCODE_RE = re.compile(r"bar[0-9]+$")
CONTROL_BARCODE = "bar99"

TAXONOMY_BATCH_SIZE = 350
CLASSIFICATION_BATCH_SIZE = 350
TAXCLASS_BATCH_SIZE = 100000
STANDARD_BATCH_SIZE = 250

# name -> (kind, legal values); kinds: i = integer, s = string, d = date, b = boolean
TYPE_CATALOG: Dict[str, Tuple[str, Optional[Tuple[str, ...]]]] = {
    "sex": ("s", ("m", "f", "NA")),
    "body mass": ("i", None),
    "birth mode": ("s", ("natural", "caesarean section")),
    "feeding mode": ("s", ("breastfed", "formula", "mixed", "diet extension")),
    "probiotics": ("b", ("yes", "no")),
    "antibiotics": ("b", ("yes", "no")),
    "mother's birth date": ("d", None),
    "maternal body mass before pregnancy": ("i", None),
    "maternal body mass at delivery": ("i", None),
    "mother's height": ("i", None),
    "pregnancy order": ("i", None),
    "maternal illness during pregnancy": ("s", (
        "diabetes",
        "thyroid disease",
        "hypertension",
        "diabetes + thyroid disease",
        "diabetes + hypertension",
        "thyroid disease + hypertension",
        "diabetes + thyroid disease + hypertension",
    )),
    "maternal antibiotics during pregnancy": ("b", ("yes", "no")),
}

_YES_NO = {"1": "yes", "2": "no"}

# Coded sheet values -> catalog labels.
CODED_VALUES: Dict[str, Dict[str, str]] = {
    "sex": {"1": "m", "2": "f"},
    "birth mode": {"1": "natural", "2": "caesarean section"},
    "feeding mode": {"1": "breastfed", "2": "formula", "3": "mixed", "4": "diet extension"},
    "probiotics": _YES_NO,
    "antibiotics": _YES_NO,
    "maternal illness during pregnancy": {
        "1": "diabetes",
        "2": "thyroid disease",
        "3": "hypertension",
        "4": "diabetes + thyroid disease",
        "5": "diabetes + hypertension",
        "6": "thyroid disease + hypertension",
        "7": "diabetes + thyroid disease + hypertension",
    },
    "maternal antibiotics during pregnancy": _YES_NO,
}

# Attributes consumed by other stages.
MEASUREMENT_BLACKLIST = frozenset({CONTROL_KEY, PROGRAM_KEY, DATABASE_KEY, RUN_BARCODE_KEY})

# Statics that live on the patient row.
_PATIENT_STATICS = frozenset({TIMES_KEY, ACCESSION_KEY, BIRTHDATE_KEY})

_DATE_FORMATS = ("%Y-%m-%d", "%Y-%m-%d %H:%M:%S", "%d.%m.%Y", "%Y/%m/%d")

PATIENT = RelationSpec(
    "patient",
    ("alias", "accession", "birthdate", "id_change"),
    ("alias", "accession", "birthdate"),
)
SAMPLE = RelationSpec(
    "sample",
    ("id_patient", "createdate", "createdby", "iscontrol", "id_change"),
    ("id_patient", "createdate", "iscontrol"),
)
TYPE = RelationSpec("type", ("name", "type", "selection", "id_change"), ("name",))
MEASUREMENT = RelationSpec(
    "measurement",
    ("id_sample", "id_type", "value", "id_change"),
    ("id_sample", "id_type"),
)
SEQUENCE = RelationSpec(
    "sequence",
    ("id_sample", "runid", "barcode", "readid", "flowcellid", "callermodel",
     "nucs", "quality", "seqerr", "id_change"),
    ("id_sample", "runid", "barcode", "readid"),
)
TAXONOMY = RelationSpec("taxonomy", ("name", "rank", "id_change"), ("name", "rank"))
CLASSIFICATION = RelationSpec(
    "classification",
    ("id_sequence", "program", "database", "id_change"),
    ("id_sequence", "program", "database"),
)
TAXCLASS = RelationSpec(
    "taxclass",
    ("id_taxonomy", "id_classification", "id_change"),
    ("id_taxonomy", "id_classification"),
)
STANDARD = RelationSpec(
    "standard",
    ("name", "sex", "age", "l", "m", "s", "id_change"),
    ("name", "sex", "age"),
    id_column="rowid",
)


@dataclass
class ImportResult:
    """Run-scoped accumulator: change id, the "something new" flag and per-stage counts."""
    id_change: Optional[int] = None
    is_new: bool = False
    committed: bool = False
    counts: Dict[str, int] = field(default_factory=dict)

    def merge(self, relation: str, n_keys: int, is_new: bool):
        self.counts[relation] = self.counts.get(relation, 0) + n_keys
        self.is_new = self.is_new or is_new


@dataclass
class TaxonEntry:
    tax_id: int
    sequences: Dict[int, Tuple[str, str]]


# Sequence ids per dir pattern, sample id and read id.
SequenceMap = Dict[str, Dict[int, Dict[str, int]]]


def iso_date(value: Any, what: str) -> str:
    """Normalize a sheet date to YYYY-MM-DD."""
    text = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    raise ImportConflictError(f"Invalid date '{value}' in {what}.")


def _upsert(ctx, result: ImportResult, spec: RelationSpec, rows: Sequence[Sequence[Any]],
            batch_size: Optional[int] = None) -> Dict[tuple, int]:
    ids, is_new = db_api.bulk_upsert(
        ctx.db, spec, rows, is_new=result.is_new, batch_size=batch_size or ctx.batch_size
    )
    result.merge(spec.name, len(ids), is_new)
    log.info("%s: %d record(s) resolved.", spec.name, len(ids))
    return ids


# ---------------------------------------------------------------------------
# Subjects, samples and measurements
# ---------------------------------------------------------------------------

def insert_patients(ctx, result: ImportResult, data: Mapping[str, Mapping[str, Any]]) -> Dict[str, int]:
    """Upsert one patient per subject; returns alias -> patient id."""
    rows = []
    for alias in sorted(data):
        record = data[alias]
        accession = record.get(ACCESSION_KEY)
        birthdate = record.get(BIRTHDATE_KEY)
        if accession is None:
            raise ImportConflictError(f"No '{ACCESSION_KEY}' for id '{alias}'.")
        if birthdate is None:
            raise ImportConflictError(f"No '{BIRTHDATE_KEY}' for id '{alias}'.")
        rows.append((alias, accession, iso_date(birthdate, f"'{BIRTHDATE_KEY}' of id '{alias}'"),
                     result.id_change))

    ids = _upsert(ctx, result, PATIENT, rows)
    patients = {row[0]: ids[natural_key(PATIENT, row)] for row in rows}
    if len(patients) != len(ids):
        raise UpsertIntegrityError("Number of patient ids does not equal the number of subjects")
    return patients


def insert_samples(ctx, result: ImportResult, data: Mapping[str, Mapping[str, Any]],
                   patients: Mapping[str, int]) -> Dict[int, Dict[str, Any]]:
    """
    Upsert a case sample per subject and timepoint, plus a water-control
    sample where the timepoint references a sequencing run.

    Statics are attached to the earliest case sample of a patient, unless
    that patient's earliest date is already stored under another date.

    Returns:
        sample id -> attributes (measurements plus the control flag).
    """
    planned: List[Tuple[str, int, str, str, tuple]] = []
    times_by_alias: Dict[str, Dict[str, Dict[str, Any]]] = {}
    first_dates: Dict[int, str] = {}

    for alias in sorted(data):
        id_patient = patients.get(alias)
        if id_patient is None:
            raise UpsertIntegrityError(f"Patient '{alias}' does not exist in foreign keys")

        times: Dict[str, Dict[str, Any]] = {}
        for time, measures in data[alias][TIMES_KEY].items():
            if CONTROL_KEY in measures:
                raise ImportConflictError(f"Special key {CONTROL_KEY} may not be used as measurement name")
            createdate = iso_date(time, f"timepoint of id '{alias}'")
            if createdate in times:
                raise ImportConflictError(f"Date '{time}' given twice for id '{alias}'")
            times[createdate] = measures
        times_by_alias[alias] = times
        first_dates[id_patient] = min(times)

        for createdate in sorted(times):
            # Controls are only needed where a run is referenced.
            run = times[createdate].get(RUN_BARCODE_KEY)
            flags = ("f", "t") if run is not None and str(run).strip() else ("f",)
            for is_control in flags:
                row = (id_patient, createdate, ctx.operator, is_control, result.id_change)
                planned.append((alias, id_patient, createdate, is_control, row))

    stored = db_api.earliest_case_dates(ctx.db, first_dates)
    for id_patient, stored_date in stored.items():
        if stored_date > first_dates[id_patient]:
            alias = next(a for a, pid in patients.items() if pid == id_patient)
            raise ImportConflictError(
                f"Not possible to set a new first date for patient '{alias}' "
                f"({first_dates[id_patient]} is earlier than stored {stored_date})"
            )
        if stored_date != first_dates[id_patient]:
            del first_dates[id_patient]

    ids = _upsert(ctx, result, SAMPLE, [p[-1] for p in planned])

    samples: Dict[int, Dict[str, Any]] = {}
    for alias, id_patient, createdate, is_control, row in planned:
        id_sample = ids[natural_key(SAMPLE, row)]
        attrs = dict(times_by_alias[alias][createdate])
        attrs[CONTROL_KEY] = is_control
        if is_control == "f" and first_dates.get(id_patient) == createdate:
            for name, value in data[alias].items():
                if name in _PATIENT_STATICS:
                    continue
                if name in attrs:
                    raise ImportConflictError(
                        f"Static measurement and time-dependent measurement have the same name '{name}'"
                    )
                attrs[name] = value
        samples[id_sample] = attrs

    if len(samples) != len(ids):
        raise UpsertIntegrityError("Number of sample ids does not equal the number of unique records")

    db_api.refresh_views(ctx.db, ["v_samples"])
    failed = db_api.failed_sample_checks(ctx.db, samples)
    if failed:
        msg = "\n".join(
            f"Timepoint '{r['timepoint']}' for patient '{r['alias']}', create date '{r['createdate']}' "
            f"and iscontrol '{r['iscontrol']}' is invalid or not unique"
            for r in failed
        )
        raise ImportConflictError(msg)
    return samples


def insert_types(ctx, result: ImportResult) -> Dict[str, int]:
    """Seed the type catalog; returns name -> type id."""
    rows = [
        (name, kind, json.dumps(list(selection)) if selection else None, result.id_change)
        for name, (kind, selection) in TYPE_CATALOG.items()
    ]
    ids = _upsert(ctx, result, TYPE, rows)
    return {key[0]: id_type for key, id_type in ids.items()}


def insert_measurements(ctx, result: ImportResult, samples: Mapping[int, Mapping[str, Any]],
                        types: Mapping[str, int]) -> int:
    """Upsert the attributes of case samples; returns the number of measurements."""
    rows = []
    for id_sample in sorted(samples):
        attrs = samples[id_sample]
        if CONTROL_KEY not in attrs:
            raise UpsertIntegrityError("Invalid sample keys")
        if attrs[CONTROL_KEY] != "f":
            continue

        for name, value in attrs.items():
            if name in MEASUREMENT_BLACKLIST:
                continue
            if value is None or not str(value).strip():
                continue
            id_type = types.get(name)
            if id_type is None:
                raise ImportConflictError(f"Unexpected type '{name}' in sample attributes")

            value = str(value).strip()
            if name in CODED_VALUES:
                if value not in CODED_VALUES[name]:
                    raise ImportConflictError(
                        f"Unexpected value '{value}' for type '{name}' cannot be translated"
                    )
                value = CODED_VALUES[name][value]
            elif TYPE_CATALOG.get(name, ("s", None))[0] == "d":
                value = iso_date(value, f"'{name}' of sample {id_sample}")
            rows.append((id_sample, id_type, value, result.id_change))

    if not rows:
        log.info("measurement: nothing to insert.")
        return 0
    return len(_upsert(ctx, result, MEASUREMENT, rows))


# ---------------------------------------------------------------------------
# Sequencing data
# ---------------------------------------------------------------------------

def dir_pattern_for(attrs: Mapping[str, Any]) -> Optional[str]:
    """The data directory suffix of a sample; controls use the shared control barcode."""
    pattern = attrs.get(RUN_BARCODE_KEY)
    if pattern is None or not str(pattern).strip():
        return None
    pattern = str(pattern).strip()
    is_control = attrs.get(CONTROL_KEY)
    if is_control == "t":
        return _BARCODE_RE.sub(CONTROL_BARCODE, pattern)
    if is_control != "f":
        raise UpsertIntegrityError(f"Unexpected value '{is_control}' for {CONTROL_KEY}")
    return pattern


def _read_files(base_dir: Path, pattern: str, file_pattern: str) -> Optional[str]:
    """Concatenated text of the matching files; None if nothing was found."""
    # Ambiguous matches (FileAmbiguityError) propagate and abort the run.
    try:
        files = find_files(base_dir, pattern, file_pattern)
    except FileDiscoveryError as e:
        log.warning("%s", e)
        return None
    return "".join(read_text(f) for f in files)


def insert_sequences(ctx, result: ImportResult, samples: Mapping[int, Mapping[str, Any]],
                     base_dir: Path) -> SequenceMap:
    """
    Upsert the reads of every sample that names a data directory.

    Two case samples may not share a directory pattern; water controls may.
    Samples whose files cannot be found are skipped with a warning; a
    pattern matching several directories is an error.
    """
    case_owner: Dict[str, int] = {}
    for id_sample in sorted(samples):
        pattern = dir_pattern_for(samples[id_sample])
        if pattern is None or samples[id_sample][CONTROL_KEY] != "f":
            continue
        if pattern in case_owner:
            raise ImportConflictError(f"Multiple samples share the same directory pattern '{pattern}'")
        case_owner[pattern] = id_sample

    texts: Dict[str, Optional[str]] = {}
    seq_map: SequenceMap = {}
    for id_sample in sorted(samples):
        pattern = dir_pattern_for(samples[id_sample])
        if pattern is None:
            continue
        if pattern not in texts:
            texts[pattern] = _read_files(base_dir, pattern, FASTQ_FILE_PATTERN)
        text = texts[pattern]
        if not text or not text.strip():
            continue

        try:
            reads = parse_fastq(text)
        except FormatError as e:
            raise FormatError(f"Error with FASTQ file(s) in '{pattern}': {e}") from e

        rows = [
            (id_sample, read.get("runid"), read.get("barcode"), read.read_id,
             read.get("flow_cell_id"), read.get("basecall_model_version_id"),
             read.sequence, read.quality, mean_error(read.quality), result.id_change)
            for read in reads.values()
        ]
        ids = _upsert(ctx, result, SEQUENCE, rows)
        if len(ids) != len(rows):
            raise UpsertIntegrityError(
                f"Number of sequence ids does not equal the number of reads for '{pattern}'"
            )
        seq_map.setdefault(pattern, {})[id_sample] = {
            row[3]: ids[natural_key(SEQUENCE, row)] for row in rows
        }
    return seq_map


def insert_taxonomy(ctx, result: ImportResult, samples: Mapping[int, Mapping[str, Any]],
                    seq_map: SequenceMap, base_dir: Path,
                    taxonomy_dir: Optional[Path] = None) -> Dict[Tuple[Optional[str], str], TaxonEntry]:
    """
    Upsert the taxa assigned to the reads of every dir pattern.

    Reads without a classifier record get FILTERED at every rank. Classifier
    records without a read are fatal.

    Returns:
        (name, rank) -> TaxonEntry with the sequences pointing at the taxon.
    """
    observed: Dict[Tuple[Optional[str], str], Dict[int, Tuple[str, str]]] = {}

    for pattern in sorted(seq_map):
        by_sample = seq_map[pattern]
        program = None
        for id_sample in sorted(by_sample):
            attrs = samples.get(id_sample)
            if attrs is None:
                raise UpsertIntegrityError("Sample and sequence objects not matching")
            current = attrs.get(PROGRAM_KEY)
            if current is None or not str(current).strip():
                raise ImportConflictError(
                    f"Mandatory value for program name not found for directory pattern '{pattern}'"
                )
            if program is not None and current != program:
                raise ImportConflictError(
                    f"Multiple classifiers '{current}' and '{program}' for the same data '{pattern}'"
                )
            program = current

        plugin = load_classifier(str(program), taxonomy_dir)
        text = _read_files(base_dir, pattern, plugin.file_pattern)
        if text is None:
            continue
        assignments = plugin.parse(text, RANKS) if text.strip() else {}

        for id_sample in sorted(by_sample):
            attrs = samples[id_sample]
            database = attrs.get(DATABASE_KEY)
            if database is None or not str(database).strip():
                raise ImportConflictError(
                    f"Mandatory value for database not found for directory pattern '{pattern}'"
                )
            observation = (str(program), str(database))

            matched = 0
            for read_id, id_sequence in by_sample[id_sample].items():
                lineage = assignments.get(read_id)
                if lineage is None:
                    lineage = {rank: FILTERED for rank in RANKS}
                else:
                    matched += 1
                for rank in RANKS:
                    observed.setdefault((lineage.get(rank), rank), {})[id_sequence] = observation

            if matched != len(assignments):
                raise ClassificationMismatchError(
                    f"{len(assignments) - matched} read ID(s) do not match between taxonomy file "
                    f"and FASTQ for directory pattern '{pattern}' and taxonomy file pattern "
                    f"'{plugin.file_pattern}'"
                )

    if not observed:
        return {}
    rows = [(name, rank, result.id_change) for name, rank in observed]
    ids = _upsert(ctx, result, TAXONOMY, rows, batch_size=TAXONOMY_BATCH_SIZE)
    return {
        key: TaxonEntry(tax_id=ids[natural_key(TAXONOMY, row)], sequences=dict(observed[key]))
        for key, row in zip(observed, rows)
    }


def insert_classifications(ctx, result: ImportResult,
                           taxa: Mapping[Tuple[Optional[str], str], TaxonEntry]) -> Dict[int, Set[int]]:
    """Upsert (sequence, program, database); returns classification id -> taxonomy ids."""
    links: Dict[tuple, Set[int]] = {}
    rows = []
    for entry in taxa.values():
        for id_sequence, (program, database) in entry.sequences.items():
            row = (id_sequence, program, database, result.id_change)
            key = natural_key(CLASSIFICATION, row)
            if key not in links:
                links[key] = set()
                rows.append(row)
            links[key].add(entry.tax_id)

    if not rows:
        return {}
    ids = _upsert(ctx, result, CLASSIFICATION, rows, batch_size=CLASSIFICATION_BATCH_SIZE)
    return {ids[key]: set(tax_ids) for key, tax_ids in links.items()}


def insert_taxclass(ctx, result: ImportResult, classifications: Mapping[int, Set[int]]):
    """Link every classification to its taxa."""
    rows = []
    for id_classification in sorted(classifications):
        tax_ids = classifications[id_classification]
        if not tax_ids:
            raise UpsertIntegrityError(f"No taxonomy ids for classification {id_classification}")
        for id_taxonomy in sorted(tax_ids):
            rows.append((id_taxonomy, id_classification, result.id_change))

    is_new = db_api.insert_links(
        ctx.db, TAXCLASS, rows, result.id_change,
        is_new=result.is_new, batch_size=TAXCLASS_BATCH_SIZE,
    )
    result.merge(TAXCLASS.name, len(rows), is_new)
    log.info("taxclass: %d link(s) submitted.", len(rows))


# ---------------------------------------------------------------------------
# Reference standards
# ---------------------------------------------------------------------------

def insert_standards(ctx, result: ImportResult, standards: Sequence[StandardRow]) -> int:
    """Upsert growth-standard coefficients; returns the number of rows."""
    rows = [row.as_tuple() + (result.id_change,) for row in standards]
    if not rows:
        return 0
    return len(_upsert(ctx, result, STANDARD, rows, batch_size=STANDARD_BATCH_SIZE))

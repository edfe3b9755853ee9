"""
Schema definitions for initializing the study database.

Tables are grouped by domain:
  • change               audit anchor, one row per import run
  • patient / sample     study subjects and their specimens
  • type / measurement   typed attribute catalog and values per sample
  • sequence             sequencing reads per sample
  • taxonomy / classification / taxclass
                         classifier assignments of reads
  • standard             WHO growth-standard coefficients
  • v_*                  derived tables refreshed after a successful import

Every business table carries id_change so each row can be traced to the run
that created it. Natural keys are UNIQUE constraints; rows are never updated.
"""

# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

CREATE_CHANGE = """
CREATE TABLE IF NOT EXISTS change (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL,
    ts INTEGER NOT NULL,
    ip TEXT NOT NULL
);
"""

# ---------------------------------------------------------------------------
# Subjects and samples
# ---------------------------------------------------------------------------

CREATE_PATIENT = """
CREATE TABLE IF NOT EXISTS patient (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    alias TEXT NOT NULL,
    accession TEXT NOT NULL,
    birthdate TEXT NOT NULL,
    id_change INTEGER NOT NULL REFERENCES change(id),
    UNIQUE(alias, accession, birthdate)
);
"""

CREATE_SAMPLE = """
CREATE TABLE IF NOT EXISTS sample (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    id_patient INTEGER NOT NULL REFERENCES patient(id),
    createdate TEXT NOT NULL,
    createdby TEXT,
    iscontrol TEXT NOT NULL CHECK (iscontrol IN ('t', 'f')),
    id_change INTEGER NOT NULL REFERENCES change(id),
    UNIQUE(id_patient, createdate, iscontrol)
);
"""

# ---------------------------------------------------------------------------
# Measurements
# ---------------------------------------------------------------------------

CREATE_TYPE = """
CREATE TABLE IF NOT EXISTS type (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('i', 's', 'd', 'b')),
    selection TEXT,                 -- JSON list of legal values
    id_change INTEGER NOT NULL REFERENCES change(id),
    UNIQUE(name)
);
"""

CREATE_MEASUREMENT = """
CREATE TABLE IF NOT EXISTS measurement (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    id_sample INTEGER NOT NULL REFERENCES sample(id),
    id_type INTEGER NOT NULL REFERENCES type(id),
    value TEXT NOT NULL,
    id_change INTEGER NOT NULL REFERENCES change(id),
    UNIQUE(id_sample, id_type)
);
"""

# ---------------------------------------------------------------------------
# Sequencing and classification
# ---------------------------------------------------------------------------

CREATE_SEQUENCE = """
CREATE TABLE IF NOT EXISTS sequence (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    id_sample INTEGER NOT NULL REFERENCES sample(id),
    flowcellid TEXT,
    runid TEXT NOT NULL,
    barcode TEXT NOT NULL,
    readid TEXT NOT NULL,
    callermodel TEXT,
    nucs TEXT NOT NULL,
    quality TEXT NOT NULL,
    seqerr REAL,                    -- mean per-base error from quality
    seqlen INTEGER GENERATED ALWAYS AS (length(nucs)) VIRTUAL,
    id_change INTEGER NOT NULL REFERENCES change(id),
    UNIQUE(id_sample, runid, barcode, readid)
);
"""

CREATE_TAXONOMY = """
CREATE TABLE IF NOT EXISTS taxonomy (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    rank TEXT NOT NULL,
    id_change INTEGER NOT NULL REFERENCES change(id)
);
"""

CREATE_CLASSIFICATION = """
CREATE TABLE IF NOT EXISTS classification (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    id_sequence INTEGER NOT NULL REFERENCES sequence(id),
    program TEXT NOT NULL,
    "database" TEXT NOT NULL,
    id_change INTEGER NOT NULL REFERENCES change(id),
    UNIQUE(id_sequence, program, "database")
);
"""

CREATE_TAXCLASS = """
CREATE TABLE IF NOT EXISTS taxclass (
    id_taxonomy INTEGER NOT NULL REFERENCES taxonomy(id),
    id_classification INTEGER NOT NULL REFERENCES classification(id),
    id_change INTEGER NOT NULL REFERENCES change(id),
    PRIMARY KEY (id_taxonomy, id_classification)
);
"""

# ---------------------------------------------------------------------------
# Reference standards
# ---------------------------------------------------------------------------

CREATE_STANDARD = """
CREATE TABLE IF NOT EXISTS standard (
    name TEXT NOT NULL,
    sex TEXT NOT NULL CHECK (sex IN ('m', 'f')),
    age INTEGER NOT NULL,
    l REAL NOT NULL,
    m REAL NOT NULL,
    s REAL NOT NULL,
    id_change INTEGER NOT NULL REFERENCES change(id),
    PRIMARY KEY (name, sex, age)
);
"""

# ---------------------------------------------------------------------------
# Derived tables (refreshed by db.api.refresh_views)
# ---------------------------------------------------------------------------

CREATE_V_SAMPLES = """
CREATE TABLE IF NOT EXISTS v_samples (
    id INTEGER PRIMARY KEY,
    id_patient INTEGER NOT NULL,
    alias TEXT NOT NULL,
    createdate TEXT NOT NULL,
    timepoint TEXT NOT NULL,
    iscontrol TEXT NOT NULL,
    seqcount INTEGER NOT NULL,
    isok TEXT NOT NULL
);
"""

CREATE_V_LINEAGES = """
CREATE TABLE IF NOT EXISTS v_lineages (
    id_sample INTEGER NOT NULL,
    samplename TEXT NOT NULL,
    program TEXT NOT NULL,
    "database" TEXT NOT NULL,
    lineage TEXT NOT NULL,
    count INTEGER NOT NULL
);
"""

CREATE_V_TAXA = """
CREATE TABLE IF NOT EXISTS v_taxa (
    id_patient INTEGER NOT NULL,
    id_sample INTEGER NOT NULL,
    id_taxonomy INTEGER NOT NULL,
    alias TEXT NOT NULL,
    timepoint TEXT NOT NULL,
    iscontrol TEXT NOT NULL,
    program TEXT NOT NULL,
    "database" TEXT NOT NULL,
    name TEXT,
    rank TEXT NOT NULL,
    count INTEGER NOT NULL,
    minlen INTEGER,
    avglen REAL,
    maxlen INTEGER,
    avgerr REAL
);
"""

# Age in days -> timepoint label. Ranges are inclusive.
TIMEPOINT_BUCKETS = [
    ("meconium", 0, 1),
    ("3d", 2, 4),
    ("2w", 10, 18),
    ("6w", 35, 49),
    ("3m", 79, 101),
    ("6m", 169, 191),
    ("9m", 259, 281),
    ("1y", 354, 376),
    ("1.5y", 537, 559),
    ("2y", 719, 741),
    ("2.5y", 902, 924),
    ("3y", 1084, 1106),
]

RANKS = [
    "domain", "phylum", "class", "subclass", "order",
    "suborder", "family", "genus", "species", "strain",
]


def _timepoint_case(days_expr: str) -> str:
    whens = "\n".join(
        f"            WHEN {days_expr} BETWEEN {lo} AND {hi} THEN '{label}'"
        for label, lo, hi in TIMEPOINT_BUCKETS
    )
    return f"(CASE\n{whens}\n            ELSE 'NA'\n        END)"


SELECT_V_SAMPLES = f"""
WITH timep AS (
    SELECT s.id, p.id AS id_patient, p.alias, s.createdate,
        {_timepoint_case("CAST(julianday(s.createdate) - julianday(p.birthdate) AS INTEGER)")} AS timepoint,
        s.iscontrol,
        (SELECT count(*) FROM sequence WHERE id_sample = s.id) AS seqcount
    FROM sample s INNER JOIN patient p ON p.id = s.id_patient
),
checks AS (
    SELECT id_patient, timepoint, iscontrol,
        (CASE
            WHEN timepoint = 'NA' THEN 'f'
            WHEN count(createdate) != 1 THEN 'f'
            ELSE 't'
        END) AS isok
    FROM timep GROUP BY id_patient, timepoint, iscontrol
)
SELECT t.id, t.id_patient, t.alias, t.createdate, t.timepoint, t.iscontrol, t.seqcount, c.isok
FROM timep t INNER JOIN checks c
    ON c.id_patient = t.id_patient AND c.timepoint = t.timepoint AND c.iscontrol = t.iscontrol
"""

_LINEAGE_COLUMNS = ",\n        ".join(
    f"max(CASE WHEN t.rank = '{rank}' THEN coalesce(t.name, '') END) AS r{i}"
    for i, rank in enumerate(RANKS)
)
_LINEAGE_JOIN = " || ';' || ".join(f"coalesce(r{i}, '')" for i in range(len(RANKS)))

SELECT_V_LINEAGES = f"""
WITH lin AS (
    SELECT c.id, c.id_sequence, c.program, c."database",
        {_LINEAGE_COLUMNS}
    FROM classification c
        INNER JOIN taxclass tc ON tc.id_classification = c.id
        INNER JOIN taxonomy t ON t.id = tc.id_taxonomy
    GROUP BY c.id
)
SELECT vs.id AS id_sample,
    vs.alias || '_' || vs.timepoint || '_' || vs.iscontrol AS samplename,
    l.program, l."database",
    {_LINEAGE_JOIN} AS lineage,
    count(*) AS count
FROM v_samples vs
    INNER JOIN sequence seq ON seq.id_sample = vs.id
    INNER JOIN lin l ON l.id_sequence = seq.id
GROUP BY vs.id, samplename, l.program, l."database", lineage
"""

SELECT_V_TAXA = """
SELECT vs.id_patient, vs.id AS id_sample, t.id AS id_taxonomy, vs.alias, vs.timepoint, vs.iscontrol,
    c.program, c."database", t.name, t.rank, count(tc.id_taxonomy) AS count,
    min(seq.seqlen) AS minlen, round(avg(seq.seqlen), 0) AS avglen, max(seq.seqlen) AS maxlen,
    avg(seq.seqerr) AS avgerr
FROM v_samples vs
    INNER JOIN sequence seq ON seq.id_sample = vs.id
    INNER JOIN classification c ON c.id_sequence = seq.id
    INNER JOIN taxclass tc ON tc.id_classification = c.id
    INNER JOIN taxonomy t ON t.id = tc.id_taxonomy
GROUP BY vs.id, c.program, c."database", t.id
"""

# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------

# UNIQUE(name, rank) would treat NULL names as distinct.
CREATE_INDEX_TAXONOMY_NAME_RANK = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_taxonomy_name_rank
    ON taxonomy (coalesce(name, ''), rank);
"""

CREATE_INDEX_TAXONOMY_RANK = """
CREATE INDEX IF NOT EXISTS idx_taxonomy_rank ON taxonomy (rank, name);
"""

CREATE_INDEX_SAMPLE_PATIENT = """
CREATE INDEX IF NOT EXISTS idx_sample_patient ON sample (id_patient);
"""

CREATE_INDEX_SEQUENCE_SAMPLE = """
CREATE INDEX IF NOT EXISTS idx_sequence_sample ON sequence (id_sample);
"""

CREATE_INDEX_TAXCLASS_CHANGE = """
CREATE INDEX IF NOT EXISTS idx_taxclass_change ON taxclass (id_change);
"""

ALL_TABLES = [
    CREATE_CHANGE,
    CREATE_PATIENT,
    CREATE_SAMPLE,
    CREATE_TYPE,
    CREATE_MEASUREMENT,
    CREATE_SEQUENCE,
    CREATE_TAXONOMY,
    CREATE_CLASSIFICATION,
    CREATE_TAXCLASS,
    CREATE_STANDARD,
    CREATE_V_SAMPLES,
    CREATE_V_LINEAGES,
    CREATE_V_TAXA,
]

ALL_INDEXES = [
    CREATE_INDEX_TAXONOMY_NAME_RANK,
    CREATE_INDEX_TAXONOMY_RANK,
    CREATE_INDEX_SAMPLE_PATIENT,
    CREATE_INDEX_SEQUENCE_SAMPLE,
    CREATE_INDEX_TAXCLASS_CHANGE,
]

# Refresh order matters: later queries read earlier tables.
VIEW_QUERIES = {
    "v_samples": SELECT_V_SAMPLES,
    "v_lineages": SELECT_V_LINEAGES,
    "v_taxa": SELECT_V_TAXA,
}

# metagdb/errors.py
"""
Exceptions raised by the importer.

Everything derives from MetagDBError so the CLI can report any import failure
uniformly; the secondary bases keep the builtin meaning (bad value, missing
file, runtime failure) for callers that only care about that.
"""


class MetagDBError(Exception):
    """Base exception for metagdb."""
    pass


class TableFormatError(MetagDBError, ValueError):
    """Structurally invalid input table (header, field counts, roles)."""
    pass


class FormatError(MetagDBError, ValueError):
    """Malformed FASTQ, classifier output or reference table."""
    pass


class ImportConflictError(MetagDBError, ValueError):
    """Conflicting or disallowed data detected during a run."""
    pass


class ClassificationMismatchError(ImportConflictError):
    """Classifier output names reads that are not in the sequence set."""
    pass


class UpsertIntegrityError(MetagDBError, RuntimeError):
    """An identifier needed downstream could not be resolved."""
    pass


class FileDiscoveryError(MetagDBError, FileNotFoundError):
    """No directory matched a file search."""
    pass


class FileAmbiguityError(MetagDBError, ValueError):
    """More than one directory matched a file search, or files differ only by extension."""
    pass


class ImportLockError(MetagDBError, RuntimeError):
    """Another importer holds the write lock."""
    pass


class ExportError(MetagDBError, ValueError):
    """Stored data cannot be shaped into the requested export tables."""
    pass

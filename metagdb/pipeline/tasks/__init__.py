"""
Task registry for the importer.

This module exposes concrete task classes so the CLI can discover them without
each consumer having to know the individual module paths.
"""

from __future__ import annotations

from typing import Dict, Type

from .base import Task
from .export import ExportTask
from .import_study import ImportTask, StandardsTask

__all__ = [
    "ExportTask",
    "ImportTask",
    "StandardsTask",
    "TASK_REGISTRY",
]

TASK_REGISTRY: Dict[str, Type[Task]] = {
    "import": ImportTask,
    "standards": StandardsTask,
    "export": ExportTask,
}

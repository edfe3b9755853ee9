# metagdb/utils/config.py
"""
Configuration loading utility.

Handles loading the YAML run configuration and resolving the file paths it
names relative to the configuration file.
"""

import yaml
from pathlib import Path
from typing import Any, Dict, Optional, Union


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Loads a YAML configuration file.

    Args:
        path: The path to the YAML file.

    Returns:
        A dictionary containing the configuration (empty for an empty file).
    """
    with open(path, 'r') as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return data


def resolve_path(value: Optional[Union[str, Path]], base_dir: Optional[Path]) -> Optional[Path]:
    """Resolve a configured path against the directory holding the config."""
    if value in (None, ""):
        return None
    p = Path(value).expanduser()
    if not p.is_absolute() and base_dir is not None:
        p = base_dir / p
    return p.resolve()

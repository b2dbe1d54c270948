"""Configuration loading for the agent runtime.

Configuration is plain nested mappings merged from ``config/*.yaml`` plus
optional programmatic overrides. Environment variables only select where
files live (``MTA_CONFIG_DIR``) and where the database goes (``MTA_DB_PATH``).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILES = {
    "default": "default.yaml",
    "models": "models.yaml",
    "tools_cfg": "tools.yaml",
    "permissions": "permissions.yaml",
}


def load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML from file, returning empty mapping when missing."""
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data


def merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dictionaries."""
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def section(config: dict[str, Any], name: str) -> dict[str, Any]:
    """Return one config section, tolerating absent or malformed entries."""
    value = config.get(name, {})
    return dict(value) if isinstance(value, dict) else {}


def config_dir_for(root: Path) -> Path:
    override = os.getenv("MTA_CONFIG_DIR")
    return Path(override).resolve() if override else root / "config"


def ensure_runtime_dirs(root: Path, config: dict[str, Any]) -> dict[str, Path]:
    """Resolve runtime locations, creating parent directories.

    Relative paths are taken from ``MTA_HOME`` when set, otherwise ``root``.
    """
    paths_cfg = section(config, "paths")
    home = Path(os.getenv("MTA_HOME") or root)
    workspace_dir = (home / paths_cfg.get("workspace_dir", "workspace")).resolve()
    db_override = os.getenv("MTA_DB_PATH")
    if db_override:
        db_path = Path(db_override).resolve()
    else:
        db_path = (home / paths_cfg.get("db_path", "workspace/mta.db")).resolve()
    audit_log_path = (home / paths_cfg.get("audit_log_path", "logs/audit.jsonl")).resolve()

    workspace_dir.mkdir(parents=True, exist_ok=True)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)

    return {
        "workspace_dir": workspace_dir,
        "db_path": db_path,
        "audit_log_path": audit_log_path,
    }


def load_effective_config(
    root: Path,
    overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Load and merge all runtime configuration files, then apply overrides."""
    config_dir = config_dir_for(root)
    merged = load_yaml(config_dir / CONFIG_FILES["default"])
    for key in ("models", "tools_cfg", "permissions"):
        merged = merge_dicts(merged, {key: load_yaml(config_dir / CONFIG_FILES[key])})
    if overrides:
        merged = merge_dicts(merged, overrides)
    return merged

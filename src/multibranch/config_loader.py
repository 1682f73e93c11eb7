"""Configuration loading and merging for multibranch.

Handles TOML loading, config discovery, deep merging, and environment overlay.
"""

from __future__ import annotations

import os
import sys
import threading
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

# TOML loading: tomllib (3.11+) with tomli fallback
if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib  # type: ignore
    except ImportError:
        tomllib = None  # type: ignore

from pydantic import ValidationError

from .config_schema import MultibranchConfig
from .errors import ConfigurationError


# Config file names
CONFIG_FILENAME = "config.toml"

# Directory names
USER_CONFIG_DIR = ".multibranch"
PROJECT_CONFIG_DIR = ".multibranch"

# Environment variable -> (section path, key)
ENV_MAPPING: Dict[str, tuple[list[str], str]] = {
    # Logging
    "MULTIBRANCH_LOG_LEVEL": (["logging"], "level"),
    "MULTIBRANCH_LOG_DIR": (["logging"], "dir"),
    "MULTIBRANCH_LOG_MAX_BYTES": (["logging"], "max_bytes"),
    "MULTIBRANCH_LOG_BACKUP_COUNT": (["logging"], "backup_count"),
    "MULTIBRANCH_LOG_DISABLE_FILE": (["logging"], "disable_file"),
    # Locking
    "MULTIBRANCH_LOCK_TIMEOUT": (["lock"], "timeout"),
    "MULTIBRANCH_LOCK_TTL": (["lock"], "ttl"),
    "MULTIBRANCH_USE_FILE_LOCK": (["lock"], "use_file_lock"),
    # Reconciliation
    "MULTIBRANCH_SKIP_TAGS": (["reconcile"], "skip_tags_by_default"),
    "MULTIBRANCH_MAX_WORKERS": (["reconcile"], "max_workers"),
    "MULTIBRANCH_SCAN_ON_EVENT_FAILURE": (["reconcile"], "scan_on_event_failure"),
    # Dead branches
    "MULTIBRANCH_PRUNE_DEAD_BRANCHES": (["dead_branches"], "prune"),
    "MULTIBRANCH_DAYS_TO_KEEP": (["dead_branches"], "days_to_keep"),
    "MULTIBRANCH_NUM_TO_KEEP": (["dead_branches"], "num_to_keep"),
}


class ConfigError(ConfigurationError):
    """Configuration loading or validation error."""


def _get_user_config_dir() -> Path:
    """Get user-level config directory (~/.multibranch/)."""
    return Path.home() / USER_CONFIG_DIR


def _get_project_config_dir(project_path: Optional[Path] = None) -> Optional[Path]:
    """Search upward from project_path for a .multibranch/ directory."""
    if project_path is None:
        project_path = Path.cwd()

    if not project_path.is_absolute():
        project_path = project_path.resolve()

    current = project_path
    while current != current.parent:
        config_dir = current / PROJECT_CONFIG_DIR
        if config_dir.is_dir() and config_dir != _get_user_config_dir():
            return config_dir
        current = current.parent

    return None


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file.

    Raises:
        ConfigError: If file cannot be loaded or parsed
    """
    if tomllib is None:
        raise ConfigError(
            "TOML support requires Python 3.11+ or 'tomli' package. "
            "Install with: pip install tomli"
        )

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries.

    Override values take precedence. Nested dicts are merged recursively.
    Lists are replaced, not merged.
    """
    result = base.copy()

    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config dict."""
    result = config_dict.copy()

    for env_var, (section_path, key_name) in ENV_MAPPING.items():
        value = os.getenv(env_var)
        if value is None:
            continue

        # Copy each section on the way down so the input dict is untouched
        current = result
        for section in section_path:
            current[section] = dict(current.get(section) or {})
            current = current[section]

        # Set value (type conversion happens during Pydantic validation)
        current[key_name] = value

    return result


def load_config(
    project_path: Optional[Path] = None,
    skip_env: bool = False,
) -> MultibranchConfig:
    """Load and merge multibranch configuration.

    Discovery order (later sources override earlier):
    1. Built-in defaults
    2. User config (~/.multibranch/config.toml)
    3. Project config (.multibranch/config.toml)
    4. Environment variables (unless skip_env=True)

    Raises:
        ConfigError: If the project config or the merged result is invalid
    """
    config_dict: Dict[str, Any] = {}

    # 1. User config
    user_config_path = _get_user_config_dir() / CONFIG_FILENAME
    if user_config_path.exists():
        try:
            user_config = _load_toml(user_config_path)
            config_dict = _deep_merge(config_dict, user_config)
        except ConfigError as e:
            # User config is optional, warn but continue
            warnings.warn(
                f"Skipping invalid user config at {user_config_path}: {e}",
                UserWarning,
            )

    # 2. Project config
    project_config_dir = _get_project_config_dir(project_path)
    if project_config_dir:
        project_config_path = project_config_dir / CONFIG_FILENAME
        if project_config_path.exists():
            try:
                project_config = _load_toml(project_config_path)
                config_dict = _deep_merge(config_dict, project_config)
            except ConfigError as e:
                raise ConfigError(f"Invalid project config: {e}")

    # 3. Environment overlay
    if not skip_env:
        config_dict = _apply_env_overlay(config_dict)

    # 4. Validate and create config object
    try:
        return MultibranchConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")


def get_config_paths(project_path: Optional[Path] = None) -> Dict[str, Optional[Path]]:
    """Get paths to the user and project config files."""
    project_dir = _get_project_config_dir(project_path)
    return {
        "user_config": _get_user_config_dir() / CONFIG_FILENAME,
        "project_config": project_dir / CONFIG_FILENAME if project_dir else None,
    }


# Global cached config (thread-safe)
_cached_config: Optional[MultibranchConfig] = None
_cached_project_path: Optional[Path] = None
_config_lock = threading.Lock()


def get_config(project_path: Optional[Path] = None, force_reload: bool = False) -> MultibranchConfig:
    """Get cached config, loading if necessary."""
    global _cached_config, _cached_project_path

    # Normalize path for comparison (treat empty Path as None)
    if project_path and str(project_path):
        normalized_path = project_path.resolve()
    else:
        normalized_path = None

    with _config_lock:
        if (
            force_reload
            or _cached_config is None
            or _cached_project_path != normalized_path
        ):
            _cached_config = load_config(project_path)
            _cached_project_path = normalized_path

        return _cached_config


def clear_config_cache() -> None:
    """Clear cached config (thread-safe)."""
    global _cached_config, _cached_project_path
    with _config_lock:
        _cached_config = None
        _cached_project_path = None

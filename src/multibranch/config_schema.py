"""Configuration schema for multibranch.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import warnings
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = ~/.multibranch/logs)",
    )
    max_bytes: int = Field(
        default=10485760,  # 10MB
        ge=0,
        description="Maximum log file size in bytes",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of backup log files to keep",
    )
    disable_file: bool = Field(
        default=False,
        description="Disable file logging (stderr only)",
    )

    @field_validator("dir")
    @classmethod
    def validate_log_dir(cls, v: str) -> str:
        """Warn if the log directory path exists but is not a directory."""
        if v:
            path = Path(v).expanduser()
            if path.exists() and not path.is_dir():
                warnings.warn(
                    f"Log path is not a directory: {v}",
                    UserWarning,
                )
        return v


class LockConfig(BaseModel):
    """Per-container lock settings."""

    timeout: Optional[float] = Field(
        default=None,
        ge=0,
        description="Seconds to wait for a container lock (unset = wait forever)",
    )
    ttl: int = Field(
        default=300,
        description="Seconds after which a lock file is considered stale (<= 0 = never)",
    )
    use_file_lock: bool = Field(
        default=True,
        description="Also take a lock file in the container's state directory",
    )


class ReconcileConfig(BaseModel):
    """Scan and event reconciliation settings."""

    skip_tags_by_default: bool = Field(
        default=True,
        description="Do not build tags unless a build strategy says so",
    )
    tag_prefixes: List[str] = Field(
        default_factory=list,
        description="Only report tags starting with one of these prefixes (empty = all tags)",
    )
    max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Worker threads reconciling containers concurrently",
    )
    scan_on_event_failure: bool = Field(
        default=True,
        description="Queue a full scan when an event could not reach one of its sources",
    )


class DeadBranchConfig(BaseModel):
    """Retention of dead branch projects."""

    prune: bool = Field(
        default=True,
        description="Delete dead branches according to the limits below",
    )
    days_to_keep: int = Field(
        default=-1,
        ge=-1,
        description="Keep dead branches built within this many days (-1 = no limit)",
    )
    num_to_keep: int = Field(
        default=-1,
        ge=-1,
        description="Keep at most this many dead branches (-1 = no limit)",
    )

    @field_validator("days_to_keep", "num_to_keep", mode="before")
    @classmethod
    def blank_means_unlimited(cls, v):
        """Accept an empty string for "no limit"."""
        if isinstance(v, str) and not v.strip():
            return -1
        return v


class MultibranchConfig(BaseModel):
    """Root configuration model."""

    version: int = Field(
        default=1,
        ge=1,
        description="Config schema version",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    dead_branches: DeadBranchConfig = Field(default_factory=DeadBranchConfig)

    @classmethod
    def default(cls) -> "MultibranchConfig":
        """Create config with all defaults."""
        return cls()

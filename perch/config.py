"""Configuration loading and constants for perch."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError


# ---------------------------------------------------------------------------
# Health thresholds
# ---------------------------------------------------------------------------

# Deacon heartbeat older than this reads as "stale" (and services as stopped)
HEARTBEAT_STALE_AFTER = timedelta(minutes=5)

# Merge queue: an MR older than this while the refinery idles means a stall
QUEUE_STALL_AGE = timedelta(hours=1)

# Merge queue: an MR older than this earns a nudge recommendation
QUEUE_NUDGE_AGE = timedelta(minutes=30)

# Age badge cut points for queued MRs: (upper bound, label)
QUEUE_AGE_BUCKETS: list[tuple[timedelta, str]] = [
    (timedelta(minutes=10), "fresh"),
    (timedelta(minutes=30), "ok"),
    (timedelta(hours=1), "waiting"),
]
QUEUE_AGE_STALE_LABEL = "stale"


# ---------------------------------------------------------------------------
# Status message lifetimes (seconds)
# ---------------------------------------------------------------------------

STATUS_ERROR_SECONDS = 5.0
STATUS_SUCCESS_SECONDS = 3.0
STATUS_INFO_SECONDS = 3.0
STATUS_CANCEL_SECONDS = 2.0


# ---------------------------------------------------------------------------
# Defaults (can be overridden in ~/.perch/config.yaml)
# ---------------------------------------------------------------------------

DEFAULT_REFRESH_INTERVAL = 10.0
DEFAULT_AUDIT_LIMIT = 20
DEFAULT_LIFECYCLE_LIMIT = 100

DEFAULT_ACTION_TIMEOUTS = {
    "default": 30.0,
    "long": 120.0,
    "create": 60.0,
    "detail": 10.0,
    "refresh": 30.0,
}

# Identity section: how many commits and beads to show
IDENTITY_RECENT_LIMIT = 5


@dataclass(frozen=True)
class ActionTimeouts:
    """Deadlines (seconds) for each class of external call."""

    default: float = DEFAULT_ACTION_TIMEOUTS["default"]
    long: float = DEFAULT_ACTION_TIMEOUTS["long"]
    create: float = DEFAULT_ACTION_TIMEOUTS["create"]
    detail: float = DEFAULT_ACTION_TIMEOUTS["detail"]
    refresh: float = DEFAULT_ACTION_TIMEOUTS["refresh"]


@dataclass(frozen=True)
class DashboardConfig:
    """Read-only settings built once at startup and handed to every component."""

    town_root: Path
    perch_dir: Path
    refresh_interval: float = DEFAULT_REFRESH_INTERVAL
    timeouts: ActionTimeouts = field(default_factory=ActionTimeouts)
    audit_limit: int = DEFAULT_AUDIT_LIMIT
    lifecycle_limit: int = DEFAULT_LIFECYCLE_LIMIT

    @property
    def log_path(self) -> Path:
        return self.perch_dir / "logs" / "dashboard.log"

    @property
    def snapshot_export_path(self) -> Path:
        return self.perch_dir / "last_snapshot.json"

    def with_town(self, town_root: Path | str) -> DashboardConfig:
        return replace(self, town_root=Path(town_root).expanduser())


def get_perch_dir() -> Path:
    """Get the ~/.perch directory.

    Can be overridden via PERCH_DIR environment variable (used by tests).
    """
    env_override = os.environ.get("PERCH_DIR")
    if env_override:
        return Path(env_override)
    return Path.home() / ".perch"


def get_config_path() -> Path:
    """Get path to config.yaml in the perch directory."""
    return get_perch_dir() / "config.yaml"


def get_town_root() -> Path:
    """Get the Gas Town root, from GT_ROOT or ~/gt."""
    env_root = os.environ.get("GT_ROOT")
    if env_root:
        return Path(env_root).expanduser()
    return Path.home() / "gt"


def get_logs_dir() -> Path:
    """Get the directory the dashboard log is written to."""
    return get_perch_dir() / "logs"


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"{path}: invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def _positive_number(data: dict[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{key} must be a positive number, got {value!r}")
    return float(value)


def load_config(path: Path | None = None) -> DashboardConfig:
    """Load dashboard settings from config.yaml, falling back to defaults.

    Recognised keys::

        town_root: ~/gt
        refresh_interval: 10
        audit_limit: 20
        lifecycle_limit: 100
        timeouts:
          default: 30
          long: 120
          create: 60
          detail: 10
          refresh: 30

    Args:
        path: Explicit config file. Defaults to ~/.perch/config.yaml.

    Returns:
        A frozen DashboardConfig.

    Raises:
        ConfigError: If the file exists but holds unusable values.
    """
    config_path = path or get_config_path()
    try:
        data = _read_yaml(config_path)
    except FileNotFoundError:
        data = {}

    timeouts_data = data.get("timeouts") or {}
    if not isinstance(timeouts_data, dict):
        raise ConfigError("timeouts must be a mapping")
    timeouts = ActionTimeouts(
        **{
            key: _positive_number(timeouts_data, key, default)
            for key, default in DEFAULT_ACTION_TIMEOUTS.items()
        }
    )

    # GT_ROOT beats the file; --town beats both (see with_town)
    town_root = data.get("town_root")
    if os.environ.get("GT_ROOT") or not town_root:
        resolved_root = get_town_root()
    else:
        resolved_root = Path(town_root).expanduser()

    return DashboardConfig(
        town_root=resolved_root,
        perch_dir=get_perch_dir(),
        refresh_interval=_positive_number(data, "refresh_interval", DEFAULT_REFRESH_INTERVAL),
        timeouts=timeouts,
        audit_limit=int(_positive_number(data, "audit_limit", DEFAULT_AUDIT_LIMIT)),
        lifecycle_limit=int(_positive_number(data, "lifecycle_limit", DEFAULT_LIFECYCLE_LIMIT)),
    )

"""Load, validate, and reload the geobeacon agent configuration.

The config lives in ``agent_config.yaml`` alongside this module (override with
``GEOBEACON_AGENT_CONFIG_PATH``).  It is loaded once per process and cached.
Both scheduler entry points run in fresh processes, so each loads it itself.

Usage::

    from geobeacon.config_loader import get_agent_config

    config = get_agent_config()
    config.foreground_service.interval_seconds   # 15.0
    config.fallback_task.frequency               # timedelta(minutes=15)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from geobeacon.exceptions import ConfigValidationError

logger = logging.getLogger("geobeacon.config")

_CONFIG_PATH = Path(__file__).parent / "agent_config.yaml"

IMPORTANCE_LEVELS = ("min", "low", "default", "high", "max")


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class ForegroundServiceSettings:
    """Foreground service timer and notification settings."""

    interval_seconds: float
    auto_start: bool
    is_foreground_mode: bool
    notification_id: int
    initial_title: str
    initial_body: str
    stop_action_label: str = "Stop"


@dataclass
class NotificationChannelSettings:
    """Notification channel the foreground service posts into."""

    channel_id: str
    name: str
    description: str
    importance: str  # one of IMPORTANCE_LEVELS


@dataclass
class FallbackTaskSettings:
    """OS periodic job identity and cadence."""

    task_id: str
    unique_name: str
    frequency_minutes: int
    debug: bool = False

    @property
    def frequency(self) -> timedelta:
        return timedelta(minutes=self.frequency_minutes)


@dataclass
class AgentConfig:
    """Complete, validated agent configuration.

    Attributes:
        version:              Config schema version string.
        foreground_service:   Foreground timer cadence and notification text.
        notification_channel: Channel registered before the service starts.
        fallback_task:        Periodic job registration.
        collection:           Remote document collection for telemetry records.
    """

    version: str
    foreground_service: ForegroundServiceSettings
    notification_channel: NotificationChannelSettings
    fallback_task: FallbackTaskSettings
    collection: str = "locations"
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Agent config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}", exc) from exc


def _validate_and_build(raw: dict) -> AgentConfig:
    """Validate the raw YAML dict and construct an AgentConfig.

    Every problem is collected before raising, so one run reports them all.

    Args:
        raw: Parsed YAML dict.

    Returns:
        Validated AgentConfig instance.

    Raises:
        ConfigValidationError: If fields are missing or invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: Any, cast: type, where: str) -> Any:
        value = section.get(key, default)
        try:
            return cast(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be a number, got {value!r}")
            return default

    version = str(raw.get("version", "1.0"))

    # ── Foreground service ──
    fg_raw = raw.get("foreground_service") or {}
    interval = _number(fg_raw, "interval_seconds", 15, float, "foreground_service")
    if interval <= 0:
        errors.append(f"foreground_service.interval_seconds must be > 0, got {interval}")
    foreground = ForegroundServiceSettings(
        interval_seconds=interval,
        auto_start=bool(fg_raw.get("auto_start", True)),
        is_foreground_mode=bool(fg_raw.get("is_foreground_mode", True)),
        notification_id=_number(fg_raw, "notification_id", 888, int, "foreground_service"),
        initial_title=str(fg_raw.get("initial_title", "Location sharing active")),
        initial_body=str(fg_raw.get("initial_body", "Sharing location in the background")),
        stop_action_label=str(fg_raw.get("stop_action_label", "Stop")),
    )

    # ── Notification channel ──
    nc_raw = raw.get("notification_channel") or {}
    channel_id = str(nc_raw.get("id", "")).strip()
    if not channel_id:
        errors.append("notification_channel.id is required")
    importance = str(nc_raw.get("importance", "low")).lower()
    if importance not in IMPORTANCE_LEVELS:
        errors.append(
            f"notification_channel.importance must be one of {IMPORTANCE_LEVELS}, got {importance!r}"
        )
    channel = NotificationChannelSettings(
        channel_id=channel_id,
        name=str(nc_raw.get("name", channel_id)),
        description=str(nc_raw.get("description", "")),
        importance=importance,
    )

    # ── Fallback task ──
    ft_raw = raw.get("fallback_task") or {}
    task_id = str(ft_raw.get("task_id", "")).strip()
    unique_name = str(ft_raw.get("unique_name", "")).strip()
    if not task_id:
        errors.append("fallback_task.task_id is required")
    if not unique_name:
        errors.append("fallback_task.unique_name is required")
    frequency_minutes = _number(ft_raw, "frequency_minutes", 15, int, "fallback_task")
    if frequency_minutes <= 0:
        errors.append(f"fallback_task.frequency_minutes must be > 0, got {frequency_minutes}")
    fallback = FallbackTaskSettings(
        task_id=task_id,
        unique_name=unique_name,
        frequency_minutes=frequency_minutes,
        debug=bool(ft_raw.get("debug", False)),
    )

    # ── Telemetry ──
    telemetry_raw = raw.get("telemetry") or {}
    collection = str(telemetry_raw.get("collection", "locations")).strip()
    if not collection or "/" in collection:
        errors.append(f"telemetry.collection must be a plain collection id, got {collection!r}")

    if errors:
        raise ConfigValidationError(
            f"agent_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return AgentConfig(
        version=version,
        foreground_service=foreground,
        notification_channel=channel,
        fallback_task=fallback,
        collection=collection,
        _raw=raw,
    )


def load_agent_config(path: Path | None = None) -> AgentConfig:
    """Load and validate the agent config from disk.

    Args:
        path: Override path to YAML. Uses the bundled agent_config.yaml by default.

    Returns:
        Validated AgentConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded agent config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Process-wide cache
# ---------------------------------------------------------------------------

_configs: dict[Path, AgentConfig] = {}
_config_lock = threading.Lock()


def get_agent_config(path: Path | None = None) -> AgentConfig:
    """Return the cached AgentConfig for ``path``, loading it on first call.

    The cache is keyed by the resolved path, so asking for a different file
    loads that file instead of returning the bundled config.
    """
    target = (path or _CONFIG_PATH).resolve()
    config = _configs.get(target)
    if config is None:
        with _config_lock:
            config = _configs.get(target)
            if config is None:  # double-checked locking
                config = _configs[target] = load_agent_config(target)
    return config


def reload_agent_config(path: Path | None = None) -> AgentConfig:
    """Reload the agent config at ``path`` from disk and replace its cache entry.

    If validation fails, the old config is retained and the error is re-raised.
    """
    target = (path or _CONFIG_PATH).resolve()
    new_config = load_agent_config(target)
    with _config_lock:
        old = _configs.get(target)
        old_version = old.version if old else "none"
        _configs[target] = new_config
    logger.info("Reloaded agent config: %s → %s", old_version, new_config.version)
    return new_config

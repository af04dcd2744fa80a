"""Sentinel configuration: dataclass model, YAML loader and env overrides.

Config lives at ~/.atom/sentinel.yml by default. Every section is optional;
a missing file yields the defaults. ``SENTINEL_*`` environment variables
(also read from a ``.env`` in the working directory) win over the file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from nebulus_sentinel.errors import ConfigError

logger = logging.getLogger(__name__)

# Load .env from current working directory
load_dotenv(os.path.join(os.getcwd(), ".env"))

DEFAULT_CONFIG_PATH = Path.home() / ".atom" / "sentinel.yml"

DEFAULT_RECOVERY_PROMPT = (
    "Reread AGENTS.md so it's still fresh in your mind. Use ultrathink."
)

FAILED_SEND_POLICIES = frozenset({"consume", "refund"})


@dataclass
class AlertConfig:
    """Thresholds for the alert generator and tracker."""

    enabled: bool = True
    agent_stuck_minutes: int = 5
    disk_low_threshold_gb: float = 5.0
    mail_backlog_threshold: int = 10
    bead_stale_hours: int = 24
    resolved_prune_minutes: int = 60
    projects_dir: Optional[str] = None
    session_filter: Optional[str] = None
    capture_lines: int = 50


@dataclass
class RecoveryConfig:
    """Compaction recovery gating."""

    cooldown_seconds: float = 30.0
    prompt: str = DEFAULT_RECOVERY_PROMPT
    max_recoveries: int = 5
    max_event_age_seconds: float = 600.0
    include_bead_context: bool = True
    # consume: a failed send still spends the attempt and stamps the cooldown
    # refund: a failed send leaves the pane's budget untouched
    failed_send_policy: str = "consume"


@dataclass
class DetectorConfig:
    """Output classifier tuning."""

    scan_lines: int = 50
    activity_threshold_seconds: float = 5.0
    output_preview_length: int = 200


@dataclass
class ConflictConfig:
    """File conflict windows."""

    window_minutes: int = 60
    critical_window_minutes: int = 10
    critical_agent_count: int = 3
    store_limit: int = 500


@dataclass
class SentinelConfig:
    """Top-level sentinel configuration."""

    alerts: AlertConfig = field(default_factory=AlertConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    conflicts: ConflictConfig = field(default_factory=ConflictConfig)
    monitor_interval_seconds: float = 30.0

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict view, used for the ``config`` block of alert output."""
        return asdict(self)


def load_yaml_config(path: Path) -> dict:
    """Load a YAML config file, returning empty dict if not found.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed dict, or empty dict when the file is absent or empty.

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping.
    """
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def _apply(target: Any, data: dict, section: str) -> None:
    """Copy known keys from ``data`` onto a config dataclass."""
    for key, value in data.items():
        if not hasattr(target, key):
            logger.warning(f"Ignoring unknown config key {section}.{key}")
            continue
        current = getattr(target, key)
        try:
            if isinstance(current, bool):
                value = bool(value)
            elif isinstance(current, float):
                value = float(value)
            elif isinstance(current, int):
                value = int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{section}.{key}: {e}") from e
        setattr(target, key, value)


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value if value else None


def apply_env_overrides(config: SentinelConfig) -> SentinelConfig:
    """Apply ``SENTINEL_*`` environment overrides in place.

    Raises:
        ConfigError: If a numeric variable cannot be parsed.
    """
    numeric = {
        "SENTINEL_COOLDOWN_SECONDS": (config.recovery, "cooldown_seconds", float),
        "SENTINEL_MAX_RECOVERIES": (config.recovery, "max_recoveries", int),
        "SENTINEL_DISK_LOW_GB": (config.alerts, "disk_low_threshold_gb", float),
        "SENTINEL_BEAD_STALE_HOURS": (config.alerts, "bead_stale_hours", int),
        "SENTINEL_PRUNE_MINUTES": (config.alerts, "resolved_prune_minutes", int),
        "SENTINEL_INTERVAL": (config, "monitor_interval_seconds", float),
    }
    for var, (target, attr, cast) in numeric.items():
        raw = _env(var)
        if raw is None:
            continue
        try:
            setattr(target, attr, cast(raw))
        except ValueError as e:
            raise ConfigError(f"{var}={raw!r} is not a valid number") from e

    prompt = _env("SENTINEL_RECOVERY_PROMPT")
    if prompt:
        config.recovery.prompt = prompt

    projects_dir = _env("SENTINEL_PROJECTS_DIR")
    if projects_dir:
        config.alerts.projects_dir = projects_dir

    policy = _env("SENTINEL_FAILED_SEND_POLICY")
    if policy:
        config.recovery.failed_send_policy = policy.lower()

    return config


def load_config(path: Optional[Path] = None) -> SentinelConfig:
    """Load sentinel config from YAML plus environment.

    Args:
        path: Path to sentinel.yml. Defaults to ~/.atom/sentinel.yml.

    Returns:
        Parsed SentinelConfig.

    Raises:
        ConfigError: If the YAML structure is invalid.
    """
    config_path = path or DEFAULT_CONFIG_PATH
    raw = load_yaml_config(config_path)

    config = SentinelConfig()
    _apply(config.alerts, _section(raw, "alerts"), "alerts")
    _apply(config.recovery, _section(raw, "recovery"), "recovery")
    _apply(config.detector, _section(raw, "detector"), "detector")
    _apply(config.conflicts, _section(raw, "conflicts"), "conflicts")

    if "monitor_interval_seconds" in raw:
        try:
            config.monitor_interval_seconds = float(raw["monitor_interval_seconds"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"monitor_interval_seconds: {e}") from e

    return apply_env_overrides(config)


def validate_config(config: SentinelConfig) -> list[str]:
    """Validate a SentinelConfig, returning a list of error messages.

    Args:
        config: The config to validate.

    Returns:
        List of human-readable error strings. Empty means valid.
    """
    errors: list[str] = []

    alerts = config.alerts
    if alerts.agent_stuck_minutes <= 0:
        errors.append("alerts.agent_stuck_minutes must be positive")
    if alerts.disk_low_threshold_gb < 0:
        errors.append("alerts.disk_low_threshold_gb must not be negative")
    if alerts.mail_backlog_threshold < 0:
        errors.append("alerts.mail_backlog_threshold must not be negative")
    if alerts.bead_stale_hours <= 0:
        errors.append("alerts.bead_stale_hours must be positive")
    if alerts.resolved_prune_minutes < 0:
        errors.append("alerts.resolved_prune_minutes must not be negative")
    if alerts.capture_lines <= 0:
        errors.append("alerts.capture_lines must be positive")
    if alerts.projects_dir and not Path(alerts.projects_dir).expanduser().is_dir():
        errors.append(f"alerts.projects_dir does not exist: {alerts.projects_dir}")

    recovery = config.recovery
    if recovery.cooldown_seconds <= 0:
        errors.append("recovery.cooldown_seconds must be positive")
    if recovery.max_recoveries < 0:
        errors.append("recovery.max_recoveries must not be negative")
    if recovery.max_event_age_seconds <= 0:
        errors.append("recovery.max_event_age_seconds must be positive")
    if not recovery.prompt.strip():
        errors.append("recovery.prompt must not be empty")
    if recovery.failed_send_policy not in FAILED_SEND_POLICIES:
        errors.append(
            f"recovery.failed_send_policy '{recovery.failed_send_policy}' is "
            f"invalid (valid: {', '.join(sorted(FAILED_SEND_POLICIES))})"
        )

    detector = config.detector
    if detector.scan_lines <= 0:
        errors.append("detector.scan_lines must be positive")
    if detector.activity_threshold_seconds < 0:
        errors.append("detector.activity_threshold_seconds must not be negative")

    conflicts = config.conflicts
    if conflicts.window_minutes <= 0:
        errors.append("conflicts.window_minutes must be positive")
    if conflicts.critical_window_minutes < 0:
        errors.append("conflicts.critical_window_minutes must not be negative")
    if conflicts.critical_agent_count < 2:
        errors.append("conflicts.critical_agent_count must be at least 2")
    if conflicts.store_limit <= 0:
        errors.append("conflicts.store_limit must be positive")

    if config.monitor_interval_seconds <= 0:
        errors.append("monitor_interval_seconds must be positive")

    return errors

"""
Configuration

Settings are read from environment variables. When STANDUP_CONFIG_FILE points
to a YAML file, its keys override the environment (same names, lower-case).

The config object is immutable and is passed explicitly to the components
that need it; there is no module-level settings global.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger("standup.config")

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_UTC_OFFSET_HOURS = 9
DEFAULT_REPLAY_WINDOW_SECONDS = 300
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_INITIAL_DELAY = 0.5
DEFAULT_DEDUP_TTL_SECONDS = 24 * 3600
DEFAULT_SNAPSHOT_TTL_SECONDS = 14 * 24 * 3600

TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in TRUE_VALUES


@dataclass(frozen=True)
class AppConfig:
    """Runtime settings for the orchestrator."""
    signing_secret: str = ""
    bot_token: str = ""
    bot_user_id: Optional[str] = None
    report_channel_id: Optional[str] = None
    report_user_id: Optional[str] = None
    notify_channel_id: Optional[str] = None
    checkin_channel_id: Optional[str] = None
    collection_id: Optional[str] = None
    utc_offset_hours: int = DEFAULT_UTC_OFFSET_HOURS
    replay_window_seconds: int = DEFAULT_REPLAY_WINDOW_SECONDS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_initial_delay: float = DEFAULT_RETRY_INITIAL_DELAY
    dedup_ttl_seconds: int = DEFAULT_DEDUP_TTL_SECONDS
    snapshot_ttl_seconds: int = DEFAULT_SNAPSHOT_TTL_SECONDS
    dry_run: bool = False
    kv_backend: str = "memory"
    kv_path: str = "data/kv_store.json"

    def __post_init__(self):
        if self.retry_attempts < 1:
            raise ConfigurationError(f"retry_attempts must be >= 1: {self.retry_attempts}")
        if self.replay_window_seconds <= 0:
            raise ConfigurationError(
                f"replay_window_seconds must be positive: {self.replay_window_seconds}"
            )
        if self.kv_backend not in ("memory", "file"):
            raise ConfigurationError(f"Unknown kv_backend: {self.kv_backend}")

    def require_signing_secret(self) -> str:
        if not self.signing_secret:
            raise ConfigurationError("SLACK_SIGNING_SECRET not configured")
        return self.signing_secret


# Environment variable name -> (field name, converter)
_ENV_FIELDS = {
    "SLACK_SIGNING_SECRET": ("signing_secret", str),
    "SLACK_BOT_TOKEN": ("bot_token", str),
    "SLACK_BOT_USER_ID": ("bot_user_id", str),
    "SLACK_REPORT_CHANNEL_ID": ("report_channel_id", str),
    "SLACK_REPORT_USER_ID": ("report_user_id", str),
    "SLACK_NOTIFY_CHANNEL_ID": ("notify_channel_id", str),
    "SLACK_CHECKIN_CHANNEL_ID": ("checkin_channel_id", str),
    "TASK_COLLECTION_ID": ("collection_id", str),
    "UTC_OFFSET_HOURS": ("utc_offset_hours", int),
    "REPLAY_WINDOW_SECONDS": ("replay_window_seconds", int),
    "RETRY_ATTEMPTS": ("retry_attempts", int),
    "RETRY_INITIAL_DELAY": ("retry_initial_delay", float),
    "DEDUP_TTL_SECONDS": ("dedup_ttl_seconds", int),
    "SNAPSHOT_TTL_SECONDS": ("snapshot_ttl_seconds", int),
    "DRY_RUN": ("dry_run", parse_bool),
    "KV_BACKEND": ("kv_backend", str),
    "KV_PATH": ("kv_path", str),
}


def _from_environ(environ: Dict[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for env_name, (field_name, convert) in _ENV_FIELDS.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            values[field_name] = convert(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {env_name}: {raw!r} ({e})")
    return values


def _from_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {path}")

    known = {f.name for f in fields(AppConfig)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
    values = {k: v for k, v in data.items() if k in known}
    if "dry_run" in values and isinstance(values["dry_run"], str):
        values["dry_run"] = parse_bool(values["dry_run"])
    return values


def load_config(environ: Optional[Dict[str, str]] = None) -> AppConfig:
    """
    Build the application config.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        AppConfig
    """
    environ = dict(os.environ) if environ is None else environ
    values = _from_environ(environ)

    config_file = environ.get("STANDUP_CONFIG_FILE")
    if config_file:
        values.update(_from_yaml(Path(config_file)))
        logger.info(f"Loaded config overrides from {config_file}")

    return AppConfig(**values)

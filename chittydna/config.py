"""Configuration for chittydna.

Values are resolved in three layers, later layers winning:

1. Built-in defaults (the dataclass field defaults below)
2. ``<data_dir>/config.json``
3. Environment variables (CHITTYDNA_DATA_DIR, CHITTYDNA_LOG_LEVEL,
   CHITTYDNA_TOKEN, CHITTYDNA_REMOTE_TIMEOUT)
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from chittydna.protocols import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_SERVICES: Dict[str, str] = {
    "registry": "https://registry.chitty.cc",
    "chronicle": "https://api.chitty.cc/chronicle",
    "connect": "https://connect.chitty.cc",
    "auth": "https://auth.chitty.cc",
    "id": "https://id.chitty.cc",
}


def get_chittydna_home() -> Path:
    """Data directory, honouring CHITTYDNA_DATA_DIR."""
    env_dir = os.environ.get("CHITTYDNA_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".chittycan"


@dataclass
class ChittyDNAConfig:
    """Every tunable of the learning system."""

    data_dir: Path = field(default_factory=get_chittydna_home)
    log_level: str = "INFO"

    # Pipeline triggers
    reflect_every: int = 10
    synthesize_every: int = 25
    propose_every: int = 50
    proposal_min_confidence: float = 0.75
    failure_window: int = 10
    failure_threshold: int = 5
    event_window: int = 100

    # Vault
    snapshot_cap: int = 30

    # Goals
    stale_days: int = 30
    link_threshold: float = 0.4
    merge_threshold: float = 0.7

    # Portability
    export_interval_hours: float = 24.0

    # Remote services
    remote_timeout: float = 10.0
    health_timeout: float = 5.0
    auth_token: Optional[str] = None
    services: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SERVICES))

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["data_dir"] = str(self.data_dir)
        data["services"] = dict(self.services)
        # The token is a credential and is never written out
        data.pop("auth_token")
        return data


_INT_KEYS = {
    "reflect_every",
    "synthesize_every",
    "propose_every",
    "failure_window",
    "failure_threshold",
    "event_window",
    "snapshot_cap",
    "stale_days",
}
_FLOAT_KEYS = {
    "proposal_min_confidence",
    "link_threshold",
    "merge_threshold",
    "export_interval_hours",
    "remote_timeout",
    "health_timeout",
}


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw config value to the field's type, raising ConfigError."""
    try:
        if key in _INT_KEYS:
            if isinstance(value, bool):
                raise ValueError("boolean is not a number")
            result = int(value)
            if result <= 0:
                raise ValueError("must be positive")
            return result
        if key in _FLOAT_KEYS:
            if isinstance(value, bool):
                raise ValueError("boolean is not a number")
            result = float(value)
            if result < 0:
                raise ValueError("must not be negative")
            return result
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key!r}: {value!r} ({e})") from e
    if key == "data_dir":
        return Path(value).expanduser()
    if key == "services":
        if not isinstance(value, dict):
            raise ConfigError(f"Invalid value for 'services': expected an object, got {value!r}")
        merged = dict(DEFAULT_SERVICES)
        merged.update({str(k): str(v) for k, v in value.items()})
        return merged
    return value


def _apply(config: ChittyDNAConfig, values: Dict[str, Any], source: str) -> None:
    known = {f.name for f in fields(config)}
    for key, value in values.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key {key!r} from {source}")
            continue
        setattr(config, key, _coerce(key, value))


def load_config(path: Optional[Path] = None) -> ChittyDNAConfig:
    """Load configuration from defaults, a JSON file and the environment.

    Args:
        path: Explicit config file. Defaults to ``<data_dir>/config.json``.

    Returns:
        The resolved ChittyDNAConfig

    Raises:
        ConfigError: If a numeric setting cannot be parsed
    """
    config = ChittyDNAConfig()

    config_path = Path(path) if path is not None else config.data_dir / "config.json"
    if config_path.exists():
        try:
            with open(config_path) as f:
                file_values = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read config file {config_path}: {e}")
            file_values = None
        if isinstance(file_values, dict):
            _apply(config, file_values, str(config_path))
        elif file_values is not None:
            logger.warning(f"Ignoring config file {config_path}: top level is not an object")

    env_values: Dict[str, Any] = {}
    if os.environ.get("CHITTYDNA_DATA_DIR"):
        env_values["data_dir"] = os.environ["CHITTYDNA_DATA_DIR"]
    if os.environ.get("CHITTYDNA_LOG_LEVEL"):
        env_values["log_level"] = os.environ["CHITTYDNA_LOG_LEVEL"]
    if os.environ.get("CHITTYDNA_TOKEN"):
        env_values["auth_token"] = os.environ["CHITTYDNA_TOKEN"]
    if os.environ.get("CHITTYDNA_REMOTE_TIMEOUT"):
        env_values["remote_timeout"] = os.environ["CHITTYDNA_REMOTE_TIMEOUT"]
    _apply(config, env_values, "environment")

    return config

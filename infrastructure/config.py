"""
WAYPOINT CONFIG - Runtime Settings

All tunables live in config/waypoint.toml and are loaded once into frozen
structs. Components receive the section they need; nothing else reads
the file.

Usage:
    from infrastructure.config import load_config

    config = load_config()
    storage = FileStorage(config.storage.data_dir, lock_stale_s=config.storage.lock_stale_s)

A missing or malformed file is not fatal: a warning is issued and the
built-in defaults apply.
"""
import tomllib
import warnings
from pathlib import Path
from typing import Any, Dict, Optional, Union

import msgspec

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "waypoint.toml"


# =============================================================================
# SECTIONS
# =============================================================================

class StorageConfig(msgspec.Struct, kw_only=True, frozen=True):
    data_dir: str = "~/.waypoint/sessions"
    lock_stale_s: float = 10.0
    lock_retries: int = 5


class CircuitBreakerConfig(msgspec.Struct, kw_only=True, frozen=True):
    no_progress_threshold: int = 3
    same_error_threshold: int = 5
    half_open_threshold: int = 2


class VerificationConfig(msgspec.Struct, kw_only=True, frozen=True):
    timeout_s: float = 180.0
    model: str = "haiku"


class AgentConfig(msgspec.Struct, kw_only=True, frozen=True):
    timeout_s: float = 900.0
    model: Optional[str] = None
    cli: str = "claude"


class SessionLockConfig(msgspec.Struct, kw_only=True, frozen=True):
    timeout_s: float = 600.0
    sweep_interval_s: float = 60.0


class ProcessorConfig(msgspec.Struct, kw_only=True, frozen=True):
    max_step_retries: int = 3


class LoggingConfig(msgspec.Struct, kw_only=True, frozen=True):
    level: str = "INFO"


class WaypointConfig(msgspec.Struct, kw_only=True, frozen=True):
    storage: StorageConfig = msgspec.field(default_factory=StorageConfig)
    circuit_breaker: CircuitBreakerConfig = msgspec.field(default_factory=CircuitBreakerConfig)
    verification: VerificationConfig = msgspec.field(default_factory=VerificationConfig)
    agent: AgentConfig = msgspec.field(default_factory=AgentConfig)
    session_lock: SessionLockConfig = msgspec.field(default_factory=SessionLockConfig)
    processor: ProcessorConfig = msgspec.field(default_factory=ProcessorConfig)
    logging: LoggingConfig = msgspec.field(default_factory=LoggingConfig)

    @property
    def data_path(self) -> Path:
        return Path(self.storage.data_dir).expanduser()


# =============================================================================
# LOADING
# =============================================================================

def load_toml_config(path: Union[str, Path, None] = None) -> Dict[str, Any]:
    """
    Load raw sections from the TOML file.

    Returns:
        Dict of sections, empty when the file is missing or unreadable
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        warnings.warn(f"Failed to load config from TOML: {e}")
        return {}


def parse_config(data: Dict[str, Any]) -> WaypointConfig:
    """Convert raw sections into a WaypointConfig. Falls back to defaults on a shape error."""
    try:
        return msgspec.convert(data, type=WaypointConfig)
    except msgspec.ValidationError as e:
        warnings.warn(f"Invalid config, using defaults: {e}")
        return WaypointConfig()


def load_config(path: Union[str, Path, None] = None) -> WaypointConfig:
    return parse_config(load_toml_config(path))

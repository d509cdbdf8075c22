"""
WAYPOINT INFRASTRUCTURE - System-Level Modules

This package contains infrastructure components:
- storage: locked, atomic JSON documents under the data directory
- session_lock: one in-flight turn per session
- config: waypoint.toml settings
- git_inspector: commit evidence from the project working tree
- session_store: per-session documents (imported directly, it depends on core)
"""

from infrastructure.storage import FileStorage, StorageError
from infrastructure.session_lock import SessionInFlightError, SessionLockRegistry
from infrastructure.config import WaypointConfig, load_config

__all__ = [
    "FileStorage",
    "StorageError",
    "SessionInFlightError",
    "SessionLockRegistry",
    "WaypointConfig",
    "load_config",
]

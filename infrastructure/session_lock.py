"""
WAYPOINT SESSION LOCK - One Agent Turn Per Session

Answering several questions at once can trigger several "resume the agent"
requests for the same session. Only one may run. The registry holds an
in-memory lock per session key ("<projectId>/<featureId>"):

- acquire() never blocks: False means another turn is in flight
- A lock older than the hold timeout (10 minutes) is treated as free
- A sweeper task removes expired entries on an interval

Architecture:
    Supervisor (main.py)
        |
        v
    registry.start_sweeper()          # once, at startup
        |
        v
    async with registry.hold(project, feature, stage):
        run one agent turn            # SessionInFlightError if contended
        |
        v
    registry.stop_sweeper()           # at shutdown

The clock is injectable so tests can move time without sleeping.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

import msgspec

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_S = 10 * 60
SWEEP_INTERVAL_S = 60.0


class SessionInFlightError(Exception):
    """Another turn already holds this session. Safe to retry later."""

    def __init__(self, key: str, stage: Optional[int] = None):
        super().__init__(f"Session {key} already has a turn in flight (stage {stage})")
        self.key = key
        self.stage = stage


class LockEntry(msgspec.Struct, kw_only=True):
    acquired_at: float
    stage: int


class LockStatus(msgspec.Struct, kw_only=True):
    locked: bool
    stage: Optional[int] = None
    held_s: Optional[float] = None


def session_key(project_id: str, feature_id: str) -> str:
    return f"{project_id}/{feature_id}"


# =============================================================================
# REGISTRY
# =============================================================================

class SessionLockRegistry:
    """
    In-memory per-session mutex with expiry.

    Usage:
        registry = SessionLockRegistry()
        if registry.acquire("p", "f", stage=2):
            try:
                ...
            finally:
                registry.release("p", "f")
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        timeout_s: float = LOCK_TIMEOUT_S,
        sweep_interval_s: float = SWEEP_INTERVAL_S,
    ):
        self.clock = clock
        self.timeout_s = timeout_s
        self.sweep_interval_s = sweep_interval_s
        self._locks: Dict[str, LockEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def _is_expired(self, entry: LockEntry) -> bool:
        return self.clock() - entry.acquired_at >= self.timeout_s

    def acquire(self, project_id: str, feature_id: str, stage: int) -> bool:
        key = session_key(project_id, feature_id)
        existing = self._locks.get(key)
        if existing is not None and not self._is_expired(existing):
            logger.info(f"Lock already held for {key} (stage {existing.stage}), cannot acquire for stage {stage}")
            return False
        self._locks[key] = LockEntry(acquired_at=self.clock(), stage=stage)
        logger.debug(f"Lock acquired for {key} (stage {stage})")
        return True

    def release(self, project_id: str, feature_id: str) -> None:
        key = session_key(project_id, feature_id)
        entry = self._locks.pop(key, None)
        if entry is not None:
            logger.debug(f"Lock released for {key} (was stage {entry.stage})")

    def is_locked(self, project_id: str, feature_id: str) -> bool:
        entry = self._locks.get(session_key(project_id, feature_id))
        return entry is not None and not self._is_expired(entry)

    def get_lock_status(self, project_id: str, feature_id: str) -> LockStatus:
        entry = self._locks.get(session_key(project_id, feature_id))
        if entry is None or self._is_expired(entry):
            return LockStatus(locked=False)
        return LockStatus(locked=True, stage=entry.stage, held_s=self.clock() - entry.acquired_at)

    def release_all(self) -> None:
        self._locks.clear()

    def active_count(self) -> int:
        return sum(1 for entry in self._locks.values() if not self._is_expired(entry))

    def sweep_expired(self) -> List[str]:
        """Drop expired entries. Returns the keys that were released."""
        expired = [key for key, entry in self._locks.items() if self._is_expired(entry)]
        for key in expired:
            entry = self._locks.pop(key)
            logger.warning(f"Auto-releasing expired lock for {key} (was locked for stage {entry.stage})")
        return expired

    # =========================================================================
    # SCOPED USE
    # =========================================================================

    @asynccontextmanager
    async def hold(self, project_id: str, feature_id: str, stage: int) -> AsyncIterator[None]:
        """
        Hold the session for the duration of the block.

        Raises:
            SessionInFlightError: If the session is already held
        """
        if not self.acquire(project_id, feature_id, stage):
            existing = self._locks.get(session_key(project_id, feature_id))
            raise SessionInFlightError(
                session_key(project_id, feature_id),
                existing.stage if existing is not None else None,
            )
        try:
            yield
        finally:
            self.release(project_id, feature_id)

    # =========================================================================
    # SWEEPER
    # =========================================================================

    def start_sweeper(self) -> None:
        """Start the periodic sweep on the running loop. Idempotent."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.info(f"Session lock sweeper started (every {self.sweep_interval_s}s)")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("Session lock sweeper stopped")

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            self.sweep_expired()

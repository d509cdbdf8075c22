"""
WAYPOINT CIRCUIT BREAKER - The Stall Detector

Watches the implementation loop for two failure shapes:
- no files changed for several consecutive loops (stall)
- the same error repeating for several consecutive loops (error loop)

States:
    CLOSED     normal operation
    HALF_OPEN  one loop away from opening; progress closes it again
    OPEN       halted; only an explicit reset() closes it

The record lives in the session directory (.circuit_breaker_state), and every
realized transition is appended to .circuit_breaker_history.

Design:
- Thresholds are constructor arguments defaulting to the module constants
- A stored record with an invalid shape is replaced by a fresh CLOSED record
- OPEN never self-heals
"""
import logging
from typing import Any, Dict, List

import msgspec

from core.ontology import CircuitState
from core.schemas import now_utc
from infrastructure.storage import CorruptDocumentError, FileStorage

logger = logging.getLogger(__name__)


# =============================================================================
# THRESHOLDS
# =============================================================================

NO_PROGRESS_THRESHOLD = 3
SAME_ERROR_THRESHOLD = 5
HALF_OPEN_THRESHOLD = 2

STATE_FILE = ".circuit_breaker_state"
HISTORY_FILE = ".circuit_breaker_history"


# =============================================================================
# RECORDS
# =============================================================================

class CircuitBreakerRecord(msgspec.Struct, kw_only=True, rename="camel"):
    state: CircuitState = CircuitState.CLOSED
    last_change: str = msgspec.field(default_factory=now_utc)
    consecutive_no_progress: int = 0
    consecutive_same_error: int = 0
    last_progress_loop: int = 0
    total_opens: int = 0
    reason: str = "Initial state"
    current_loop: int = 0


class CircuitTransition(msgspec.Struct, kw_only=True, rename="camel"):
    timestamp: str
    loop: int
    from_state: CircuitState = msgspec.field(name="from")
    to_state: CircuitState = msgspec.field(name="to")
    reason: str


class CircuitHistory(msgspec.Struct, kw_only=True):
    transitions: List[CircuitTransition] = msgspec.field(default_factory=list)


class HaltDecision(msgspec.Struct, frozen=True, kw_only=True):
    should_halt: bool
    state: CircuitState
    reason: str
    recommendation: str


STATUS_LABELS: Dict[CircuitState, str] = {
    CircuitState.CLOSED: "Normal Operation",
    CircuitState.HALF_OPEN: "Monitoring Mode",
    CircuitState.OPEN: "Halted - Intervention Required",
}


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitBreaker:
    """
    Per-session stall/error-loop detector.

    Usage:
        breaker = CircuitBreaker(storage, "proj/feature")
        state = await breaker.record_loop_result(files_changed=0, has_errors=False)
        if not await breaker.can_execute():
            ...
    """

    def __init__(
        self,
        storage: FileStorage,
        session_dir: str,
        no_progress_threshold: int = NO_PROGRESS_THRESHOLD,
        same_error_threshold: int = SAME_ERROR_THRESHOLD,
        half_open_threshold: int = HALF_OPEN_THRESHOLD,
    ):
        self.storage = storage
        self.state_path = f"{session_dir}/{STATE_FILE}"
        self.history_path = f"{session_dir}/{HISTORY_FILE}"
        self.no_progress_threshold = no_progress_threshold
        self.same_error_threshold = same_error_threshold
        self.half_open_threshold = half_open_threshold

    async def init(self) -> CircuitBreakerRecord:
        """Load the stored record, or create (and persist) a fresh CLOSED one."""
        try:
            record = await self.storage.read_struct(self.state_path, CircuitBreakerRecord)
        except CorruptDocumentError as e:
            logger.warning(f"Circuit breaker state invalid, reinitializing: {e}")
            record = None

        if record is None:
            record = CircuitBreakerRecord()
            await self.storage.write_json(self.state_path, record)
        return record

    async def get_state(self) -> CircuitBreakerRecord:
        return await self.init()

    async def record_loop_result(self, files_changed: int, has_errors: bool) -> CircuitState:
        """
        Record one loop outcome and apply the transition rules.

        Args:
            files_changed: Number of files the loop modified (progress when > 0)
            has_errors: Whether the loop hit an error

        Returns:
            The state after this loop
        """
        record = await self.init()
        record.current_loop += 1

        has_progress = files_changed > 0
        if has_progress:
            record.consecutive_no_progress = 0
            record.last_progress_loop = record.current_loop
        else:
            record.consecutive_no_progress += 1

        if has_errors:
            record.consecutive_same_error += 1
        else:
            record.consecutive_same_error = 0

        previous = record.state
        new_state, reason = self._next_state(record, has_progress)

        if new_state != previous:
            if new_state == CircuitState.OPEN:
                record.total_opens += 1
            record.state = new_state
            record.reason = reason
            record.last_change = now_utc()
            await self._append_history(record.current_loop, previous, new_state, reason)
            logger.info(f"Circuit breaker {previous.value} -> {new_state.value}: {reason}")

        await self.storage.write_json(self.state_path, record)
        return record.state

    def _next_state(self, record: CircuitBreakerRecord, has_progress: bool):
        no_progress = record.consecutive_no_progress
        same_error = record.consecutive_same_error

        if record.state == CircuitState.CLOSED:
            if no_progress >= self.no_progress_threshold:
                return CircuitState.OPEN, f"No progress detected in {no_progress} consecutive loops"
            if same_error >= self.same_error_threshold:
                return CircuitState.OPEN, f"Same error occurred {same_error} consecutive times"
            if no_progress >= self.half_open_threshold:
                return CircuitState.HALF_OPEN, f"Monitoring: {no_progress} loops without progress"

        elif record.state == CircuitState.HALF_OPEN:
            if has_progress:
                return CircuitState.CLOSED, "Progress detected, recovering..."
            if no_progress >= self.no_progress_threshold:
                return CircuitState.OPEN, f"Recovery failed: no progress in {no_progress} consecutive loops"

        return record.state, record.reason

    async def can_execute(self) -> bool:
        record = await self.init()
        return record.state != CircuitState.OPEN

    async def should_halt_execution(self) -> HaltDecision:
        record = await self.init()

        if record.state == CircuitState.OPEN:
            return HaltDecision(
                should_halt=True,
                state=record.state,
                reason=record.reason,
                recommendation="Manual intervention required. Review recent output and reset the circuit breaker.",
            )
        if record.state == CircuitState.HALF_OPEN:
            return HaltDecision(
                should_halt=False,
                state=record.state,
                reason=record.reason,
                recommendation="Monitoring: one more loop without progress will halt execution.",
            )
        return HaltDecision(
            should_halt=False,
            state=record.state,
            reason=record.reason,
            recommendation="Normal operation",
        )

    async def reset(self, reason: str = "Manual reset") -> CircuitBreakerRecord:
        """Return to CLOSED with zeroed counters. total_opens and the loop index survive."""
        record = await self.init()
        await self._append_history(record.current_loop, record.state, CircuitState.CLOSED, reason)

        reset_record = CircuitBreakerRecord(
            state=CircuitState.CLOSED,
            reason=reason,
            total_opens=record.total_opens,
            current_loop=record.current_loop,
        )
        await self.storage.write_json(self.state_path, reset_record)
        logger.info(f"Circuit breaker reset: {reason}")
        return reset_record

    async def get_history(self) -> List[CircuitTransition]:
        history = await self._load_history()
        return history.transitions

    async def get_status(self) -> Dict[str, Any]:
        record = await self.init()
        return {
            "state": record.state.value,
            "label": STATUS_LABELS[record.state],
            "reason": record.reason,
            "current_loop": record.current_loop,
            "consecutive_no_progress": record.consecutive_no_progress,
            "consecutive_same_error": record.consecutive_same_error,
            "last_progress_loop": record.last_progress_loop,
            "total_opens": record.total_opens,
        }

    async def _load_history(self) -> CircuitHistory:
        try:
            history = await self.storage.read_struct(self.history_path, CircuitHistory)
        except CorruptDocumentError as e:
            logger.warning(f"Circuit breaker history invalid, starting fresh: {e}")
            history = None
        return history or CircuitHistory()

    async def _append_history(
        self,
        loop: int,
        from_state: CircuitState,
        to_state: CircuitState,
        reason: str,
    ) -> None:
        history = await self._load_history()
        history.transitions.append(CircuitTransition(
            timestamp=now_utc(),
            loop=loop,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
        ))
        await self.storage.write_json(self.history_path, history)

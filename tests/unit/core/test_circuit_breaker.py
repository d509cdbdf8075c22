"""
Unit tests for the circuit breaker state machine.
"""
import pytest

from core.circuit_breaker import (
    HISTORY_FILE,
    STATE_FILE,
    CircuitBreaker,
    CircuitBreakerRecord,
)
from core.ontology import CircuitState


SESSION = "proj/feature"


@pytest.fixture
def breaker(storage):
    return CircuitBreaker(storage, SESSION)


# =============================================================================
# INIT
# =============================================================================

class TestInit:

    @pytest.mark.asyncio
    async def test_fresh_record_is_closed_and_persisted(self, breaker, storage):
        record = await breaker.init()
        assert record.state == CircuitState.CLOSED
        assert record.reason == "Initial state"
        assert await storage.exists(f"{SESSION}/{STATE_FILE}")

    @pytest.mark.asyncio
    async def test_corrupt_record_is_reinitialized(self, breaker, storage):
        await storage.write_json(f"{SESSION}/{STATE_FILE}", {"state": "SIDEWAYS", "currentLoop": "x"})
        record = await breaker.init()
        assert record.state == CircuitState.CLOSED
        assert record.current_loop == 0

    @pytest.mark.asyncio
    async def test_record_is_camel_case_on_disk(self, breaker, storage):
        await breaker.record_loop_result(files_changed=0, has_errors=False)
        raw = await storage.read_json(f"{SESSION}/{STATE_FILE}")
        assert raw["consecutiveNoProgress"] == 1
        assert raw["currentLoop"] == 1
        assert raw["state"] == "CLOSED"


# =============================================================================
# TRANSITIONS
# =============================================================================

class TestTransitions:

    @pytest.mark.asyncio
    async def test_three_stalled_loops_open_the_circuit(self, breaker):
        states = [await breaker.record_loop_result(0, False) for _ in range(3)]
        assert states == [CircuitState.CLOSED, CircuitState.HALF_OPEN, CircuitState.OPEN]

        record = await breaker.get_state()
        assert record.total_opens == 1
        assert record.reason == "Recovery failed: no progress in 3 consecutive loops"

    @pytest.mark.asyncio
    async def test_half_open_reason(self, breaker):
        await breaker.record_loop_result(0, False)
        await breaker.record_loop_result(0, False)
        record = await breaker.get_state()
        assert record.state == CircuitState.HALF_OPEN
        assert record.reason == "Monitoring: 2 loops without progress"

    @pytest.mark.asyncio
    async def test_progress_recovers_from_half_open(self, breaker):
        await breaker.record_loop_result(0, False)
        await breaker.record_loop_result(0, False)
        state = await breaker.record_loop_result(2, False)
        record = await breaker.get_state()
        assert state == CircuitState.CLOSED
        assert record.reason == "Progress detected, recovering..."
        assert record.consecutive_no_progress == 0
        assert record.last_progress_loop == 3

    @pytest.mark.asyncio
    async def test_progress_zeroes_no_progress_counter(self, breaker):
        await breaker.record_loop_result(0, False)
        await breaker.record_loop_result(1, False)
        record = await breaker.get_state()
        assert record.consecutive_no_progress == 0
        assert record.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_repeated_errors_open_from_closed(self, storage):
        breaker = CircuitBreaker(storage, SESSION, no_progress_threshold=100, half_open_threshold=100)
        for _ in range(4):
            assert await breaker.record_loop_result(1, True) == CircuitState.CLOSED
        assert await breaker.record_loop_result(1, True) == CircuitState.OPEN
        record = await breaker.get_state()
        assert record.reason == "Same error occurred 5 consecutive times"

    @pytest.mark.asyncio
    async def test_error_free_loop_resets_error_counter(self, breaker):
        await breaker.record_loop_result(1, True)
        await breaker.record_loop_result(1, False)
        record = await breaker.get_state()
        assert record.consecutive_same_error == 0

    @pytest.mark.asyncio
    async def test_open_is_sticky(self, breaker):
        for _ in range(3):
            await breaker.record_loop_result(0, False)
        for _ in range(3):
            assert await breaker.record_loop_result(5, False) == CircuitState.OPEN
        record = await breaker.get_state()
        assert record.total_opens == 1
        assert not await breaker.can_execute()

    @pytest.mark.asyncio
    async def test_state_stays_in_known_states(self, breaker):
        pattern = [0, 0, 3, 0, 0, 0, 1, 0]
        for files in pattern:
            state = await breaker.record_loop_result(files, files == 0)
            assert state in (CircuitState.CLOSED, CircuitState.HALF_OPEN, CircuitState.OPEN)


# =============================================================================
# RESET AND STATUS
# =============================================================================

class TestReset:

    @pytest.mark.asyncio
    async def test_reset_closes_and_keeps_total_opens(self, breaker):
        for _ in range(3):
            await breaker.record_loop_result(0, False)
        record = await breaker.reset()
        assert record.state == CircuitState.CLOSED
        assert record.consecutive_no_progress == 0
        assert record.total_opens == 1
        assert record.current_loop == 3
        assert await breaker.can_execute()

    @pytest.mark.asyncio
    async def test_total_opens_never_decreases(self, breaker):
        seen = []
        for _ in range(2):
            for _ in range(3):
                await breaker.record_loop_result(0, False)
            seen.append((await breaker.get_state()).total_opens)
            await breaker.reset()
            seen.append((await breaker.get_state()).total_opens)
        assert seen == sorted(seen)
        assert seen[-1] == 2

    @pytest.mark.asyncio
    async def test_history_records_each_transition(self, breaker, storage):
        for _ in range(3):
            await breaker.record_loop_result(0, False)
        await breaker.reset("Operator reset")

        history = await breaker.get_history()
        assert [(t.from_state, t.to_state) for t in history] == [
            (CircuitState.CLOSED, CircuitState.HALF_OPEN),
            (CircuitState.HALF_OPEN, CircuitState.OPEN),
            (CircuitState.OPEN, CircuitState.CLOSED),
        ]
        assert history[-1].reason == "Operator reset"

        raw = await storage.read_json(f"{SESSION}/{HISTORY_FILE}")
        assert raw["transitions"][0]["from"] == "CLOSED"
        assert raw["transitions"][0]["to"] == "HALF_OPEN"

    @pytest.mark.asyncio
    async def test_should_halt_only_when_open(self, breaker):
        decision = await breaker.should_halt_execution()
        assert decision.should_halt is False
        for _ in range(3):
            await breaker.record_loop_result(0, False)
        decision = await breaker.should_halt_execution()
        assert decision.should_halt is True
        assert decision.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_status_view(self, breaker):
        await breaker.record_loop_result(0, False)
        await breaker.record_loop_result(0, False)
        status = await breaker.get_status()
        assert status["state"] == "HALF_OPEN"
        assert status["label"] == "Monitoring Mode"
        assert status["current_loop"] == 2

    def test_record_defaults(self):
        record = CircuitBreakerRecord()
        assert record.state == CircuitState.CLOSED
        assert record.total_opens == 0

"""
WAYPOINT MAIN - Supervisor and CLI

The supervisor owns the long-lived pieces: config, storage, the session
lock registry and its sweeper, the agent runner and the result processor.
Each turn runs under the session lock:

    lock -> breaker check -> begin_turn -> agent -> process_turn -> advance

Commands:
    recover   - Mark dangling turns interrupted in every session
    sessions  - List sessions with stage and status
    turn      - Run one coding-agent turn for a session
    breaker   - Show circuit breaker status for a session
    reset     - Reset an OPEN circuit breaker
    approve   - Approve the plan so implementation can start

Usage:
    python main.py recover
    python main.py sessions
    python main.py turn <project_id> <feature_id> --prompt-file prompt.md
    python main.py breaker <project_id> <feature_id>
    python main.py reset <project_id> <feature_id>
    python main.py approve <project_id> <feature_id>
"""
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import msgspec

from agents.decision_validator import DecisionValidator
from agents.prompts import get_stage_profile
from agents.result_processor import SessionResultProcessor, TurnOutcome
from agents.runner import (
    AgentFailure,
    AgentRequest,
    AgentResult,
    AgentRunner,
    ClaudeCliRunner,
    invoke_with_fallback,
)
from core.circuit_breaker import CircuitBreaker
from core.ontology import TurnDecision
from infrastructure.config import WaypointConfig, load_config
from infrastructure.git_inspector import GitInspector
from infrastructure.session_lock import SessionLockRegistry
from infrastructure.session_store import SessionStore, session_dir
from infrastructure.storage import FileStorage

logger = logging.getLogger("waypoint")


def failed_turn_result(kind: AgentFailure, detail: str) -> AgentResult:
    """Stand-in result for a coding-agent call that never produced usable output."""
    return AgentResult(
        is_error=True,
        error=f"{kind.value}: {detail}",
        timed_out=kind == AgentFailure.TIMEOUT,
    )


# =============================================================================
# SUPERVISOR
# =============================================================================

class Supervisor:
    """
    Wires components together for one process.

    Usage:
        supervisor = Supervisor(load_config())
        await supervisor.start()
        outcome = await supervisor.run_turn(project_id, feature_id, prompt)
        await supervisor.stop()
    """

    def __init__(self, config: WaypointConfig, runner: Optional[AgentRunner] = None):
        self.config = config
        self.storage = FileStorage(
            config.data_path,
            lock_stale_s=config.storage.lock_stale_s,
            lock_retries=config.storage.lock_retries,
        )
        self.store = SessionStore(self.storage)
        self.locks = SessionLockRegistry(
            timeout_s=config.session_lock.timeout_s,
            sweep_interval_s=config.session_lock.sweep_interval_s,
        )
        self.runner = runner or ClaudeCliRunner(config.agent.cli)
        self.validator = DecisionValidator(
            self.runner,
            timeout_s=config.verification.timeout_s,
            model=config.verification.model,
        )

    async def start(self) -> int:
        """Start the lock sweeper and recover dangling turns. Returns turns marked interrupted."""
        self.locks.start_sweeper()
        return await self.recover()

    async def stop(self) -> None:
        await self.locks.stop_sweeper()
        self.locks.release_all()

    def processor_for(self, project_path: str) -> SessionResultProcessor:
        cb = self.config.circuit_breaker
        return SessionResultProcessor(
            self.store,
            validator=self.validator,
            git=GitInspector(project_path),
            max_step_retries=self.config.processor.max_step_retries,
            breaker_thresholds={
                "no_progress_threshold": cb.no_progress_threshold,
                "same_error_threshold": cb.same_error_threshold,
                "half_open_threshold": cb.half_open_threshold,
            },
        )

    def breaker_for(self, project_id: str, feature_id: str) -> CircuitBreaker:
        cb = self.config.circuit_breaker
        return CircuitBreaker(
            self.storage,
            session_dir(project_id, feature_id),
            no_progress_threshold=cb.no_progress_threshold,
            same_error_threshold=cb.same_error_threshold,
            half_open_threshold=cb.half_open_threshold,
        )

    async def recover(self) -> int:
        total = 0
        for session in await self.store.list_all_sessions():
            total += await self.store.mark_interrupted(session.project_id, session.feature_id)
        if total:
            logger.warning(f"Recovered {total} interrupted turn(s)")
        return total

    async def run_turn(
        self,
        project_id: str,
        feature_id: str,
        prompt: str,
        step_id: Optional[str] = None,
    ) -> TurnOutcome:
        """
        Run one coding-agent turn and apply it.

        Raises:
            SessionInFlightError: If another turn holds the session
            SessionNotFoundError: If the session does not exist
        """
        session = await self.store.require_session(project_id, feature_id)
        async with self.locks.hold(project_id, feature_id, session.current_stage):
            halt = await self.breaker_for(project_id, feature_id).should_halt_execution()
            if halt.should_halt:
                logger.warning(f"Not running {project_id}/{feature_id}: {halt.reason}")
                return TurnOutcome(decision=TurnDecision.HALT, reason=halt.reason)

            processor = self.processor_for(session.project_path)
            if step_id:
                await processor.start_step(session, step_id)

            profile = get_stage_profile(session.current_stage)
            request = AgentRequest(
                prompt=prompt,
                allowed_tools=profile["allowed_tools"],
                resume_token=session.agent_session_id,
                cwd=session.project_path,
                model=profile["model"] or self.config.agent.model,
                timeout_s=profile["timeout_s"] or self.config.agent.timeout_s,
                skip_permissions=profile["skip_permissions"],
            )
            entry = await processor.begin_turn(session, prompt, step_id)
            result = await invoke_with_fallback(self.runner, request, lambda r: r, failed_turn_result)
            outcome = await processor.process_turn(session, entry, result)
            session = await self.store.require_session(project_id, feature_id)
            await processor.advance(session, outcome)
            return outcome


# =============================================================================
# COMMANDS
# =============================================================================

async def cmd_recover(supervisor: Supervisor, args) -> None:
    count = await supervisor.recover()
    print(f"Marked {count} turn(s) interrupted")


async def cmd_sessions(supervisor: Supervisor, args) -> None:
    sessions = await supervisor.store.list_all_sessions()
    if not sessions:
        print("No sessions")
        return
    for s in sessions:
        print(f"{s.project_id}/{s.feature_id}  stage={s.current_stage}  status={s.status}  {s.title}")


async def cmd_turn(supervisor: Supervisor, args) -> None:
    prompt = Path(args.prompt_file).read_text()
    await supervisor.start()
    try:
        outcome = await supervisor.run_turn(args.project_id, args.feature_id, prompt, args.step)
    finally:
        await supervisor.stop()
    print(msgspec.json.format(msgspec.json.encode(outcome), indent=2).decode())


async def cmd_breaker(supervisor: Supervisor, args) -> None:
    status = await supervisor.breaker_for(args.project_id, args.feature_id).get_status()
    print(msgspec.json.format(msgspec.json.encode(status), indent=2).decode())


async def cmd_approve(supervisor: Supervisor, args) -> None:
    plan = await supervisor.store.approve_plan(args.project_id, args.feature_id)
    print(f"Plan approved ({len(plan.steps)} step(s))")


async def cmd_reset(supervisor: Supervisor, args) -> None:
    record = await supervisor.breaker_for(args.project_id, args.feature_id).reset()
    print(f"Circuit breaker reset: {record.state.value}")


def main(argv=None):
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Waypoint - staged coding-agent supervisor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", help="Path to waypoint.toml")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    recover_parser = subparsers.add_parser("recover", help="Mark dangling turns interrupted")
    recover_parser.set_defaults(func=cmd_recover)

    sessions_parser = subparsers.add_parser("sessions", help="List sessions")
    sessions_parser.set_defaults(func=cmd_sessions)

    turn_parser = subparsers.add_parser("turn", help="Run one agent turn")
    turn_parser.add_argument("project_id")
    turn_parser.add_argument("feature_id")
    turn_parser.add_argument("--prompt-file", required=True, help="File holding the turn prompt")
    turn_parser.add_argument("--step", help="Plan step the turn works on")
    turn_parser.set_defaults(func=cmd_turn)

    for name, func, help_text in (
        ("breaker", cmd_breaker, "Show circuit breaker status"),
        ("reset", cmd_reset, "Reset the circuit breaker"),
        ("approve", cmd_approve, "Approve the current plan"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("project_id")
        sub.add_argument("feature_id")
        sub.set_defaults(func=func)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    config = load_config(args.config)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    supervisor = Supervisor(config)
    asyncio.run(args.func(supervisor, args))
    return 0


if __name__ == "__main__":
    sys.exit(main())

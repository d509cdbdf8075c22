"""
WAYPOINT RUNNER - The Agent Process Boundary

Every model call in Waypoint is an external CLI process. This module owns
that boundary:

- AgentRequest / AgentResult: the only shapes that cross it
- AgentRunner: the protocol the rest of the system depends on
- ClaudeCliRunner: asyncio subprocess implementation with a hard timeout
- invoke_with_fallback: the single primitive that turns every failure
  (timeout, spawn error, non-zero exit, unparsable output) into a
  caller-supplied default

Callers never see AgentRunnerError. They see either their parsed value
or their fallback value.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, TypeVar, Union

import msgspec

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_S = 900.0


# =============================================================================
# EXCEPTIONS
# =============================================================================

class AgentRunnerError(Exception):
    """The agent process could not be started or talked to."""
    pass


class AgentTimeoutError(AgentRunnerError):
    """The agent process exceeded its hard timeout and was killed."""

    def __init__(self, timeout_s: float, returncode: Optional[int] = None):
        super().__init__(f"Agent process timed out after {timeout_s}s")
        self.timeout_s = timeout_s
        self.returncode = returncode


class UnparsableOutput(Exception):
    """Raised by an interpret callback when agent output has no usable answer."""

    def __init__(self, reason: str = "unparsable"):
        super().__init__(reason)
        self.reason = reason


class AgentFailure(str, Enum):
    TIMEOUT = "timeout"
    EXIT_CODE = "exit_code"
    SPAWN = "spawn"
    UNPARSABLE = "unparsable"


# =============================================================================
# REQUEST / RESULT
# =============================================================================

class AgentRequest(msgspec.Struct, frozen=True, kw_only=True):
    prompt: str
    allowed_tools: List[str] = msgspec.field(default_factory=list)
    resume_token: Optional[str] = None
    cwd: Optional[str] = None
    model: Optional[str] = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    skip_permissions: bool = False


class AgentResult(msgspec.Struct, kw_only=True):
    output: str = ""
    resume_token: Optional[str] = None
    cost_usd: float = 0.0
    is_error: bool = False
    error: Optional[str] = None
    timed_out: bool = False
    exit_code: Optional[int] = None
    duration_ms: int = 0


class AgentRunner(Protocol):
    async def run(self, request: AgentRequest) -> AgentResult:
        ...


class _CliEnvelope(msgspec.Struct):
    """JSON wrapper printed by `claude --output-format json`."""
    result: str = ""
    session_id: Optional[str] = None
    cost_usd: float = 0.0
    total_cost_usd: Optional[float] = None
    is_error: bool = False
    error: Optional[str] = None


# =============================================================================
# CLI RUNNER
# =============================================================================

class ClaudeCliRunner:
    """
    Runs the coding CLI once per request.

    The process is started with a JSON output format so the resume token and
    cost come back alongside the text. When the hard timeout expires the
    process is killed and reaped before AgentTimeoutError is raised.
    """

    def __init__(self, command: Union[str, List[str]] = "claude"):
        self.command = [command] if isinstance(command, str) else list(command)

    def build_args(self, request: AgentRequest) -> List[str]:
        args = self.command + ["--print", "--output-format", "json"]
        if request.model:
            args += ["--model", request.model]
        if request.resume_token:
            args += ["--resume", request.resume_token]
        if request.allowed_tools:
            args += ["--allowedTools", ",".join(request.allowed_tools)]
        if request.skip_permissions:
            args.append("--dangerously-skip-permissions")
        args += ["-p", request.prompt]
        return args

    async def run(self, request: AgentRequest) -> AgentResult:
        args = self.build_args(request)
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=request.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AgentRunnerError(f"Failed to start {self.command[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=request.timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"Agent process {proc.pid} killed after {request.timeout_s}s")
            raise AgentTimeoutError(request.timeout_s, proc.returncode)

        duration_ms = int((time.monotonic() - started) * 1000)
        return self._to_result(
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            proc.returncode,
            duration_ms,
        )

    @staticmethod
    def _to_result(stdout: str, stderr: str, exit_code: Optional[int], duration_ms: int) -> AgentResult:
        failed_exit = exit_code is not None and exit_code != 0
        try:
            envelope = msgspec.json.decode(stdout.strip() or "{}", type=_CliEnvelope)
        except (msgspec.DecodeError, msgspec.ValidationError):
            # Plain-text output, keep it as-is
            error = (stderr.strip() or None) if failed_exit else None
            return AgentResult(
                output=stdout,
                is_error=failed_exit,
                error=error,
                exit_code=exit_code,
                duration_ms=duration_ms,
            )

        is_error = envelope.is_error or failed_exit
        error = envelope.error
        if is_error and not error:
            error = stderr.strip() or f"Process exited with code {exit_code}"
        return AgentResult(
            output=envelope.result,
            resume_token=envelope.session_id,
            cost_usd=envelope.total_cost_usd if envelope.total_cost_usd is not None else envelope.cost_usd,
            is_error=is_error,
            error=error,
            exit_code=exit_code,
            duration_ms=duration_ms,
        )


# =============================================================================
# FALLBACK PRIMITIVE
# =============================================================================

async def invoke_with_fallback(
    runner: AgentRunner,
    request: AgentRequest,
    interpret: Callable[[AgentResult], T],
    fallback: Callable[[AgentFailure, str], T],
) -> T:
    """
    Run one agent call and map every failure to a default.

    Args:
        runner: Any AgentRunner
        request: The call to make
        interpret: Turns a successful result into the caller's value; raises
            UnparsableOutput when the output holds no usable answer
        fallback: Builds the default from the failure kind and a detail string

    Returns:
        interpret(result), or fallback(kind, detail) on any failure
    """
    try:
        result = await runner.run(request)
    except AgentTimeoutError as e:
        logger.warning(f"Agent call timed out after {e.timeout_s}s")
        return fallback(AgentFailure.TIMEOUT, str(e))
    except AgentRunnerError as e:
        logger.warning(f"Agent call could not start: {e}")
        return fallback(AgentFailure.SPAWN, str(e))

    if result.timed_out:
        logger.warning("Agent call reported a timeout")
        return fallback(AgentFailure.TIMEOUT, result.error or "timed out")
    if result.exit_code is not None and result.exit_code != 0:
        logger.warning(f"Agent call exited with code {result.exit_code}")
        return fallback(AgentFailure.EXIT_CODE, str(result.exit_code))

    try:
        return interpret(result)
    except UnparsableOutput as e:
        logger.warning(f"Agent output could not be interpreted: {e.reason}")
        return fallback(AgentFailure.UNPARSABLE, e.reason)


async def gather_in_order(calls: List[Awaitable[T]]) -> List[T]:
    """Run calls concurrently; results keep input order."""
    return list(await asyncio.gather(*calls))

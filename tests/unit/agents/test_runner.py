"""
Unit tests for the agent process boundary.
"""
import sys

import msgspec
import pytest

from agents.runner import (
    AgentFailure,
    AgentRequest,
    AgentResult,
    AgentRunnerError,
    AgentTimeoutError,
    ClaudeCliRunner,
    UnparsableOutput,
    gather_in_order,
    invoke_with_fallback,
)


def python_runner(code):
    return ClaudeCliRunner([sys.executable, "-c", code])


# =============================================================================
# CLI RUNNER
# =============================================================================

class TestClaudeCliRunner:

    def test_build_args(self):
        runner = ClaudeCliRunner("claude")
        args = runner.build_args(AgentRequest(
            prompt="hello",
            model="haiku",
            resume_token="tok",
            allowed_tools=["Read", "Grep"],
            skip_permissions=True,
        ))
        assert args == [
            "claude", "--print", "--output-format", "json",
            "--model", "haiku",
            "--resume", "tok",
            "--allowedTools", "Read,Grep",
            "--dangerously-skip-permissions",
            "-p", "hello",
        ]

    def test_minimal_args(self):
        assert ClaudeCliRunner().build_args(AgentRequest(prompt="x")) == [
            "claude", "--print", "--output-format", "json", "-p", "x",
        ]

    @pytest.mark.asyncio
    async def test_timeout_kills_and_reaps(self):
        runner = python_runner("import time; time.sleep(5)")
        with pytest.raises(AgentTimeoutError) as info:
            await runner.run(AgentRequest(prompt="x", timeout_s=0.2))
        assert info.value.returncode is not None
        assert info.value.timeout_s == 0.2

    @pytest.mark.asyncio
    async def test_envelope_is_decoded(self):
        envelope = {"result": "done", "session_id": "abc", "total_cost_usd": 0.25}
        code = f"print({msgspec.json.encode(envelope).decode()!r})"
        result = await python_runner(code).run(AgentRequest(prompt="x", timeout_s=10))
        assert result.output == "done"
        assert result.resume_token == "abc"
        assert result.cost_usd == 0.25
        assert result.exit_code == 0
        assert not result.is_error

    @pytest.mark.asyncio
    async def test_plain_text_with_failing_exit(self):
        code = "import sys; print('plain'); sys.stderr.write('boom'); sys.exit(3)"
        result = await python_runner(code).run(AgentRequest(prompt="x", timeout_s=10))
        assert result.output.strip() == "plain"
        assert result.exit_code == 3
        assert result.is_error
        assert result.error == "boom"

    @pytest.mark.asyncio
    async def test_missing_binary_is_runner_error(self):
        runner = ClaudeCliRunner("/nonexistent/waypoint-agent")
        with pytest.raises(AgentRunnerError):
            await runner.run(AgentRequest(prompt="x"))

    def test_envelope_error_without_message(self):
        result = ClaudeCliRunner._to_result('{"result": "", "is_error": true}', "", 0, 5)
        assert result.is_error
        assert result.error == "Process exited with code 0"


# =============================================================================
# FALLBACK PRIMITIVE
# =============================================================================

def interpret_upper(result):
    if not result.output:
        raise UnparsableOutput("empty output")
    return result.output.upper()


def fallback_tag(kind, detail):
    return f"{kind.value}:{detail}"


class TestInvokeWithFallback:

    @pytest.mark.asyncio
    async def test_success(self, make_runner):
        runner = make_runner(results=[AgentResult(output="ok", exit_code=0)])
        assert await invoke_with_fallback(runner, AgentRequest(prompt="x"), interpret_upper, fallback_tag) == "OK"

    @pytest.mark.asyncio
    async def test_timeout(self, make_runner):
        runner = make_runner(results=[AgentTimeoutError(1.0, -9)])
        value = await invoke_with_fallback(runner, AgentRequest(prompt="x"), interpret_upper, fallback_tag)
        assert value.startswith("timeout:")

    @pytest.mark.asyncio
    async def test_reported_timeout(self, make_runner):
        runner = make_runner(results=[AgentResult(timed_out=True)])
        value = await invoke_with_fallback(runner, AgentRequest(prompt="x"), interpret_upper, fallback_tag)
        assert value == "timeout:timed out"

    @pytest.mark.asyncio
    async def test_spawn_error(self, make_runner):
        runner = make_runner(results=[AgentRunnerError("no such file")])
        value = await invoke_with_fallback(runner, AgentRequest(prompt="x"), interpret_upper, fallback_tag)
        assert value == "spawn:no such file"

    @pytest.mark.asyncio
    async def test_exit_code(self, make_runner):
        runner = make_runner(results=[AgentResult(output="partial", exit_code=2)])
        value = await invoke_with_fallback(runner, AgentRequest(prompt="x"), interpret_upper, fallback_tag)
        assert value == "exit_code:2"

    @pytest.mark.asyncio
    async def test_unparsable(self, make_runner):
        runner = make_runner(results=[AgentResult(output="", exit_code=0)])
        value = await invoke_with_fallback(runner, AgentRequest(prompt="x"), interpret_upper, fallback_tag)
        assert value == f"{AgentFailure.UNPARSABLE.value}:empty output"


@pytest.mark.asyncio
async def test_gather_in_order():
    async def echo(value):
        return value

    assert await gather_in_order([echo(1), echo(2), echo(3)]) == [1, 2, 3]

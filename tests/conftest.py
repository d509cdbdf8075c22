"""
Pytest configuration and shared fixtures for Waypoint test suite.
"""
import sys
from pathlib import Path
from typing import Callable, List, Optional, Union

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from agents.runner import AgentRequest, AgentResult  # noqa: E402
from infrastructure.session_store import SessionStore  # noqa: E402
from infrastructure.storage import FileStorage  # noqa: E402


# =============================================================================
# FAKES
# =============================================================================

class FakeRunner:
    """
    Scripted AgentRunner.

    Either pops queued results/exceptions in call order, or routes each
    request through a handler. Every request is recorded.
    """

    def __init__(
        self,
        results: Optional[List[Union[AgentResult, Exception]]] = None,
        handler: Optional[Callable[[AgentRequest], AgentResult]] = None,
    ):
        self.results = list(results or [])
        self.handler = handler
        self.requests: List[AgentRequest] = []

    async def run(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        if self.handler is not None:
            return self.handler(request)
        if not self.results:
            return AgentResult(output="")
        item = self.results.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeGit:
    """GitInspector stand-in with a settable HEAD."""

    def __init__(self, revision: Optional[str] = "aaa111"):
        self.revision = revision

    async def current_revision(self) -> Optional[str]:
        return self.revision

    async def has_new_revision_since(self, sha: Optional[str]) -> bool:
        return bool(sha) and bool(self.revision) and sha != self.revision


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def storage(tmp_path):
    """FileStorage rooted in a temp dir, with short lock backoff."""
    return FileStorage(tmp_path, lock_retries=2, lock_min_wait_s=0.01, lock_max_wait_s=0.02)


@pytest.fixture
def store(storage):
    return SessionStore(storage)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def make_runner():
    """FakeRunner factory: make_runner(results=[...]) or make_runner(handler=fn)."""
    return FakeRunner

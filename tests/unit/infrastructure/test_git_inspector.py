"""
Unit tests for commit evidence from a working tree.
"""
import shutil
import subprocess

import pytest

from infrastructure.git_inspector import GitInspector

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(repo, *args):
    subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=repo, check=True, capture_output=True,
    )


@pytest.fixture
def repo(tmp_path):
    git(tmp_path, "init", "-q")
    (tmp_path / "a.txt").write_text("one")
    git(tmp_path, "add", "a.txt")
    git(tmp_path, "commit", "-q", "-m", "first")
    return tmp_path


@requires_git
@pytest.mark.asyncio
async def test_head_moves_after_commit(repo):
    inspector = GitInspector(repo)
    before = await inspector.current_revision()
    assert before and len(before) == 40
    assert not await inspector.has_new_revision_since(before)

    (repo / "a.txt").write_text("two")
    git(repo, "commit", "-q", "-am", "second")

    assert await inspector.has_new_revision_since(before)
    assert await inspector.get_commit_count() == 2


@requires_git
@pytest.mark.asyncio
async def test_not_a_repository(tmp_path):
    inspector = GitInspector(tmp_path)
    assert await inspector.current_revision() is None
    assert await inspector.get_commit_count() == 0
    assert not await inspector.has_new_revision_since("abc")


@pytest.mark.asyncio
async def test_missing_git_binary(tmp_path):
    inspector = GitInspector(tmp_path, git_cmd="/nonexistent/git")
    assert await inspector.current_revision() is None
    assert not await inspector.has_new_revision_since(None)

"""
WAYPOINT GIT INSPECTOR - Commit Evidence

Step completion claimed by the agent is corroborated by the repository:
a step counts as committed only if HEAD moved since the step started.

Read-only. Any git failure (not a repo, git missing) yields None, which
is never treated as evidence.
"""
import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Union

from core.completion import has_new_commit

logger = logging.getLogger(__name__)


class GitInspector:
    """
    Reads revision information from a working tree.

    Usage:
        git = GitInspector("/path/to/project")
        sha = await git.current_revision()
        ...
        moved = await git.has_new_revision_since(sha)
    """

    def __init__(self, repo_path: Union[str, Path], git_cmd: str = "git"):
        self.repo_path = Path(repo_path)
        self.git_cmd = git_cmd

    async def _run_git_command(self, args: List[str]) -> Optional[str]:
        """
        Run a git command and return stripped stdout.

        Returns:
            Output, or None when git fails or cannot be started
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_cmd,
                *args,
                cwd=self.repo_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            logger.warning(f"git {' '.join(args)} could not start: {e}")
            return None
        if proc.returncode != 0:
            logger.debug(f"git {' '.join(args)} failed: {stderr.decode(errors='replace').strip()}")
            return None
        return stdout.decode(errors="replace").strip()

    async def current_revision(self) -> Optional[str]:
        """Full SHA of HEAD, or None outside a repository."""
        return await self._run_git_command(["rev-parse", "HEAD"]) or None

    async def has_new_revision_since(self, sha: Optional[str]) -> bool:
        return has_new_commit(sha, await self.current_revision())

    async def get_commit_count(self) -> int:
        output = await self._run_git_command(["rev-list", "--count", "HEAD"])
        try:
            return int(output) if output else 0
        except ValueError:
            return 0

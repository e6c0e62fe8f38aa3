"""
Merge conflict resolution for orchestrator branches.

Rebases a node's branch onto its parent and, on textual conflicts, asks
the AI task executor to resolve each round before continuing. A failed
resolution always aborts the rebase so the branch is never left half
rebased.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from issue_swarm.errors import GitError, MergeConflictError

if TYPE_CHECKING:
    from issue_swarm.config import IssueSwarmConfig
    from issue_swarm.executor import ClaudeTaskExecutor
    from issue_swarm.git_client import GitClient
    from issue_swarm.logger import SwarmLogger


@dataclass
class ConflictResolution:
    success: bool
    reason: str = ""
    files: list[str] = field(default_factory=list)
    rounds: int = 0


def build_resolution_prompt(branch: str, parent_branch: str, files: list[str]) -> str:
    listed = "\n".join(f"- {f}" for f in files)
    return f"""A rebase of branch {branch} onto {parent_branch} stopped with merge conflicts.

## Conflicted files
{listed}

Resolve every conflict in these files. Preserve the intent of both sides: keep the
changes already on {parent_branch} and re-apply the changes from {branch} on top.
Remove all conflict markers (<<<<<<<, =======, >>>>>>>). Do not run git commands."""


class ConflictResolver:
    """Rebase-and-resolve for one branch at a time."""

    def __init__(
        self,
        config: IssueSwarmConfig,
        git: GitClient,
        executor: ClaudeTaskExecutor,
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        self.config = config
        self._git = git
        self._executor = executor
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "conflicts"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def resolve(self, branch: str, parent_branch: str) -> ConflictResolution:
        """
        Rebase branch onto parent_branch, resolving conflicts as they come.

        Returns:
            ConflictResolution. On failure the rebase has been aborted and
            reason describes why.
        """
        self._git.checkout(branch)
        result = self._git.rebase(parent_branch)
        seen_files: list[str] = []
        rounds = 0

        try:
            while not result.success:
                if not result.conflicts:
                    raise MergeConflictError(f"rebase onto {parent_branch} failed: {result.output.strip()[:200]}")
                rounds += 1
                if rounds > self.config.orchestration.conflict_max_rounds:
                    raise MergeConflictError(
                        f"conflicts persisted after {rounds - 1} resolution rounds",
                        files=result.conflicted_files,
                    )
                for path in result.conflicted_files:
                    if path not in seen_files:
                        seen_files.append(path)
                self._log("conflict_round", {
                    "branch": branch,
                    "round": rounds,
                    "files": result.conflicted_files,
                })

                task = self._executor.execute_task(
                    build_resolution_prompt(branch, parent_branch, result.conflicted_files),
                    working_dir=self.config.repo_root,
                )
                if not task.success:
                    raise MergeConflictError(
                        f"conflict resolution failed: {task.error}",
                        files=result.conflicted_files,
                    )
                result = self._git.continue_rebase()
        except MergeConflictError as e:
            self._git.abort_rebase()
            self._log("conflict_unresolved", {"branch": branch, "reason": e.message}, level="warn")
            return ConflictResolution(success=False, reason=e.message, files=seen_files, rounds=rounds)

        try:
            self._git.push_force_with_lease(branch)
        except GitError as e:
            return ConflictResolution(
                success=False,
                reason=f"push after rebase failed: {e.message}",
                files=seen_files,
                rounds=rounds,
            )

        self._log("conflict_resolved", {"branch": branch, "rounds": rounds, "files": seen_files})
        return ConflictResolution(success=True, files=seen_files, rounds=rounds)

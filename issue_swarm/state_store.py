"""
State persistence for Issue Swarm.

This module handles:
- Loading and saving the state file from the current checkout
- Committing state only on the canonical work branch
- Creating the work branch for a new issue
- Finding an issue's work branch by naming convention
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from issue_swarm.branches import is_work_branch, work_branch_glob
from issue_swarm.errors import GitError, StateStoreError, VersionMismatch, WorkBranchExistsError
from issue_swarm.models import (
    STATE_FILE_PATH,
    OrchestratorState,
    parse_state,
    serialize_state,
)
from issue_swarm.utils.fs import FileSystemError, file_exists, read_file, safe_write

if TYPE_CHECKING:
    from issue_swarm.config import IssueSwarmConfig
    from issue_swarm.git_client import GitClient
    from issue_swarm.logger import SwarmLogger


class StateStore:
    """
    Persistent state storage backed by a file on the work branch.

    The store never switches branches on its own except in initialize();
    callers check out the work branch before load/save.
    """

    def __init__(
        self,
        config: IssueSwarmConfig,
        git: GitClient,
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        """
        Initialize the state store.

        Args:
            config: IssueSwarmConfig with repo_root and branch prefix.
            git: Git client operating on the same checkout.
            logger: Optional logger for recording operations.
        """
        self._config = config
        self._git = git
        self._logger = logger

    @property
    def state_path(self) -> Path:
        return Path(self._config.repo_root) / STATE_FILE_PATH

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "state_store"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def load(self) -> Optional[OrchestratorState]:
        """
        Load state from the current checkout.

        Returns:
            OrchestratorState, or None if no state file exists.

        Raises:
            VersionMismatch: If the stored version is unrecognized.
            StateStoreError: If the file exists but cannot be parsed.
        """
        if not file_exists(self.state_path):
            self._log("state_load_miss", level="debug")
            return None

        try:
            state = parse_state(read_file(self.state_path))
        except VersionMismatch:
            raise
        except FileSystemError as e:
            raise StateStoreError(f"Failed to read state file: {e}")
        except (KeyError, ValueError, TypeError) as e:
            self._log("state_corrupted", {"error": str(e), "path": str(self.state_path)}, level="error")
            raise StateStoreError(f"State file is corrupted: {e}")

        self._log("state_loaded", {"phase": state.phase.value, "issue": state.issue.number}, level="debug")
        return state

    def _write(self, state: OrchestratorState) -> None:
        state.touch()
        try:
            safe_write(self.state_path, serialize_state(state))
        except FileSystemError as e:
            raise StateStoreError(f"Failed to write state file: {e}")

    def save(self, state: OrchestratorState, message: Optional[str] = None) -> bool:
        """
        Write state and commit it on the work branch.

        The file is written in every case; it is committed and pushed only
        when the current checkout is state.work_branch.

        Returns:
            True if the state was committed.
        """
        self._write(state)

        current = self._git.current_branch()
        if current != state.work_branch:
            self._log("state_save_not_committed", {
                "current_branch": current,
                "work_branch": state.work_branch,
            }, level="warn")
            return False

        commit_message = message or f"chore: update orchestration state ({state.phase.value})"
        committed = self._git.commit_and_push(
            commit_message, state.work_branch, paths=[STATE_FILE_PATH]
        )
        self._log("state_saved", {"phase": state.phase.value, "committed": committed})
        return True

    def initialize(self, state: OrchestratorState, work_branch: str, base_branch: str) -> None:
        """
        Create the work branch from base_branch and persist the first state.

        Raises:
            WorkBranchExistsError: If another invocation created the branch first.
            GitError: If the push failed for any other reason.
        """
        state.work_branch = work_branch
        state.base_branch = base_branch
        self._git.create_branch(work_branch, base_branch)
        self._write(state)
        self._git.commit(
            f"chore: initialize orchestration for issue #{state.issue.number}",
            paths=[STATE_FILE_PATH],
        )
        try:
            self._git.push(work_branch, create=True)
        except GitError as e:
            if not self._git.remote_branch_exists(work_branch):
                self._log("work_branch_push_failed", {"branch": work_branch, "error": str(e)}, level="error")
                raise
            self._log("work_branch_race_lost", {"branch": work_branch, "error": str(e)}, level="warn")
            raise WorkBranchExistsError(work_branch)
        self._log("state_initialized", {"work_branch": work_branch, "base_branch": base_branch})

    def delete(self, state: OrchestratorState) -> None:
        """Remove the state file from the work branch."""
        if self._git.current_branch() != state.work_branch:
            raise StateStoreError(
                f"Refusing to delete state outside the work branch {state.work_branch}"
            )
        self._git.remove_file(STATE_FILE_PATH)
        self._git.commit_and_push(
            f"chore: orchestration for issue #{state.issue.number} complete",
            state.work_branch,
            paths=[],
        )
        self._log("state_deleted", {"work_branch": state.work_branch})

    def find_work_branch_for_issue(self, issue_number: int) -> Optional[str]:
        """
        Find the work branch of an issue on the remote.

        Returns:
            The branch name, or None. With several matches the first in
            sorted order wins and the duplicates are logged.
        """
        prefix = self._config.git.branch_prefix
        candidates = [
            b for b in self._git.list_remote_branches(work_branch_glob(prefix, issue_number))
            if is_work_branch(prefix, b, issue_number)
        ]
        if not candidates:
            return None
        if len(candidates) > 1:
            self._log("duplicate_work_branches", {"branches": candidates}, level="warn")
        return candidates[0]

    def list_work_branches(self) -> list[str]:
        """All work branches under the configured prefix."""
        prefix = self._config.git.branch_prefix
        return [
            b for b in self._git.list_remote_branches(work_branch_glob(prefix))
            if is_work_branch(prefix, b)
        ]

"""
Git client for Issue Swarm.

This module handles:
- Checkout, fetch, pull and branch creation against the remote
- Code commits that never include the orchestration state file
- Pushes with a rebase-and-retry fallback on rejection
- Rebase start/continue/abort and conflicted-file listing
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from issue_swarm.errors import GitError
from issue_swarm.models import STATE_FILE_PATH

if TYPE_CHECKING:
    from issue_swarm.config import IssueSwarmConfig
    from issue_swarm.logger import SwarmLogger

CONFLICT_MARKERS = ("CONFLICT", "Merge conflict", "failed to merge")


@dataclass
class RebaseResult:
    """Outcome of a rebase step."""
    success: bool
    conflicts: bool = False
    conflicted_files: list[str] = field(default_factory=list)
    output: str = ""


class GitClient:
    """
    Thin wrapper over the git CLI operating on the repository checkout.

    Every method either succeeds or raises GitError; callers never see a
    raw CompletedProcess.
    """

    def __init__(
        self,
        config: IssueSwarmConfig,
        logger: Optional[SwarmLogger] = None,
        timeout: int = 300,
    ) -> None:
        self.config = config
        self._logger = logger
        self._timeout = timeout
        self.remote = config.git.remote

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "git_client"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _excluded_pathspecs(self) -> list[str]:
        return [
            ".",
            f":(exclude){STATE_FILE_PATH}",
            f":(exclude){self.config.swarm_dir}",
        ]

    def _run(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess:
        """
        Run a git command in the repo root.

        Raises:
            GitError: If check is set and git exits non-zero, or git is missing.
        """
        try:
            result = subprocess.run(
                ["git"] + args,
                cwd=self.config.repo_root,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired:
            raise GitError(f"git {args[0]} timed out after {self._timeout}s")
        except OSError as e:
            raise GitError(f"git could not be executed: {e}")

        if check and result.returncode != 0:
            raise GitError(
                f"git {' '.join(args[:2])} failed",
                stderr=(result.stderr or result.stdout),
                returncode=result.returncode,
            )
        return result

    # Configuration

    def configure_identity(self) -> None:
        """Set commit identity when configured (CI runners have none)."""
        if self.config.git.user_name:
            self._run(["config", "user.name", self.config.git.user_name])
        if self.config.git.user_email:
            self._run(["config", "user.email", self.config.git.user_email])

    # Branches

    def current_branch(self) -> str:
        return self._run(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def fetch(self, branch: Optional[str] = None) -> None:
        args = ["fetch", self.remote]
        if branch:
            args.append(branch)
        self._run(args)

    def discard_state_changes(self) -> None:
        """Drop local edits to the state file so checkouts never carry it."""
        self._run(["checkout", "--", STATE_FILE_PATH], check=False)

    def checkout(self, branch: str) -> None:
        """
        Check out the remote-tracking version of a branch.

        Local modifications to the state file are discarded first.
        """
        self.discard_state_changes()
        self.fetch(branch)
        self._run(["checkout", "-B", branch, f"{self.remote}/{branch}"])
        self._log("git_checkout", {"branch": branch}, level="debug")

    def pull(self, branch: str) -> None:
        self._run(["pull", "--rebase", self.remote, branch])

    def create_branch(self, name: str, from_branch: str) -> None:
        """Create (or reset) a local branch at the remote tip of from_branch."""
        self.discard_state_changes()
        self.fetch(from_branch)
        self._run(["checkout", "-B", name, f"{self.remote}/{from_branch}"])
        self._log("git_branch_created", {"branch": name, "from": from_branch})

    def remote_branch_exists(self, branch: str) -> bool:
        result = self._run(["ls-remote", "--heads", self.remote, branch])
        return bool(result.stdout.strip())

    def list_remote_branches(self, pattern: str) -> list[str]:
        """List remote branch names matching a ref glob (e.g. swarm/issue-7-*)."""
        result = self._run(["ls-remote", "--heads", self.remote, f"refs/heads/{pattern}"])
        branches = []
        for line in result.stdout.splitlines():
            parts = line.split("\t", 1)
            if len(parts) == 2 and parts[1].startswith("refs/heads/"):
                branches.append(parts[1][len("refs/heads/"):])
        return sorted(branches)

    # Working tree

    def has_uncommitted_changes(self) -> bool:
        """Check for code changes, ignoring the state file and log directory."""
        result = self._run(["status", "--porcelain", "--"] + self._excluded_pathspecs())
        return bool(result.stdout.strip())

    def stage_all(self) -> None:
        self._run(["add", "-A", "--"] + self._excluded_pathspecs())

    def commit(self, message: str, paths: Optional[list[str]] = None) -> bool:
        """
        Commit staged changes.

        Args:
            message: Commit message.
            paths: Explicit paths to stage. When omitted, all code changes are
                staged, excluding the state file and log directory. An empty
                list commits only what is already staged.

        Returns:
            True if a commit was created, False when there was nothing to commit.
        """
        if paths is None:
            self.stage_all()
        elif paths:
            self._run(["add", "-A", "--"] + paths)

        staged = self._run(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            return False
        self._run(["commit", "-m", message])
        return True

    def push(self, branch: str, *, create: bool = False) -> None:
        """
        Push a branch.

        A normal push that is rejected pulls with rebase and retries once;
        on overlapping hunks the local commit wins (last writer wins).
        A create push never retries: rejection means the branch already
        exists on the remote.
        """
        result = self._run(["push", "-u", self.remote, branch], check=False)
        if result.returncode == 0:
            return
        if create:
            raise GitError(
                f"push of new branch {branch} rejected",
                stderr=result.stderr,
                returncode=result.returncode,
            )

        self._log("git_push_rejected", {"branch": branch, "stderr": result.stderr[:200]}, level="warn")
        # During a rebase "theirs" is the local commit being replayed
        self._run(["pull", "--rebase", "-X", "theirs", self.remote, branch])
        self._run(["push", "-u", self.remote, branch])

    def push_force_with_lease(self, branch: str) -> None:
        self._run(["push", "--force-with-lease", "-u", self.remote, branch])

    def commit_and_push(
        self,
        message: str,
        branch: str,
        paths: Optional[list[str]] = None,
    ) -> bool:
        """Commit and push; returns False when there was nothing to commit."""
        committed = self.commit(message, paths)
        if committed:
            self.push(branch)
        return committed

    def remove_file(self, path: str) -> None:
        self._run(["rm", "-f", "--ignore-unmatch", "--", path])

    def reset_hard(self) -> None:
        """Drop uncommitted changes to tracked files."""
        self._run(["reset", "--hard", "HEAD"])

    def clean_untracked(self) -> None:
        """Delete untracked files and directories, keeping orchestrator files."""
        self._run([
            "clean", "-fd",
            "-e", STATE_FILE_PATH,
            "-e", self.config.swarm_dir,
        ])

    # Rebase

    def _rebase_result(self, result: subprocess.CompletedProcess) -> RebaseResult:
        output = f"{result.stdout}\n{result.stderr}"
        if result.returncode == 0:
            return RebaseResult(success=True, output=output)
        if any(marker in output for marker in CONFLICT_MARKERS):
            return RebaseResult(
                success=False,
                conflicts=True,
                conflicted_files=self.conflicted_files(),
                output=output,
            )
        return RebaseResult(success=False, output=output)

    def rebase(self, onto: str) -> RebaseResult:
        """Rebase the current branch onto the remote tip of another branch."""
        self.fetch(onto)
        result = self._run(["rebase", f"{self.remote}/{onto}"], check=False)
        return self._rebase_result(result)

    def continue_rebase(self) -> RebaseResult:
        self.stage_all()
        result = self._run(
            ["-c", "core.editor=true", "rebase", "--continue"],
            check=False,
        )
        return self._rebase_result(result)

    def abort_rebase(self) -> None:
        self._run(["rebase", "--abort"], check=False)

    def conflicted_files(self) -> list[str]:
        result = self._run(["diff", "--name-only", "--diff-filter=U"], check=False)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

"""
Branch and pull request topology for the issue task tree.

This module handles:
- Creating EM and worker branches from their parents (idempotent)
- Opening pull requests between tree levels (idempotent, soft-skip aware)
- Merging pull requests with base-modified retry and conflict reporting
- Titles and bodies of worker, EM and final pull requests
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from issue_swarm.errors import HostError, HostErrorKind

if TYPE_CHECKING:
    from issue_swarm.git_client import GitClient
    from issue_swarm.github_client import GitHubClient, PullRequest
    from issue_swarm.logger import SwarmLogger
    from issue_swarm.models import EMState, OrchestratorState, WorkerState

MERGE_METHOD = "squash"
BRANCH_UPDATE_SETTLE_SECONDS = 3.0


class MergeOutcome(Enum):
    MERGED = "merged"
    ALREADY_MERGED = "already_merged"
    CONFLICT = "conflict"            # caller should run the conflict resolver
    BLOCKED = "blocked"              # checks failing or head moved; try later
    CLOSED = "closed"                # closed without merge


@dataclass
class MergeResult:
    outcome: MergeOutcome
    message: str = ""

    @property
    def merged(self) -> bool:
        return self.outcome in (MergeOutcome.MERGED, MergeOutcome.ALREADY_MERGED)


# =============================================================================
# PR texts
# =============================================================================


def worker_pr_title(em: EMState, worker: WorkerState) -> str:
    return f"[EM-{em.id}/W-{worker.id}] {worker.task[:60]}"


def worker_pr_body(state: OrchestratorState, em: EMState, worker: WorkerState) -> str:
    files = "\n".join(f"- `{f}`" for f in worker.files) or "- (not specified)"
    return (
        f"Worker {worker.id} of EM {em.id} ({em.focus_area}) for #{state.issue.number}.\n\n"
        f"## Task\n{worker.task}\n\n"
        f"## Files\n{files}\n"
    )


def em_pr_title(em: EMState) -> str:
    return f"[EM-{em.id}] {em.focus_area}: {em.task[:50]}"


def em_pr_body(state: OrchestratorState, em: EMState) -> str:
    rows = [
        f"| W-{w.id} | {w.task[:60]} | {w.status.value} | {'#' + str(w.pr_number) if w.pr_number else '-'} |"
        for w in em.workers
    ]
    return (
        f"EM {em.id} ({em.focus_area}) for #{state.issue.number}.\n\n"
        f"## Task\n{em.task}\n\n"
        "## Workers\n"
        "| Worker | Task | Status | PR |\n"
        "|---|---|---|---|\n"
        + "\n".join(rows)
        + "\n"
    )


def final_pr_title(state: OrchestratorState) -> str:
    return f"feat: {state.issue.title}"


def final_pr_body(state: OrchestratorState) -> str:
    lines = [
        "## Summary",
        state.analysis_summary or state.issue.title,
        "",
        "## Task breakdown",
    ]
    for em in state.ems:
        lines.append(f"- **EM-{em.id} {em.focus_area}** ({em.status.value}): {em.task}")
        for worker in em.workers:
            lines.append(f"  - W-{worker.id} ({worker.status.value}): {worker.task}")
    lines += ["", f"Closes #{state.issue.number}", ""]
    return "\n".join(lines)


class TopologyManager:
    """
    Creates the work -> EM -> worker branch hierarchy and the PRs between
    its levels. Every operation is safe to replay.
    """

    def __init__(
        self,
        host: GitHubClient,
        git: GitClient,
        logger: Optional[SwarmLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._host = host
        self._git = git
        self._logger = logger
        self._sleep = sleep

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "topology"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    # Branches

    def create_em_branch(self, state: OrchestratorState, em: EMState) -> bool:
        """Create the EM branch from the work branch; False if it already existed."""
        created = self._host.create_branch(em.branch, state.work_branch)
        self._log("em_branch_ready", {"em_id": em.id, "branch": em.branch, "created": created})
        return created

    def create_worker_branch(self, worker: WorkerState, em: EMState) -> bool:
        """
        Create the worker branch from its EM branch and check it out.

        Returns:
            False if the branch already existed (a replay).
        """
        created = self._host.create_branch(worker.branch, em.branch)
        self._git.checkout(worker.branch)
        self._log("worker_branch_ready", {
            "em_id": em.id,
            "worker_id": worker.id,
            "branch": worker.branch,
            "created": created,
        })
        return created

    # Pull requests

    def open_pull_request(self, head: str, base: str, title: str, body: str) -> PullRequest:
        """
        Return the PR for head -> base, creating it if none exists.

        Raises:
            NoOpSkip: If head has no commits beyond base.
        """
        existing = self._host.find_pull_request(head, base)
        if existing:
            self._log("pr_reused", {"number": existing.number, "head": head})
            return existing

        try:
            return self._host.create_pull_request(head, base, title, body)
        except HostError as e:
            # Lost a race with a concurrent invocation
            if e.kind == HostErrorKind.ALREADY_EXISTS:
                existing = self._host.find_pull_request(head, base)
                if existing:
                    return existing
            raise

    def merge_pull_request(self, pr_number: int) -> MergeResult:
        """
        Squash-merge a PR.

        Already-merged PRs report success. A base-modified rejection updates
        the PR branch once and retries. A non-mergeable PR is reported as
        CONFLICT for the caller to resolve.
        """
        pr = self._host.get_pull_request(pr_number)
        if pr.merged:
            return MergeResult(MergeOutcome.ALREADY_MERGED)
        if pr.state == "closed":
            return MergeResult(MergeOutcome.CLOSED, "pull request is closed")
        if pr.mergeable is False or pr.mergeable_state == "dirty":
            return MergeResult(MergeOutcome.CONFLICT, f"mergeable_state={pr.mergeable_state or 'dirty'}")

        try:
            self._host.merge_pull_request(pr_number, MERGE_METHOD)
            return MergeResult(MergeOutcome.MERGED)
        except HostError as e:
            if e.kind != HostErrorKind.BASE_MODIFIED:
                return self._classify_merge_failure(pr_number, e)

        self._log("merge_base_modified", {"number": pr_number}, level="warn")
        self._host.update_pull_request_branch(pr_number)
        self._sleep(BRANCH_UPDATE_SETTLE_SECONDS)
        try:
            self._host.merge_pull_request(pr_number, MERGE_METHOD)
            return MergeResult(MergeOutcome.MERGED)
        except HostError as e:
            return self._classify_merge_failure(pr_number, e)

    def _classify_merge_failure(self, pr_number: int, error: HostError) -> MergeResult:
        outcome = {
            HostErrorKind.ALREADY_MERGED: MergeOutcome.ALREADY_MERGED,
            HostErrorKind.NOT_MERGEABLE: MergeOutcome.CONFLICT,
            HostErrorKind.BASE_MODIFIED: MergeOutcome.BLOCKED,
            HostErrorKind.HEAD_MODIFIED: MergeOutcome.BLOCKED,
            HostErrorKind.STATUS_CHECKS: MergeOutcome.BLOCKED,
        }.get(error.kind)
        if outcome is None:
            raise error
        self._log("merge_not_completed", {
            "number": pr_number,
            "outcome": outcome.value,
            "error": str(error)[:200],
        }, level="warn")
        return MergeResult(outcome, str(error))

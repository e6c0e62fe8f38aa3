"""
Shared fixtures and in-memory fakes for the issue-swarm test suite.

FakeGit keeps one snapshot per branch (state file content plus a set of
commit ids) and mirrors the current branch's state file into the real
tmp_path checkout, so the real StateStore reads and writes it unchanged.
FakeHost opens and merges pull requests against those snapshots.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest
from typer.testing import CliRunner

from issue_swarm.config import (
    GitHubConfig,
    IssueSwarmConfig,
    OrchestrationConfig,
    RetryConfig,
    clear_config_cache,
)
from issue_swarm.errors import GitError, HostError, HostErrorKind, NoOpSkip
from issue_swarm.executor import TaskResult
from issue_swarm.git_client import RebaseResult
from issue_swarm.github_client import HostIssue, IssueComment, PullRequest, Review, ReviewComment
from issue_swarm.labels import PhaseLabel, StatusLabel
from issue_swarm.logger import SwarmLogger, clear_logger_cache
from issue_swarm.models import STATE_FILE_PATH, OrchestratorState, parse_state, serialize_state


# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Controllable UTC clock shared by the orchestrator and FakeHost."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)

    def iso(self) -> str:
        return self.now.isoformat().replace("+00:00", "Z")


# =============================================================================
# Git
# =============================================================================


@dataclass
class BranchSnapshot:
    state: Optional[str] = None
    commits: set[str] = field(default_factory=set)

    def copy(self) -> BranchSnapshot:
        return BranchSnapshot(self.state, set(self.commits))


class FakeGit:
    """
    In-memory stand-in for GitClient.

    remote holds what was pushed; local holds checked-out copies. Worker
    output is simulated by setting dirty, which the next code commit
    turns into a new commit id. Files in untracked survive reset_hard and
    checkouts, like real untracked files, until clean_untracked.
    """

    def __init__(self, config: IssueSwarmConfig) -> None:
        self.config = config
        self.state_path = Path(config.repo_root) / STATE_FILE_PATH
        base = config.git.base_branch
        self.remote: dict[str, BranchSnapshot] = {base: BranchSnapshot(commits={"c0"})}
        self.local: dict[str, BranchSnapshot] = {base: BranchSnapshot(commits={"c0"})}
        self.current = base
        self.dirty = False
        self.untracked: set[str] = set()
        self.committed_untracked: dict[str, set[str]] = {}
        self.commit_messages: list[tuple[str, str]] = []
        self.rebase_results: list[RebaseResult] = []
        self.aborted_rebases = 0
        self.force_pushes: list[str] = []
        self._seq = 0

    # helpers for tests

    def _next_commit(self) -> str:
        self._seq += 1
        return f"c{self._seq}"

    def _sync_file(self) -> None:
        content = self.local[self.current].state
        if content is None:
            if self.state_path.exists():
                self.state_path.unlink()
        else:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(content)

    def seed_state(self, state: OrchestratorState) -> None:
        """Put a state on the remote work branch as if it had been pushed."""
        snapshot = self.remote.setdefault(
            state.work_branch, self.remote[self.config.git.base_branch].copy()
        )
        snapshot.state = serialize_state(state)
        snapshot.commits.add(self._next_commit())

    def add_remote_branch(self, name: str, from_branch: str) -> None:
        self.remote[name] = self.remote[from_branch].copy()

    def state_on(self, branch: str) -> Optional[OrchestratorState]:
        snapshot = self.remote.get(branch)
        if snapshot is None or snapshot.state is None:
            return None
        return parse_state(snapshot.state)

    # GitClient surface

    def configure_identity(self) -> None:
        pass

    def current_branch(self) -> str:
        return self.current

    def fetch(self, branch: Optional[str] = None) -> None:
        pass

    def pull(self, branch: str) -> None:
        pass

    def discard_state_changes(self) -> None:
        pass

    def checkout(self, branch: str) -> None:
        if branch not in self.remote:
            raise GitError(f"git checkout failed: unknown branch {branch}")
        self.local[branch] = self.remote[branch].copy()
        self.current = branch
        self.dirty = False
        self._sync_file()

    def create_branch(self, name: str, from_branch: str) -> None:
        if from_branch not in self.remote:
            raise GitError(f"git checkout failed: unknown branch {from_branch}")
        self.local[name] = self.remote[from_branch].copy()
        self.current = name
        self._sync_file()

    def remote_branch_exists(self, branch: str) -> bool:
        return branch in self.remote

    def list_remote_branches(self, pattern: str) -> list[str]:
        return sorted(b for b in self.remote if fnmatch.fnmatch(b, pattern))

    def has_uncommitted_changes(self) -> bool:
        return self.dirty or bool(self.untracked)

    def stage_all(self) -> None:
        pass

    def commit(self, message: str, paths: Optional[list[str]] = None) -> bool:
        snapshot = self.local[self.current]
        if paths is None:
            if not self.dirty and not self.untracked:
                return False
            self.dirty = False
            if self.untracked:
                self.committed_untracked.setdefault(self.current, set()).update(self.untracked)
                self.untracked = set()
        else:
            content = self.state_path.read_text() if self.state_path.exists() else None
            if content == snapshot.state:
                return False
            snapshot.state = content
        snapshot.commits.add(self._next_commit())
        self.commit_messages.append((self.current, message))
        return True

    def push(self, branch: str, *, create: bool = False) -> None:
        if create and branch in self.remote:
            raise GitError(f"push of new branch {branch} rejected", stderr="[rejected] (fetch first)")
        local = self.local[branch]
        remote = self.remote.setdefault(branch, BranchSnapshot())
        remote.state = local.state
        remote.commits |= local.commits

    def push_force_with_lease(self, branch: str) -> None:
        self.force_pushes.append(branch)
        self.push(branch)

    def commit_and_push(self, message: str, branch: str, paths: Optional[list[str]] = None) -> bool:
        committed = self.commit(message, paths)
        if committed:
            self.push(branch)
        return committed

    def remove_file(self, path: str) -> None:
        target = Path(self.config.repo_root) / path
        if target.exists():
            target.unlink()

    def reset_hard(self) -> None:
        self.dirty = False
        self._sync_file()

    def clean_untracked(self) -> None:
        self.untracked = set()

    def rebase(self, onto: str) -> RebaseResult:
        if self.rebase_results:
            return self.rebase_results.pop(0)
        return RebaseResult(success=True)

    def continue_rebase(self) -> RebaseResult:
        return self.rebase(onto="")

    def abort_rebase(self) -> None:
        self.aborted_rebases += 1

    def conflicted_files(self) -> list[str]:
        return []


# =============================================================================
# Host
# =============================================================================


class FakeHost:
    """
    In-memory stand-in for GitHubClient backed by a FakeGit remote.

    PR creation raises NoOpSkip when the head adds no commits to the base,
    exactly as the real host reports "No commits between".
    """

    def __init__(self, git: FakeGit, clock: Callable[[], datetime]) -> None:
        self.git = git
        self.clock = clock
        self.issues: dict[int, HostIssue] = {}
        self.prs: dict[int, PullRequest] = {}
        self.pr_bodies: dict[int, str] = {}
        self.labels: dict[int, list[str]] = {}
        self.comments: dict[int, list[IssueComment]] = {}
        self.reviews: dict[int, list[Review]] = {}
        self.review_comments: dict[int, list[ReviewComment]] = {}
        self.dispatched: list[tuple[str, str, dict[str, str]]] = []
        self.created_branches: list[str] = []
        self.merge_errors: dict[int, list[HostError]] = {}
        self.merged_numbers: list[int] = []
        self._next_pr = 100
        self._next_id = 1000

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def _now(self) -> str:
        return self.clock().isoformat().replace("+00:00", "Z")

    # setup helpers

    def add_issue(self, number: int, title: str, body: str = "", state: str = "open") -> HostIssue:
        issue = HostIssue(number=number, title=title, body=body, state=state)
        self.issues[number] = issue
        return issue

    def add_review(self, pr_number: int, user: str, state: str, body: str = "") -> Review:
        review = Review(id=self._new_id(), user=user, state=state, body=body, submitted_at=self._now())
        self.reviews.setdefault(pr_number, []).append(review)
        return review

    def add_review_comment(
        self,
        pr_number: int,
        user: str,
        body: str,
        path: str = "",
        line: Optional[int] = None,
        in_reply_to_id: Optional[int] = None,
    ) -> ReviewComment:
        comment = ReviewComment(
            id=self._new_id(), user=user, body=body, path=path, line=line, in_reply_to_id=in_reply_to_id
        )
        self.review_comments.setdefault(pr_number, []).append(comment)
        return comment

    def pr_for_head(self, head: str) -> Optional[PullRequest]:
        for pr in self.prs.values():
            if pr.head == head:
                return pr
        return None

    # issues and comments

    def get_issue(self, number: int) -> HostIssue:
        if number not in self.issues:
            raise HostError(f"GET issues/{number}: Not Found (HTTP 404)", kind=HostErrorKind.NOT_FOUND, status=404)
        return self.issues[number]

    def list_issue_comments(self, number: int) -> list[IssueComment]:
        return list(self.comments.get(number, []))

    def add_issue_comment(self, number: int, body: str, user: str = "github-actions[bot]") -> int:
        comment = IssueComment(id=self._new_id(), user=user, body=body)
        self.comments.setdefault(number, []).append(comment)
        return comment.id

    def update_issue_comment(self, comment_id: int, body: str) -> None:
        for comments in self.comments.values():
            for comment in comments:
                if comment.id == comment_id:
                    comment.body = body

    def upsert_marked_comment(self, number: int, marker: str, body: str) -> int:
        for comment in self.comments.get(number, []):
            if marker in comment.body:
                comment.body = body
                return comment.id
        return self.add_issue_comment(number, body)

    # pull requests

    def find_pull_request(self, head: str, base: str) -> Optional[PullRequest]:
        matching = [pr for pr in self.prs.values() if pr.head == head and pr.base == base]
        for pr in matching:
            if pr.is_open:
                return pr
        for pr in matching:
            if pr.merged:
                return pr
        return None

    def create_pull_request(self, head: str, base: str, title: str, body: str) -> PullRequest:
        head_commits = self.git.remote[head].commits
        base_commits = self.git.remote[base].commits
        if head_commits <= base_commits:
            raise NoOpSkip(
                f"POST repos/acme/widgets/pulls: Validation Failed: No commits between {base} and {head} (HTTP 422)",
                status=422,
            )
        self._next_pr += 1
        number = self._next_pr
        pr = PullRequest(
            number=number,
            url=f"https://github.com/acme/widgets/pull/{number}",
            state="open",
            merged=False,
            head=head,
            base=base,
            title=title,
            mergeable=True,
            mergeable_state="clean",
            created_at=self._now(),
        )
        self.prs[number] = pr
        self.pr_bodies[number] = body
        return pr

    def get_pull_request(self, number: int) -> PullRequest:
        if number not in self.prs:
            raise HostError(f"GET pulls/{number}: Not Found (HTTP 404)", kind=HostErrorKind.NOT_FOUND, status=404)
        return self.prs[number]

    def merge_pull_request(self, number: int, method: str = "squash") -> None:
        errors = self.merge_errors.get(number)
        if errors:
            raise errors.pop(0)
        pr = self.prs[number]
        base = self.git.remote[pr.base]
        base.commits |= self.git.remote[pr.head].commits
        base.commits.add(f"squash-{number}")
        pr.merged = True
        pr.state = "closed"
        self.merged_numbers.append(number)

    def update_pull_request_branch(self, number: int) -> None:
        pass

    # reviews

    def list_reviews(self, number: int) -> list[Review]:
        return list(self.reviews.get(number, []))

    def list_review_comments(self, number: int) -> list[ReviewComment]:
        return list(self.review_comments.get(number, []))

    def reply_to_review_comment(self, pr_number: int, comment_id: int, body: str) -> int:
        return self.add_review_comment(
            pr_number, "github-actions[bot]", body, in_reply_to_id=comment_id
        ).id

    # labels

    def get_labels(self, number: int) -> list[str]:
        return list(self.labels.get(number, []))

    def add_labels(self, number: int, labels: list[str]) -> None:
        current = self.labels.setdefault(number, [])
        for label in labels:
            if label not in current:
                current.append(label)

    def remove_label(self, number: int, label: str) -> None:
        if label in self.labels.get(number, []):
            self.labels[number].remove(label)

    def _replace(self, number: int, label: str, family: tuple[str, ...]) -> None:
        current = [name for name in self.labels.get(number, []) if name not in family]
        current.append(label)
        self.labels[number] = current

    def set_status_label(self, number: int, label: str) -> None:
        self._replace(number, label, StatusLabel.ALL)

    def set_phase_label(self, issue_number: int, label: str) -> None:
        self._replace(issue_number, label, PhaseLabel.ALL)

    def ensure_labels(self) -> list[str]:
        return []

    # branches and dispatch

    def create_branch(self, name: str, from_branch: str) -> bool:
        if name in self.git.remote:
            return False
        self.git.add_remote_branch(name, from_branch)
        self.created_branches.append(name)
        return True

    def delete_branch(self, name: str) -> None:
        self.git.remote.pop(name, None)

    def dispatch_workflow(self, workflow: str, ref: str, inputs: dict[str, str]) -> None:
        self.dispatched.append((workflow, ref, dict(inputs)))


# =============================================================================
# Executor
# =============================================================================


class FakeExecutor:
    """
    Scripted AI task executor.

    Responses are matched by a substring of the prompt, first registered
    match wins. Unmatched prompts succeed with empty output.
    """

    def __init__(self, git: Optional[FakeGit] = None) -> None:
        self.git = git
        self.prompts: list[str] = []
        self._responses: list[tuple[str, Callable[[str], TaskResult]]] = []

    def respond(
        self,
        marker: str,
        output: str = "",
        *,
        success: bool = True,
        error: Optional[str] = None,
        changes: bool = False,
    ) -> None:
        def handler(prompt: str) -> TaskResult:
            if changes and self.git is not None:
                self.git.dirty = True
            return TaskResult(success=success, output=output, error=error)

        self._responses.append((marker, handler))

    def respond_with(self, marker: str, handler: Callable[[str], TaskResult]) -> None:
        self._responses.append((marker, handler))

    def calls_containing(self, marker: str) -> list[str]:
        return [p for p in self.prompts if marker in p]

    def execute_task(
        self,
        prompt: str,
        *,
        working_dir: Optional[str] = None,
        max_turns: Optional[int] = None,
    ) -> TaskResult:
        self.prompts.append(prompt)
        for marker, handler in self._responses:
            if marker in prompt:
                return handler(prompt)
        return TaskResult(success=True, output="")


# Prompt markers
DIRECTOR = "You are the Director"
EM_BREAKDOWN = "You are an Engineering Manager"
WORKER = "You are a software engineer"
TRIAGE = "You are triaging a code review comment"
FIX = "Address this code review feedback"
RESOLVE = "stopped with merge conflicts"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _clear_caches():
    clear_config_cache()
    clear_logger_cache()
    yield
    clear_config_cache()
    clear_logger_cache()


@pytest.fixture
def config(tmp_path) -> IssueSwarmConfig:
    """Sequential-mode configuration rooted in tmp_path."""
    return IssueSwarmConfig(
        repo_root=str(tmp_path),
        github=GitHubConfig(repo="acme/widgets"),
        retry=RetryConfig(max_retries=1, backoff_base_seconds=0.0, backoff_max_seconds=0.0),
        orchestration=OrchestrationConfig(dispatch_mode="sequential"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def logger(config) -> SwarmLogger:
    return SwarmLogger("orchestrator", config)


@pytest.fixture
def fake_git(config) -> FakeGit:
    return FakeGit(config)


@pytest.fixture
def fake_host(fake_git, clock) -> FakeHost:
    return FakeHost(fake_git, clock)


@pytest.fixture
def fake_executor(fake_git) -> FakeExecutor:
    return FakeExecutor(fake_git)


@pytest.fixture
def orchestrator(config, fake_host, fake_git, fake_executor, logger, clock):
    """Real Orchestrator wired to the fakes, draining its own queue."""
    from issue_swarm.orchestrator import Orchestrator

    return Orchestrator(
        config=config,
        host=fake_host,
        git=fake_git,
        executor=fake_executor,
        logger=logger,
        clock=clock,
        sleep=lambda _: None,
    )


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()

"""
Repository host client for Issue Swarm.

This module wraps the gh CLI:
- Issues, issue comments and the in-place status comment
- Pull requests: find, create, get, merge, update branch
- Reviews, inline review comments and replies
- Labels (per-family replacement) and label vocabulary setup
- Remote branch create/delete through the refs API
- Workflow dispatch with retry, backoff and jitter

Every failure is classified by HostErrorClassifier and raised as a typed
HostError; transient kinds are retried here before they escape.
"""

from __future__ import annotations

import json
import random
import subprocess
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional
from urllib.parse import quote, urlencode

from issue_swarm.errors import (
    HostError,
    HostErrorClassifier,
    HostErrorKind,
    TransientHostError,
)
from issue_swarm.labels import LABEL_DEFINITIONS, PhaseLabel, StatusLabel

if TYPE_CHECKING:
    from issue_swarm.config import IssueSwarmConfig
    from issue_swarm.logger import SwarmLogger

PAGE_SIZE = 100
DISPATCH_ATTEMPTS = 3
DISPATCH_BASE_DELAY_SECONDS = 1.0
NON_RETRYABLE_DISPATCH_STATUSES = (400, 404, 422)


@dataclass
class HostIssue:
    number: int
    title: str
    body: str
    state: str

    @property
    def is_open(self) -> bool:
        return self.state == "open"


@dataclass
class PullRequest:
    number: int
    url: str
    state: str                       # "open" or "closed"
    merged: bool
    head: str
    base: str
    title: str = ""
    mergeable: Optional[bool] = None  # None while the host is still computing
    mergeable_state: str = ""
    created_at: str = ""

    @property
    def is_open(self) -> bool:
        return self.state == "open" and not self.merged

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> PullRequest:
        return cls(
            number=data["number"],
            url=data.get("html_url", ""),
            state=data.get("state", "open"),
            merged=bool(data.get("merged") or data.get("merged_at")),
            head=(data.get("head") or {}).get("ref", ""),
            base=(data.get("base") or {}).get("ref", ""),
            title=data.get("title", ""),
            mergeable=data.get("mergeable"),
            mergeable_state=data.get("mergeable_state") or "",
            created_at=data.get("created_at", ""),
        )


@dataclass
class Review:
    id: int
    user: str
    state: str                       # APPROVED, CHANGES_REQUESTED, COMMENTED, DISMISSED, PENDING
    body: str = ""
    submitted_at: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Review:
        return cls(
            id=data["id"],
            user=(data.get("user") or {}).get("login", ""),
            state=(data.get("state") or "").upper(),
            body=data.get("body") or "",
            submitted_at=data.get("submitted_at") or "",
        )


@dataclass
class ReviewComment:
    id: int
    user: str
    body: str
    path: str = ""
    line: Optional[int] = None
    in_reply_to_id: Optional[int] = None

    @property
    def is_root(self) -> bool:
        return self.in_reply_to_id is None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ReviewComment:
        return cls(
            id=data["id"],
            user=(data.get("user") or {}).get("login", ""),
            body=data.get("body") or "",
            path=data.get("path") or "",
            line=data.get("line") or data.get("original_line"),
            in_reply_to_id=data.get("in_reply_to_id"),
        )


@dataclass
class IssueComment:
    id: int
    user: str
    body: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> IssueComment:
        return cls(
            id=data["id"],
            user=(data.get("user") or {}).get("login", ""),
            body=data.get("body") or "",
        )


class GitHubClient:
    """
    Repository host API over the gh CLI.

    Methods raise HostError subclasses; label and comment helpers that are
    documented as best-effort are the only ones that swallow failures.
    """

    def __init__(
        self,
        config: IssueSwarmConfig,
        logger: Optional[SwarmLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: IssueSwarmConfig with the github section.
            logger: Optional logger for recording operations.
            sleep: Delay function (injectable for tests).
            rng: Jitter source in [0, 1) (injectable for tests).
        """
        self.config = config
        self.repo = config.github.repo
        self._logger = logger
        self._sleep = sleep
        self._rng = rng
        self._gh_available: Optional[bool] = None

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "github_client"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    # =========================================================================
    # gh plumbing
    # =========================================================================

    def _check_gh_available(self) -> bool:
        """
        Check if gh CLI is available and authenticated.

        Results are cached after first check.
        """
        if self._gh_available is not None:
            return self._gh_available

        try:
            result = subprocess.run(
                ["gh", "auth", "status"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            self._gh_available = result.returncode == 0
            if not self._gh_available:
                self._log("gh_auth_failed", {
                    "stderr": result.stderr[:200] if result.stderr else "",
                }, level="warn")
        except FileNotFoundError:
            self._gh_available = False
            self._log("gh_not_found", level="warn")
        except subprocess.TimeoutExpired:
            self._gh_available = False
            self._log("gh_timeout", level="warn")

        return self._gh_available

    def _run_gh_command(
        self,
        args: list[str],
        input_data: Optional[str] = None,
    ) -> tuple[bool, str, str]:
        """
        Run a gh CLI command.

        Returns:
            Tuple of (success, stdout, stderr).
        """
        if not self._check_gh_available():
            return False, "", "gh CLI not available: run gh auth login"

        try:
            result = subprocess.run(
                ["gh"] + args,
                cwd=str(self.config.repo_root),
                capture_output=True,
                text=True,
                input=input_data,
                timeout=self.config.github.timeout_seconds,
            )
            return result.returncode == 0, result.stdout, result.stderr
        except subprocess.TimeoutExpired:
            return False, "", "Command timed out"
        except OSError as e:
            return False, "", str(e)

    def _backoff_delay(self, attempt: int, base: float) -> float:
        delay = base * (2 ** attempt)
        return delay + delay * 0.25 * self._rng()

    def _with_retry(self, operation: str, call: Callable[[], Any]) -> Any:
        """Run call, retrying TransientHostError with exponential backoff."""
        attempts = self.config.github.max_retries + 1
        for attempt in range(attempts):
            try:
                return call()
            except TransientHostError as e:
                if attempt == attempts - 1:
                    raise
                delay = self._backoff_delay(attempt, self.config.github.retry_base_delay_seconds)
                self._log("host_retry", {
                    "operation": operation,
                    "attempt": attempt + 1,
                    "kind": e.kind.name,
                    "delay_seconds": round(delay, 2),
                }, level="warn")
                self._sleep(delay)
        raise AssertionError("unreachable")

    def _api_once(
        self,
        path: str,
        method: str,
        body: Optional[dict[str, Any]],
    ) -> Any:
        args = ["api", "-X", method, path, "-H", "Accept: application/vnd.github+json"]
        input_data = None
        if body is not None:
            args += ["--input", "-"]
            input_data = json.dumps(body)

        success, stdout, stderr = self._run_gh_command(args, input_data)
        if not success:
            raise HostErrorClassifier.create_error(
                f"{stderr}\n{stdout}",
                message=f"{method} {path}",
            )
        stdout = stdout.strip()
        if not stdout:
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError:
            return stdout

    def _api(
        self,
        path: str,
        method: str = "GET",
        body: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Call the REST API through gh api, with transient retries."""
        return self._with_retry(
            f"{method} {path}",
            lambda: self._api_once(path, method, body),
        )

    def _api_list(self, path: str, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        """GET every page of a list endpoint."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"per_page": PAGE_SIZE, "page": page})
            batch = self._api(f"{path}?{urlencode(query)}") or []
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                return items
            page += 1

    def _repo_path(self, suffix: str) -> str:
        return f"repos/{self.repo}/{suffix}"

    # =========================================================================
    # Issues and comments
    # =========================================================================

    def get_issue(self, number: int) -> HostIssue:
        data = self._api(self._repo_path(f"issues/{number}"))
        return HostIssue(
            number=data["number"],
            title=data.get("title", ""),
            body=data.get("body") or "",
            state=data.get("state", "open"),
        )

    def list_issue_comments(self, number: int) -> list[IssueComment]:
        return [
            IssueComment.from_api(c)
            for c in self._api_list(self._repo_path(f"issues/{number}/comments"))
        ]

    def add_issue_comment(self, number: int, body: str) -> int:
        data = self._api(self._repo_path(f"issues/{number}/comments"), "POST", {"body": body})
        return data["id"]

    def update_issue_comment(self, comment_id: int, body: str) -> None:
        self._api(self._repo_path(f"issues/comments/{comment_id}"), "PATCH", {"body": body})

    def upsert_marked_comment(self, number: int, marker: str, body: str) -> int:
        """Update the comment carrying marker in place, or create it."""
        for comment in self.list_issue_comments(number):
            if marker in comment.body:
                self.update_issue_comment(comment.id, body)
                return comment.id
        return self.add_issue_comment(number, body)

    # =========================================================================
    # Pull requests
    # =========================================================================

    def find_pull_request(self, head: str, base: str) -> Optional[PullRequest]:
        """
        Find an existing PR for head → base.

        Open PRs win over merged ones; closed-unmerged PRs are ignored so a
        retried node can open a fresh PR.
        """
        params = {"head": f"{self.config.github.owner}:{head}", "base": base, "state": "all"}
        pulls = [PullRequest.from_api(p) for p in self._api_list(self._repo_path("pulls"), params)]
        for pr in pulls:
            if pr.is_open:
                return pr
        for pr in pulls:
            if pr.merged:
                return pr
        return None

    def create_pull_request(self, head: str, base: str, title: str, body: str) -> PullRequest:
        data = self._api(
            self._repo_path("pulls"),
            "POST",
            {"head": head, "base": base, "title": title, "body": body},
        )
        pr = PullRequest.from_api(data)
        self._log("pr_created", {"number": pr.number, "head": head, "base": base})
        return pr

    def get_pull_request(self, number: int) -> PullRequest:
        return PullRequest.from_api(self._api(self._repo_path(f"pulls/{number}")))

    def merge_pull_request(self, number: int, method: str = "squash") -> None:
        self._api(self._repo_path(f"pulls/{number}/merge"), "PUT", {"merge_method": method})
        self._log("pr_merged", {"number": number, "method": method})

    def update_pull_request_branch(self, number: int) -> None:
        self._api(self._repo_path(f"pulls/{number}/update-branch"), "PUT", {})

    # =========================================================================
    # Reviews
    # =========================================================================

    def list_reviews(self, number: int) -> list[Review]:
        return [Review.from_api(r) for r in self._api_list(self._repo_path(f"pulls/{number}/reviews"))]

    def list_review_comments(self, number: int) -> list[ReviewComment]:
        return [
            ReviewComment.from_api(c)
            for c in self._api_list(self._repo_path(f"pulls/{number}/comments"))
        ]

    def reply_to_review_comment(self, pr_number: int, comment_id: int, body: str) -> int:
        data = self._api(
            self._repo_path(f"pulls/{pr_number}/comments/{comment_id}/replies"),
            "POST",
            {"body": body},
        )
        return data["id"]

    # =========================================================================
    # Labels
    # =========================================================================

    def get_labels(self, number: int) -> list[str]:
        return [
            label["name"]
            for label in self._api_list(self._repo_path(f"issues/{number}/labels"))
        ]

    def add_labels(self, number: int, labels: list[str]) -> None:
        if labels:
            self._api(self._repo_path(f"issues/{number}/labels"), "POST", {"labels": labels})

    def remove_label(self, number: int, label: str) -> None:
        """Remove a label; a label that is not present is not an error."""
        try:
            self._api(self._repo_path(f"issues/{number}/labels/{quote(label, safe='')}"), "DELETE")
        except HostError as e:
            if e.kind != HostErrorKind.NOT_FOUND:
                raise

    def _replace_family_label(self, number: int, label: str, family: tuple[str, ...]) -> None:
        current = self.get_labels(number)
        for existing in current:
            if existing in family and existing != label:
                self.remove_label(number, existing)
        if label not in current:
            self.add_labels(number, [label])

    def set_status_label(self, number: int, label: str) -> None:
        """Set a PR status label, removing every other status label."""
        self._replace_family_label(number, label, StatusLabel.ALL)

    def set_phase_label(self, issue_number: int, label: str) -> None:
        """Set an issue phase label, removing every other phase label."""
        self._replace_family_label(issue_number, label, PhaseLabel.ALL)

    def ensure_labels(self) -> list[str]:
        """
        Create the label vocabulary.

        Returns:
            Names of labels that were newly created.
        """
        created = []
        for name, (color, description) in LABEL_DEFINITIONS.items():
            try:
                self._api(
                    self._repo_path("labels"),
                    "POST",
                    {"name": name, "color": color, "description": description},
                )
                created.append(name)
            except HostError as e:
                if e.kind not in (HostErrorKind.ALREADY_EXISTS, HostErrorKind.VALIDATION):
                    raise
        self._log("labels_ensured", {"created": created})
        return created

    # =========================================================================
    # Branches
    # =========================================================================

    def create_branch(self, name: str, from_branch: str) -> bool:
        """
        Create a remote branch at the tip of from_branch.

        Returns:
            True if created, False if it already existed.
        """
        ref = self._api(self._repo_path(f"git/ref/heads/{quote(from_branch, safe='/')}"))
        sha = ref["object"]["sha"]
        try:
            self._api(self._repo_path("git/refs"), "POST", {"ref": f"refs/heads/{name}", "sha": sha})
        except HostError as e:
            if e.kind == HostErrorKind.ALREADY_EXISTS:
                self._log("branch_exists", {"branch": name}, level="debug")
                return False
            raise
        self._log("branch_created", {"branch": name, "from": from_branch})
        return True

    def delete_branch(self, name: str) -> None:
        try:
            self._api(self._repo_path(f"git/refs/heads/{quote(name, safe='/')}"), "DELETE")
        except HostError as e:
            if e.kind not in (HostErrorKind.NOT_FOUND, HostErrorKind.VALIDATION):
                raise

    # =========================================================================
    # Workflow dispatch
    # =========================================================================

    def dispatch_workflow(self, workflow: str, ref: str, inputs: dict[str, str]) -> None:
        """
        Trigger a workflow_dispatch run.

        Retries up to DISPATCH_ATTEMPTS times with exponential backoff and
        jitter. 400/404/422 responses are never retried.
        """
        args = ["workflow", "run", workflow, "--ref", ref]
        for key, value in inputs.items():
            args += ["-f", f"{key}={value}"]

        last_error: Optional[HostError] = None
        for attempt in range(DISPATCH_ATTEMPTS):
            success, stdout, stderr = self._run_gh_command(args)
            if success:
                self._log("workflow_dispatched", {
                    "workflow": workflow,
                    "attempt": attempt + 1,
                    "token": inputs.get("idempotency_token"),
                })
                return
            last_error = HostErrorClassifier.create_error(
                f"{stderr}\n{stdout}", message=f"dispatch {workflow}"
            )
            if last_error.status in NON_RETRYABLE_DISPATCH_STATUSES:
                raise last_error
            if attempt < DISPATCH_ATTEMPTS - 1:
                delay = self._backoff_delay(attempt, DISPATCH_BASE_DELAY_SECONDS)
                self._log("workflow_dispatch_retry", {
                    "workflow": workflow,
                    "attempt": attempt + 1,
                    "delay_seconds": round(delay, 2),
                    "error": str(last_error)[:200],
                }, level="warn")
                self._sleep(delay)
        assert last_error is not None
        raise last_error

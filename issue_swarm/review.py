"""
Review reconciliation for orchestrator pull requests.

This module handles:
- Finding unaddressed root review comments and general PR comments
- Deciding merge readiness from reviews and comment state
- Triage of each comment through the AI task executor
- Applying fixes, replying with the addressed marker, recording IDs
- Best-effort auto-merge with label bookkeeping
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Union

from issue_swarm.errors import HostError, IssueSwarmError
from issue_swarm.labels import StatusLabel
from issue_swarm.status_report import STATUS_COMMENT_MARKER
from issue_swarm.topology import MergeOutcome, MergeResult
from issue_swarm.utils.json_extract import extract_json

if TYPE_CHECKING:
    from issue_swarm.config import IssueSwarmConfig
    from issue_swarm.executor import ClaudeTaskExecutor
    from issue_swarm.git_client import GitClient
    from issue_swarm.github_client import GitHubClient, IssueComment, ReviewComment
    from issue_swarm.logger import SwarmLogger
    from issue_swarm.models import EMState, FinalPR, WorkerState
    from issue_swarm.topology import TopologyManager

    TrackedNode = Union[WorkerState, EMState, FinalPR]

REVIEW_ADDRESSED_MARKER = "<!-- swarm-review-addressed -->"

# General comments this short are acknowledgements, not requests
MIN_ISSUE_COMMENT_LENGTH = 10
MIN_REVIEW_BODY_LENGTH = 20

IGNORED_REVIEW_STATES = ("DISMISSED", "PENDING")


@dataclass
class CommentTriage:
    """AI verdict on one review comment."""
    actionable: bool
    reason: str = ""
    suggested_fix: str = ""


@dataclass
class HandledComment:
    """A triaged comment waiting for the push before it is recorded."""
    comment_id: int
    reply: str
    issue_comment: bool = False


@dataclass
class AddressSummary:
    """What one address_review pass did."""
    fixed: list[int] = field(default_factory=list)
    declined: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    review_body_fixed: bool = False
    pushed: bool = False

    @property
    def handled(self) -> int:
        return len(self.fixed) + len(self.declined)


def build_triage_prompt(comment_body: str, path: str = "", line: Optional[int] = None) -> str:
    location = f"{path}:{line}" if path and line else (path or "general PR comment")
    return f"""You are triaging a code review comment on a pull request.

## Location
{location}

## Comment
{comment_body}

Decide whether the comment asks for a concrete code change that should be made.
Questions, praise and opinions without a requested change are not actionable.
Do not modify any files.

Respond with ONLY a JSON object:
```json
{{"actionable": true, "reason": "why", "suggestedFix": "what to change"}}
```"""


def build_fix_prompt(comment_body: str, suggested_fix: str, path: str = "", line: Optional[int] = None) -> str:
    location = f"\n## Location\n{path}:{line}\n" if path and line else (f"\n## File\n{path}\n" if path else "")
    return f"""Address this code review feedback in the working tree.
{location}
## Feedback
{comment_body}

## Suggested fix
{suggested_fix or "(use your judgement)"}

Make the smallest change that resolves the feedback. Do not commit or push.
Do not edit .orchestrator/state.json."""


class ReviewReconciler:
    """
    Deduplicates and triages review feedback, decides readiness, merges.

    Dedupe uses two layers: a marker reply under each handled root comment
    and the addressed ID lists on the owning node. The ID lists are
    authoritative.
    """

    def __init__(
        self,
        config: IssueSwarmConfig,
        host: GitHubClient,
        git: GitClient,
        executor: ClaudeTaskExecutor,
        topology: TopologyManager,
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        self.config = config
        self._host = host
        self._git = git
        self._executor = executor
        self._topology = topology
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "review"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    # =========================================================================
    # Comment discovery
    # =========================================================================

    def unaddressed_root_comments(self, pr_number: int, node: TrackedNode) -> list[ReviewComment]:
        """Root inline comments with no marker reply and no recorded ID."""
        comments = self._host.list_review_comments(pr_number)
        replied_roots = {
            c.in_reply_to_id for c in comments
            if not c.is_root and REVIEW_ADDRESSED_MARKER in c.body
        }
        return [
            c for c in comments
            if c.is_root
            and c.id not in replied_roots
            and not node.is_addressed(c.id)
            and REVIEW_ADDRESSED_MARKER not in c.body
        ]

    def unaddressed_issue_comments(self, pr_number: int, node: TrackedNode) -> list[IssueComment]:
        """General PR comments worth triaging."""
        bots = set(self.config.github.bot_logins)
        result = []
        for comment in self._host.list_issue_comments(pr_number):
            if comment.user in bots:
                continue
            if REVIEW_ADDRESSED_MARKER in comment.body or STATUS_COMMENT_MARKER in comment.body:
                continue
            if len(comment.body.strip()) <= MIN_ISSUE_COMMENT_LENGTH:
                continue
            if node.is_addressed(comment.id, issue_comment=True):
                continue
            result.append(comment)
        return result

    # =========================================================================
    # Readiness
    # =========================================================================

    def is_ready_to_merge(self, pr_number: int, node: TrackedNode) -> bool:
        """
        Decide whether a PR may be merged.

        Only each reviewer's latest review counts. Any changes-requested
        review blocks; a commented review from an automated reviewer
        passes outright; otherwise every root comment must be addressed.
        """
        latest: dict[str, str] = {}
        for review in self._host.list_reviews(pr_number):
            if review.state in IGNORED_REVIEW_STATES:
                continue
            latest[review.user] = review.state

        if any(state == "CHANGES_REQUESTED" for state in latest.values()):
            self._log("merge_blocked", {"pr": pr_number, "reason": "changes_requested"})
            return False

        automated = set(self.config.github.automated_reviewers)
        if any(user in automated and state == "COMMENTED" for user, state in latest.items()):
            return True

        pending = self.unaddressed_root_comments(pr_number, node)
        if pending:
            self._log("merge_blocked", {
                "pr": pr_number,
                "reason": "unaddressed_comments",
                "count": len(pending),
            })
            return False
        return True

    # =========================================================================
    # Addressing feedback
    # =========================================================================

    def classify_comment(self, body: str, path: str = "", line: Optional[int] = None) -> CommentTriage:
        """
        Ask the executor whether a comment needs a change.

        Unparseable or failed triage counts as actionable.
        """
        result = self._executor.execute_task(build_triage_prompt(body, path, line))
        data = extract_json(result.output, expect=dict) if result.success else None
        if not data:
            return CommentTriage(actionable=True, reason="triage unavailable")
        return CommentTriage(
            actionable=bool(data.get("actionable", True)),
            reason=str(data.get("reason") or ""),
            suggested_fix=str(data.get("suggestedFix") or data.get("suggested_fix") or ""),
        )

    def _reply(self, pr_number: int, comment_id: Optional[int], text: str) -> None:
        """Post the marker reply. Best-effort."""
        body = f"{text}\n\n{REVIEW_ADDRESSED_MARKER}"
        try:
            if comment_id is None:
                self._host.add_issue_comment(pr_number, body)
            else:
                self._host.reply_to_review_comment(pr_number, comment_id, body)
        except HostError as e:
            self._log("review_reply_failed", {
                "pr": pr_number,
                "comment_id": comment_id,
                "error": str(e)[:200],
            }, level="warn")

    def _handle_comment(
        self,
        pr_number: int,
        comment_id: int,
        body: str,
        summary: AddressSummary,
        *,
        path: str = "",
        line: Optional[int] = None,
        issue_comment: bool = False,
    ) -> Optional[HandledComment]:
        triage = self.classify_comment(body, path, line)
        self._log("comment_triaged", {
            "pr": pr_number,
            "comment_id": comment_id,
            "actionable": triage.actionable,
            "reason": triage.reason[:200],
        })

        if triage.actionable:
            fix = self._executor.execute_task(
                build_fix_prompt(body, triage.suggested_fix, path, line),
                working_dir=self.config.repo_root,
            )
            if not fix.success:
                # Not recorded: the next review event retries it
                summary.failed.append(comment_id)
                self._log("comment_fix_failed", {
                    "pr": pr_number,
                    "comment_id": comment_id,
                    "error": (fix.error or "")[:200],
                }, level="warn")
                return None
            summary.fixed.append(comment_id)
            reply = "Addressed in the latest push."
        else:
            summary.declined.append(comment_id)
            reply = f"No change made: {triage.reason or 'not actionable'}"

        return HandledComment(comment_id, reply, issue_comment)

    def address_review(
        self,
        pr_number: int,
        node: TrackedNode,
        branch: str,
        review_body: Optional[str] = None,
    ) -> AddressSummary:
        """
        Address every unaddressed comment on a PR and push the fixes.

        The caller persists node afterwards; its addressed ID lists are
        updated in place, but only once the fixes are pushed. A failed
        push leaves every comment unaddressed for the next review event.
        """
        summary = AddressSummary()
        self._git.checkout(branch)

        handled: list[Optional[HandledComment]] = []
        for comment in self.unaddressed_root_comments(pr_number, node):
            handled.append(self._handle_comment(
                pr_number, comment.id, comment.body, summary,
                path=comment.path, line=comment.line,
            ))
        for comment in self.unaddressed_issue_comments(pr_number, node):
            handled.append(self._handle_comment(
                pr_number, comment.id, comment.body, summary, issue_comment=True,
            ))

        if review_body and len(review_body.strip()) > MIN_REVIEW_BODY_LENGTH:
            fix = self._executor.execute_task(
                build_fix_prompt(review_body, ""),
                working_dir=self.config.repo_root,
            )
            summary.review_body_fixed = fix.success

        if self._git.has_uncommitted_changes():
            summary.pushed = self._git.commit_and_push("fix: address review feedback", branch)

        for item in handled:
            if item is None:
                continue
            node.mark_addressed(item.comment_id, issue_comment=item.issue_comment)
            self._reply(pr_number, None if item.issue_comment else item.comment_id, item.reply)

        node.reviews_addressed += 1
        self._log("review_addressed", {
            "pr": pr_number,
            "fixed": len(summary.fixed),
            "declined": len(summary.declined),
            "failed": len(summary.failed),
            "pushed": summary.pushed,
        })
        return summary

    # =========================================================================
    # Merge
    # =========================================================================

    def _set_label(self, pr_number: int, label: str) -> None:
        try:
            self._host.set_status_label(pr_number, label)
        except HostError as e:
            self._log("label_update_failed", {"pr": pr_number, "label": label, "error": str(e)[:200]}, level="warn")

    def maybe_auto_merge(self, pr_number: int) -> MergeResult:
        """
        Merge a PR that is ready. Never raises.

        On anything but a merge the awaiting-review label is restored so a
        later event can retry.
        """
        self._set_label(pr_number, StatusLabel.READY_TO_MERGE)
        try:
            result = self._topology.merge_pull_request(pr_number)
        except IssueSwarmError as e:
            self._log("auto_merge_failed", {"pr": pr_number, "error": str(e)[:200]}, level="warn")
            result = MergeResult(MergeOutcome.BLOCKED, str(e))

        if result.merged:
            self._set_label(pr_number, StatusLabel.MERGED)
        elif result.outcome == MergeOutcome.CONFLICT:
            self._set_label(pr_number, StatusLabel.CONFLICTS)
        else:
            self._set_label(pr_number, StatusLabel.AWAITING_REVIEW)
        self._log("auto_merge_attempted", {"pr": pr_number, "outcome": result.outcome.value})
        return result

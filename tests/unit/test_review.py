"""
Unit tests for review reconciliation.

Covers comment dedupe, merge readiness, triage/fix flow and auto-merge
label bookkeeping.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from issue_swarm.errors import GitError, HostError, HostErrorKind
from issue_swarm.labels import StatusLabel
from issue_swarm.models import WorkerState
from issue_swarm.review import REVIEW_ADDRESSED_MARKER, ReviewReconciler
from issue_swarm.status_report import STATUS_COMMENT_MARKER
from issue_swarm.topology import MergeOutcome, MergeResult, TopologyManager

from conftest import FIX, TRIAGE

PR = 101
BRANCH = "swarm/issue-42-em-1-w-1"
COPILOT = "copilot-pull-request-reviewer[bot]"


@pytest.fixture
def pr_branch(fake_git):
    fake_git.add_remote_branch(BRANCH, "main")
    return BRANCH


@pytest.fixture
def reconciler(config, fake_host, fake_git, fake_executor):
    topology = TopologyManager(fake_host, fake_git, sleep=lambda _: None)
    return ReviewReconciler(config, fake_host, fake_git, fake_executor, topology)


def triage(actionable, reason="", fix=""):
    return json.dumps({"actionable": actionable, "reason": reason, "suggestedFix": fix})


class TestCommentDiscovery:
    def test_marker_reply_hides_root(self, reconciler, fake_host):
        root = fake_host.add_review_comment(PR, "alice", "Rename this", "a.py", 3)
        fake_host.add_review_comment(PR, "bot", f"done\n{REVIEW_ADDRESSED_MARKER}", in_reply_to_id=root.id)
        other = fake_host.add_review_comment(PR, "alice", "Add a test", "a.py", 9)

        pending = reconciler.unaddressed_root_comments(PR, WorkerState())

        assert [c.id for c in pending] == [other.id]

    def test_recorded_id_hides_root(self, reconciler, fake_host):
        root = fake_host.add_review_comment(PR, "alice", "Rename this")
        node = WorkerState()
        node.mark_addressed(root.id)
        assert reconciler.unaddressed_root_comments(PR, node) == []

    def test_issue_comment_filters(self, reconciler, fake_host):
        fake_host.add_issue_comment(PR, "Looks fine by me, thanks", user="github-actions[bot]")
        fake_host.add_issue_comment(PR, "lgtm", user="alice")
        fake_host.add_issue_comment(PR, f"status {STATUS_COMMENT_MARKER}", user="alice")
        wanted = fake_host.add_issue_comment(PR, "Please also handle HEAD requests", user="alice")

        pending = reconciler.unaddressed_issue_comments(PR, WorkerState())

        assert [c.id for c in pending] == [wanted]


class TestReadiness:
    def test_no_reviews_no_comments_is_ready(self, reconciler):
        assert reconciler.is_ready_to_merge(PR, WorkerState())

    def test_changes_requested_blocks(self, reconciler, fake_host):
        fake_host.add_review(PR, "alice", "CHANGES_REQUESTED")
        assert not reconciler.is_ready_to_merge(PR, WorkerState())

    def test_latest_review_per_reviewer_counts(self, reconciler, fake_host):
        fake_host.add_review(PR, "alice", "CHANGES_REQUESTED")
        fake_host.add_review(PR, "alice", "APPROVED")
        assert reconciler.is_ready_to_merge(PR, WorkerState())

    def test_dismissed_reviews_are_ignored(self, reconciler, fake_host):
        fake_host.add_review(PR, "alice", "APPROVED")
        fake_host.add_review(PR, "alice", "DISMISSED")
        assert reconciler.is_ready_to_merge(PR, WorkerState())

    def test_automated_commented_review_passes(self, reconciler, fake_host):
        fake_host.add_review(PR, COPILOT, "COMMENTED")
        fake_host.add_review_comment(PR, COPILOT, "Consider a constant", "a.py", 1)
        assert reconciler.is_ready_to_merge(PR, WorkerState())

    def test_human_comment_blocks_until_addressed(self, reconciler, fake_host):
        fake_host.add_review(PR, "alice", "COMMENTED")
        comment = fake_host.add_review_comment(PR, "alice", "Consider a constant", "a.py", 1)
        node = WorkerState()

        assert not reconciler.is_ready_to_merge(PR, node)
        node.mark_addressed(comment.id)
        assert reconciler.is_ready_to_merge(PR, node)


class TestAddressReview:
    def test_actionable_comment_is_fixed_and_pushed(
        self, reconciler, fake_host, fake_git, fake_executor, pr_branch
    ):
        comment = fake_host.add_review_comment(PR, "alice", "Return 204 instead", "health.go", 12)
        fake_executor.respond(TRIAGE, triage(True, "asks for a change", "use 204"))
        fake_executor.respond(FIX, changes=True)
        node = WorkerState()

        summary = reconciler.address_review(PR, node, pr_branch)

        assert summary.fixed == [comment.id]
        assert summary.pushed
        assert node.is_addressed(comment.id)
        assert node.reviews_addressed == 1
        assert "use 204" in fake_executor.calls_containing(FIX)[0]
        replies = [c for c in fake_host.review_comments[PR] if c.in_reply_to_id == comment.id]
        assert REVIEW_ADDRESSED_MARKER in replies[0].body

    def test_declined_comment_is_recorded_without_fix(self, reconciler, fake_host, fake_executor, pr_branch):
        comment = fake_host.add_review_comment(PR, "alice", "Why this approach?")
        fake_executor.respond(TRIAGE, triage(False, "question only"))
        node = WorkerState()

        summary = reconciler.address_review(PR, node, pr_branch)

        assert summary.declined == [comment.id]
        assert not summary.pushed
        assert node.is_addressed(comment.id)
        assert fake_executor.calls_containing(FIX) == []

    def test_second_pass_makes_no_ai_calls(self, reconciler, fake_host, fake_executor, pr_branch):
        fake_host.add_review_comment(PR, "alice", "Return 204 instead", "health.go", 12)
        fake_executor.respond(TRIAGE, triage(True))
        fake_executor.respond(FIX, changes=True)
        node = WorkerState()

        reconciler.address_review(PR, node, pr_branch)
        calls = len(fake_executor.prompts)
        summary = reconciler.address_review(PR, node, pr_branch)

        assert len(fake_executor.prompts) == calls
        assert summary.handled == 0

    def test_failed_fix_is_not_recorded(self, reconciler, fake_host, fake_executor, pr_branch):
        comment = fake_host.add_review_comment(PR, "alice", "Return 204 instead")
        fake_executor.respond(TRIAGE, triage(True))
        fake_executor.respond(FIX, success=False, error="executor crashed")
        node = WorkerState()

        summary = reconciler.address_review(PR, node, pr_branch)

        assert summary.failed == [comment.id]
        assert not node.is_addressed(comment.id)
        assert reconciler.unaddressed_root_comments(PR, node)

    def test_failed_push_records_nothing(self, reconciler, fake_host, fake_git, fake_executor, pr_branch):
        comment = fake_host.add_review_comment(PR, "alice", "Return 204 instead", "health.go", 12)
        fake_executor.respond(TRIAGE, triage(True))
        fake_executor.respond(FIX, changes=True)
        node = WorkerState()

        with patch.object(fake_git, "push", side_effect=GitError("git push failed")):
            with pytest.raises(GitError):
                reconciler.address_review(PR, node, pr_branch)

        assert not node.is_addressed(comment.id)
        assert [c for c in fake_host.review_comments[PR] if c.in_reply_to_id == comment.id] == []
        assert [c.id for c in reconciler.unaddressed_root_comments(PR, node)] == [comment.id]

    def test_unparseable_triage_counts_as_actionable(self, reconciler, fake_executor):
        fake_executor.respond(TRIAGE, "not sure")
        assert reconciler.classify_comment("Fix this").actionable

    def test_issue_comment_marker_posted_on_pr(self, reconciler, fake_host, fake_executor, pr_branch):
        comment_id = fake_host.add_issue_comment(PR, "Please also handle HEAD requests", user="alice")
        fake_executor.respond(TRIAGE, triage(True))
        fake_executor.respond(FIX, changes=True)
        node = WorkerState()

        reconciler.address_review(PR, node, pr_branch)

        assert node.is_addressed(comment_id, issue_comment=True)
        assert any(REVIEW_ADDRESSED_MARKER in c.body for c in fake_host.comments[PR])


class TestAutoMerge:
    def _reconciler(self, config, result=None, side_effect=None):
        host = MagicMock()
        topology = MagicMock()
        topology.merge_pull_request.return_value = result
        topology.merge_pull_request.side_effect = side_effect
        return ReviewReconciler(config, host, MagicMock(), MagicMock(), topology), host

    def _labels(self, host):
        return [c.args[1] for c in host.set_status_label.call_args_list]

    def test_merged(self, config):
        reconciler, host = self._reconciler(config, MergeResult(MergeOutcome.MERGED))
        assert reconciler.maybe_auto_merge(PR).merged
        assert self._labels(host) == [StatusLabel.READY_TO_MERGE, StatusLabel.MERGED]

    def test_conflict_label(self, config):
        reconciler, host = self._reconciler(config, MergeResult(MergeOutcome.CONFLICT))
        reconciler.maybe_auto_merge(PR)
        assert self._labels(host)[-1] == StatusLabel.CONFLICTS

    def test_blocked_restores_awaiting_review(self, config):
        reconciler, host = self._reconciler(config, MergeResult(MergeOutcome.BLOCKED))
        reconciler.maybe_auto_merge(PR)
        assert self._labels(host)[-1] == StatusLabel.AWAITING_REVIEW

    def test_never_raises(self, config):
        reconciler, host = self._reconciler(config, side_effect=HostError("boom", kind=HostErrorKind.AUTH))
        result = reconciler.maybe_auto_merge(PR)
        assert result.outcome == MergeOutcome.BLOCKED
        assert self._labels(host)[-1] == StatusLabel.AWAITING_REVIEW

    def test_label_failure_is_tolerated(self, config):
        reconciler, host = self._reconciler(config, MergeResult(MergeOutcome.MERGED))
        host.set_status_label.side_effect = HostError("label missing", kind=HostErrorKind.NOT_FOUND)
        assert reconciler.maybe_auto_merge(PR).merged

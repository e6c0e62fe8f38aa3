"""Unit tests for the persisted task tree and its JSON format."""

import json

import pytest

from issue_swarm.errors import VersionMismatch
from issue_swarm.models import (
    MAX_ERROR_MESSAGE_LENGTH,
    EMState,
    EMStatus,
    FinalPR,
    IssueInfo,
    OrchestratorState,
    Phase,
    RunSettings,
    WorkerState,
    WorkerStatus,
    parse_state,
    serialize_state,
)


def build_state() -> OrchestratorState:
    worker = WorkerState(
        id=1,
        task="Add /health handler",
        files=["health.go"],
        branch="swarm/issue-42-em-1-w-1",
        status=WorkerStatus.PR_CREATED,
        pr_number=101,
        pr_url="https://github.com/acme/widgets/pull/101",
        addressed_review_comment_ids=[7, 9],
        addressed_issue_comment_ids=[11],
        reviews_addressed=1,
        started_at="2026-01-01T00:00:00Z",
    )
    em = EMState(
        id=1,
        task="Health endpoint",
        focus_area="API",
        branch="swarm/issue-42-em-1",
        status=EMStatus.WORKERS_RUNNING,
        workers=[worker],
    )
    queued = EMState(id=2, task="Docs", focus_area="Docs", branch="swarm/issue-42-em-2")
    state = OrchestratorState(
        issue=IssueInfo(number=42, title="Add health endpoint", body="We need /health"),
        repo="acme/widgets",
        work_branch="swarm/issue-42-add-health-endpoint",
        base_branch="main",
        phase=Phase.WORKER_REVIEW,
        ems=[em],
        pending_ems=[queued],
        config=RunSettings(max_ems=1, max_workers_per_em=1, review_wait_minutes=0, pr_label="ai"),
        analysis_summary="One EM",
        final_pr=FinalPR(number=200, url="u", addressed_review_comment_ids=[3]),
    )
    state.add_error("boom", context="EM-1/W-1")
    return state


class TestSerialization:
    """Round-trip of the state file."""

    def test_round_trip_preserves_everything_but_updated_at(self):
        state = build_state()
        parsed = parse_state(serialize_state(state))

        original = state.to_dict()
        restored = parsed.to_dict()
        original.pop("updatedAt")
        restored.pop("updatedAt")
        assert restored == original

    def test_camel_case_keys(self):
        data = build_state().to_dict()
        assert data["version"] == 1
        assert data["workBranch"] == "swarm/issue-42-add-health-endpoint"
        assert data["pendingEMs"][0]["focusArea"] == "Docs"
        worker = data["ems"][0]["workers"][0]
        assert worker["prNumber"] == 101
        assert worker["addressedReviewCommentIds"] == [7, 9]
        assert data["finalPr"]["number"] == 200
        assert data["errorHistory"][0]["phase"] == "worker_review"

    def test_optional_fields_omitted(self):
        worker = WorkerState(id=1, task="t", branch="b").to_dict()
        assert "prNumber" not in worker
        assert "error" not in worker

    def test_unknown_version_rejected(self):
        data = build_state().to_dict()
        data["version"] = 2
        with pytest.raises(VersionMismatch):
            parse_state(json.dumps(data))

    def test_missing_version_rejected(self):
        data = build_state().to_dict()
        del data["version"]
        with pytest.raises(VersionMismatch):
            parse_state(json.dumps(data))

    def test_non_object_rejected(self):
        with pytest.raises(ValueError):
            parse_state("[]")

    def test_missing_required_field(self):
        data = build_state().to_dict()
        del data["workBranch"]
        with pytest.raises(KeyError):
            parse_state(json.dumps(data))


class TestOrchestratorState:
    def test_error_history_is_append_only_and_truncated(self):
        state = build_state()
        first = state.error_history[0]
        state.add_error("x" * 2000)
        assert state.error_history[0] is first
        assert len(state.error_history[-1].message) == MAX_ERROR_MESSAGE_LENGTH

    def test_add_error_defaults_to_current_phase(self):
        state = build_state()
        state.phase = Phase.EM_REVIEW
        assert state.add_error("late").phase == Phase.EM_REVIEW
        assert state.add_error("early", phase=Phase.ANALYZING).phase == Phase.ANALYZING

    def test_find_by_pr(self):
        state = build_state()
        em, worker = state.find_by_pr(101)
        assert em.id == 1 and worker.id == 1
        state.ems[0].pr_number = 150
        em, worker = state.find_by_pr(150)
        assert em.id == 1 and worker is None
        assert state.find_by_pr(999) == (None, None)

    def test_find_by_branch(self):
        state = build_state()
        assert state.find_by_branch("swarm/issue-42-em-1-w-1")[1].id == 1
        em, worker = state.find_by_branch("swarm/issue-42-em-1")
        assert em.id == 1 and worker is None

    def test_find_worker(self):
        state = build_state()
        assert state.find_worker(1, 1).task == "Add /health handler"
        assert state.find_worker(1, 5) is None
        assert state.find_worker(9, 1) is None

    def test_setup_em(self):
        assert EMState(id=0).is_setup
        assert not EMState(id=1).is_setup

    def test_mark_addressed_is_idempotent(self):
        worker = WorkerState()
        worker.mark_addressed(5)
        worker.mark_addressed(5)
        worker.mark_addressed(6, issue_comment=True)
        assert worker.addressed_review_comment_ids == [5]
        assert worker.is_addressed(6, issue_comment=True)
        assert not worker.is_addressed(6)

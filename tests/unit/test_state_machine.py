"""
Unit tests for phase transitions, node status monotonicity and joins.
"""

import pytest

from issue_swarm.models import (
    EMState,
    EMStatus,
    IssueInfo,
    OrchestratorState,
    Phase,
    WorkerState,
    WorkerStatus,
)
from issue_swarm.state_machine import (
    PHASE_ORDER,
    JoinResult,
    advance_status,
    can_transition,
    em_join,
    is_terminal,
    mark_failed,
    mark_skipped,
    reopen_em,
    reset_for_retry,
    setup_gate_open,
    transition,
    worker_join,
)


def make_state(phase=Phase.INITIALIZED, ems=None, pending=None):
    return OrchestratorState(
        issue=IssueInfo(number=1, title="t"),
        repo="acme/widgets",
        work_branch="swarm/issue-1-t",
        base_branch="main",
        phase=phase,
        ems=ems or [],
        pending_ems=pending or [],
    )


def em_with(*statuses, em_id=1):
    return EMState(
        id=em_id,
        status=EMStatus.WORKERS_RUNNING,
        workers=[WorkerState(id=i, status=s) for i, s in enumerate(statuses, start=1)],
    )


class TestNodeStatus:
    """Terminal statuses never change outside retry."""

    @pytest.mark.parametrize("terminal", [WorkerStatus.MERGED, WorkerStatus.SKIPPED, WorkerStatus.FAILED])
    @pytest.mark.parametrize("target", list(WorkerStatus))
    def test_terminal_worker_is_frozen(self, terminal, target):
        worker = WorkerState(status=terminal)
        assert not advance_status(worker, target)
        assert not mark_failed(worker, "x")
        assert not mark_skipped(worker, "x")
        assert worker.status == terminal

    @pytest.mark.parametrize("terminal", [EMStatus.MERGED, EMStatus.SKIPPED, EMStatus.FAILED])
    def test_terminal_em_is_frozen(self, terminal):
        em = EMState(status=terminal)
        for target in EMStatus:
            advance_status(em, target)
        assert em.status == terminal

    def test_advance_records_completion(self):
        worker = WorkerState()
        assert advance_status(worker, WorkerStatus.IN_PROGRESS)
        assert worker.completed_at is None
        assert advance_status(worker, WorkerStatus.MERGED)
        assert worker.completed_at is not None
        assert is_terminal(worker)

    def test_same_status_is_no_change(self):
        assert not advance_status(WorkerState(), WorkerStatus.PENDING)

    def test_mark_failed_records_reason(self):
        worker = WorkerState(status=WorkerStatus.IN_PROGRESS)
        assert mark_failed(worker, "executor crashed")
        assert worker.status == WorkerStatus.FAILED
        assert worker.error == "executor crashed"

    def test_reset_for_retry(self):
        worker = WorkerState(status=WorkerStatus.FAILED, error="x", pr_number=5, started_at="t", completed_at="t")
        assert reset_for_retry(worker)
        assert worker.status == WorkerStatus.PENDING
        assert worker.error is None and worker.pr_number is None and worker.completed_at is None

    def test_reset_em_drops_workers(self):
        em = EMState(status=EMStatus.FAILED, workers=[WorkerState(id=1)])
        assert reset_for_retry(em)
        assert em.status == EMStatus.PENDING
        assert em.workers == []

    def test_reset_ignores_non_failed(self):
        assert not reset_for_retry(WorkerState(status=WorkerStatus.MERGED))
        assert not reset_for_retry(EMState(status=EMStatus.PR_CREATED))

    def test_reopen_em(self):
        em = EMState(status=EMStatus.FAILED, error="none merged", completed_at="t")
        assert reopen_em(em)
        assert em.status == EMStatus.WORKERS_RUNNING
        assert em.error is None
        assert not reopen_em(EMState(status=EMStatus.MERGED))


class TestJoins:
    def test_worker_join_waits_for_all(self):
        assert worker_join(em_with(WorkerStatus.MERGED, WorkerStatus.PR_CREATED)) == JoinResult.WAITING

    def test_worker_join_ready_with_one_merged(self):
        em = em_with(WorkerStatus.MERGED, WorkerStatus.FAILED, WorkerStatus.SKIPPED)
        assert worker_join(em) == JoinResult.READY

    def test_worker_join_all_skipped(self):
        assert worker_join(em_with(WorkerStatus.SKIPPED, WorkerStatus.SKIPPED)) == JoinResult.ALL_SKIPPED

    def test_worker_join_none_merged(self):
        assert worker_join(em_with(WorkerStatus.FAILED, WorkerStatus.SKIPPED)) == JoinResult.NONE_MERGED

    def test_worker_join_empty(self):
        assert worker_join(EMState()) == JoinResult.EMPTY

    def test_em_join(self):
        state = make_state(ems=[
            EMState(id=1, status=EMStatus.MERGED),
            EMState(id=2, status=EMStatus.FAILED),
        ])
        assert em_join(state) == JoinResult.READY
        state.ems[0].status = EMStatus.PR_CREATED
        assert em_join(state) == JoinResult.WAITING

    def test_em_join_waits_for_queued(self):
        state = make_state(
            ems=[EMState(id=0, status=EMStatus.MERGED)],
            pending=[EMState(id=1)],
        )
        assert em_join(state) == JoinResult.WAITING

    def test_setup_gate(self):
        state = make_state(ems=[EMState(id=0, status=EMStatus.WORKERS_RUNNING)], pending=[EMState(id=1)])
        assert not setup_gate_open(state)
        state.ems[0].status = EMStatus.MERGED
        assert setup_gate_open(state)
        state.pending_ems = []
        assert not setup_gate_open(state)


class TestPhaseTransitions:
    def test_forward_only(self):
        state = make_state(Phase.WORKER_REVIEW)
        assert not transition(state, Phase.WORKER_EXECUTION)
        assert state.phase == Phase.WORKER_REVIEW
        assert transition(state, Phase.EM_MERGING)

    def test_any_forward_skip_allowed(self):
        state = make_state(Phase.ANALYZING)
        assert transition(state, Phase.FINAL_REVIEW)

    def test_failed_reachable_and_leavable(self):
        for phase in PHASE_ORDER[:-1]:
            state = make_state(phase)
            assert transition(state, Phase.FAILED)
            assert transition(state, Phase.WORKER_EXECUTION)

    def test_complete_is_final(self):
        state = make_state(Phase.COMPLETE)
        for phase in Phase:
            assert not can_transition(state, phase)

    def test_setup_hold(self):
        state = make_state(Phase.PROJECT_SETUP, ems=[EMState(id=0)], pending=[EMState(id=1)])
        assert not can_transition(state, Phase.WORKER_EXECUTION)
        assert not can_transition(state, Phase.EM_REVIEW)
        assert can_transition(state, Phase.EM_ASSIGNMENT)
        assert can_transition(state, Phase.FAILED)

    def test_same_phase_is_no_change(self):
        assert not transition(make_state(Phase.ANALYZING), Phase.ANALYZING)

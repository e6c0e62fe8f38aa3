"""
Unit tests for failure recovery decisions.

choose_recovery_action is a pure function of the state snapshot; every
state maps to exactly one action.
"""

import copy

import pytest

from issue_swarm.models import (
    EMState,
    EMStatus,
    FinalPR,
    IssueInfo,
    OrchestratorState,
    Phase,
    WorkerState,
    WorkerStatus,
)
from issue_swarm.recovery import RecoveryAction, RecoveryManager, choose_recovery_action


def make_state(ems=None, pending=None, final_pr=None, phase=Phase.FAILED):
    return OrchestratorState(
        issue=IssueInfo(number=42, title="t"),
        repo="acme/widgets",
        work_branch="swarm/issue-42-t",
        base_branch="main",
        phase=phase,
        ems=ems or [],
        pending_ems=pending or [],
        final_pr=final_pr,
    )


def em(em_id, status, *worker_statuses, pr_number=None):
    return EMState(
        id=em_id,
        status=status,
        pr_number=pr_number,
        workers=[WorkerState(id=i, status=s) for i, s in enumerate(worker_statuses, start=1)],
    )


class TestChooseRecoveryAction:
    def test_running_workers_resume_execution(self):
        state = make_state([
            em(1, EMStatus.MERGED, WorkerStatus.MERGED, pr_number=150),
            em(2, EMStatus.WORKERS_RUNNING, WorkerStatus.MERGED, WorkerStatus.PENDING),
        ])
        decision = choose_recovery_action(state)
        assert decision.action == RecoveryAction.RESUME_WORKER_EXECUTION
        assert "EM 2" in decision.reason

    def test_unstarted_em_resumes_execution(self):
        state = make_state([em(1, EMStatus.PENDING)])
        assert choose_recovery_action(state).action == RecoveryAction.RESUME_WORKER_EXECUTION

    def test_queued_ems_resume_execution(self):
        state = make_state([em(0, EMStatus.MERGED, WorkerStatus.MERGED)], pending=[EMState(id=1)])
        assert choose_recovery_action(state).action == RecoveryAction.RESUME_WORKER_EXECUTION

    def test_open_em_pr_resumes_merging(self):
        state = make_state([
            em(1, EMStatus.PR_CREATED, WorkerStatus.MERGED, pr_number=150),
            em(2, EMStatus.MERGED, WorkerStatus.MERGED, pr_number=151),
        ])
        assert choose_recovery_action(state).action == RecoveryAction.RESUME_EM_MERGING

    def test_all_ems_terminal_creates_final_pr(self):
        state = make_state([
            em(1, EMStatus.MERGED, WorkerStatus.MERGED, pr_number=150),
            em(2, EMStatus.FAILED, WorkerStatus.FAILED),
        ])
        assert choose_recovery_action(state).action == RecoveryAction.CREATE_FINAL_PR

    def test_final_pr_resumes_review(self):
        state = make_state(
            [em(1, EMStatus.MERGED, WorkerStatus.MERGED, pr_number=150)],
            final_pr=FinalPR(number=160, url="u"),
        )
        assert choose_recovery_action(state).action == RecoveryAction.RESUME_FINAL_REVIEW

    def test_empty_tree_needs_manual_intervention(self):
        decision = choose_recovery_action(make_state())
        assert decision.action == RecoveryAction.MANUAL_INTERVENTION
        assert not decision.actionable
        assert decision.resume_phase is None

    def test_deterministic_and_pure(self):
        state = make_state([em(1, EMStatus.WORKERS_RUNNING, WorkerStatus.IN_PROGRESS)])
        snapshot = copy.deepcopy(state)
        first = choose_recovery_action(state)
        assert choose_recovery_action(state) == first
        assert state == snapshot


class TestRecoveryManager:
    @pytest.mark.parametrize("state,phase", [
        (make_state([em(1, EMStatus.WORKERS_RUNNING, WorkerStatus.PENDING)]), Phase.WORKER_EXECUTION),
        (make_state([em(1, EMStatus.PR_CREATED, WorkerStatus.MERGED, pr_number=150)]), Phase.EM_MERGING),
        (make_state([em(1, EMStatus.MERGED, WorkerStatus.MERGED, pr_number=150)]), Phase.FINAL_MERGE),
        (make_state([em(1, EMStatus.MERGED)], final_pr=FinalPR(number=160)), Phase.FINAL_REVIEW),
    ])
    def test_apply_moves_failed_state(self, state, phase):
        RecoveryManager().apply(state)
        assert state.phase == phase

    def test_apply_holds_setup_phase_with_queued_ems(self):
        state = make_state([em(0, EMStatus.WORKERS_RUNNING, WorkerStatus.PENDING)], pending=[EMState(id=1)])
        RecoveryManager().apply(state)
        assert state.phase == Phase.PROJECT_SETUP

    def test_apply_leaves_manual_states_failed(self):
        state = make_state()
        RecoveryManager().apply(state)
        assert state.phase == Phase.FAILED

    def test_apply_ignores_non_failed_state(self):
        state = make_state([em(1, EMStatus.WORKERS_RUNNING, WorkerStatus.PENDING)], phase=Phase.EM_MERGING)
        RecoveryManager().apply(state)
        assert state.phase == Phase.EM_MERGING

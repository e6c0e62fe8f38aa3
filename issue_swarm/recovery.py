"""
Failure recovery for Issue Swarm.

Chooses how a failed orchestration resumes from the state snapshot alone.
The decision is total and deterministic: every state maps to exactly one
RecoveryAction.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from issue_swarm.models import EMStatus, Phase
from issue_swarm.state_machine import is_terminal, transition

if TYPE_CHECKING:
    from issue_swarm.logger import SwarmLogger
    from issue_swarm.models import OrchestratorState

OPEN_EM_PR_STATUSES = frozenset({
    EMStatus.PR_CREATED,
    EMStatus.APPROVED,
    EMStatus.CHANGES_REQUESTED,
})


class RecoveryAction(Enum):
    RESUME_WORKER_EXECUTION = "resume_worker_execution"
    RESUME_EM_MERGING = "resume_em_merging"
    CREATE_FINAL_PR = "create_final_pr"
    RESUME_FINAL_REVIEW = "resume_final_review"
    MANUAL_INTERVENTION = "manual_intervention"


# Phase the orchestration re-enters for each action; None stays failed
RESUME_PHASES: dict[RecoveryAction, Optional[Phase]] = {
    RecoveryAction.RESUME_WORKER_EXECUTION: Phase.WORKER_EXECUTION,
    RecoveryAction.RESUME_EM_MERGING: Phase.EM_MERGING,
    RecoveryAction.CREATE_FINAL_PR: Phase.FINAL_MERGE,
    RecoveryAction.RESUME_FINAL_REVIEW: Phase.FINAL_REVIEW,
    RecoveryAction.MANUAL_INTERVENTION: None,
}


@dataclass
class RecoveryDecision:
    action: RecoveryAction
    reason: str

    @property
    def resume_phase(self) -> Optional[Phase]:
        return RESUME_PHASES[self.action]

    @property
    def actionable(self) -> bool:
        return self.action != RecoveryAction.MANUAL_INTERVENTION


def _has_unfinished_work(state: OrchestratorState) -> Optional[str]:
    if state.pending_ems:
        return f"{len(state.pending_ems)} EM(s) queued behind project setup"
    for em in state.ems:
        if em.status == EMStatus.PENDING:
            return f"EM {em.id} has not started"
        if em.status == EMStatus.WORKERS_RUNNING and em.pr_number is None:
            unfinished = [w.id for w in em.workers if not is_terminal(w)]
            if unfinished or not em.workers:
                return f"EM {em.id} has unfinished workers {unfinished}"
            return f"EM {em.id} is waiting for its PR"
        for worker in em.workers:
            if not is_terminal(worker):
                return f"EM {em.id} worker {worker.id} is {worker.status.value}"
    return None


def choose_recovery_action(state: OrchestratorState) -> RecoveryDecision:
    """
    Pick the resumption action for a state.

    Rules, first match wins:
    1. Any EM with pending or running workers, or queued EMs: resume worker execution.
    2. Any EM with an open, unmerged PR: resume EM merging.
    3. Every EM terminal and no final PR: create the final PR.
    4. A final PR exists: resume final review.
    5. Otherwise: manual intervention.
    """
    reason = _has_unfinished_work(state)
    if reason:
        return RecoveryDecision(RecoveryAction.RESUME_WORKER_EXECUTION, reason)

    open_prs = [em.id for em in state.ems if em.status in OPEN_EM_PR_STATUSES and em.pr_number]
    if open_prs:
        return RecoveryDecision(RecoveryAction.RESUME_EM_MERGING, f"EM PR(s) open for EM {open_prs}")

    if state.ems and all(is_terminal(em) for em in state.ems) and state.final_pr is None:
        return RecoveryDecision(RecoveryAction.CREATE_FINAL_PR, "all EMs finished without a final PR")

    if state.final_pr is not None:
        return RecoveryDecision(RecoveryAction.RESUME_FINAL_REVIEW, f"final PR #{state.final_pr.number} exists")

    return RecoveryDecision(RecoveryAction.MANUAL_INTERVENTION, "no resumable work found")


class RecoveryManager:
    """Applies recovery decisions to failed states."""

    def __init__(self, logger: Optional[SwarmLogger] = None) -> None:
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "recovery"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def decide(self, state: OrchestratorState) -> RecoveryDecision:
        return choose_recovery_action(state)

    def apply(self, state: OrchestratorState) -> RecoveryDecision:
        """
        Decide and move a failed state to the resume phase.

        States that are not failed are left untouched. Manual intervention
        keeps the phase at failed.
        """
        decision = self.decide(state)
        self._log("recovery_decision", {
            "action": decision.action.value,
            "reason": decision.reason,
            "phase": state.phase.value,
        }, level="info" if decision.actionable else "warn")

        if state.phase == Phase.FAILED and decision.resume_phase is not None:
            target = decision.resume_phase
            if state.pending_ems:
                target = Phase.PROJECT_SETUP
            transition(state, target)
        return decision

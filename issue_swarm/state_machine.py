"""
Phase and node-status transitions for the issue task tree.

All functions here are pure over OrchestratorState: they mutate only the
objects passed in and never touch git, the host or the executor. Joins
are recomputed from the full tree on every call.
"""

from __future__ import annotations

from enum import Enum
from typing import Union

from issue_swarm.models import (
    EMState,
    EMStatus,
    OrchestratorState,
    Phase,
    WorkerState,
    WorkerStatus,
    utc_now,
)

PHASE_ORDER: list[Phase] = [
    Phase.INITIALIZED,
    Phase.ANALYZING,
    Phase.PROJECT_SETUP,
    Phase.EM_ASSIGNMENT,
    Phase.WORKER_EXECUTION,
    Phase.WORKER_REVIEW,
    Phase.EM_MERGING,
    Phase.EM_REVIEW,
    Phase.FINAL_MERGE,
    Phase.FINAL_REVIEW,
    Phase.COMPLETE,
]

TERMINAL_WORKER_STATUSES = frozenset({
    WorkerStatus.MERGED,
    WorkerStatus.SKIPPED,
    WorkerStatus.FAILED,
})

TERMINAL_EM_STATUSES = frozenset({
    EMStatus.MERGED,
    EMStatus.SKIPPED,
    EMStatus.FAILED,
})

Node = Union[EMState, WorkerState]


class JoinResult(Enum):
    """Outcome of a join over a node's children."""
    WAITING = "waiting"          # some child is not terminal yet
    READY = "ready"              # all terminal, at least one merged
    ALL_SKIPPED = "all_skipped"  # all terminal, every child skipped
    NONE_MERGED = "none_merged"  # all terminal, none merged, some failed
    EMPTY = "empty"              # no children at all


def is_terminal(node: Node) -> bool:
    if isinstance(node, WorkerState):
        return node.status in TERMINAL_WORKER_STATUSES
    return node.status in TERMINAL_EM_STATUSES


def advance_status(node: Node, status: Union[WorkerStatus, EMStatus]) -> bool:
    """
    Move a node to a new status.

    Terminal nodes keep their status; only reset_for_retry leaves a
    terminal status.

    Returns:
        True if the status changed.
    """
    if is_terminal(node) or node.status == status:
        return False
    node.status = status
    if status in TERMINAL_WORKER_STATUSES or status in TERMINAL_EM_STATUSES:
        node.completed_at = node.completed_at or utc_now()
    return True


def mark_failed(node: Node, reason: str) -> bool:
    """Fail a node, recording the reason; no-op on terminal nodes."""
    failed = WorkerStatus.FAILED if isinstance(node, WorkerState) else EMStatus.FAILED
    changed = advance_status(node, failed)
    if changed:
        node.error = reason
    return changed


def mark_skipped(node: Node, reason: str) -> bool:
    skipped = WorkerStatus.SKIPPED if isinstance(node, WorkerState) else EMStatus.SKIPPED
    changed = advance_status(node, skipped)
    if changed:
        node.error = reason
    return changed


def reset_for_retry(node: Node) -> bool:
    """
    Reset a failed or skipped node to pending.

    Clears the error, PR and timing fields so the node is executed afresh.
    EMs also drop their workers so the breakdown runs again.

    Returns:
        True if the node was reset.
    """
    if isinstance(node, WorkerState):
        if node.status not in (WorkerStatus.FAILED, WorkerStatus.SKIPPED):
            return False
        node.status = WorkerStatus.PENDING
    else:
        if node.status not in (EMStatus.FAILED, EMStatus.SKIPPED):
            return False
        node.status = EMStatus.PENDING
        node.workers = []
    node.error = None
    node.pr_number = None
    node.pr_url = None
    node.started_at = None
    node.completed_at = None
    return True


def _join(children: list, merged_status, skipped_status) -> JoinResult:
    if not children:
        return JoinResult.EMPTY
    if not all(is_terminal(c) for c in children):
        return JoinResult.WAITING
    if any(c.status == merged_status for c in children):
        return JoinResult.READY
    if all(c.status == skipped_status for c in children):
        return JoinResult.ALL_SKIPPED
    return JoinResult.NONE_MERGED


def worker_join(em: EMState) -> JoinResult:
    """Join over an EM's workers, gating the EM PR."""
    return _join(em.workers, WorkerStatus.MERGED, WorkerStatus.SKIPPED)


def em_join(state: OrchestratorState) -> JoinResult:
    """Join over all EMs, gating the final PR. Queued EMs count as unfinished."""
    if state.pending_ems:
        return JoinResult.WAITING
    return _join(state.ems, EMStatus.MERGED, EMStatus.SKIPPED)


def setup_gate_open(state: OrchestratorState) -> bool:
    """True when queued EMs may be promoted: the setup EM has finished."""
    if not state.pending_ems:
        return False
    setup = state.find_em(0)
    return setup is None or is_terminal(setup)


def can_transition(state: OrchestratorState, target: Phase) -> bool:
    """
    Check whether the phase may move to target.

    Phases only move forward; FAILED is reachable from any phase and any
    phase is reachable from FAILED. COMPLETE is final. While EMs are queued
    behind the setup EM the phase holds at PROJECT_SETUP.
    """
    current = state.phase
    if current == target or current == Phase.COMPLETE:
        return False
    if target == Phase.FAILED or current == Phase.FAILED:
        return True
    if current == Phase.PROJECT_SETUP and state.pending_ems and target != Phase.EM_ASSIGNMENT:
        return False
    return PHASE_ORDER.index(target) > PHASE_ORDER.index(current)


def transition(state: OrchestratorState, target: Phase) -> bool:
    """Apply a phase transition if allowed. Returns True if the phase changed."""
    if not can_transition(state, target):
        return False
    state.phase = target
    return True


def reopen_em(em: EMState) -> bool:
    """
    Return a failed or skipped EM to workers_running after one of its
    workers was reset, so its join is evaluated again.
    """
    if em.status not in (EMStatus.FAILED, EMStatus.SKIPPED):
        return False
    em.status = EMStatus.WORKERS_RUNNING
    em.error = None
    em.completed_at = None
    return True

"""
Label vocabulary for issues and orchestrator pull requests.

Labels are a rendering of orchestration state: phase labels on the issue,
type and status labels on each PR. Setting a label of one family removes
the others of that family.
"""

from __future__ import annotations

from issue_swarm.models import Phase

BASE_LABEL = "swarm-managed"
EM_LABEL_PREFIX = "swarm-em-"


class StatusLabel:
    """Per-PR status labels."""
    WORKING = "swarm-status-working"
    AWAITING_REVIEW = "swarm-status-awaiting-review"
    CHANGES_REQUESTED = "swarm-status-changes-requested"
    ADDRESSING_FEEDBACK = "swarm-status-addressing-feedback"
    APPROVED = "swarm-status-approved"
    READY_TO_MERGE = "swarm-status-ready-to-merge"
    MERGED = "swarm-status-merged"
    CONFLICTS = "swarm-status-conflicts"
    FAILED = "swarm-status-failed"
    SKIPPED = "swarm-status-skipped"

    ALL = (
        WORKING,
        AWAITING_REVIEW,
        CHANGES_REQUESTED,
        ADDRESSING_FEEDBACK,
        APPROVED,
        READY_TO_MERGE,
        MERGED,
        CONFLICTS,
        FAILED,
        SKIPPED,
    )


class TypeLabel:
    """PR type labels."""
    WORKER = "swarm-type-worker"
    EM = "swarm-type-em"
    SETUP = "swarm-type-setup"
    FINAL = "swarm-type-final"

    ALL = (WORKER, EM, SETUP, FINAL)


class PhaseLabel:
    """Issue phase labels."""
    ANALYZING = "swarm-phase-analyzing"
    PROJECT_SETUP = "swarm-phase-project-setup"
    WORKERS_RUNNING = "swarm-phase-workers-running"
    WORKERS_REVIEW = "swarm-phase-workers-review"
    EMS_MERGING = "swarm-phase-ems-merging"
    FINAL_REVIEW = "swarm-phase-final-review"
    COMPLETE = "swarm-phase-complete"
    FAILED = "swarm-phase-failed"

    ALL = (
        ANALYZING,
        PROJECT_SETUP,
        WORKERS_RUNNING,
        WORKERS_REVIEW,
        EMS_MERGING,
        FINAL_REVIEW,
        COMPLETE,
        FAILED,
    )


PHASE_LABELS: dict[Phase, str] = {
    Phase.INITIALIZED: PhaseLabel.ANALYZING,
    Phase.ANALYZING: PhaseLabel.ANALYZING,
    Phase.PROJECT_SETUP: PhaseLabel.PROJECT_SETUP,
    Phase.EM_ASSIGNMENT: PhaseLabel.WORKERS_RUNNING,
    Phase.WORKER_EXECUTION: PhaseLabel.WORKERS_RUNNING,
    Phase.WORKER_REVIEW: PhaseLabel.WORKERS_REVIEW,
    Phase.EM_MERGING: PhaseLabel.EMS_MERGING,
    Phase.EM_REVIEW: PhaseLabel.EMS_MERGING,
    Phase.FINAL_MERGE: PhaseLabel.FINAL_REVIEW,
    Phase.FINAL_REVIEW: PhaseLabel.FINAL_REVIEW,
    Phase.COMPLETE: PhaseLabel.COMPLETE,
    Phase.FAILED: PhaseLabel.FAILED,
}

# name -> (color, description)
LABEL_DEFINITIONS: dict[str, tuple[str, str]] = {
    BASE_LABEL: ("5319E7", "Managed by the issue swarm orchestrator"),
    StatusLabel.WORKING: ("FBCA04", "Work in progress"),
    StatusLabel.AWAITING_REVIEW: ("0E8A16", "Waiting for review"),
    StatusLabel.CHANGES_REQUESTED: ("D93F0B", "Reviewer requested changes"),
    StatusLabel.ADDRESSING_FEEDBACK: ("FBCA04", "Addressing review feedback"),
    StatusLabel.APPROVED: ("0E8A16", "Approved"),
    StatusLabel.READY_TO_MERGE: ("1D76DB", "Ready to merge"),
    StatusLabel.MERGED: ("6F42C1", "Merged"),
    StatusLabel.CONFLICTS: ("B60205", "Has merge conflicts"),
    StatusLabel.FAILED: ("B60205", "Failed"),
    StatusLabel.SKIPPED: ("C5DEF5", "Skipped: no changes"),
    TypeLabel.WORKER: ("BFD4F2", "Worker PR"),
    TypeLabel.EM: ("D4C5F9", "EM PR"),
    TypeLabel.SETUP: ("F9D0C4", "Project setup PR"),
    TypeLabel.FINAL: ("0052CC", "Final PR"),
    PhaseLabel.ANALYZING: ("EDEDED", "Orchestrator analyzing issue"),
    PhaseLabel.PROJECT_SETUP: ("EDEDED", "Orchestrator running project setup"),
    PhaseLabel.WORKERS_RUNNING: ("FBCA04", "Orchestrator workers running"),
    PhaseLabel.WORKERS_REVIEW: ("FBCA04", "Orchestrator worker PRs in review"),
    PhaseLabel.EMS_MERGING: ("1D76DB", "Orchestrator merging EM PRs"),
    PhaseLabel.FINAL_REVIEW: ("1D76DB", "Orchestrator final PR in review"),
    PhaseLabel.COMPLETE: ("0E8A16", "Orchestration complete"),
    PhaseLabel.FAILED: ("B60205", "Orchestration failed"),
}


def phase_label(phase: Phase) -> str:
    return PHASE_LABELS[phase]


def em_label(em_id: int) -> str:
    return f"{EM_LABEL_PREFIX}{em_id}"


def worker_pr_labels(em_id: int, pr_label: str | None = None) -> list[str]:
    labels = [BASE_LABEL, TypeLabel.WORKER, em_label(em_id)]
    if pr_label:
        labels.append(pr_label)
    return labels


def em_pr_labels(em_id: int, pr_label: str | None = None) -> list[str]:
    type_label = TypeLabel.SETUP if em_id == 0 else TypeLabel.EM
    labels = [BASE_LABEL, type_label, em_label(em_id)]
    if pr_label:
        labels.append(pr_label)
    return labels


def final_pr_labels(pr_label: str | None = None) -> list[str]:
    labels = [BASE_LABEL, TypeLabel.FINAL]
    if pr_label:
        labels.append(pr_label)
    return labels

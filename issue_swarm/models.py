"""
Core data models for Issue Swarm.

This module defines the persisted task tree:
- Phase, EMStatus and WorkerStatus enums
- WorkerState, EMState, FinalPR, ErrorEntry and OrchestratorState dataclasses
- Versioned JSON serialization of the state file
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional, Union

from issue_swarm.errors import VersionMismatch

STATE_VERSION = 1
STATE_FILE_PATH = ".orchestrator/state.json"
MAX_ERROR_MESSAGE_LENGTH = 500


def utc_now() -> str:
    """Current time as an ISO 8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class Phase(Enum):
    """
    Phases of an issue orchestration.

    Phases advance in declaration order; FAILED is reachable from any
    phase and is left again through recovery or retry.
    """
    INITIALIZED = "initialized"
    ANALYZING = "analyzing"
    PROJECT_SETUP = "project_setup"
    EM_ASSIGNMENT = "em_assignment"
    WORKER_EXECUTION = "worker_execution"
    WORKER_REVIEW = "worker_review"
    EM_MERGING = "em_merging"
    EM_REVIEW = "em_review"
    FINAL_MERGE = "final_merge"
    FINAL_REVIEW = "final_review"
    COMPLETE = "complete"
    FAILED = "failed"


class WorkerStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PR_CREATED = "pr_created"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    MERGED = "merged"
    SKIPPED = "skipped"
    FAILED = "failed"


class EMStatus(Enum):
    PENDING = "pending"
    WORKERS_RUNNING = "workers_running"
    PR_CREATED = "pr_created"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    MERGED = "merged"
    SKIPPED = "skipped"
    FAILED = "failed"


NodeStatus = Union[WorkerStatus, EMStatus]


def _optional(data: dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        data[key] = value


@dataclass
class ReviewTracking:
    """
    Review bookkeeping shared by workers, EMs and the final PR.

    The ID lists are the authoritative dedupe layer for review feedback.
    """
    reviews_addressed: int = 0
    addressed_review_comment_ids: list[int] = field(default_factory=list)
    addressed_issue_comment_ids: list[int] = field(default_factory=list)

    def is_addressed(self, comment_id: int, *, issue_comment: bool = False) -> bool:
        ids = self.addressed_issue_comment_ids if issue_comment else self.addressed_review_comment_ids
        return comment_id in ids

    def mark_addressed(self, comment_id: int, *, issue_comment: bool = False) -> None:
        ids = self.addressed_issue_comment_ids if issue_comment else self.addressed_review_comment_ids
        if comment_id not in ids:
            ids.append(comment_id)

    def _tracking_dict(self) -> dict[str, Any]:
        return {
            "reviewsAddressed": self.reviews_addressed,
            "addressedReviewCommentIds": list(self.addressed_review_comment_ids),
            "addressedIssueCommentIds": list(self.addressed_issue_comment_ids),
        }


@dataclass
class WorkerState(ReviewTracking):
    """One file-scoped unit of work under an EM."""
    id: int = 0
    task: str = ""
    files: list[str] = field(default_factory=list)
    branch: str = ""
    status: WorkerStatus = WorkerStatus.PENDING
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "task": self.task,
            "files": list(self.files),
            "branch": self.branch,
            "status": self.status.value,
        }
        _optional(data, "prNumber", self.pr_number)
        _optional(data, "prUrl", self.pr_url)
        data.update(self._tracking_dict())
        _optional(data, "error", self.error)
        _optional(data, "startedAt", self.started_at)
        _optional(data, "completedAt", self.completed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerState:
        return cls(
            id=int(data["id"]),
            task=data["task"],
            files=list(data.get("files", [])),
            branch=data["branch"],
            status=WorkerStatus(data["status"]),
            pr_number=data.get("prNumber"),
            pr_url=data.get("prUrl"),
            reviews_addressed=data.get("reviewsAddressed", 0),
            addressed_review_comment_ids=list(data.get("addressedReviewCommentIds", [])),
            addressed_issue_comment_ids=list(data.get("addressedIssueCommentIds", [])),
            error=data.get("error"),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


@dataclass
class EMState(ReviewTracking):
    """An area owner: one branch, a set of workers, one PR into the work branch."""
    id: int = 0
    task: str = ""
    focus_area: str = ""
    branch: str = ""
    status: EMStatus = EMStatus.PENDING
    workers: list[WorkerState] = field(default_factory=list)
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_setup(self) -> bool:
        return self.id == 0

    def find_worker(self, worker_id: int) -> Optional[WorkerState]:
        for worker in self.workers:
            if worker.id == worker_id:
                return worker
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "task": self.task,
            "focusArea": self.focus_area,
            "branch": self.branch,
            "status": self.status.value,
            "workers": [w.to_dict() for w in self.workers],
        }
        _optional(data, "prNumber", self.pr_number)
        _optional(data, "prUrl", self.pr_url)
        data.update(self._tracking_dict())
        _optional(data, "error", self.error)
        _optional(data, "startedAt", self.started_at)
        _optional(data, "completedAt", self.completed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EMState:
        return cls(
            id=int(data["id"]),
            task=data["task"],
            focus_area=data.get("focusArea", ""),
            branch=data["branch"],
            status=EMStatus(data["status"]),
            workers=[WorkerState.from_dict(w) for w in data.get("workers", [])],
            pr_number=data.get("prNumber"),
            pr_url=data.get("prUrl"),
            reviews_addressed=data.get("reviewsAddressed", 0),
            addressed_review_comment_ids=list(data.get("addressedReviewCommentIds", [])),
            addressed_issue_comment_ids=list(data.get("addressedIssueCommentIds", [])),
            error=data.get("error"),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


@dataclass
class FinalPR(ReviewTracking):
    """The work branch → base branch pull request."""
    number: int = 0
    url: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"number": self.number, "url": self.url}
        data.update(self._tracking_dict())
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FinalPR:
        return cls(
            number=int(data["number"]),
            url=data.get("url", ""),
            reviews_addressed=data.get("reviewsAddressed", 0),
            addressed_review_comment_ids=list(data.get("addressedReviewCommentIds", [])),
            addressed_issue_comment_ids=list(data.get("addressedIssueCommentIds", [])),
        )


@dataclass
class ErrorEntry:
    """One append-only record in the error history."""
    timestamp: str
    phase: Phase
    message: str
    context: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": self.timestamp,
            "phase": self.phase.value,
            "message": self.message,
        }
        _optional(data, "context", self.context)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorEntry:
        return cls(
            timestamp=data["timestamp"],
            phase=Phase(data["phase"]),
            message=data["message"],
            context=data.get("context"),
        )


@dataclass
class IssueInfo:
    number: int
    title: str
    body: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"number": self.number, "title": self.title, "body": self.body}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssueInfo:
        return cls(number=int(data["number"]), title=data["title"], body=data.get("body") or "")


@dataclass
class RunSettings:
    """Tree sizing captured when the run started."""
    max_ems: int = 3
    max_workers_per_em: int = 3
    review_wait_minutes: int = 5
    pr_label: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "maxEms": self.max_ems,
            "maxWorkersPerEm": self.max_workers_per_em,
            "reviewWaitMinutes": self.review_wait_minutes,
        }
        _optional(data, "prLabel", self.pr_label)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunSettings:
        return cls(
            max_ems=data.get("maxEms", 3),
            max_workers_per_em=data.get("maxWorkersPerEm", 3),
            review_wait_minutes=data.get("reviewWaitMinutes", 5),
            pr_label=data.get("prLabel"),
        )


@dataclass
class OrchestratorState:
    """
    Root of the persisted task tree, one per issue.

    Committed as JSON to the canonical work branch only.
    """
    issue: IssueInfo
    repo: str
    work_branch: str
    base_branch: str
    phase: Phase = Phase.INITIALIZED
    ems: list[EMState] = field(default_factory=list)
    pending_ems: list[EMState] = field(default_factory=list)
    config: RunSettings = field(default_factory=RunSettings)
    analysis_summary: Optional[str] = None
    final_pr: Optional[FinalPR] = None
    error_history: list[ErrorEntry] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    version: int = STATE_VERSION

    def add_error(
        self,
        message: str,
        context: Optional[str] = None,
        phase: Optional[Phase] = None,
    ) -> ErrorEntry:
        """Append an error entry; never rewrites earlier entries."""
        entry = ErrorEntry(
            timestamp=utc_now(),
            phase=phase or self.phase,
            message=message[:MAX_ERROR_MESSAGE_LENGTH],
            context=context,
        )
        self.error_history.append(entry)
        return entry

    def touch(self) -> None:
        self.updated_at = utc_now()

    def find_em(self, em_id: int) -> Optional[EMState]:
        for em in self.ems:
            if em.id == em_id:
                return em
        return None

    def find_worker(self, em_id: int, worker_id: int) -> Optional[WorkerState]:
        em = self.find_em(em_id)
        return em.find_worker(worker_id) if em else None

    def iter_workers(self) -> Iterator[tuple[EMState, WorkerState]]:
        for em in self.ems:
            for worker in em.workers:
                yield em, worker

    def find_by_pr(self, pr_number: int) -> tuple[Optional[EMState], Optional[WorkerState]]:
        """
        Locate the node owning a PR.

        Returns (em, worker) for a worker PR, (em, None) for an EM PR and
        (None, None) when no node owns it.
        """
        for em in self.ems:
            for worker in em.workers:
                if worker.pr_number == pr_number:
                    return em, worker
            if em.pr_number == pr_number:
                return em, None
        return None, None

    def find_by_branch(self, branch: str) -> tuple[Optional[EMState], Optional[WorkerState]]:
        for em in self.ems:
            for worker in em.workers:
                if worker.branch == branch:
                    return em, worker
            if em.branch == branch:
                return em, None
        return None, None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "issue": self.issue.to_dict(),
            "repo": self.repo,
            "phase": self.phase.value,
            "workBranch": self.work_branch,
            "baseBranch": self.base_branch,
            "ems": [em.to_dict() for em in self.ems],
            "pendingEMs": [em.to_dict() for em in self.pending_ems],
            "config": self.config.to_dict(),
        }
        _optional(data, "analysisSummary", self.analysis_summary)
        if self.final_pr is not None:
            data["finalPr"] = self.final_pr.to_dict()
        data["errorHistory"] = [e.to_dict() for e in self.error_history]
        data["createdAt"] = self.created_at
        data["updatedAt"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestratorState:
        """
        Create from dictionary.

        Raises:
            VersionMismatch: If the version is not STATE_VERSION.
            KeyError / ValueError: If required fields are missing or invalid.
        """
        version = data.get("version")
        if version != STATE_VERSION:
            raise VersionMismatch(version, STATE_VERSION)
        final_pr = data.get("finalPr")
        return cls(
            version=version,
            issue=IssueInfo.from_dict(data["issue"]),
            repo=data.get("repo", ""),
            phase=Phase(data["phase"]),
            work_branch=data["workBranch"],
            base_branch=data["baseBranch"],
            ems=[EMState.from_dict(em) for em in data.get("ems", [])],
            pending_ems=[EMState.from_dict(em) for em in data.get("pendingEMs", [])],
            config=RunSettings.from_dict(data.get("config", {})),
            analysis_summary=data.get("analysisSummary"),
            final_pr=FinalPR.from_dict(final_pr) if final_pr else None,
            error_history=[ErrorEntry.from_dict(e) for e in data.get("errorHistory", [])],
            created_at=data["createdAt"],
            updated_at=data["updatedAt"],
        )


def serialize_state(state: OrchestratorState) -> str:
    """Serialize state to the state file format."""
    return json.dumps(state.to_dict(), indent=2) + "\n"


def parse_state(content: str) -> OrchestratorState:
    """
    Parse state file content.

    Raises:
        VersionMismatch: If the stored version is unrecognized.
        ValueError: If the content is not a JSON object or is malformed.
    """
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("State file must contain a JSON object")
    return OrchestratorState.from_dict(data)

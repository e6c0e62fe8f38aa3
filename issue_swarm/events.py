"""
Event types and payloads for the orchestrator.

External events arrive from the host (issue labeled, PR merged, ...);
internal events are dispatched by the orchestrator to itself and carry an
idempotency token.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


class EventType(Enum):
    # External
    ISSUE_LABELED = "issue_labeled"
    ISSUE_CLOSED = "issue_closed"
    PR_MERGED = "pull_request_merged"
    PR_REVIEWED = "pull_request_review"
    MANUAL = "workflow_dispatch"
    SCHEDULE = "schedule"

    # Internal dispatch
    START_EM = "start_em"
    EXECUTE_WORKER = "execute_worker"
    CREATE_EM_PR = "create_em_pr"
    CHECK_COMPLETION = "check_completion"
    RETRY_FAILED = "retry_failed"

    @property
    def is_internal(self) -> bool:
        return self in INTERNAL_EVENT_TYPES


INTERNAL_EVENT_TYPES = frozenset({
    EventType.START_EM,
    EventType.EXECUTE_WORKER,
    EventType.CREATE_EM_PR,
    EventType.CHECK_COMPLETION,
    EventType.RETRY_FAILED,
})


def make_idempotency_token(
    event_type: EventType,
    issue_number: Optional[int],
    em_id: Optional[int] = None,
    worker_id: Optional[int] = None,
    timestamp_ms: Optional[int] = None,
) -> str:
    """Compose "<type>:<issue>:<em|->:<worker|->:<epoch-ms>"."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)

    def part(value: Optional[int]) -> str:
        return "-" if value is None else str(value)

    return f"{event_type.value}:{part(issue_number)}:{part(em_id)}:{part(worker_id)}:{timestamp_ms}"


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


@dataclass
class OrchestratorEvent:
    """One event, external or internal."""
    type: EventType
    issue_number: Optional[int] = None
    pr_number: Optional[int] = None
    branch: Optional[str] = None
    review_state: Optional[str] = None
    review_body: Optional[str] = None
    em_id: Optional[int] = None
    worker_id: Optional[int] = None
    retry_count: int = 0
    idempotency_token: Optional[str] = None

    def __post_init__(self) -> None:
        if self.review_state:
            self.review_state = self.review_state.lower()

    @classmethod
    def internal(
        cls,
        event_type: EventType,
        issue_number: int,
        em_id: Optional[int] = None,
        worker_id: Optional[int] = None,
        retry_count: int = 0,
    ) -> OrchestratorEvent:
        """Build an internal event with a fresh idempotency token."""
        return cls(
            type=event_type,
            issue_number=issue_number,
            em_id=em_id,
            worker_id=worker_id,
            retry_count=retry_count,
            idempotency_token=make_idempotency_token(event_type, issue_number, em_id, worker_id),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        for key, value in (
            ("issueNumber", self.issue_number),
            ("prNumber", self.pr_number),
            ("branch", self.branch),
            ("reviewState", self.review_state),
            ("reviewBody", self.review_body),
            ("emId", self.em_id),
            ("workerId", self.worker_id),
            ("idempotencyToken", self.idempotency_token),
        ):
            if value is not None:
                data[key] = value
        if self.retry_count:
            data["retryCount"] = self.retry_count
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OrchestratorEvent:
        """
        Parse an event payload.

        Raises:
            ValueError: If the type is missing or unknown.
        """
        if not data.get("type"):
            raise ValueError("Event payload is missing 'type'")
        return cls(
            type=EventType(data["type"]),
            issue_number=_int_or_none(data.get("issueNumber")),
            pr_number=_int_or_none(data.get("prNumber")),
            branch=data.get("branch") or None,
            review_state=data.get("reviewState") or None,
            review_body=data.get("reviewBody") or None,
            em_id=_int_or_none(data.get("emId")),
            worker_id=_int_or_none(data.get("workerId")),
            retry_count=_int_or_none(data.get("retryCount")) or 0,
            idempotency_token=data.get("idempotencyToken") or None,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> OrchestratorEvent:
        """Read the payload from EVENT_TYPE, ISSUE_NUMBER, ... variables."""
        env = os.environ if environ is None else environ
        return cls.from_dict({
            "type": env.get("EVENT_TYPE", ""),
            "issueNumber": env.get("ISSUE_NUMBER"),
            "prNumber": env.get("PR_NUMBER"),
            "branch": env.get("BRANCH"),
            "reviewState": env.get("REVIEW_STATE"),
            "reviewBody": env.get("REVIEW_BODY"),
            "emId": env.get("EM_ID"),
            "workerId": env.get("WORKER_ID"),
            "retryCount": env.get("RETRY_COUNT"),
            "idempotencyToken": env.get("IDEMPOTENCY_TOKEN"),
        })

    def to_dispatch_inputs(self) -> dict[str, str]:
        """Workflow inputs for fan-out dispatch (snake_case, strings only)."""
        inputs = {"event_type": self.type.value}
        for key, value in (
            ("issue_number", self.issue_number),
            ("pr_number", self.pr_number),
            ("branch", self.branch),
            ("em_id", self.em_id),
            ("worker_id", self.worker_id),
            ("idempotency_token", self.idempotency_token),
        ):
            if value is not None:
                inputs[key] = str(value)
        if self.retry_count:
            inputs["retry_count"] = str(self.retry_count)
        return inputs

"""
Dispatch transports for internal events.

- WorkflowDispatchTransport fans each event out to a separate workflow run
- LocalQueueTransport queues events for a bounded in-process drain loop
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Optional, Protocol

from issue_swarm.events import OrchestratorEvent

if TYPE_CHECKING:
    from issue_swarm.config import IssueSwarmConfig
    from issue_swarm.github_client import GitHubClient
    from issue_swarm.logger import SwarmLogger


class DispatchTransport(Protocol):
    def dispatch(self, event: OrchestratorEvent) -> None:
        ...


class WorkflowDispatchTransport:
    """Sends every internal event as its own workflow_dispatch run."""

    def __init__(
        self,
        config: IssueSwarmConfig,
        host: GitHubClient,
        logger: Optional[SwarmLogger] = None,
    ) -> None:
        self.config = config
        self._host = host
        self._logger = logger

    def dispatch(self, event: OrchestratorEvent) -> None:
        if self._logger:
            self._logger.log("event_dispatched", {
                "component": "dispatch",
                "mode": "fanout",
                "event": event.to_dict(),
            })
        self._host.dispatch_workflow(
            self.config.github.workflow,
            self.config.github.dispatch_ref,
            event.to_dispatch_inputs(),
        )


class LocalQueueTransport:
    """
    FIFO of events processed by the same invocation.

    Replaces recursive self-dispatch in sequential mode; the orchestrator
    drains it with a step bound.
    """

    def __init__(self, logger: Optional[SwarmLogger] = None) -> None:
        self._queue: deque[OrchestratorEvent] = deque()
        self._logger = logger

    def __len__(self) -> int:
        return len(self._queue)

    def dispatch(self, event: OrchestratorEvent) -> None:
        # Tokens are unique among queued events only; handled events may recur
        token = event.idempotency_token
        if token and any(queued.idempotency_token == token for queued in self._queue):
            return
        if self._logger:
            self._logger.log("event_dispatched", {
                "component": "dispatch",
                "mode": "sequential",
                "event": event.to_dict(),
                "queued": len(self._queue) + 1,
            }, level="debug")
        self._queue.append(event)

    def pop(self) -> Optional[OrchestratorEvent]:
        return self._queue.popleft() if self._queue else None

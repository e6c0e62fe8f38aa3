"""
Event dispatcher for Issue Swarm.

This module handles:
- Routing each incoming event to exactly one handler
- Threading the loaded state through the handler explicitly
- Phase transitions and their issue labels
- Joins (workers -> EM PR, EMs -> final PR), re-evaluated from the full tree
- Emitting follow-on internal events after the state is persisted
- Boundary failure handling: phase failed, error recorded, state persisted, re-raise

Each invocation handles one event (plus, in sequential mode, the events
it queues for itself) and returns. Process exit is the suspension point.
"""

from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from issue_swarm.branches import (
    em_branch_name,
    issue_number_from_branch,
    work_branch_name,
    worker_branch_name,
)
from issue_swarm.conflicts import ConflictResolver
from issue_swarm.decomposer import EMTask, IssueAnalysis, TaskDecomposer, build_worker_prompt
from issue_swarm.dispatch import LocalQueueTransport, WorkflowDispatchTransport
from issue_swarm.errors import (
    HostError,
    IssueSwarmError,
    NoOpSkip,
    TerminalWorkflowError,
    WorkBranchExistsError,
)
from issue_swarm.events import EventType, OrchestratorEvent
from issue_swarm.labels import (
    StatusLabel,
    em_pr_labels,
    final_pr_labels,
    phase_label,
    worker_pr_labels,
)
from issue_swarm.models import (
    EMState,
    EMStatus,
    FinalPR,
    IssueInfo,
    OrchestratorState,
    Phase,
    RunSettings,
    WorkerState,
    WorkerStatus,
    parse_timestamp,
    utc_now,
)
from issue_swarm.recovery import RecoveryManager
from issue_swarm.review import ReviewReconciler
from issue_swarm.state_machine import (
    JoinResult,
    advance_status,
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
from issue_swarm.state_store import StateStore
from issue_swarm.status_report import (
    STATUS_COMMENT_MARKER,
    compute_progress,
    render_status_comment,
)
from issue_swarm.topology import (
    MergeOutcome,
    TopologyManager,
    em_pr_body,
    em_pr_title,
    final_pr_body,
    final_pr_title,
    worker_pr_body,
    worker_pr_title,
)

if TYPE_CHECKING:
    from issue_swarm.config import IssueSwarmConfig
    from issue_swarm.dispatch import DispatchTransport
    from issue_swarm.executor import ClaudeTaskExecutor
    from issue_swarm.git_client import GitClient
    from issue_swarm.github_client import GitHubClient, PullRequest
    from issue_swarm.logger import SwarmLogger

ISSUE_CLOSED_MESSAGE = "Issue closed before orchestration completed"

# An in_progress worker older than this many executor timeouts is presumed dead
STALE_WORKER_TIMEOUT_FACTOR = 2

# Nodes whose PR is open and may still be merged by a progress check
OPEN_PR_WORKER_STATUSES = frozenset({
    WorkerStatus.PR_CREATED,
    WorkerStatus.APPROVED,
    WorkerStatus.CHANGES_REQUESTED,
})
OPEN_PR_EM_STATUSES = frozenset({
    EMStatus.PR_CREATED,
    EMStatus.APPROVED,
    EMStatus.CHANGES_REQUESTED,
})


@dataclass
class Invocation:
    """
    One handler call: the event, its issue, and the state it works on.

    Handlers set state once it is loaded or created, and queue follow-on
    events in outbox; the dispatcher sends them after the handler returns.
    """
    event: OrchestratorEvent
    issue_number: Optional[int] = None
    state: Optional[OrchestratorState] = None
    outbox: list[OrchestratorEvent] = field(default_factory=list)


class Orchestrator:
    """
    Routes events to handlers and drives the issue task tree.

    All collaborators are injected; nothing here holds a current state
    between invocations.
    """

    def __init__(
        self,
        config: IssueSwarmConfig,
        host: GitHubClient,
        git: GitClient,
        executor: ClaudeTaskExecutor,
        store: Optional[StateStore] = None,
        logger: Optional[SwarmLogger] = None,
        transport: Optional[DispatchTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._host = host
        self._git = git
        self._executor = executor
        self._logger = logger
        self._store = store or StateStore(config, git, logger)
        self._topology = TopologyManager(host, git, logger, sleep=sleep)
        self._decomposer = TaskDecomposer(executor, logger)
        self._reviews = ReviewReconciler(config, host, git, executor, self._topology, logger)
        self._conflicts = ConflictResolver(config, git, executor, logger)
        self._recovery = RecoveryManager(logger)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        if transport is None:
            if config.orchestration.dispatch_mode == "sequential":
                transport = LocalQueueTransport(logger)
            else:
                transport = WorkflowDispatchTransport(config, host, logger)
        self._transport = transport

        self._routes: dict[EventType, Callable[[Invocation], None]] = {
            EventType.ISSUE_LABELED: self._on_issue_labeled,
            EventType.ISSUE_CLOSED: self._on_issue_closed,
            EventType.PR_MERGED: self._on_pr_merged,
            EventType.PR_REVIEWED: self._on_pr_reviewed,
            EventType.MANUAL: self._on_progress_check,
            EventType.SCHEDULE: self._on_progress_check,
            EventType.START_EM: self._on_start_em,
            EventType.EXECUTE_WORKER: self._on_execute_worker,
            EventType.CREATE_EM_PR: self._on_create_em_pr,
            EventType.CHECK_COMPLETION: self._on_progress_check,
            EventType.RETRY_FAILED: self._on_retry_failed,
        }

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "orchestrator"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    # =========================================================================
    # Entry point
    # =========================================================================

    def handle_event(self, event: OrchestratorEvent) -> None:
        """
        Handle one event to completion.

        In sequential mode the events it emits are drained from the local
        queue by this same call, bounded by orchestration.sequential_max_steps.

        Raises:
            Whatever the handler raised, after the failure was persisted.
            TerminalWorkflowError: If the local queue exceeds its step bound.
        """
        self._handle_one(event)
        if isinstance(self._transport, LocalQueueTransport):
            self._drain(self._transport, event)

    def _drain(self, queue: LocalQueueTransport, origin: OrchestratorEvent) -> None:
        max_steps = self.config.orchestration.sequential_max_steps
        steps = 0
        while len(queue):
            steps += 1
            if steps > max_steps:
                error = TerminalWorkflowError(
                    f"Sequential work queue exceeded {max_steps} steps",
                    context=f"{len(queue)} event(s) still queued",
                )
                inv = Invocation(event=origin, issue_number=origin.issue_number)
                if origin.issue_number is not None:
                    inv.state = self._load_state(origin.issue_number)
                self._record_failure(inv, error)
                raise error
            next_event = queue.pop()
            if next_event is not None:
                self._handle_one(next_event)

    def _handle_one(self, event: OrchestratorEvent) -> None:
        inv = Invocation(event=event, issue_number=self._resolve_issue_number(event))
        self._log("event_received", {"event": event.to_dict(), "issue": inv.issue_number})

        if inv.issue_number is None:
            if event.type in (EventType.SCHEDULE, EventType.MANUAL):
                self._fan_out_progress_checks()
                return
            if event.type.is_internal:
                raise TerminalWorkflowError(f"Internal event {event.type.value} has no issue number")
            self._log("event_ignored", {"type": event.type.value, "reason": "not an orchestrated issue"})
            return

        scope = self._logger.issue_context(inv.issue_number) if self._logger else contextlib.nullcontext()
        with scope:
            handler = self._routes[event.type]
            self._log("event_routed", {"type": event.type.value, "handler": handler.__name__})
            try:
                handler(inv)
            except Exception as e:
                self._record_failure(inv, e)
                raise
            for follow_on in inv.outbox:
                self._transport.dispatch(follow_on)
            if inv.state is not None:
                self._refresh_status(inv.state)

    def _resolve_issue_number(self, event: OrchestratorEvent) -> Optional[int]:
        if event.issue_number is not None:
            return event.issue_number
        prefix = self.config.git.branch_prefix
        if event.branch:
            number = issue_number_from_branch(prefix, event.branch)
            if number is not None:
                return number
        if event.pr_number is not None:
            pr = self._host.get_pull_request(event.pr_number)
            return issue_number_from_branch(prefix, pr.head)
        return None

    def _fan_out_progress_checks(self) -> None:
        """Queue one progress check per in-flight work branch."""
        issues = sorted({
            n for n in (
                issue_number_from_branch(self.config.git.branch_prefix, b)
                for b in self._store.list_work_branches()
            )
            if n is not None
        })
        self._log("progress_fan_out", {"issues": issues})
        for number in issues:
            self._transport.dispatch(OrchestratorEvent.internal(EventType.CHECK_COMPLETION, number))

    # =========================================================================
    # Boundary failure
    # =========================================================================

    def _record_failure(self, inv: Invocation, error: BaseException) -> None:
        """Set phase failed, append the error, persist. Never raises."""
        state = inv.state
        self._log("invocation_failed", {
            "event": inv.event.to_dict(),
            "error_type": type(error).__name__,
            "error": str(error)[:500],
        }, level="error")
        if state is None:
            return

        failed_in = state.phase
        state.add_error(
            f"{type(error).__name__}: {error}",
            context=getattr(error, "context", None) or f"event {inv.event.type.value}",
            phase=failed_in,
        )
        transition(state, Phase.FAILED)
        try:
            self._persist(state, f"chore: record failure in {failed_in.value}")
        except IssueSwarmError as save_error:
            self._log("failure_not_persisted", {"error": str(save_error)[:300]}, level="error")
        self._update_phase_label(state)
        self._refresh_status(state)

    # =========================================================================
    # State and side-effect helpers
    # =========================================================================

    def _load_state(self, issue_number: int) -> Optional[OrchestratorState]:
        branch = self._store.find_work_branch_for_issue(issue_number)
        if branch is None:
            return None
        self._git.checkout(branch)
        return self._store.load()

    def _require_state(self, inv: Invocation) -> OrchestratorState:
        if inv.state is None:
            assert inv.issue_number is not None
            inv.state = self._load_state(inv.issue_number)
        if inv.state is None:
            raise TerminalWorkflowError(
                f"No orchestration state for issue #{inv.issue_number}",
                context=f"event {inv.event.type.value}",
            )
        return inv.state

    @staticmethod
    def _require_em(state: OrchestratorState, em_id: Optional[int]) -> EMState:
        em = state.find_em(em_id) if em_id is not None else None
        if em is None:
            raise TerminalWorkflowError(f"Unknown EM {em_id} for issue #{state.issue.number}")
        return em

    @staticmethod
    def _require_worker(state: OrchestratorState, em: EMState, worker_id: Optional[int]) -> WorkerState:
        worker = em.find_worker(worker_id) if worker_id is not None else None
        if worker is None:
            raise TerminalWorkflowError(
                f"Unknown worker {worker_id} under EM {em.id} for issue #{state.issue.number}"
            )
        return worker

    def _persist(self, state: OrchestratorState, message: Optional[str] = None) -> None:
        """Save state on the work branch, checking it out first."""
        if state.phase == Phase.COMPLETE:
            # State file was removed on completion
            return
        if self._git.current_branch() != state.work_branch:
            self._git.checkout(state.work_branch)
        self._store.save(state, message)

    def _emit(
        self,
        inv: Invocation,
        event_type: EventType,
        em_id: Optional[int] = None,
        worker_id: Optional[int] = None,
        retry_count: int = 0,
    ) -> None:
        assert inv.issue_number is not None
        inv.outbox.append(OrchestratorEvent.internal(
            event_type, inv.issue_number, em_id=em_id, worker_id=worker_id, retry_count=retry_count
        ))

    def _set_phase(self, state: OrchestratorState, phase: Phase) -> bool:
        previous = state.phase
        if not transition(state, phase):
            return False
        self._log("phase_transition", {"from": previous.value, "to": phase.value})
        self._update_phase_label(state)
        return True

    def _update_phase_label(self, state: OrchestratorState) -> None:
        try:
            self._host.set_phase_label(state.issue.number, phase_label(state.phase))
        except HostError as e:
            self._log("label_update_failed", {"phase": state.phase.value, "error": str(e)[:200]}, level="warn")

    def _label_pr(self, pr_number: int, status: str, labels: Optional[list[str]] = None) -> None:
        try:
            if labels:
                self._host.add_labels(pr_number, labels)
            self._host.set_status_label(pr_number, status)
        except HostError as e:
            self._log("label_update_failed", {"pr": pr_number, "status": status, "error": str(e)[:200]}, level="warn")

    def _refresh_status(self, state: OrchestratorState) -> None:
        """Regenerate the status comment on the issue. Best-effort."""
        body = render_status_comment(compute_progress(state, self._clock()), state)
        try:
            self._host.upsert_marked_comment(state.issue.number, STATUS_COMMENT_MARKER, body)
        except HostError as e:
            self._log("status_comment_failed", {"error": str(e)[:200]}, level="warn")

    def _fail_node(self, state: OrchestratorState, node, reason: str, context: Optional[str] = None) -> None:
        """Record a node-local failure; the rest of the tree carries on."""
        if not mark_failed(node, reason):
            self._log("status_change_ignored", {"status": node.status.value, "target": "failed"}, level="debug")
            return
        state.add_error(reason, context=context)
        self._log("node_failed", {"context": context, "reason": reason[:300]}, level="warn")
        if node.pr_number:
            self._label_pr(node.pr_number, StatusLabel.FAILED)

    def _skip_node(self, node, reason: str) -> None:
        if mark_skipped(node, reason):
            self._log("node_skipped", {"reason": reason[:300]})

    @staticmethod
    def _node_name(em: EMState, worker: Optional[WorkerState] = None) -> str:
        return f"EM-{em.id}/W-{worker.id}" if worker else f"EM-{em.id}"

    # =========================================================================
    # issue_labeled
    # =========================================================================

    def _on_issue_labeled(self, inv: Invocation) -> None:
        assert inv.issue_number is not None
        existing = self._store.find_work_branch_for_issue(inv.issue_number)
        if existing:
            self._log("duplicate_start", {"work_branch": existing})
            self._on_progress_check(inv)
            return

        issue = self._host.get_issue(inv.issue_number)
        if not issue.is_open:
            self._log("issue_not_open", {"state": issue.state})
            return

        settings = self.config.orchestration
        state = OrchestratorState(
            issue=IssueInfo(number=issue.number, title=issue.title, body=issue.body),
            repo=self.config.github.repo,
            work_branch=work_branch_name(self.config.git.branch_prefix, issue.number, issue.title),
            base_branch=self.config.git.base_branch,
            config=RunSettings(
                max_ems=settings.max_ems,
                max_workers_per_em=settings.max_workers_per_em,
                review_wait_minutes=settings.review_wait_minutes,
                pr_label=settings.pr_label,
            ),
        )
        try:
            self._store.initialize(state, state.work_branch, state.base_branch)
        except WorkBranchExistsError:
            self._log("duplicate_start", {"work_branch": state.work_branch, "race": True})
            self._on_progress_check(inv)
            return
        inv.state = state

        try:
            self._host.ensure_labels()
        except HostError as e:
            self._log("label_setup_failed", {"error": str(e)[:200]}, level="warn")

        self._analyze(inv, state)

    def _analyze(self, inv: Invocation, state: OrchestratorState) -> None:
        self._set_phase(state, Phase.ANALYZING)
        self._persist(state, "chore: analyze issue")

        analysis = self._decomposer.analyze_issue(
            state.issue, state.config.max_ems, state.config.max_workers_per_em
        )
        self._apply_analysis(state, analysis)
        self._persist(state, f"chore: plan {len(state.ems) + len(state.pending_ems)} EM(s)")

        for em in state.ems:
            self._emit(inv, EventType.START_EM, em_id=em.id)

    def _apply_analysis(self, state: OrchestratorState, analysis: IssueAnalysis) -> None:
        prefix = self.config.git.branch_prefix
        number = state.issue.number

        def build(em_id: int, task: EMTask) -> EMState:
            return EMState(
                id=em_id,
                task=task.task,
                focus_area=task.focus_area,
                branch=em_branch_name(prefix, number, em_id),
            )

        state.analysis_summary = analysis.summary
        ordinary = [build(i, task) for i, task in enumerate(analysis.em_tasks, start=1)]
        if analysis.setup_task is not None:
            state.ems = [build(0, analysis.setup_task)]
            state.pending_ems = ordinary
            self._set_phase(state, Phase.PROJECT_SETUP)
        else:
            state.ems = ordinary
            state.pending_ems = []
            self._set_phase(state, Phase.EM_ASSIGNMENT)

    # =========================================================================
    # start_em
    # =========================================================================

    def _on_start_em(self, inv: Invocation) -> None:
        state = self._require_state(inv)
        em = self._require_em(state, inv.event.em_id)
        if em.workers or is_terminal(em):
            self._log("start_em_skipped", {"em_id": em.id, "status": em.status.value})
            return

        self._topology.create_em_branch(state, em)
        tasks = self._decomposer.breakdown_em(em, state.issue, state.config.max_workers_per_em)
        em.workers = [
            WorkerState(
                id=task.worker_id,
                task=task.task,
                files=task.files,
                branch=worker_branch_name(em.branch, task.worker_id),
            )
            for task in tasks
        ]
        em.started_at = em.started_at or utc_now()
        advance_status(em, EMStatus.WORKERS_RUNNING)
        self._set_phase(state, Phase.WORKER_EXECUTION)
        self._persist(state, f"chore: start EM-{em.id} with {len(em.workers)} worker(s)")

        for worker in em.workers:
            self._emit(inv, EventType.EXECUTE_WORKER, em_id=em.id, worker_id=worker.id)

    # =========================================================================
    # execute_worker
    # =========================================================================

    def _on_execute_worker(self, inv: Invocation) -> None:
        state = self._require_state(inv)
        em = self._require_em(state, inv.event.em_id)
        worker = self._require_worker(state, em, inv.event.worker_id)
        name = self._node_name(em, worker)
        if worker.pr_number or is_terminal(worker):
            self._log("execute_worker_skipped", {"worker": name, "status": worker.status.value})
            return

        worker.started_at = utc_now()
        advance_status(worker, WorkerStatus.IN_PROGRESS)
        self._persist(state, f"chore: start {name}")

        self._topology.create_worker_branch(worker, em)
        result = self._executor.execute_task(
            build_worker_prompt(worker, em, state.issue),
            working_dir=self.config.repo_root,
        )
        if not result.success:
            self._git.reset_hard()
            self._git.clean_untracked()
            self._fail_node(state, worker, f"Worker execution failed: {result.error}", context=name)
            self._run_joins(inv, state)
            self._persist(state, f"chore: {name} failed")
            return

        self._git.commit_and_push(f"feat(em-{em.id}/worker-{worker.id}): {worker.task[:50]}", worker.branch)
        try:
            pr = self._topology.open_pull_request(
                worker.branch,
                em.branch,
                worker_pr_title(em, worker),
                worker_pr_body(state, em, worker),
            )
        except NoOpSkip as e:
            self._skip_node(worker, f"No changes to open a PR with: {e.message}")
            self._run_joins(inv, state)
            self._persist(state, f"chore: {name} skipped")
            return

        worker.pr_number = pr.number
        worker.pr_url = pr.url
        advance_status(worker, WorkerStatus.PR_CREATED)
        self._label_pr(pr.number, StatusLabel.AWAITING_REVIEW, worker_pr_labels(em.id, state.config.pr_label))
        self._set_phase(state, Phase.WORKER_REVIEW)
        self._persist(state, f"chore: {name} opened PR #{pr.number}")

    # =========================================================================
    # Joins
    # =========================================================================

    def _on_create_em_pr(self, inv: Invocation) -> None:
        state = self._require_state(inv)
        if inv.event.em_id is not None:
            self._require_em(state, inv.event.em_id)
        self._run_joins(inv, state)
        self._persist(state, "chore: evaluate joins")

    def _run_joins(self, inv: Invocation, state: OrchestratorState) -> None:
        """Evaluate every EM join, promote queued EMs, then the final join."""
        for em in state.ems:
            if em.status == EMStatus.WORKERS_RUNNING and em.pr_number is None:
                self._em_join(state, em)
        if setup_gate_open(state):
            self._promote_pending(inv, state)
        self._final_join(state)

    def _em_join(self, state: OrchestratorState, em: EMState) -> None:
        result = worker_join(em)
        if result in (JoinResult.WAITING, JoinResult.EMPTY):
            return
        self._log("em_join", {"em_id": em.id, "result": result.value})

        if result == JoinResult.ALL_SKIPPED:
            self._skip_node(em, "All workers were skipped")
            return
        if result == JoinResult.NONE_MERGED:
            self._fail_node(state, em, "No worker of this EM was merged", context=self._node_name(em))
            return

        self._set_phase(state, Phase.EM_MERGING)
        try:
            pr = self._topology.open_pull_request(
                em.branch,
                state.work_branch,
                em_pr_title(em),
                em_pr_body(state, em),
            )
        except NoOpSkip as e:
            self._skip_node(em, f"No changes to open a PR with: {e.message}")
            return
        em.pr_number = pr.number
        em.pr_url = pr.url
        advance_status(em, EMStatus.PR_CREATED)
        self._label_pr(pr.number, StatusLabel.AWAITING_REVIEW, em_pr_labels(em.id, state.config.pr_label))
        self._set_phase(state, Phase.EM_REVIEW)

    def _promote_pending(self, inv: Invocation, state: OrchestratorState) -> None:
        """Move EMs queued behind project setup into the tree and start them."""
        promoted = state.pending_ems
        state.ems.extend(promoted)
        state.pending_ems = []
        self._log("pending_ems_promoted", {"em_ids": [em.id for em in promoted]})
        self._set_phase(state, Phase.EM_ASSIGNMENT)
        for em in promoted:
            self._emit(inv, EventType.START_EM, em_id=em.id)

    def _final_join(self, state: OrchestratorState) -> None:
        if state.final_pr is not None:
            return
        result = em_join(state)
        if result in (JoinResult.WAITING, JoinResult.EMPTY):
            return
        self._log("final_join", {"result": result.value})

        if result != JoinResult.READY:
            message = "No EM was merged; there is nothing to deliver"
            if not state.error_history or state.error_history[-1].message != message:
                state.add_error(message)
            self._set_phase(state, Phase.FAILED)
            return

        self._set_phase(state, Phase.FINAL_MERGE)
        pr = self._topology.open_pull_request(
            state.work_branch,
            state.base_branch,
            final_pr_title(state),
            final_pr_body(state),
        )
        state.final_pr = FinalPR(number=pr.number, url=pr.url)
        self._label_pr(pr.number, StatusLabel.AWAITING_REVIEW, final_pr_labels(state.config.pr_label))
        self._set_phase(state, Phase.FINAL_REVIEW)

    # =========================================================================
    # pull_request_merged
    # =========================================================================

    def _locate(
        self, state: OrchestratorState, event: OrchestratorEvent
    ) -> tuple[Optional[EMState], Optional[WorkerState], bool]:
        """Find the node an event's PR belongs to: (em, worker, is_final)."""
        if state.final_pr is not None and event.pr_number == state.final_pr.number:
            return None, None, True
        if event.pr_number is not None:
            em, worker = state.find_by_pr(event.pr_number)
            if em is not None:
                return em, worker, False
        if event.branch:
            if event.branch == state.work_branch:
                return None, None, state.final_pr is not None
            em, worker = state.find_by_branch(event.branch)
            return em, worker, False
        return None, None, False

    def _load_for_pr_event(self, inv: Invocation) -> Optional[OrchestratorState]:
        assert inv.issue_number is not None
        state = self._load_state(inv.issue_number)
        if state is None:
            self._log("event_ignored", {"type": inv.event.type.value, "reason": "no state"})
        inv.state = state
        return state

    def _on_pr_merged(self, inv: Invocation) -> None:
        state = self._load_for_pr_event(inv)
        if state is None:
            return
        em, worker, is_final = self._locate(state, inv.event)
        if is_final:
            self._complete(state)
            return
        if em is None:
            self._log("event_ignored", {"pr": inv.event.pr_number, "reason": "untracked PR"})
            return

        node = worker or em
        if advance_status(node, WorkerStatus.MERGED if worker else EMStatus.MERGED):
            self._log("node_merged", {"node": self._node_name(em, worker), "pr": node.pr_number})
        else:
            self._log("status_change_ignored", {
                "node": self._node_name(em, worker),
                "status": node.status.value,
                "target": "merged",
            })
        self._run_joins(inv, state)
        self._persist(state, f"chore: {self._node_name(em, worker)} merged")

    def _complete(self, state: OrchestratorState) -> None:
        """Final PR merged: mark complete and remove the state file."""
        self._set_phase(state, Phase.COMPLETE)
        self._log("orchestration_complete", {"final_pr": state.final_pr.number if state.final_pr else None})
        try:
            if self._git.current_branch() != state.work_branch:
                self._git.checkout(state.work_branch)
            self._store.delete(state)
        except IssueSwarmError as e:
            self._log("state_cleanup_failed", {"error": str(e)[:300]}, level="warn")

    # =========================================================================
    # pull_request_review
    # =========================================================================

    def _on_pr_reviewed(self, inv: Invocation) -> None:
        state = self._load_for_pr_event(inv)
        if state is None:
            return
        em, worker, is_final = self._locate(state, inv.event)
        if is_final and state.final_pr is not None:
            node = state.final_pr
            pr_number = state.final_pr.number
            branch = state.work_branch
        elif em is not None:
            node = worker or em
            pr_number = node.pr_number
            branch = node.branch
        else:
            self._log("event_ignored", {"pr": inv.event.pr_number, "reason": "untracked PR"})
            return
        if pr_number is None:
            self._log("event_ignored", {"reason": "node has no PR"})
            return
        tree_node = None if is_final else node
        if tree_node is not None and is_terminal(tree_node):
            self._log("status_change_ignored", {"pr": pr_number, "status": tree_node.status.value})
            return

        review_state = inv.event.review_state or ""
        self._log("review_received", {"pr": pr_number, "review_state": review_state})

        if review_state == "approved":
            if tree_node is not None:
                advance_status(tree_node, WorkerStatus.APPROVED if worker else EMStatus.APPROVED)
            if self._reviews.is_ready_to_merge(pr_number, node):
                self._label_pr(pr_number, StatusLabel.APPROVED)
                self._merge_if_allowed(inv, state, em, worker, is_final)
            else:
                # Another reviewer still blocks; progress checks retry later
                self._label_pr(pr_number, StatusLabel.AWAITING_REVIEW)
            self._persist(state, f"chore: PR #{pr_number} approved")
            return

        if review_state != "changes_requested" and self._reviews.is_ready_to_merge(pr_number, node):
            self._merge_if_allowed(inv, state, em, worker, is_final)
            self._persist(state, f"chore: PR #{pr_number} reviewed")
            return

        if tree_node is not None:
            advance_status(tree_node, WorkerStatus.CHANGES_REQUESTED if worker else EMStatus.CHANGES_REQUESTED)
        self._label_pr(pr_number, StatusLabel.ADDRESSING_FEEDBACK)
        self._reviews.address_review(pr_number, node, branch, inv.event.review_body)
        if tree_node is not None:
            advance_status(tree_node, WorkerStatus.PR_CREATED if worker else EMStatus.PR_CREATED)
        self._label_pr(pr_number, StatusLabel.AWAITING_REVIEW)

        if review_state != "changes_requested" and self._reviews.is_ready_to_merge(pr_number, node):
            self._merge_if_allowed(inv, state, em, worker, is_final)
        self._persist(state, f"chore: addressed review on PR #{pr_number}")

    def _merge_if_allowed(
        self,
        inv: Invocation,
        state: OrchestratorState,
        em: Optional[EMState],
        worker: Optional[WorkerState],
        is_final: bool,
    ) -> None:
        if is_final:
            if not self.config.orchestration.auto_merge_final_pr or state.final_pr is None:
                return
            result = self._reviews.maybe_auto_merge(state.final_pr.number)
            if result.merged:
                self._complete(state)
            return
        if em is not None:
            self._try_merge(inv, state, em, worker)

    def _try_merge(
        self,
        inv: Invocation,
        state: OrchestratorState,
        em: EMState,
        worker: Optional[WorkerState],
    ) -> None:
        node = worker or em
        assert node.pr_number is not None
        result = self._reviews.maybe_auto_merge(node.pr_number)
        if result.merged:
            advance_status(node, WorkerStatus.MERGED if worker else EMStatus.MERGED)
            self._run_joins(inv, state)
        elif result.outcome == MergeOutcome.CONFLICT:
            self._resolve_conflicts(inv, state, em, worker)
        elif result.outcome == MergeOutcome.CLOSED:
            self._fail_node(
                state, node, f"PR #{node.pr_number} was closed without merging",
                context=self._node_name(em, worker),
            )
            self._run_joins(inv, state)

    def _resolve_conflicts(
        self,
        inv: Invocation,
        state: OrchestratorState,
        em: EMState,
        worker: Optional[WorkerState],
    ) -> None:
        node = worker or em
        parent = em.branch if worker else state.work_branch
        if node.pr_number:
            self._label_pr(node.pr_number, StatusLabel.CONFLICTS)
        resolution = self._conflicts.resolve(node.branch, parent)
        if not resolution.success:
            self._fail_node(
                state, node, f"Merge conflict could not be resolved: {resolution.reason}",
                context=self._node_name(em, worker),
            )
            self._run_joins(inv, state)
            return
        if node.pr_number:
            self._label_pr(node.pr_number, StatusLabel.AWAITING_REVIEW)

    # =========================================================================
    # Progress check (check_completion, schedule, manual, duplicate start)
    # =========================================================================

    def _on_progress_check(self, inv: Invocation) -> None:
        assert inv.issue_number is not None
        state = inv.state or self._load_state(inv.issue_number)
        if state is None:
            self._log("progress_check_skipped", {"reason": "no state"})
            return
        inv.state = state
        if state.phase == Phase.COMPLETE:
            return

        issue = self._host.get_issue(state.issue.number)
        if not issue.is_open:
            self._log("progress_check_skipped", {"reason": "issue closed"})
            return

        recovering = False
        if state.phase == Phase.FAILED:
            decision = self._recovery.apply(state)
            if not decision.actionable:
                return
            recovering = True
            self._update_phase_label(state)

        self._reconcile_open_prs(inv, state)
        self._dispatch_pending_work(inv, state, recovering)
        self._run_joins(inv, state)
        self._persist(state, "chore: progress check")

    def _review_wait_elapsed(self, state: OrchestratorState, pr: PullRequest) -> bool:
        if not pr.created_at:
            return True
        try:
            opened = parse_timestamp(pr.created_at)
        except ValueError:
            return True
        return self._clock() - opened >= timedelta(minutes=state.config.review_wait_minutes)

    def _reconcile_open_prs(self, inv: Invocation, state: OrchestratorState) -> None:
        for em in list(state.ems):
            for worker in em.workers:
                if worker.status in OPEN_PR_WORKER_STATUSES and worker.pr_number:
                    self._reconcile_pr(inv, state, em, worker)
            if em.status in OPEN_PR_EM_STATUSES and em.pr_number:
                self._reconcile_pr(inv, state, em, None)

        if (
            state.final_pr is not None
            and self.config.orchestration.auto_merge_final_pr
            and state.phase == Phase.FINAL_REVIEW
        ):
            pr = self._host.get_pull_request(state.final_pr.number)
            if pr.merged:
                self._complete(state)
            elif (
                pr.is_open
                and self._review_wait_elapsed(state, pr)
                and self._reviews.is_ready_to_merge(pr.number, state.final_pr)
            ):
                self._merge_if_allowed(inv, state, None, None, True)

    def _reconcile_pr(
        self,
        inv: Invocation,
        state: OrchestratorState,
        em: EMState,
        worker: Optional[WorkerState],
    ) -> None:
        node = worker or em
        assert node.pr_number is not None
        pr = self._host.get_pull_request(node.pr_number)
        name = self._node_name(em, worker)

        if pr.merged:
            advance_status(node, WorkerStatus.MERGED if worker else EMStatus.MERGED)
            self._log("node_merged", {"node": name, "pr": pr.number, "source": "reconcile"})
            return
        if pr.state == "closed":
            self._fail_node(state, node, f"PR #{pr.number} was closed without merging", context=name)
            return
        if pr.mergeable is False or pr.mergeable_state == "dirty":
            self._resolve_conflicts(inv, state, em, worker)
            return
        approved = node.status in (WorkerStatus.APPROVED, EMStatus.APPROVED)
        if not approved and not self._review_wait_elapsed(state, pr):
            return
        if self._reviews.is_ready_to_merge(pr.number, node):
            self._try_merge(inv, state, em, worker)

    def _is_stale(self, worker: WorkerState) -> bool:
        if not worker.started_at:
            return True
        limit = timedelta(seconds=self.config.claude.timeout_seconds * STALE_WORKER_TIMEOUT_FACTOR)
        try:
            return self._clock() - parse_timestamp(worker.started_at) >= limit
        except ValueError:
            return True

    def _dispatch_pending_work(self, inv: Invocation, state: OrchestratorState, recovering: bool) -> None:
        for em in state.ems:
            if em.status == EMStatus.PENDING and not em.workers:
                self._emit(inv, EventType.START_EM, em_id=em.id)
                continue
            if em.status != EMStatus.WORKERS_RUNNING:
                continue
            for worker in em.workers:
                if worker.status == WorkerStatus.PENDING or (
                    worker.status == WorkerStatus.IN_PROGRESS
                    and worker.pr_number is None
                    and (recovering or self._is_stale(worker))
                ):
                    self._emit(inv, EventType.EXECUTE_WORKER, em_id=em.id, worker_id=worker.id)

    # =========================================================================
    # retry_failed
    # =========================================================================

    def _on_retry_failed(self, inv: Invocation) -> None:
        state = self._require_state(inv)
        event = inv.event
        limit = self.config.orchestration.max_retry_events
        if event.retry_count >= limit:
            state.add_error(f"Retry limit of {limit} reached", context=f"retry {event.retry_count}")
            self._persist(state, "chore: retry limit reached")
            return

        next_count = event.retry_count + 1
        if not state.ems and not state.pending_ems:
            self._log("retry_analysis", {"retry_count": next_count})
            if state.phase == Phase.FAILED:
                transition(state, Phase.INITIALIZED)
            self._analyze(inv, state)
            for follow_on in inv.outbox:
                follow_on.retry_count = next_count
            return

        reset_ems: list[EMState] = []
        reset_workers: list[tuple[EMState, WorkerState]] = []
        if event.em_id is not None:
            em = self._require_em(state, event.em_id)
            if event.worker_id is not None:
                worker = self._require_worker(state, em, event.worker_id)
                if reset_for_retry(worker):
                    reopen_em(em)
                    reset_workers.append((em, worker))
            elif reset_for_retry(em):
                reset_ems.append(em)
        else:
            for em in state.ems:
                if em.status == EMStatus.FAILED:
                    if reset_for_retry(em):
                        reset_ems.append(em)
                    continue
                for worker in em.workers:
                    if worker.status == WorkerStatus.FAILED and reset_for_retry(worker):
                        reopen_em(em)
                        reset_workers.append((em, worker))

        self._log("retry_reset", {
            "ems": [em.id for em in reset_ems],
            "workers": [self._node_name(em, w) for em, w in reset_workers],
            "retry_count": next_count,
        })
        if not reset_ems and not reset_workers:
            return

        if state.phase == Phase.FAILED:
            self._set_phase(state, Phase.PROJECT_SETUP if state.pending_ems else Phase.WORKER_EXECUTION)
        self._persist(state, f"chore: retry {len(reset_ems)} EM(s) and {len(reset_workers)} worker(s)")

        for em in reset_ems:
            self._emit(inv, EventType.START_EM, em_id=em.id, retry_count=next_count)
        for em, worker in reset_workers:
            self._emit(inv, EventType.EXECUTE_WORKER, em_id=em.id, worker_id=worker.id, retry_count=next_count)

    # =========================================================================
    # issue_closed
    # =========================================================================

    def _on_issue_closed(self, inv: Invocation) -> None:
        assert inv.issue_number is not None
        state = self._load_state(inv.issue_number)
        inv.state = state
        if state is None or state.phase == Phase.COMPLETE:
            self._log("event_ignored", {"type": inv.event.type.value, "reason": "no active orchestration"})
            return
        state.add_error(ISSUE_CLOSED_MESSAGE)
        self._set_phase(state, Phase.FAILED)
        self._persist(state, "chore: issue closed")

"""
Status reporting for the originating issue.

compute_progress() turns a state snapshot into plain numbers and rows;
render_status_comment() turns those into the markdown comment that is
updated in place on every invocation. Neither touches the host.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from issue_swarm.models import EMStatus, OrchestratorState, Phase, WorkerStatus, parse_timestamp

STATUS_COMMENT_MARKER = "<!-- swarm-orchestrator-status -->"
PROGRESS_BAR_WIDTH = 20

PHASE_EMOJI: dict[Phase, str] = {
    Phase.INITIALIZED: "🆕",
    Phase.ANALYZING: "🔍",
    Phase.PROJECT_SETUP: "🏗️",
    Phase.EM_ASSIGNMENT: "📋",
    Phase.WORKER_EXECUTION: "⚙️",
    Phase.WORKER_REVIEW: "👀",
    Phase.EM_MERGING: "🔀",
    Phase.EM_REVIEW: "👀",
    Phase.FINAL_MERGE: "🔀",
    Phase.FINAL_REVIEW: "🏁",
    Phase.COMPLETE: "✅",
    Phase.FAILED: "❌",
}

STATUS_EMOJI: dict[str, str] = {
    "pending": "⏳",
    "in_progress": "🔄",
    "workers_running": "🔄",
    "pr_created": "📝",
    "approved": "👍",
    "changes_requested": "✏️",
    "merged": "✅",
    "skipped": "⏭️",
    "failed": "❌",
}


@dataclass
class WorkerRow:
    id: int
    task: str
    status: str
    pr_number: Optional[int] = None
    error: Optional[str] = None


@dataclass
class EMRow:
    id: int
    focus_area: str
    task: str
    status: str
    pr_number: Optional[int] = None
    workers_merged: int = 0
    workers_total: int = 0
    queued: bool = False
    workers: list[WorkerRow] = field(default_factory=list)


@dataclass
class ProgressSummary:
    phase: Phase
    ems_total: int
    ems_merged: int
    workers_total: int
    workers_merged: int
    workers_skipped: int
    workers_failed: int
    percent: int
    duration_seconds: int
    rows: list[EMRow] = field(default_factory=list)


def _worker_done(status: WorkerStatus) -> bool:
    return status in (WorkerStatus.MERGED, WorkerStatus.SKIPPED)


def compute_progress(state: OrchestratorState, now: Optional[datetime] = None) -> ProgressSummary:
    """
    Compute progress counts for a state.

    Percent counts merged and skipped workers plus merged EMs over all of
    them, and is 100 only once the phase is complete.
    """
    now = now or datetime.now(timezone.utc)
    rows: list[EMRow] = []
    workers_total = workers_merged = workers_skipped = workers_failed = 0

    for em, queued in [(em, False) for em in state.ems] + [(em, True) for em in state.pending_ems]:
        worker_rows = [
            WorkerRow(id=w.id, task=w.task, status=w.status.value, pr_number=w.pr_number, error=w.error)
            for w in em.workers
        ]
        merged = sum(1 for w in em.workers if w.status == WorkerStatus.MERGED)
        workers_total += len(em.workers)
        workers_merged += merged
        workers_skipped += sum(1 for w in em.workers if w.status == WorkerStatus.SKIPPED)
        workers_failed += sum(1 for w in em.workers if w.status == WorkerStatus.FAILED)
        rows.append(EMRow(
            id=em.id,
            focus_area=em.focus_area,
            task=em.task,
            status=em.status.value,
            pr_number=em.pr_number,
            workers_merged=merged,
            workers_total=len(em.workers),
            queued=queued,
            workers=worker_rows,
        ))

    ems_total = len(state.ems) + len(state.pending_ems)
    ems_merged = sum(1 for em in state.ems if em.status == EMStatus.MERGED)

    done_units = ems_merged + sum(
        1 for _, w in state.iter_workers() if _worker_done(w.status)
    )
    total_units = ems_total + workers_total
    if state.phase == Phase.COMPLETE:
        percent = 100
    elif total_units:
        percent = min(99, int(done_units * 100 / total_units))
    else:
        percent = 0

    try:
        duration = int((now - parse_timestamp(state.created_at)).total_seconds())
    except ValueError:
        duration = 0

    return ProgressSummary(
        phase=state.phase,
        ems_total=ems_total,
        ems_merged=ems_merged,
        workers_total=workers_total,
        workers_merged=workers_merged,
        workers_skipped=workers_skipped,
        workers_failed=workers_failed,
        percent=percent,
        duration_seconds=max(0, duration),
        rows=rows,
    )


def format_duration(seconds: int) -> str:
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    if hours >= 24:
        return f"{hours // 24}d {hours % 24}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def progress_bar(percent: int, width: int = PROGRESS_BAR_WIDTH) -> str:
    filled = round(width * percent / 100)
    return "█" * filled + "░" * (width - filled)


def _pr_link(pr_number: Optional[int]) -> str:
    return f"#{pr_number}" if pr_number else "-"


def _cell(text: str, limit: int = 60) -> str:
    text = text.replace("|", "\\|").replace("\n", " ")
    return text if len(text) <= limit else text[: limit - 3] + "..."


def render_status_comment(summary: ProgressSummary, state: OrchestratorState) -> str:
    """Render the status comment body, marker first."""
    phase_name = summary.phase.value.replace("_", " ")
    lines = [
        STATUS_COMMENT_MARKER,
        f"## {PHASE_EMOJI.get(summary.phase, '')} Orchestration: {phase_name}",
        "",
        f"**Elapsed:** {format_duration(summary.duration_seconds)}  ",
        f"**Progress:** `{progress_bar(summary.percent)}` {summary.percent}%  ",
        f"**EMs merged:** {summary.ems_merged}/{summary.ems_total} · "
        f"**Workers merged:** {summary.workers_merged}/{summary.workers_total}",
        "",
    ]

    if summary.rows:
        lines += [
            "| EM | Focus | Status | Workers | PR |",
            "|---|---|---|---|---|",
        ]
        for row in summary.rows:
            status = "queued" if row.queued else row.status
            lines.append(
                f"| EM-{row.id} | {_cell(row.focus_area, 40)} | "
                f"{STATUS_EMOJI.get(row.status, '')} {status} | "
                f"{row.workers_merged}/{row.workers_total} | {_pr_link(row.pr_number)} |"
            )
        lines.append("")

        for row in summary.rows:
            if not row.workers:
                continue
            lines += [
                "<details>",
                f"<summary>EM-{row.id} workers</summary>",
                "",
                "| Worker | Task | Status | PR |",
                "|---|---|---|---|",
            ]
            for worker in row.workers:
                lines.append(
                    f"| W-{worker.id} | {_cell(worker.task)} | "
                    f"{STATUS_EMOJI.get(worker.status, '')} {worker.status} | {_pr_link(worker.pr_number)} |"
                )
            lines += ["", "</details>", ""]

    if state.final_pr:
        lines += [f"**Final PR:** [#{state.final_pr.number}]({state.final_pr.url})", ""]

    if state.error_history:
        lines += ["### Errors", ""]
        for entry in state.error_history:
            lines.append(f"- `{entry.timestamp}` **{entry.phase.value}**: {entry.message}")
        lines.append("")

    return "\n".join(lines)

"""Display helpers for the CLI.

Rich renderings of orchestration state and recovery decisions.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from rich.panel import Panel
from rich.table import Table

from issue_swarm.models import Phase
from issue_swarm.status_report import compute_progress, format_duration, progress_bar

if TYPE_CHECKING:
    from issue_swarm.models import OrchestratorState
    from issue_swarm.recovery import RecoveryDecision

PHASE_COLORS: dict[Phase, str] = {
    Phase.INITIALIZED: "dim",
    Phase.ANALYZING: "yellow",
    Phase.PROJECT_SETUP: "yellow",
    Phase.EM_ASSIGNMENT: "cyan",
    Phase.WORKER_EXECUTION: "cyan",
    Phase.WORKER_REVIEW: "cyan bold",
    Phase.EM_MERGING: "blue",
    Phase.EM_REVIEW: "blue",
    Phase.FINAL_MERGE: "blue bold",
    Phase.FINAL_REVIEW: "blue bold",
    Phase.COMPLETE: "green bold",
    Phase.FAILED: "red bold",
}

STATUS_COLORS: dict[str, str] = {
    "pending": "dim",
    "in_progress": "yellow",
    "workers_running": "yellow",
    "pr_created": "cyan",
    "approved": "green",
    "changes_requested": "yellow bold",
    "merged": "green bold",
    "skipped": "magenta",
    "failed": "red",
}


def format_phase(phase: Phase) -> str:
    color = PHASE_COLORS.get(phase, "white")
    return f"[{color}]{phase.value.replace('_', ' ')}[/{color}]"


def format_status(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def state_panel(state: OrchestratorState) -> Panel:
    summary = compute_progress(state)
    lines = [
        f"[bold]Issue:[/bold] #{state.issue.number} {state.issue.title}",
        f"[bold]Phase:[/bold] {format_phase(state.phase)}",
        f"[bold]Work branch:[/bold] {state.work_branch}",
        f"[bold]Progress:[/bold] {progress_bar(summary.percent)} {summary.percent}%",
        f"[bold]Elapsed:[/bold] {format_duration(summary.duration_seconds)}",
    ]
    if state.final_pr:
        lines.append(f"[bold]Final PR:[/bold] #{state.final_pr.number} {state.final_pr.url}")
    return Panel("\n".join(lines), title="Orchestration", expand=False)


def tree_table(state: OrchestratorState) -> Table:
    table = Table(title="Task tree")
    table.add_column("Node", style="cyan")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("PR", justify="right")
    table.add_column("Error", style="red")

    for em in state.ems + state.pending_ems:
        queued = em in state.pending_ems
        table.add_row(
            f"EM-{em.id}",
            f"[bold]{em.focus_area}[/bold]: {em.task[:60]}",
            "[dim]queued[/dim]" if queued else format_status(em.status.value),
            f"#{em.pr_number}" if em.pr_number else "-",
            (em.error or "")[:60],
        )
        for worker in em.workers:
            table.add_row(
                f"  W-{worker.id}",
                worker.task[:60],
                format_status(worker.status.value),
                f"#{worker.pr_number}" if worker.pr_number else "-",
                (worker.error or "")[:60],
            )
    return table


def errors_table(state: OrchestratorState) -> Table:
    table = Table(title="Error history")
    table.add_column("Time", style="dim")
    table.add_column("Phase")
    table.add_column("Message", style="red")
    for entry in state.error_history:
        table.add_row(entry.timestamp, entry.phase.value, entry.message)
    return table


def recovery_panel(decision: RecoveryDecision) -> Panel:
    color = "green" if decision.actionable else "yellow"
    resume = decision.resume_phase.value if decision.resume_phase else "stays failed"
    body = (
        f"[bold]Action:[/bold] [{color}]{decision.action.value}[/{color}]\n"
        f"[bold]Reason:[/bold] {decision.reason}\n"
        f"[bold]Resume phase:[/bold] {resume}"
    )
    return Panel(body, title="Recovery decision", expand=False)

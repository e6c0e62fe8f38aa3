"""Main Typer app definition.

This is the canonical entry point for the CLI: the app, the global
--config callback and every command are defined here.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from issue_swarm import __version__
from issue_swarm.cli.common import (
    build_git,
    build_host,
    build_orchestrator,
    build_store,
    get_console,
    get_logger,
    load_config,
    set_config_path,
)
from issue_swarm.config import ConfigError
from issue_swarm.errors import IssueSwarmError

app = typer.Typer(
    name="issue-swarm",
    help="Event-driven orchestration of AI task trees for GitHub issues",
    add_completion=False,
)

console = get_console()


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: ./config.yaml, or environment only)",
        envvar="SWARM_CONFIG",
    ),
) -> None:
    """
    Issue Swarm - turns a labeled issue into merged code.

    Each command handles one step; a CI workflow invokes `handle` once per
    event.
    """
    if config:
        if not Path(config).is_file():
            console.print(f"[red]Error: Config file not found: {config}[/red]")
            raise typer.Exit(1)
        set_config_path(config)


def _load_state_or_exit(issue: int):
    """Load config and the issue's state from its work branch."""
    try:
        config = load_config()
        logger = get_logger(config)
        git = build_git(config, logger)
        store = build_store(config, git, logger)
        branch = store.find_work_branch_for_issue(issue)
        if branch is None:
            console.print(f"[yellow]No work branch found for issue #{issue}[/yellow]")
            raise typer.Exit(1)
        git.checkout(branch)
        state = store.load()
    except (ConfigError, IssueSwarmError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    if state is None:
        console.print(f"[yellow]No orchestration state on {branch} (run complete?)[/yellow]")
        raise typer.Exit(1)
    return state


@app.command()
def handle(
    event_type: Optional[str] = typer.Option(None, "--event-type", "-e", envvar="EVENT_TYPE", help="Event type"),
    issue: Optional[int] = typer.Option(None, "--issue", "-i", envvar="ISSUE_NUMBER", help="Issue number"),
    pr: Optional[int] = typer.Option(None, "--pr", envvar="PR_NUMBER", help="Pull request number"),
    branch: Optional[str] = typer.Option(None, "--branch", envvar="BRANCH", help="Head branch of the PR"),
    review_state: Optional[str] = typer.Option(None, "--review-state", envvar="REVIEW_STATE"),
    review_body: Optional[str] = typer.Option(None, "--review-body", envvar="REVIEW_BODY"),
    em_id: Optional[int] = typer.Option(None, "--em-id", envvar="EM_ID"),
    worker_id: Optional[int] = typer.Option(None, "--worker-id", envvar="WORKER_ID"),
    retry_count: int = typer.Option(0, "--retry-count", envvar="RETRY_COUNT"),
    token: Optional[str] = typer.Option(None, "--token", envvar="IDEMPOTENCY_TOKEN", help="Idempotency token"),
    payload: Optional[Path] = typer.Option(
        None, "--payload", help="JSON event payload file; overrides the other options",
    ),
) -> None:
    """Handle one orchestrator event."""
    from issue_swarm.events import OrchestratorEvent

    try:
        if payload is not None:
            event = OrchestratorEvent.from_dict(json.loads(payload.read_text()))
        else:
            event = OrchestratorEvent.from_dict({
                "type": event_type or "",
                "issueNumber": issue,
                "prNumber": pr,
                "branch": branch,
                "reviewState": review_state,
                "reviewBody": review_body,
                "emId": em_id,
                "workerId": worker_id,
                "retryCount": retry_count,
                "idempotencyToken": token,
            })
    except (OSError, ValueError) as e:
        console.print(f"[red]Error: invalid event: {e}[/red]")
        raise typer.Exit(1)

    try:
        orchestrator = build_orchestrator(load_config())
        orchestrator.handle_event(event)
    except (ConfigError, IssueSwarmError) as e:
        console.print(f"[red]Error handling {event.type.value}: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Handled {event.type.value}[/green]")


@app.command()
def status(
    issue: int = typer.Argument(..., help="Issue number"),
) -> None:
    """Show the orchestration state of an issue."""
    from issue_swarm.cli.display import errors_table, state_panel, tree_table

    state = _load_state_or_exit(issue)
    console.print(state_panel(state))
    console.print(tree_table(state))
    if state.error_history:
        console.print(errors_table(state))


@app.command()
def recover(
    issue: int = typer.Argument(..., help="Issue number"),
) -> None:
    """Show the recovery decision for an issue without applying it."""
    from issue_swarm.cli.display import format_phase, recovery_panel
    from issue_swarm.recovery import choose_recovery_action

    state = _load_state_or_exit(issue)
    console.print(f"Current phase: {format_phase(state.phase)}")
    console.print(recovery_panel(choose_recovery_action(state)))


@app.command()
def labels() -> None:
    """Create the orchestrator label vocabulary in the repository."""
    try:
        config = load_config()
        created = build_host(config, get_logger(config)).ensure_labels()
    except (ConfigError, IssueSwarmError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    if created:
        console.print(f"[green]Created {len(created)} label(s):[/green] {', '.join(created)}")
    else:
        console.print("[dim]All labels already exist[/dim]")


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"issue-swarm version {__version__}")


# =========================================================================
# Entry Point
# =========================================================================


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]

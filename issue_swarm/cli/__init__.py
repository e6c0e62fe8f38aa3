"""CLI package for issue-swarm.

Modules:
    app.py      - Typer app, --config callback, commands (handle, status, recover, labels, version)
    display.py  - Rich renderings of state and recovery decisions
    common.py   - Shared helpers (get_console, load_config, build_orchestrator)

Usage:
    from issue_swarm.cli import app, cli_main
"""
from issue_swarm.cli.app import app, cli_main

__all__ = ["app", "cli_main"]

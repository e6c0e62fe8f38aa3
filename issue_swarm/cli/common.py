"""Common utilities and global state for the CLI.

Contains the console singleton, the --config override, and construction
of the orchestrator and its collaborators from configuration.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from rich.console import Console

if TYPE_CHECKING:
    from issue_swarm.config import IssueSwarmConfig
    from issue_swarm.git_client import GitClient
    from issue_swarm.github_client import GitHubClient
    from issue_swarm.logger import SwarmLogger
    from issue_swarm.orchestrator import Orchestrator
    from issue_swarm.state_store import StateStore

# ============================================================================
# Global State
# ============================================================================

# Config file override (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_config_path() -> Optional[str]:
    """Get the config file override if set."""
    return _config_path


def set_config_path(path: Optional[str]) -> None:
    """Set the config file override."""
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Construction
# ============================================================================


def load_config() -> IssueSwarmConfig:
    """
    Load configuration honouring --config.

    Raises:
        ConfigError: If the configuration is missing or invalid.
    """
    from issue_swarm.config import get_config

    return get_config(get_config_path())


def get_logger(config: IssueSwarmConfig) -> SwarmLogger:
    from issue_swarm.logger import get_logger as _get_logger

    return _get_logger("orchestrator", config)


def build_git(config: IssueSwarmConfig, logger: Optional[SwarmLogger] = None) -> GitClient:
    from issue_swarm.git_client import GitClient

    git = GitClient(config, logger)
    git.configure_identity()
    return git


def build_host(config: IssueSwarmConfig, logger: Optional[SwarmLogger] = None) -> GitHubClient:
    from issue_swarm.github_client import GitHubClient

    return GitHubClient(config, logger)


def build_store(config: IssueSwarmConfig, git: GitClient, logger: Optional[SwarmLogger] = None) -> StateStore:
    from issue_swarm.state_store import StateStore

    return StateStore(config, git, logger)


def build_orchestrator(config: IssueSwarmConfig) -> Orchestrator:
    """Wire the orchestrator to the real gh, git and claude clients."""
    from issue_swarm.executor import ClaudeTaskExecutor
    from issue_swarm.orchestrator import Orchestrator

    logger = get_logger(config)
    git = build_git(config, logger)
    return Orchestrator(
        config=config,
        host=build_host(config, logger),
        git=git,
        executor=ClaudeTaskExecutor(config, logger),
        store=build_store(config, git, logger),
        logger=logger,
    )

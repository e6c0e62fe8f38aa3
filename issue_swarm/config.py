"""
Configuration loading and validation for Issue Swarm.

This module handles:
- Loading config.yaml from the repo root
- Environment variable resolution (${VAR} syntax)
- Validation of required fields
- Default values for optional fields
- Environment-only configuration for CI runs without a config file
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


DISPATCH_MODES = ("fanout", "sequential")


@dataclass
class GitHubConfig:
    """GitHub repository configuration."""
    repo: str                                  # Repository in "owner/repo" format
    token_env_var: str = "GITHUB_TOKEN"        # Environment variable containing PAT
    workflow: str = "orchestrator.yml"         # Workflow receiving internal dispatches
    dispatch_ref: str = "main"                 # Ref the workflow runs on
    automated_reviewers: list[str] = field(
        default_factory=lambda: ["copilot-pull-request-reviewer[bot]"]
    )
    bot_logins: list[str] = field(default_factory=lambda: ["github-actions[bot]"])
    max_retries: int = 3                       # Retries for transient host errors
    retry_base_delay_seconds: float = 1.0
    timeout_seconds: int = 60                  # Per gh invocation

    def get_token(self) -> str:
        """Get the GitHub token from environment."""
        token = os.environ.get(self.token_env_var, "")
        if not token:
            raise ConfigError(f"Environment variable {self.token_env_var} is not set")
        return token

    @property
    def owner(self) -> str:
        return self.repo.split("/", 1)[0]


@dataclass
class ClaudeConfig:
    """Claude Code CLI configuration."""
    binary: str = "claude"                     # Path to claude binary
    max_turns: int = 50                        # Maximum conversation turns
    timeout_seconds: int = 1800                # Command timeout in seconds
    skip_permissions: bool = True              # Unattended runs may edit files
    credential_env_vars: list[str] = field(
        default_factory=lambda: ["ANTHROPIC_API_KEY"]
    )


@dataclass
class RetryConfig:
    """Retry strategy for the AI task executor."""
    max_retries: int = 3                       # Maximum retry attempts
    backoff_base_seconds: float = 5.0          # Delay before the first retry
    backoff_max_seconds: float = 30.0          # Cap on any single delay


@dataclass
class OrchestrationConfig:
    """Task tree sizing and event handling policy."""
    max_ems: int = 3
    max_workers_per_em: int = 3
    review_wait_minutes: int = 5               # Grace period before auto-merge
    pr_label: Optional[str] = None             # Extra label on every orchestrator PR
    dispatch_mode: str = "fanout"              # "fanout" or "sequential"
    sequential_max_steps: int = 200            # Bound on the local work queue
    max_retry_events: int = 3                  # Bound on retry_failed events per issue
    conflict_max_rounds: int = 5               # Rebase continue rounds per resolution
    auto_merge_final_pr: bool = False


@dataclass
class GitConfig:
    """Git configuration for branch naming and commit identity."""
    base_branch: str = "main"                  # Branch the work branch starts from
    branch_prefix: str = "swarm"               # <prefix>/issue-<N>-...
    remote: str = "origin"
    user_name: Optional[str] = None
    user_email: Optional[str] = None


@dataclass
class IssueSwarmConfig:
    """
    Main configuration for Issue Swarm.

    This is the top-level config loaded from config.yaml.
    """
    # Paths
    repo_root: str = "."
    swarm_dir: str = ".swarm"

    # Nested configurations
    github: GitHubConfig = field(default_factory=lambda: GitHubConfig(repo=""))
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    git: GitConfig = field(default_factory=GitConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def swarm_path(self) -> Path:
        """Absolute path to .swarm directory."""
        return Path(self.repo_root) / self.swarm_dir

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.swarm_path / "logs"

    @classmethod
    def from_env(cls, repo_root: str = ".") -> IssueSwarmConfig:
        """
        Build a configuration from environment variables alone.

        Used inside CI workflows where GITHUB_REPOSITORY is always set and
        no config.yaml is checked in.
        """
        repo = os.environ.get("GITHUB_REPOSITORY", "")
        if not repo:
            raise ConfigError("GITHUB_REPOSITORY is not set and no config file was found")
        orchestration = OrchestrationConfig()
        if os.environ.get("SWARM_DISPATCH_MODE"):
            orchestration.dispatch_mode = _validate_dispatch_mode(
                os.environ["SWARM_DISPATCH_MODE"]
            )
        return cls(
            repo_root=repo_root,
            github=GitHubConfig(repo=repo),
            git=GitConfig(base_branch=os.environ.get("SWARM_BASE_BRANCH", "main")),
            orchestration=orchestration,
        )


# Module-level cache for the loaded configuration
_config_cache: Optional[IssueSwarmConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _validate_dispatch_mode(mode: str) -> str:
    if mode not in DISPATCH_MODES:
        raise ConfigError(
            f"orchestration.dispatch_mode must be one of {', '.join(DISPATCH_MODES)}, got {mode!r}"
        )
    return mode


def _positive_int(data: dict[str, Any], key: str, default: int, section: str) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ConfigError(f"{section}.{key} must be a positive integer, got {value!r}")
    return value


def _parse_github_config(data: dict[str, Any]) -> GitHubConfig:
    """Parse GitHub configuration from dict."""
    if not data.get("repo"):
        raise ConfigError("github.repo is required")
    if "/" not in data["repo"]:
        raise ConfigError(f"github.repo must be in owner/name format, got {data['repo']!r}")
    defaults = GitHubConfig(repo=data["repo"])
    return GitHubConfig(
        repo=data["repo"],
        token_env_var=data.get("token_env_var", "GITHUB_TOKEN"),
        workflow=data.get("workflow", defaults.workflow),
        dispatch_ref=data.get("dispatch_ref", defaults.dispatch_ref),
        automated_reviewers=data.get("automated_reviewers", defaults.automated_reviewers),
        bot_logins=data.get("bot_logins", defaults.bot_logins),
        max_retries=data.get("max_retries", 3),
        retry_base_delay_seconds=data.get("retry_base_delay_seconds", 1.0),
        timeout_seconds=data.get("timeout_seconds", 60),
    )


def _parse_claude_config(data: dict[str, Any]) -> ClaudeConfig:
    """Parse Claude configuration from dict."""
    credentials = data.get("credential_env_vars", ["ANTHROPIC_API_KEY"])
    if isinstance(credentials, str):
        credentials = [credentials]
    return ClaudeConfig(
        binary=data.get("binary", "claude"),
        max_turns=data.get("max_turns", 50),
        timeout_seconds=data.get("timeout_seconds", 1800),
        skip_permissions=data.get("skip_permissions", True),
        credential_env_vars=list(credentials),
    )


def _parse_retry_config(data: dict[str, Any]) -> RetryConfig:
    """Parse retry configuration from dict."""
    return RetryConfig(
        max_retries=data.get("max_retries", 3),
        backoff_base_seconds=data.get("backoff_base_seconds", 5.0),
        backoff_max_seconds=data.get("backoff_max_seconds", 30.0),
    )


def _parse_orchestration_config(data: dict[str, Any]) -> OrchestrationConfig:
    """Parse orchestration configuration from dict."""
    section = "orchestration"
    return OrchestrationConfig(
        max_ems=_positive_int(data, "max_ems", 3, section),
        max_workers_per_em=_positive_int(data, "max_workers_per_em", 3, section),
        review_wait_minutes=data.get("review_wait_minutes", 5),
        pr_label=data.get("pr_label"),
        dispatch_mode=_validate_dispatch_mode(data.get("dispatch_mode", "fanout")),
        sequential_max_steps=_positive_int(data, "sequential_max_steps", 200, section),
        max_retry_events=data.get("max_retry_events", 3),
        conflict_max_rounds=_positive_int(data, "conflict_max_rounds", 5, section),
        auto_merge_final_pr=data.get("auto_merge_final_pr", False),
    )


def _parse_git_config(data: dict[str, Any]) -> GitConfig:
    """Parse git configuration from dict."""
    prefix = data.get("branch_prefix", "swarm").strip("/")
    if not prefix:
        raise ConfigError("git.branch_prefix must not be empty")
    return GitConfig(
        base_branch=data.get("base_branch", "main"),
        branch_prefix=prefix,
        remote=data.get("remote", "origin"),
        user_name=data.get("user_name"),
        user_email=data.get("user_email"),
    )


def load_config(config_path: Optional[str] = None) -> IssueSwarmConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for config.yaml in current directory.

    Returns:
        IssueSwarmConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = "config.yaml"

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError("Configuration file is empty")
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    if "github" not in data:
        raise ConfigError("Missing required section: github")

    return IssueSwarmConfig(
        repo_root=data.get("repo_root", "."),
        swarm_dir=data.get("swarm_dir", ".swarm"),
        github=_parse_github_config(data.get("github") or {}),
        claude=_parse_claude_config(data.get("claude") or {}),
        retry=_parse_retry_config(data.get("retry") or {}),
        orchestration=_parse_orchestration_config(data.get("orchestration") or {}),
        git=_parse_git_config(data.get("git") or {}),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> IssueSwarmConfig:
    """
    Get the cached configuration, loading it if necessary.

    Falls back to IssueSwarmConfig.from_env() when no config file exists
    at the default location.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        if config_path is None and not Path("config.yaml").exists():
            _config_cache = IssueSwarmConfig.from_env()
        else:
            _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None

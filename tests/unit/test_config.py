"""Unit tests for configuration loading."""

import pytest

from issue_swarm.config import (
    ConfigError,
    IssueSwarmConfig,
    get_config,
    load_config,
)


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


class TestLoadConfig:
    """Tests for load_config."""

    def test_minimal_config_uses_defaults(self, tmp_path):
        config = load_config(write_config(tmp_path, "github:\n  repo: acme/widgets\n"))

        assert config.github.repo == "acme/widgets"
        assert config.github.owner == "acme"
        assert config.orchestration.max_ems == 3
        assert config.orchestration.max_workers_per_em == 3
        assert config.orchestration.review_wait_minutes == 5
        assert config.orchestration.dispatch_mode == "fanout"
        assert config.git.base_branch == "main"
        assert config.git.branch_prefix == "swarm"
        assert config.claude.credential_env_vars == ["ANTHROPIC_API_KEY"]

    def test_full_config(self, tmp_path):
        config = load_config(write_config(tmp_path, """
github:
  repo: acme/widgets
  automated_reviewers: [review-bot]
orchestration:
  max_ems: 2
  max_workers_per_em: 4
  review_wait_minutes: 0
  dispatch_mode: sequential
  pr_label: ai
git:
  base_branch: develop
  branch_prefix: /orch/
claude:
  credential_env_vars: KEY_A
"""))
        assert config.github.automated_reviewers == ["review-bot"]
        assert config.orchestration.max_ems == 2
        assert config.orchestration.max_workers_per_em == 4
        assert config.orchestration.dispatch_mode == "sequential"
        assert config.orchestration.pr_label == "ai"
        assert config.git.base_branch == "develop"
        assert config.git.branch_prefix == "orch"
        assert config.claude.credential_env_vars == ["KEY_A"]

    def test_env_var_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SWARM_TEST_REPO", "acme/gadgets")
        config = load_config(write_config(tmp_path, "github:\n  repo: ${SWARM_TEST_REPO}\n"))
        assert config.github.repo == "acme/gadgets"

    def test_missing_env_var_raises(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SWARM_TEST_MISSING", raising=False)
        with pytest.raises(ConfigError, match="SWARM_TEST_MISSING"):
            load_config(write_config(tmp_path, "github:\n  repo: ${SWARM_TEST_MISSING}\n"))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_empty_file(self, tmp_path):
        with pytest.raises(ConfigError, match="empty"):
            load_config(write_config(tmp_path, ""))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(write_config(tmp_path, "github: [unclosed\n"))

    def test_missing_github_section(self, tmp_path):
        with pytest.raises(ConfigError, match="github"):
            load_config(write_config(tmp_path, "orchestration:\n  max_ems: 1\n"))

    def test_repo_must_have_owner(self, tmp_path):
        with pytest.raises(ConfigError, match="owner/name"):
            load_config(write_config(tmp_path, "github:\n  repo: widgets\n"))

    def test_invalid_dispatch_mode(self, tmp_path):
        with pytest.raises(ConfigError, match="dispatch_mode"):
            load_config(write_config(
                tmp_path, "github:\n  repo: a/b\norchestration:\n  dispatch_mode: parallel\n"
            ))

    @pytest.mark.parametrize("value", [0, -1, "three", True])
    def test_max_ems_must_be_positive_int(self, tmp_path, value):
        with pytest.raises(ConfigError, match="max_ems"):
            load_config(write_config(
                tmp_path, f"github:\n  repo: a/b\norchestration:\n  max_ems: {value}\n"
            ))


class TestEnvironmentConfig:
    """Tests for IssueSwarmConfig.from_env and get_config fallback."""

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GITHUB_REPOSITORY", "acme/widgets")
        monkeypatch.setenv("SWARM_BASE_BRANCH", "trunk")
        monkeypatch.setenv("SWARM_DISPATCH_MODE", "sequential")
        config = IssueSwarmConfig.from_env(str(tmp_path))
        assert config.github.repo == "acme/widgets"
        assert config.git.base_branch == "trunk"
        assert config.orchestration.dispatch_mode == "sequential"

    def test_from_env_requires_repository(self, monkeypatch):
        monkeypatch.delenv("GITHUB_REPOSITORY", raising=False)
        with pytest.raises(ConfigError, match="GITHUB_REPOSITORY"):
            IssueSwarmConfig.from_env()

    def test_get_config_falls_back_to_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("GITHUB_REPOSITORY", "acme/widgets")
        assert get_config().github.repo == "acme/widgets"

    def test_get_config_caches(self, tmp_path):
        path = write_config(tmp_path, "github:\n  repo: acme/widgets\n")
        first = get_config(path)
        assert get_config(path) is first
        assert get_config(path, force_reload=True) is not first

    def test_paths(self, tmp_path):
        config = IssueSwarmConfig(repo_root=str(tmp_path))
        assert config.swarm_path == tmp_path / ".swarm"
        assert config.logs_path == tmp_path / ".swarm" / "logs"

    def test_github_token(self, monkeypatch):
        config = IssueSwarmConfig()
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        with pytest.raises(ConfigError):
            config.github.get_token()
        monkeypatch.setenv("GITHUB_TOKEN", "t0k")
        assert config.github.get_token() == "t0k"

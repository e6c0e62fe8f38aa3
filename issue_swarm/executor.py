"""
AI task executor for Issue Swarm.

This module provides a single synchronous call, execute_task(prompt),
backed by the Claude Code CLI:
- JSON envelope parsing and error subtype detection
- Error classification (rate limit, overload, auth, timeout)
- Retry with capped exponential backoff
- Credential rotation across several API keys on rate limits
"""

from __future__ import annotations

import json
import os
import subprocess
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from issue_swarm.errors import (
    CLINotFoundError,
    ErrorClassifier,
    LLMError,
    LLMErrorType,
)

if TYPE_CHECKING:
    from issue_swarm.config import IssueSwarmConfig
    from issue_swarm.logger import SwarmLogger

API_KEY_ENV_VAR = "ANTHROPIC_API_KEY"


@dataclass
class TaskResult:
    """Result of one execute_task call."""
    success: bool
    output: str = ""
    error: Optional[str] = None
    cost_usd: float = 0.0
    num_turns: int = 0
    duration_ms: int = 0
    attempts: int = 1


class CredentialPool:
    """
    Rotates between API keys named by environment variables.

    Variables that are unset are skipped; an empty pool means the CLI uses
    its own login.
    """

    def __init__(self, env_vars: list[str]) -> None:
        self._keys = [
            (name, os.environ[name]) for name in env_vars if os.environ.get(name)
        ]
        self._index = 0

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def current_name(self) -> Optional[str]:
        return self._keys[self._index][0] if self._keys else None

    def env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self._keys:
            env[API_KEY_ENV_VAR] = self._keys[self._index][1]
        return env

    def rotate(self) -> bool:
        """Move to the next key; False when there is nothing to rotate to."""
        if len(self._keys) < 2:
            return False
        self._index = (self._index + 1) % len(self._keys)
        return True


class ClaudeTaskExecutor:
    """
    Executes prompts with the Claude Code CLI inside the repository checkout.

    execute_task never raises for AI failures: they come back as
    TaskResult(success=False) so callers decide whether a failure is
    node-local or fatal.
    """

    def __init__(
        self,
        config: IssueSwarmConfig,
        logger: Optional[SwarmLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._logger = logger
        self._sleep = sleep
        self.credentials = CredentialPool(config.claude.credential_env_vars)

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "executor"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _build_command(self, prompt: str, max_turns: Optional[int] = None) -> list[str]:
        cmd = [
            self.config.claude.binary,
            "-p",
            "--output-format", "json",
            "--max-turns", str(max_turns or self.config.claude.max_turns),
        ]
        if self.config.claude.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        # Separator keeps prompts starting with "-" from parsing as options
        cmd.extend(["--", prompt])
        return cmd

    def _parse_output(self, stdout: str) -> dict[str, Any]:
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise LLMError(
                f"Failed to parse Claude output as JSON: {e}",
                error_type=LLMErrorType.UNKNOWN,
                stderr=stdout[:500],
            )
        if not isinstance(data, dict):
            raise LLMError("Claude output is not a JSON object", stderr=stdout[:500])
        return data

    def _backoff(self, attempt: int) -> float:
        retry = self.config.retry
        return min(retry.backoff_max_seconds, retry.backoff_base_seconds * (2 ** attempt))

    def _run_once(self, prompt: str, working_dir: Optional[str], max_turns: Optional[int]) -> TaskResult:
        """
        One CLI invocation.

        Raises:
            LLMError: Classified failure of this attempt.
        """
        cmd = self._build_command(prompt, max_turns)
        timeout_seconds = self.config.claude.timeout_seconds
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=working_dir or self.config.repo_root,
                timeout=timeout_seconds,
                env=self.credentials.env(),
            )
        except FileNotFoundError:
            raise CLINotFoundError(self.config.claude.binary)
        except subprocess.TimeoutExpired:
            raise LLMError(
                f"Claude CLI timed out after {timeout_seconds} seconds",
                error_type=LLMErrorType.TIMEOUT,
            )

        if proc.returncode != 0:
            error_type = ErrorClassifier.classify_claude_error(
                proc.stderr or "", proc.stdout or "", proc.returncode
            )
            raise ErrorClassifier.create_error(
                error_type,
                f"Claude CLI exited with code {proc.returncode}",
                stderr=(proc.stderr or proc.stdout or "")[:500],
                returncode=proc.returncode,
            )

        data = self._parse_output(proc.stdout)
        text = data.get("result", "") or ""
        if data.get("is_error") or str(data.get("subtype", "")).startswith("error_"):
            error_type = ErrorClassifier.classify_claude_error(text, "", 0)
            raise ErrorClassifier.create_error(
                error_type,
                f"Claude CLI returned error: {data.get('subtype') or text[:200]}",
                stderr=text[:500],
                returncode=0,
            )
        return TaskResult(
            success=True,
            output=text,
            cost_usd=data.get("total_cost_usd", 0.0) or 0.0,
            num_turns=data.get("num_turns", 0) or 0,
            duration_ms=data.get("duration_ms", 0) or 0,
        )

    def execute_task(
        self,
        prompt: str,
        *,
        working_dir: Optional[str] = None,
        max_turns: Optional[int] = None,
    ) -> TaskResult:
        """
        Run a prompt to completion.

        Retryable failures (rate limit, overload, timeout) are retried up to
        retry.max_retries times with capped exponential backoff; rate limits
        rotate to the next credential first.

        Returns:
            TaskResult. success=False carries the final error message.
        """
        max_retries = self.config.retry.max_retries
        self._log("task_start", {
            "prompt_length": len(prompt),
            "credential": self.credentials.current_name,
        })

        for attempt in range(max_retries + 1):
            try:
                result = self._run_once(prompt, working_dir, max_turns)
                result.attempts = attempt + 1
                self._log("task_complete", {
                    "cost_usd": result.cost_usd,
                    "num_turns": result.num_turns,
                    "duration_ms": result.duration_ms,
                    "attempts": result.attempts,
                })
                return result
            except LLMError as e:
                self._log("task_attempt_failed", {
                    "attempt": attempt + 1,
                    "error_type": e.error_type.name,
                    "error": str(e)[:300],
                }, level="warn")
                if not e.should_retry or attempt == max_retries:
                    return TaskResult(success=False, error=str(e), attempts=attempt + 1)
                if e.error_type == LLMErrorType.RATE_LIMIT and self.credentials.rotate():
                    self._log("credential_rotated", {"credential": self.credentials.current_name})
                self._sleep(self._backoff(attempt))

        return TaskResult(success=False, error="retries exhausted", attempts=max_retries + 1)

"""
Structured JSONL logging for Issue Swarm.

This module provides:
- JSONL event logging for debugging and audit trails
- Log files organized by issue and date
- Log levels (debug, info, warn, error)
- Context manager for issue-scoped logging
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from issue_swarm.config import IssueSwarmConfig, get_config


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class SwarmLogger:
    """
    JSONL event logger for Issue Swarm.

    Writes structured log entries to .swarm/logs/<name>-YYYY-MM-DD.jsonl,
    where name is "issue-<N>" inside an issue context and the logger's
    default name otherwise.

    Each log entry is a JSON object with:
    - timestamp: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - issue: Issue number, or null outside an issue context
    - data: Additional event data (dict)
    """

    def __init__(self, name: str = "orchestrator", config: Optional[IssueSwarmConfig] = None) -> None:
        """
        Initialize logger.

        Args:
            name: Log file stem used outside an issue context.
            config: Optional config to use. If not provided, loads from config.yaml.
        """
        self.name = name
        self._config = config
        self._current_issue: Optional[int] = None

    @property
    def config(self) -> IssueSwarmConfig:
        """Get configuration (lazy load)."""
        if self._config is None:
            self._config = get_config()
        return self._config

    @property
    def current_issue(self) -> Optional[int]:
        return self._current_issue

    def _stem(self) -> str:
        if self._current_issue is not None:
            return f"issue-{self._current_issue}"
        return self.name

    def _get_log_path(self, stem: Optional[str] = None, date: Optional[str] = None) -> Path:
        """Get the log file path for a stem and date (default today)."""
        logs_dir = self.config.logs_path
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return logs_dir / f"{stem or self._stem()}-{date}.jsonl"

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Write a log entry to the JSONL file."""
        log_path = self._get_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        with open(log_path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "event_received", "phase_transition").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "issue": self._current_issue,
            "data": data or {},
        }
        self._write_entry(entry)

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a debug event."""
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an info event."""
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a warning event."""
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an error event."""
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def issue_context(self, issue_number: int) -> Iterator[SwarmLogger]:
        """
        Context manager for issue-scoped logging.

        All logs within this context go to the issue's log file and carry
        its number.

        Example:
            with logger.issue_context(42) as log:
                log.info("event_routed", {"handler": "execute_worker"})
        """
        previous = self._current_issue
        self._current_issue = issue_number
        try:
            yield self
        finally:
            self._current_issue = previous

    def read_logs(
        self,
        issue_number: Optional[int] = None,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Args:
            issue_number: Issue whose log to read; default log when None.
            date: Date string (YYYY-MM-DD) to read. If None, reads today's logs.
            level: Filter by log level.
            event_type: Filter by event type.
            limit: Maximum number of entries to return.

        Returns:
            List of log entries matching the filters.
        """
        stem = f"issue-{issue_number}" if issue_number is not None else self.name
        log_path = self._get_log_path(stem, date)
        if not log_path.exists():
            return []

        entries = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue

                entries.append(entry)

                if limit and len(entries) >= limit:
                    break

        return entries


# Module-level logger cache
_logger_cache: dict[str, SwarmLogger] = {}


def get_logger(name: str = "orchestrator", config: Optional[IssueSwarmConfig] = None) -> SwarmLogger:
    """Get or create a named logger."""
    if name not in _logger_cache:
        _logger_cache[name] = SwarmLogger(name, config)
    return _logger_cache[name]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    global _logger_cache
    _logger_cache = {}

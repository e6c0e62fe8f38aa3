"""
Error taxonomy and classification for Issue Swarm.

This module provides:
- IssueSwarmError base class and the orchestration error taxonomy
- HostErrorKind / HostErrorClassifier for repository host (gh) output
- LLMErrorType / ErrorClassifier for AI task executor (claude) output
- Factory helpers that turn a classification into the matching exception
"""

from __future__ import annotations

import re
from enum import Enum, auto
from typing import Optional


class IssueSwarmError(Exception):
    """
    Base exception for orchestration errors.

    Carries a recoverable flag and optional free-form context that is
    copied into the error history when the error reaches the boundary.
    """

    def __init__(
        self,
        message: str,
        recoverable: bool = False,
        context: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.context = context


# =============================================================================
# Orchestration errors
# =============================================================================


class AnalysisError(IssueSwarmError):
    """Raised when the issue-level decomposition output is unusable."""

    def __init__(self, message: str, context: Optional[str] = None) -> None:
        super().__init__(message, recoverable=False, context=context)


class TaskFallback(IssueSwarmError):
    """Raised inside EM breakdown when worker tasks cannot be parsed."""

    def __init__(self, message: str, context: Optional[str] = None) -> None:
        super().__init__(message, recoverable=True, context=context)


class MergeConflictError(IssueSwarmError):
    """Raised when a branch cannot be merged or rebased cleanly."""

    def __init__(self, message: str, files: Optional[list[str]] = None) -> None:
        super().__init__(message, recoverable=True)
        self.files = files or []


class TerminalWorkflowError(IssueSwarmError):
    """Raised when an orchestration invariant is violated."""

    def __init__(self, message: str, context: Optional[str] = None) -> None:
        super().__init__(message, recoverable=False, context=context)


class VersionMismatch(IssueSwarmError):
    """Raised when the state file carries an unknown schema version."""

    def __init__(self, found: object, expected: int) -> None:
        super().__init__(
            f"Unsupported state version {found!r} (expected {expected})",
            recoverable=False,
        )
        self.found = found
        self.expected = expected


class StateStoreError(IssueSwarmError):
    """Raised when the state file exists but cannot be read."""
    pass


class WorkBranchExistsError(IssueSwarmError):
    """Raised when a concurrent invocation already created the work branch."""

    def __init__(self, branch: str) -> None:
        super().__init__(f"Work branch already exists on remote: {branch}", recoverable=True)
        self.branch = branch


class GitError(IssueSwarmError):
    """Raised when a git subprocess fails."""

    def __init__(self, message: str, stderr: str = "", returncode: int = -1) -> None:
        super().__init__(message, recoverable=False, context=stderr[:500] or None)
        self.stderr = stderr
        self.returncode = returncode


# =============================================================================
# Repository host errors
# =============================================================================


class HostErrorKind(Enum):
    """
    Classification of repository host failures.

    Drives the retry / skip / fatal decision at the host API boundary.
    """

    NO_COMMITS = auto()         # PR head has nothing to merge
    ALREADY_MERGED = auto()     # Merge requested on a merged PR
    BASE_MODIFIED = auto()      # Base moved during merge
    HEAD_MODIFIED = auto()      # Head moved during merge
    STATUS_CHECKS = auto()      # Required checks not passing
    NOT_MERGEABLE = auto()      # Conflicts with base
    ALREADY_EXISTS = auto()     # Ref, label or PR already present
    RATE_LIMITED = auto()       # Primary or secondary rate limit
    AUTH = auto()               # Bad credentials or forbidden
    TIMEOUT = auto()            # Command or network timeout
    SERVER_ERROR = auto()       # 5xx and connection failures
    NOT_FOUND = auto()          # 404
    VALIDATION = auto()         # 422 without a more specific match
    UNKNOWN = auto()

    @property
    def retryable(self) -> bool:
        return self in (
            HostErrorKind.RATE_LIMITED,
            HostErrorKind.SERVER_ERROR,
            HostErrorKind.TIMEOUT,
        )


class HostError(IssueSwarmError):
    """Raised when a repository host call fails."""

    def __init__(
        self,
        message: str,
        kind: HostErrorKind = HostErrorKind.UNKNOWN,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message, recoverable=kind.retryable)
        self.kind = kind
        self.status = status


class TransientHostError(HostError):
    """Network or API hiccup worth retrying with backoff."""
    pass


class NoOpSkip(HostError):
    """PR creation found no commits between head and base."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message, kind=HostErrorKind.NO_COMMITS, status=status)
        self.recoverable = True


class HostErrorClassifier:
    """
    Classifies repository host errors from gh CLI output.

    The host reports most conditions only as human-readable text, so the
    patterns below are matched in order and the first hit wins.
    """

    PATTERNS: list[tuple[HostErrorKind, list[str]]] = [
        (HostErrorKind.NO_COMMITS, [
            r"no\s+commits\s+between",
        ]),
        (HostErrorKind.ALREADY_MERGED, [
            r"already\s+(been\s+)?merged",
        ]),
        (HostErrorKind.BASE_MODIFIED, [
            r"base\s+branch\s+was\s+modified",
        ]),
        (HostErrorKind.HEAD_MODIFIED, [
            r"head\s+branch\s+was\s+modified",
        ]),
        (HostErrorKind.STATUS_CHECKS, [
            r"required\s+status\s+check",
        ]),
        (HostErrorKind.NOT_MERGEABLE, [
            r"not\s+mergeable",
            r"merge\s+conflict",
            r"\(http\s+405\)",
        ]),
        (HostErrorKind.ALREADY_EXISTS, [
            r"reference\s+already\s+exists",
            r"a\s+pull\s+request\s+already\s+exists",
            r"already_exists",
            r"already\s+exists",
        ]),
        (HostErrorKind.RATE_LIMITED, [
            r"api\s+rate\s+limit\s+exceeded",
            r"secondary\s+rate\s+limit",
            r"rate.?limit",
            r"\(http\s+429\)",
        ]),
        (HostErrorKind.AUTH, [
            r"bad\s+credentials",
            r"requires\s+authentication",
            r"\(http\s+401\)",
            r"\(http\s+403\)",
            r"gh\s+auth\s+login",
        ]),
        (HostErrorKind.TIMEOUT, [
            r"timed\s+out",
            r"timeout",
        ]),
        (HostErrorKind.SERVER_ERROR, [
            r"\(http\s+5\d\d\)",
            r"bad\s+gateway",
            r"service\s+unavailable",
            r"internal\s+server\s+error",
            r"connection\s+reset",
            r"could\s+not\s+resolve\s+host",
        ]),
        (HostErrorKind.NOT_FOUND, [
            r"\(http\s+404\)",
            r"not\s+found",
        ]),
        (HostErrorKind.VALIDATION, [
            r"\(http\s+422\)",
            r"validation\s+failed",
            r"\(http\s+400\)",
        ]),
    ]

    _STATUS_PATTERN = re.compile(r"\(HTTP\s+(\d{3})\)", re.IGNORECASE)

    @classmethod
    def classify(cls, text: str) -> HostErrorKind:
        """
        Classify host error text.

        Args:
            text: Combined stderr/stdout of the failed gh invocation.

        Returns:
            HostErrorKind classification.
        """
        for kind, patterns in cls.PATTERNS:
            if cls._matches_any(text, patterns):
                return kind
        return HostErrorKind.UNKNOWN

    @classmethod
    def extract_status(cls, text: str) -> Optional[int]:
        """Pull the HTTP status code out of gh error output, if present."""
        match = cls._STATUS_PATTERN.search(text)
        return int(match.group(1)) if match else None

    @classmethod
    def _matches_any(cls, text: str, patterns: list[str]) -> bool:
        """Check if text matches any of the given patterns."""
        for pattern in patterns:
            if re.search(pattern, text, re.IGNORECASE):
                return True
        return False

    @classmethod
    def create_error(cls, text: str, message: Optional[str] = None) -> HostError:
        """
        Create the appropriate exception for raw host error text.

        Args:
            text: Raw error output.
            message: Optional prefix naming the failed operation.

        Returns:
            NoOpSkip, TransientHostError or HostError.
        """
        kind = cls.classify(text)
        status = cls.extract_status(text)
        detail = text.strip()[:500]
        full = f"{message}: {detail}" if message else detail

        if kind == HostErrorKind.NO_COMMITS:
            return NoOpSkip(full, status=status)
        if kind.retryable:
            return TransientHostError(full, kind=kind, status=status)
        return HostError(full, kind=kind, status=status)


# =============================================================================
# AI task executor errors
# =============================================================================


class LLMErrorType(Enum):
    """
    Classification of AI CLI errors.

    Used to determine appropriate handling strategy (retry, rotate, stop).
    """

    AUTH_REQUIRED = auto()      # Not logged in or key rejected
    RATE_LIMIT = auto()         # Hit usage limits
    SERVER_OVERLOADED = auto()  # 529/503 errors
    TIMEOUT = auto()            # Command timed out
    CLI_CRASH = auto()          # Non-zero exit without a known pattern
    CLI_NOT_FOUND = auto()      # CLI binary not installed
    UNKNOWN = auto()


class LLMError(IssueSwarmError):
    """
    Base exception for AI executor errors.

    Includes error type classification for handling decisions.
    """

    def __init__(
        self,
        message: str,
        error_type: LLMErrorType = LLMErrorType.UNKNOWN,
        stderr: str = "",
        returncode: int = -1,
    ) -> None:
        super().__init__(message, recoverable=error_type in _RETRYABLE_LLM_ERRORS)
        self.error_type = error_type
        self.stderr = stderr
        self.returncode = returncode

    @property
    def should_retry(self) -> bool:
        """Check if this error is worth retrying."""
        return self.error_type in _RETRYABLE_LLM_ERRORS


_RETRYABLE_LLM_ERRORS = frozenset({
    LLMErrorType.RATE_LIMIT,
    LLMErrorType.SERVER_OVERLOADED,
    LLMErrorType.TIMEOUT,
})


class RateLimitError(LLMError):
    """Raised when the rate limit persists after all retries."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message, error_type=LLMErrorType.RATE_LIMIT, stderr=stderr)


class CLINotFoundError(LLMError):
    """Raised when the CLI binary is not found."""

    def __init__(self, cli_name: str) -> None:
        super().__init__(
            f"{cli_name} CLI not found. Please install it first.",
            error_type=LLMErrorType.CLI_NOT_FOUND,
        )
        self.cli_name = cli_name


class ErrorClassifier:
    """
    Classifies errors from AI CLI output.

    Uses pattern matching on stderr/stdout to determine error type.
    """

    AUTH_PATTERNS = [
        r"unauthorized",
        r"not\s+logged\s+in",
        r"login\s+required",
        r"authentication",
        r"invalid.?api.?key",
        r"permission\s+denied",
        r"\b401\b",
    ]

    RATE_LIMIT_PATTERNS = [
        r"rate.?limit",
        r"usage\s+limit\s+reached",
        r"too\s+many\s+requests",
        r"quota\s+exceeded",
        r"\b429\b",
    ]

    OVERLOAD_PATTERNS = [
        r"\b529\b",
        r"overloaded",
        r"\b503\b",
        r"service\s+unavailable",
    ]

    TIMEOUT_PATTERNS = [
        r"timed\s+out",
    ]

    @classmethod
    def classify_claude_error(
        cls,
        stderr: str,
        stdout: str = "",
        returncode: int = -1,
    ) -> LLMErrorType:
        """
        Classify a Claude CLI error based on output.

        Args:
            stderr: Standard error output from CLI
            stdout: Standard output from CLI
            returncode: Process return code

        Returns:
            LLMErrorType classification
        """
        combined = f"{stderr} {stdout}".lower()

        # Rate limits before auth: a 429 body can mention the API key
        if cls._matches_any(combined, cls.RATE_LIMIT_PATTERNS):
            return LLMErrorType.RATE_LIMIT

        if cls._matches_any(combined, cls.AUTH_PATTERNS):
            return LLMErrorType.AUTH_REQUIRED

        if cls._matches_any(combined, cls.OVERLOAD_PATTERNS):
            return LLMErrorType.SERVER_OVERLOADED

        if cls._matches_any(combined, cls.TIMEOUT_PATTERNS):
            return LLMErrorType.TIMEOUT

        if returncode != 0:
            return LLMErrorType.CLI_CRASH

        return LLMErrorType.UNKNOWN

    @classmethod
    def _matches_any(cls, text: str, patterns: list[str]) -> bool:
        """Check if text matches any of the given patterns."""
        for pattern in patterns:
            if re.search(pattern, text, re.IGNORECASE):
                return True
        return False

    @classmethod
    def create_error(
        cls,
        error_type: LLMErrorType,
        message: str,
        stderr: str = "",
        returncode: int = -1,
    ) -> LLMError:
        """
        Create an appropriate exception for the given error type.

        Args:
            error_type: The classified error type
            message: Human-readable error message
            stderr: Raw stderr output
            returncode: Process return code

        Returns:
            Appropriate LLMError subclass
        """
        if error_type == LLMErrorType.RATE_LIMIT:
            return RateLimitError(message, stderr)

        if error_type == LLMErrorType.CLI_NOT_FOUND:
            return CLINotFoundError("claude")

        return LLMError(
            message,
            error_type=error_type,
            stderr=stderr,
            returncode=returncode,
        )

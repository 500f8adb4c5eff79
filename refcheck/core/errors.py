"""
Error taxonomy for the verifier.

Scope of each error:
- ParseError: one document (skipped, reported)
- SandboxConnectionError: one document, or the whole run when the pool cannot be built
- PoolExhaustedError: the whole run
- SnippetTimeoutError: one document (schema torn down, reported)
- ComparisonMismatch: never fatal; raised only on explicit request

Statement failures inside snippets are not exceptions at all: the sandbox
records them as `Error` execution results.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from refcheck.models.results import ComparisonVerdict


class RefcheckError(Exception):
    """Base class for verifier errors."""


class ConfigError(RefcheckError):
    """Invalid run configuration."""


class ParseError(RefcheckError):
    """Malformed document (e.g. an unterminated fence)."""

    def __init__(self, document: str, line: int, reason: str) -> None:
        self.document = document
        self.line = line
        self.reason = reason
        super().__init__(f"{document}:{line}: {reason}")


class SandboxConnectionError(RefcheckError):
    """Connection-level fault talking to the oracle database."""

    def __init__(self, message: str, *, run_fatal: bool = False) -> None:
        self.run_fatal = run_fatal
        super().__init__(message)


class PoolExhaustedError(SandboxConnectionError):
    """No pooled connection became available within the acquire timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, run_fatal=True)


class SnippetTimeoutError(RefcheckError):
    """A statement or a whole document exceeded its time budget."""

    def __init__(self, message: str, *, ordinal: Optional[int] = None) -> None:
        self.ordinal = ordinal
        super().__init__(message)


class ComparisonMismatch(RefcheckError):
    """Documented and actual output differ."""

    def __init__(self, verdict: "ComparisonVerdict") -> None:
        self.verdict = verdict
        super().__init__(verdict.diff or "documented output does not match")

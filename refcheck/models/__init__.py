"""
Data models for the reference-snippet verifier.

This package contains Pydantic models for:
- Parsed documents and snippets
- Execution results and typed values
- Comparison verdicts and run reports
"""

from refcheck.models.snippet import (
    DocumentFormat,
    ExpectedOutput,
    Snippet,
    Document,
)

from refcheck.models.results import (
    ValueTag,
    Value,
    ResultKind,
    ExecutionResult,
    VerdictKind,
    ComparisonVerdict,
    SnippetOutcome,
    DocumentStatus,
    DocumentOutcome,
    RunReport,
)

__all__ = [
    # snippet
    "DocumentFormat",
    "ExpectedOutput",
    "Snippet",
    "Document",
    # results
    "ValueTag",
    "Value",
    "ResultKind",
    "ExecutionResult",
    "VerdictKind",
    "ComparisonVerdict",
    "SnippetOutcome",
    "DocumentStatus",
    "DocumentOutcome",
    "RunReport",
]

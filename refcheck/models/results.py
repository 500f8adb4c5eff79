"""
Execution and Verdict Models

Defines Pydantic models for everything a run produces:
- Value: tagged variant for a single database value
- ExecutionResult: outcome of running one snippet
- ComparisonVerdict: outcome of comparing it with the documented output
- SnippetOutcome / DocumentOutcome / RunReport: report aggregation
"""

import json
import math
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from refcheck.core.errors import ComparisonMismatch


class ValueTag(str, Enum):
    """Kinds of database values, used to dispatch comparison."""

    NULL = "null"
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    TEXT = "text"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    JSON = "json"
    ARRAY = "array"


def _render_interval(delta: timedelta) -> str:
    days = delta.days
    seconds = delta.seconds
    micros = delta.microseconds
    parts = []
    if days:
        parts.append(f"{days} day" if abs(days) == 1 else f"{days} days")
    if seconds or micros or not parts:
        hours, rem = divmod(seconds, 3600)
        minutes, secs = divmod(rem, 60)
        clock = f"{hours:02d}:{minutes:02d}:{secs:02d}"
        if micros:
            clock += f".{micros:06d}".rstrip("0")
        parts.append(clock)
    return " ".join(parts)


def _render_array_element(item: Any) -> str:
    if item is None:
        return "NULL"
    if isinstance(item, (list, tuple)):
        return "{" + ",".join(_render_array_element(i) for i in item) + "}"
    text = render_raw(item)
    if text == "" or any(ch in text for ch in ' ,{}"\\') or text.upper() == "NULL":
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def render_raw(raw: Any) -> str:
    """Render a raw Python value the way psql prints it."""
    if raw is None:
        return ""
    if isinstance(raw, bool):
        return "t" if raw else "f"
    if isinstance(raw, float):
        if math.isnan(raw):
            return "NaN"
        if math.isinf(raw):
            return "Infinity" if raw > 0 else "-Infinity"
        if raw.is_integer() and abs(raw) < 1e16:
            return str(int(raw))
        return repr(raw)
    if isinstance(raw, Decimal):
        return format(raw, "f") if raw.is_finite() else str(raw)
    if isinstance(raw, datetime):
        return raw.isoformat(sep=" ")
    if isinstance(raw, (date, time)):
        return raw.isoformat()
    if isinstance(raw, timedelta):
        return _render_interval(raw)
    if isinstance(raw, (list, tuple)):
        return "{" + ",".join(_render_array_element(i) for i in raw) + "}"
    if isinstance(raw, dict):
        return json.dumps(raw)
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(raw).hex()
    return str(raw)


class Value(BaseModel):
    """A single database value tagged with its comparison kind."""

    model_config = ConfigDict(frozen=True)

    tag: ValueTag = Field(..., description="Comparison kind")
    raw: Any = Field(None, description="Decoded Python value")
    type_name: Optional[str] = Field(None, description="Postgres type name")

    def render(self) -> str:
        """psql-style text rendering."""
        if self.tag == ValueTag.JSON and isinstance(self.raw, str):
            return self.raw
        return render_raw(self.raw)


class ResultKind(str, Enum):
    """Kinds of snippet execution outcomes."""

    ROW_SET = "row_set"
    SCALAR = "scalar"
    ERROR = "error"
    NO_OUTPUT = "no_output"
    SKIPPED = "skipped"


class ExecutionResult(BaseModel):
    """Outcome of running one snippet against the oracle."""

    kind: ResultKind = Field(..., description="Result kind")
    columns: List[str] = Field(default_factory=list, description="Column names")
    rows: List[List[Value]] = Field(default_factory=list, description="Row values")
    error_kind: Optional[str] = Field(None, description="Exception class name")
    sqlstate: Optional[str] = Field(None, description="SQLSTATE code")
    message: Optional[str] = Field(None, description="Error message")
    status: Optional[str] = Field(None, description="Command tag (e.g. INSERT 0 1)")
    reason: Optional[str] = Field(None, description="Why the snippet was skipped")
    notices: List[str] = Field(default_factory=list, description="Server notices")
    statements_executed: int = Field(0, ge=0, description="Statements run")
    duration_ms: float = Field(0.0, ge=0, description="Wall time (ms)")

    @classmethod
    def row_set(cls, columns: List[str], rows: List[List[Value]], **extra: Any) -> "ExecutionResult":
        if len(columns) == 1 and len(rows) == 1:
            return cls(kind=ResultKind.SCALAR, columns=columns, rows=rows, **extra)
        return cls(kind=ResultKind.ROW_SET, columns=columns, rows=rows, **extra)

    @classmethod
    def error(
        cls,
        error_kind: str,
        message: str,
        sqlstate: Optional[str] = None,
        **extra: Any,
    ) -> "ExecutionResult":
        return cls(
            kind=ResultKind.ERROR,
            error_kind=error_kind,
            message=message,
            sqlstate=sqlstate,
            **extra,
        )

    @classmethod
    def no_output(cls, status: Optional[str], **extra: Any) -> "ExecutionResult":
        return cls(kind=ResultKind.NO_OUTPUT, status=status, **extra)

    @classmethod
    def skipped(cls, reason: str) -> "ExecutionResult":
        return cls(kind=ResultKind.SKIPPED, reason=reason)

    @property
    def is_error(self) -> bool:
        return self.kind == ResultKind.ERROR

    @property
    def value(self) -> Optional[Value]:
        """The single value of a scalar result."""
        if self.kind != ResultKind.SCALAR:
            return None
        return self.rows[0][0]

    def render_lines(self) -> List[str]:
        """Render the result in psql's unaligned-ish form for diffs and logs."""
        lines = [f"NOTICE:  {n}" for n in self.notices]
        if self.kind in (ResultKind.ROW_SET, ResultKind.SCALAR):
            lines.append(" | ".join(self.columns))
            lines.extend(" | ".join(v.render() for v in row) for row in self.rows)
            count = len(self.rows)
            lines.append(f"({count} row)" if count == 1 else f"({count} rows)")
        elif self.kind == ResultKind.ERROR:
            lines.append(f"ERROR:  {self.message}")
        elif self.kind == ResultKind.NO_OUTPUT:
            if self.status:
                lines.append(self.status)
        else:
            lines.append(f"(skipped: {self.reason})")
        return lines


class VerdictKind(str, Enum):
    """Outcome of comparing actual and documented output."""

    MATCH = "match"
    MISMATCH = "mismatch"
    UNVERIFIABLE = "unverifiable"


class ComparisonVerdict(BaseModel):
    """Result of the comparator for one snippet."""

    kind: VerdictKind = Field(..., description="Verdict")
    expected: Optional[str] = Field(None, description="Documented output")
    actual: Optional[str] = Field(None, description="Actual output rendering")
    diff: Optional[str] = Field(None, description="Unified diff for mismatches")
    reason: Optional[str] = Field(None, description="Short explanation")

    @classmethod
    def match(cls, reason: Optional[str] = None) -> "ComparisonVerdict":
        return cls(kind=VerdictKind.MATCH, reason=reason)

    @classmethod
    def unverifiable(cls, reason: str) -> "ComparisonVerdict":
        return cls(kind=VerdictKind.UNVERIFIABLE, reason=reason)

    @classmethod
    def mismatch(
        cls, expected: str, actual: str, diff: str, reason: str
    ) -> "ComparisonVerdict":
        return cls(
            kind=VerdictKind.MISMATCH,
            expected=expected,
            actual=actual,
            diff=diff,
            reason=reason,
        )

    def raise_for_mismatch(self) -> None:
        """Raise ComparisonMismatch when this verdict is a mismatch."""
        if self.kind == VerdictKind.MISMATCH:
            raise ComparisonMismatch(self)


class SnippetOutcome(BaseModel):
    """Everything recorded for one snippet in one run."""

    ordinal: int = Field(..., ge=1)
    line: int = Field(..., ge=1)
    section: Optional[str] = None
    sql: str
    result: Optional[ExecutionResult] = Field(
        None, description="None when the snippet never ran"
    )
    verdict: ComparisonVerdict
    blocked_by: List[int] = Field(
        default_factory=list, description="Dependencies that ended in an error"
    )
    aborted: bool = Field(False, description="Not run because the document aborted")

    @property
    def is_error(self) -> bool:
        return self.result is not None and self.result.is_error


class DocumentStatus(str, Enum):
    """Terminal status of a document in a run."""

    COMPLETED = "completed"
    PARSE_ERROR = "parse_error"
    CONNECTION_ERROR = "connection_error"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


class DocumentOutcome(BaseModel):
    """Per-document outcome, including partial results of aborted runs."""

    document: str
    path: Optional[str] = None
    status: DocumentStatus = DocumentStatus.COMPLETED
    total_snippets: int = Field(0, ge=0)
    snippets: List[SnippetOutcome] = Field(default_factory=list)
    schema_name: Optional[str] = None
    error_message: Optional[str] = None

    def _count(self, kind: VerdictKind) -> int:
        return sum(1 for s in self.snippets if s.verdict.kind == kind)

    @property
    def matches(self) -> int:
        return self._count(VerdictKind.MATCH)

    @property
    def mismatches(self) -> int:
        return self._count(VerdictKind.MISMATCH)

    @property
    def unverifiable(self) -> int:
        return self._count(VerdictKind.UNVERIFIABLE)

    @property
    def errors(self) -> int:
        return sum(1 for s in self.snippets if s.is_error)

    @property
    def ok(self) -> bool:
        return self.status == DocumentStatus.COMPLETED and self.mismatches == 0

    def summary(self) -> Dict[str, Any]:
        """One summary record for the structured report."""
        return {
            "document": self.document,
            "status": self.status.value,
            "total_snippets": self.total_snippets,
            "matches": self.matches,
            "mismatches": self.mismatches,
            "unverifiable": self.unverifiable,
            "errors": self.errors,
        }


class RunReport(BaseModel):
    """Aggregated outcome of one verifier run."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None
    documents: List[DocumentOutcome] = Field(default_factory=list)
    fatal_error: Optional[str] = Field(
        None, description="Run-fatal cause (pool failure, global timeout)"
    )

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def totals(self) -> Dict[str, int]:
        keys = ("total_snippets", "matches", "mismatches", "unverifiable", "errors")
        totals = {k: 0 for k in keys}
        for doc in self.documents:
            summary = doc.summary()
            for k in keys:
                totals[k] += summary[k]
        totals["documents"] = len(self.documents)
        return totals

    @property
    def exit_code(self) -> int:
        """0 when everything verifiable matched, 1 on failures, 2 when run-fatal."""
        if self.fatal_error:
            return 2
        if all(doc.ok for doc in self.documents):
            return 0
        return 1

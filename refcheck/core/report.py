"""
Report Generator

Aggregates document outcomes into a run report and renders it:
- text for the console (with a unified diff per mismatch)
- JSON (full report) or Parquet (one summary row per document)
"""

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pyarrow as pa
import pyarrow.parquet as pq

from refcheck.models import DocumentOutcome, RunReport, VerdictKind

logger = logging.getLogger(__name__)

SUMMARY_SCHEMA = pa.schema(
    [
        ("document", pa.string()),
        ("status", pa.string()),
        ("total_snippets", pa.int64()),
        ("matches", pa.int64()),
        ("mismatches", pa.int64()),
        ("unverifiable", pa.int64()),
        ("errors", pa.int64()),
    ]
)


def build_report(
    outcomes: Iterable[DocumentOutcome],
    *,
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
    fatal_error: Optional[str] = None,
) -> RunReport:
    """Aggregate document outcomes (kept in the given order) into a run report."""
    report = RunReport(
        documents=list(outcomes),
        finished_at=finished_at or datetime.now(UTC),
        fatal_error=fatal_error,
    )
    if started_at is not None:
        report.started_at = started_at
    return report


def summarize(report: RunReport) -> List[Dict[str, Any]]:
    """One summary record per document, in report order."""
    return [doc.summary() for doc in report.documents]


def _document_lines(doc: DocumentOutcome) -> List[str]:
    lines = [
        f"{doc.document}: {doc.status.value} "
        f"({doc.matches} match, {doc.mismatches} mismatch, "
        f"{doc.unverifiable} unverifiable, {doc.errors} error)"
    ]
    if doc.error_message:
        lines.append(f"  {doc.error_message}")
    for snippet in doc.snippets:
        if snippet.verdict.kind != VerdictKind.MISMATCH:
            continue
        where = f" [{snippet.section}]" if snippet.section else ""
        lines.append(
            f"  MISMATCH {doc.document}#{snippet.ordinal} line {snippet.line}{where}: "
            f"{snippet.verdict.reason}"
        )
        if snippet.blocked_by:
            lines.append(
                "    depends on failed snippet(s) "
                + ", ".join(f"#{n}" for n in snippet.blocked_by)
            )
        if snippet.verdict.diff:
            lines.extend("    " + line for line in snippet.verdict.diff.split("\n"))
    return lines


def render_text(report: RunReport) -> str:
    """Human-readable report."""
    lines: List[str] = []
    for doc in report.documents:
        lines.extend(_document_lines(doc))

    totals = report.totals()
    lines.append("")
    lines.append(
        f"{totals['documents']} document(s), {totals['total_snippets']} snippet(s): "
        f"{totals['matches']} match, {totals['mismatches']} mismatch, "
        f"{totals['unverifiable']} unverifiable, {totals['errors']} error"
    )
    if report.duration_seconds is not None:
        lines.append(f"finished in {report.duration_seconds:.2f}s")
    if report.fatal_error:
        lines.append(f"RUN ABORTED: {report.fatal_error}")
    return "\n".join(lines)


def write_report(report: RunReport, path: Path) -> Path:
    """
    Write the report, choosing the format by file extension.

    Args:
        report: Run report
        path: `.json` (full report) or `.parquet` (summary table)

    Returns:
        The path written

    Raises:
        ValueError: unsupported extension
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in (".json", ".parquet"):
        raise ValueError(f"Unsupported report format: {path.suffix or path.name}")

    path.parent.mkdir(parents=True, exist_ok=True)
    if suffix == ".json":
        path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    else:
        table = pa.Table.from_pylist(summarize(report), schema=SUMMARY_SCHEMA)
        pq.write_table(table, path, compression="snappy")

    logger.info("Report written to %s (%d document(s))", path, len(report.documents))
    return path

"""
Verification Runner

Coordinates a whole run:
- loads documents (parse failures are recorded, not raised)
- runs documents in parallel, bounded by the connection budget
- runs each document's snippets strictly in order (a fold that stops at
  the first fatal error but keeps everything recorded so far)
- enforces per-document and run-wide timeouts
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Sequence, Union

from refcheck.connectors.postgres_pool import PostgresConnectionPool
from refcheck.core.comparator import ResultComparator
from refcheck.core.errors import (
    ConfigError,
    ParseError,
    PoolExhaustedError,
    SandboxConnectionError,
    SnippetTimeoutError,
)
from refcheck.core.extractor import discover_documents, load_document
from refcheck.core.report import build_report
from refcheck.core.run_config import RunOptions
from refcheck.core.sandbox import ExecutionSandbox
from refcheck.models import (
    ComparisonVerdict,
    Document,
    DocumentOutcome,
    DocumentStatus,
    RunReport,
    SnippetOutcome,
    VerdictKind,
)

logger = logging.getLogger(__name__)

LoadedDocument = Union[Document, ParseError]


def load_documents(root: Path, options: RunOptions) -> List[LoadedDocument]:
    """
    Discover and parse every document under `root`.

    Parse failures are returned in place of their document so the report
    can list them in discovery order.

    Raises:
        ConfigError: a snippet selector names an unknown snippet
    """
    loaded: List[LoadedDocument] = []
    for path in discover_documents(root, options.include, options.exclude):
        try:
            document = load_document(path, root)
        except ParseError as e:
            logger.error("Parse error: %s", e)
            loaded.append(e)
            continue

        if options.only:
            ordinals = options.only.get(document.name)
            if ordinals is None:
                continue
            try:
                document = document.restricted_to(ordinals)
            except KeyError as e:
                raise ConfigError(str(e.args[0])) from e
        loaded.append(document)

    if options.only:
        known = {d.name for d in loaded if isinstance(d, Document)}
        for name in options.only:
            if name not in known:
                logger.warning("Snippet selector names unknown document %s", name)
    return loaded


async def run_document(
    document: Document,
    sandbox: ExecutionSandbox,
    comparator: ResultComparator,
    outcome: DocumentOutcome,
) -> DocumentOutcome:
    """
    Execute a document's snippets in order, appending to `outcome` as it goes.

    Fatal errors (connection faults, timeouts) propagate after the sandbox
    has been torn down; outcomes recorded before the failure stay in place.
    """
    failed: set[int] = set()
    async with sandbox.session(document) as session:
        outcome.schema_name = session.schema
        for snippet in document.snippets:
            result = await session.execute(snippet)
            verdict = comparator.compare(snippet, result)
            blocked = sorted(d for d in snippet.depends_on if d in failed)
            if result.is_error:
                failed.add(snippet.ordinal)
                if blocked:
                    logger.info(
                        "%s failed after its dependencies %s failed",
                        snippet.label,
                        blocked,
                    )
            if verdict.kind == VerdictKind.MISMATCH:
                logger.warning("%s mismatch: %s\n%s", snippet.label, verdict.reason, verdict.diff)
            outcome.snippets.append(
                SnippetOutcome(
                    ordinal=snippet.ordinal,
                    line=snippet.line,
                    section=snippet.section,
                    sql=snippet.sql,
                    result=result,
                    verdict=verdict,
                    blocked_by=blocked,
                )
            )
    outcome.status = DocumentStatus.COMPLETED
    return outcome


def _mark_not_run(document: Document, outcome: DocumentOutcome, reason: str) -> None:
    seen = {s.ordinal for s in outcome.snippets}
    for snippet in document.snippets:
        if snippet.ordinal in seen:
            continue
        outcome.snippets.append(
            SnippetOutcome(
                ordinal=snippet.ordinal,
                line=snippet.line,
                section=snippet.section,
                sql=snippet.sql,
                result=None,
                verdict=ComparisonVerdict.unverifiable(f"not run: {reason}"),
                aborted=True,
            )
        )


class VerificationRunner:
    """
    Runs documents against the oracle and builds the run report.

    Args:
        pool: Connection pool (one connection per running document)
        options: Effective run options
    """

    def __init__(self, pool: PostgresConnectionPool, options: RunOptions) -> None:
        self.pool = pool
        self.options = options
        self.sandbox = ExecutionSandbox(pool, options)
        self.comparator = ResultComparator(
            float_tolerance=options.float_tolerance,
            volatile_functions=options.volatile_functions,
        )

    @property
    def workers(self) -> int:
        requested = self.options.workers or self.pool.max_size
        if requested > self.pool.max_size:
            logger.warning(
                "Requested %d workers but the pool holds %d connections; using %d",
                requested,
                self.pool.max_size,
                self.pool.max_size,
            )
            return self.pool.max_size
        return requested

    async def _run_one(self, document: Document, outcome: DocumentOutcome) -> None:
        """Run one document; document-level failures are recorded on `outcome`."""
        timeout = self.options.document_timeout
        cancelled = False
        try:
            if timeout:
                await asyncio.wait_for(
                    run_document(document, self.sandbox, self.comparator, outcome),
                    timeout=timeout,
                )
            else:
                await run_document(document, self.sandbox, self.comparator, outcome)
        except asyncio.TimeoutError:
            outcome.status = DocumentStatus.TIMEOUT
            outcome.error_message = f"document exceeded {timeout:.1f}s"
        except SnippetTimeoutError as e:
            outcome.status = DocumentStatus.TIMEOUT
            outcome.error_message = str(e)
        except SandboxConnectionError as e:
            outcome.status = DocumentStatus.CONNECTION_ERROR
            outcome.error_message = str(e)
            if e.run_fatal:
                raise
        except asyncio.CancelledError:
            # the run-wide timeout records its own reason
            cancelled = True
            raise
        except Exception as e:
            logger.exception("%s: unexpected failure", document.name)
            outcome.status = DocumentStatus.ABORTED
            outcome.error_message = f"internal error: {type(e).__name__}: {e}"
        finally:
            if not cancelled and outcome.status != DocumentStatus.COMPLETED:
                _mark_not_run(document, outcome, outcome.status.value)

        if outcome.status == DocumentStatus.COMPLETED:
            logger.info(
                "%s: %d snippet(s), %d match, %d mismatch, %d unverifiable, %d error",
                document.name,
                outcome.total_snippets,
                outcome.matches,
                outcome.mismatches,
                outcome.unverifiable,
                outcome.errors,
            )
        else:
            logger.error("%s: %s (%s)", document.name, outcome.status.value, outcome.error_message)

    async def run(self, documents: Sequence[LoadedDocument]) -> RunReport:
        """
        Run every document and return the report.

        The report lists every document, including parse failures and
        documents aborted by a run-fatal error or the run-wide timeout.
        """
        report = RunReport()
        outcomes: List[DocumentOutcome] = []
        runnable: Dict[int, Document] = {}

        for index, entry in enumerate(documents):
            if isinstance(entry, ParseError):
                outcomes.append(
                    DocumentOutcome(
                        document=entry.document,
                        status=DocumentStatus.PARSE_ERROR,
                        error_message=str(entry),
                    )
                )
                continue
            outcomes.append(
                DocumentOutcome(
                    document=entry.name,
                    path=entry.path,
                    status=DocumentStatus.ABORTED,
                    total_snippets=len(entry.snippets),
                )
            )
            runnable[index] = entry
        report.documents = outcomes

        if runnable:
            try:
                await self.pool.initialize()
            except SandboxConnectionError as e:
                report.fatal_error = str(e)
                for index, document in runnable.items():
                    outcomes[index].error_message = str(e)
                    _mark_not_run(document, outcomes[index], "oracle unavailable")
                runnable = {}

        if runnable:
            await self._run_all(runnable, outcomes, report)
            logger.info("Pool after run: %s", self.pool.get_pool_stats())

        return build_report(
            outcomes,
            started_at=report.started_at,
            fatal_error=report.fatal_error,
        )

    async def _run_all(
        self,
        runnable: Dict[int, Document],
        outcomes: List[DocumentOutcome],
        report: RunReport,
    ) -> None:
        semaphore = asyncio.Semaphore(self.workers)
        abort = asyncio.Event()

        async def worker(document: Document, outcome: DocumentOutcome) -> None:
            async with semaphore:
                if abort.is_set():
                    outcome.error_message = report.fatal_error
                    _mark_not_run(document, outcome, "run aborted")
                    return
                try:
                    await self._run_one(document, outcome)
                except PoolExhaustedError as e:
                    report.fatal_error = report.fatal_error or str(e)
                    abort.set()
                except SandboxConnectionError as e:
                    report.fatal_error = report.fatal_error or str(e)
                    abort.set()

        tasks: Dict[asyncio.Task, int] = {
            asyncio.create_task(
                worker(document, outcomes[index]), name=f"refcheck:{document.name}"
            ): index
            for index, document in runnable.items()
        }

        done, pending = await asyncio.wait(tasks, timeout=self.options.run_timeout)

        if pending:
            report.fatal_error = report.fatal_error or (
                f"run exceeded {self.options.run_timeout:.1f}s"
            )
            logger.error(
                "Run timeout: cancelling %d document(s) still executing", len(pending)
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                index = tasks[task]
                outcome = outcomes[index]
                started = outcome.schema_name is not None
                if started and outcome.status != DocumentStatus.COMPLETED:
                    outcome.status = DocumentStatus.TIMEOUT
                outcome.error_message = outcome.error_message or report.fatal_error
                _mark_not_run(runnable[index], outcome, "run timeout")

        for task in done:
            # surface harness bugs instead of reporting them as verdicts
            task.result()

"""
Execution Sandbox

Runs one document's snippets on one pooled connection inside a freshly
created, uniquely named schema. Every exit path tears the schema down.

Isolation modes:
- transaction: the whole document runs in one transaction that is rolled
  back at the end; each snippet gets its own savepoint so a failing
  statement does not poison the snippets after it
- schema: statements autocommit; the sandbox schema and any schema the
  document created are dropped

A document that issues its own BEGIN/COMMIT/ROLLBACK always runs in schema
mode, since committing would end the surrounding document transaction.

Statement failures and values the driver cannot decode become `Error`
results. Connection faults and timeouts are raised, since they end the
document.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Iterable, Optional

import asyncpg
from asyncpg.exceptions import InternalClientError, QueryCanceledError

from refcheck.core.errors import SandboxConnectionError, SnippetTimeoutError
from refcheck.core.statements import (
    SqlLexError,
    controls_transaction,
    created_schemas,
    split_statements,
)
from refcheck.core.values import to_value
from refcheck.models import Document, ExecutionResult, Snippet

if TYPE_CHECKING:
    from refcheck.connectors.postgres_pool import PostgresConnectionPool
    from refcheck.core.run_config import RunOptions

logger = logging.getLogger(__name__)

# SQLSTATE classes that mean the session itself is gone.
_FATAL_SQLSTATE_PREFIXES = ("08", "57P")
_CLIENT_TIMEOUT_GRACE = 5.0
_TEARDOWN_TIMEOUT = 30.0
_MAX_IDENTIFIER = 63


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def make_schema_name(prefix: str, document: str) -> str:
    """Unique, valid schema name for one document run."""
    suffix = uuid.uuid4().hex[:8]
    budget = _MAX_IDENTIFIER - len(prefix) - len(suffix) - 2
    slug = re.sub(r"[^a-z0-9]+", "_", document.lower()).strip("_")[: max(budget, 0)]
    slug = slug.rstrip("_") or "doc"
    return f"{prefix}_{slug}_{suffix}"


def is_connection_fault(exc: BaseException) -> bool:
    """True when an exception means the session can no longer be used."""
    if isinstance(exc, asyncpg.PostgresError):
        sqlstate = getattr(exc, "sqlstate", None) or ""
        return sqlstate.startswith(_FATAL_SQLSTATE_PREFIXES)
    return isinstance(exc, (asyncpg.InterfaceError, OSError))


def document_schemas(document: Document) -> set[str]:
    """Schemas the document's snippets create by name."""
    names: set[str] = set()
    for snippet in document.snippets:
        try:
            names |= created_schemas(snippet.sql)
        except SqlLexError:
            continue
    return names


def manages_transactions(document: Document) -> bool:
    """True when any snippet begins or ends a transaction itself."""
    for snippet in document.snippets:
        try:
            if controls_transaction(snippet.sql):
                return True
        except SqlLexError:
            continue
    return False


class SandboxSession:
    """One document's scoped session: a connection bound to a sandbox schema."""

    def __init__(
        self,
        conn: asyncpg.Connection,
        schema: str,
        *,
        transactional: bool = True,
        statement_timeout: float = 30.0,
        extra_schemas: Iterable[str] = (),
    ) -> None:
        self.conn = conn
        self.schema = schema
        self.transactional = transactional
        self.statement_timeout = statement_timeout
        self.extra_schemas = set(extra_schemas) - {schema}
        # schemas created during this session, dropped with the sandbox
        self.owned_schemas: list[str] = []
        self.server_version: Optional[int] = None
        self._tx = None
        self._notices: list[str] = []
        self._listening = False

    @property
    def _client_timeout(self) -> float:
        return self.statement_timeout + _CLIENT_TIMEOUT_GRACE

    def _on_log(self, connection, message) -> None:
        self._notices.append(getattr(message, "message", None) or str(message))

    async def open(self) -> None:
        """Create the sandbox schema and point the session at it."""
        # asyncpg folds months and hours into a timedelta; keep psql's text
        await self.conn.set_type_codec(
            "interval",
            schema="pg_catalog",
            encoder=str,
            decoder=str,
            format="text",
        )
        if self.transactional:
            self._tx = self.conn.transaction()
            await self._tx.start()
        elif self.extra_schemas:
            rows = await self.conn.fetch(
                "SELECT nspname FROM pg_namespace WHERE nspname = ANY($1::text[])",
                sorted(self.extra_schemas),
            )
            shared = {row["nspname"] for row in rows}
            self.owned_schemas = sorted(self.extra_schemas - shared)
            if shared:
                logger.warning(
                    "Sandbox %s: schema(s) %s already exist and will be left in place",
                    self.schema,
                    ", ".join(sorted(shared)),
                )
        schema = quote_ident(self.schema)
        await self.conn.execute(f"CREATE SCHEMA {schema}")
        await self.conn.execute(f"SET search_path TO {schema}, public")
        await self.conn.execute(
            f"SET statement_timeout = {int(self.statement_timeout * 1000)}"
        )
        self.conn.add_log_listener(self._on_log)
        self._listening = True
        self.server_version = self.conn.get_server_version().major
        logger.debug(
            "Sandbox %s opened (transactional=%s, server=%s)",
            self.schema,
            self.transactional,
            self.server_version,
        )

    async def close(self) -> None:
        """Roll back, drop the schema, and leave the connection clean for the pool."""
        if self._listening:
            self.conn.remove_log_listener(self._on_log)
            self._listening = False
        if self._tx is not None:
            tx, self._tx = self._tx, None
            await tx.rollback()
        elif self.conn.is_in_transaction():
            # a snippet left its own transaction open
            await self.conn.execute("ROLLBACK")
        await self.conn.execute(self.drop_statement())
        if not self.transactional:
            await self.conn.execute("RESET search_path")
            await self.conn.execute("RESET statement_timeout")

    def drop_statement(self) -> str:
        names = ", ".join(quote_ident(s) for s in [*self.owned_schemas, self.schema])
        return f"DROP SCHEMA IF EXISTS {names} CASCADE"

    async def _recover(self, savepoint, snippet: Snippet) -> None:
        """Undo a failed snippet so the ones after it still run."""
        try:
            if savepoint is not None:
                await savepoint.rollback()
            elif self.conn.is_in_transaction():
                await self.conn.execute("ROLLBACK")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise SandboxConnectionError(
                f"{snippet.label}: cannot roll back after failure: {e}"
            ) from e

    def abort(self) -> None:
        """Kill the underlying connection; the server rolls back whatever is open."""
        self._tx = None
        self._listening = False
        if not self.conn.is_closed():
            self.conn.terminate()

    async def _run_statement(self, sql: str) -> ExecutionResult:
        stmt = await self.conn.prepare(sql, timeout=self._client_timeout)
        attributes = stmt.get_attributes()
        records = await stmt.fetch(timeout=self._client_timeout)
        if not attributes:
            return ExecutionResult.no_output(stmt.get_statusmsg())
        columns = [attr.name for attr in attributes]
        type_names = [attr.type.name for attr in attributes]
        rows = [
            [to_value(record[i], type_names[i]) for i in range(len(columns))]
            for record in records
        ]
        return ExecutionResult.row_set(columns, rows)

    def skip_reason(self, snippet: Snippet) -> Optional[str]:
        if snippet.skipped:
            return "marked skip"
        if (
            snippet.min_server_version is not None
            and self.server_version is not None
            and self.server_version < snippet.min_server_version
        ):
            return (
                f"requires PostgreSQL {snippet.min_server_version}, "
                f"oracle is {self.server_version}"
            )
        return None

    async def execute(self, snippet: Snippet) -> ExecutionResult:
        """
        Execute a snippet's statements in order.

        The snippet's result is its last statement's result; the first
        failing statement stops the snippet and becomes an `Error` result.

        Raises:
            SandboxConnectionError: the connection broke
            SnippetTimeoutError: a statement hit the statement timeout
        """
        reason = self.skip_reason(snippet)
        if reason:
            return ExecutionResult.skipped(reason)

        try:
            statements = split_statements(snippet.sql)
        except SqlLexError as e:
            return ExecutionResult.error(type(e).__name__, str(e))
        if not statements:
            return ExecutionResult.no_output(None)

        self._notices = []
        started = time.perf_counter()
        executed = 0
        savepoint = None
        try:
            if self.transactional:
                savepoint = self.conn.transaction()
                await savepoint.start()
            result = ExecutionResult.no_output(None)
            for sql in statements:
                result = await self._run_statement(sql)
                executed += 1
            if savepoint is not None:
                await savepoint.commit()
        except QueryCanceledError as e:
            raise SnippetTimeoutError(
                f"{snippet.label}: statement cancelled after "
                f"{self.statement_timeout:.1f}s: {e}",
                ordinal=snippet.ordinal,
            ) from e
        except asyncio.TimeoutError as e:
            raise SnippetTimeoutError(
                f"{snippet.label}: no response within {self._client_timeout:.1f}s",
                ordinal=snippet.ordinal,
            ) from e
        except asyncpg.PostgresError as e:
            if is_connection_fault(e):
                raise SandboxConnectionError(f"{snippet.label}: {e}") from e
            await self._recover(savepoint, snippet)
            logger.debug("%s raised %s: %s", snippet.label, type(e).__name__, e)
            result = ExecutionResult.error(
                type(e).__name__, str(e), sqlstate=getattr(e, "sqlstate", None)
            )
        except (ValueError, OverflowError, InternalClientError) as e:
            # e.g. BC dates and years past 9999 have no Python equivalent
            await self._recover(savepoint, snippet)
            logger.debug("%s returned an undecodable value: %s", snippet.label, e)
            result = ExecutionResult.error(
                type(e).__name__, f"cannot decode result: {e}"
            )
        except (asyncpg.InterfaceError, OSError) as e:
            raise SandboxConnectionError(f"{snippet.label}: {e}") from e

        return result.model_copy(
            update={
                "notices": list(self._notices),
                "statements_executed": executed,
                "duration_ms": (time.perf_counter() - started) * 1000.0,
            }
        )


class ExecutionSandbox:
    """
    Hands out scoped sandbox sessions on a shared connection pool.

    Usage:
        sandbox = ExecutionSandbox(pool, options)
        async with sandbox.session(document) as session:
            result = await session.execute(document.snippets[0])
    """

    def __init__(self, pool: "PostgresConnectionPool", options: "RunOptions") -> None:
        self.pool = pool
        self.options = options

    @asynccontextmanager
    async def session(self, document: Document) -> AsyncIterator[SandboxSession]:
        """
        Acquire a connection and a fresh schema for `document`.

        The schema is dropped and the connection released on every exit path,
        including errors and cancellation.
        """
        schema = make_schema_name(self.options.schema_prefix, document.name)
        transactional = self.options.isolation_mode == "transaction"
        if transactional and manages_transactions(document):
            logger.info(
                "%s controls its own transactions; running it with autocommit",
                document.name,
            )
            transactional = False
        async with self.pool.get_connection() as conn:
            session = SandboxSession(
                conn,
                schema,
                transactional=transactional,
                statement_timeout=self.options.statement_timeout,
                extra_schemas=() if transactional else document_schemas(document),
            )
            clean = False
            try:
                try:
                    await session.open()
                except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                    raise SandboxConnectionError(
                        f"{document.name}: cannot create sandbox {schema}: {e}"
                    ) from e
                logger.info("Sandbox %s created for %s", schema, document.name)
                yield session
                clean = True
            finally:
                await self._teardown(session, clean)

    async def _teardown(self, session: SandboxSession, clean: bool) -> None:
        if clean:
            try:
                await asyncio.wait_for(session.close(), timeout=_TEARDOWN_TIMEOUT)
                logger.info("Sandbox %s dropped", session.schema)
                return
            except (
                asyncpg.PostgresError,
                asyncpg.InterfaceError,
                OSError,
                asyncio.TimeoutError,
            ) as e:
                logger.warning(
                    "Sandbox %s teardown failed on its own connection: %s",
                    session.schema,
                    e,
                )

        session.abort()
        try:
            await self.pool.execute_direct(
                session.drop_statement(), timeout=_TEARDOWN_TIMEOUT
            )
            logger.info("Sandbox %s dropped on a fresh connection", session.schema)
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            logger.error(
                "Sandbox %s could not be dropped, remove it manually: %s",
                session.schema,
                e,
            )

    async def schema_exists(self, schema: str) -> bool:
        return await self.pool.schema_exists(schema)

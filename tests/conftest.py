"""
Global pytest configuration and fixtures for refcheck tests.

This module provides:
- Scripted fake asyncpg connections and pools for sandbox/runner unit tests
- A real Postgres DSN for E2E tests (skipped unless E2E_TEST=1)
- Test markers
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import pytest

from refcheck.core.run_config import RunOptions


# =============================================================================
# Environment Configuration
# =============================================================================


def is_e2e_test() -> bool:
    """Check if we're running E2E tests (vs unit tests)."""
    return os.getenv("E2E_TEST", "").lower() in ("1", "true", "yes")


@pytest.fixture(scope="session")
def oracle_dsn() -> str:
    """
    DSN of the Postgres used by E2E tests.

    Taken from REFCHECK_TEST_DSN, falling back to the application settings.
    """
    if not is_e2e_test():
        pytest.skip("E2E tests require E2E_TEST=1 environment variable")
    from refcheck.config import settings

    return os.getenv("REFCHECK_TEST_DSN") or settings.postgres_dsn()


# =============================================================================
# Fake asyncpg connection
# =============================================================================


@dataclass
class Reply:
    """Scripted response to one statement."""

    columns: Sequence[Tuple[str, str]] = ()
    records: Sequence[tuple] = ()
    status: Optional[str] = None
    notices: Sequence[str] = ()
    delay: float = 0.0


Responder = Callable[[str], Union[Reply, BaseException]]


def default_responder(sql: str) -> Reply:
    return Reply(status=sql.split()[0].upper() if sql.split() else "")


class FakeTransaction:
    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn

    async def start(self) -> None:
        self.conn.log.append("tx.start")

    async def commit(self) -> None:
        self.conn.log.append("tx.commit")

    async def rollback(self) -> None:
        self.conn.log.append("tx.rollback")


class FakeStatement:
    def __init__(self, conn: "FakeConnection", sql: str) -> None:
        self.conn = conn
        self.sql = sql
        self._reply: Optional[Reply] = None

    def _resolve(self) -> Reply:
        if self._reply is None:
            outcome = self.conn.responder(self.sql)
            if isinstance(outcome, BaseException):
                raise outcome
            self._reply = outcome
        return self._reply

    def get_attributes(self):
        return [
            SimpleNamespace(name=name, type=SimpleNamespace(name=type_name))
            for name, type_name in self._resolve().columns
        ]

    async def fetch(self, timeout: Optional[float] = None) -> List[tuple]:
        reply = self._resolve()
        self.conn.log.append(self.sql)
        keyword = self.sql.split()[0].upper() if self.sql.split() else ""
        if keyword in ("BEGIN", "START"):
            self.conn.in_transaction = True
        elif keyword in ("COMMIT", "ROLLBACK", "END", "ABORT"):
            self.conn.in_transaction = False
        if reply.delay:
            await asyncio.sleep(reply.delay)
        for notice in reply.notices:
            for listener in list(self.conn.listeners):
                listener(self.conn, SimpleNamespace(message=notice))
        return list(reply.records)

    def get_statusmsg(self) -> Optional[str]:
        return self._resolve().status


class FakeConnection:
    """Minimal stand-in for asyncpg.Connection driven by a responder."""

    def __init__(
        self,
        responder: Responder = default_responder,
        server_major: int = 16,
        existing_schemas: Sequence[str] = (),
    ) -> None:
        self.responder = responder
        self.server_major = server_major
        self.existing_schemas = set(existing_schemas)
        self.log: List[str] = []
        self.listeners: List[Callable] = []
        self.codecs: dict = {}
        self.terminated = False
        self.in_transaction = False

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)

    async def set_type_codec(self, typename: str, *, schema: str, encoder, decoder, format: str) -> None:
        self.codecs[f"{schema}.{typename}"] = format

    def is_in_transaction(self) -> bool:
        return self.in_transaction

    async def execute(self, sql: str, *args: Any, timeout: Optional[float] = None) -> str:
        self.log.append(sql)
        if sql == "ROLLBACK":
            self.in_transaction = False
        return "OK"

    async def fetch(self, sql: str, *args: Any, timeout: Optional[float] = None) -> List[dict]:
        # only the catalog lookup of pre-existing schemas goes through here
        self.log.append(sql)
        return [{"nspname": name} for name in args[0] if name in self.existing_schemas]

    async def prepare(self, sql: str, timeout: Optional[float] = None) -> FakeStatement:
        return FakeStatement(self, sql)

    def add_log_listener(self, callback: Callable) -> None:
        self.listeners.append(callback)

    def remove_log_listener(self, callback: Callable) -> None:
        self.listeners.remove(callback)

    def get_server_version(self):
        return SimpleNamespace(major=self.server_major)

    def is_closed(self) -> bool:
        return self.terminated

    def terminate(self) -> None:
        self.terminated = True


@dataclass
class FakePool:
    """Stand-in for PostgresConnectionPool handing out FakeConnections."""

    responder: Responder = default_responder
    max_size: int = 2
    acquire_error: Optional[BaseException] = None
    initialize_error: Optional[BaseException] = None
    existing_schemas: Sequence[str] = ()
    connections: List[FakeConnection] = field(default_factory=list)
    direct: List[str] = field(default_factory=list)
    initialized: bool = False

    async def initialize(self) -> None:
        if self.initialize_error is not None:
            raise self.initialize_error
        self.initialized = True

    @asynccontextmanager
    async def get_connection(self):
        if self.acquire_error is not None:
            raise self.acquire_error
        conn = FakeConnection(self.responder, existing_schemas=self.existing_schemas)
        self.connections.append(conn)
        yield conn

    async def execute_direct(self, query: str, *args: Any, timeout: float = 30.0) -> str:
        self.direct.append(query)
        return "DROP SCHEMA"

    async def schema_exists(self, schema: str) -> bool:
        return False

    def get_pool_stats(self) -> dict:
        return {"initialized": self.initialized, "size": len(self.connections), "free": 0}

    async def close(self) -> None:
        self.initialized = False


@pytest.fixture
def fake_pool() -> FakePool:
    return FakePool()


@pytest.fixture
def options() -> RunOptions:
    return RunOptions(statement_timeout=5.0, document_timeout=5.0, run_timeout=10.0)


# =============================================================================
# Test Markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "e2e: marks tests as end-to-end tests requiring a real Postgres (deselect with '-m \"not e2e\"')",
    )
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow (deselect with '-m \"not slow\"')",
    )


# =============================================================================
# Skip Conditions
# =============================================================================


def pytest_collection_modifyitems(config, items):
    """
    Automatically skip E2E tests unless E2E_TEST=1 is set.
    """
    skip_e2e = pytest.mark.skip(reason="E2E tests require E2E_TEST=1")

    for item in items:
        if "e2e" in item.keywords and not is_e2e_test():
            item.add_marker(skip_e2e)

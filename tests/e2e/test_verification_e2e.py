"""
E2E tests: verify real documents against a live PostgreSQL.

Checks:
- the COUNT(*) / COUNT(column) scenario matches
- every sandbox schema is gone after the run, including failed documents
- two consecutive runs produce identical verdicts
"""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from refcheck.connectors.postgres_pool import PostgresConnectionPool
from refcheck.core.run_config import RunOptions
from refcheck.core.runner import VerificationRunner, load_documents
from refcheck.models import DocumentStatus, VerdictKind

pytestmark = [pytest.mark.e2e, pytest.mark.asyncio]

FENCE = "```"

AGGREGATES = f"""# Aggregates

{FENCE}sql
CREATE TABLE emp (id int PRIMARY KEY, name text);
INSERT INTO emp VALUES (1, 'a'), (2, 'b'), (3, NULL), (4, 'd'), (5, NULL);
{FENCE}

{FENCE}sql
SELECT COUNT(*) AS all_rows, COUNT(name) AS non_null_names FROM emp;
{FENCE}

{FENCE}output
 all_rows | non_null_names
----------+----------------
        5 |              3
(1 row)
{FENCE}

{FENCE}sql
SELECT name FROM emp WHERE name IS NOT NULL ORDER BY name;
{FENCE}

{FENCE}output
 name
------
 a
 b
 d
(3 rows)
{FENCE}

{FENCE}sql
SELECT 0.1::float8 + 0.2::float8 AS f, 1.10::numeric AS n, now() AS ts;
{FENCE}

{FENCE}output
  f  |  n   |              ts
-----+------+-------------------------------
 0.3 | 1.10 | 2020-01-01 00:00:00.000000+00
(1 row)
{FENCE}

{FENCE}sql
SELECT 1/0;
{FENCE}

{FENCE}output
ERROR:  division by zero
{FENCE}
"""

COUNTING = """/* ==========================================
   Counting
   ========================================== */

CREATE TABLE t(x INT);
INSERT INTO t VALUES (1);
SELECT COUNT(*) FROM t;
-- expected: 1
"""

SLOW = f"""# Slow

{FENCE}sql
CREATE TABLE t (x int);
{FENCE}

{FENCE}sql
SELECT pg_sleep(5);
{FENCE}
"""


@pytest.fixture
def docs(tmp_path: Path) -> Path:
    root = tmp_path / "docs"
    root.mkdir()
    (root / "aggregates.md").write_text(AGGREGATES, encoding="utf-8")
    (root / "counting.sql").write_text(COUNTING, encoding="utf-8")
    (root / "slow.md").write_text(SLOW, encoding="utf-8")
    return root


@pytest_asyncio.fixture
async def pool(oracle_dsn: str):
    pool = PostgresConnectionPool(oracle_dsn, min_size=1, max_size=2, pool_name="e2e")
    yield pool
    await pool.close()


async def _run(pool: PostgresConnectionPool, docs: Path, **overrides):
    options = RunOptions(statement_timeout=1.0, document_timeout=30.0, run_timeout=60.0)
    options = options.with_overrides(**overrides)
    return await VerificationRunner(pool, options).run(load_documents(docs, options))


class TestVerificationE2E:
    """Full runs against the oracle."""

    async def test_verdicts(self, pool, docs):
        report = await _run(pool, docs)
        aggregates, counting, slow = report.documents

        assert aggregates.status == DocumentStatus.COMPLETED
        kinds = [s.verdict.kind for s in aggregates.snippets]
        assert kinds == [
            VerdictKind.UNVERIFIABLE,
            VerdictKind.MATCH,
            VerdictKind.MATCH,
            VerdictKind.MATCH,
            VerdictKind.MATCH,
        ]

        assert counting.status == DocumentStatus.COMPLETED
        assert counting.snippets[-1].verdict.kind == VerdictKind.MATCH
        assert counting.snippets[-1].section == "Counting"

        assert slow.status == DocumentStatus.TIMEOUT
        assert report.exit_code == 1

    @pytest.mark.parametrize("isolation", ["transaction", "schema"])
    async def test_sandboxes_are_dropped(self, pool, docs, isolation):
        report = await _run(pool, docs, isolation_mode=isolation)
        for outcome in report.documents:
            assert outcome.schema_name is not None
            assert not await pool.schema_exists(outcome.schema_name)

    async def test_runs_are_repeatable(self, pool, docs):
        first = await _run(pool, docs, only={"aggregates.md": [2, 3, 4, 5]})
        second = await _run(pool, docs, only={"aggregates.md": [2, 3, 4, 5]})

        def verdicts(report):
            return [
                (d.document, s.ordinal, s.verdict.kind)
                for d in report.documents
                for s in d.snippets
            ]

        assert verdicts(first) == verdicts(second)
        assert first.exit_code == 0


INTERVALS = f"""# Intervals

{FENCE}sql
SELECT interval '1 year 2 months' AS span, interval '36 hours' AS hours;
{FENCE}

{FENCE}output
     span      |  hours
---------------+----------
 1 year 2 mons | 36:00:00
(1 row)
{FENCE}
"""

UPSERT = f"""# Upsert

{FENCE}sql
CREATE TABLE stock (sku text PRIMARY KEY, qty int);
{FENCE}

{FENCE}sql
BEGIN;
INSERT INTO stock VALUES ('a', 1) ON CONFLICT (sku) DO UPDATE SET qty = stock.qty + 1;
INSERT INTO stock VALUES ('a', 1) ON CONFLICT (sku) DO UPDATE SET qty = stock.qty + 1;
COMMIT;
{FENCE}

{FENCE}sql
SELECT qty FROM stock;
{FENCE}

{FENCE}output
 qty
-----
   2
(1 row)
{FENCE}
"""

NAMED_SCHEMA = """/* ==========================================
   Named schema
   ========================================== */

CREATE SCHEMA IF NOT EXISTS refcheck_e2e_hr;
CREATE TABLE refcheck_e2e_hr.employees (id int);
INSERT INTO refcheck_e2e_hr.employees VALUES (1), (2);
SELECT COUNT(*) FROM refcheck_e2e_hr.employees;
-- expected: 2
"""


@pytest.fixture
def isolation_docs(tmp_path: Path) -> Path:
    root = tmp_path / "isolation"
    root.mkdir()
    (root / "intervals.md").write_text(INTERVALS, encoding="utf-8")
    (root / "named_schema.sql").write_text(NAMED_SCHEMA, encoding="utf-8")
    (root / "upsert.md").write_text(UPSERT, encoding="utf-8")
    return root


class TestIsolationE2E:
    """Documents that reach outside their sandbox schema."""

    @pytest.mark.parametrize("isolation", ["transaction", "schema"])
    async def test_nothing_outside_the_sandbox_remains(self, pool, isolation_docs, isolation):
        report = await _run(pool, isolation_docs, isolation_mode=isolation)

        for outcome in report.documents:
            assert outcome.status == DocumentStatus.COMPLETED, outcome.error_message
            assert all(
                s.verdict.kind != VerdictKind.MISMATCH for s in outcome.snippets
            ), [s.verdict.reason for s in outcome.snippets]
            assert not await pool.schema_exists(outcome.schema_name)
        assert not await pool.schema_exists("refcheck_e2e_hr")
        assert report.exit_code == 0

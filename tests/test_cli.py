"""
Tests for the refcheck command line (pool replaced with a scripted fake).
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import FakePool, Reply
from refcheck import cli
from refcheck.connectors.postgres_pool import PostgresConnectionPool

GUIDE = (
    "# Counting\n"
    "\n"
    "```sql\n"
    "SELECT 2 AS n;\n"
    "```\n"
    "\n"
    "```output\n"
    " n\n"
    "---\n"
    " 2\n"
    "(1 row)\n"
    "```\n"
)


def responder(value: int):
    def respond(sql: str):
        return Reply(columns=[("n", "int4")], records=[(value,)])

    return respond


@pytest.fixture
def docs(tmp_path: Path) -> Path:
    root = tmp_path / "docs"
    root.mkdir()
    (root / "guide.md").write_text(GUIDE, encoding="utf-8")
    return root


def run_cli(argv, pool: FakePool) -> int:
    with patch.object(PostgresConnectionPool, "from_settings", return_value=pool):
        return cli.main(argv)


class TestCli:
    """Tests for cli.main exit codes and outputs."""

    def test_all_match_exits_zero(self, docs, capsys):
        assert run_cli([str(docs)], FakePool(responder=responder(2))) == 0
        out = capsys.readouterr().out
        assert "guide.md: completed (1 match" in out

    def test_mismatch_exits_one(self, docs, capsys):
        assert run_cli([str(docs)], FakePool(responder=responder(3))) == 1
        assert "MISMATCH guide.md#1" in capsys.readouterr().out

    def test_missing_directory_exits_two(self, tmp_path):
        assert run_cli([str(tmp_path / "nope")], FakePool()) == 2

    def test_bad_config_exits_two(self, docs, tmp_path):
        config = tmp_path / "run.yaml"
        config.write_text("bogus: 1\n", encoding="utf-8")
        assert run_cli([str(docs), "--config", str(config)], FakePool()) == 2

    def test_bad_selector_exits_two(self, docs):
        assert run_cli([str(docs), "--only", "guide.md"], FakePool()) == 2

    def test_unsupported_report_format_exits_two(self, docs, tmp_path):
        argv = [str(docs), "--report", str(tmp_path / "r.csv")]
        assert run_cli(argv, FakePool(responder=responder(2))) == 2

    def test_writes_json_report(self, docs, tmp_path):
        report = tmp_path / "report.json"
        argv = [str(docs), "--report", str(report), "--workers", "1", "--isolation", "schema"]
        assert run_cli(argv, FakePool(responder=responder(2))) == 0
        data = json.loads(report.read_text(encoding="utf-8"))
        assert data["documents"][0]["document"] == "guide.md"
        assert data["documents"][0]["status"] == "completed"

    def test_only_selector(self, docs, capsys):
        (docs / "other.md").write_text(GUIDE, encoding="utf-8")
        assert run_cli([str(docs), "--only", "other.md:1"], FakePool(responder=responder(2))) == 0
        out = capsys.readouterr().out
        assert "other.md: completed" in out
        assert "guide.md:" not in out

    def test_pool_closed_after_run(self, docs):
        pool = FakePool(responder=responder(2))
        run_cli([str(docs)], pool)
        assert not pool.initialized

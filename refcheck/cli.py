"""Verify the SQL snippets of a documentation tree against a live Postgres."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from refcheck.config import settings
from refcheck.connectors.postgres_pool import PostgresConnectionPool
from refcheck.core.errors import ConfigError
from refcheck.core.report import render_text, write_report
from refcheck.core.run_config import RunOptions, load_run_config, parse_only
from refcheck.core.runner import VerificationRunner, load_documents

logger = logging.getLogger("refcheck")

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="refcheck",
        description="Execute documented SQL snippets and compare them with their documented output.",
    )
    parser.add_argument("docs_dir", type=Path, help="Documentation directory to scan.")
    parser.add_argument(
        "--dsn",
        default=None,
        help="Oracle Postgres DSN (default: DATABASE_URL / POSTGRES_* settings).",
    )
    parser.add_argument(
        "--config", type=Path, default=None, help="YAML run configuration file."
    )
    parser.add_argument(
        "--report",
        type=Path,
        default=None,
        help="Write the report to this .json or .parquet file.",
    )
    parser.add_argument(
        "--workers", type=int, default=None, help="Documents verified in parallel."
    )
    parser.add_argument(
        "--run-timeout",
        type=float,
        default=None,
        help="Seconds before the whole run is cancelled.",
    )
    parser.add_argument(
        "--document-timeout",
        type=float,
        default=None,
        help="Seconds before a single document is aborted.",
    )
    parser.add_argument(
        "--isolation",
        choices=("transaction", "schema"),
        default=None,
        help="Per-document isolation mode.",
    )
    parser.add_argument(
        "--only",
        action="append",
        default=[],
        metavar="DOC:ORDINAL",
        help="Run only these snippets (and their dependencies); repeatable.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Override LOG_LEVEL.",
    )
    return parser


def _configure_logging(level: Optional[str]) -> None:
    logging.basicConfig(
        level=getattr(logging, level or settings.LOG_LEVEL),
        format=settings.LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(settings.LOG_FILE)
            if settings.LOG_FILE
            else logging.NullHandler(),
        ],
    )
    # asyncpg logs every pool event at INFO/DEBUG
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def _resolve_options(args: argparse.Namespace) -> RunOptions:
    options = RunOptions.from_settings(settings)
    if args.config is not None:
        options = load_run_config(args.config, options)
    only = parse_only(args.only) if args.only else None
    return options.with_overrides(
        workers=args.workers,
        run_timeout=args.run_timeout,
        document_timeout=args.document_timeout,
        isolation_mode=args.isolation,
        only=only,
    )


async def _run(args: argparse.Namespace, options: RunOptions) -> int:
    documents = load_documents(args.docs_dir, options)
    if not documents:
        logger.warning("No documents found under %s", args.docs_dir)

    pool = PostgresConnectionPool.from_settings(
        settings, dsn=args.dsn, max_size=options.workers
    )
    try:
        report = await VerificationRunner(pool, options).run(documents)
    finally:
        await pool.close()

    print(render_text(report))
    if args.report is not None:
        write_report(report, args.report)
    return report.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    try:
        options = _resolve_options(args)
        return asyncio.run(_run(args, options))
    except (ConfigError, FileNotFoundError, ValueError) as e:
        logger.error("%s", e)
        return EXIT_FATAL
    except KeyboardInterrupt:
        print("[refcheck] interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())

"""
Result Comparator

Compares a snippet's execution result with its documented output and
produces a verdict.

Documented output follows psql conventions:

     all_rows | non_null_names
    ----------+----------------
            5 |              5
    (1 row)

Also accepted: header-less `a | b` rows, one value per line, a command tag
(`INSERT 0 5`), `NOTICE:` lines and an `ERROR:` line.
"""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from refcheck.core.statements import SqlLexError, code_only, has_top_level_order_by
from refcheck.core.values import cell_matches, cell_parses_as
from refcheck.models import (
    ComparisonVerdict,
    ExecutionResult,
    ResultKind,
    Snippet,
    Value,
)

logger = logging.getLogger(__name__)

DEFAULT_VOLATILE_FUNCTIONS = (
    "current_date",
    "current_time",
    "current_timestamp",
    "localtime",
    "localtimestamp",
    "now",
    "clock_timestamp",
    "statement_timestamp",
    "transaction_timestamp",
    "timeofday",
    "random",
    "gen_random_uuid",
    "uuid_generate_v4",
    "txid_current",
    "pg_backend_pid",
)

_NOTICE = re.compile(r"^\s*(?:NOTICE|INFO|WARNING):\s*(?P<text>.*?)\s*$")
_ERROR = re.compile(r"^\s*(?:ERROR|FATAL):\s*(?P<text>.*?)\s*$")
_ROW_FOOTER = re.compile(r"^\s*\((?P<count>\d+) rows?\)\s*$")
_SEPARATOR = re.compile(r"^\s*-+(?:\+-+)*\s*$")
_EXPLAIN_ANALYZE = re.compile(r"\bexplain\s*(?:\(\s*[^)]*\banalyze\b|analyze\b)", re.IGNORECASE)


@dataclass
class ExpectedTable:
    """Documented output broken into its parts."""

    notices: List[str] = field(default_factory=list)
    error: Optional[str] = None
    columns: Optional[List[str]] = None
    rows: List[List[str]] = field(default_factory=list)
    row_count: Optional[int] = None
    bare_lines: List[str] = field(default_factory=list)

    @property
    def has_rows(self) -> bool:
        return self.columns is not None or bool(self.rows) or bool(self.bare_lines)

    def cell_rows(self) -> List[List[str]]:
        if self.columns is not None or self.rows:
            return self.rows
        return [[line] for line in self.bare_lines]


def _split_cells(line: str) -> List[str]:
    cells = []
    for segment in line.split("|"):
        # psql pads every cell with one space on the left
        if segment.startswith(" "):
            segment = segment[1:]
        cells.append(segment.rstrip())
    return cells


def parse_expected(text: str) -> ExpectedTable:
    """Split documented output into notices, error, header, rows and footer."""
    parsed = ExpectedTable()
    data: List[str] = []
    for line in text.split("\n"):
        if not line.strip():
            continue
        notice = _NOTICE.match(line)
        if notice:
            parsed.notices.append(notice.group("text"))
            continue
        error = _ERROR.match(line)
        if error:
            parsed.error = error.group("text")
            continue
        footer = _ROW_FOOTER.match(line)
        if footer:
            parsed.row_count = int(footer.group("count"))
            continue
        data.append(line.rstrip())

    separator = next((i for i, line in enumerate(data) if _SEPARATOR.match(line)), None)
    if separator is not None and separator > 0:
        parsed.columns = [c.strip() for c in data[separator - 1].split("|")]
        parsed.rows = [_split_cells(line) for line in data[separator + 1 :]]
    elif any("|" in line for line in data):
        parsed.rows = [_split_cells(line) for line in data]
    else:
        parsed.bare_lines = data
    return parsed


def _max_matching(adjacency: Sequence[Sequence[int]], right_size: int) -> int:
    """
    Size of a maximum bipartite matching (augmenting paths, no recursion).

    Left nodes that share one adjacency list object (identical rows) share a
    cursor for the greedy first pass, so runs of duplicates stay linear.
    """
    owner: List[Optional[int]] = [None] * right_size
    partner: List[Optional[int]] = [None] * len(adjacency)
    cursors: Dict[int, int] = {}
    matched = 0

    for start, edges in enumerate(adjacency):
        # matched right nodes never become free again
        position = cursors.get(id(edges), 0)
        while position < len(edges) and owner[edges[position]] is not None:
            position += 1
        cursors[id(edges)] = position
        if position < len(edges):
            owner[edges[position]] = start
            partner[start] = edges[position]
            matched += 1
            continue

        seen = [False] * right_size
        reached_from: Dict[int, int] = {}
        stack = [(start, iter(adjacency[start]))]
        free = None
        while stack and free is None:
            left, pending = stack[-1]
            for right in pending:
                if seen[right]:
                    continue
                seen[right] = True
                reached_from[right] = left
                if owner[right] is None:
                    free = right
                else:
                    stack.append((owner[right], iter(adjacency[owner[right]])))
                break
            else:
                stack.pop()
        if free is None:
            continue

        right = free
        while right is not None:
            left = reached_from[right]
            previous = partner[left]
            owner[right] = left
            partner[left] = right
            right = previous
        matched += 1
    return matched


class ResultComparator:
    """
    Produces verdicts from execution results and documented outputs.

    Args:
        float_tolerance: Absolute/relative tolerance for approximate numbers
        volatile_functions: Extra function names whose results are masked
    """

    def __init__(
        self,
        float_tolerance: float = 1e-9,
        volatile_functions: Iterable[str] = (),
    ) -> None:
        self.float_tolerance = float_tolerance
        names = {n.lower() for n in DEFAULT_VOLATILE_FUNCTIONS} | {
            n.lower() for n in volatile_functions
        }
        self._volatile = re.compile(
            r"\b(?:" + "|".join(sorted(map(re.escape, names))) + r")\b",
            re.IGNORECASE,
        )

    def is_volatile(self, snippet: Snippet) -> bool:
        """True when the snippet's values depend on wall-clock time or chance."""
        if "volatile" in snippet.flags:
            return True
        try:
            code = code_only(snippet.sql)
        except SqlLexError:
            return False
        return bool(self._volatile.search(code) or _EXPLAIN_ANALYZE.search(code))

    def is_ordered(self, snippet: Snippet) -> bool:
        """True when row order is part of the documented contract."""
        if "ordered" in snippet.flags:
            return True
        if "unordered" in snippet.flags:
            return False
        try:
            return has_top_level_order_by(snippet.sql)
        except SqlLexError:
            return False

    def _cell_check(self, masked: bool) -> Callable[[Value, str], bool]:
        if masked:
            return cell_parses_as
        return partial(cell_matches, float_tolerance=self.float_tolerance)

    def _compare_rows(
        self,
        snippet: Snippet,
        expected: ExpectedTable,
        result: ExecutionResult,
        masked: bool,
    ) -> List[str]:
        problems: List[str] = []
        if expected.columns is not None and expected.columns != result.columns:
            problems.append(
                f"columns differ: documented {expected.columns}, actual {result.columns}"
            )

        expected_rows = expected.cell_rows()
        actual_rows = result.rows
        if expected.row_count is not None and expected.row_count != len(actual_rows):
            problems.append(
                f"row count differs: documented {expected.row_count}, actual {len(actual_rows)}"
            )
        if expected.columns is None and not expected_rows:
            # only a "(N rows)" footer was documented
            return problems
        if len(expected_rows) != len(actual_rows):
            problems.append(
                f"documented {len(expected_rows)} row(s), got {len(actual_rows)}"
            )
            return problems

        width = len(result.columns)
        if any(len(row) != width for row in expected_rows):
            problems.append(f"documented rows do not have {width} column(s)")
            return problems

        check = self._cell_check(masked)

        def row_ok(actual: List[Value], documented: List[str]) -> bool:
            return all(check(v, c) for v, c in zip(actual, documented))

        if self.is_ordered(snippet):
            for index, (actual, documented) in enumerate(zip(actual_rows, expected_rows), 1):
                if not row_ok(actual, documented):
                    problems.append(f"row {index} differs")
                    break
        else:
            documented_keys = [tuple(row) for row in expected_rows]
            shared: Dict[tuple, List[int]] = {}
            adjacency = []
            for actual in actual_rows:
                key = tuple((v.tag, v.type_name, v.render()) for v in actual)
                edges = shared.get(key)
                if edges is None:
                    checked: Dict[tuple, bool] = {}
                    edges = []
                    for j, documented in enumerate(documented_keys):
                        if documented not in checked:
                            checked[documented] = row_ok(actual, expected_rows[j])
                        if checked[documented]:
                            edges.append(j)
                    shared[key] = edges
                adjacency.append(edges)
            matched = _max_matching(adjacency, len(expected_rows))
            if matched != len(actual_rows):
                problems.append(
                    f"{len(actual_rows) - matched} row(s) have no documented counterpart"
                )
        return problems

    def _problems(
        self,
        snippet: Snippet,
        expected: ExpectedTable,
        result: ExecutionResult,
        masked: bool,
    ) -> List[str]:
        problems: List[str] = []

        if expected.notices:
            actual_notices = [n.strip() for n in result.notices]
            if expected.notices != actual_notices:
                problems.append("notices differ")

        if expected.error is not None:
            if not result.is_error:
                problems.append("documented an error, statement succeeded")
            elif expected.error != (result.message or "").strip():
                problems.append("error message differs")
            return problems

        if result.is_error:
            problems.append(f"unexpected {result.error_kind}: {result.message}")
            return problems

        if result.kind == ResultKind.NO_OUTPUT:
            if expected.has_rows:
                documented = expected.bare_lines
                if len(documented) == 1 and expected.columns is None and not expected.rows:
                    if documented[0].strip() != (result.status or ""):
                        problems.append(
                            f"command tag differs: documented {documented[0].strip()!r}, "
                            f"actual {result.status!r}"
                        )
                else:
                    problems.append("documented rows, statement returned none")
            return problems

        if expected.has_rows or expected.row_count is not None:
            problems.extend(self._compare_rows(snippet, expected, result, masked))
        return problems

    def compare(self, snippet: Snippet, result: ExecutionResult) -> ComparisonVerdict:
        """
        Compare an execution result with the snippet's documented output.

        Returns:
            Match, Mismatch (with a unified diff) or Unverifiable
        """
        if snippet.expected is None:
            return ComparisonVerdict.unverifiable("no documented output")
        if result.kind == ResultKind.SKIPPED:
            return ComparisonVerdict.unverifiable(f"skipped: {result.reason}")

        expected = parse_expected(snippet.expected.text)
        masked = self.is_volatile(snippet)
        problems = self._problems(snippet, expected, result, masked)

        if not problems:
            return ComparisonVerdict.match(
                "time-dependent values masked" if masked else None
            )

        documented_lines = snippet.expected.text.split("\n")
        actual_lines = result.render_lines()
        diff = "\n".join(
            difflib.unified_diff(
                documented_lines,
                actual_lines,
                fromfile=f"{snippet.label} (documented)",
                tofile=f"{snippet.label} (actual)",
                lineterm="",
            )
        )
        logger.debug("%s mismatch: %s", snippet.label, "; ".join(problems))
        return ComparisonVerdict.mismatch(
            expected=snippet.expected.text,
            actual="\n".join(actual_lines),
            diff=diff,
            reason="; ".join(problems),
        )

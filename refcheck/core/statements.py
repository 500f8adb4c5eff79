"""
SQL statement utilities.

A small lexical scanner over PostgreSQL text. It is not a parser: it only
knows enough about quoting to find statement boundaries and keywords
reliably:
- single-quoted strings ('' escapes, E'' backslash escapes)
- double-quoted identifiers
- dollar-quoted bodies ($$ ... $$, $tag$ ... $tag$)
- line comments and nested block comments
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator

_DOLLAR_TAG = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")
_ORDER_BY = re.compile(r"\border\s+by\b", re.IGNORECASE)
_CREATE_OBJECT = re.compile(
    r"\bcreate\s+(?:or\s+replace\s+)?"
    r"(?:(?:global\s+|local\s+)?(?:temporary|temp|unlogged)\s+)?"
    r"(?:unique\s+)?"
    r"(?:materialized\s+view|table|view|schema|function|procedure|index|sequence|type)\s+"
    r"(?:concurrently\s+)?(?:if\s+not\s+exists\s+)?"
    r"((?:\"[^\"]+\"|[A-Za-z_][\w$]*)(?:\.(?:\"[^\"]+\"|[A-Za-z_][\w$]*))?)",
    re.IGNORECASE,
)
_CREATE_SCHEMA = re.compile(
    r"\bcreate\s+schema\s+(?:if\s+not\s+exists\s+)?(\"[^\"]+\"|[A-Za-z_][\w$]*)",
    re.IGNORECASE,
)
# ROLLBACK TO SAVEPOINT stays inside the surrounding transaction
_TRANSACTION_CONTROL = re.compile(
    r"\s*(?:begin|start\s+transaction|commit|end|abort|rollback(?!\s+to\b)"
    r"|prepare\s+transaction)\b",
    re.IGNORECASE,
)


class SqlLexError(ValueError):
    """Unterminated quote, dollar body or block comment."""

    def __init__(self, reason: str, offset: int) -> None:
        self.reason = reason
        self.offset = offset
        super().__init__(f"{reason} at offset {offset}")


@dataclass(frozen=True, slots=True)
class Token:
    kind: str  # code | string | ident | dollar | line_comment | block_comment
    text: str
    start: int


@dataclass(frozen=True, slots=True)
class StatementSpan:
    """One top-level statement: `text` excludes the terminating semicolon."""

    text: str
    start: int
    end: int


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def tokenize(sql: str) -> Iterator[Token]:
    """Yield lexical runs of `sql`; raises SqlLexError on unterminated runs."""
    n = len(sql)
    i = 0
    code_start = 0

    def flush(upto: int) -> Iterator[Token]:
        if upto > code_start:
            yield Token("code", sql[code_start:upto], code_start)

    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""

        if ch == "-" and nxt == "-":
            yield from flush(i)
            end = sql.find("\n", i)
            end = n if end == -1 else end
            yield Token("line_comment", sql[i:end], i)
            i = code_start = end
            continue

        if ch == "/" and nxt == "*":
            yield from flush(i)
            depth = 0
            j = i
            while j < n:
                if sql.startswith("/*", j):
                    depth += 1
                    j += 2
                elif sql.startswith("*/", j):
                    depth -= 1
                    j += 2
                    if depth == 0:
                        break
                else:
                    j += 1
            if depth != 0:
                raise SqlLexError("unterminated block comment", i)
            yield Token("block_comment", sql[i:j], i)
            i = code_start = j
            continue

        if ch == "'":
            escapes = (
                i > 0
                and sql[i - 1] in "eE"
                and (i < 2 or not _is_ident_char(sql[i - 2]))
            )
            yield from flush(i)
            j = i + 1
            while True:
                if j >= n:
                    raise SqlLexError("unterminated string literal", i)
                if escapes and sql[j] == "\\":
                    j += 2
                    continue
                if sql[j] == "'":
                    if j + 1 < n and sql[j + 1] == "'":
                        j += 2
                        continue
                    j += 1
                    break
                j += 1
            yield Token("string", sql[i:j], i)
            i = code_start = j
            continue

        if ch == '"':
            yield from flush(i)
            j = i + 1
            while True:
                if j >= n:
                    raise SqlLexError("unterminated quoted identifier", i)
                if sql[j] == '"':
                    if j + 1 < n and sql[j + 1] == '"':
                        j += 2
                        continue
                    j += 1
                    break
                j += 1
            yield Token("ident", sql[i:j], i)
            i = code_start = j
            continue

        if ch == "$" and (i == 0 or not _is_ident_char(sql[i - 1])):
            match = _DOLLAR_TAG.match(sql, i)
            if match:
                tag = match.group(0)
                close = sql.find(tag, match.end())
                if close == -1:
                    raise SqlLexError("unterminated dollar-quoted body", i)
                yield from flush(i)
                end = close + len(tag)
                yield Token("dollar", sql[i:end], i)
                i = code_start = end
                continue

        i += 1

    yield from flush(n)


def split_statement_spans(sql: str) -> list[StatementSpan]:
    """
    Split text into top-level statements with their offsets.

    Comment-only chunks are dropped. A statement's `start` is its first
    significant character; `end` is the offset just past its semicolon (or
    the end of input for an unterminated final statement).
    """
    spans: list[StatementSpan] = []
    start: int | None = None

    def close(end_text: int, end_span: int) -> None:
        nonlocal start
        if start is not None:
            spans.append(StatementSpan(sql[start:end_text].rstrip(), start, end_span))
        start = None

    for token in tokenize(sql):
        if token.kind in ("line_comment", "block_comment"):
            continue
        if token.kind != "code":
            if start is None:
                start = token.start
            continue
        offset = token.start
        for k, ch in enumerate(token.text):
            pos = offset + k
            if ch == ";":
                close(pos, pos + 1)
            elif start is None and not ch.isspace():
                start = pos

    close(len(sql), len(sql))
    return spans


def split_statements(sql: str) -> list[str]:
    """Split a snippet into its top-level statements."""
    return [span.text for span in split_statement_spans(sql)]


def strip_comments(sql: str) -> str:
    """Remove comments, keeping literals and bodies intact."""
    parts = []
    for token in tokenize(sql):
        if token.kind in ("line_comment", "block_comment"):
            parts.append(" ")
        else:
            parts.append(token.text)
    return "".join(parts)


def code_only(sql: str) -> str:
    """Comments removed, string literals and dollar bodies blanked out."""
    parts = []
    for token in tokenize(sql):
        if token.kind in ("line_comment", "block_comment"):
            parts.append(" ")
        elif token.kind in ("string", "dollar"):
            parts.append("''")
        else:
            parts.append(token.text)
    return "".join(parts)


def comment_lines(sql: str) -> list[tuple[int, str]]:
    """(offset, text) of every comment, with markers removed."""
    out = []
    for token in tokenize(sql):
        if token.kind == "line_comment":
            out.append((token.start, token.text[2:].strip()))
        elif token.kind == "block_comment":
            out.append((token.start, token.text[2:-2].strip()))
    return out


def _paren_depths(code: str) -> list[int]:
    depths = []
    depth = 0
    for ch in code:
        if ch == "(":
            depth += 1
        depths.append(depth)
        if ch == ")":
            depth = max(0, depth - 1)
    return depths


def has_top_level_order_by(sql: str) -> bool:
    """True when the last statement orders its output (window ORDER BY excluded)."""
    statements = split_statements(sql)
    if not statements:
        return False
    code = code_only(statements[-1])
    depths = _paren_depths(code)
    return any(depths[m.start()] == 0 for m in _ORDER_BY.finditer(code))


def _normalize_name(name: str) -> str:
    parts = []
    for part in name.split("."):
        if part.startswith('"') and part.endswith('"'):
            parts.append(part[1:-1])
        else:
            parts.append(part.lower())
    return ".".join(parts)


def created_objects(sql: str) -> set[str]:
    """Names created by DDL in `sql`, lower-cased unless quoted."""
    names = set()
    for match in _CREATE_OBJECT.finditer(code_only(sql)):
        name = _normalize_name(match.group(1))
        # CREATE INDEX ON t (...) has no name
        if name != "on":
            names.add(name)
    return names


def references_name(sql: str, name: str) -> bool:
    """True when `name` appears as a whole identifier in the code of `sql`."""
    pattern = re.compile(
        r"(?<![\w.$])\"?" + re.escape(name).replace(r"\.", r"\"?\.\"?") + r"\"?(?![\w$])",
        re.IGNORECASE,
    )
    return pattern.search(code_only(sql)) is not None


def created_schemas(sql: str) -> set[str]:
    """Schemas created by `CREATE SCHEMA` in `sql`."""
    names = set()
    for match in _CREATE_SCHEMA.finditer(code_only(sql)):
        name = _normalize_name(match.group(1))
        # CREATE SCHEMA AUTHORIZATION role names the schema after the role
        if name != "authorization":
            names.add(name)
    return names


def controls_transaction(sql: str) -> bool:
    """True when a top-level statement begins, ends or prepares a transaction."""
    return any(_TRANSACTION_CONTROL.match(code_only(s)) for s in split_statements(sql))

"""
Snippet Extractor

Parses reference documents into ordered, immutable snippets.

Two formats are understood:
- Markdown guides: fenced SQL blocks, optionally followed by an output fence
- SQL practice scripts: one snippet per top-level statement, with banner
  comments naming sections

Extraction is pure: the same text always yields the same snippets.
"""

from __future__ import annotations

import fnmatch
import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence

from refcheck.core.errors import ParseError
from refcheck.core.statements import (
    SqlLexError,
    comment_lines,
    created_objects,
    references_name,
    split_statement_spans,
)
from refcheck.models import Document, DocumentFormat, ExpectedOutput, Snippet

logger = logging.getLogger(__name__)

SQL_LANGUAGES = frozenset({"sql", "postgresql", "postgres", "psql", "pgsql"})
OUTPUT_LANGUAGES = frozenset({"output", "result", "results", "text"})
DEFAULT_INCLUDE = ("*.md", "*.markdown", "*.sql")

_FENCE_OPEN = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
_HEADING = re.compile(r"^ {0,3}#{1,6}\s+(?P<title>.*?)\s*#*\s*$")
_EXPECTED_COMMENT = re.compile(r"^\s*--\s*(?:expected:|=>)\s?(?P<text>.*?)\s*$", re.IGNORECASE)
_REQUIRES = re.compile(r"requires\s+postgres(?:ql)?\s+(\d+)", re.IGNORECASE)
_BANNER_RULE = re.compile(r"^[=\-*#]{5,}$")


@dataclass
class _RawSnippet:
    """Snippet fields collected before dependency resolution."""

    line: int
    sql: str
    section: Optional[str] = None
    expected: Optional[ExpectedOutput] = None
    flags: set[str] = field(default_factory=set)
    attrs: dict[str, str] = field(default_factory=dict)
    min_server_version: Optional[int] = None


@dataclass
class _Fence:
    lang: str
    flags: set[str]
    attrs: dict[str, str]
    body: str
    open_line: int  # 1-based line of the opening fence
    close_index: int  # 0-based index of the closing fence line
    section: Optional[str]


def parse_info(info: str) -> tuple[str, set[str], dict[str, str]]:
    """Parse a fence info string into language, flags, and attributes."""
    try:
        tokens = shlex.split(info)
    except ValueError:
        tokens = info.split()
    lang = tokens[0].lower() if tokens else ""
    flags: set[str] = set()
    attrs: dict[str, str] = {}
    for token in tokens[1:]:
        if "=" in token:
            key, _, value = token.partition("=")
            attrs[key.strip().lower()] = value.strip()
        else:
            flags.add(token.lower())
    return lang, flags, attrs


def _line_of(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1


def _requires_version(sql: str) -> Optional[int]:
    try:
        comments = comment_lines(sql)
    except SqlLexError:
        return None
    for _, comment in comments:
        match = _REQUIRES.search(comment)
        if match:
            return int(match.group(1))
    return None


def _trailing_expected(body: str, first_line: int) -> Optional[ExpectedOutput]:
    """`-- expected:` / `-- =>` lines at the end of a SQL body."""
    lines = body.split("\n")
    collected: list[str] = []
    index = len(lines) - 1
    while index >= 0 and not lines[index].strip():
        index -= 1
    while index >= 0:
        match = _EXPECTED_COMMENT.match(lines[index])
        if not match:
            break
        collected.append(match.group("text"))
        index -= 1
    if not collected:
        return None
    return ExpectedOutput(
        text="\n".join(reversed(collected)),
        source="comment",
        line=first_line + index + 1,
    )


def _scan_fences(text: str, document: str) -> list[_Fence]:
    lines = text.split("\n")
    fences: list[_Fence] = []
    section: Optional[str] = None
    i = 0
    while i < len(lines):
        line = lines[i]
        heading = _HEADING.match(line)
        if heading:
            section = heading.group("title") or section
            i += 1
            continue

        opened = _FENCE_OPEN.match(line)
        if not opened:
            i += 1
            continue

        fence = opened.group("fence")
        info = opened.group("info").strip()
        if fence[0] == "`" and "`" in info:
            # inline code span, not a fence
            i += 1
            continue

        close_re = re.compile(r"^ {0,3}" + re.escape(fence[0]) + "{" + str(len(fence)) + r",}\s*$")
        j = i + 1
        while j < len(lines) and not close_re.match(lines[j]):
            j += 1
        if j >= len(lines):
            raise ParseError(document, i + 1, "unterminated code fence")

        lang, flags, attrs = parse_info(info)
        fences.append(
            _Fence(
                lang=lang,
                flags=flags,
                attrs=attrs,
                body="\n".join(lines[i + 1 : j]),
                open_line=i + 1,
                close_index=j,
                section=section,
            )
        )
        i = j + 1
    return fences


def _extract_markdown(text: str, document: str) -> list[_RawSnippet]:
    lines = text.split("\n")
    fences = _scan_fences(text, document)
    raws: list[_RawSnippet] = []

    for index, fence in enumerate(fences):
        if fence.lang not in SQL_LANGUAGES:
            continue

        raw = _RawSnippet(
            line=fence.open_line + 1,
            sql=fence.body,
            section=fence.section,
            flags=fence.flags,
            attrs=fence.attrs,
        )

        if index + 1 < len(fences):
            nxt = fences[index + 1]
            between = lines[fence.close_index + 1 : nxt.open_line - 1]
            if nxt.lang in OUTPUT_LANGUAGES and all(not ln.strip() for ln in between):
                raw.expected = ExpectedOutput(
                    text=nxt.body, source="fence", line=nxt.open_line + 1
                )
        if raw.expected is None:
            raw.expected = _trailing_expected(fence.body, raw.line)

        if "min_version" in fence.attrs:
            try:
                raw.min_server_version = int(fence.attrs["min_version"])
            except ValueError:
                raise ParseError(
                    document,
                    fence.open_line,
                    f"invalid min_version {fence.attrs['min_version']!r}",
                ) from None
        else:
            raw.min_server_version = _requires_version(fence.body)

        raws.append(raw)
    return raws


def _banner_title(comment: str) -> Optional[str]:
    """Title of a `/* ==== ... ==== */` banner, else None."""
    lines = [ln.strip() for ln in comment.split("\n") if ln.strip()]
    if not any(_BANNER_RULE.match(ln) for ln in lines):
        return None
    titles = [ln for ln in lines if not _BANNER_RULE.match(ln)]
    return titles[0] if titles else None


def _extract_sql_script(text: str, document: str) -> list[_RawSnippet]:
    try:
        spans = split_statement_spans(text)
        gaps_comments = comment_lines(text)
    except SqlLexError as exc:
        raise ParseError(document, _line_of(text, exc.offset), exc.reason) from None

    raws: list[_RawSnippet] = []
    section: Optional[str] = None
    section_version: Optional[int] = None
    prev_end = 0

    for idx, span in enumerate(spans):
        # Comments in the gap before this statement.
        for offset, comment in gaps_comments:
            if not prev_end <= offset < span.start:
                continue
            title = _banner_title(comment)
            if title is not None:
                section = title
                section_version = None
            requires = _REQUIRES.search(comment)
            if requires:
                section_version = int(requires.group(1))

        raw = _RawSnippet(
            line=_line_of(text, span.start),
            sql=span.text,
            section=section,
        )
        raw.min_server_version = _requires_version(span.text) or section_version

        next_start = spans[idx + 1].start if idx + 1 < len(spans) else len(text)
        # Annotation lines directly below the statement (the remainder of the
        # statement's own last line may hold an ordinary comment).
        trailing = text[span.end : next_start].split("\n")
        base_line = _line_of(text, span.end)
        collected: list[str] = []
        first_line = base_line
        for k, line in enumerate(trailing):
            match = _EXPECTED_COMMENT.match(line)
            if match:
                if not collected:
                    first_line = base_line + k
                collected.append(match.group("text"))
            elif k > 0 or collected:
                break
        if collected:
            raw.expected = ExpectedOutput(
                text="\n".join(collected), source="comment", line=first_line
            )

        raws.append(raw)
        prev_end = span.end
    return raws


def _resolve(raws: Sequence[_RawSnippet], document: str) -> tuple[Snippet, ...]:
    """Assign ordinals and derive setup dependencies."""
    creators: dict[str, int] = {}
    snippets = []
    for ordinal, raw in enumerate(raws, start=1):
        deps: set[int] = set()
        try:
            for name, creator in creators.items():
                if references_name(raw.sql, name):
                    deps.add(creator)
            created = created_objects(raw.sql)
        except SqlLexError as exc:
            raise ParseError(
                document, raw.line + _line_of(raw.sql, exc.offset) - 1, exc.reason
            ) from None

        explicit = raw.attrs.get("depends")
        if explicit:
            for item in explicit.split(","):
                item = item.strip()
                if not item.isdigit() or not 1 <= int(item) < ordinal:
                    raise ParseError(
                        document, raw.line, f"invalid dependency {item!r}"
                    )
                deps.add(int(item))

        for name in created:
            creators[name] = ordinal

        snippets.append(
            Snippet(
                document=document,
                ordinal=ordinal,
                line=raw.line,
                sql=raw.sql,
                expected=raw.expected,
                depends_on=tuple(sorted(deps)),
                section=raw.section,
                flags=frozenset(raw.flags),
                min_server_version=raw.min_server_version,
            )
        )
    return tuple(snippets)


def detect_format(path: Path | str) -> DocumentFormat:
    """Guess the document format from the file extension."""
    suffix = Path(path).suffix.lower()
    if suffix == ".sql":
        return DocumentFormat.SQL
    return DocumentFormat.MARKDOWN


def extract_snippets(
    text: str,
    document: str,
    fmt: DocumentFormat = DocumentFormat.MARKDOWN,
) -> tuple[Snippet, ...]:
    """
    Extract the ordered snippets of one document.

    Args:
        text: Raw document text
        document: Document name used in snippets and errors
        fmt: Markdown guide or SQL script

    Returns:
        Snippets in document order

    Raises:
        ParseError: if a fence, quote or comment is left unterminated
    """
    text = text.replace("\r\n", "\n")
    if fmt == DocumentFormat.SQL:
        raws = _extract_sql_script(text, document)
    else:
        raws = _extract_markdown(text, document)
    return _resolve(raws, document)


def parse_document(
    text: str,
    name: str,
    fmt: DocumentFormat = DocumentFormat.MARKDOWN,
    path: Optional[str] = None,
) -> Document:
    """Build a Document from text."""
    return Document(
        name=name,
        path=path,
        format=fmt,
        snippets=extract_snippets(text, name, fmt),
    )


def load_document(path: Path, root: Optional[Path] = None) -> Document:
    """
    Load and parse a document from disk.

    Raises:
        ParseError: if the file cannot be read or is malformed
    """
    path = Path(path)
    name = path.relative_to(root).as_posix() if root else path.name
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ParseError(name, 1, f"unreadable document: {exc}") from exc
    document = parse_document(text, name, detect_format(path), str(path.resolve()))
    logger.debug("Parsed %s: %d snippet(s)", name, len(document.snippets))
    return document


def discover_documents(
    root: Path,
    include: Iterable[str] = DEFAULT_INCLUDE,
    exclude: Iterable[str] = (),
) -> list[Path]:
    """
    Find reference documents under `root`, sorted by relative path.

    Args:
        root: Documents directory
        include: Filename glob patterns to include
        exclude: Glob patterns (matched against the relative path) to skip

    Returns:
        Sorted list of document paths
    """
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"Documents directory not found: {root}")

    exclude = list(exclude)
    found: set[Path] = set()
    for pattern in include:
        for path in root.rglob(pattern):
            if not path.is_file():
                continue
            rel = path.relative_to(root).as_posix()
            if any(fnmatch.fnmatch(rel, ex) for ex in exclude):
                continue
            found.add(path)
    return sorted(found, key=lambda p: p.relative_to(root).as_posix())

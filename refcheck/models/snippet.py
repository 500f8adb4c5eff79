"""
Document and Snippet Models

Immutable Pydantic models for parsed reference documents. A Document holds
its SQL snippets in document order; snippets are parsed once per run.
"""

from enum import Enum
from typing import Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class DocumentFormat(str, Enum):
    """Supported reference document formats."""

    MARKDOWN = "markdown"
    SQL = "sql"


class ExpectedOutput(BaseModel):
    """Documented output attached to a snippet."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., description="Documented output, verbatim")
    source: Literal["fence", "comment"] = Field(
        ..., description="Output fence after the block or inline comment lines"
    )
    line: int = Field(..., ge=1, description="1-based line of the annotation")


class Snippet(BaseModel):
    """One SQL example extracted from a document."""

    model_config = ConfigDict(frozen=True)

    document: str = Field(..., description="Owning document name")
    ordinal: int = Field(..., ge=1, description="1-based position in the document")
    line: int = Field(..., ge=1, description="1-based line where the SQL starts")
    sql: str = Field(..., description="Raw SQL text")
    expected: Optional[ExpectedOutput] = Field(
        None, description="Documented expected output"
    )
    depends_on: tuple[int, ...] = Field(
        (), description="Ordinals of earlier snippets this one needs"
    )
    section: Optional[str] = Field(None, description="Nearest heading or banner")
    flags: frozenset[str] = Field(
        frozenset(), description="Fence flags (skip, ordered, unordered, volatile)"
    )
    min_server_version: Optional[int] = Field(
        None, description="Minimum PostgreSQL major version"
    )

    @property
    def label(self) -> str:
        return f"{self.document}#{self.ordinal}"

    @property
    def skipped(self) -> bool:
        return "skip" in self.flags

    @property
    def has_expected(self) -> bool:
        return self.expected is not None


class Document(BaseModel):
    """A named reference file and its ordered snippets."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Document name (path relative to the root)")
    path: Optional[str] = Field(None, description="Absolute path, when loaded from disk")
    format: DocumentFormat = Field(..., description="Source format")
    snippets: tuple[Snippet, ...] = Field((), description="Snippets in document order")

    def snippet(self, ordinal: int) -> Snippet:
        """Return the snippet at a 1-based ordinal."""
        for snip in self.snippets:
            if snip.ordinal == ordinal:
                return snip
        raise KeyError(f"{self.name} has no snippet #{ordinal}")

    def with_dependencies(self, ordinals: Iterable[int]) -> tuple[Snippet, ...]:
        """
        Return the snippets needed to run the selected ordinals.

        The result contains the selection plus the transitive closure of its
        setup dependencies, in document order.

        Args:
            ordinals: Selected 1-based snippet ordinals

        Returns:
            Ordered tuple of snippets
        """
        needed: set[int] = set()
        pending = list(ordinals)
        while pending:
            ordinal = pending.pop()
            if ordinal in needed:
                continue
            snip = self.snippet(ordinal)
            needed.add(ordinal)
            pending.extend(snip.depends_on)
        return tuple(s for s in self.snippets if s.ordinal in needed)

    def restricted_to(self, ordinals: Iterable[int]) -> "Document":
        """Copy of this document holding only the selection and its dependencies."""
        return self.model_copy(update={"snippets": self.with_dependencies(ordinals)})

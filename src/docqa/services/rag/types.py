from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class SourceDocument:
    doc_id: str
    source_path: str
    text: str


@dataclass(frozen=True)
class TextSpan:
    index: int
    start: int
    end: int
    text: str


@dataclass(frozen=True)
class Chunk:
    chunk_id: str
    doc_id: str
    source_path: str
    index: int
    start: int
    end: int
    text: str


@dataclass(frozen=True)
class IndexEntry:
    entry_id: str
    vector: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)
    document_id: str | None = None


@dataclass(frozen=True)
class SearchResult:
    entry: IndexEntry
    score: float


@dataclass(frozen=True)
class ContextItem:
    source: str
    snippet: str
    score: float
    entry_id: str


NO_CONTEXT_NOTE = "No relevant context found in the document index."


@dataclass(frozen=True)
class ContextBundle:
    question: str
    items: tuple[ContextItem, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.items

    def render(self) -> str:
        if self.is_empty:
            return NO_CONTEXT_NOTE
        return "\n\n---\n\n".join(
            f"Source: {item.source}\nContent: {item.snippet}" for item in self.items
        )


@dataclass(frozen=True)
class DocumentReport:
    source_path: str
    status: str
    chunk_count: int = 0
    error: str | None = None


@dataclass(frozen=True)
class IngestionReport:
    collection: str
    documents: tuple[DocumentReport, ...]

    @property
    def document_count(self) -> int:
        return len(self.documents)

    @property
    def succeeded(self) -> int:
        return sum(1 for report in self.documents if report.status == "succeeded")

    @property
    def failed(self) -> int:
        return sum(1 for report in self.documents if report.status == "failed")

    @property
    def skipped(self) -> int:
        return sum(1 for report in self.documents if report.status == "skipped")

    @property
    def chunk_count(self) -> int:
        return sum(report.chunk_count for report in self.documents)

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from docqa.errors import RagError, ShapeMismatchError
from docqa.services.rag.chunker import chunk_document, validate_chunking
from docqa.services.rag.embedding_client import EmbeddingClient
from docqa.services.rag.loader import discover_documents, load_document
from docqa.services.rag.types import (
    DocumentReport,
    IndexEntry,
    IngestionReport,
    SourceDocument,
)
from docqa.services.rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)


def ingest_document(
    document: SourceDocument,
    *,
    index: VectorIndex,
    collection: str,
    embedding_client: EmbeddingClient,
    chunk_size: int,
    chunk_overlap: int,
    chunk_strategy: str = "recursive",
) -> int:
    """Chunk, embed and store one document; returns the stored chunk count.

    All of the document's entries are written in a single transaction after
    every chunk is embedded, so a failure leaves no partial document behind.
    """
    chunks = chunk_document(
        document,
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        strategy=chunk_strategy,
    )
    if not chunks:
        index.replace_document(collection, document.doc_id, [])
        return 0

    vectors = embedding_client.embed_texts([chunk.text for chunk in chunks])
    if len(vectors) != len(chunks):
        raise ShapeMismatchError(f"Expected {len(chunks)} vectors, got {len(vectors)}")

    entries = [
        IndexEntry(
            entry_id=chunk.chunk_id,
            vector=vector,
            metadata={
                "source": chunk.source_path,
                "chunk_index": chunk.index,
                "start": chunk.start,
                "end": chunk.end,
                "text": chunk.text,
            },
            document_id=chunk.doc_id,
        )
        for chunk, vector in zip(chunks, vectors)
    ]
    index.replace_document(collection, document.doc_id, entries)
    return len(entries)


def ingest_directory(
    *,
    source_dir: Path,
    index: VectorIndex,
    collection: str,
    embedding_client: EmbeddingClient,
    chunk_size: int,
    chunk_overlap: int,
    chunk_strategy: str = "recursive",
    on_document: Callable[[DocumentReport], None] | None = None,
) -> IngestionReport:
    validate_chunking(chunk_size, chunk_overlap, chunk_strategy)
    paths = discover_documents(source_dir)
    logger.info("found %d document(s) in %s", len(paths), source_dir)

    reports: list[DocumentReport] = []
    for path in paths:
        relative_path = path.relative_to(source_dir).as_posix()
        try:
            document = load_document(path, source_dir=source_dir)
            chunk_count = ingest_document(
                document,
                index=index,
                collection=collection,
                embedding_client=embedding_client,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                chunk_strategy=chunk_strategy,
            )
        except (RagError, ValueError, OSError, SQLAlchemyError) as exc:
            kind = getattr(exc, "kind", type(exc).__name__)
            logger.error("document failed source=%s kind=%s error=%s", relative_path, kind, exc)
            report = DocumentReport(
                source_path=relative_path,
                status="failed",
                error=f"{kind}: {exc}",
            )
        else:
            status = "succeeded" if chunk_count else "skipped"
            logger.info("document %s source=%s chunks=%d", status, relative_path, chunk_count)
            report = DocumentReport(
                source_path=relative_path,
                status=status,
                chunk_count=chunk_count,
            )

        reports.append(report)
        if on_document is not None:
            on_document(report)

    return IngestionReport(collection=collection, documents=tuple(reports))

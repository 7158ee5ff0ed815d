from __future__ import annotations

import logging

from docqa.errors import ShapeMismatchError
from docqa.services.rag.embedding_client import EmbeddingClient
from docqa.services.rag.types import ContextBundle, ContextItem, SearchResult
from docqa.services.rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)


def _source_of(result: SearchResult) -> str:
    source = result.entry.metadata.get("source")
    if isinstance(source, str) and source:
        return source
    return result.entry.document_id or result.entry.entry_id


def _text_of(result: SearchResult) -> str:
    text = result.entry.metadata.get("text")
    return text if isinstance(text, str) else ""


class RetrievalService:
    def __init__(
        self,
        *,
        embedding_client: EmbeddingClient,
        index: VectorIndex,
        collection: str,
        top_k: int = 5,
        preview_chars: int = 1000,
        min_score: float | None = None,
    ) -> None:
        if top_k < 1:
            raise ValueError("top_k must be >= 1")
        if preview_chars < 1:
            raise ValueError("preview_chars must be >= 1")
        self._embedding_client = embedding_client
        self._index = index
        self._collection = collection
        self._top_k = top_k
        self._preview_chars = preview_chars
        self._min_score = min_score

    @property
    def collection(self) -> str:
        return self._collection

    def embed_question(self, question: str, *, timeout: float | None = None) -> list[float]:
        vectors = self._embedding_client.embed_texts([question], timeout=timeout)
        if len(vectors) != 1:
            raise ShapeMismatchError(f"Expected 1 query vector, got {len(vectors)}")
        return vectors[0]

    def search(self, query_vector: list[float], *, k: int | None = None) -> list[SearchResult]:
        results = self._index.query(self._collection, query_vector, k or self._top_k)
        if self._min_score is not None:
            results = [result for result in results if result.score >= self._min_score]
        return results

    def bundle(self, question: str, results: list[SearchResult]) -> ContextBundle:
        items = tuple(
            ContextItem(
                source=_source_of(result),
                snippet=_text_of(result)[: self._preview_chars],
                score=result.score,
                entry_id=result.entry.entry_id,
            )
            for result in results
        )
        return ContextBundle(question=question, items=items)

    def retrieve(self, question: str, *, k: int | None = None) -> ContextBundle:
        """Embed ``question``, search the collection and build the context bundle.

        Collection and embedding errors propagate as raised; an empty result
        comes back as an empty bundle.
        """
        query_vector = self.embed_question(question)
        results = self.search(query_vector, k=k)
        bundle = self.bundle(question, results)
        logger.info(
            "retrieved collection=%s k=%s hits=%d",
            self._collection,
            k or self._top_k,
            len(bundle.items),
        )
        return bundle

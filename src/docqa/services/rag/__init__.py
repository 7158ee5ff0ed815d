from docqa.services.rag.ingest import ingest_directory, ingest_document
from docqa.services.rag.pipeline import AskPipeline, AskResult, RequestState
from docqa.services.rag.retrieval import RetrievalService
from docqa.services.rag.types import ContextBundle, IngestionReport, SearchResult
from docqa.services.rag.vector_index import VectorIndex

__all__ = [
    "AskPipeline",
    "AskResult",
    "ContextBundle",
    "IngestionReport",
    "RequestState",
    "RetrievalService",
    "SearchResult",
    "VectorIndex",
    "ingest_directory",
    "ingest_document",
]

from pathlib import Path

import fitz
import pytest

from docqa.errors import DimensionMismatchError, EmbeddingError
from docqa.services.rag.embedder import HashingEmbeddingClient
from docqa.services.rag.ingest import ingest_directory, ingest_document
from docqa.services.rag.loader import document_id_for, load_document, normalize_text
from docqa.services.rag.retrieval import RetrievalService
from docqa.services.rag.types import DocumentReport, SourceDocument
from docqa.services.rag.vector_index import VectorIndex

BERKSHIRE_SENTENCE = "Berkshire Hathaway reported record operating earnings in 2023."


class _ConstantEmbedder:
    def __init__(self, dimensions: int = 2) -> None:
        self.dimensions = dimensions
        self.calls = 0

    def embed_texts(
        self, texts: list[str], *, timeout: float | None = None
    ) -> list[list[float]]:
        self.calls += 1
        return [[1.0] + [0.0] * (self.dimensions - 1) for _ in texts]


class _FailingEmbedder:
    def embed_texts(
        self, texts: list[str], *, timeout: float | None = None
    ) -> list[list[float]]:
        raise EmbeddingError("provider rejected input", status_code=400)


class _SelectiveEmbedder:
    """Fails for any batch containing ``poison``."""

    def __init__(self, poison: str) -> None:
        self.poison = poison

    def embed_texts(
        self, texts: list[str], *, timeout: float | None = None
    ) -> list[list[float]]:
        if any(self.poison in text for text in texts):
            raise EmbeddingError("provider rejected input", status_code=400)
        return [[1.0, 0.0] for _ in texts]


def _write_pdf(path: Path, text: str) -> None:
    pdf = fitz.open()
    page = pdf.new_page()
    page.insert_text((72, 72), text)
    pdf.save(path)
    pdf.close()


def _ingest(source_dir: Path, index: VectorIndex, embedder: object, **overrides: object):
    options: dict[str, object] = {
        "source_dir": source_dir,
        "index": index,
        "collection": "letters",
        "embedding_client": embedder,
        "chunk_size": 1024,
        "chunk_overlap": 100,
    }
    options.update(overrides)
    return ingest_directory(**options)


def test_ingest_directory_indexes_text_and_markdown(tmp_path: Path, index: VectorIndex) -> None:
    source_dir = tmp_path / "docs"
    (source_dir / "nested").mkdir(parents=True)
    (source_dir / "a.txt").write_text("first document " * 100, encoding="utf-8")
    (source_dir / "nested" / "b.md").write_text("# Title\n\nsecond document", encoding="utf-8")
    (source_dir / "ignored.csv").write_text("x,y", encoding="utf-8")

    seen: list[DocumentReport] = []
    report = _ingest(
        source_dir,
        index,
        _ConstantEmbedder(),
        chunk_size=300,
        chunk_overlap=50,
        on_document=seen.append,
    )

    assert [doc.source_path for doc in report.documents] == ["a.txt", "nested/b.md"]
    assert seen == list(report.documents)
    assert report.succeeded == 2
    assert report.failed == 0
    assert report.documents[0].chunk_count > 1
    assert report.documents[1].chunk_count == 1
    assert index.count("letters") == report.chunk_count

    hit = index.query("letters", [1.0, 0.0], k=100)[-1].entry
    assert set(hit.metadata) == {"source", "chunk_index", "start", "end", "text"}


def test_failing_document_does_not_block_others(tmp_path: Path, index: VectorIndex) -> None:
    source_dir = tmp_path / "docs"
    source_dir.mkdir()
    (source_dir / "good.txt").write_text("healthy document", encoding="utf-8")
    (source_dir / "poisoned.txt").write_text("poison pill", encoding="utf-8")
    (source_dir / "zz.txt").write_text("another healthy document", encoding="utf-8")

    report = _ingest(source_dir, index, _SelectiveEmbedder("poison"))

    statuses = {doc.source_path: doc.status for doc in report.documents}
    assert statuses == {"good.txt": "succeeded", "poisoned.txt": "failed", "zz.txt": "succeeded"}
    failed = next(doc for doc in report.documents if doc.status == "failed")
    assert failed.error == "EmbeddingError: provider rejected input"
    assert index.count("letters") == 2


def test_blank_document_is_skipped(tmp_path: Path, index: VectorIndex) -> None:
    source_dir = tmp_path / "docs"
    source_dir.mkdir()
    (source_dir / "blank.txt").write_text(" \n\n\t\n", encoding="utf-8")
    (source_dir / "real.txt").write_text("content", encoding="utf-8")
    embedder = _ConstantEmbedder()

    report = _ingest(source_dir, index, embedder)

    assert [doc.status for doc in report.documents] == ["skipped", "succeeded"]
    assert report.skipped == 1
    assert embedder.calls == 1


def test_reingesting_a_shorter_document_removes_stale_chunks(
    tmp_path: Path, index: VectorIndex
) -> None:
    source_dir = tmp_path / "docs"
    source_dir.mkdir()
    letter = source_dir / "letter.txt"
    letter.write_text("paragraph " * 200, encoding="utf-8")

    first = _ingest(source_dir, index, _ConstantEmbedder(), chunk_size=200, chunk_overlap=20)
    letter.write_text("short now", encoding="utf-8")
    second = _ingest(source_dir, index, _ConstantEmbedder(), chunk_size=200, chunk_overlap=20)

    assert first.chunk_count > 1
    assert second.chunk_count == 1
    assert index.count("letters") == 1
    assert index.query("letters", [1.0, 0.0], k=5)[0].entry.metadata["text"] == "short now"


def test_embedding_failure_keeps_previous_version(tmp_path: Path, index: VectorIndex) -> None:
    source_dir = tmp_path / "docs"
    source_dir.mkdir()
    (source_dir / "letter.txt").write_text("original text", encoding="utf-8")
    _ingest(source_dir, index, _ConstantEmbedder())

    (source_dir / "letter.txt").write_text("revised text", encoding="utf-8")
    report = _ingest(source_dir, index, _FailingEmbedder())

    assert report.failed == 1
    assert index.query("letters", [1.0, 0.0], k=5)[0].entry.metadata["text"] == "original text"


def test_single_sentence_letter_round_trips_through_retrieval(
    tmp_path: Path, index: VectorIndex
) -> None:
    source_dir = tmp_path / "docs"
    source_dir.mkdir()
    (source_dir / "2023.txt").write_text(BERKSHIRE_SENTENCE, encoding="utf-8")
    embedder = HashingEmbeddingClient(dimensions=32)

    report = _ingest(source_dir, index, embedder)
    bundle = RetrievalService(
        embedding_client=embedder,
        index=index,
        collection="letters",
    ).retrieve("What were the 2023 earnings?", k=5)

    assert report.chunk_count == 1
    assert len(bundle.items) == 1
    assert bundle.items[0].snippet == BERKSHIRE_SENTENCE
    assert bundle.items[0].source == "2023.txt"


def test_wrong_dimension_embedder_is_reported(tmp_path: Path, index: VectorIndex) -> None:
    source_dir = tmp_path / "docs"
    source_dir.mkdir()
    (source_dir / "a.txt").write_text("alpha", encoding="utf-8")
    (source_dir / "b.txt").write_text("beta", encoding="utf-8")

    _ingest(source_dir, index, _ConstantEmbedder(dimensions=2), collection="letters")
    (source_dir / "b.txt").write_text("beta revised", encoding="utf-8")
    report = _ingest(source_dir, index, _ConstantEmbedder(dimensions=3))

    assert report.failed == 2
    assert all(doc.error.startswith("DimensionMismatch") for doc in report.documents)
    with pytest.raises(DimensionMismatchError):
        RetrievalService(
            embedding_client=_ConstantEmbedder(dimensions=3),
            index=index,
            collection="letters",
        ).retrieve("alpha")


def test_pdf_documents_are_extracted(tmp_path: Path, index: VectorIndex) -> None:
    source_dir = tmp_path / "docs"
    source_dir.mkdir()
    _write_pdf(source_dir / "2023.pdf", BERKSHIRE_SENTENCE)

    document = load_document(source_dir / "2023.pdf", source_dir=source_dir)
    report = _ingest(source_dir, index, _ConstantEmbedder())

    assert BERKSHIRE_SENTENCE in document.text
    assert document.doc_id == document_id_for("2023.pdf")
    assert report.succeeded == 1


def test_corrupt_pdf_is_reported_as_failed(tmp_path: Path, index: VectorIndex) -> None:
    source_dir = tmp_path / "docs"
    source_dir.mkdir()
    (source_dir / "broken.pdf").write_bytes(b"this is not a pdf")
    (source_dir / "fine.txt").write_text("fine", encoding="utf-8")

    report = _ingest(source_dir, index, _ConstantEmbedder())

    assert [doc.status for doc in report.documents] == ["failed", "succeeded"]
    assert report.documents[0].error.startswith("DocumentLoad")


def test_missing_source_directory_raises(tmp_path: Path, index: VectorIndex) -> None:
    with pytest.raises(FileNotFoundError):
        _ingest(tmp_path / "nope", index, _ConstantEmbedder())


def test_ingest_document_returns_zero_for_empty_text(index: VectorIndex) -> None:
    document = SourceDocument(doc_id="doc", source_path="doc.txt", text="")

    assert (
        ingest_document(
            document,
            index=index,
            collection="letters",
            embedding_client=_ConstantEmbedder(),
            chunk_size=100,
            chunk_overlap=10,
        )
        == 0
    )
    assert index.count("letters") == 0


def test_normalize_text_cleans_extraction_artifacts() -> None:
    raw = "Page one  \r\nline\x00 two\f\f\n\n\n\nPage two\r"

    assert normalize_text(raw) == "Page one\nline two\n\nPage two"

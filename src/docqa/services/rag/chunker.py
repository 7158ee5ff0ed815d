from __future__ import annotations

from docqa.errors import InvalidConfigError
from docqa.services.rag.types import Chunk, SourceDocument, TextSpan

# Strongest first; "recursive" cuts at the first one found in the back half of a window.
SEPARATORS = ("\n\n", "\n", ". ", " ")


def validate_chunking(chunk_size: int, chunk_overlap: int, strategy: str = "fixed") -> None:
    if chunk_size <= 0:
        raise InvalidConfigError("chunk_size must be > 0")
    if chunk_overlap < 0:
        raise InvalidConfigError("chunk_overlap must be >= 0")
    if chunk_overlap >= chunk_size:
        raise InvalidConfigError("chunk_overlap must be smaller than chunk_size")
    if strategy not in {"fixed", "recursive"}:
        raise InvalidConfigError(f"Unknown chunk strategy: {strategy}")


def _boundary_end(text: str, *, start: int, end: int, chunk_size: int, chunk_overlap: int) -> int:
    # The cut must stay past start + overlap so the next window still advances.
    floor = max(start + chunk_overlap + 1, start + chunk_size // 2)
    for separator in SEPARATORS:
        position = text.rfind(separator, floor, end)
        if position != -1:
            return position + len(separator)
    return end


def chunk_text(
    text: str,
    *,
    chunk_size: int,
    chunk_overlap: int,
    strategy: str = "fixed",
) -> list[TextSpan]:
    """Split ``text`` into overlapping windows that cover it without gaps.

    Every span after the first starts ``chunk_overlap`` characters before the
    previous span's end, so ``spans[0].text`` followed by
    ``span.text[chunk_overlap:]`` for the remaining spans gives back ``text``.
    Span text is never stripped.
    """
    validate_chunking(chunk_size, chunk_overlap, strategy)
    if not text.strip():
        return []

    spans: list[TextSpan] = []
    text_length = len(text)
    cursor = 0

    while True:
        end = min(text_length, cursor + chunk_size)
        if strategy == "recursive" and end < text_length:
            end = _boundary_end(
                text,
                start=cursor,
                end=end,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
            )

        spans.append(TextSpan(index=len(spans), start=cursor, end=end, text=text[cursor:end]))

        if end >= text_length:
            break
        cursor = end - chunk_overlap

    return spans


def chunk_document(
    document: SourceDocument,
    *,
    chunk_size: int,
    chunk_overlap: int,
    strategy: str = "fixed",
) -> list[Chunk]:
    spans = chunk_text(
        document.text,
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        strategy=strategy,
    )
    return [
        Chunk(
            chunk_id=f"{document.doc_id}-{span.index:04d}",
            doc_id=document.doc_id,
            source_path=document.source_path,
            index=span.index,
            start=span.start,
            end=span.end,
            text=span.text,
        )
        for span in spans
    ]

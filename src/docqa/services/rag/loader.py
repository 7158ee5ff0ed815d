from __future__ import annotations

import hashlib
from pathlib import Path
import re

import fitz  # PyMuPDF

from docqa.errors import DocumentLoadError
from docqa.services.rag.types import SourceDocument

SUPPORTED_EXTENSIONS = {".pdf", ".txt", ".md"}

_TRAILING_SPACE = re.compile(r"[ \t]+\n")
_BLANK_RUNS = re.compile(r"\n{3,}")


def normalize_text(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    text = text.replace("\f", "\n\n")
    text = _TRAILING_SPACE.sub("\n", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()


def document_id_for(relative_path: str) -> str:
    return hashlib.sha256(relative_path.encode("utf-8")).hexdigest()[:16]


def discover_documents(
    source_dir: Path,
    supported_extensions: set[str] | None = None,
) -> list[Path]:
    if not source_dir.exists():
        raise FileNotFoundError(f"Source directory not found: {source_dir}")
    if not source_dir.is_dir():
        raise NotADirectoryError(f"Source path is not a directory: {source_dir}")

    extensions = supported_extensions or SUPPORTED_EXTENSIONS
    return sorted(
        path
        for path in source_dir.rglob("*")
        if path.is_file() and path.suffix.lower() in extensions
    )


def _extract_pdf_text(path: Path) -> str:
    try:
        with fitz.open(path) as pdf:
            pages = [page.get_text("text") for page in pdf]
    except Exception as exc:  # PyMuPDF raises several unrelated types for unreadable files
        raise DocumentLoadError(f"Failed to read PDF {path.name}: {exc}") from exc
    return "\f".join(pages)


def extract_text(path: Path) -> str:
    if path.suffix.lower() == ".pdf":
        return _extract_pdf_text(path)
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise DocumentLoadError(f"Failed to read {path.name}: {exc}") from exc


def load_document(path: Path, *, source_dir: Path) -> SourceDocument:
    relative_path = path.relative_to(source_dir).as_posix()
    return SourceDocument(
        doc_id=document_id_for(relative_path),
        source_path=relative_path,
        text=normalize_text(extract_text(path)),
    )

from __future__ import annotations

import argparse
from dataclasses import replace
from pathlib import Path
import sys

from dotenv import load_dotenv

from docqa.config import Settings, get_settings, validate_settings
from docqa.db import create_index_engine
from docqa.errors import InvalidConfigError
from docqa.logs import configure_logging
from docqa.services.rag.embedding_client import EmbeddingClient, build_embedding_client
from docqa.services.rag.ingest import ingest_directory
from docqa.services.rag.types import DocumentReport, IngestionReport
from docqa.services.rag.vector_index import VectorIndex

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2


def _build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docqa-ingest",
        description="Chunk, embed and index every PDF/TXT/MD document in a directory",
    )
    parser.add_argument(
        "--source-dir",
        default=settings.source_dir,
        help="Source directory containing .pdf/.txt/.md documents",
    )
    parser.add_argument(
        "--collection",
        default=settings.collection,
        help="Collection name to write into",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=settings.chunk_size,
        help="Chunk size in characters",
    )
    parser.add_argument(
        "--chunk-overlap",
        type=int,
        default=settings.chunk_overlap,
        help="Chunk overlap in characters",
    )
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="SQLAlchemy URL of the vector index database",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Drop the collection before ingesting",
    )
    return parser


def _print_document(report: DocumentReport) -> None:
    if report.status == "failed":
        print(
            f"[docqa-ingest] failed source={report.source_path} error={report.error}",
            file=sys.stderr,
            flush=True,
        )
        return
    print(
        f"[docqa-ingest] {report.status} source={report.source_path} chunks={report.chunk_count}",
        flush=True,
    )


def run_ingest(
    settings: Settings,
    *,
    reset: bool = False,
    embedding_client: EmbeddingClient | None = None,
) -> IngestionReport:
    engine = create_index_engine(settings.database_url, echo=settings.db_echo)
    try:
        index = VectorIndex(engine, metric=settings.distance_metric)
        if reset:
            index.drop_collection(settings.collection)

        return ingest_directory(
            source_dir=Path(settings.source_dir),
            index=index,
            collection=settings.collection,
            embedding_client=embedding_client or build_embedding_client(settings),
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            chunk_strategy=settings.chunk_strategy,
            on_document=_print_document,
        )
    finally:
        engine.dispose()


def main(argv: list[str] | None = None) -> int:
    load_dotenv()

    try:
        base_settings = get_settings()
        args = _build_parser(base_settings).parse_args(argv)
        settings = validate_settings(
            replace(
                base_settings,
                source_dir=args.source_dir,
                collection=args.collection,
                chunk_size=args.chunk_size,
                chunk_overlap=args.chunk_overlap,
                database_url=args.database_url,
            )
        )
    except InvalidConfigError as exc:
        print(f"[docqa-ingest] invalid configuration: {exc}", file=sys.stderr, flush=True)
        return EXIT_FATAL

    configure_logging(settings.log_level)

    try:
        report = run_ingest(settings, reset=args.reset)
    except (FileNotFoundError, NotADirectoryError) as exc:
        print(f"[docqa-ingest] failed: {exc}", file=sys.stderr, flush=True)
        return EXIT_FATAL

    if report.document_count == 0:
        print(
            f"[docqa-ingest] no documents found in {settings.source_dir}; "
            "place PDF, TXT or MD files there and run again",
            flush=True,
        )

    print(
        "[docqa-ingest] completed "
        f"documents={report.document_count} "
        f"succeeded={report.succeeded} "
        f"failed={report.failed} "
        f"skipped={report.skipped} "
        f"chunks={report.chunk_count} "
        f"collection={report.collection}",
        flush=True,
    )
    return EXIT_PARTIAL if report.failed else EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())

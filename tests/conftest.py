from collections.abc import Iterator
import logging
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from docqa.config import get_settings
from docqa.db import create_index_engine, get_engine
from docqa.logs import HANDLER_NAME
from docqa.main import app, get_vector_index
from docqa.services.rag.vector_index import VectorIndex

TEST_COLLECTION = "test_collection"


@pytest.fixture(autouse=True)
def reset_api_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_vector_index.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_vector_index.cache_clear()


@pytest.fixture(autouse=True)
def detach_log_handlers() -> Iterator[None]:
    # configure_logging binds sys.stderr, which pytest swaps per test
    yield
    logger = logging.getLogger("docqa")
    for handler in list(logger.handlers):
        if handler.get_name() == HANDLER_NAME:
            logger.removeHandler(handler)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+pysqlite:///{tmp_path / 'rag_index' / 'rag.db'}"


@pytest.fixture
def index(database_url: str) -> Iterator[VectorIndex]:
    engine = create_index_engine(database_url)
    yield VectorIndex(engine)
    engine.dispose()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, database_url: str) -> Iterator[TestClient]:
    monkeypatch.setenv("RAG_DATABASE_URL", database_url)
    monkeypatch.setenv("RAG_COLLECTION", TEST_COLLECTION)
    monkeypatch.setenv("RAG_DB_ECHO", "false")

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    get_engine().dispose()

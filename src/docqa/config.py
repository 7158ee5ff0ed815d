from dataclasses import dataclass
from functools import lru_cache
import os

from docqa.errors import InvalidConfigError

CHUNK_STRATEGIES = {"fixed", "recursive"}
DISTANCE_METRICS = {"cosine", "dot", "euclidean"}
EMBEDDING_PROVIDERS = {"openai", "hashing"}
GENERATION_MODES = {"blocking", "streaming"}


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, name: str) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise InvalidConfigError(f"{name} must be an integer, got {value!r}") from exc


def _to_float(value: str | None, *, default: float | None, name: str) -> float | None:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise InvalidConfigError(f"{name} must be a number, got {value!r}") from exc


@dataclass(frozen=True)
class Settings:
    database_url: str
    db_echo: bool
    source_dir: str
    collection: str
    chunk_size: int
    chunk_overlap: int
    chunk_strategy: str
    top_k: int
    preview_chars: int
    min_score: float | None
    distance_metric: str
    embedding_provider: str
    embedding_dim: int
    embedding_batch_size: int
    request_timeout_seconds: float
    provider_max_attempts: int
    generation_mode: str
    openai_base_url: str
    openai_api_key: str
    openai_embedding_model: str
    openai_chat_model: str
    openai_fallback_chat_model: str
    log_level: str


@lru_cache
def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv("RAG_DATABASE_URL", "sqlite+pysqlite:///data/rag.db"),
        db_echo=_to_bool(os.getenv("RAG_DB_ECHO"), default=False),
        source_dir=os.getenv("RAG_SOURCE_DIR", "data"),
        collection=os.getenv("RAG_COLLECTION", "shareholder_letters"),
        chunk_size=_to_int(os.getenv("RAG_CHUNK_SIZE"), default=1024, name="RAG_CHUNK_SIZE"),
        chunk_overlap=_to_int(
            os.getenv("RAG_CHUNK_OVERLAP"), default=100, name="RAG_CHUNK_OVERLAP"
        ),
        chunk_strategy=os.getenv("RAG_CHUNK_STRATEGY", "recursive").strip().lower(),
        top_k=_to_int(os.getenv("RAG_TOP_K"), default=5, name="RAG_TOP_K"),
        preview_chars=_to_int(
            os.getenv("RAG_PREVIEW_CHARS"), default=1000, name="RAG_PREVIEW_CHARS"
        ),
        min_score=_to_float(os.getenv("RAG_MIN_SCORE"), default=None, name="RAG_MIN_SCORE"),
        distance_metric=os.getenv("RAG_DISTANCE_METRIC", "cosine").strip().lower(),
        embedding_provider=os.getenv("RAG_EMBEDDING_PROVIDER", "openai").strip().lower(),
        embedding_dim=_to_int(os.getenv("RAG_EMBEDDING_DIM"), default=64, name="RAG_EMBEDDING_DIM"),
        embedding_batch_size=_to_int(
            os.getenv("RAG_EMBEDDING_BATCH_SIZE"), default=64, name="RAG_EMBEDDING_BATCH_SIZE"
        ),
        request_timeout_seconds=_to_float(
            os.getenv("RAG_REQUEST_TIMEOUT_SECONDS"),
            default=30.0,
            name="RAG_REQUEST_TIMEOUT_SECONDS",
        ),
        provider_max_attempts=_to_int(
            os.getenv("RAG_PROVIDER_MAX_ATTEMPTS"), default=1, name="RAG_PROVIDER_MAX_ATTEMPTS"
        ),
        generation_mode=os.getenv("RAG_GENERATION_MODE", "blocking").strip().lower(),
        openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
        openai_chat_model=os.getenv("OPENAI_CHAT_MODEL", "gpt-4o"),
        openai_fallback_chat_model=os.getenv("OPENAI_FALLBACK_CHAT_MODEL", ""),
        log_level=os.getenv("RAG_LOG_LEVEL", "INFO").strip().upper(),
    )


def validate_settings(settings: Settings) -> Settings:
    """Reject settings the service cannot start with.

    Called once by each entry point; a failure here is fatal.
    """
    if settings.chunk_size <= 0:
        raise InvalidConfigError("RAG_CHUNK_SIZE must be > 0")
    if settings.chunk_overlap < 0:
        raise InvalidConfigError("RAG_CHUNK_OVERLAP must be >= 0")
    if settings.chunk_overlap >= settings.chunk_size:
        raise InvalidConfigError("RAG_CHUNK_OVERLAP must be smaller than RAG_CHUNK_SIZE")
    if settings.chunk_strategy not in CHUNK_STRATEGIES:
        raise InvalidConfigError(
            f"RAG_CHUNK_STRATEGY must be one of {sorted(CHUNK_STRATEGIES)}"
        )
    if settings.top_k < 1:
        raise InvalidConfigError("RAG_TOP_K must be >= 1")
    if settings.preview_chars < 1:
        raise InvalidConfigError("RAG_PREVIEW_CHARS must be >= 1")
    if settings.distance_metric not in DISTANCE_METRICS:
        raise InvalidConfigError(
            f"RAG_DISTANCE_METRIC must be one of {sorted(DISTANCE_METRICS)}"
        )
    if settings.embedding_provider not in EMBEDDING_PROVIDERS:
        raise InvalidConfigError(
            f"RAG_EMBEDDING_PROVIDER must be one of {sorted(EMBEDDING_PROVIDERS)}"
        )
    if settings.embedding_dim < 1:
        raise InvalidConfigError("RAG_EMBEDDING_DIM must be >= 1")
    if settings.embedding_batch_size < 1:
        raise InvalidConfigError("RAG_EMBEDDING_BATCH_SIZE must be >= 1")
    if settings.request_timeout_seconds is None or settings.request_timeout_seconds <= 0:
        raise InvalidConfigError("RAG_REQUEST_TIMEOUT_SECONDS must be > 0")
    if settings.provider_max_attempts < 1:
        raise InvalidConfigError("RAG_PROVIDER_MAX_ATTEMPTS must be >= 1")
    if settings.generation_mode not in GENERATION_MODES:
        raise InvalidConfigError(
            f"RAG_GENERATION_MODE must be one of {sorted(GENERATION_MODES)}"
        )
    if not settings.collection.strip():
        raise InvalidConfigError("RAG_COLLECTION must not be empty")
    return settings

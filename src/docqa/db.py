from functools import lru_cache
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase

from docqa.config import get_settings


class Base(DeclarativeBase):
    pass


def create_index_engine(database_url: str, *, echo: bool = False) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    from docqa import models  # noqa: F401  registers the index tables on Base

    engine = create_engine(url, echo=echo, pool_pre_ping=True)
    Base.metadata.create_all(bind=engine)
    return engine


@lru_cache
def get_engine() -> Engine:
    settings = get_settings()
    return create_index_engine(settings.database_url, echo=settings.db_echo)

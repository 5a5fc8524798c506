from __future__ import annotations

from collections.abc import Generator
from typing import Any, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from ..models import db as _db_models  # noqa: F401 - ensure models register with metadata
from .config import get_settings


def create_engine_for_url(database_url: str) -> Engine:
    connect_args: dict[str, Any] = {}
    options: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        # Concurrent webhook deliveries wait on the write lock instead of failing.
        connect_args = {"check_same_thread": False, "timeout": 15}
    else:
        options["pool_pre_ping"] = True
    return create_engine(database_url, echo=False, connect_args=connect_args, **options)


settings = get_settings()
engine = create_engine_for_url(settings.database_url)


def init_db(target: Optional[Engine] = None) -> None:
    SQLModel.metadata.create_all(target or engine)


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def set_engine(new_engine: Engine) -> None:
    global engine
    engine = new_engine

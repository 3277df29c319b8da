"""Database engine and the table that holds roster documents."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

from sqlalchemy import UniqueConstraint
from sqlalchemy.engine import Engine
from sqlmodel import Field, SQLModel, create_engine

DEFAULT_SQLITE_PATH = "sqlite:///./skateapp.db"

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _build_engine_url() -> str:
    """Return the configured database URL or fall back to SQLite."""
    return os.environ.get("DATABASE_URL", DEFAULT_SQLITE_PATH)


def build_engine(url: str | None = None) -> Engine:
    url = url or _build_engine_url()
    engine_kwargs = {}
    if url.startswith("sqlite"):
        # SQLite needs check_same_thread disabled for FastAPI concurrency,
        # but passing this flag to other drivers (e.g., psycopg2) raises errors.
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **engine_kwargs)


engine = build_engine()


class RosterDocument(SQLModel, table=True):
    """One JSON document addressed by ``(store, key)``."""

    __tablename__ = "roster_document"
    __table_args__ = (UniqueConstraint("store", "key", name="uq_roster_document_store_key"),)

    id: int | None = Field(default=None, primary_key=True)
    store: str = Field(nullable=False, max_length=64, index=True)
    key: str = Field(nullable=False, max_length=128)
    body: str = Field(nullable=False)
    version: int = Field(default=1, nullable=False)
    updated_at: datetime = Field(default_factory=_utcnow, nullable=False)


def init_db(bind: Engine | None = None) -> None:
    """Create tables if they don't already exist."""
    target = bind or engine
    SQLModel.metadata.create_all(target)
    logger.debug("Roster tables ensured on %s", target.url)

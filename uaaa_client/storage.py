"""
Persistent key/value storage for session state (tokens, discovery document, login state).
One SQLite file shared by every process of the session; values are JSON text.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import DateTime, String, Text, create_engine
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from uaaa_client.config import STORAGE_URL

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class StorageEntry(Base):
    __tablename__ = "session_storage"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)  # JSON document
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)


def create_storage_engine(url: str) -> Engine:
    """Engine for the storage URL. In-memory SQLite needs StaticPool so all sessions share one DB."""
    if url.startswith("sqlite:///:memory:"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    connect_args = {"check_same_thread": False} if "sqlite" in url else {}
    return create_engine(url, connect_args=connect_args)


class SessionStorage:
    """JSON values by key. Every read goes to the database so changes from other processes are seen."""

    def __init__(self, url: str | None = None, engine: Engine | None = None):
        self._engine = engine or create_storage_engine(url or STORAGE_URL)
        Base.metadata.create_all(bind=self._engine)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)

    def get(self, key: str, default: Any = None) -> Any:
        db = self._session_factory()
        try:
            entry = db.get(StorageEntry, key)
            if entry is None:
                return default
            try:
                return json.loads(entry.value)
            except ValueError as e:
                logger.warning("Discarding unreadable storage entry %s: %s", key, e)
                return default
        finally:
            db.close()

    def set(self, key: str, value: Any) -> None:
        """Insert or replace in one statement; another process may create the same key concurrently."""
        stmt = sqlite_insert(StorageEntry).values(key=key, value=json.dumps(value), updated_at=_utc_now())
        stmt = stmt.on_conflict_do_update(
            index_elements=[StorageEntry.key],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )
        db = self._session_factory()
        try:
            db.execute(stmt)
            db.commit()
        finally:
            db.close()

    def delete(self, key: str) -> None:
        db = self._session_factory()
        try:
            entry = db.get(StorageEntry, key)
            if entry is not None:
                db.delete(entry)
                db.commit()
        finally:
            db.close()

    def clear(self) -> None:
        db = self._session_factory()
        try:
            db.query(StorageEntry).delete()
            db.commit()
        finally:
            db.close()

    def dispose(self) -> None:
        self._engine.dispose()


class PersistedValue:
    """
    A single storage key exposed as `.value`, with optional decode/encode hooks.
    Reads and writes go straight through to storage; nothing is cached on the instance.
    """

    def __init__(
        self,
        storage: SessionStorage,
        key: str,
        default: Any = None,
        *,
        decode: Callable[[Any], Any] | None = None,
        encode: Callable[[Any], Any] | None = None,
    ):
        self._storage = storage
        self.key = key
        self._default = default
        self._decode = decode
        self._encode = encode

    @property
    def value(self) -> Any:
        raw = self._storage.get(self.key)
        if raw is None:
            return self._default() if callable(self._default) else self._default
        return self._decode(raw) if self._decode else raw

    @value.setter
    def value(self, new_value: Any) -> None:
        if new_value is None:
            self._storage.delete(self.key)
            return
        self._storage.set(self.key, self._encode(new_value) if self._encode else new_value)

"""
PPUK Database Base — SQLAlchemy declarative base, mixins, and engine registry.

Provides:
- Base: SQLAlchemy declarative base for all entity store models
- TimestampMixin: created_at, updated_at
- utcnow / as_utc: timezone helpers (SQLite returns naive datetimes)
- EngineRegistry: named engines, so tests and workers can bind their own
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all PPUK models."""
    pass


class TimestampMixin:
    """Adds created_at and updated_at columns."""
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class EngineRegistry:
    """
    Registry of named SQLAlchemy engines.

    Usage:
        registry = EngineRegistry()
        registry.register("ppuk_core", "postgresql://...")
        session = registry.get_session("ppuk_core")
    """

    def __init__(self):
        self._engines: Dict[str, Any] = {}
        self._session_factories: Dict[str, sessionmaker] = {}

    def register(
        self,
        name: str,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        pool_timeout: int = 30,
        pool_recycle: int = 1800,
        pool_pre_ping: bool = True,
        **kwargs: Any,
    ) -> None:
        """Register a new database engine."""
        if url.startswith("sqlite"):
            # SQLite has no queue pool; in-memory databases must share one connection
            if ":memory:" in url or url.rstrip("/") == "sqlite:":
                kwargs.setdefault("poolclass", StaticPool)
            kwargs.setdefault("connect_args", {"check_same_thread": False})
            engine = create_engine(url, **kwargs)
        else:
            engine = create_engine(
                url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_recycle=pool_recycle,
                pool_pre_ping=pool_pre_ping,
                **kwargs,
            )
        self._engines[name] = engine
        self._session_factories[name] = sessionmaker(bind=engine, expire_on_commit=False)

    def get(self, name: str) -> Any:
        """Get a registered engine by name."""
        if name not in self._engines:
            raise KeyError(f"Engine '{name}' not registered. Available: {list(self._engines.keys())}")
        return self._engines[name]

    def get_session(self, name: str = "ppuk_core") -> Session:
        """Get a new session for a registered engine."""
        if name not in self._session_factories:
            raise KeyError(
                f"Session factory '{name}' not found. Available: {list(self._session_factories.keys())}"
            )
        return self._session_factories[name]()

    def dispose(self, name: Optional[str] = None) -> None:
        """Dispose one or all engines (close connection pools)."""
        if name:
            if name in self._engines:
                self._engines[name].dispose()
        else:
            for engine in self._engines.values():
                engine.dispose()

    @property
    def registered_names(self) -> list:
        return list(self._engines.keys())


# Global engine registry singleton
engine_registry = EngineRegistry()

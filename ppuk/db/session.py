"""
PPUK Database Session Management.

Single entry point for entity store initialisation. Uses the global
EngineRegistry; services receive the returned sessionmaker.
"""

from __future__ import annotations

from sqlalchemy.orm import sessionmaker

from ppuk.db.base import Base, engine_registry

ENGINE_NAME = "ppuk_core"


def init_store_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
) -> sessionmaker:
    """
    Initialise the entity store.

    1. Registers the "ppuk_core" engine in EngineRegistry.
    2. Optionally runs Base.metadata.create_all() (dev and ``ppuk init-db`` only).

    Returns:
        A plain sessionmaker bound to the engine. Services take this factory
        and manage their own session lifecycle.
    """
    # Importing models registers every table on Base.metadata
    import ppuk.db.models  # noqa: F401

    engine_registry.register(
        ENGINE_NAME, db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
    )
    engine = engine_registry.get(ENGINE_NAME)

    if create_tables:
        Base.metadata.create_all(engine)

    return sessionmaker(bind=engine, expire_on_commit=False)


def close_all_sessions() -> None:
    """Dispose all engines (close connection pools). Used during shutdown."""
    engine_registry.dispose()

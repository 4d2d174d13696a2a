"""
PPUK Core Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import ppuk.db.models  # noqa: F401  (registers tables on Base.metadata)
from ppuk.db.base import Base
from ppuk.db.models import Property, PropertyParty

OWNER = "u-owner"
OCCUPIER = "u-occupier"
WATCHER = "u-watcher"
STRANGER = "u-stranger"


# ---------------------------------------------------------------------------
# Environment setup — avoid touching real Redis / Postgres in unit tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config():
    """Reset global singletons between tests."""
    import ppuk.engine.config as cfg_mod
    import ppuk.engine.logging as log_mod

    cfg_mod._platform_config = None
    log_mod._global_queue = None
    yield
    log_mod._global_queue = None


@pytest.fixture
def db_engine():
    """In-memory SQLite shared through one connection."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite with a connection per session, for threaded tests."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ppuk_core.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


def _add_property(session, reference: str, **fields: Any) -> Property:
    prop = Property(
        ppuk_reference=reference,
        address_line_1=fields.pop("address_line_1", "10 Downing Street"),
        city=fields.pop("city", "London"),
        postcode=fields.pop("postcode", "SW1A 2AA"),
        **fields,
    )
    session.add(prop)
    session.flush()
    return prop


@pytest.fixture
def seeded(session_factory) -> Dict[str, Any]:
    """
    Property 1 with an owner, an occupier and an interested party.
    Property 2 unclaimed.
    """
    session = session_factory()
    try:
        claimed = _add_property(session, "PPUK-0001", claimed_by=OWNER)
        unclaimed = _add_property(
            session, "PPUK-0002", address_line_1="1 High Street", postcode="M1 1AA"
        )
        session.add_all([
            PropertyParty(property_id=claimed.id, principal_id=OWNER, tier="owner",
                          is_primary=True, assigned_by=OWNER),
            PropertyParty(property_id=claimed.id, principal_id=OCCUPIER, tier="occupier",
                          assigned_by=OWNER),
            PropertyParty(property_id=claimed.id, principal_id=WATCHER, tier="interested",
                          assigned_by=WATCHER),
        ])
        session.commit()
        return {
            "property_id": claimed.id,
            "unclaimed_id": unclaimed.id,
            "owner": OWNER,
            "occupier": OCCUPIER,
            "watcher": WATCHER,
            "stranger": STRANGER,
        }
    finally:
        session.close()


@pytest.fixture
def file_logger(tmp_path):
    from ppuk.engine.logging import FileLogger

    return FileLogger(log_dir=str(tmp_path / "logs"))


@pytest.fixture
def authz(session_factory):
    from ppuk.security.authorization import AuthorizationEngine

    return AuthorizationEngine(session_factory)


@pytest.fixture
def audit(session_factory, file_logger):
    from ppuk.audit.logger import AuditLogger

    return AuditLogger(session_factory, file_logger=file_logger)


@pytest.fixture
def terminal_monitor():
    return MagicMock()


@pytest.fixture
def job_queue(session_factory, terminal_monitor):
    from ppuk.jobs.queue import DocumentJobQueue

    return DocumentJobQueue(session_factory, on_terminal_failure=terminal_monitor)


@pytest.fixture
def mock_redis():
    """Return a mock Redis client."""
    client = MagicMock()
    client.ping.return_value = True
    client.get.return_value = None
    client.set.return_value = True
    client.delete.return_value = 1
    client.exists.return_value = 0
    client.eval.return_value = 1
    client.scan_iter.return_value = iter([])
    return client


class FakeClock:
    """Controllable UTC clock for TTL tests."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()

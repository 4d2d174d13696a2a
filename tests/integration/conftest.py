"""
Integration test fixtures — a full CoreRuntime on a real store.

Set PPUK_TEST_DATABASE_URL to run against PostgreSQL (SKIP LOCKED claims,
timezone-aware timestamps); otherwise a file-backed SQLite database is used.

Run: pytest tests/integration/ -v -m integration
"""

from __future__ import annotations

import os

import pytest

from ppuk.db.base import Base, engine_registry
from ppuk.engine.config import PlatformConfig
from ppuk.engine.runtime import CoreRuntime


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: exercises several subsystems on a real store")


@pytest.fixture
def integration_config(tmp_path):
    url = os.environ.get("PPUK_TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'integration.db'}"
    return PlatformConfig(
        database={"url": url, "pool_size": 5},
        logging={"directory": str(tmp_path / "logs")},
        providers={
            "epc": {"base_url": "https://epc.example.test/api", "ttl_seconds": 600},
        },
    )


@pytest.fixture
def core(integration_config):
    """Started runtime that owns its store; tables dropped afterwards."""
    import httpx

    def epc_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"postcode": request.url.params.get("postcode"), "rating": "C"},
            headers={"ETag": '"epc-1"'},
        )

    runtime = CoreRuntime(
        integration_config,
        create_tables=True,
        use_redis=False,
        provider_transport=httpx.MockTransport(epc_handler),
    )
    runtime.startup()
    yield runtime
    engine = engine_registry.get("ppuk_core")
    runtime.shutdown()
    Base.metadata.drop_all(engine)
    engine.dispose()

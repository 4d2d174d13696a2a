"""
PPUK Core Runtime — builds and owns every service from PlatformConfig.

Lifecycle:
    runtime = init_runtime(config)
    runtime.startup()    # store, logging, caches, services
    ...
    runtime.shutdown()   # flush audit replay + log queue, close clients/engines

Celery workers call ensure_runtime(), which creates and starts the singleton
on first use.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from ppuk.audit.logger import AuditLogger
from ppuk.audit.masking import build_denylist
from ppuk.db.base import engine_registry
from ppuk.db.session import ENGINE_NAME, close_all_sessions, init_store_db
from ppuk.engine.cache import RedisCache, TierCache, create_lock_cache, create_tier_cache
from ppuk.engine.config import PlatformConfig, get_platform_config
from ppuk.engine.logging import (
    AsyncLogQueue,
    FileLogger,
    LogRetentionManager,
    init_logging,
    log,
    log_system_event,
    shutdown_logging,
)
from ppuk.documents.service import DocumentService
from ppuk.jobs.handlers import HandlerRegistry, build_default_registry
from ppuk.jobs.queue import DocumentJobQueue
from ppuk.jobs.worker import DocumentWorker
from ppuk.providers.cache import ResponseCache
from ppuk.providers.client import ProviderClient, ProviderGateway
from ppuk.security.authorization import AuthorizationEngine
from ppuk.security.relationships import RelationshipService

logger = logging.getLogger("ppuk.engine.runtime")


class CoreRuntime:
    """
    Single owner of the core services.

    Pass *session_factory* to run against an existing store (tests, embedding
    applications); otherwise startup() initialises one from config.database.
    """

    def __init__(
        self,
        config: Optional[PlatformConfig] = None,
        session_factory=None,
        create_tables: bool = False,
        ocr_backend: Optional[Callable[[str, str], Dict[str, Any]]] = None,
        thumbnail_backend: Optional[Callable[[str, str], str]] = None,
        provider_transport: Any = None,
        start_background: bool = True,
        use_redis: bool = True,
    ):
        self.config = config or get_platform_config()
        self._session_factory = session_factory
        self._owns_store = session_factory is None
        self._create_tables = create_tables
        self._ocr_backend = ocr_backend
        self._thumbnail_backend = thumbnail_backend
        self._provider_transport = provider_transport
        self._start_background = start_background
        self._use_redis = use_redis

        # Subsystems (initialized in startup())
        self.log_queue: Optional[AsyncLogQueue] = None
        self.retention_manager: Optional[LogRetentionManager] = None
        self.tier_cache: Optional[TierCache] = None
        self.lock_cache: Optional[RedisCache] = None
        self.authz: Optional[AuthorizationEngine] = None
        self.audit: Optional[AuditLogger] = None
        self.jobs: Optional[DocumentJobQueue] = None
        self.handlers: Optional[HandlerRegistry] = None
        self.worker: Optional[DocumentWorker] = None
        self.response_cache: Optional[ResponseCache] = None
        self.provider_client: Optional[ProviderClient] = None
        self.providers: Optional[ProviderGateway] = None
        self.relationships: Optional[RelationshipService] = None
        self.documents: Optional[DocumentService] = None

        self._started = False

    @property
    def session_factory(self):
        return self._session_factory

    @property
    def is_started(self) -> bool:
        return self._started

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def startup(self) -> None:
        """Initialize all subsystems."""
        if self._started:
            logger.warning("Runtime already started")
            return

        cfg = self.config
        logger.info(f"Starting PPUK Core runtime ({cfg.environment})...")

        # 1. Entity store
        if self._session_factory is None:
            self._session_factory = init_store_db(
                cfg.database.url,
                create_tables=self._create_tables,
                pool_size=cfg.database.pool_size,
                max_overflow=cfg.database.max_overflow,
                pool_timeout=cfg.database.pool_timeout,
                pool_recycle=cfg.database.pool_recycle,
                pool_pre_ping=cfg.database.pool_pre_ping,
            )

        # 2. Operational logs
        self.log_queue = init_logging(
            log_dir=cfg.logging.directory,
            flush_interval_ms=cfg.logging.async_queue.flush_interval_ms,
            flush_batch_size=cfg.logging.async_queue.flush_batch_size,
            max_queue_size=cfg.logging.async_queue.max_queue_size,
            start=self._start_background,
        )
        retention = cfg.logging.retention
        self.retention_manager = LogRetentionManager(
            log_dir=cfg.logging.directory,
            retention_days={
                "execution": retention.execution_days,
                "performance": retention.performance_days,
                "security": retention.security_days,
                "failures": retention.failures_days,
                "spillover": retention.spillover_days,
            },
            compress_after_days=cfg.logging.compress_after_days,
        )

        # 3. Redis caches (optional; services degrade to store-only)
        if self._use_redis:
            try:
                if cfg.security.tier_cache_enabled:
                    self.tier_cache = create_tier_cache(cfg.redis.url, ttl=cfg.security.tier_cache_ttl)
                self.lock_cache = create_lock_cache(cfg.redis.url, ttl=cfg.cache.lock_timeout_seconds)
            except Exception as e:
                logger.warning(f"Redis connection failed (running without cache): {e}")

        # 4. Security + audit
        self.authz = AuthorizationEngine(self._session_factory, tier_cache=self.tier_cache)
        self.audit = AuditLogger(
            self._session_factory,
            denylist=build_denylist(cfg.audit.extra_denylist),
            retention_days=cfg.audit.retention_days,
            deferred=cfg.audit.deferred,
            replay_max_attempts=cfg.audit.replay_max_attempts,
            file_logger=FileLogger(log_dir=cfg.logging.directory),
        )
        if self._start_background:
            self.audit.start()

        # 5. Jobs
        self.jobs = DocumentJobQueue(
            self._session_factory,
            max_attempts=cfg.jobs.max_attempts,
            stale_after_seconds=cfg.jobs.stale_after_seconds,
            completed_retention_days=cfg.jobs.completed_retention_days,
        )
        self.handlers = build_default_registry(
            ocr_backend=self._ocr_backend, thumbnail_backend=self._thumbnail_backend
        )
        if cfg.jobs.ocr_enabled and self._ocr_backend is None:
            logger.warning("OCR enabled but no OCR backend configured; ocr jobs will not be queued")
        if cfg.jobs.thumbnails_enabled and self._thumbnail_backend is None:
            logger.warning("Thumbnails enabled but no renderer configured; thumbnail jobs will not be queued")
        self.worker = DocumentWorker(self.jobs, self.handlers, self._session_factory)

        # 6. Providers
        self.response_cache = ResponseCache(
            self._session_factory,
            default_ttl=cfg.cache.default_ttl,
            grace_multiplier=cfg.cache.grace_multiplier,
            lock_cache=self.lock_cache,
            lock_timeout_seconds=cfg.cache.lock_timeout_seconds,
            lock_wait_seconds=cfg.cache.lock_wait_seconds,
        )
        self.provider_client = ProviderClient(cfg.providers, transport=self._provider_transport)
        self.providers = ProviderGateway(self.response_cache, self.provider_client)

        # 7. Domain services
        self.relationships = RelationshipService(self._session_factory, self.authz, self.audit)
        self.documents = DocumentService(
            self._session_factory,
            self.authz,
            self.audit,
            self.jobs,
            jobs_config=cfg.jobs,
            documents_config=cfg.documents,
            handled_kinds=self.handlers.kinds,
        )

        self._started = True
        log(log_system_event("runtime_started", subsystems=self._subsystem_status()))
        logger.info("PPUK Core runtime started")

    def shutdown(self) -> None:
        """Flush queues and close connections."""
        if not self._started:
            return

        logger.info("Shutting down PPUK Core runtime...")

        # 1. Last audit replay pass; anything still failing spills to file
        if self.audit:
            self.audit.stop()

        # 2. Close httpx clients and Redis connections
        if self.providers:
            self.providers.close()
        if self.lock_cache:
            self.lock_cache.close()

        # 3. Flush and stop logging
        log(log_system_event("runtime_shutdown"))
        shutdown_logging()

        # 4. Store engines we created
        if self._owns_store and ENGINE_NAME in engine_registry.registered_names:
            close_all_sessions()
            self._session_factory = None

        self._started = False
        logger.info("PPUK Core runtime shut down")

    # -----------------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------------

    def run_sweeps(self, which: str = "all") -> Dict[str, Any]:
        """
        Run retention sweeps: "audit", "jobs", "cache" or "all". Each is
        idempotent and safe to rerun.
        """
        self._require_started()
        results: Dict[str, Any] = {}
        if which in ("audit", "all"):
            results["audit"] = {"deleted": self.audit.sweep_retention()}
        if which in ("jobs", "all"):
            results["jobs"] = {"deleted": self.jobs.sweep_completed()}
        if which in ("cache", "all"):
            results["cache"] = self.response_cache.sweep()
        if not results:
            raise ValueError(f"Unknown sweep '{which}'")
        return results

    def cleanup_logs(self) -> Dict[str, int]:
        self._require_started()
        return self.retention_manager.cleanup()

    def stats(self) -> Dict[str, Any]:
        """Queue, cache and replay counters for operators."""
        self._require_started()
        return {
            "jobs": self.jobs.stats(),
            "cache": self.response_cache.stats(),
            "audit_replay": {
                "pending": self.audit.replay_queue.pending_count,
                "spilled": self.audit.replay_queue.spilled_count,
            },
            "subsystems": self._subsystem_status(),
        }

    def _subsystem_status(self) -> Dict[str, Any]:
        return {
            "store": self._session_factory is not None,
            "tier_cache": self.tier_cache is not None,
            "lock_cache": bool(self.lock_cache and self.lock_cache.is_available),
            "providers": self.provider_client.providers if self.provider_client else [],
            "job_handlers": self.handlers.kinds if self.handlers else [],
        }

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("PPUK runtime not started. Call startup() first.")


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_runtime: Optional[CoreRuntime] = None


def get_runtime() -> CoreRuntime:
    """
    Get the global CoreRuntime singleton.

    Raises RuntimeError if the runtime hasn't been created yet.
    Use init_runtime() to create it.
    """
    if _runtime is None:
        raise RuntimeError("PPUK runtime not initialized. Call init_runtime() first.")
    return _runtime


def init_runtime(config: Optional[PlatformConfig] = None, **kwargs: Any) -> CoreRuntime:
    """
    Create the global CoreRuntime singleton (not yet started).
    Replaces and shuts down any previous one.
    """
    global _runtime
    if _runtime is not None:
        _runtime.shutdown()
    _runtime = CoreRuntime(config, **kwargs)
    return _runtime


def ensure_runtime() -> CoreRuntime:
    """Started runtime, creating it from ppuk.yaml if needed."""
    global _runtime
    if _runtime is None:
        _runtime = CoreRuntime()
    if not _runtime.is_started:
        _runtime.startup()
    return _runtime


def reset_runtime() -> None:
    """Shut down and drop the singleton (tests, CLI exit)."""
    global _runtime
    if _runtime is not None:
        _runtime.shutdown()
        _runtime = None

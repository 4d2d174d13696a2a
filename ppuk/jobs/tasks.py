"""
PPUK Celery Tasks — document processing and scheduled maintenance.

Tasks (all idempotent, safe to run on several workers):
    process_document_jobs        claim and run up to jobs.batch_size jobs
    reap_stale_jobs              requeue jobs whose worker vanished
    sweep_completed_jobs         delete old completed jobs
    sweep_audit_log              delete audit events past retention
    sweep_response_cache         evict / flag expired provider responses
    replay_audit_events          retry audit writes that failed in-request
    repair_unprocessed_documents queue pipelines for documents with no jobs
    cleanup_logs                 JSONL log retention and compression

Schedules come from ppuk.yaml → schedules (cron strings) via
build_beat_schedule().
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import Celery
from celery.schedules import crontab

from ppuk.engine.config import PlatformConfig, load_platform_config
from ppuk.engine.errors import PPUKConfigError
from ppuk.engine.runtime import ensure_runtime

logger = logging.getLogger("ppuk.jobs.tasks")

TASK_PREFIX = "ppuk.jobs.tasks"

# schedules.<field> → (task name, queue)
SCHEDULED_TASKS = {
    "process_jobs": ("process_document_jobs", "document_jobs"),
    "reap_stale_jobs": ("reap_stale_jobs", "maintenance"),
    "replay_audit": ("replay_audit_events", "maintenance"),
    "sweep_cache": ("sweep_response_cache", "maintenance"),
    "sweep_jobs": ("sweep_completed_jobs", "maintenance"),
    "sweep_audit": ("sweep_audit_log", "maintenance"),
    "repair_documents": ("repair_unprocessed_documents", "maintenance"),
    "cleanup_logs": ("cleanup_logs", "maintenance"),
}


# ---------------------------------------------------------------------------
# Celery app (configured at startup from platform config)
# ---------------------------------------------------------------------------

_celery_app: Optional[Celery] = None


def get_celery_app() -> Celery:
    """Get or create the Celery app singleton."""
    global _celery_app
    if _celery_app is None:
        _celery_app = _create_celery_app()
    return _celery_app


def _create_celery_app(config: Optional[PlatformConfig] = None) -> Celery:
    """Create and configure the Celery application."""
    if config is None:
        try:
            config = load_platform_config()
        except PPUKConfigError as e:
            logger.error(f"Invalid ppuk.yaml, Celery falls back to defaults: {e.message}")
            config = PlatformConfig()

    app = Celery("ppuk", broker=config.celery.broker, backend=config.celery.result_backend)

    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_default_queue="maintenance",
        task_routes={
            f"{TASK_PREFIX}.process_document_jobs": {"queue": "document_jobs"},
            f"{TASK_PREFIX}.*": {"queue": "maintenance"},
        },
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        beat_schedule=build_beat_schedule(config),
    )

    return app


def _parse_cron(expression: str) -> crontab:
    parts = expression.strip().split()
    if len(parts) != 5:
        raise PPUKConfigError(f"Invalid cron expression: '{expression}'", expression=expression)
    return crontab(
        minute=parts[0],
        hour=parts[1],
        day_of_month=parts[2],
        month_of_year=parts[3],
        day_of_week=parts[4],
    )


def build_beat_schedule(config: PlatformConfig) -> Dict[str, Any]:
    """
    Celery Beat schedule from config.schedules. An empty cron string
    disables that task.

    Returns:
        Dict suitable for celery_app.conf.beat_schedule.
    """
    beat_schedule: Dict[str, Any] = {}
    for field, (task, queue) in SCHEDULED_TASKS.items():
        expression = getattr(config.schedules, field)
        if not expression:
            logger.info(f"Schedule '{field}' disabled")
            continue
        beat_schedule[f"ppuk-{task.replace('_', '-')}"] = {
            "task": f"{TASK_PREFIX}.{task}",
            "schedule": _parse_cron(expression),
            "options": {"queue": queue},
        }
        logger.debug(f"Celery Beat schedule: {task} = {expression}")
    return beat_schedule


def apply_beat_schedule(config: PlatformConfig) -> int:
    """Replace the running app's Beat schedule. Returns the number of entries."""
    beat_schedule = build_beat_schedule(config)
    get_celery_app().conf.beat_schedule = beat_schedule
    logger.info(f"Applied {len(beat_schedule)} Celery Beat schedules")
    return len(beat_schedule)


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------

celery_app = get_celery_app()


@celery_app.task(name=f"{TASK_PREFIX}.process_document_jobs")
def process_document_jobs(limit: Optional[int] = None, kind: Optional[str] = None) -> Dict[str, int]:
    runtime = ensure_runtime()
    return runtime.worker.run_batch(limit or runtime.config.jobs.batch_size, kind=kind)


@celery_app.task(name=f"{TASK_PREFIX}.reap_stale_jobs")
def reap_stale_jobs() -> Dict[str, int]:
    return ensure_runtime().jobs.reap_stale()


@celery_app.task(name=f"{TASK_PREFIX}.sweep_completed_jobs")
def sweep_completed_jobs() -> Dict[str, int]:
    return {"deleted": ensure_runtime().jobs.sweep_completed()}


@celery_app.task(name=f"{TASK_PREFIX}.sweep_audit_log")
def sweep_audit_log() -> Dict[str, int]:
    return {"deleted": ensure_runtime().audit.sweep_retention()}


@celery_app.task(name=f"{TASK_PREFIX}.sweep_response_cache")
def sweep_response_cache() -> Dict[str, int]:
    return ensure_runtime().response_cache.sweep()


@celery_app.task(name=f"{TASK_PREFIX}.replay_audit_events")
def replay_audit_events(spillover_days: int = 1) -> Dict[str, Dict[str, int]]:
    """Scheduled replay pass; the in-process flush thread may also be running."""
    audit = ensure_runtime().audit
    return {"pending": audit.replay_pending(), "spillover": audit.replay_spillover(spillover_days)}


@celery_app.task(name=f"{TASK_PREFIX}.repair_unprocessed_documents")
def repair_unprocessed_documents(limit: int = 100) -> Dict[str, int]:
    return ensure_runtime().documents.repair_unprocessed(limit=limit)


@celery_app.task(name=f"{TASK_PREFIX}.cleanup_logs")
def cleanup_logs() -> Dict[str, int]:
    return ensure_runtime().cleanup_logs()

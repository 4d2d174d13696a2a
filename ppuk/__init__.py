"""
PPUK Core — access control, audit and background processing for property records.

Packages:
    ppuk.engine     — config, errors, structured logging, Redis cache, runtime
    ppuk.db         — SQLAlchemy base, sessions, entity store models
    ppuk.security   — authorization engine, relationship management
    ppuk.audit      — PII masking, append-only audit logger
    ppuk.jobs       — document job queue, handlers, worker, Celery tasks
    ppuk.providers  — external provider client and TTL response cache
    ppuk.documents  — protected entity service (auth → mutate → audit → jobs)
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "security", "audit", "jobs", "providers", "documents"]

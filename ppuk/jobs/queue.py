"""
PPUK Document Job Queue — durable, store-backed work queue.

State machine per job:

    queued ──claim──▶ processing ──complete──▶ completed
       ▲                  │
       └──fail (attempts < max_attempts)──┘
                          └──fail (attempts >= max_attempts)──▶ failed (terminal)
    queued | processing ──cancel (operator)──▶ cancelled

Every transition is a conditional UPDATE guarded on the expected current
state and checked by rowcount, so two workers can never both hold a job.
Claiming is non-blocking: no queued work returns None.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ppuk.db.base import as_utc, utcnow
from ppuk.db.models import AV_STATUSES, JOB_KINDS, Document, DocumentJob
from ppuk.engine.errors import (
    PPUKConflictError,
    PPUKNotFoundError,
    PPUKTerminalJobError,
    PPUKValidationError,
)
from ppuk.engine.logging import log, log_job_event, log_system_event, log_terminal_job_failure

logger = logging.getLogger("ppuk.jobs.queue")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_STALE_AFTER_SECONDS = 900
DEFAULT_COMPLETED_RETENTION_DAYS = 30

# Queued rows inspected per claim; losing the CAS on one moves to the next
CLAIM_CANDIDATES = 5

ACTIVE_STATUSES = ("queued", "processing")


def job_to_dict(job: DocumentJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "document_id": job.document_id,
        "kind": job.kind,
        "status": job.status,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "last_error": job.last_error,
        "payload": job.payload or {},
        "result": job.result,
        "created_at": as_utc(job.created_at),
        "updated_at": as_utc(job.updated_at),
        "started_at": as_utc(job.started_at),
        "completed_at": as_utc(job.completed_at),
    }


def report_terminal_failure(error: PPUKTerminalJobError) -> None:
    """Default monitoring hook: error log plus the jobs/failures JSONL file."""
    logger.error(
        f"Job {error.job_id} ({error.kind}) for document {error.document_id} "
        f"failed permanently after {error.attempts} attempts: {error.last_error}"
    )
    log(log_terminal_job_failure(error.to_dict()))


# ---------------------------------------------------------------------------
# Derived document fields
# ---------------------------------------------------------------------------

def apply_result(document: Document, kind: str, result: Dict[str, Any]) -> None:
    """Copy a completed job's result onto its document."""
    meta = dict(document.meta or {})
    processed_at = utcnow().isoformat()

    if kind == "ocr":
        document.extracted_text = result.get("extracted_text")
        meta["ocr"] = {
            key: result[key] for key in ("confidence", "word_count", "language") if key in result
        }
        meta["ocr"]["processed_at"] = processed_at
    elif kind == "av_scan":
        status = result.get("status")
        document.av_status = status if status in AV_STATUSES else "quarantined"
        meta["av_scan"] = {
            "status": document.av_status,
            "threats": result.get("threats", []),
            "scanned_at": processed_at,
        }
    elif kind == "extract_metadata":
        meta.update(result.get("metadata", {}))
    elif kind == "generate_thumbnail":
        document.thumbnail_ref = result.get("thumbnail_ref")

    # JSON columns only register a change on reassignment
    document.meta = meta


def refresh_processing_status(session: Session, document_id: int) -> Optional[str]:
    """
    Recompute a document's processing_status from its jobs:
    any active job → processing, else any failed → failed, else completed.
    """
    document = session.get(Document, document_id)
    if document is None:
        return None

    counts = dict(
        session.execute(
            select(DocumentJob.status, func.count(DocumentJob.id))
            .where(DocumentJob.document_id == document_id)
            .group_by(DocumentJob.status)
        ).all()
    )
    if not counts:
        status = "pending"
    elif any(counts.get(s) for s in ACTIVE_STATUSES):
        status = "processing"
    elif counts.get("failed"):
        status = "failed"
    else:
        status = "completed"

    document.processing_status = status
    return status


class DocumentJobQueue:
    """
    Store-backed job queue. Each operation runs in its own short session
    unless the caller passes one (enqueue inside a business transaction).
    """

    def __init__(
        self,
        session_factory,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS,
        completed_retention_days: int = DEFAULT_COMPLETED_RETENTION_DAYS,
        on_terminal_failure: Optional[Callable[[PPUKTerminalJobError], None]] = None,
    ):
        self._session_factory = session_factory
        self._max_attempts = max_attempts
        self._stale_after_seconds = stale_after_seconds
        self._completed_retention_days = completed_retention_days
        self._on_terminal_failure = on_terminal_failure or report_terminal_failure

    # ── Enqueue ──

    def enqueue(
        self,
        document_id: int,
        kind: str,
        payload: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> int:
        """
        Add a queued job for a document.

        With *session*, the job joins the caller's transaction (flushed, not
        committed). Without it, the job is committed in its own session.

        Returns:
            The new job id.
        """
        if kind not in JOB_KINDS:
            raise PPUKValidationError(f"Unknown job kind: {kind}", field="kind", value=kind)

        own_session = session is None
        session = session or self._session_factory()
        try:
            if session.get(Document, document_id) is None:
                raise PPUKNotFoundError(
                    "document not found", entity_type="document", entity_id=document_id
                )
            now = utcnow()
            job = DocumentJob(
                document_id=document_id,
                kind=kind,
                status="queued",
                attempts=0,
                max_attempts=max_attempts or self._max_attempts,
                payload=payload or {},
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            session.flush()
            job_id = job.id
            if own_session:
                session.commit()
        except Exception:
            if own_session:
                session.rollback()
            raise
        finally:
            if own_session:
                session.close()

        logger.debug(f"Enqueued {kind} job {job_id} for document {document_id}")
        return job_id

    # ── Claim ──

    def claim_next(self, kind: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Atomically move the oldest queued job to processing.

        Candidates are selected with FOR UPDATE SKIP LOCKED where the dialect
        supports it; the transition itself is a compare-and-swap on
        status='queued', so a worker that loses the race simply tries the
        next candidate.

        Returns:
            The claimed job as a dict, or None when nothing is queued.
        """
        if kind is not None and kind not in JOB_KINDS:
            raise PPUKValidationError(f"Unknown job kind: {kind}", field="kind", value=kind)

        session = self._session_factory()
        try:
            stmt = select(DocumentJob.id).where(DocumentJob.status == "queued")
            if kind is not None:
                stmt = stmt.where(DocumentJob.kind == kind)
            stmt = (
                stmt.order_by(DocumentJob.created_at, DocumentJob.id)
                .limit(CLAIM_CANDIDATES)
                .with_for_update(skip_locked=True)
            )
            candidates = list(session.execute(stmt).scalars())

            for job_id in candidates:
                now = utcnow()
                result = session.execute(
                    update(DocumentJob)
                    .where(DocumentJob.id == job_id, DocumentJob.status == "queued")
                    .values(
                        status="processing",
                        attempts=DocumentJob.attempts + 1,
                        started_at=now,
                        updated_at=now,
                        completed_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.debug(f"Lost claim race on job {job_id}")
                    continue

                job = session.execute(
                    select(DocumentJob)
                    .where(DocumentJob.id == job_id)
                    .execution_options(populate_existing=True)
                ).scalar_one()
                session.execute(
                    update(Document)
                    .where(Document.id == job.document_id)
                    .values(processing_status="processing")
                    .execution_options(synchronize_session=False)
                )
                claimed = job_to_dict(job)
                session.commit()
                log(log_job_event("job_claimed", job_id, claimed["document_id"], claimed["kind"],
                                  claimed["attempts"]))
                return claimed

            session.commit()
            return None
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ── Complete / fail / cancel ──

    def complete(self, job_id: int, result: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Mark a processing job completed and update its document's derived
        fields in the same transaction.

        Raises:
            PPUKNotFoundError: unknown job.
            PPUKConflictError: the job is no longer processing (cancelled or reaped).
        """
        result = result or {}
        session = self._session_factory()
        try:
            now = utcnow()
            outcome = session.execute(
                update(DocumentJob)
                .where(DocumentJob.id == job_id, DocumentJob.status == "processing")
                .values(status="completed", result=result, completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount != 1:
                self._raise_transition_conflict(session, job_id, "complete")

            job = self._load(session, job_id)
            document = session.get(Document, job.document_id)
            if document is not None:
                apply_result(document, job.kind, result)
                session.flush()
                refresh_processing_status(session, job.document_id)
            completed = job_to_dict(job)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        duration_ms = None
        if completed["started_at"] and completed["completed_at"]:
            duration_ms = (completed["completed_at"] - completed["started_at"]).total_seconds() * 1000
        log(log_job_event("job_completed", job_id, completed["document_id"], completed["kind"],
                          completed["attempts"], duration_ms=duration_ms))
        logger.info(f"Job {job_id} ({completed['kind']}) completed")
        return completed

    def fail(self, job_id: int, error: str) -> Dict[str, Any]:
        """
        Record a processing failure. Requeues while attempts < max_attempts;
        otherwise the job becomes terminally failed and is reported to the
        monitoring hook.

        Raises:
            PPUKNotFoundError: unknown job.
            PPUKConflictError: the job is no longer processing.
        """
        session = self._session_factory()
        try:
            job = self._load(session, job_id)
            if job.status != "processing":
                self._raise_transition_conflict(session, job_id, "fail")

            terminal = job.attempts >= job.max_attempts
            now = utcnow()
            values: Dict[str, Any] = {"last_error": str(error), "updated_at": now}
            if terminal:
                values.update(status="failed", completed_at=now)
            else:
                values.update(status="queued", started_at=None)

            outcome = session.execute(
                update(DocumentJob)
                .where(
                    DocumentJob.id == job_id,
                    DocumentJob.status == "processing",
                    DocumentJob.attempts == job.attempts,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount != 1:
                self._raise_transition_conflict(session, job_id, "fail")

            job = self._load(session, job_id, refresh=True)
            refresh_processing_status(session, job.document_id)
            failed = job_to_dict(job)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if terminal:
            self._notify_terminal(failed)
        else:
            logger.warning(
                f"Job {job_id} ({failed['kind']}) failed attempt "
                f"{failed['attempts']}/{failed['max_attempts']}, requeued: {error}"
            )
            log(log_job_event("job_retry", job_id, failed["document_id"], failed["kind"],
                              failed["attempts"], error=str(error)))
        return failed

    def cancel(self, job_id: int) -> Dict[str, Any]:
        """
        Operator action: move a queued or processing job to cancelled.
        A worker already processing it is not interrupted; its complete()
        or fail() will then raise PPUKConflictError.
        """
        session = self._session_factory()
        try:
            now = utcnow()
            outcome = session.execute(
                update(DocumentJob)
                .where(DocumentJob.id == job_id, DocumentJob.status.in_(ACTIVE_STATUSES))
                .values(status="cancelled", completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount != 1:
                self._raise_transition_conflict(session, job_id, "cancel")
            job = self._load(session, job_id, refresh=True)
            refresh_processing_status(session, job.document_id)
            cancelled = job_to_dict(job)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        log(log_job_event("job_cancelled", job_id, cancelled["document_id"], cancelled["kind"],
                          cancelled["attempts"]))
        logger.info(f"Job {job_id} cancelled")
        return cancelled

    # ── Maintenance ──

    def reap_stale(self, stale_after_seconds: Optional[int] = None) -> Dict[str, int]:
        """
        Requeue processing jobs whose worker disappeared.

        A job whose started_at is older than the staleness window goes back
        to queued with attempts incremented; if that reaches max_attempts it
        fails terminally instead. Idempotent.

        Returns:
            {"requeued": N, "failed": M}
        """
        window = stale_after_seconds if stale_after_seconds is not None else self._stale_after_seconds
        cutoff = utcnow() - timedelta(seconds=window)
        counts = {"requeued": 0, "failed": 0}
        terminal: List[Dict[str, Any]] = []

        session = self._session_factory()
        try:
            stale = list(
                session.execute(
                    select(DocumentJob).where(
                        DocumentJob.status == "processing",
                        DocumentJob.started_at < cutoff,
                    )
                ).scalars()
            )
            for job in stale:
                new_attempts = job.attempts + 1
                now = utcnow()
                error = f"Reaped: no progress within {window}s"
                values: Dict[str, Any] = {
                    "attempts": new_attempts,
                    "last_error": error,
                    "updated_at": now,
                }
                is_terminal = new_attempts >= job.max_attempts
                if is_terminal:
                    values.update(status="failed", completed_at=now)
                else:
                    values.update(status="queued", started_at=None)

                outcome = session.execute(
                    update(DocumentJob)
                    .where(
                        DocumentJob.id == job.id,
                        DocumentJob.status == "processing",
                        DocumentJob.attempts == job.attempts,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount != 1:
                    continue

                reaped = self._load(session, job.id, refresh=True)
                refresh_processing_status(session, reaped.document_id)
                if is_terminal:
                    counts["failed"] += 1
                    terminal.append(job_to_dict(reaped))
                else:
                    counts["requeued"] += 1
                log(log_job_event("job_reaped", reaped.id, reaped.document_id, reaped.kind,
                                  reaped.attempts, error=error))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        for job in terminal:
            self._notify_terminal(job)
        if stale:
            logger.warning(f"Reaped stale jobs: {counts}")
        return counts

    def sweep_completed(self, retention_days: Optional[int] = None) -> int:
        """
        Delete completed jobs older than the retention window. Queued,
        processing, failed and cancelled jobs are never touched. Idempotent.
        """
        days = retention_days if retention_days is not None else self._completed_retention_days
        cutoff = utcnow() - timedelta(days=days)
        session = self._session_factory()
        try:
            outcome = session.execute(
                delete(DocumentJob)
                .where(DocumentJob.status == "completed", DocumentJob.completed_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            deleted = outcome.rowcount or 0
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(f"Completed job sweep: {deleted} jobs older than {days} days removed")
        log(log_system_event("job_retention_sweep", deleted=deleted, retention_days=days))
        return deleted

    # ── Reads ──

    def get(self, job_id: int) -> Optional[Dict[str, Any]]:
        session = self._session_factory()
        try:
            job = session.get(DocumentJob, job_id)
            return job_to_dict(job) if job else None
        finally:
            session.close()

    def list_for_document(self, document_id: int) -> List[Dict[str, Any]]:
        session = self._session_factory()
        try:
            jobs = session.execute(
                select(DocumentJob)
                .where(DocumentJob.document_id == document_id)
                .order_by(DocumentJob.created_at, DocumentJob.id)
            ).scalars()
            return [job_to_dict(job) for job in jobs]
        finally:
            session.close()

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Job counts as {kind: {status: count}}."""
        session = self._session_factory()
        try:
            rows = session.execute(
                select(DocumentJob.kind, DocumentJob.status, func.count(DocumentJob.id))
                .group_by(DocumentJob.kind, DocumentJob.status)
            ).all()
        finally:
            session.close()
        stats: Dict[str, Dict[str, int]] = {}
        for kind, status, count in rows:
            stats.setdefault(kind, {})[status] = count
        return stats

    # ── Internals ──

    @staticmethod
    def _load(session: Session, job_id: int, refresh: bool = False) -> DocumentJob:
        stmt = select(DocumentJob).where(DocumentJob.id == job_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        job = session.execute(stmt).scalar_one_or_none()
        if job is None:
            raise PPUKNotFoundError("job not found", entity_type="document_job", entity_id=job_id)
        return job

    def _raise_transition_conflict(self, session: Session, job_id: int, transition: str) -> None:
        job = self._load(session, job_id, refresh=True)
        raise PPUKConflictError(
            f"Cannot {transition} job {job_id}: status is {job.status}",
            entity_type="document_job",
            entity_id=job_id,
            status=job.status,
        )

    def _notify_terminal(self, job: Dict[str, Any]) -> None:
        error = PPUKTerminalJobError(
            f"Job {job['id']} exhausted {job['max_attempts']} attempts",
            job_id=job["id"],
            document_id=job["document_id"],
            kind=job["kind"],
            attempts=job["attempts"],
            last_error=job["last_error"],
            entity_type="document",
            entity_id=job["document_id"],
        )
        try:
            self._on_terminal_failure(error)
        except Exception as e:
            logger.error(f"Terminal failure hook raised for job {job['id']}: {e}")

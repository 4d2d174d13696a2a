"""
Document worker — claim, run handler, complete or fail.

Several workers may run at once (Celery concurrency, multiple hosts); the
queue's compare-and-swap claim keeps each job on one worker.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from ppuk.db.models import Document
from ppuk.engine.errors import PPUKConflictError, PPUKNotFoundError
from ppuk.jobs.handlers import DocumentSnapshot, HandlerRegistry
from ppuk.jobs.queue import DocumentJobQueue

logger = logging.getLogger("ppuk.jobs.worker")


class DocumentWorker:

    def __init__(self, queue: DocumentJobQueue, handlers: HandlerRegistry, session_factory):
        self._queue = queue
        self._handlers = handlers
        self._session_factory = session_factory

    def process_next(self, kind: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Claim and process one job.

        Returns:
            {"job_id", "kind", "status"} for the processed job, or None when
            the queue had nothing to claim.
        """
        job = self._queue.claim_next(kind)
        if job is None:
            return None

        started = time.monotonic()
        try:
            handler = self._handlers.get(job["kind"])
            if handler is None:
                raise LookupError(f"No handler registered for job kind '{job['kind']}'")
            snapshot = self._load_snapshot(job["document_id"])
            result = handler(snapshot, job)
        except Exception as e:
            logger.warning(f"Job {job['id']} ({job['kind']}) raised: {e}")
            return self._record_failure(job, e)

        try:
            completed = self._queue.complete(job["id"], result)
        except PPUKConflictError as e:
            # Cancelled or reaped while we were working; the result is discarded
            logger.info(f"Job {job['id']} result discarded: {e.message}")
            return {"job_id": job["id"], "kind": job["kind"], "status": e.context.get("status")}

        logger.debug(f"Job {job['id']} processed in {(time.monotonic() - started) * 1000:.1f}ms")
        return {"job_id": completed["id"], "kind": completed["kind"], "status": completed["status"]}

    def run_batch(self, limit: int = 10, kind: Optional[str] = None) -> Dict[str, int]:
        """Process up to *limit* jobs; stops early when the queue is empty."""
        counts: Dict[str, int] = {"processed": 0}
        for _ in range(limit):
            outcome = self.process_next(kind)
            if outcome is None:
                break
            counts["processed"] += 1
            status = outcome.get("status") or "unknown"
            counts[status] = counts.get(status, 0) + 1
        return counts

    def _load_snapshot(self, document_id: int) -> DocumentSnapshot:
        session = self._session_factory()
        try:
            document = session.get(Document, document_id)
            if document is None:
                raise PPUKNotFoundError(
                    "document not found", entity_type="document", entity_id=document_id
                )
            return DocumentSnapshot.from_model(document)
        finally:
            session.close()

    def _record_failure(self, job: Dict[str, Any], error: Exception) -> Dict[str, Any]:
        try:
            failed = self._queue.fail(job["id"], f"{type(error).__name__}: {error}")
        except PPUKConflictError as e:
            logger.info(f"Job {job['id']} failure not recorded: {e.message}")
            return {"job_id": job["id"], "kind": job["kind"], "status": e.context.get("status")}
        return {"job_id": failed["id"], "kind": failed["kind"], "status": failed["status"]}

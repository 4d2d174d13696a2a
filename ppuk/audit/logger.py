"""
PPUK Audit Logger — append-only, PII-masked record of every mutation.

record() masks denylisted fields in the before/after snapshots, then writes
one audit_log row in its own session. A failed write never propagates to the
business operation that triggered it: the (already masked) event goes onto
the AuditReplayQueue, which retries in the background and finally spills to
the audit/spillover JSONL log so nothing is silently lost.

In deferred mode every event goes through the queue.

Reads: trail() per entity (newest first) and activity_summary() per actor.
Retention: sweep_retention() removes events past audit.retention_days.
Recovery: replay_spillover() re-ingests spilled events once the store is back.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from queue import Empty, Full, Queue
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from ppuk.audit.masking import DEFAULT_DENYLIST, mask_state
from ppuk.db.base import as_utc, utcnow
from ppuk.db.models import AUDIT_ACTIONS, AUDIT_ENTITY_TYPES, AuditEvent
from ppuk.engine.context import get_request_context
from ppuk.engine.errors import PPUKValidationError
from ppuk.engine.logging import FileLogger, log, log_audit_spillover, log_system_event

logger = logging.getLogger("ppuk.audit.logger")

DEFAULT_RETENTION_DAYS = 2555  # 7 years
DEFAULT_TRAIL_LIMIT = 100


@dataclass
class PendingAuditEvent:
    data: Dict[str, Any]
    attempts: int = 0
    last_error: Optional[str] = None


class AuditReplayQueue:
    """
    In-memory queue of audit events awaiting persistence.

    A background thread retries pending events every flush_interval_ms.
    An event that fails max_attempts times is handed to the spill callback.
    replay_pending() runs one pass synchronously (used by the scheduled task).
    """

    def __init__(
        self,
        writer: Callable[[Dict[str, Any]], Any],
        spill: Callable[[Dict[str, Any], int, str], None],
        max_attempts: int = 5,
        flush_interval_ms: int = 500,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._writer = writer
        self._spill = spill
        self._max_attempts = max_attempts
        self._flush_interval = flush_interval_ms / 1000.0
        self._flush_batch_size = flush_batch_size
        self._queue: Queue[PendingAuditEvent] = Queue(maxsize=max_queue_size)
        self._running = False
        self._flush_thread: Optional[threading.Thread] = None
        self._spilled_count = 0

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            name="ppuk-audit-replay",
            daemon=True,
        )
        self._flush_thread.start()
        logger.info("Audit replay queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread and make one last pass over pending events."""
        self._running = False
        if self._flush_thread and self._flush_thread.is_alive():
            self._flush_thread.join(timeout=timeout)
        self.replay_pending()
        logger.info(
            f"Audit replay queue stopped (pending: {self.pending_count}, spilled: {self._spilled_count})"
        )

    def push(self, data: Dict[str, Any], attempts: int = 0, error: Optional[str] = None) -> bool:
        """Queue an event. A full queue spills it immediately."""
        pending = PendingAuditEvent(data=data, attempts=attempts, last_error=error)
        try:
            self._queue.put_nowait(pending)
            return True
        except Full:
            self._do_spill(pending, "replay queue full")
            return False

    def replay_pending(self) -> Dict[str, int]:
        """
        Try every event currently queued once.

        Returns:
            {"written": N, "requeued": M, "spilled": K}
        """
        counts = {"written": 0, "requeued": 0, "spilled": 0}
        batch: List[PendingAuditEvent] = []
        # Snapshot the size so events requeued during this pass wait for the next one
        for _ in range(self._queue.qsize()):
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break

        for pending in batch:
            try:
                self._writer(pending.data)
                counts["written"] += 1
            except Exception as e:
                pending.attempts += 1
                pending.last_error = str(e)
                if pending.attempts >= self._max_attempts:
                    self._do_spill(pending, str(e))
                    counts["spilled"] += 1
                else:
                    try:
                        self._queue.put_nowait(pending)
                        counts["requeued"] += 1
                    except Full:
                        self._do_spill(pending, "replay queue full")
                        counts["spilled"] += 1

        if batch:
            logger.debug(f"Audit replay pass: {counts}")
        return counts

    def _do_spill(self, pending: PendingAuditEvent, error: str) -> None:
        self._spilled_count += 1
        self._spill(pending.data, pending.attempts, error)

    def _flush_loop(self) -> None:
        while self._running:
            if not self._queue.empty():
                self.replay_pending()
            time.sleep(self._flush_interval)

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def spilled_count(self) -> int:
        return self._spilled_count


class AuditLogger:
    """Best-effort durable audit trail. See module docstring for failure semantics."""

    def __init__(
        self,
        session_factory,
        denylist: FrozenSet[str] = DEFAULT_DENYLIST,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        deferred: bool = False,
        replay_max_attempts: int = 5,
        file_logger: Optional[FileLogger] = None,
    ):
        self._session_factory = session_factory
        self._denylist = denylist
        self._retention_days = retention_days
        self._deferred = deferred
        self._file_logger = file_logger
        self.replay_queue = AuditReplayQueue(
            writer=self._write,
            spill=self._spill,
            max_attempts=replay_max_attempts,
        )

    # ── Recording ──

    def build_event(
        self,
        actor_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: int,
        old_state: Optional[Dict[str, Any]] = None,
        new_state: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Validate and mask an event without persisting it."""
        if action not in AUDIT_ACTIONS:
            raise PPUKValidationError(f"Unknown audit action: {action}", field="action", value=action)
        if entity_type not in AUDIT_ENTITY_TYPES:
            raise PPUKValidationError(
                f"Unknown audit entity type: {entity_type}", field="entity_type", value=entity_type
            )
        if isinstance(entity_id, bool) or not isinstance(entity_id, int):
            raise PPUKValidationError(
                "Audit entity_id must be the concrete row id", field="entity_id", value=entity_id
            )

        ctx = get_request_context()
        return {
            "actor_id": actor_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "old_values": mask_state(old_state, self._denylist) if old_state is not None else None,
            "new_values": mask_state(new_state, self._denylist) if new_state is not None else None,
            "metadata": mask_state(metadata or {}, self._denylist),
            "request_id": ctx.request_id if ctx else None,
            "ip_address": ctx.ip_address if ctx else None,
            "user_agent": ctx.user_agent if ctx else None,
            "created_at": utcnow(),
        }

    def record(
        self,
        actor_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: int,
        old_state: Optional[Dict[str, Any]] = None,
        new_state: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Record one audit event.

        Validation errors (unknown action or entity type) are programming
        errors and raise. Storage errors never raise: the event is queued
        for replay.

        Returns:
            The masked event as it was (or will be) persisted.
        """
        event = self.build_event(
            actor_id, action, entity_type, entity_id, old_state, new_state, metadata
        )

        if self._deferred:
            self.replay_queue.push(event)
            return event

        try:
            event["id"] = self._write(event)
        except Exception as e:
            logger.error(
                f"Audit write failed for {action} {entity_type}:{entity_id}, queued for replay: {e}"
            )
            self.replay_queue.push(event, attempts=1, error=str(e))
        return event

    def _write(self, event: Dict[str, Any]) -> int:
        session = self._session_factory()
        try:
            row = AuditEvent(
                actor_id=event["actor_id"],
                action=event["action"],
                entity_type=event["entity_type"],
                entity_id=event["entity_id"],
                old_values=event["old_values"],
                new_values=event["new_values"],
                metadata_=event["metadata"],
                request_id=event["request_id"],
                ip_address=event.get("ip_address"),
                user_agent=event.get("user_agent"),
                created_at=event["created_at"],
            )
            session.add(row)
            session.commit()
            return row.id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _spill(self, event: Dict[str, Any], attempts: int, error: str) -> None:
        entry = log_audit_spillover(event, attempts, error)
        if self._file_logger is not None:
            try:
                self._file_logger.write(entry)
                return
            except OSError as e:
                logger.error(f"Audit spillover file write failed: {e}")
        # Masked already, so the payload is safe to emit
        logger.critical(f"Audit event lost after {attempts} attempts: {entry.to_json()}")

    def replay_pending(self) -> Dict[str, int]:
        return self.replay_queue.replay_pending()

    def replay_spillover(self, days: int = 7) -> Dict[str, int]:
        """
        Re-ingest events from the audit/spillover log of the last *days* days.

        An event already present (same actor, action, entity and created_at)
        is skipped, so rerunning is safe.

        Returns:
            {"restored": N, "skipped": M, "failed": K}
        """
        counts = {"restored": 0, "skipped": 0, "failed": 0}
        if self._file_logger is None:
            return counts

        start = utcnow().date() - timedelta(days=days)
        entries = self._file_logger.query("audit", "spillover", start_date=start, limit=100000)
        for entry in reversed(entries):
            event = dict(entry.get("audit_event") or {})
            try:
                created_at = datetime.fromisoformat(str(event["created_at"]))
                event["created_at"] = as_utc(created_at)
                if self._exists(event):
                    counts["skipped"] += 1
                    continue
                self._write(event)
                counts["restored"] += 1
            except (KeyError, ValueError, SQLAlchemyError) as e:
                counts["failed"] += 1
                logger.error(f"Spillover event could not be restored: {e}")

        if entries:
            logger.info(f"Audit spillover replay: {counts}")
        return counts

    def _exists(self, event: Dict[str, Any]) -> bool:
        session = self._session_factory()
        try:
            return session.execute(
                select(AuditEvent.id).where(
                    AuditEvent.actor_id == event["actor_id"],
                    AuditEvent.action == event["action"],
                    AuditEvent.entity_type == event["entity_type"],
                    AuditEvent.entity_id == event["entity_id"],
                    AuditEvent.created_at == event["created_at"],
                ).limit(1)
            ).first() is not None
        finally:
            session.close()

    def start(self) -> None:
        self.replay_queue.start()

    def stop(self) -> None:
        self.replay_queue.stop()

    # ── Reads ──

    def trail(
        self, entity_type: str, entity_id: int, limit: int = DEFAULT_TRAIL_LIMIT
    ) -> List[Dict[str, Any]]:
        """Audit events for one entity, newest first."""
        session = self._session_factory()
        try:
            rows = session.execute(
                select(AuditEvent)
                .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
                .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
                .limit(limit)
            ).scalars()
            return [row.to_dict() for row in rows]
        finally:
            session.close()

    def activity_summary(self, actor_id: str, days: int = 30) -> Dict[str, int]:
        """Count of each action performed by *actor_id* over the last *days* days."""
        since = utcnow() - timedelta(days=days)
        session = self._session_factory()
        try:
            rows = session.execute(
                select(AuditEvent.action, func.count(AuditEvent.id))
                .where(AuditEvent.actor_id == actor_id, AuditEvent.created_at >= since)
                .group_by(AuditEvent.action)
            ).all()
            return {action: count for action, count in rows}
        finally:
            session.close()

    # ── Retention ──

    def sweep_retention(self, retention_days: Optional[int] = None) -> int:
        """
        Delete events older than the retention window. Idempotent.

        Returns:
            Number of events deleted.
        """
        days = retention_days if retention_days is not None else self._retention_days
        cutoff = utcnow() - timedelta(days=days)
        session = self._session_factory()
        try:
            result = session.execute(
                delete(AuditEvent)
                .where(AuditEvent.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            deleted = result.rowcount or 0
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(f"Audit retention sweep: {deleted} events older than {days} days removed")
        log(log_system_event("audit_retention_sweep", deleted=deleted, retention_days=days))
        return deleted

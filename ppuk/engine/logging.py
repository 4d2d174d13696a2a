"""
PPUK Operational Logging — Structured JSON file-based logs with async queue.

Implements:
- FileLogger: per-component, per-category log files (daily rotation)
- AsyncLogQueue: in-memory queue with background flush (100ms / 50 entries)
- Log entry builders for access denials, job events, terminal job failures,
  audit spillover and provider fetches
- LogRetentionManager: delete / gzip old files

These files are the monitoring surface: terminal job failures and audit
events that could not be persisted land here.
"""

from __future__ import annotations

import gzip
import json
import logging
import shutil
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional

logger = logging.getLogger("ppuk.engine.logging")

# Valid components and their permitted categories
COMPONENT_CATEGORIES = {
    "authorization": ["security"],
    "audit": ["execution", "spillover"],
    "jobs": ["execution", "failures"],
    "providers": ["execution", "performance"],
    "system": ["execution"],
}

# Retention defaults (days)
DEFAULT_RETENTION = {
    "execution": 90,
    "performance": 30,
    "security": 365,
    "failures": 365,
    "spillover": 2555,
}


class LogEntry:
    """A structured log entry destined for a specific file."""

    __slots__ = ("component", "category", "data")

    def __init__(self, component: str, category: str, data: Dict[str, Any]):
        if category not in COMPONENT_CATEGORIES.get(component, ()):
            raise ValueError(f"Unknown log destination: {component}/{category}")
        self.component = component
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Writes structured JSON log entries to per-component, per-category files.
    Files rotate daily: logs/{component}/{category}/{YYYY-MM-DD}.jsonl

    Thread-safe — uses a lock per file path.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        for component, categories in COMPONENT_CATEGORIES.items():
            for cat in categories:
                (self._log_dir / component / cat).mkdir(parents=True, exist_ok=True)

    def write(self, entry: LogEntry) -> None:
        """Write a single log entry to the appropriate file."""
        file_path = self._resolve_path(entry.component, entry.category)
        with self._file_locks[str(file_path)]:
            with open(file_path, "a", encoding="utf-8") as f:
                f.write(entry.to_json())
                f.write("\n")

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write a batch of entries, grouping by file path."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            grouped[str(self._resolve_path(entry.component, entry.category))].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    for entry in batch:
                        f.write(entry.to_json())
                        f.write("\n")

    def _resolve_path(self, component: str, category: str) -> Path:
        today = date.today().isoformat()
        return self._log_dir / component / category / f"{today}.jsonl"

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def query(
        self,
        component: str,
        category: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Query log entries for a component/category, newest first.

        Args:
            component: e.g. "jobs", "audit".
            category: e.g. "failures", "spillover".
            start_date: Earliest date to include (defaults to 7 days ago).
            end_date: Latest date to include (defaults to today).
            filters: Exact-match filters on top-level keys.
            limit: Max number of entries to return.
        """
        if end_date is None:
            end_date = date.today()
        if start_date is None:
            start_date = end_date - timedelta(days=7)

        log_base = self._log_dir / component / category
        if not log_base.exists():
            return []

        results: List[Dict[str, Any]] = []
        current = end_date
        while current >= start_date and len(results) < limit:
            file_path = log_base / f"{current.isoformat()}.jsonl"
            day_entries: List[Dict[str, Any]] = []
            if file_path.exists():
                day_entries.extend(self._read_jsonl(file_path, filters, gz=False))
            gz_path = file_path.with_suffix(".jsonl.gz")
            if gz_path.exists():
                day_entries.extend(self._read_jsonl(gz_path, filters, gz=True))
            # Lines within a day are chronological
            day_entries.reverse()
            results.extend(day_entries[: limit - len(results)])
            current -= timedelta(days=1)

        return results

    @staticmethod
    def _read_jsonl(
        path: Path,
        filters: Optional[Dict[str, Any]],
        gz: bool,
    ) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        opener = gzip.open if gz else open
        try:
            with opener(path, "rt", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if filters and not all(data.get(k) == v for k, v in filters.items()):
                        continue
                    entries.append(data)
        except OSError as exc:
            logger.warning("Could not read log file %s: %s", path, exc)
        return entries


class AsyncLogQueue:
    """
    In-memory queue with a background flush thread.

    Entries are pushed non-blocking. A background thread flushes to FileLogger
    every flush_interval_ms OR when flush_batch_size entries accumulate,
    whichever comes first.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._logger = file_logger
        self._flush_interval = flush_interval_ms / 1000.0
        self._flush_batch_size = flush_batch_size
        self._queue: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._running = False
        self._flush_thread: Optional[threading.Thread] = None
        self._dropped_count = 0

    def start(self) -> None:
        """Start the background flush thread."""
        if self._running:
            return
        self._running = True
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            name="ppuk-log-flush",
            daemon=True,
        )
        self._flush_thread.start()
        logger.info("Async log queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread and drain remaining entries."""
        self._running = False
        if self._flush_thread and self._flush_thread.is_alive():
            self._flush_thread.join(timeout=timeout)
        self.drain()
        logger.info(f"Async log queue stopped (dropped: {self._dropped_count})")

    def push(self, entry: LogEntry) -> bool:
        """
        Push a log entry to the queue. Non-blocking.

        Returns:
            True if queued, False if dropped (queue full).
        """
        try:
            self._queue.put_nowait(entry)
            return True
        except Full:
            self._dropped_count += 1
            return False

    def _flush_loop(self) -> None:
        while self._running:
            batch = self._collect_batch()
            if batch:
                try:
                    self._logger.write_batch(batch)
                except Exception as e:
                    logger.error(f"Log flush error: {e}")
            else:
                time.sleep(self._flush_interval)

    def _collect_batch(self) -> List[LogEntry]:
        batch: List[LogEntry] = []
        deadline = time.monotonic() + self._flush_interval

        while len(batch) < self._flush_batch_size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                batch.append(self._queue.get(timeout=min(remaining, 0.01)))
            except Empty:
                if batch:
                    break
                continue

        return batch

    def drain(self) -> int:
        """Write every pending entry synchronously. Returns the count written."""
        batch: List[LogEntry] = []
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        if batch:
            try:
                self._logger.write_batch(batch)
            except Exception as e:
                logger.error(f"Log drain error: {e}")
                return 0
        return len(batch)

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


# ---------------------------------------------------------------------------
# Log Entry Builders
# ---------------------------------------------------------------------------

def _base_entry(
    event: str,
    level: str,
    request_id: Optional[str] = None,
    principal_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    if request_id:
        entry["request_id"] = request_id
    if principal_id is not None:
        entry["principal_id"] = principal_id
    entry.update(extra)
    return entry


def log_access_denied(
    principal_id: Optional[str],
    operation: str,
    entity_type: str,
    entity_id: Any,
    tier: Optional[str],
    request_id: Optional[str] = None,
) -> LogEntry:
    """Build an authorization denial entry."""
    data = _base_entry(
        event="access_denied",
        level="WARNING",
        request_id=request_id,
        principal_id=principal_id,
        operation=operation,
        entity_type=entity_type,
        entity_id=entity_id,
        tier=tier,
    )
    return LogEntry("authorization", "security", data)


def log_job_event(
    event: str,
    job_id: int,
    document_id: int,
    kind: str,
    attempts: int,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a job lifecycle entry (claimed/completed/retried/reaped/cancelled)."""
    data = _base_entry(
        event=event,
        level="ERROR" if error else "INFO",
        job_id=job_id,
        document_id=document_id,
        kind=kind,
        attempts=attempts,
    )
    if duration_ms is not None:
        data["duration_ms"] = duration_ms
    if error:
        data["error"] = error
    return LogEntry("jobs", "execution", data)


def log_terminal_job_failure(error_info: Dict[str, Any]) -> LogEntry:
    """Build a terminal job failure entry from PPUKTerminalJobError.to_dict()."""
    data = _base_entry(event="job_failed_terminal", level="ERROR", **error_info)
    return LogEntry("jobs", "failures", data)


def log_audit_spillover(event: Dict[str, Any], attempts: int, error: str) -> LogEntry:
    """Build an entry for an audit event that could not be persisted."""
    data = _base_entry(
        event="audit_spillover",
        level="ERROR",
        principal_id=event.get("actor_id"),
        request_id=event.get("request_id"),
        attempts=attempts,
        error=error,
        audit_event=event,
    )
    return LogEntry("audit", "spillover", data)


def log_provider_fetch(
    provider: str,
    cache_key: str,
    outcome: str,
    duration_ms: float,
    status_code: Optional[int] = None,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a provider fetch entry. outcome: hit | miss | stale | fetched | failed."""
    data = _base_entry(
        event="provider_fetch",
        level="ERROR" if error else "INFO",
        provider=provider,
        cache_key=cache_key,
        outcome=outcome,
        duration_ms=duration_ms,
    )
    if status_code is not None:
        data["status_code"] = status_code
    if error:
        data["error"] = error
    return LogEntry("providers", "execution", data)


def log_system_event(event: str, level: str = "INFO", **details: Any) -> LogEntry:
    """Build a system event entry (sweeps, startup, shutdown)."""
    data = _base_entry(event=event, level=level, **details)
    return LogEntry("system", "execution", data)


# ---------------------------------------------------------------------------
# Log Retention
# ---------------------------------------------------------------------------

class LogRetentionManager:
    """Deletes log files past retention and gzips files older than compress_after_days."""

    def __init__(
        self,
        log_dir: str = "logs",
        retention_days: Optional[Dict[str, int]] = None,
        compress_after_days: int = 7,
    ):
        self._log_dir = Path(log_dir)
        self._retention = retention_days or DEFAULT_RETENTION.copy()
        self._compress_after = compress_after_days

    def cleanup(self) -> Dict[str, int]:
        """
        Run retention cleanup across all log directories.

        Returns:
            Dict with counts: {"deleted": N, "compressed": M}
        """
        deleted = 0
        compressed = 0
        today = date.today()

        for component, categories in COMPONENT_CATEGORIES.items():
            for cat in categories:
                cat_dir = self._log_dir / component / cat
                if not cat_dir.exists():
                    continue

                retention = self._retention.get(cat, 90)

                for file_path in cat_dir.iterdir():
                    if not file_path.is_file():
                        continue

                    file_date = self._parse_file_date(file_path)
                    if file_date is None:
                        continue

                    age_days = (today - file_date).days

                    if age_days > retention:
                        file_path.unlink()
                        deleted += 1
                        continue

                    if age_days > self._compress_after and file_path.suffix == ".jsonl":
                        self._compress_file(file_path)
                        compressed += 1

        result = {"deleted": deleted, "compressed": compressed}
        logger.info(f"Log cleanup: {result}")
        return result

    def _parse_file_date(self, file_path: Path) -> Optional[date]:
        """Extract date from filename like 2026-02-12.jsonl or 2026-02-12.jsonl.gz."""
        try:
            return date.fromisoformat(file_path.name.split(".")[0])
        except ValueError:
            return None

    def _compress_file(self, file_path: Path) -> None:
        gz_path = file_path.with_suffix(file_path.suffix + ".gz")
        try:
            with open(file_path, "rb") as f_in:
                with gzip.open(gz_path, "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)
            file_path.unlink()
        except OSError as e:
            logger.error(f"Failed to compress {file_path}: {e}")
            if gz_path.exists():
                gz_path.unlink()


# ---------------------------------------------------------------------------
# Convenience: Global Log Queue Singleton
# ---------------------------------------------------------------------------

_global_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
    start: bool = True,
) -> AsyncLogQueue:
    """Initialize the global async log queue."""
    global _global_queue
    file_logger = FileLogger(log_dir=log_dir)
    _global_queue = AsyncLogQueue(
        file_logger=file_logger,
        flush_interval_ms=flush_interval_ms,
        flush_batch_size=flush_batch_size,
        max_queue_size=max_queue_size,
    )
    if start:
        _global_queue.start()
    return _global_queue


def get_log_queue() -> Optional[AsyncLogQueue]:
    """Get the global async log queue."""
    return _global_queue


def log(entry: LogEntry) -> bool:
    """Push a log entry to the global queue. Non-blocking."""
    if _global_queue is None:
        logger.debug(f"Log queue not initialized, entry dropped: {entry.data.get('event')}")
        return False
    return _global_queue.push(entry)


def shutdown_logging() -> None:
    """Flush and stop the global log queue."""
    global _global_queue
    if _global_queue:
        _global_queue.stop()
        _global_queue = None

"""
DocForge Logging System — Structured JSON file-based logging with async queue.

Implements:
- FileLogger: Per-object-type, per-category log files (daily rotation)
- AsyncLogQueue: In-memory queue with background flush (100ms / 50 entries)
- Log entry builders for schema changes, uploads and security denials

Layout:
    {log_dir}/{object_type}/{category}/{YYYY-MM-DD}.jsonl
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional

logger = logging.getLogger("docforge.engine.logging")

# Valid object types and their permitted categories
OBJECT_TYPE_CATEGORIES = {
    "doctypes": ["execution", "security"],
    "tables": ["execution", "performance"],
    "uploads": ["execution", "performance", "security"],
    "queries": ["execution", "performance"],
    "system": ["execution", "security"],
}


class LogEntry:
    """A structured log entry destined for a specific file."""

    __slots__ = ("object_type", "category", "data")

    def __init__(self, object_type: str, category: str, data: Dict[str, Any]):
        self.object_type = object_type
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Writes structured JSON log entries to per-object-type, per-category files.
    Files rotate daily. Thread-safe — uses a lock per file path.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        for obj_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for cat in categories:
                (self._log_dir / obj_type / cat).mkdir(parents=True, exist_ok=True)

    def write(self, entry: LogEntry) -> None:
        """Write a single log entry to the appropriate file."""
        self.write_batch([entry])

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write a batch of log entries, grouping by file path."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            file_path = str(self._resolve_path(entry.object_type, entry.category))
            grouped[file_path].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    for entry in batch:
                        f.write(entry.to_json())
                        f.write("\n")

    def _resolve_path(self, object_type: str, category: str) -> Path:
        if object_type not in OBJECT_TYPE_CATEGORIES:
            object_type = "system"
        today = date.today().isoformat()
        return self._log_dir / object_type / category / f"{today}.jsonl"

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def query(
        self,
        object_type: str,
        category: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Query log entries for an object_type/category, newest first.

        Only entries whose top-level keys equal every item in ``filters``
        are returned.
        """
        if end_date is None:
            end_date = date.today()
        if start_date is None:
            start_date = end_date - timedelta(days=7)

        log_base = self._log_dir / object_type / category
        if not log_base.exists():
            return []

        results: List[Dict[str, Any]] = []
        current = end_date
        while current >= start_date and len(results) < limit:
            file_path = log_base / f"{current.isoformat()}.jsonl"
            if file_path.exists():
                results.extend(reversed(self._read_jsonl(file_path, filters)))
            current -= timedelta(days=1)

        return results[:limit]

    @staticmethod
    def _read_jsonl(
        path: Path,
        filters: Optional[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
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

    Entries are pushed non-blocking. The thread flushes to FileLogger every
    flush_interval_ms or when flush_batch_size entries accumulate.
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
            name="docforge-log-flush",
            daemon=True,
        )
        self._flush_thread.start()
        logger.info("Async log queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread and drain remaining entries."""
        self._running = False
        if self._flush_thread and self._flush_thread.is_alive():
            self._flush_thread.join(timeout=timeout)
        self._drain()
        logger.info("Async log queue stopped (dropped: %d)", self._dropped_count)

    def push(self, entry: LogEntry) -> bool:
        """Push a log entry. Returns False if dropped (queue full)."""
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
                except OSError as e:
                    logger.error("Log flush error: %s", e)
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

    def _drain(self) -> None:
        batch: List[LogEntry] = []
        while not self._queue.empty():
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        if batch:
            try:
                self._logger.write_batch(batch)
            except OSError as e:
                logger.error("Log drain error: %s", e)

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
    doctype: Optional[str] = None,
    user_id: Optional[Any] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    if doctype:
        entry["doctype"] = doctype
    if user_id is not None:
        entry["user_id"] = user_id
    entry.update(extra)
    return entry


def log_schema_change(
    event: str,
    doctype: str,
    table_name: str,
    user_id: Optional[Any] = None,
    field_name: Optional[str] = None,
    success: bool = True,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a DocType/field lifecycle entry (created, field_added, ddl_failed...)."""
    data = _base_entry(
        event=event,
        level="INFO" if success else "ERROR",
        doctype=doctype,
        user_id=user_id,
        table_name=table_name,
        success=success,
    )
    if field_name:
        data["field_name"] = field_name
    if error:
        data["error"] = error
    return LogEntry("doctypes", "execution", data)


def log_ddl(
    operation: str,
    table_name: str,
    duration_ms: float,
    success: bool,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a DDL performance entry for the Table Manager."""
    data = _base_entry(
        event=f"ddl_{operation}",
        level="INFO" if success else "ERROR",
        table_name=table_name,
        duration_ms=round(duration_ms, 2),
        success=success,
    )
    if error:
        data["error"] = error
    return LogEntry("tables", "performance", data)


def log_upload(
    doctype: str,
    user_id: Any,
    file_name: str,
    total_rows: int,
    deleted_rows: int,
    inserted_rows: int,
    duration_ms: float,
    warnings: int = 0,
) -> LogEntry:
    """Build an upload completion entry."""
    data = _base_entry(
        event="upload_completed",
        level="INFO",
        doctype=doctype,
        user_id=user_id,
        file_name=file_name,
        total_rows=total_rows,
        deleted_rows=deleted_rows,
        inserted_rows=inserted_rows,
        warnings=warnings,
        duration_ms=round(duration_ms, 2),
    )
    return LogEntry("uploads", "execution", data)


def log_security_event(
    event: str,
    doctype: str,
    user_id: Any,
    role_ids: List[int],
    reason: str,
    level: str = "WARNING",
) -> LogEntry:
    """Build a security event entry (upload/view denied)."""
    data = _base_entry(
        event=event,
        level=level,
        doctype=doctype,
        user_id=user_id,
        role_ids=sorted(role_ids),
        reason=reason,
    )
    return LogEntry("uploads", "security", data)


def log_slow_query(
    table_name: str,
    operation: str,
    duration_ms: float,
    rows: Optional[int] = None,
) -> LogEntry:
    """Build a performance entry for a Query Builder call over the threshold."""
    data = _base_entry(
        event="slow_query",
        level="WARNING",
        table_name=table_name,
        operation=operation,
        duration_ms=round(duration_ms, 2),
    )
    if rows is not None:
        data["rows"] = rows
    return LogEntry("queries", "performance", data)


def log_system_event(
    event: str,
    level: str = "INFO",
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build a system event entry (startup, shutdown, config changes)."""
    data = _base_entry(event=event, level=level)
    if details:
        data["details"] = details
    return LogEntry("system", "execution", data)


# ---------------------------------------------------------------------------
# Convenience: Global Log Queue Singleton
# ---------------------------------------------------------------------------

_global_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
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
    _global_queue.start()
    return _global_queue


def get_log_queue() -> Optional[AsyncLogQueue]:
    return _global_queue


def log(entry: LogEntry) -> bool:
    """Push a log entry to the global queue. Non-blocking."""
    if _global_queue is None:
        logger.debug("Log queue not initialized — %s entry dropped", entry.data.get("event"))
        return False
    return _global_queue.push(entry)


def shutdown_logging() -> None:
    """Flush and stop the global log queue."""
    global _global_queue
    if _global_queue:
        _global_queue.stop()
        _global_queue = None

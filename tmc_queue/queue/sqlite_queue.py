"""SQLite queue store.

SQLite has no row locks, so a claim is modelled as a lease: inside one
``BEGIN IMMEDIATE`` transaction the eligible rows are selected and stamped with
the worker's id and claim time, guarded by ``status = 'pending'``. The write
lock makes that compare-and-set atomic across connections and processes, and
the transaction is short enough that concurrent claimers only queue for a few
milliseconds. A lease expires ``STUCK_THRESHOLD_MINUTES`` after the claim (or
the last renewal) and is then recovered by ``reset_stuck_items``.

Timestamps are stored as fixed-width UTC ISO-8601 text so they compare
correctly as strings.
"""
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from tmc_queue import settings
from tmc_queue.errors import ItemNotFoundError
from tmc_queue.logging_conf import logger
from tmc_queue.queue.base import QueueStore
from tmc_queue.queue.models import (
    Checkpoint,
    QueueHealth,
    QueueItem,
    QueueStatus,
    RecentError,
    Source,
    SyncStatus,
    coerce_source,
)
from tmc_queue.queue.states import check_transition, failure_outcome, retry_delay

TIMESTAMP_COLUMNS = (
    "created_at",
    "updated_at",
    "processing_started_at",
    "processed_at",
    "next_retry_at",
    "last_event_time",
    "checkpoint_updated_at",
    "last_processed_at",
)

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS checkpoints (
    source TEXT PRIMARY KEY,
    last_event_time TEXT NOT NULL,
    last_cursor TEXT,
    updated_at TEXT NOT NULL,
    CHECK (source IN ('teamwork', 'missive', 'craft'))
);

CREATE TABLE IF NOT EXISTS queue_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source TEXT NOT NULL,
    event_type TEXT NOT NULL,
    external_id TEXT NOT NULL,
    payload TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    processing_started_at TEXT,
    processed_at TEXT,
    next_retry_at TEXT,
    worker_id TEXT,
    processing_time_ms INTEGER,
    CHECK (source IN ('teamwork', 'missive', 'craft')),
    CHECK (status IN ('pending', 'processing', 'completed', 'dead_letter')),
    CHECK (retry_count >= 0),
    CHECK (max_retries >= 0)
);

CREATE INDEX IF NOT EXISTS idx_queue_items_status_created ON queue_items(status, created_at);
CREATE INDEX IF NOT EXISTS idx_queue_items_source ON queue_items(source);
CREATE INDEX IF NOT EXISTS idx_queue_items_external_id ON queue_items(external_id);
CREATE INDEX IF NOT EXISTS idx_queue_items_next_retry ON queue_items(next_retry_at);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class SqliteQueue(QueueStore):
    """Queue store in a local SQLite file."""

    def __init__(self, path: str = ":memory:", clock: Callable[[], datetime] = utcnow,
                 busy_timeout_ms: Optional[int] = None):
        self.path = str(path)
        self.clock = clock
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        timeout_ms = busy_timeout_ms if busy_timeout_ms is not None else settings.SQLITE_BUSY_TIMEOUT_MS
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            self.path,
            timeout=timeout_ms / 1000,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(f"PRAGMA busy_timeout={int(timeout_ms)}")
        self._conn.execute("PRAGMA synchronous=NORMAL")

    def ensure_schema(self) -> None:
        with self._lock:
            self._conn.executescript(SCHEMA_DDL)
        logger.info(f"Queue schema ready ({self.path})")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _transaction(self):
        """Write transaction holding the database lock until commit."""
        with self._lock:
            conn = self._conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _now(self) -> str:
        return to_db_time(self.clock())

    @staticmethod
    def _decode(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        for column in TIMESTAMP_COLUMNS:
            if column in data:
                data[column] = from_db_time(data[column])
        if data.get("payload") is not None:
            data["payload"] = json.loads(data["payload"])
        return data

    def _item(self, row: sqlite3.Row) -> QueueItem:
        return QueueItem.from_row(self._decode(row))

    def enqueue(self, source, event_type, external_id, payload=None, max_retries=None, dedupe=False) -> int:
        source = coerce_source(source)
        max_retries = self._resolve_max_retries(max_retries)
        extra = {"source": source.value, "event_id": external_id}
        encoded = json.dumps(payload or {})
        with self._transaction() as conn:
            now = self._now()
            if dedupe:
                row = conn.execute("""
                    SELECT id FROM queue_items
                    WHERE source = ? AND event_type = ? AND external_id = ? AND status = 'pending'
                    ORDER BY created_at ASC, id ASC
                    LIMIT 1
                """, (source.value, event_type, str(external_id))).fetchone()
                if row:
                    conn.execute(
                        "UPDATE queue_items SET payload = ?, updated_at = ? WHERE id = ?",
                        (encoded, now, row["id"]),
                    )
                    logger.debug(f"Coalesced {source.value}:{external_id} into item {row['id']}", extra=extra)
                    return row["id"]

            cur = conn.execute("""
                INSERT INTO queue_items
                    (source, event_type, external_id, payload, max_retries, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (source.value, event_type, str(external_id), encoded, max_retries, now, now))
            item_id = cur.lastrowid
        logger.info(f"Enqueued {source.value}:{external_id} ({event_type}) as item {item_id}", extra=extra)
        return item_id

    def get_item(self, item_id: int) -> Optional[QueueItem]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM queue_items WHERE id = ?", (item_id,)).fetchone()
        return self._item(row) if row else None

    def dequeue(self, worker_id: str, max_items: int = 10, source: Optional[Source] = None) -> List[QueueItem]:
        self._check_max_items(max_items)
        source_value = coerce_source(source).value if source is not None else None
        with self._transaction() as conn:
            now = self._now()
            candidates = conn.execute("""
                SELECT id FROM queue_items
                WHERE status = 'pending'
                  AND (? IS NULL OR source = ?)
                  AND (next_retry_at IS NULL OR next_retry_at <= ?)
                ORDER BY created_at ASC, id ASC
                LIMIT ?
            """, (source_value, source_value, now, max_items)).fetchall()
            ids = [row["id"] for row in candidates]
            if not ids:
                return []

            placeholders = ", ".join("?" for _ in ids)
            conn.execute(f"""
                UPDATE queue_items
                SET status = 'processing',
                    processing_started_at = ?,
                    worker_id = ?,
                    updated_at = ?
                WHERE status = 'pending' AND id IN ({placeholders})
            """, (now, worker_id, now, *ids))
            rows = conn.execute(f"""
                SELECT * FROM queue_items
                WHERE status = 'processing' AND worker_id = ? AND processing_started_at = ?
                  AND id IN ({placeholders})
                ORDER BY created_at ASC, id ASC
            """, (worker_id, now, *ids)).fetchall()

        items = [self._item(row) for row in rows]
        logger.debug(f"Worker {worker_id} claimed {len(items)} items")
        return items

    def _fetch_for_update(self, conn, item_id: int) -> QueueItem:
        row = conn.execute("SELECT * FROM queue_items WHERE id = ?", (item_id,)).fetchone()
        if not row:
            raise ItemNotFoundError(item_id)
        return self._item(row)

    def mark_completed(self, item_id: int, processing_time_ms: Optional[int] = None) -> None:
        with self._transaction() as conn:
            item = self._fetch_for_update(conn, item_id)
            check_transition(item_id, item.status, QueueStatus.COMPLETED)
            now = self._now()
            conn.execute("""
                UPDATE queue_items
                SET status = 'completed',
                    processed_at = ?,
                    processing_time_ms = ?,
                    processing_started_at = NULL,
                    worker_id = NULL,
                    next_retry_at = NULL,
                    updated_at = ?
                WHERE id = ?
            """, (now, processing_time_ms, now, item_id))
        logger.info(
            f"Completed {item.source.value}:{item.external_id} (item {item_id})",
            extra={"source": item.source.value, "item_id": item_id},
        )

    def mark_failed(self, item_id: int, error_message: str, retry: bool = True) -> QueueStatus:
        with self._transaction() as conn:
            item = self._fetch_for_update(conn, item_id)
            outcome = failure_outcome(item.retry_count, item.max_retries, retry)
            check_transition(item_id, item.status, outcome)
            now = self.clock()
            if outcome == QueueStatus.PENDING:
                conn.execute("""
                    UPDATE queue_items
                    SET status = 'pending',
                        retry_count = retry_count + 1,
                        error_message = ?,
                        next_retry_at = ?,
                        processing_started_at = NULL,
                        worker_id = NULL,
                        updated_at = ?
                    WHERE id = ?
                """, (error_message, to_db_time(now + retry_delay(item.retry_count)), to_db_time(now), item_id))
            else:
                conn.execute("""
                    UPDATE queue_items
                    SET status = 'dead_letter',
                        error_message = ?,
                        processed_at = ?,
                        next_retry_at = NULL,
                        processing_started_at = NULL,
                        worker_id = NULL,
                        updated_at = ?
                    WHERE id = ?
                """, (error_message, to_db_time(now), to_db_time(now), item_id))
        self._log_failure(item, outcome, error_message)
        return outcome

    def renew_lease(self, item_id: int, worker_id: str) -> bool:
        with self._transaction() as conn:
            now = self._now()
            cur = conn.execute("""
                UPDATE queue_items
                SET processing_started_at = ?, updated_at = ?
                WHERE id = ? AND status = 'processing' AND worker_id = ?
            """, (now, now, item_id, worker_id))
            renewed = cur.rowcount > 0
        if not renewed:
            logger.warning(f"Worker {worker_id} lost its claim on item {item_id}", extra={"item_id": item_id})
        return renewed

    def reset_stuck_items(self, stuck_threshold_minutes: int = 30) -> int:
        with self._transaction() as conn:
            now = self.clock()
            cutoff = to_db_time(now - timedelta(minutes=stuck_threshold_minutes))
            cur = conn.execute("""
                UPDATE queue_items
                SET status = 'pending',
                    processing_started_at = NULL,
                    worker_id = NULL,
                    updated_at = ?
                WHERE status = 'processing' AND processing_started_at < ?
            """, (to_db_time(now), cutoff))
            count = cur.rowcount
        if count > 0:
            logger.warning(f"Reset {count} stuck items (threshold {stuck_threshold_minutes} min)")
        return count

    def cleanup_old_items(self, retention_days: int = 7) -> int:
        with self._transaction() as conn:
            cutoff = to_db_time(self.clock() - timedelta(days=retention_days))
            cur = conn.execute(
                "DELETE FROM queue_items WHERE status = 'completed' AND processed_at < ?",
                (cutoff,),
            )
            count = cur.rowcount
        if count > 0:
            logger.info(f"Deleted {count} completed items older than {retention_days} days")
        return count

    def get_checkpoint(self, source: Source) -> Optional[Checkpoint]:
        source = coerce_source(source)
        with self._lock:
            row = self._conn.execute("SELECT * FROM checkpoints WHERE source = ?", (source.value,)).fetchone()
        return Checkpoint.from_row(self._decode(row)) if row else None

    def set_checkpoint(self, source: Source, last_event_time: datetime, last_cursor: Optional[str] = None) -> None:
        source = coerce_source(source)
        with self._transaction() as conn:
            now = self._now()
            conn.execute("""
                INSERT INTO checkpoints (source, last_event_time, last_cursor, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (source) DO UPDATE
                SET last_event_time = excluded.last_event_time,
                    last_cursor = excluded.last_cursor,
                    updated_at = excluded.updated_at
            """, (source.value, to_db_time(last_event_time), last_cursor, now))
        logger.debug(f"Saved {source.value} checkpoint: {last_event_time.isoformat()}")

    def queue_health(self, stuck_threshold_minutes: Optional[int] = None) -> Dict[Source, QueueHealth]:
        threshold = stuck_threshold_minutes if stuck_threshold_minutes is not None else settings.STUCK_THRESHOLD_MINUTES
        now = self.clock()
        cutoff = to_db_time(now - timedelta(minutes=threshold))
        with self._lock:
            rows = self._conn.execute("""
                SELECT
                    source,
                    SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
                    SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END) AS processing,
                    SUM(CASE WHEN status = 'pending' AND retry_count > 0 THEN 1 ELSE 0 END) AS failed,
                    SUM(CASE WHEN status = 'dead_letter' THEN 1 ELSE 0 END) AS dead_letter,
                    AVG(CASE WHEN status = 'completed' THEN processing_time_ms END) AS avg_latency_ms,
                    MIN(CASE WHEN status = 'pending' THEN created_at END) AS oldest_pending,
                    SUM(CASE WHEN status = 'processing' AND processing_started_at < ? THEN 1 ELSE 0 END)
                        AS stuck_count
                FROM queue_items
                GROUP BY source
            """, (cutoff,)).fetchall()

        health = self._empty_health()
        for row in rows:
            source = Source(row["source"])
            oldest = from_db_time(row["oldest_pending"])
            health[source] = QueueHealth(
                source=source,
                pending=row["pending"],
                processing=row["processing"],
                failed=row["failed"],
                dead_letter=row["dead_letter"],
                avg_latency_ms=row["avg_latency_ms"],
                oldest_pending_age=(now - oldest).total_seconds() if oldest else None,
                stuck_count=row["stuck_count"],
            )
        return health

    def recent_errors(self, window_hours: int = 24, limit: int = 100) -> List[RecentError]:
        cutoff = to_db_time(self.clock() - timedelta(hours=window_hours))
        with self._lock:
            rows = self._conn.execute("""
                SELECT id, source, event_type, external_id, error_message, retry_count, status, updated_at
                FROM queue_items
                WHERE (status = 'dead_letter' OR (status = 'pending' AND error_message IS NOT NULL))
                  AND updated_at > ?
                ORDER BY updated_at DESC, id DESC
                LIMIT ?
            """, (cutoff, limit)).fetchall()
        return [RecentError.from_row(self._decode(row)) for row in rows]

    def sync_status(self) -> List[SyncStatus]:
        with self._lock:
            queue_rows = self._conn.execute("""
                SELECT
                    source,
                    SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
                    SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END) AS processing,
                    SUM(CASE WHEN status = 'pending' AND retry_count > 0 THEN 1 ELSE 0 END) AS failed,
                    MAX(CASE WHEN status = 'completed' THEN processed_at END) AS last_processed_at
                FROM queue_items
                GROUP BY source
            """).fetchall()
            checkpoint_rows = self._conn.execute(
                "SELECT source, last_event_time, updated_at AS checkpoint_updated_at FROM checkpoints"
            ).fetchall()

        merged: Dict[str, Dict[str, Any]] = {}
        for row in checkpoint_rows:
            merged[row["source"]] = {
                "source": row["source"],
                "pending": 0,
                "processing": 0,
                "failed": 0,
                "last_processed_at": None,
                **self._decode(row),
            }
        for row in queue_rows:
            entry = merged.setdefault(row["source"], {
                "source": row["source"],
                "last_event_time": None,
                "checkpoint_updated_at": None,
            })
            entry.update(self._decode(row))
        return [SyncStatus.from_row(merged[source]) for source in sorted(merged)]

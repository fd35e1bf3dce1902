"""PostgreSQL queue store using row locks with SKIP LOCKED for claims."""
from datetime import datetime
from typing import Dict, List, Optional

from psycopg2 import sql
from psycopg2.extras import Json

from tmc_queue import settings
from tmc_queue.db import Database
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

SCHEMA_DDL = """
CREATE SCHEMA IF NOT EXISTS {schema};

CREATE TABLE IF NOT EXISTS {schema}.checkpoints (
    source VARCHAR(50) PRIMARY KEY,
    last_event_time TIMESTAMPTZ NOT NULL,
    last_cursor TEXT,
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    CONSTRAINT checkpoints_valid_source CHECK (source IN ('teamwork', 'missive', 'craft'))
);

CREATE TABLE IF NOT EXISTS {schema}.queue_items (
    id SERIAL PRIMARY KEY,
    source VARCHAR(50) NOT NULL,
    event_type VARCHAR(100) NOT NULL,
    external_id VARCHAR(255) NOT NULL,
    payload JSONB,
    status VARCHAR(50) DEFAULT 'pending' NOT NULL,
    retry_count INTEGER DEFAULT 0 NOT NULL,
    max_retries INTEGER DEFAULT 3 NOT NULL,
    error_message TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW() NOT NULL,
    updated_at TIMESTAMPTZ DEFAULT NOW() NOT NULL,
    processing_started_at TIMESTAMPTZ,
    processed_at TIMESTAMPTZ,
    next_retry_at TIMESTAMPTZ,
    worker_id VARCHAR(100),
    processing_time_ms INTEGER,
    CONSTRAINT queue_items_valid_source CHECK (source IN ('teamwork', 'missive', 'craft')),
    CONSTRAINT queue_items_valid_status CHECK (status IN ('pending', 'processing', 'completed', 'dead_letter')),
    CONSTRAINT queue_items_retry_count_positive CHECK (retry_count >= 0),
    CONSTRAINT queue_items_max_retries_positive CHECK (max_retries >= 0)
);

CREATE INDEX IF NOT EXISTS idx_queue_items_status_created
    ON {schema}.queue_items(status, created_at) WHERE status IN ('pending', 'processing');
CREATE INDEX IF NOT EXISTS idx_queue_items_source ON {schema}.queue_items(source);
CREATE INDEX IF NOT EXISTS idx_queue_items_external_id ON {schema}.queue_items(external_id);
CREATE INDEX IF NOT EXISTS idx_queue_items_next_retry
    ON {schema}.queue_items(next_retry_at) WHERE status = 'pending' AND next_retry_at IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_queue_items_created_at ON {schema}.queue_items(created_at);
"""


class PostgresQueue(QueueStore):
    """Queue store backed by the connector schema in PostgreSQL."""

    def __init__(self, database_url: Optional[str] = None, db: Optional[Database] = None):
        self.db = db or Database(database_url)

    def ensure_schema(self) -> None:
        ddl = sql.SQL(SCHEMA_DDL).format(schema=sql.Identifier(self.db.schema))
        with self.db.cursor() as cur:
            cur.execute(ddl)
        logger.info(f"Queue schema ready ({self.db.schema})")

    def close(self) -> None:
        self.db.close()

    def enqueue(self, source, event_type, external_id, payload=None, max_retries=None, dedupe=False) -> int:
        source = coerce_source(source)
        max_retries = self._resolve_max_retries(max_retries)
        extra = {"source": source.value, "event_id": external_id}
        with self.db.cursor() as cur:
            if dedupe:
                cur.execute("""
                    UPDATE queue_items
                    SET payload = %s, updated_at = NOW()
                    WHERE id = (
                        SELECT id FROM queue_items
                        WHERE source = %s AND event_type = %s AND external_id = %s
                          AND status = 'pending'
                        ORDER BY created_at ASC
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING id
                """, (Json(payload or {}), source.value, event_type, str(external_id)))
                row = cur.fetchone()
                if row:
                    logger.debug(f"Coalesced {source.value}:{external_id} into item {row['id']}", extra=extra)
                    return row["id"]

            cur.execute("""
                INSERT INTO queue_items (source, event_type, external_id, payload, max_retries)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING id
            """, (source.value, event_type, str(external_id), Json(payload or {}), max_retries))
            item_id = cur.fetchone()["id"]
        logger.info(f"Enqueued {source.value}:{external_id} ({event_type}) as item {item_id}", extra=extra)
        return item_id

    def get_item(self, item_id: int) -> Optional[QueueItem]:
        with self.db.cursor() as cur:
            cur.execute("SELECT * FROM queue_items WHERE id = %s", (item_id,))
            row = cur.fetchone()
        return QueueItem.from_row(row) if row else None

    def dequeue(self, worker_id: str, max_items: int = 10, source: Optional[Source] = None) -> List[QueueItem]:
        self._check_max_items(max_items)
        source_value = coerce_source(source).value if source is not None else None
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE queue_items q
                SET status = 'processing',
                    processing_started_at = NOW(),
                    worker_id = %s,
                    updated_at = NOW()
                WHERE q.id IN (
                    SELECT qi.id FROM queue_items qi
                    WHERE qi.status = 'pending'
                      AND (%s::VARCHAR IS NULL OR qi.source = %s::VARCHAR)
                      AND (qi.next_retry_at IS NULL OR qi.next_retry_at <= NOW())
                    ORDER BY qi.created_at ASC, qi.id ASC
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING q.*
            """, (worker_id, source_value, source_value, max_items))
            rows = cur.fetchall()

        items = sorted((QueueItem.from_row(row) for row in rows), key=lambda i: (i.created_at, i.id))
        if items:
            logger.debug(f"Worker {worker_id} claimed {len(items)} items")
        return items

    def _lock_item(self, cur, item_id: int) -> QueueItem:
        cur.execute("SELECT * FROM queue_items WHERE id = %s FOR UPDATE", (item_id,))
        row = cur.fetchone()
        if not row:
            raise ItemNotFoundError(item_id)
        return QueueItem.from_row(row)

    def mark_completed(self, item_id: int, processing_time_ms: Optional[int] = None) -> None:
        with self.db.cursor() as cur:
            item = self._lock_item(cur, item_id)
            check_transition(item_id, item.status, QueueStatus.COMPLETED)
            cur.execute("""
                UPDATE queue_items
                SET status = 'completed',
                    processed_at = NOW(),
                    processing_time_ms = %s,
                    processing_started_at = NULL,
                    worker_id = NULL,
                    next_retry_at = NULL,
                    updated_at = NOW()
                WHERE id = %s
            """, (processing_time_ms, item_id))
        logger.info(
            f"Completed {item.source.value}:{item.external_id} (item {item_id})",
            extra={"source": item.source.value, "item_id": item_id},
        )

    def mark_failed(self, item_id: int, error_message: str, retry: bool = True) -> QueueStatus:
        with self.db.cursor() as cur:
            item = self._lock_item(cur, item_id)
            outcome = failure_outcome(item.retry_count, item.max_retries, retry)
            check_transition(item_id, item.status, outcome)
            if outcome == QueueStatus.PENDING:
                cur.execute("""
                    UPDATE queue_items
                    SET status = 'pending',
                        retry_count = retry_count + 1,
                        error_message = %s,
                        next_retry_at = NOW() + %s,
                        processing_started_at = NULL,
                        worker_id = NULL,
                        updated_at = NOW()
                    WHERE id = %s
                """, (error_message, retry_delay(item.retry_count), item_id))
            else:
                cur.execute("""
                    UPDATE queue_items
                    SET status = 'dead_letter',
                        error_message = %s,
                        processed_at = NOW(),
                        next_retry_at = NULL,
                        processing_started_at = NULL,
                        worker_id = NULL,
                        updated_at = NOW()
                    WHERE id = %s
                """, (error_message, item_id))
        self._log_failure(item, outcome, error_message)
        return outcome

    def renew_lease(self, item_id: int, worker_id: str) -> bool:
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE queue_items
                SET processing_started_at = NOW(), updated_at = NOW()
                WHERE id = %s AND status = 'processing' AND worker_id = %s
                RETURNING id
            """, (item_id, worker_id))
            renewed = cur.fetchone() is not None
        if not renewed:
            logger.warning(f"Worker {worker_id} lost its claim on item {item_id}", extra={"item_id": item_id})
        return renewed

    def reset_stuck_items(self, stuck_threshold_minutes: int = 30) -> int:
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE queue_items
                SET status = 'pending',
                    processing_started_at = NULL,
                    worker_id = NULL,
                    updated_at = NOW()
                WHERE status = 'processing'
                  AND processing_started_at < NOW() - make_interval(mins => %s)
            """, (stuck_threshold_minutes,))
            count = cur.rowcount
        if count > 0:
            logger.warning(f"Reset {count} stuck items (threshold {stuck_threshold_minutes} min)")
        return count

    def cleanup_old_items(self, retention_days: int = 7) -> int:
        with self.db.cursor() as cur:
            cur.execute("""
                DELETE FROM queue_items
                WHERE status = 'completed'
                  AND processed_at < NOW() - make_interval(days => %s)
            """, (retention_days,))
            count = cur.rowcount
        if count > 0:
            logger.info(f"Deleted {count} completed items older than {retention_days} days")
        return count

    def get_checkpoint(self, source: Source) -> Optional[Checkpoint]:
        source = coerce_source(source)
        with self.db.cursor() as cur:
            cur.execute("SELECT * FROM checkpoints WHERE source = %s", (source.value,))
            row = cur.fetchone()
        return Checkpoint.from_row(row) if row else None

    def set_checkpoint(self, source: Source, last_event_time: datetime, last_cursor: Optional[str] = None) -> None:
        source = coerce_source(source)
        with self.db.cursor() as cur:
            cur.execute("""
                INSERT INTO checkpoints (source, last_event_time, last_cursor, updated_at)
                VALUES (%s, %s, %s, NOW())
                ON CONFLICT (source) DO UPDATE
                SET last_event_time = EXCLUDED.last_event_time,
                    last_cursor = EXCLUDED.last_cursor,
                    updated_at = NOW()
            """, (source.value, last_event_time, last_cursor))
        logger.debug(f"Saved {source.value} checkpoint: {last_event_time.isoformat()}")

    def queue_health(self, stuck_threshold_minutes: Optional[int] = None) -> Dict[Source, QueueHealth]:
        threshold = stuck_threshold_minutes if stuck_threshold_minutes is not None else settings.STUCK_THRESHOLD_MINUTES
        with self.db.cursor() as cur:
            cur.execute("""
                SELECT
                    source,
                    COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                    COUNT(*) FILTER (WHERE status = 'processing') AS processing,
                    COUNT(*) FILTER (WHERE status = 'pending' AND retry_count > 0) AS failed,
                    COUNT(*) FILTER (WHERE status = 'dead_letter') AS dead_letter,
                    AVG(processing_time_ms) FILTER (
                        WHERE status = 'completed' AND processing_time_ms IS NOT NULL
                    ) AS avg_latency_ms,
                    EXTRACT(EPOCH FROM NOW() - MIN(created_at) FILTER (WHERE status = 'pending'))
                        AS oldest_pending_age,
                    COUNT(*) FILTER (
                        WHERE status = 'processing'
                          AND processing_started_at < NOW() - make_interval(mins => %s)
                    ) AS stuck_count
                FROM queue_items
                GROUP BY source
            """, (threshold,))
            rows = cur.fetchall()

        health = self._empty_health()
        for row in rows:
            source = Source(row["source"])
            health[source] = QueueHealth(
                source=source,
                pending=row["pending"],
                processing=row["processing"],
                failed=row["failed"],
                dead_letter=row["dead_letter"],
                avg_latency_ms=float(row["avg_latency_ms"]) if row["avg_latency_ms"] is not None else None,
                oldest_pending_age=(
                    float(row["oldest_pending_age"]) if row["oldest_pending_age"] is not None else None
                ),
                stuck_count=row["stuck_count"],
            )
        return health

    def recent_errors(self, window_hours: int = 24, limit: int = 100) -> List[RecentError]:
        with self.db.cursor() as cur:
            cur.execute("""
                SELECT id, source, event_type, external_id, error_message, retry_count, status, updated_at
                FROM queue_items
                WHERE (status = 'dead_letter' OR (status = 'pending' AND error_message IS NOT NULL))
                  AND updated_at > NOW() - make_interval(hours => %s)
                ORDER BY updated_at DESC, id DESC
                LIMIT %s
            """, (window_hours, limit))
            rows = cur.fetchall()
        return [RecentError.from_row(row) for row in rows]

    def sync_status(self) -> List[SyncStatus]:
        with self.db.cursor() as cur:
            cur.execute("""
                SELECT
                    COALESCE(c.source, q.source) AS source,
                    c.last_event_time,
                    c.updated_at AS checkpoint_updated_at,
                    COALESCE(q.pending, 0) AS pending,
                    COALESCE(q.processing, 0) AS processing,
                    COALESCE(q.failed, 0) AS failed,
                    q.last_processed_at
                FROM (
                    SELECT
                        source,
                        COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                        COUNT(*) FILTER (WHERE status = 'processing') AS processing,
                        COUNT(*) FILTER (WHERE status = 'pending' AND retry_count > 0) AS failed,
                        MAX(processed_at) FILTER (WHERE status = 'completed') AS last_processed_at
                    FROM queue_items
                    GROUP BY source
                ) q
                FULL OUTER JOIN checkpoints c ON c.source = q.source
                ORDER BY 1
            """)
            rows = cur.fetchall()
        return [SyncStatus.from_row(row) for row in rows]


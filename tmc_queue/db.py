"""PostgreSQL connection handling for the queue store."""
import psycopg2
from psycopg2.extras import RealDictCursor
from typing import Optional
from contextlib import contextmanager

from tmc_queue import settings
from tmc_queue.logging_conf import logger

DEFAULT_SCHEMA = "teamworkmissiveconnector"


class Database:
    """Lazily opened psycopg2 connection with transactional cursors."""

    def __init__(self, database_url: Optional[str] = None, schema: str = DEFAULT_SCHEMA):
        self.database_url = database_url or settings.DATABASE_URL
        self.schema = schema
        self._conn = None

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(
                self.database_url,
                options=f"-c search_path={self.schema},public",
            )
            logger.debug(f"Opened database connection (schema {self.schema})")
        return self._conn

    def close(self):
        """Close database connection."""
        if self._conn and not self._conn.closed:
            self._conn.close()
            self._conn = None

    @contextmanager
    def cursor(self):
        """Context manager for cursor with auto-commit/rollback."""
        cur = self.conn.cursor(cursor_factory=RealDictCursor)
        try:
            yield cur
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cur.close()

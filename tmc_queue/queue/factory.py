"""Select a queue store backend from a database URL."""
from typing import Optional
from urllib.parse import urlparse

from tmc_queue import settings
from tmc_queue.queue.base import QueueStore


def open_queue(database_url: Optional[str] = None, **kwargs) -> QueueStore:
    """Open a queue store for ``postgresql://`` or ``sqlite:///`` URLs.

    ``sqlite://`` and ``sqlite:///:memory:`` give a private in-memory store.
    Extra keyword arguments go to the backend constructor.
    """
    url = database_url or settings.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is required")

    scheme = urlparse(url).scheme
    if scheme in ("postgres", "postgresql"):
        from tmc_queue.queue.postgres_queue import PostgresQueue
        return PostgresQueue(url, **kwargs)

    if scheme == "sqlite":
        from tmc_queue.queue.sqlite_queue import SqliteQueue
        path = url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SqliteQueue(path or ":memory:", **kwargs)

    raise ValueError(f"Unsupported DATABASE_URL scheme: {scheme or url}")

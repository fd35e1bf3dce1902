"""Configuration for the connector event queue."""
import os
import socket
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Database connection (postgresql://... or sqlite:///path/to/queue.db)
DATABASE_URL = os.getenv("DATABASE_URL")
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000"))

# Worker settings
WORKER_ID = os.getenv("WORKER_ID", f"{socket.gethostname()}-{os.getpid()}")
WORKER_THREADS = int(os.getenv("WORKER_THREADS", "2"))
POLL_INTERVAL = int(os.getenv("POLL_INTERVAL", "5"))  # seconds between polls when idle
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "10"))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))

# Module exposing register(router) with the event handlers, e.g. "connector.handlers"
HANDLER_MODULE = os.getenv("HANDLER_MODULE")

# Maintenance
STUCK_THRESHOLD_MINUTES = int(os.getenv("STUCK_THRESHOLD_MINUTES", "30"))
RETENTION_DAYS = int(os.getenv("RETENTION_DAYS", "7"))
MAINTENANCE_INTERVAL = int(os.getenv("MAINTENANCE_INTERVAL", "300"))
HEALTH_LOG_INTERVAL = int(os.getenv("HEALTH_LOG_INTERVAL", "600"))

# Checkpoints
BACKFILL_OVERLAP_SECONDS = int(os.getenv("BACKFILL_OVERLAP_SECONDS", "120"))
PROCESS_AFTER = os.getenv("PROCESS_AFTER")  # DD.MM.YYYY, first-run start date


def validate_config():
    """Validate required configuration."""
    errors = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")
    elif not DATABASE_URL.startswith(("postgres://", "postgresql://", "sqlite://")):
        errors.append(f"DATABASE_URL must be a postgresql:// or sqlite:// URL: {DATABASE_URL}")
    elif DATABASE_URL in ("sqlite://", "sqlite:///", "sqlite:///:memory:"):
        # Every worker opens its own connection; an in-memory database is private to one
        errors.append(f"DATABASE_URL must point at a SQLite file, not an in-memory database: {DATABASE_URL}")

    if WORKER_THREADS < 1:
        errors.append(f"WORKER_THREADS must be at least 1: {WORKER_THREADS}")

    if BATCH_SIZE < 1:
        errors.append(f"BATCH_SIZE must be at least 1: {BATCH_SIZE}")

    if MAX_RETRIES < 0:
        errors.append(f"MAX_RETRIES must not be negative: {MAX_RETRIES}")

    if STUCK_THRESHOLD_MINUTES < 1:
        errors.append(f"STUCK_THRESHOLD_MINUTES must be at least 1: {STUCK_THRESHOLD_MINUTES}")

    if PROCESS_AFTER:
        try:
            day, month, year = PROCESS_AFTER.split(".")
            int(day), int(month), int(year)
        except ValueError:
            errors.append(f"PROCESS_AFTER must use DD.MM.YYYY: {PROCESS_AFTER}")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))

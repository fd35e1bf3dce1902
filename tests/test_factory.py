"""Tests for backend selection and configuration validation."""
import sqlite3

import pytest

from tmc_queue import settings
from tmc_queue.queue.factory import open_queue
from tmc_queue.queue.postgres_queue import PostgresQueue
from tmc_queue.queue.sqlite_queue import SqliteQueue


def test_sqlite_file_url(tmp_path):
    path = tmp_path / "data" / "queue.db"
    store = open_queue(f"sqlite:///{path}")
    try:
        assert isinstance(store, SqliteQueue)
        assert store.path == str(path)
        store.ensure_schema()
        assert path.exists()
    finally:
        store.close()


@pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
def test_sqlite_memory_url(url):
    store = open_queue(url)
    try:
        assert store.path == ":memory:"
        store.ensure_schema()
        assert store.dequeue("w1", 1) == []
    finally:
        store.close()


@pytest.mark.parametrize("url", ["postgresql://tmc@localhost/tmc", "postgres://tmc@localhost/tmc"])
def test_postgres_url_connects_lazily(url):
    store = open_queue(url)
    assert isinstance(store, PostgresQueue)
    assert store.db.database_url == url
    assert store.db.schema == "teamworkmissiveconnector"


def test_unsupported_scheme():
    with pytest.raises(ValueError, match="Unsupported"):
        open_queue("mysql://localhost/queue")


def test_missing_url(monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", None)
    with pytest.raises(ValueError):
        open_queue()


class TestValidateConfig:

    def test_valid(self, monkeypatch):
        monkeypatch.setattr(settings, "DATABASE_URL", "sqlite:///queue.db")
        monkeypatch.setattr(settings, "PROCESS_AFTER", "01.01.2026")
        settings.validate_config()

    def test_collects_all_errors(self, monkeypatch):
        monkeypatch.setattr(settings, "DATABASE_URL", None)
        monkeypatch.setattr(settings, "BATCH_SIZE", 0)
        monkeypatch.setattr(settings, "PROCESS_AFTER", "yesterday")

        with pytest.raises(ValueError) as exc_info:
            settings.validate_config()

        message = str(exc_info.value)
        assert "DATABASE_URL is required" in message
        assert "BATCH_SIZE" in message
        assert "PROCESS_AFTER" in message

    def test_rejects_unknown_database(self, monkeypatch):
        monkeypatch.setattr(settings, "DATABASE_URL", "mongodb://localhost")
        with pytest.raises(ValueError, match="postgresql://"):
            settings.validate_config()

    @pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
    def test_rejects_in_memory_sqlite(self, monkeypatch, url):
        monkeypatch.setattr(settings, "DATABASE_URL", url)
        with pytest.raises(ValueError, match="in-memory"):
            settings.validate_config()

    def test_in_memory_stores_do_not_share_tables(self):
        first = open_queue("sqlite://")
        first.ensure_schema()
        second = open_queue("sqlite://")
        try:
            with pytest.raises(sqlite3.OperationalError, match="no such table"):
                second.dequeue("w1", 5)
        finally:
            first.close()
            second.close()

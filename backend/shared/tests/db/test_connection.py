"""Tests for Database connection and schema."""

from __future__ import annotations

import sqlite3
import sys
from typing import TYPE_CHECKING

import pytest

from shared.db.connection import Database

if TYPE_CHECKING:
    from pathlib import Path


class TestConnect:
    def test_creates_schema_and_connects(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "test.db")
        db.connect()

        tables = db.connection.execute(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name",
        ).fetchall()
        table_names = {t[0] for t in tables}
        assert {"pools", "settlements", "winners", "audit_events"} <= table_names
        db.close()

    def test_reconnect_after_close(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "test.db")
        db.connect()
        db.close()
        db.connect()
        assert db.connection.execute("SELECT 1").fetchone() == (1,)
        db.close()

    def test_connection_raises_when_disconnected(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "test.db")
        with pytest.raises(RuntimeError, match="not connected"):
            _ = db.connection

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "nested" / "dir" / "test.db")
        db.connect()
        assert (tmp_path / "nested" / "dir" / "test.db").exists()
        db.close()

    def test_wal_and_foreign_keys_enabled(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "test.db")
        db.connect()
        assert db.connection.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        assert db.connection.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        db.close()

    def test_schema_is_idempotent(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "test.db")
        db.connect()
        db.close()
        db.connect()
        db.close()

    def test_settlement_key_is_unique(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "test.db")
        db.connect()
        conn = db.connection
        conn.execute("INSERT INTO pools (id, data) VALUES ('p1', '{}')")
        row = ("p1", "Q1", 7, 3, "2025-09-07T20:00:00+00:00")
        conn.execute("INSERT INTO settlements VALUES (?, ?, ?, ?, ?)", row)
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("INSERT INTO settlements VALUES (?, ?, ?, ?, ?)", row)
        conn.rollback()
        db.close()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_db_file_permissions(self, tmp_path: Path) -> None:
        db_path = tmp_path / "test.db"
        db = Database(db_path)
        db.connect()
        assert db_path.stat().st_mode & 0o777 == 0o600
        db.close()

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies messaging migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conv_id TEXT PRIMARY KEY,
                user_a TEXT NOT NULL,
                user_b TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                last_message_id TEXT,
                last_content TEXT,
                last_sender_id TEXT,
                last_ts_ms INTEGER,
                last_kind TEXT
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS conversations_user_a ON conversations (user_a)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS conversations_user_b ON conversations (user_b)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT PRIMARY KEY,
                conv_id TEXT NOT NULL REFERENCES conversations (conv_id),
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                status_rank INTEGER NOT NULL,
                attachment_json TEXT,
                reply_json TEXT,
                reply_to_id TEXT,
                edited_at_ms INTEGER,
                deleted_at_ms INTEGER,
                is_crisis INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_conv_order ON messages (conv_id, created_at_ms, message_id)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_recipient_status ON messages (conv_id, receiver_id, status_rank)"
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS messages_reply_to ON messages (reply_to_id)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS reactions (
                message_id TEXT NOT NULL REFERENCES messages (message_id),
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                PRIMARY KEY (message_id, user_id)
            )
            """
        )

from __future__ import annotations

import json
import sqlite3
from typing import List, Tuple

from .models import (
    Attachment,
    Conversation,
    LastMessage,
    Message,
    MessageKind,
    MessageStatus,
    ReplyRef,
)
from .sqlite_backend import SQLiteBackend

_STATUSES = list(MessageStatus)

_MESSAGE_COLUMNS = (
    "message_id, conv_id, sender_id, receiver_id, kind, content, created_at_ms, status_rank, "
    "attachment_json, reply_json, edited_at_ms, deleted_at_ms, is_crisis"
)

_CONVERSATION_COLUMNS = (
    "conv_id, user_a, user_b, created_at_ms, last_message_id, last_content, last_sender_id, last_ts_ms, last_kind"
)


def _row_to_message(row: sqlite3.Row) -> Message:
    attachment = Attachment.from_dict(json.loads(row["attachment_json"])) if row["attachment_json"] else None
    reply_to = ReplyRef.from_dict(json.loads(row["reply_json"])) if row["reply_json"] else None
    return Message(
        message_id=row["message_id"],
        conv_id=row["conv_id"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        kind=MessageKind(row["kind"]),
        content=row["content"],
        created_at_ms=row["created_at_ms"],
        status=_STATUSES[row["status_rank"]],
        attachment=attachment,
        reply_to=reply_to,
        edited_at_ms=row["edited_at_ms"],
        deleted_at_ms=row["deleted_at_ms"],
        is_crisis=bool(row["is_crisis"]),
    )


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    last_message = None
    if row["last_message_id"] is not None:
        last_message = LastMessage(
            message_id=row["last_message_id"],
            content=row["last_content"],
            sender_id=row["last_sender_id"],
            timestamp_ms=row["last_ts_ms"],
            kind=MessageKind(row["last_kind"]),
        )
    return Conversation(
        conv_id=row["conv_id"],
        participant_ids=(row["user_a"], row["user_b"]),
        created_at_ms=row["created_at_ms"],
        last_message=last_message,
    )


class SQLiteMessageLog:
    """Durable message log backed by SQLite.

    Message rows and the conversation preview row are written inside one
    ``BEGIN IMMEDIATE`` transaction.
    """

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def insert(self, message: Message) -> Tuple[Message, bool]:
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id=?",
                    (message.message_id,),
                ).fetchone()
                if row:
                    conn.commit()
                    return _row_to_message(row), False

                user_a, user_b = sorted((message.sender_id, message.receiver_id))
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO conversations (conv_id, user_a, user_b, created_at_ms)
                    VALUES (?, ?, ?, ?)
                    """,
                    (message.conv_id, user_a, user_b, message.created_at_ms),
                )
                cursor.execute(
                    f"""
                    INSERT INTO messages ({_MESSAGE_COLUMNS}, reply_to_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.message_id,
                        message.conv_id,
                        message.sender_id,
                        message.receiver_id,
                        message.kind.value,
                        message.content,
                        message.created_at_ms,
                        message.status.rank,
                        json.dumps(message.attachment.to_dict()) if message.attachment else None,
                        json.dumps(message.reply_to.to_dict()) if message.reply_to else None,
                        message.edited_at_ms,
                        message.deleted_at_ms,
                        int(message.is_crisis),
                        message.reply_to.message_id if message.reply_to else None,
                    ),
                )
                self._refresh_preview(cursor, message.conv_id)
                conn.commit()
                return message, True
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def update(self, message: Message) -> Message:
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                cursor.execute(
                    """
                    UPDATE messages
                    SET content=?, attachment_json=?, edited_at_ms=?, deleted_at_ms=?, is_crisis=?
                    WHERE message_id=?
                    """,
                    (
                        message.content,
                        json.dumps(message.attachment.to_dict()) if message.attachment else None,
                        message.edited_at_ms,
                        message.deleted_at_ms,
                        int(message.is_crisis),
                        message.message_id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise KeyError(message.message_id)
                self._refresh_preview(cursor, message.conv_id)
                row = cursor.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id=?",
                    (message.message_id,),
                ).fetchone()
                conn.commit()
                return _row_to_message(row)
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def get(self, message_id: str) -> Message | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id=?",
                (message_id,),
            ).fetchone()
        return _row_to_message(row) if row else None

    def list_conversation(self, conv_id: str) -> List[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conv_id=? ORDER BY created_at_ms ASC, message_id ASC",
                (conv_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def advance_statuses(self, conv_id: str, recipient_id: str, target: MessageStatus) -> List[str]:
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                rows = cursor.execute(
                    """
                    SELECT message_id FROM messages
                    WHERE conv_id=? AND receiver_id=? AND status_rank<?
                    ORDER BY created_at_ms ASC, message_id ASC
                    """,
                    (conv_id, recipient_id, target.rank),
                ).fetchall()
                changed = [row[0] for row in rows]
                cursor.execute(
                    "UPDATE messages SET status_rank=? WHERE conv_id=? AND receiver_id=? AND status_rank<?",
                    (target.rank, conv_id, recipient_id, target.rank),
                )
                conn.commit()
                return changed
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def advance_status(self, message_id: str, target: MessageStatus) -> bool:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                "UPDATE messages SET status_rank=? WHERE message_id=? AND status_rank<?",
                (target.rank, message_id, target.rank),
            )
            if cursor.rowcount:
                return True
            exists = self._backend.connection.execute(
                "SELECT 1 FROM messages WHERE message_id=?", (message_id,)
            ).fetchone()
        if exists is None:
            raise KeyError(message_id)
        return False

    def get_conversation(self, conv_id: str) -> Conversation | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE conv_id=?",
                (conv_id,),
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def conversations_for(self, user_id: str) -> List[Conversation]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE user_a=? OR user_b=?
                ORDER BY COALESCE(last_ts_ms, created_at_ms) DESC, conv_id ASC
                """,
                (user_id, user_id),
            ).fetchall()
        return [_row_to_conversation(row) for row in rows]

    def unread_count(self, conv_id: str, user_id: str) -> int:
        with self._backend.lock:
            row = self._backend.connection.execute(
                """
                SELECT COUNT(*) FROM messages
                WHERE conv_id=? AND receiver_id=? AND status_rank<? AND deleted_at_ms IS NULL
                """,
                (conv_id, user_id, MessageStatus.READ.rank),
            ).fetchone()
        return int(row[0])

    def search(self, conv_id: str, term: str) -> List[Message]:
        # LIKE is ASCII case-insensitive only; filter in Python to match the in-memory log.
        needle = term.lower()
        return [
            message
            for message in self.list_conversation(conv_id)
            if not message.is_tombstone and needle in message.content.lower()
        ]

    def replies(self, message_id: str) -> List[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE reply_to_id=?
                ORDER BY created_at_ms ASC, message_id ASC
                """,
                (message_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    @staticmethod
    def _refresh_preview(cursor: sqlite3.Cursor, conv_id: str) -> None:
        latest = cursor.execute(
            """
            SELECT message_id, content, sender_id, created_at_ms, kind FROM messages
            WHERE conv_id=?
            ORDER BY created_at_ms DESC, message_id DESC
            LIMIT 1
            """,
            (conv_id,),
        ).fetchone()
        if latest is None:
            return
        cursor.execute(
            """
            UPDATE conversations
            SET last_message_id=?, last_content=?, last_sender_id=?, last_ts_ms=?, last_kind=?
            WHERE conv_id=?
            """,
            (latest[0], latest[1], latest[2], latest[3], latest[4], conv_id),
        )

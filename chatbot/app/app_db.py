from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from . import config
from .logging_utils import get_logger

log = get_logger(__name__)


def _utc_iso(value: datetime) -> str:
    # created_at columns are compared as text, so keep them fixed-width UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _utc_now() -> str:
    return _utc_iso(datetime.now(timezone.utc))


def _connect(db_path: Path | None = None) -> sqlite3.Connection:
    db_path = Path(db_path or config.APP_DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db() -> None:
    conn = _connect()
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
              id TEXT PRIMARY KEY,
              email TEXT UNIQUE,
              password_hash TEXT,
              type TEXT NOT NULL DEFAULT 'regular' CHECK(type IN ('guest','regular')),
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS auth_sessions (
              token_hash TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              created_at TEXT NOT NULL,
              expires_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS chats (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              title TEXT NOT NULL,
              visibility TEXT NOT NULL DEFAULT 'private' CHECK(visibility IN ('private','public')),
              created_at TEXT NOT NULL,
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS messages (
              id TEXT PRIMARY KEY,
              chat_id TEXT NOT NULL,
              role TEXT NOT NULL CHECK(role IN ('system','user','assistant')),
              content TEXT NOT NULL,
              created_at TEXT NOT NULL,
              FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS votes (
              chat_id TEXT NOT NULL,
              message_id TEXT NOT NULL,
              is_upvoted INTEGER NOT NULL,
              PRIMARY KEY(chat_id, message_id),
              FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE,
              FOREIGN KEY(message_id) REFERENCES messages(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS documents (
              id TEXT NOT NULL,
              created_at TEXT NOT NULL,
              title TEXT NOT NULL,
              content TEXT,
              kind TEXT NOT NULL DEFAULT 'text' CHECK(kind IN ('text','code','sheet','image')),
              user_id TEXT NOT NULL,
              PRIMARY KEY(id, created_at),
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_chats_user_created
              ON chats(user_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_messages_chat_created
              ON messages(chat_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_auth_sessions_user
              ON auth_sessions(user_id);
            """
        )
        conn.commit()
    finally:
        conn.close()


def ping() -> bool:
    conn = _connect()
    try:
        conn.execute("SELECT 1").fetchone()
        return True
    finally:
        conn.close()


# -- users ---------------------------------------------------------------


def create_user(*, email: str | None, password_hash: str | None = None, user_type: str = "regular") -> dict[str, Any]:
    user_id = str(uuid.uuid4())
    created_at = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            "INSERT INTO users(id, email, password_hash, type, created_at) VALUES (?,?,?,?,?)",
            (user_id, email, password_hash, user_type, created_at),
        )
        conn.commit()
    finally:
        conn.close()
    return {"id": user_id, "email": email, "type": user_type, "created_at": created_at}


def get_user(user_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT id, email, password_hash, type, created_at FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_user_by_email(email: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT id, email, password_hash, type, created_at FROM users WHERE lower(email) = lower(?)",
            (email,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


# -- auth sessions -------------------------------------------------------


def create_auth_session(*, token_hash: str, user_id: str, expires_at: str) -> None:
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO auth_sessions(token_hash, user_id, created_at, expires_at, updated_at)
            VALUES (?,?,?,?,?)
            """,
            (token_hash, user_id, now, expires_at, now),
        )
        conn.commit()
    finally:
        conn.close()


def get_auth_session(token_hash: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT s.token_hash, s.user_id, s.created_at, s.expires_at, s.updated_at,
                   u.email, u.type
            FROM auth_sessions s
            JOIN users u ON u.id = s.user_id
            WHERE s.token_hash = ?
            """,
            (token_hash,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def refresh_auth_session(token_hash: str, *, expires_at: str) -> None:
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            "UPDATE auth_sessions SET expires_at = ?, updated_at = ? WHERE token_hash = ?",
            (expires_at, now, token_hash),
        )
        conn.commit()
    finally:
        conn.close()


def delete_auth_session(token_hash: str) -> None:
    conn = _connect()
    try:
        conn.execute("DELETE FROM auth_sessions WHERE token_hash = ?", (token_hash,))
        conn.commit()
    finally:
        conn.close()


def delete_expired_auth_sessions(now_iso: str) -> int:
    conn = _connect()
    try:
        cur = conn.execute("DELETE FROM auth_sessions WHERE expires_at < ?", (now_iso,))
        conn.commit()
        return int(cur.rowcount or 0)
    finally:
        conn.close()


# -- chats ---------------------------------------------------------------


def save_chat(*, chat_id: str, user_id: str, title: str, visibility: str = "private") -> dict[str, Any]:
    created_at = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            "INSERT INTO chats(id, user_id, title, visibility, created_at) VALUES (?,?,?,?,?)",
            (chat_id, user_id, title, visibility, created_at),
        )
        conn.commit()
    finally:
        conn.close()
    return {"id": chat_id, "user_id": user_id, "title": title, "visibility": visibility, "created_at": created_at}


def get_chat_by_id(chat_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT id, user_id, title, visibility, created_at FROM chats WHERE id = ?",
            (chat_id,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def delete_chat_by_id(chat_id: str) -> dict[str, Any] | None:
    chat = get_chat_by_id(chat_id)
    if not chat:
        return None
    conn = _connect()
    try:
        # votes and messages go with the chat via ON DELETE CASCADE
        conn.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
        conn.commit()
    finally:
        conn.close()
    return chat


def get_chats_by_user_id(
    user_id: str,
    *,
    limit: int = 20,
    starting_after: str | None = None,
    ending_before: str | None = None,
) -> dict[str, Any]:
    """Cursor-paginated chats for a user, newest first.

    ``starting_after`` returns chats newer than the cursor chat,
    ``ending_before`` returns chats older than it. Raises KeyError when the
    cursor chat does not exist.
    """
    if starting_after and ending_before:
        raise ValueError("Only one of starting_after or ending_before may be provided")

    extended_limit = int(limit) + 1
    sql = "SELECT id, user_id, title, visibility, created_at FROM chats WHERE user_id = ?"
    params: list[Any] = [user_id]

    cursor_id = starting_after or ending_before
    if cursor_id:
        selected = get_chat_by_id(cursor_id)
        if not selected:
            raise KeyError(f"Chat with id {cursor_id} not found")
        if starting_after:
            sql += " AND created_at > ?"
        else:
            sql += " AND created_at < ?"
        params.append(selected["created_at"])

    sql += " ORDER BY created_at DESC LIMIT ?"
    params.append(extended_limit)

    conn = _connect()
    try:
        rows = conn.execute(sql, tuple(params)).fetchall()
    finally:
        conn.close()

    chats = [dict(r) for r in rows]
    has_more = len(chats) > limit
    return {"chats": chats[:limit] if has_more else chats, "has_more": has_more}


def update_chat_visibility(chat_id: str, visibility: str) -> None:
    conn = _connect()
    try:
        conn.execute("UPDATE chats SET visibility = ? WHERE id = ?", (visibility, chat_id))
        conn.commit()
    finally:
        conn.close()


# -- messages ------------------------------------------------------------


def save_message(*, chat_id: str, role: str, content: str, message_id: str | None = None) -> dict[str, Any]:
    message_id = message_id or str(uuid.uuid4())
    created_at = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            "INSERT INTO messages(id, chat_id, role, content, created_at) VALUES (?,?,?,?,?)",
            (message_id, chat_id, role, content, created_at),
        )
        conn.commit()
    finally:
        conn.close()
    return {"id": message_id, "chat_id": chat_id, "role": role, "content": content, "created_at": created_at}


def get_messages_by_chat_id(chat_id: str, limit: int = 500) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            """
            SELECT id, chat_id, role, content, created_at
            FROM messages
            WHERE chat_id = ?
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (chat_id, limit),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def get_message_count_by_user_id(user_id: str, *, difference_in_hours: int = 24) -> int:
    cutoff = _utc_iso(datetime.now(timezone.utc) - timedelta(hours=difference_in_hours))
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT COUNT(m.id) AS n
            FROM messages m
            JOIN chats c ON c.id = m.chat_id
            WHERE c.user_id = ? AND m.role = 'user' AND m.created_at >= ?
            """,
            (user_id, cutoff),
        ).fetchone()
        return int(row["n"] or 0) if row else 0
    finally:
        conn.close()


# -- votes ---------------------------------------------------------------


def vote_message(*, chat_id: str, message_id: str, vote_type: str) -> None:
    is_upvoted = 1 if vote_type == "up" else 0
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO votes(chat_id, message_id, is_upvoted) VALUES (?,?,?)
            ON CONFLICT(chat_id, message_id) DO UPDATE SET is_upvoted = excluded.is_upvoted
            """,
            (chat_id, message_id, is_upvoted),
        )
        conn.commit()
    finally:
        conn.close()


def get_votes_by_chat_id(chat_id: str) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            "SELECT chat_id, message_id, is_upvoted FROM votes WHERE chat_id = ?",
            (chat_id,),
        ).fetchall()
    finally:
        conn.close()
    return [{**dict(r), "is_upvoted": bool(r["is_upvoted"])} for r in rows]


# -- documents -----------------------------------------------------------


def save_document(*, document_id: str, title: str, content: str | None, kind: str, user_id: str) -> dict[str, Any]:
    created_at = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            "INSERT INTO documents(id, created_at, title, content, kind, user_id) VALUES (?,?,?,?,?,?)",
            (document_id, created_at, title, content, kind, user_id),
        )
        conn.commit()
    finally:
        conn.close()
    return {
        "id": document_id,
        "created_at": created_at,
        "title": title,
        "content": content,
        "kind": kind,
        "user_id": user_id,
    }


def get_documents_by_id(document_id: str) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            """
            SELECT id, created_at, title, content, kind, user_id
            FROM documents
            WHERE id = ?
            ORDER BY created_at ASC
            """,
            (document_id,),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def get_document_by_id(document_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT id, created_at, title, content, kind, user_id
            FROM documents
            WHERE id = ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (document_id,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def delete_documents_by_id_after_timestamp(document_id: str, timestamp: datetime | str) -> list[dict[str, Any]]:
    if isinstance(timestamp, str):
        timestamp = datetime.fromisoformat(timestamp)
    timestamp = _utc_iso(timestamp)
    conn = _connect()
    try:
        rows = conn.execute(
            """
            SELECT id, created_at, title, content, kind, user_id
            FROM documents
            WHERE id = ? AND created_at > ?
            """,
            (document_id, timestamp),
        ).fetchall()
        conn.execute("DELETE FROM documents WHERE id = ? AND created_at > ?", (document_id, timestamp))
        conn.commit()
    finally:
        conn.close()
    deleted = [dict(r) for r in rows]
    if deleted:
        log.info("Deleted %d document versions of %s after %s", len(deleted), document_id, timestamp)
    return deleted

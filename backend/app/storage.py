"""SQLite persistence helpers for imported chats."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import ConflictError, TransactionError
from .import_contract import ChatCandidate

logger = logging.getLogger(__name__)

MESSAGE_BATCH_SIZE = 500

_MESSAGE_COLUMNS = "chat_id, author, content, timestamp, type, media_path, checksum"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_DB_PATH_OVERRIDE: Optional[Path] = None


def set_db_path_override(path: Optional[str | Path]) -> None:
    global _DB_PATH_OVERRIDE
    if path:
        _DB_PATH_OVERRIDE = Path(path)
    else:
        _DB_PATH_OVERRIDE = None


def _resolve_db_path() -> Path:
    if _DB_PATH_OVERRIDE is not None:
        return _DB_PATH_OVERRIDE

    env_path = os.getenv("CHAT_IMPORT_DB_PATH")
    if env_path:
        return Path(env_path)

    base_dir = Path(__file__).resolve().parents[1]
    data_dir = base_dir / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "chat_import.db"


def _dict_from_row(row: sqlite3.Row) -> Dict:
    return {k: row[k] for k in row.keys()}


def _coerce_json_payload(value: Optional[str]) -> Optional[Any]:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    return parsed


@contextmanager
def get_connection():
    path = _resolve_db_path()
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """One all-or-nothing write transaction.

    Any exception rolls everything back; raw ``sqlite3.Error`` is re-raised as
    ``TransactionError``.
    """

    with get_connection() as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.exception("Storage transaction failed; rolled back")
            raise TransactionError(f"storage failure: {exc}") from exc
        except BaseException:
            conn.rollback()
            raise


def ensure_schema() -> None:
    with get_connection() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chats (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_chats_owner
                ON chats(owner_id);

            CREATE TABLE IF NOT EXISTS chat_participants (
                chat_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                PRIMARY KEY (chat_id, name),
                FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id INTEGER NOT NULL,
                author TEXT,
                content TEXT NOT NULL,
                timestamp TEXT,
                type TEXT NOT NULL,
                media_path TEXT,
                checksum TEXT NOT NULL,
                FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_chat_checksum
                ON messages(chat_id, checksum);

            CREATE INDEX IF NOT EXISTS idx_messages_chat_timestamp
                ON messages(chat_id, timestamp);

            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                owner_id TEXT,
                type TEXT NOT NULL,
                message TEXT NOT NULL,
                created_at TEXT NOT NULL,
                level TEXT NOT NULL,
                payload TEXT
            );
            """
        )
        conn.commit()


def list_events(owner_id: Optional[str] = None, limit: int = 25) -> List[Dict]:
    normalized_limit = max(1, min(limit, 100))
    with get_connection() as conn:
        if owner_id is None:
            rows = conn.execute(
                "SELECT * FROM events ORDER BY datetime(created_at) DESC, rowid DESC LIMIT ?",
                (normalized_limit,),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM events WHERE owner_id = ? ORDER BY datetime(created_at) DESC, rowid DESC LIMIT ?",
                (owner_id, normalized_limit),
            ).fetchall()
        out = []
        for row in rows:
            payload = _dict_from_row(row)
            payload["payload"] = _coerce_json_payload(payload.get("payload"))
            out.append(payload)
        return out


def append_event(
    event_type: str,
    message: str,
    level: str = "info",
    payload: Optional[Dict[str, Any]] = None,
    owner_id: Optional[str] = None,
) -> Dict:
    event_id = f"evt-{uuid.uuid4().hex[:12]}"
    now = _now_iso()
    serialized_payload = json.dumps(payload) if payload is not None else None
    event_payload = {
        "id": event_id,
        "owner_id": owner_id,
        "type": event_type,
        "message": message,
        "created_at": now,
        "level": level,
        "payload": payload,
    }
    with get_connection() as conn:
        conn.execute(
            "INSERT INTO events(id, owner_id, type, message, created_at, level, payload) VALUES(?, ?, ?, ?, ?, ?, ?)",
            (event_id, owner_id, event_type, message, now, level, serialized_payload),
        )
        conn.commit()
    return event_payload


# --- chats, inside a caller-owned transaction ---


def _participants_by_chat(conn: sqlite3.Connection, owner_id: str) -> Dict[int, List[str]]:
    rows = conn.execute(
        """
        SELECT p.chat_id, p.name
        FROM chat_participants p
        JOIN chats c ON c.id = p.chat_id
        WHERE c.owner_id = ?
        ORDER BY p.name
        """,
        (owner_id,),
    ).fetchall()
    out: Dict[int, List[str]] = {}
    for row in rows:
        out.setdefault(row["chat_id"], []).append(row["name"])
    return out


def list_chat_candidates(conn: sqlite3.Connection, owner_id: str) -> List[ChatCandidate]:
    participants = _participants_by_chat(conn, owner_id)
    rows = conn.execute("SELECT id, name FROM chats WHERE owner_id = ? ORDER BY id", (owner_id,)).fetchall()
    return [
        ChatCandidate(id=row["id"], name=row["name"], participants=frozenset(participants.get(row["id"], ())))
        for row in rows
    ]


def get_owned_chat(conn: sqlite3.Connection, owner_id: str, chat_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM chats WHERE id = ? AND owner_id = ?", (chat_id, owner_id)).fetchone()
    return _dict_from_row(row) if row else None


def create_chat(conn: sqlite3.Connection, owner_id: str, name: str) -> int:
    now = _now_iso()
    cursor = conn.execute(
        "INSERT INTO chats(owner_id, name, created_at, updated_at) VALUES(?, ?, ?, ?)",
        (owner_id, name, now, now),
    )
    return int(cursor.lastrowid)


def rename_chat(conn: sqlite3.Connection, chat_id: int, name: str) -> None:
    conn.execute("UPDATE chats SET name = ?, updated_at = ? WHERE id = ?", (name, _now_iso(), chat_id))


def touch_chat(conn: sqlite3.Connection, chat_id: int) -> None:
    conn.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (_now_iso(), chat_id))


def add_participants(conn: sqlite3.Connection, chat_id: int, names: Sequence[str]) -> int:
    before = conn.total_changes
    conn.executemany(
        "INSERT OR IGNORE INTO chat_participants(chat_id, name) VALUES(?, ?)",
        [(chat_id, name) for name in sorted(set(names))],
    )
    return conn.total_changes - before


def list_participants(conn: sqlite3.Connection, chat_id: int) -> List[str]:
    rows = conn.execute("SELECT name FROM chat_participants WHERE chat_id = ? ORDER BY name", (chat_id,)).fetchall()
    return [row["name"] for row in rows]


def latest_message_timestamp(conn: sqlite3.Connection, chat_id: int) -> Optional[str]:
    row = conn.execute("SELECT MAX(timestamp) AS last_time FROM messages WHERE chat_id = ?", (chat_id,)).fetchone()
    return row["last_time"] if row else None


def message_counts(conn: sqlite3.Connection, chat_ids: Sequence[int]) -> Dict[int, int]:
    counts = {chat_id: 0 for chat_id in chat_ids}
    if not chat_ids:
        return counts
    placeholders = ", ".join("?" for _ in chat_ids)
    rows = conn.execute(
        f"SELECT chat_id, COUNT(*) AS total FROM messages WHERE chat_id IN ({placeholders}) GROUP BY chat_id",
        tuple(chat_ids),
    ).fetchall()
    for row in rows:
        counts[row["chat_id"]] = int(row["total"])
    return counts


def _message_values(chat_id: int, message: Dict[str, Any]) -> Tuple[Any, ...]:
    return (
        chat_id,
        message.get("author"),
        message.get("content") or "",
        message.get("timestamp"),
        message.get("type") or "text",
        message.get("media_path"),
        message["checksum"],
    )


def _insert_message_row(conn: sqlite3.Connection, values: Tuple[Any, ...]) -> None:
    chat_id, checksum = values[0], values[-1]
    if conn.execute("SELECT 1 FROM messages WHERE chat_id = ? AND checksum = ?", (chat_id, checksum)).fetchone():
        raise ConflictError(f"message {checksum[:12]} already stored in chat {chat_id}")
    try:
        conn.execute(f"INSERT INTO messages({_MESSAGE_COLUMNS}) VALUES(?, ?, ?, ?, ?, ?, ?)", values)
    except sqlite3.IntegrityError as exc:
        if "UNIQUE" in str(exc).upper():
            raise ConflictError(str(exc)) from exc
        raise


def insert_messages(
    conn: sqlite3.Connection,
    chat_id: int,
    messages: Sequence[Dict[str, Any]],
    batch_size: int = MESSAGE_BATCH_SIZE,
) -> Tuple[int, int]:
    """Insert messages idempotently; returns ``(inserted, skipped)``.

    Each chunk goes in with ``INSERT OR IGNORE``. A chunk that still raises an
    integrity error is rolled back to its savepoint and replayed row by row:
    rows already stored count as skipped, any other integrity error
    propagates and fails the caller's transaction.
    """

    inserted = 0
    skipped = 0
    for start in range(0, len(messages), batch_size):
        chunk = [_message_values(chat_id, message) for message in messages[start : start + batch_size]]
        conn.execute("SAVEPOINT message_batch")
        before = conn.total_changes
        try:
            conn.executemany(f"INSERT OR IGNORE INTO messages({_MESSAGE_COLUMNS}) VALUES(?, ?, ?, ?, ?, ?, ?)", chunk)
        except sqlite3.IntegrityError as exc:
            conn.execute("ROLLBACK TO message_batch")
            logger.warning("Batch insert into chat %s failed (%s); retrying row by row", chat_id, exc)
            for values in chunk:
                try:
                    _insert_message_row(conn, values)
                except ConflictError:
                    skipped += 1
                    continue
                inserted += 1
        else:
            chunk_inserted = conn.total_changes - before
            inserted += chunk_inserted
            skipped += len(chunk) - chunk_inserted
        conn.execute("RELEASE message_batch")
    return inserted, skipped


def copy_messages(conn: sqlite3.Connection, source_chat_id: int, target_chat_id: int) -> int:
    before = conn.total_changes
    conn.execute(
        f"""
        INSERT OR IGNORE INTO messages({_MESSAGE_COLUMNS})
        SELECT ?, author, content, timestamp, type, media_path, checksum
        FROM messages
        WHERE chat_id = ?
        ORDER BY id
        """,
        (target_chat_id, source_chat_id),
    )
    return conn.total_changes - before


def relink_media(conn: sqlite3.Connection, chat_id: int, old_path: str, new_path: str) -> int:
    cursor = conn.execute(
        "UPDATE messages SET media_path = ? WHERE chat_id = ? AND media_path = ?",
        (new_path, chat_id, old_path),
    )
    return cursor.rowcount


def owned_chat_ids(conn: sqlite3.Connection, owner_id: str, chat_ids: Sequence[int]) -> List[int]:
    if not chat_ids:
        return []
    placeholders = ", ".join("?" for _ in chat_ids)
    rows = conn.execute(
        f"SELECT id FROM chats WHERE owner_id = ? AND id IN ({placeholders})",
        (owner_id, *chat_ids),
    ).fetchall()
    return [row["id"] for row in rows]


def delete_chat_rows(conn: sqlite3.Connection, chat_ids: Sequence[int]) -> int:
    """Delete chats; participants and messages go with them by FK cascade."""

    if not chat_ids:
        return 0
    placeholders = ", ".join("?" for _ in chat_ids)
    cursor = conn.execute(f"DELETE FROM chats WHERE id IN ({placeholders})", tuple(chat_ids))
    return cursor.rowcount


# --- read-only views for the API ---


def list_chats(owner_id: str) -> List[Dict[str, Any]]:
    with get_connection() as conn:
        participants = _participants_by_chat(conn, owner_id)
        rows = conn.execute(
            """
            SELECT c.id, c.name, c.created_at, c.updated_at, COUNT(m.id) AS message_count
            FROM chats c
            LEFT JOIN messages m ON m.chat_id = c.id
            WHERE c.owner_id = ?
            GROUP BY c.id
            ORDER BY datetime(c.created_at) DESC, c.id DESC
            """,
            (owner_id,),
        ).fetchall()
        out: List[Dict[str, Any]] = []
        for row in rows:
            payload = _dict_from_row(row)
            payload["message_count"] = int(payload["message_count"])
            payload["participants"] = participants.get(row["id"], [])
            out.append(payload)
        return out


def chat_detail(conn: sqlite3.Connection, owner_id: str, chat_id: int) -> Optional[Dict[str, Any]]:
    chat = get_owned_chat(conn, owner_id, chat_id)
    if not chat:
        return None
    chat["participants"] = list_participants(conn, chat_id)
    chat["message_count"] = message_counts(conn, [chat_id])[chat_id]
    return chat


def get_chat(
    owner_id: str,
    chat_id: int,
    limit: Optional[int] = None,
    offset: int = 0,
) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        chat = chat_detail(conn, owner_id, chat_id)
        if not chat:
            return None
        if limit is not None:
            rows = conn.execute(
                """
                SELECT id, author, content, timestamp, type, media_path
                FROM messages
                WHERE chat_id = ?
                ORDER BY timestamp IS NULL, timestamp, id
                LIMIT ? OFFSET ?
                """,
                (chat_id, max(1, min(limit, 1000)), max(0, offset)),
            ).fetchall()
            chat["messages"] = [_dict_from_row(row) for row in rows]
        return chat

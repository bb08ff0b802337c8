"""Tests for transaction handling and idempotent message inserts."""

from __future__ import annotations

import sqlite3
import tempfile
import unittest
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import patch

from backend.app import storage
from backend.app.errors import TransactionError
from backend.app.import_contract import message_checksum


def _message(author: str, minute: int, content: str) -> dict:
    timestamp = f"2024-03-12T21:{minute:02d}:00+00:00"
    return {
        "author": author,
        "content": content,
        "timestamp": timestamp,
        "type": "text",
        "checksum": message_checksum(author, timestamp, content),
    }


class _ConnectionProxy:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def __getattr__(self, name):
        return getattr(self._conn, name)


class _BatchRejectingConnection(_ConnectionProxy):
    def executemany(self, sql, rows):
        raise sqlite3.IntegrityError("UNIQUE constraint failed: messages.chat_id, messages.checksum")


class _CommitFailingConnection(_ConnectionProxy):
    def commit(self) -> None:
        raise sqlite3.OperationalError("disk I/O error")


class StorageTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        storage.set_db_path_override(Path(self._tmp.name) / "chat_import.db")
        storage.ensure_schema()

    def tearDown(self) -> None:
        storage.set_db_path_override(None)
        self._tmp.cleanup()

    def _stored(self, chat_id: int) -> int:
        with storage.get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM messages WHERE chat_id = ?", (chat_id,)).fetchone()[0]


class TestInsertMessages(StorageTestCase):
    def test_duplicates_are_ignored_within_and_across_batches(self) -> None:
        with storage.transaction() as conn:
            chat_id = storage.create_chat(conn, "alice", "Family")
            first = storage.insert_messages(conn, chat_id, [_message("Alice", 1, "hi"), _message("Alice", 1, "hi")])
            second = storage.insert_messages(
                conn, chat_id, [_message("Alice", 1, "hi"), _message("Bob", 2, "hey"), _message("Bob", 3, "ok")], batch_size=2
            )

        self.assertEqual(first, (1, 1))
        self.assertEqual(second, (2, 1))
        self.assertEqual(self._stored(chat_id), 3)

    def test_rejected_batch_is_replayed_row_by_row(self) -> None:
        with storage.transaction() as conn:
            chat_id = storage.create_chat(conn, "alice", "Family")
            storage.insert_messages(conn, chat_id, [_message("Alice", 1, "hi")])

            with self.assertLogs("backend.app.storage", level="WARNING"):
                result = storage.insert_messages(
                    _BatchRejectingConnection(conn),
                    chat_id,
                    [_message("Alice", 1, "hi"), _message("Bob", 2, "hey"), _message("Bob", 3, "ok")],
                )

        self.assertEqual(result, (2, 1))
        self.assertEqual(self._stored(chat_id), 3)

    def test_row_replay_propagates_other_integrity_errors(self) -> None:
        with self.assertRaises(TransactionError):
            with storage.transaction() as conn:
                chat_id = storage.create_chat(conn, "alice", "Family")
                storage.insert_messages(_BatchRejectingConnection(conn), chat_id + 100, [_message("Alice", 1, "hi")])

        self.assertEqual(storage.list_chats("alice"), [])


class TestTransaction(StorageTestCase):
    def test_commit_failure_is_wrapped_and_rolled_back(self) -> None:
        real_connection = storage.get_connection

        @contextmanager
        def _failing_commit():
            with real_connection() as conn:
                yield _CommitFailingConnection(conn)

        with patch.object(storage, "get_connection", _failing_commit):
            with self.assertRaises(TransactionError):
                with storage.transaction() as conn:
                    storage.create_chat(conn, "alice", "Family")

        self.assertEqual(storage.list_chats("alice"), [])

    def test_domain_errors_roll_back_without_wrapping(self) -> None:
        with self.assertRaises(KeyError):
            with storage.transaction() as conn:
                storage.create_chat(conn, "alice", "Family")
                raise KeyError("boom")

        self.assertEqual(storage.list_chats("alice"), [])


if __name__ == "__main__":
    unittest.main()

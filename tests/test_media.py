"""Tests for media naming, lookup and deferred writes."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from backend.app.archive import InMemoryMedia, MediaHandle
from backend.app.media import (
    MediaPlan,
    apply_media_moves,
    chat_media_dir,
    plan_media_moves,
    public_path,
    remove_chat_media,
    resolve_media,
    safe_name,
)


class _BrokenMedia(MediaHandle):
    def read_bytes(self) -> bytes:
        raise OSError("gone")

    def copy_to(self, destination: Path) -> None:
        raise OSError("disk full")


class TestSafeName(unittest.TestCase):
    def test_unsafe_runs_are_replaced(self) -> None:
        self.assertEqual(safe_name("photo (1)*?.jpg"), "photo _1_.jpg")
        self.assertEqual(safe_name("../../etc/passwd"), "passwd")
        self.assertEqual(safe_name(".."), "file")
        self.assertEqual(safe_name(""), "file")
        self.assertEqual(len(safe_name("a" * 400 + ".jpg")), 180)

    def test_public_path(self) -> None:
        self.assertEqual(public_path("alice", 3, "IMG 1.jpg"), "/uploads/alice/3/IMG 1.jpg")


class TestResolveMedia(unittest.TestCase):
    def setUp(self) -> None:
        self.index = {
            "img-20240101-wa0001.jpg": InMemoryMedia("IMG-20240101-WA0001.jpg", "IMG-20240101-WA0001.jpg", b"1"),
            "00000012-photo-2024-03-01.jpg": InMemoryMedia(
                "00000012-PHOTO-2024-03-01.jpg", "media/00000012-PHOTO-2024-03-01.jpg", b"2"
            ),
            "voice note.opus": InMemoryMedia("Voice Note.opus", "Voice Note.opus", b"3"),
        }

    def test_exact_basename_is_case_insensitive(self) -> None:
        handle = resolve_media(self.index, "IMG-20240101-WA0001.JPG")
        self.assertEqual(handle.read_bytes(), b"1")

    def test_normalized_equality(self) -> None:
        handle = resolve_media(self.index, "voice_note.opus")
        self.assertEqual(handle.read_bytes(), b"3")

    def test_suffix_and_substring(self) -> None:
        self.assertEqual(resolve_media(self.index, "PHOTO-2024-03-01.jpg").read_bytes(), b"2")
        self.assertEqual(resolve_media(self.index, "WA0001").read_bytes(), b"1")

    def test_unresolved(self) -> None:
        self.assertIsNone(resolve_media(self.index, "missing.pdf"))
        self.assertIsNone(resolve_media(self.index, "***"))
        self.assertIsNone(resolve_media({}, "IMG-20240101-WA0001.jpg"))
        self.assertIsNone(resolve_media(self.index, None))


class TestMediaPlan(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_nothing_is_written_before_flush(self) -> None:
        plan = MediaPlan(self.root, "alice")
        reference = plan.assign(5, InMemoryMedia("a.jpg", "a.jpg", b"data"))
        plan.assign(5, InMemoryMedia("a.jpg", "a.jpg", b"data"))

        self.assertEqual(reference, "/uploads/alice/5/a.jpg")
        self.assertEqual(len(plan), 1)
        self.assertFalse((self.root / "alice" / "5" / "a.jpg").exists())

        result = plan.flush()
        self.assertEqual(result.written, ["/uploads/alice/5/a.jpg"])
        self.assertEqual(result.failed, [])
        self.assertEqual((self.root / "alice" / "5" / "a.jpg").read_bytes(), b"data")

    def test_colliding_safe_names_get_distinct_files(self) -> None:
        plan = MediaPlan(self.root, "alice")
        first = plan.assign(3, InMemoryMedia("a?b.jpg", "a?b.jpg", b"question"))
        second = plan.assign(3, InMemoryMedia("a_b.jpg", "a_b.jpg", b"underscore"))
        again = plan.assign(3, InMemoryMedia("a?b.jpg", "a?b.jpg", b"question"))
        other_chat = plan.assign(4, InMemoryMedia("a_b.jpg", "a_b.jpg", b"underscore"))

        self.assertEqual(first, "/uploads/alice/3/a_b.jpg")
        self.assertEqual(second, "/uploads/alice/3/a_b_1.jpg")
        self.assertEqual(again, first)
        self.assertEqual(other_chat, "/uploads/alice/4/a_b.jpg")

        plan.flush()
        self.assertEqual((self.root / "alice" / "3" / "a_b.jpg").read_bytes(), b"question")
        self.assertEqual((self.root / "alice" / "3" / "a_b_1.jpg").read_bytes(), b"underscore")

    def test_failed_writes_are_reported(self) -> None:
        plan = MediaPlan(self.root, "alice")
        plan.assign(1, _BrokenMedia("b.jpg", "b.jpg", 4))
        plan.assign(1, InMemoryMedia("c.jpg", "c.jpg", b"ok"))

        with self.assertLogs("backend.app.media", level="ERROR"):
            result = plan.flush()
        self.assertEqual(result.failed, ["/uploads/alice/1/b.jpg"])
        self.assertEqual(result.written, ["/uploads/alice/1/c.jpg"])

    def test_remove_chat_media(self) -> None:
        plan = MediaPlan(self.root, "alice")
        plan.assign(1, InMemoryMedia("a.jpg", "a.jpg", b"1"))
        plan.assign(2, InMemoryMedia("b.jpg", "b.jpg", b"2"))
        plan.flush()

        remove_chat_media(self.root, "alice", [1, 99])
        self.assertFalse((self.root / "alice" / "1").exists())
        self.assertTrue((self.root / "alice" / "2" / "b.jpg").exists())


class TestMediaMoves(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _store(self, chat_id: int, name: str, data: bytes) -> None:
        directory = chat_media_dir(self.root, "alice", chat_id)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / name).write_bytes(data)

    def test_moves_are_planned_without_touching_disk(self) -> None:
        self._store(1, "x.jpg", b"target")
        self._store(2, "x.jpg", b"first source")
        self._store(3, "x.jpg", b"second source")
        self._store(3, "y.jpg", b"y")

        moves = plan_media_moves(self.root, "alice", [2, 3, 4], 1)

        self.assertEqual(
            [(move.old_public_path, move.new_public_path) for move in moves],
            [
                ("/uploads/alice/2/x.jpg", "/uploads/alice/1/x_1.jpg"),
                ("/uploads/alice/3/x.jpg", "/uploads/alice/1/x_2.jpg"),
                ("/uploads/alice/3/y.jpg", "/uploads/alice/1/y.jpg"),
            ],
        )
        self.assertTrue((self.root / "alice" / "2" / "x.jpg").exists())

        self.assertEqual(apply_media_moves(moves), [])
        self.assertEqual((self.root / "alice" / "1" / "x_2.jpg").read_bytes(), b"second source")
        self.assertEqual(sorted(path.name for path in (self.root / "alice" / "1").iterdir()), ["x.jpg", "x_1.jpg", "x_2.jpg", "y.jpg"])


if __name__ == "__main__":
    unittest.main()

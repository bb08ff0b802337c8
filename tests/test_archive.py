"""Tests for bundle staging and extraction."""

from __future__ import annotations

import io
import tempfile
import unittest
import zipfile
from pathlib import Path
from typing import Dict

from backend.app.archive import InMemoryMedia, MediaHandle, StagedBundle, StagedMedia, open_bundle
from backend.app.errors import BundleError

TRANSCRIPT = "12/03/2024, 21:15 - Alice: Hello\n12/03/2024, 21:16 - Bob: photo.jpg (file attached)\n"


def _zip_bytes(entries: Dict[str, bytes], compression: int = zipfile.ZIP_DEFLATED) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def _staged_bundle(payload: bytes, staging_dir: Path, filename: str) -> StagedBundle:
    handle = tempfile.NamedTemporaryFile(prefix="chat-bundle-", suffix=".zip", dir=staging_dir, delete=False)
    with handle:
        handle.write(payload)
    return StagedBundle(Path(handle.name), size=len(payload), filename=filename)


class TestStagedBundle(unittest.TestCase):
    def test_release_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            bundle = _staged_bundle(b"payload", Path(tmp), "upload.zip")
            self.assertTrue(bundle.path.exists())
            self.assertEqual(bundle.size, 7)

            self.assertTrue(bundle.release())
            self.assertFalse(bundle.release())
            self.assertTrue(bundle.released)
            self.assertFalse(bundle.path.exists())


class TestMediaHandle(unittest.TestCase):
    def test_handle_needs_concrete_access(self) -> None:
        with self.assertRaises(TypeError):
            MediaHandle("photo.jpg", "photo.jpg", 1)


class TestOpenBundle(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _write(self, payload: bytes) -> Path:
        path = self.tmp / "bundle.zip"
        path.write_bytes(payload)
        return path

    def test_transcripts_and_media_are_indexed_in_memory(self) -> None:
        path = self._write(
            _zip_bytes(
                {
                    "Family/_chat.txt": "\ufeff".encode("utf-8") + TRANSCRIPT.encode("utf-8"),
                    "Family/Photo.JPG": b"jpeg-bytes",
                    "__MACOSX/Family/._Photo.JPG": b"resource fork",
                    "Family/.DS_Store": b"junk",
                }
            )
        )
        with open_bundle(path) as bundle:
            self.assertEqual([t.path for t in bundle.transcripts], ["Family/_chat.txt"])
            self.assertTrue(bundle.transcripts[0].text.startswith("12/03/2024"))
            self.assertEqual(sorted(bundle.media_index), ["photo.jpg"])
            handle = bundle.media_index["photo.jpg"]
            self.assertIsInstance(handle, InMemoryMedia)
            self.assertEqual(handle.name, "Photo.JPG")
            self.assertEqual(handle.read_bytes(), b"jpeg-bytes")
            self.assertFalse(bundle.staged)

    def test_large_media_is_staged_and_cleaned_up(self) -> None:
        path = self._write(_zip_bytes({"_chat.txt": TRANSCRIPT.encode("utf-8"), "photo.jpg": b"x" * 2048}))
        staging_root = self.tmp / "staging"
        with open_bundle(path, staging_root=staging_root, memory_limit=1024) as bundle:
            self.assertTrue(bundle.staged)
            handle = bundle.media_index["photo.jpg"]
            self.assertIsInstance(handle, StagedMedia)
            self.assertTrue(handle.staged_path.exists())
            self.assertEqual(handle.size, 2048)
            target = self.tmp / "out" / "photo.jpg"
            handle.copy_to(target)
            self.assertEqual(target.read_bytes(), b"x" * 2048)
        self.assertEqual(list(staging_root.iterdir()), [])

    def test_corrupted_media_entry_is_skipped(self) -> None:
        payload = _zip_bytes(
            {"_chat.txt": TRANSCRIPT.encode("utf-8"), "photo.jpg": b"A" * 64, "other.jpg": b"fine"},
            compression=zipfile.ZIP_STORED,
        )
        path = self._write(payload.replace(b"A" * 64, b"B" * 64))

        with self.assertLogs("backend.app.archive", level="WARNING"):
            with open_bundle(path) as bundle:
                self.assertEqual(bundle.skipped_entries, ["photo.jpg"])
                self.assertNotIn("photo.jpg", bundle.media_index)
                self.assertIn("other.jpg", bundle.media_index)

    def test_duplicate_basenames_keep_first_entry(self) -> None:
        path = self._write(
            _zip_bytes({"_chat.txt": TRANSCRIPT.encode("utf-8"), "a/img.jpg": b"first", "b/IMG.jpg": b"second"})
        )
        with open_bundle(path) as bundle:
            self.assertEqual(bundle.media_index["img.jpg"].read_bytes(), b"first")

    def test_transcript_only_mode_skips_media(self) -> None:
        path = self._write(_zip_bytes({"_chat.txt": TRANSCRIPT.encode("utf-8"), "photo.jpg": b"x"}))
        with open_bundle(path, include_media=False) as bundle:
            self.assertEqual(len(bundle.transcripts), 1)
            self.assertEqual(bundle.media_index, {})

    def test_bundle_without_transcript_is_rejected(self) -> None:
        path = self._write(_zip_bytes({"photo.jpg": b"x"}))
        with self.assertRaises(BundleError):
            with open_bundle(path):
                pass

    def test_unreadable_archive_is_rejected(self) -> None:
        path = self._write(b"this is not a zip file")
        with self.assertRaises(BundleError):
            with open_bundle(path):
                pass


if __name__ == "__main__":
    unittest.main()

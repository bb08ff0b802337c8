"""Bundle staging and extraction for uploaded chat archives."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import zipfile
import zlib
from abc import ABC, abstractmethod
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import BundleError
from .import_contract import TranscriptFile
from .media import safe_name

logger = logging.getLogger(__name__)

TRANSCRIPT_EXTENSIONS = (".txt",)
COPY_CHUNK_SIZE = 1024 * 1024
DEFAULT_MEMORY_LIMIT = 64 * 1024 * 1024

_ENTRY_ERRORS = (zipfile.BadZipFile, zlib.error, OSError, NotImplementedError, RuntimeError, EOFError)


class StagedBundle:
    """An uploaded bundle parked on disk until it is imported or discarded.

    ``release`` removes the file at most once, however many owners call it.
    """

    def __init__(self, path: Path, size: int = 0, filename: Optional[str] = None) -> None:
        self.path = Path(path)
        self.size = size
        self.filename = filename
        self._lock = threading.Lock()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        with self._lock:
            if self._released:
                return False
            self._released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception("Could not remove staged bundle %s", self.path)
        return True


class MediaHandle(ABC):
    """Opaque access to one media entry, wherever its bytes live."""

    def __init__(self, name: str, archive_path: str, size: int) -> None:
        self.name = name
        self.archive_path = archive_path
        self.size = size

    @abstractmethod
    def read_bytes(self) -> bytes:
        """Return the entry's bytes."""

    @abstractmethod
    def copy_to(self, destination: Path) -> None:
        """Write the entry to ``destination``, creating parent directories."""


class InMemoryMedia(MediaHandle):
    def __init__(self, name: str, archive_path: str, data: bytes) -> None:
        super().__init__(name, archive_path, len(data))
        self._data = data

    def read_bytes(self) -> bytes:
        return self._data

    def copy_to(self, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self._data)


class StagedMedia(MediaHandle):
    def __init__(self, name: str, archive_path: str, staged_path: Path, size: int) -> None:
        super().__init__(name, archive_path, size)
        self.staged_path = staged_path

    def read_bytes(self) -> bytes:
        return self.staged_path.read_bytes()

    def copy_to(self, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.staged_path, destination)


@dataclass
class ExtractedBundle:
    transcripts: List[TranscriptFile]
    media_index: Dict[str, MediaHandle] = field(default_factory=dict)
    staged: bool = False
    skipped_entries: List[str] = field(default_factory=list)


def _is_ignored(info: zipfile.ZipInfo) -> bool:
    if info.is_dir():
        return True
    name = info.filename.replace("\\", "/")
    basename = name.rsplit("/", 1)[-1]
    return name.startswith("__MACOSX/") or basename.startswith("._") or basename == ".DS_Store" or not basename


def _is_transcript(info: zipfile.ZipInfo) -> bool:
    return info.filename.lower().endswith(TRANSCRIPT_EXTENSIONS)


def _basename(info: zipfile.ZipInfo) -> str:
    return info.filename.replace("\\", "/").rsplit("/", 1)[-1]


def _decode_transcript(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text[1:] if text.startswith("\ufeff") else text


def _stage_entry(zipped: zipfile.ZipFile, info: zipfile.ZipInfo, destination: Path) -> int:
    written = 0
    with zipped.open(info) as source, open(destination, "wb") as target:
        while True:
            chunk = source.read(COPY_CHUNK_SIZE)
            if not chunk:
                break
            target.write(chunk)
            written += len(chunk)
    return written


@contextmanager
def open_bundle(
    bundle_path: Path,
    staging_root: Optional[Path] = None,
    memory_limit: int = DEFAULT_MEMORY_LIMIT,
    include_media: bool = True,
) -> Iterator[ExtractedBundle]:
    """Extract transcripts and index media of a zip bundle.

    Media stays in memory while the bundle's total uncompressed media size is
    within ``memory_limit``; larger bundles are streamed into a temporary
    directory under ``staging_root`` that is removed when the context exits.
    Raises ``BundleError`` for unreadable archives or archives without any
    transcript.
    """

    try:
        zipped = zipfile.ZipFile(bundle_path)
    except (zipfile.BadZipFile, OSError, EOFError) as exc:
        raise BundleError(f"bundle is not a readable zip archive: {exc}") from exc

    with ExitStack() as stack:
        stack.enter_context(zipped)
        entries = [info for info in zipped.infolist() if not _is_ignored(info)]
        transcript_entries = [info for info in entries if _is_transcript(info)]
        media_entries = [info for info in entries if not _is_transcript(info)]
        if not transcript_entries:
            raise BundleError("bundle does not contain any .txt chat transcript")

        transcripts: List[TranscriptFile] = []
        for info in transcript_entries:
            try:
                raw = zipped.read(info)
            except _ENTRY_ERRORS as exc:
                raise BundleError(f"transcript '{info.filename}' could not be read: {exc}") from exc
            transcripts.append(TranscriptFile(path=info.filename, text=_decode_transcript(raw)))

        bundle = ExtractedBundle(transcripts=transcripts)
        if include_media and media_entries:
            total_media = sum(info.file_size for info in media_entries)
            staging_dir: Optional[Path] = None
            if total_media > memory_limit:
                if staging_root is not None:
                    Path(staging_root).mkdir(parents=True, exist_ok=True)
                staging_dir = Path(
                    stack.enter_context(
                        tempfile.TemporaryDirectory(prefix="chat-import-media-", dir=staging_root)
                    )
                )
                bundle.staged = True

            for index, info in enumerate(media_entries):
                basename = _basename(info)
                key = basename.lower()
                if key in bundle.media_index:
                    logger.info("Duplicate media name %s in bundle; keeping first entry", info.filename)
                    continue
                try:
                    if staging_dir is not None:
                        staged_path = staging_dir / f"{index:05d}-{safe_name(basename)}"
                        try:
                            size = _stage_entry(zipped, info, staged_path)
                        except _ENTRY_ERRORS:
                            if staged_path.exists():
                                os.remove(staged_path)
                            raise
                        handle: MediaHandle = StagedMedia(basename, info.filename, staged_path, size)
                    else:
                        handle = InMemoryMedia(basename, info.filename, zipped.read(info))
                except _ENTRY_ERRORS as exc:
                    logger.warning("Skipping unreadable media entry %s: %s", info.filename, exc)
                    bundle.skipped_entries.append(info.filename)
                    continue
                bundle.media_index[key] = handle

        logger.info(
            "Extracted %d transcript(s) and %d media file(s) from %s%s",
            len(bundle.transcripts),
            len(bundle.media_index),
            bundle_path,
            " (staged)" if bundle.staged else "",
        )
        yield bundle

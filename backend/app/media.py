"""Media lookup, naming and post-commit writes for imported messages."""

from __future__ import annotations

import logging
import posixpath
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Set, Tuple

if TYPE_CHECKING:
    from .archive import MediaHandle

logger = logging.getLogger(__name__)

PUBLIC_MEDIA_PREFIX = "/uploads"
SAFE_NAME_MAX_LENGTH = 180

_UNSAFE_CHARS = re.compile(r"[^\w.\- ]+")
_NORMALIZE_STRIP = re.compile(r"[^a-z0-9.\-]")


def safe_name(name: str) -> str:
    """Storage-safe basename: unsafe runs become ``_``, capped in length."""

    basename = re.split(r"[\\/]", name)[-1]
    cleaned = _UNSAFE_CHARS.sub("_", basename)[:SAFE_NAME_MAX_LENGTH].strip()
    if cleaned in {"", ".", ".."}:
        return "file"
    return cleaned


def public_path(owner_id: str, chat_id: int, filename: str) -> str:
    return posixpath.join(PUBLIC_MEDIA_PREFIX, safe_name(str(owner_id)), str(chat_id), safe_name(filename))


def chat_media_dir(media_root: Path, owner_id: str, chat_id: int) -> Path:
    return Path(media_root) / safe_name(str(owner_id)) / str(chat_id)


def normalize_media_name(name: str) -> str:
    return _NORMALIZE_STRIP.sub("", name.lower())


def resolve_media(media_index: Mapping[str, "MediaHandle"], filename: Optional[str]) -> Optional["MediaHandle"]:
    """Find the bundle entry a message refers to.

    Tried in order: case-insensitive basename, then the normalized name for
    equality, suffix and substring containment in either direction. Returns
    ``None`` when nothing matches.
    """

    if not filename or not media_index:
        return None
    wanted = re.split(r"[\\/]", filename.strip())[-1].lower()
    exact = media_index.get(wanted)
    if exact is not None:
        return exact

    normalized = normalize_media_name(wanted)
    if not normalized:
        return None
    candidates = [(normalize_media_name(key), handle) for key, handle in media_index.items()]
    candidates = [(key, handle) for key, handle in candidates if key]
    for key, handle in candidates:
        if key == normalized:
            return handle
    for key, handle in candidates:
        if key.endswith(normalized) or normalized.endswith(key):
            return handle
    for key, handle in candidates:
        if normalized in key or key in normalized:
            return handle
    return None


def _numbered_name(name: str, counter: int) -> str:
    stem, extension = posixpath.splitext(name)
    suffix = f"_{counter}{extension}"
    return stem[: max(1, SAFE_NAME_MAX_LENGTH - len(suffix))] + suffix


def _free_name(name: str, taken: Set[str]) -> str:
    candidate = name
    counter = 1
    while candidate in taken:
        candidate = _numbered_name(name, counter)
        counter += 1
    return candidate


@dataclass(frozen=True)
class PendingMediaWrite:
    handle: "MediaHandle"
    destination: Path
    public_path: str


class MediaPlan:
    """Media writes collected during a transaction and flushed after commit.

    Each bundle entry is written once per chat. Distinct entries whose safe
    names collide get a numeric suffix (``a_b.jpg``, ``a_b_1.jpg``).
    """

    def __init__(self, media_root: Path, owner_id: str) -> None:
        self.media_root = Path(media_root)
        self.owner_id = owner_id
        self._writes: Dict[Path, PendingMediaWrite] = {}
        self._assigned: Dict[Tuple[int, str], str] = {}

    def __len__(self) -> int:
        return len(self._writes)

    def assign(self, chat_id: int, handle: "MediaHandle") -> str:
        key = (chat_id, handle.archive_path)
        reference = self._assigned.get(key)
        if reference is not None:
            return reference

        directory = chat_media_dir(self.media_root, self.owner_id, chat_id)
        taken = {path.name for path in self._writes if path.parent == directory}
        name = _free_name(safe_name(handle.name), taken)
        destination = directory / name
        reference = public_path(self.owner_id, chat_id, name)
        self._writes[destination] = PendingMediaWrite(handle, destination, reference)
        self._assigned[key] = reference
        return reference

    def flush(self) -> MediaFlushResult:
        written: List[str] = []
        failed: List[str] = []
        for write in self._writes.values():
            try:
                write.handle.copy_to(write.destination)
            except OSError:
                logger.exception("Failed to store media %s at %s", write.handle.archive_path, write.destination)
                failed.append(write.public_path)
                continue
            written.append(write.public_path)
        return MediaFlushResult(written=written, failed=failed)


@dataclass(frozen=True)
class MediaFlushResult:
    written: List[str]
    failed: List[str]


@dataclass(frozen=True)
class MediaMove:
    source_chat_id: int
    source: Path
    destination: Path
    old_public_path: str
    new_public_path: str


def plan_media_moves(
    media_root: Path, owner_id: str, source_chat_ids: Iterable[int], target_chat_id: int
) -> List[MediaMove]:
    """Plan re-homing the stored files of merged chats into the target's directory.

    Names already used in the target directory, or by an earlier planned
    move, get a numeric suffix. Nothing is touched on disk.
    """

    target_dir = chat_media_dir(media_root, owner_id, target_chat_id)
    taken: Set[str] = set()
    if target_dir.is_dir():
        taken = {entry.name for entry in target_dir.iterdir()}

    moves: List[MediaMove] = []
    for chat_id in source_chat_ids:
        source_dir = chat_media_dir(media_root, owner_id, chat_id)
        if not source_dir.is_dir():
            continue
        for entry in sorted(source_dir.iterdir()):
            if not entry.is_file():
                continue
            name = _free_name(entry.name, taken)
            taken.add(name)
            moves.append(
                MediaMove(
                    source_chat_id=chat_id,
                    source=entry,
                    destination=target_dir / name,
                    old_public_path=public_path(owner_id, chat_id, entry.name),
                    new_public_path=public_path(owner_id, target_chat_id, name),
                )
            )
    return moves


def apply_media_moves(moves: Iterable[MediaMove]) -> List[MediaMove]:
    """Move planned files; returns the moves that failed."""

    failed: List[MediaMove] = []
    for move in moves:
        try:
            move.destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(move.source), str(move.destination))
        except OSError:
            logger.exception("Failed to move media %s to %s", move.source, move.destination)
            failed.append(move)
    return failed


def remove_chat_media(media_root: Path, owner_id: str, chat_ids: Iterable[int]) -> None:
    for chat_id in chat_ids:
        directory = chat_media_dir(media_root, owner_id, chat_id)
        if directory.is_dir():
            shutil.rmtree(directory, ignore_errors=True)

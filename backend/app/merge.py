"""Merge and delete operations over stored chats."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from . import storage
from .errors import NotFoundError, ValidationError
from .import_contract import is_generic_name
from .media import MediaMove, apply_media_moves, plan_media_moves, remove_chat_media

logger = logging.getLogger(__name__)


def _unique_ids(chat_ids: Sequence[int]) -> List[int]:
    seen: List[int] = []
    for chat_id in chat_ids:
        if chat_id not in seen:
            seen.append(chat_id)
    return seen


def merge_chats(owner_id: str, chat_ids: Sequence[int], media_root: Optional[Path] = None) -> Dict[str, Any]:
    """Fold several chats into one.

    The chat holding the most messages survives (ties go to the earliest id
    in ``chat_ids``). It takes the first non-generic name among the inputs,
    the union of all participants, and every source message not already
    present. Source chats are deleted. With ``media_root`` given, their
    stored files move into the target's directory after commit and the
    moved messages are relinked to the new paths.
    """

    ids = _unique_ids(chat_ids)
    if len(ids) < 2:
        raise ValidationError("merge needs at least two distinct chat ids")

    moves: List[MediaMove] = []
    with storage.transaction() as conn:
        owned = set(storage.owned_chat_ids(conn, owner_id, ids))
        missing = [chat_id for chat_id in ids if chat_id not in owned]
        if missing:
            raise NotFoundError(f"chat(s) not found: {', '.join(str(chat_id) for chat_id in missing)}")

        chats = {chat_id: storage.get_owned_chat(conn, owner_id, chat_id) for chat_id in ids}
        counts = storage.message_counts(conn, ids)
        target_id = ids[0]
        for chat_id in ids[1:]:
            if counts[chat_id] > counts[target_id]:
                target_id = chat_id
        sources = [chat_id for chat_id in ids if chat_id != target_id]

        name: Optional[str] = None
        for chat_id in ids:
            if not is_generic_name(chats[chat_id]["name"]):
                name = chats[chat_id]["name"]
                break
        if name and name != chats[target_id]["name"]:
            storage.rename_chat(conn, target_id, name)
        else:
            storage.touch_chat(conn, target_id)

        participants: List[str] = []
        for chat_id in sources:
            participants.extend(storage.list_participants(conn, chat_id))
        storage.add_participants(conn, target_id, participants)

        if media_root is not None:
            moves = plan_media_moves(media_root, owner_id, sources, target_id)
            for move in moves:
                storage.relink_media(conn, move.source_chat_id, move.old_public_path, move.new_public_path)

        moved = 0
        skipped = 0
        for chat_id in sources:
            inserted = storage.copy_messages(conn, chat_id, target_id)
            moved += inserted
            skipped += counts[chat_id] - inserted
        storage.delete_chat_rows(conn, sources)

        result = storage.chat_detail(conn, owner_id, target_id) or {}

    if media_root is not None:
        failed = apply_media_moves(moves)
        stuck = {move.source_chat_id for move in failed}
        remove_chat_media(media_root, owner_id, [chat_id for chat_id in sources if chat_id not in stuck])
        if failed:
            storage.append_event(
                "media",
                f"{len(failed)} media file(s) could not be moved into chat {target_id}",
                "error",
                payload={"target_chat_id": target_id, "files": [str(move.source) for move in failed]},
                owner_id=owner_id,
            )

    result.update(
        {
            "target_chat_id": target_id,
            "merged_chat_ids": sources,
            "moved_messages": moved,
            "skipped_messages": skipped,
        }
    )
    storage.append_event(
        "merge",
        f"Merged {len(sources)} chat(s) into chat {target_id}",
        "info",
        payload={key: result[key] for key in ("target_chat_id", "merged_chat_ids", "moved_messages", "skipped_messages")},
        owner_id=owner_id,
    )
    logger.info("Owner %s merged chats %s into %s (%d moved, %d skipped)", owner_id, sources, target_id, moved, skipped)
    return result


def delete_chats(owner_id: str, chat_ids: Sequence[int], media_root: Optional[Path] = None) -> int:
    """Delete owned chats with their participants and messages.

    Ids the owner does not hold are ignored. Media directories of deleted
    chats are removed after the transaction commits.
    """

    ids = _unique_ids(chat_ids)
    if not ids:
        raise ValidationError("no chat ids given")

    with storage.transaction() as conn:
        owned = storage.owned_chat_ids(conn, owner_id, ids)
        deleted = storage.delete_chat_rows(conn, owned)

    if media_root is not None and owned:
        remove_chat_media(media_root, owner_id, owned)
    if deleted:
        storage.append_event(
            "chat.delete",
            f"Deleted {deleted} chat(s)",
            "info",
            payload={"chat_ids": sorted(owned)},
            owner_id=owner_id,
        )
    return deleted


def delete_chat(owner_id: str, chat_id: int, media_root: Optional[Path] = None) -> int:
    deleted = delete_chats(owner_id, [chat_id], media_root=media_root)
    if not deleted:
        raise NotFoundError(f"chat '{chat_id}' not found")
    return deleted

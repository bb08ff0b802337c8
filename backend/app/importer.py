"""Transactional import of chat bundles into storage."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from . import storage
from .archive import DEFAULT_MEMORY_LIMIT, MediaHandle, open_bundle
from .errors import NotFoundError, ValidationError
from .identity import resolve_chat
from .import_contract import (
    ImportStats,
    ParsedTranscript,
    TranscriptCollator,
    TranscriptFile,
    is_generic_name,
    message_checksum,
    timestamp_from_storage,
    timestamp_to_storage,
)
from .media import MediaPlan, resolve_media

logger = logging.getLogger(__name__)

DEFAULT_CHAT_NAME = "Chat"

ProgressCallback = Callable[[str, int], None]


def _report(progress: Optional[ProgressCallback], stage: str, percent: int) -> None:
    if progress is not None:
        progress(stage, percent)


def collate_transcripts(transcripts: Sequence[TranscriptFile], collator: TranscriptCollator) -> List[ParsedTranscript]:
    parsed: List[ParsedTranscript] = []
    for transcript in transcripts:
        try:
            parsed.append(collator.collate(transcript.text, transcript.path))
        except ValueError as exc:
            raise ValidationError(f"transcript '{transcript.path}' could not be parsed: {exc}") from exc
    return parsed


def _resolve_target_chat(
    conn: sqlite3.Connection,
    owner_id: str,
    transcript: ParsedTranscript,
    target_chat_id: Optional[int],
) -> Optional[Dict[str, Any]]:
    if target_chat_id is not None:
        chat = storage.get_owned_chat(conn, owner_id, target_chat_id)
        if chat is None:
            raise NotFoundError(f"chat '{target_chat_id}' not found")
        return chat
    suggestion = resolve_chat(
        storage.list_chat_candidates(conn, owner_id),
        transcript.name_guess,
        transcript.participants,
    )
    if suggestion is None:
        return None
    logger.info(
        "Transcript %s matched chat %s by %s (confidence %s)",
        transcript.path,
        suggestion.chat_id,
        suggestion.match_step,
        suggestion.confidence,
    )
    return storage.get_owned_chat(conn, owner_id, suggestion.chat_id)


def _import_transcript(
    conn: sqlite3.Connection,
    owner_id: str,
    transcript: ParsedTranscript,
    media_index: Mapping[str, MediaHandle],
    plan: MediaPlan,
    stats: ImportStats,
    target_chat_id: Optional[int] = None,
) -> int:
    chat = _resolve_target_chat(conn, owner_id, transcript, target_chat_id)
    usable_name = None if is_generic_name(transcript.name_guess) else transcript.name_guess.strip()

    cutoff = None
    if chat is None:
        chat_id = storage.create_chat(conn, owner_id, usable_name or DEFAULT_CHAT_NAME)
        stats.added_chats += 1
    else:
        chat_id = chat["id"]
        if usable_name and usable_name != chat["name"]:
            storage.rename_chat(conn, chat_id, usable_name)
        else:
            storage.touch_chat(conn, chat_id)
        stats.updated_chats += 1
        cutoff = timestamp_from_storage(storage.latest_message_timestamp(conn, chat_id))

    storage.add_participants(conn, chat_id, sorted(transcript.participants))

    rows: List[Dict[str, Any]] = []
    for message in transcript.messages:
        stored_timestamp = timestamp_to_storage(message.timestamp)
        if cutoff is not None and stored_timestamp is not None:
            if timestamp_from_storage(stored_timestamp) <= cutoff:
                continue
        media_path = None
        if message.filename:
            handle = resolve_media(media_index, message.filename)
            if handle is not None:
                media_path = plan.assign(chat_id, handle)
            else:
                logger.info("No media in bundle for %s referenced by %s", message.filename, transcript.path)
        rows.append(
            {
                "author": message.author,
                "content": message.content,
                "timestamp": stored_timestamp,
                "type": message.type,
                "media_path": media_path,
                "checksum": message_checksum(message.author, stored_timestamp, message.content),
            }
        )

    inserted, duplicates = storage.insert_messages(conn, chat_id, rows)
    stats.added_messages += inserted
    stats.skipped_messages += duplicates + (transcript.total_messages - len(rows))
    if chat_id not in stats.chat_ids:
        stats.chat_ids.append(chat_id)
    return chat_id


def import_bundle(
    owner_id: str,
    bundle_path: Path,
    collator: TranscriptCollator,
    media_root: Path,
    target_chat_id: Optional[int] = None,
    staging_root: Optional[Path] = None,
    memory_limit: int = DEFAULT_MEMORY_LIMIT,
    progress: Optional[ProgressCallback] = None,
) -> ImportStats:
    """Import every transcript of a bundle in one transaction.

    With ``target_chat_id`` all transcripts merge into that chat, otherwise
    each one goes through identity resolution. Media files are written only
    after the transaction has committed.
    """

    _report(progress, "extracting", 5)
    with open_bundle(bundle_path, staging_root=staging_root, memory_limit=memory_limit) as extracted:
        _report(progress, "parsing", 20)
        parsed = collate_transcripts(extracted.transcripts, collator)

        stats = ImportStats()
        plan = MediaPlan(media_root, owner_id)
        _report(progress, "importing", 30)
        with storage.transaction() as conn:
            for index, transcript in enumerate(parsed, start=1):
                _import_transcript(conn, owner_id, transcript, extracted.media_index, plan, stats, target_chat_id)
                _report(progress, "importing", 30 + (60 * index) // len(parsed))

        flushed = plan.flush()
        stats.saved_media = len(flushed.written)

    if flushed.failed:
        storage.append_event(
            "media",
            f"{len(flushed.failed)} media file(s) could not be stored",
            "error",
            payload={"failed": flushed.failed},
            owner_id=owner_id,
        )
    storage.append_event(
        "import",
        f"Imported {stats.added_messages} message(s) into {len(stats.chat_ids)} chat(s)",
        "info",
        payload=stats.as_dict(),
        owner_id=owner_id,
    )
    logger.info("Import for owner %s finished: %s", owner_id, stats.as_dict())
    return stats


def preview_bundle(owner_id: str, bundle_path: Path, collator: TranscriptCollator) -> Dict[str, Any]:
    """Summarize a bundle and suggest target chats without writing anything."""

    with open_bundle(bundle_path, include_media=False) as extracted:
        parsed = collate_transcripts(extracted.transcripts, collator)

    with storage.get_connection() as conn:
        candidates = storage.list_chat_candidates(conn, owner_id)

    summaries: List[Dict[str, Any]] = []
    for transcript in parsed:
        timestamps = [message.timestamp for message in transcript.messages if message.timestamp is not None]
        suggestion = resolve_chat(candidates, transcript.name_guess, transcript.participants)
        summaries.append(
            {
                "path": transcript.path,
                "name_guess": transcript.name_guess,
                "participants": sorted(transcript.participants),
                "message_count": transcript.total_messages,
                "media_references": sum(1 for message in transcript.messages if message.filename),
                "first_timestamp": timestamp_to_storage(min(timestamps)) if timestamps else None,
                "last_timestamp": timestamp_to_storage(max(timestamps)) if timestamps else None,
                "suggestion": (
                    {
                        "chat_id": suggestion.chat_id,
                        "match_step": suggestion.match_step,
                        "confidence": suggestion.confidence,
                    }
                    if suggestion
                    else None
                ),
            }
        )
    return {"transcripts": summaries, "existing_chats": storage.list_chats(owner_id)}

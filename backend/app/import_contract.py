"""Shared contracts for chat archive imports.

This module defines the immutable records passed between the archive
ingestor, transcript collators, the identity resolver and the import
coordinator, plus the collator interface every transcript parser implements.
"""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

CONTENT_PREFIX_LENGTH = 255

GENERIC_CHAT_NAMES: FrozenSet[str] = frozenset({"", "chat", "whatsapp chat", "group", "_chat"})


def checksum_payload(payload: Mapping[str, Any] | Iterable[Mapping[str, Any]] | str | bytes) -> str:
    """Create a deterministic checksum for import dedupe and idempotency."""

    if isinstance(payload, bytes):
        return hashlib.sha256(payload).hexdigest()
    if isinstance(payload, str):
        normalized = payload
    elif isinstance(payload, Mapping):
        normalized = json.dumps(dict(payload), sort_keys=True, separators=(",", ":"))
    elif isinstance(payload, Iterable):
        normalized = json.dumps(list(payload), sort_keys=True, separators=(",", ":"))
    else:
        normalized = json.dumps(payload, sort_keys=True, separators=(",", ":"))

    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def is_generic_name(name: Optional[str]) -> bool:
    if name is None:
        return True
    return name.strip().lower() in GENERIC_CHAT_NAMES


def normalize_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def timestamp_to_storage(value: Optional[datetime]) -> Optional[str]:
    normalized = normalize_timestamp(value)
    if normalized is None:
        return None
    return normalized.isoformat(timespec="seconds")


def timestamp_from_storage(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return normalize_timestamp(datetime.fromisoformat(value))
    except ValueError:
        return None


def message_checksum(author: Optional[str], timestamp: Optional[str], content: str) -> str:
    """Uniqueness key of a stored message within its chat."""

    return checksum_payload(
        {
            "author": author or "",
            "timestamp": timestamp or "",
            "content": (content or "")[:CONTENT_PREFIX_LENGTH],
        }
    )


@dataclass(frozen=True)
class RawMessage:
    """One message as produced by a transcript collator."""

    content: str
    author: Optional[str] = None
    timestamp: Optional[datetime] = None
    type: str = "text"
    filename: Optional[str] = None


@dataclass(frozen=True)
class ParsedTranscript:
    """Collator output for one transcript; consumed once per import."""

    path: str
    name_guess: Optional[str]
    participants: FrozenSet[str]
    messages: Tuple[RawMessage, ...]

    @property
    def total_messages(self) -> int:
        return len(self.messages)


@dataclass(frozen=True)
class TranscriptFile:
    path: str
    text: str


@dataclass(frozen=True)
class MatchSuggestion:
    chat_id: int
    match_step: str
    confidence: int


@dataclass(frozen=True)
class ChatCandidate:
    """An existing chat as seen by the identity resolver."""

    id: int
    name: str
    participants: FrozenSet[str]


@dataclass
class ImportStats:
    added_chats: int = 0
    updated_chats: int = 0
    added_messages: int = 0
    skipped_messages: int = 0
    saved_media: int = 0
    chat_ids: list = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TranscriptCollator(ABC):
    """Contract shared by each transcript parser."""

    source_type: str = "generic"

    @abstractmethod
    def collate(self, text: str, path: str) -> ParsedTranscript:
        """Parse one transcript into participants and ordered messages.

        Raises ``ValueError`` when the text holds nothing parseable.
        """

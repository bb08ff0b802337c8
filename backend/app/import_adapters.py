"""Transcript collators that turn exported chat text into parsed transcripts."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .import_contract import ParsedTranscript, RawMessage, TranscriptCollator, is_generic_name

_INVISIBLE_MARKS = re.compile(r"[\u200e\u200f\u202a-\u202e\u2066-\u2069\ufeff]")

_TIME = r"\d{1,2}[:.]\d{2}(?:[:.]\d{2})?(?:\s*[AaPp]\.?\s?[Mm]\.?)?"
_BRACKET_LINE = re.compile(
    r"^\[(?P<date>\d{1,2}[/.\-]\d{1,2}[/.\-]\d{2,4}),?\s+(?P<time>" + _TIME + r")\]\s*(?P<rest>.*)$"
)
_DASH_LINE = re.compile(
    r"^(?P<date>\d{1,2}[/.\-]\d{1,2}[/.\-]\d{2,4}),?\s+(?P<time>" + _TIME + r")\s+[-–]\s+(?P<rest>.*)$"
)
_AUTHOR_SPLIT = re.compile(r"^(?P<author>[^:]{1,80}?):\s?(?P<text>.*)$", re.DOTALL)

_ATTACHED_TAG = re.compile(r"<attached:\s*(?P<name>[^>]+?)\s*>", re.IGNORECASE)
_ATTACHED_SUFFIX = re.compile(
    r"^(?P<name>.+?\.[A-Za-z0-9]{2,5})\s+\((?:file attached|archivo adjunto|arquivo anexado|fichier joint|datei angehängt)\)",
    re.IGNORECASE,
)
_OMITTED_MARKERS: Sequence[Tuple[str, str]] = (
    ("<media omitted>", "media"),
    ("image omitted", "image"),
    ("sticker omitted", "image"),
    ("gif omitted", "video"),
    ("video omitted", "video"),
    ("audio omitted", "audio"),
    ("document omitted", "document"),
)
_CHAT_TITLE = re.compile(r"^whatsapp chat(?:\s+with|\s+mit|\s+con|\s+com|\s+avec)?\s*-?\s*(?P<name>.+)$", re.IGNORECASE)

_IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "heic", "bmp"}
_VIDEO_EXTENSIONS = {"mp4", "mov", "3gp", "avi", "mkv", "webm"}
_AUDIO_EXTENSIONS = {"opus", "ogg", "mp3", "m4a", "aac", "wav", "amr"}


def media_type_for(filename: str) -> str:
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if extension in _IMAGE_EXTENSIONS:
        return "image"
    if extension in _VIDEO_EXTENSIONS:
        return "video"
    if extension in _AUDIO_EXTENSIONS:
        return "audio"
    return "document"


def _clean(text: str) -> str:
    text = text.replace("\u202f", " ").replace("\u00a0", " ")
    return _INVISIBLE_MARKS.sub("", text)


def _name_from_title(segment: str) -> Optional[str]:
    stem = segment[:-4] if segment.lower().endswith(".txt") else segment
    match = _CHAT_TITLE.match(stem.strip())
    if match:
        name = match.group("name").strip()
        return None if is_generic_name(name) else name
    return None


def guess_chat_name(path: str) -> Optional[str]:
    """Guess a chat name from the transcript path inside the bundle."""

    segments = [segment for segment in re.split(r"[\\/]", path) if segment]
    if not segments:
        return None
    from_file = _name_from_title(segments[-1])
    if from_file:
        return from_file
    if len(segments) > 1:
        folder = segments[-2]
        from_folder = _name_from_title(folder)
        if from_folder:
            return from_folder
        if not is_generic_name(folder):
            return folder.strip()
    return None


class WhatsAppTranscriptCollator(TranscriptCollator):
    """Collator for WhatsApp "Export chat" text files (iOS and Android layouts)."""

    source_type = "whatsapp"

    def collate(self, text: str, path: str) -> ParsedTranscript:
        lines = _clean(text).splitlines()
        headers = [self._match_header(line) for line in lines]
        day_first = self._detect_day_first(match for match in headers if match is not None)

        # [author, content, timestamp, is_system]
        entries: List[list] = []
        for line, match in zip(lines, headers):
            timestamp = self._parse_timestamp(match, day_first) if match else None
            if match is None or timestamp is None:
                if entries and line.strip():
                    entries[-1][1] = f"{entries[-1][1]}\n{line}"
                continue
            rest = match.group("rest")
            author_match = _AUTHOR_SPLIT.match(rest)
            if author_match:
                entries.append([author_match.group("author").strip(), author_match.group("text"), timestamp, False])
            else:
                entries.append([None, rest, timestamp, True])

        if not entries:
            raise ValueError(f"No chat messages found in transcript '{path}'")

        parsed: List[RawMessage] = []
        participants = set()
        for author, content, timestamp, is_system in entries:
            content = content.strip()
            if author:
                participants.add(author)
            message_type, filename = ("system", None) if is_system else self._classify(content)
            parsed.append(
                RawMessage(
                    content=content,
                    author=author,
                    timestamp=timestamp,
                    type=message_type,
                    filename=filename,
                )
            )

        return ParsedTranscript(
            path=path,
            name_guess=guess_chat_name(path),
            participants=frozenset(participants),
            messages=tuple(parsed),
        )

    @staticmethod
    def _match_header(line: str) -> Optional[re.Match]:
        return _BRACKET_LINE.match(line) or _DASH_LINE.match(line)

    @staticmethod
    def _detect_day_first(matches) -> bool:
        for match in matches:
            first = re.split(r"[/.\-]", match.group("date"))[0]
            if int(first) > 12:
                return True
        return False

    @staticmethod
    def _parse_timestamp(match: re.Match, day_first: bool) -> Optional[datetime]:
        first, second, year = (int(part) for part in re.split(r"[/.\-]", match.group("date")))
        day, month = (first, second) if day_first else (second, first)
        if year < 100:
            year += 2000

        raw_time = match.group("time").strip()
        meridiem_match = re.search(r"([AaPp])\.?\s?[Mm]\.?$", raw_time)
        meridiem = meridiem_match.group(1).lower() if meridiem_match else ""
        clock = re.match(r"(\d{1,2})[:.](\d{2})(?:[:.](\d{2}))?", raw_time)
        if clock is None:
            return None
        hour, minute = int(clock.group(1)), int(clock.group(2))
        second_value = int(clock.group(3) or 0)
        if meridiem == "p" and hour < 12:
            hour += 12
        elif meridiem == "a" and hour == 12:
            hour = 0
        try:
            return datetime(year, month, day, hour, minute, second_value)
        except ValueError:
            return None

    @staticmethod
    def _classify(content: str) -> Tuple[str, Optional[str]]:
        tagged = _ATTACHED_TAG.search(content)
        if tagged:
            name = tagged.group("name").strip()
            return media_type_for(name), name
        suffixed = _ATTACHED_SUFFIX.match(content)
        if suffixed:
            name = suffixed.group("name").strip()
            return media_type_for(name), name
        lowered = content.lower()
        for marker, message_type in _OMITTED_MARKERS:
            if marker in lowered:
                return message_type, None
        return "text", None


_COLLATORS: Dict[str, type] = {
    "whatsapp": WhatsAppTranscriptCollator,
}


def get_collator(source_type: str = "whatsapp") -> Optional[TranscriptCollator]:
    collator_cls = _COLLATORS.get(str(source_type or "").strip().lower())
    if collator_cls is None:
        return None
    return collator_cls()

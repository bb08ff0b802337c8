"""Decide which stored chat an incoming transcript belongs to.

Everything here is read-only: callers pass the owner's chats in and get a
``MatchSuggestion`` (or ``None`` for "create a new chat") back.
"""

from __future__ import annotations

import math
from typing import AbstractSet, Iterable, List, Optional

from .import_contract import ChatCandidate, MatchSuggestion, is_generic_name

NAME_MATCH_CONFIDENCE = 95
OVERLAP_THRESHOLD = 0.5
GENERIC_FALLBACK_WEIGHT = 70

MATCH_STEP_NAME = "name"
MATCH_STEP_PARTICIPANTS = "participants"
MATCH_STEP_GENERIC = "generic"


def participant_overlap(left: AbstractSet[str], right: AbstractSet[str]) -> float:
    """Share of the smaller participant set found in the other one."""

    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    return len(left & right) / min(len(left), len(right))


def _confidence(value: float) -> int:
    # round half up; the builtin rounds halves to even
    return int(math.floor(value + 0.5))


def _normalized_name(name: Optional[str]) -> str:
    return (name or "").strip().lower()


def resolve_chat(
    chats: Iterable[ChatCandidate],
    name_guess: Optional[str],
    participants: AbstractSet[str],
) -> Optional[MatchSuggestion]:
    ordered: List[ChatCandidate] = sorted(chats, key=lambda chat: chat.id)

    if not is_generic_name(name_guess):
        wanted = _normalized_name(name_guess)
        for chat in ordered:
            if _normalized_name(chat.name) == wanted:
                return MatchSuggestion(chat_id=chat.id, match_step=MATCH_STEP_NAME, confidence=NAME_MATCH_CONFIDENCE)

    best: Optional[ChatCandidate] = None
    best_overlap = -1.0
    for chat in ordered:
        overlap = participant_overlap(participants, chat.participants)
        if overlap >= OVERLAP_THRESHOLD and overlap > best_overlap:
            best, best_overlap = chat, overlap
    if best is not None:
        return MatchSuggestion(
            chat_id=best.id,
            match_step=MATCH_STEP_PARTICIPANTS,
            confidence=_confidence(best_overlap * 100),
        )

    for chat in ordered:
        if not is_generic_name(chat.name):
            continue
        overlap = participant_overlap(participants, chat.participants)
        if overlap > 0:
            return MatchSuggestion(
                chat_id=chat.id,
                match_step=MATCH_STEP_GENERIC,
                confidence=_confidence(overlap * GENERIC_FALLBACK_WEIGHT),
            )

    return None

"""Tests for chat identity resolution."""

from __future__ import annotations

import unittest

from backend.app.identity import (
    MATCH_STEP_GENERIC,
    MATCH_STEP_NAME,
    MATCH_STEP_PARTICIPANTS,
    participant_overlap,
    resolve_chat,
)
from backend.app.import_contract import ChatCandidate


def _chat(chat_id: int, name: str, *participants: str) -> ChatCandidate:
    return ChatCandidate(id=chat_id, name=name, participants=frozenset(participants))


class TestParticipantOverlap(unittest.TestCase):
    def test_bounds_and_symmetry(self) -> None:
        pairs = [
            (set(), set()),
            ({"a"}, set()),
            ({"a", "b"}, {"b", "c", "d"}),
            ({"a", "b", "c"}, {"a", "b", "c"}),
        ]
        for left, right in pairs:
            value = participant_overlap(left, right)
            self.assertEqual(value, participant_overlap(right, left))
            self.assertGreaterEqual(value, 0.0)
            self.assertLessEqual(value, 1.0)

        self.assertEqual(participant_overlap(set(), set()), 1.0)
        self.assertEqual(participant_overlap({"a"}, set()), 0.0)
        self.assertEqual(participant_overlap({"a", "b"}, {"b", "c", "d"}), 0.5)


class TestResolveChat(unittest.TestCase):
    def test_name_match_ignores_case_and_whitespace(self) -> None:
        chats = [_chat(1, "Family", "Mum", "Dad")]
        suggestion = resolve_chat(chats, "  family ", {"Alice", "Bob"})
        self.assertIsNotNone(suggestion)
        self.assertEqual(suggestion.chat_id, 1)
        self.assertEqual(suggestion.match_step, MATCH_STEP_NAME)
        self.assertEqual(suggestion.confidence, 95)

    def test_best_participant_overlap_wins(self) -> None:
        transcript = {"Alice", "Bob", "Carol", "Dave"}
        chats = [
            _chat(1, "Weak", "Alice", "Xavier", "Yolanda", "Zed"),
            _chat(2, "Strong", "Alice", "Bob", "Carol", "Erin"),
        ]
        suggestion = resolve_chat(chats, "Something new", transcript)
        self.assertEqual(suggestion.chat_id, 2)
        self.assertEqual(suggestion.match_step, MATCH_STEP_PARTICIPANTS)
        self.assertEqual(suggestion.confidence, 75)

    def test_overlap_tie_goes_to_lowest_id(self) -> None:
        chats = [_chat(9, "Later", "Alice", "Bob"), _chat(4, "Earlier", "Alice", "Bob")]
        suggestion = resolve_chat(chats, None, {"Alice", "Bob"})
        self.assertEqual(suggestion.chat_id, 4)
        self.assertEqual(suggestion.confidence, 100)

    def test_generic_fallback_below_threshold(self) -> None:
        chats = [
            _chat(1, "Named", "Alice", "Xavier", "Yolanda"),
            _chat(2, "WhatsApp Chat", "Alice", "Quinn", "Rita"),
        ]
        suggestion = resolve_chat(chats, "_chat", {"Alice", "Bob", "Carol"})
        self.assertEqual(suggestion.chat_id, 2)
        self.assertEqual(suggestion.match_step, MATCH_STEP_GENERIC)
        # 1/3 overlap weighted by 70
        self.assertEqual(suggestion.confidence, 23)

    def test_generic_name_guess_never_matches_by_name(self) -> None:
        chats = [_chat(1, "Chat", "Mum")]
        self.assertIsNone(resolve_chat(chats, "chat", {"Alice"}))

    def test_no_match_creates_new_chat(self) -> None:
        self.assertIsNone(resolve_chat([], "Family", {"Alice"}))
        self.assertIsNone(resolve_chat([_chat(1, "Other", "Mum")], "Family", {"Alice"}))


if __name__ == "__main__":
    unittest.main()

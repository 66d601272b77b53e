"""Tests for turns/follow_up.py -- steering detection and follow-up batching."""

import pytest

from threadrunner.models.session import ConversationKey
from threadrunner.turns.follow_up import (
    FollowUpQueue,
    QueuedFollowUp,
    format_follow_up_prompt,
    is_steering_message,
    summarize_follow_up_batch,
)

CONVERSATION = ConversationKey("C1", "1700000000.000100")


def _item(text: str, event_id: str, user_id: str = "U1", in_thread: bool = True) -> QueuedFollowUp:
    return QueuedFollowUp(user_id=user_id, event_id=event_id, text=text, is_in_thread=in_thread)


class TestIsSteeringMessage:
    """Steering phrases must redirect, plain corrections must not."""

    @pytest.mark.parametrize(
        "text",
        [
            "actually do this instead",
            "Actually, don't touch the tests",
            "instead, update the docs",
            "ignore that and refactor this",
            "scratch that",
            "please don't do that",
            "do not do that",
            "stop",
            "Cancel",
            "  /abort  ",
        ],
    )
    def test_steering(self, text: str) -> None:
        assert is_steering_message(text) is True

    @pytest.mark.parametrize(
        "text",
        [
            "Please run the test suite",
            "This is actually correct",
            "I used npm instead of yarn",
            "don't stop believing",
            "please cancel the calendar event",
            "",
            "   ",
        ],
    )
    def test_not_steering(self, text: str) -> None:
        assert is_steering_message(text) is False


class TestFollowUpQueue:
    """Per-conversation queue behaviour."""

    def test_enqueue_appends_in_order(self) -> None:
        queue = FollowUpQueue()
        queue.enqueue("k", _item("one", "1"))
        queue.enqueue("k", _item("two", "2"))
        assert queue.count("k") == 2
        assert [i.text for i in queue.drain("k")] == ["one", "two"]

    def test_steering_clears_previous_items(self) -> None:
        queue = FollowUpQueue()
        queue.enqueue("k", _item("run tests", "1"))
        queue.enqueue("k", _item("actually, don't do that; update docs instead", "2"))

        batch = queue.drain("k")
        assert len(batch) == 1
        assert batch[0].event_id == "2"

    def test_drain_empties_queue(self) -> None:
        queue = FollowUpQueue()
        queue.enqueue("k", _item("one", "1"))
        queue.drain("k")
        assert queue.count("k") == 0
        assert queue.drain("k") == []

    def test_keys_are_independent(self) -> None:
        queue = FollowUpQueue()
        queue.enqueue("a", _item("one", "1"))
        queue.enqueue("b", _item("scratch that", "2"))
        assert queue.count("a") == 1
        assert queue.count("b") == 1

    def test_clear(self) -> None:
        queue = FollowUpQueue()
        queue.enqueue("k", _item("one", "1"))
        queue.clear("k")
        assert queue.count("k") == 0


class TestFormatFollowUpPrompt:
    def test_empty(self) -> None:
        assert format_follow_up_prompt([]) == ""

    def test_single_is_bare_text(self) -> None:
        assert format_follow_up_prompt([_item("just this", "1")]) == "just this"

    def test_multiple_are_attributed(self) -> None:
        batch = [_item("first", "1", "U1"), _item("second", "2", "U2")]
        assert format_follow_up_prompt(batch) == "[U1]: first\n\n[U2]: second"


class TestSummarizeFollowUpBatch:
    def test_empty_batch(self) -> None:
        assert summarize_follow_up_batch(CONVERSATION, []) is None

    def test_event_ids_union_in_arrival_order(self) -> None:
        batch = [_item("a", "3"), _item("b", "1"), _item("c", "3"), _item("d", "2")]
        turn = summarize_follow_up_batch(CONVERSATION, batch)

        assert turn is not None
        assert turn.event_ids == ["3", "1", "2"]
        assert turn.excluded_history_ids == ["3", "1", "2"]
        assert turn.event_id == "2"
        assert turn.conversation == CONVERSATION

    def test_history_included_if_any_item_in_thread(self) -> None:
        batch = [_item("a", "1", in_thread=False), _item("b", "2", in_thread=True)]
        turn = summarize_follow_up_batch(CONVERSATION, batch)
        assert turn is not None
        assert turn.include_history is True

    def test_history_excluded_when_no_item_in_thread(self) -> None:
        turn = summarize_follow_up_batch(CONVERSATION, [_item("a", "1", in_thread=False)])
        assert turn is not None
        assert turn.include_history is False
        assert turn.message == "a"

    def test_latest_author_is_attributed(self) -> None:
        batch = [_item("a", "1", "U1"), _item("b", "2", "U2")]
        turn = summarize_follow_up_batch(CONVERSATION, batch)
        assert turn is not None
        assert turn.user_id == "U2"
        assert turn.message == "[U1]: a\n\n[U2]: b"

"""Follow-up queue for messages that arrive while a turn is executing.

A steering message ("scratch that", "actually ... instead", a bare "stop")
clears everything queued before it, so an abandoned instruction is never
run once the current turn frees up.
"""

import re
from dataclasses import dataclass

import structlog

from threadrunner.models.session import ConversationKey
from threadrunner.turns.pending import PendingTurn, dedupe_event_ids

logger = structlog.get_logger(__name__)

STEERING_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"^actually[\s,].*(?:instead|don't|do not|stop|cancel|ignore|scratch|wait|no)\b",
        re.IGNORECASE,
    ),
    re.compile(r"^instead[\s,]", re.IGNORECASE),
    re.compile(r"\bignore that\b", re.IGNORECASE),
    re.compile(r"\bscratch that\b", re.IGNORECASE),
    re.compile(r"\bdon't do that\b", re.IGNORECASE),
    re.compile(r"\bdo not do that\b", re.IGNORECASE),
    re.compile(r"^(?:stop|cancel|abort|/abort)$", re.IGNORECASE),
)


def is_steering_message(text: str) -> bool:
    """Return True if the message overrides previously queued intent.

    Examples:
        >>> is_steering_message("scratch that")
        True
        >>> is_steering_message("This is actually correct")
        False
    """
    text = text.strip()
    if not text:
        return False
    return any(pattern.search(text) for pattern in STEERING_PATTERNS)


@dataclass
class QueuedFollowUp:
    """A message queued behind the executing turn."""

    user_id: str
    event_id: str
    text: str
    is_in_thread: bool = True


class FollowUpQueue:
    """Per-conversation FIFO of queued follow-ups."""

    def __init__(self) -> None:
        self._queues: dict[str, list[QueuedFollowUp]] = {}

    def enqueue(self, key: str, item: QueuedFollowUp) -> None:
        queue = self._queues.setdefault(key, [])
        if queue and is_steering_message(item.text):
            logger.info("follow_ups_superseded", key=key, dropped=len(queue))
            queue.clear()
        queue.append(item)

    def drain(self, key: str) -> list[QueuedFollowUp]:
        """Remove and return everything queued for the key."""
        return self._queues.pop(key, [])

    def count(self, key: str) -> int:
        return len(self._queues.get(key, []))

    def clear(self, key: str) -> None:
        self._queues.pop(key, None)


def format_follow_up_prompt(batch: list[QueuedFollowUp]) -> str:
    if not batch:
        return ""
    if len(batch) == 1:
        return batch[0].text
    return "\n\n".join(f"[{item.user_id}]: {item.text}" for item in batch)


def summarize_follow_up_batch(
    conversation: ConversationKey, batch: list[QueuedFollowUp]
) -> PendingTurn | None:
    """Fold a drained batch into the next turn.

    The latest item is the primary reference. Every drained event is
    excluded from history replay since it is already in the message.

    Returns:
        The next turn, or None for an empty batch.
    """
    if not batch:
        return None

    latest = batch[-1]
    event_ids = dedupe_event_ids(item.event_id for item in batch)
    is_in_thread = any(item.is_in_thread for item in batch)
    return PendingTurn(
        conversation=conversation,
        user_id=latest.user_id,
        event_id=latest.event_id,
        message=format_follow_up_prompt(batch),
        event_ids=event_ids,
        is_in_thread=is_in_thread,
        include_history=is_in_thread,
        excluded_history_ids=list(event_ids),
    )

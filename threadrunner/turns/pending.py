"""The unit of work consumed by the turn executor."""

from collections.abc import Iterable
from dataclasses import dataclass, field

from threadrunner.models.session import ConversationKey


def dedupe_event_ids(event_ids: Iterable[str]) -> list[str]:
    """Drop repeated identifiers, keeping first-arrival order."""
    return list(dict.fromkeys(event_ids))


@dataclass
class PendingTurn:
    """One turn to execute for a conversation.

    Attributes:
        conversation: Conversation the turn belongs to.
        user_id: Author of the latest folded-in message.
        event_id: Primary reference (the latest folded-in event).
        event_ids: Every coalesced event, deduplicated in arrival order.
        message: Prompt text sent to the agent.
        is_in_thread: Whether any folded-in message was conversational.
        include_history: Whether prior conversation messages are replayed.
        excluded_history_ids: Events never replayed as history because they
            are already part of ``message``.
    """

    conversation: ConversationKey
    user_id: str
    event_id: str
    message: str
    event_ids: list[str] = field(default_factory=list)
    is_in_thread: bool = True
    include_history: bool = True
    excluded_history_ids: list[str] = field(default_factory=list)


def build_initial_pending_turn(
    conversation: ConversationKey,
    user_id: str,
    message: str,
    event_ids: Iterable[str],
    fallback_event_id: str,
    is_in_thread: bool = True,
) -> PendingTurn:
    """Build the first turn of a run from a debounced batch.

    Args:
        conversation: Conversation the turn belongs to.
        user_id: Author of the messages.
        message: Merged message text.
        event_ids: Identifiers collected while debouncing.
        fallback_event_id: Primary reference if ``event_ids`` is empty.
        is_in_thread: Whether the message is part of an ongoing thread.

    Returns:
        The pending turn. The latest identifier is the primary reference.
    """
    deduped = dedupe_event_ids(event_ids)
    return PendingTurn(
        conversation=conversation,
        user_id=user_id,
        event_id=deduped[-1] if deduped else fallback_event_id,
        message=message,
        event_ids=deduped,
        is_in_thread=is_in_thread,
        include_history=is_in_thread,
        excluded_history_ids=list(deduped),
    )

"""Turn coalescing and execution.

Inbound messages are debounced and queued by the TurnCoalescer, and each
resulting PendingTurn is run end-to-end by the TurnExecutor.
"""

from threadrunner.turns.coalescer import InboundMessage, TurnCoalescer, extract_control_command
from threadrunner.turns.debouncer import DebounceResult, Debouncer
from threadrunner.turns.executor import TurnExecutor, TurnResult
from threadrunner.turns.follow_up import (
    FollowUpQueue,
    QueuedFollowUp,
    format_follow_up_prompt,
    is_steering_message,
    summarize_follow_up_batch,
)
from threadrunner.turns.pending import PendingTurn, build_initial_pending_turn

__all__ = [
    "DebounceResult",
    "Debouncer",
    "FollowUpQueue",
    "InboundMessage",
    "PendingTurn",
    "QueuedFollowUp",
    "TurnCoalescer",
    "TurnExecutor",
    "TurnResult",
    "build_initial_pending_turn",
    "extract_control_command",
    "format_follow_up_prompt",
    "is_steering_message",
    "summarize_follow_up_batch",
]

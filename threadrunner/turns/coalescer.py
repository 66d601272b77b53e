"""Turn coalescer: the per-conversation front end of the executor.

State per conversation::

    idle -> debouncing -> executing -> (drain follow-ups) -> executing | idle

The first message of an idle conversation opens a debounce window keyed by
conversation and author. Messages from the same author extend that window
until it closes; any other message arriving while the conversation is in
flight goes to the follow-up queue. After each turn the queue is drained and
summarized into the next turn, so turns of one conversation never overlap.

Usage:
    >>> coalescer = TurnCoalescer(executor, debounce_seconds=1.5, on_result=post_reply)
    >>> coalescer.submit(InboundMessage(conversation, "U1", "1700.1", "fix the build"))
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

import structlog

from threadrunner.errors import error_kind, is_expected_cancellation
from threadrunner.models.schemas import SessionReport
from threadrunner.models.session import ConversationKey
from threadrunner.turns.debouncer import Debouncer
from threadrunner.turns.executor import TurnExecutor, TurnResult
from threadrunner.turns.follow_up import (
    FollowUpQueue,
    QueuedFollowUp,
    summarize_follow_up_batch,
)
from threadrunner.turns.pending import PendingTurn, build_initial_pending_turn

logger = structlog.get_logger(__name__)


class ControlCommand(StrEnum):
    STATUS = "status"
    ABORT = "abort"


def extract_control_command(text: str) -> ControlCommand | None:
    """Return the control command a message consists of, if any.

    Examples:
        >>> extract_control_command("  /Status ")
        <ControlCommand.STATUS: 'status'>
        >>> extract_control_command("please abort the deploy") is None
        True
    """
    value = text.strip().lower()
    if value in ("status", "/status"):
        return ControlCommand.STATUS
    if value in ("abort", "/abort"):
        return ControlCommand.ABORT
    return None


@dataclass
class InboundMessage:
    """A chat message handed to the coalescer."""

    conversation: ConversationKey
    user_id: str
    event_id: str
    text: str
    is_in_thread: bool = True


ResultCallback = Callable[[PendingTurn, TurnResult], Awaitable[None]]
ErrorCallback = Callable[[PendingTurn | None, BaseException], Awaitable[None]]
ControlCallback = Callable[[InboundMessage, SessionReport], Awaitable[None]]


class TurnCoalescer:
    """Debounces, queues and sequences turns per conversation.

    Attributes:
        executor: Executor that runs each turn.
        debouncer: Debouncer shared by all conversations.
        follow_ups: Follow-up queue shared by all conversations.
    """

    def __init__(
        self,
        executor: TurnExecutor,
        *,
        debounce_seconds: float = 1.5,
        is_user_allowed: Callable[[str], bool] | None = None,
        is_channel_allowed: Callable[[str], bool] | None = None,
        on_result: ResultCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_control: ControlCallback | None = None,
    ) -> None:
        self.executor = executor
        self.debouncer = Debouncer(debounce_seconds)
        self.follow_ups = FollowUpQueue()
        self.is_user_allowed = is_user_allowed
        self.is_channel_allowed = is_channel_allowed
        self.on_result = on_result
        self.on_error = on_error
        self.on_control = on_control
        self._in_flight: set[str] = set()
        self._debouncing: dict[str, str] = {}
        self._executing: set[str] = set()
        self._tasks: set[asyncio.Task[SessionReport | None]] = set()

    def is_in_flight(self, conversation: ConversationKey) -> bool:
        return conversation.key in self._in_flight

    def submit(self, message: InboundMessage) -> asyncio.Task[SessionReport | None]:
        """Process a message in the background and return its task."""
        task = asyncio.create_task(self.process(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every submitted message to finish processing."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def is_allowed(self, message: InboundMessage) -> bool:
        """Apply the user and channel allowlists."""
        if self.is_user_allowed is not None and not self.is_user_allowed(message.user_id):
            return False
        if self.is_channel_allowed is not None and not self.is_channel_allowed(
            message.conversation.channel_id
        ):
            return False
        return True

    async def process(self, message: InboundMessage) -> SessionReport | None:
        """Handle one inbound message.

        Control commands return their report. A message that starts a run
        is processed until the conversation has nothing left to execute.
        Messages folded into an existing batch or queued return at once.
        """
        conversation = message.conversation
        if not self.is_allowed(message):
            logger.info(
                "message_dropped_unauthorized",
                user_id=message.user_id,
                channel_id=conversation.channel_id,
            )
            return None

        command = extract_control_command(message.text)
        if command is not None:
            return await self._run_control(command, message)

        key = conversation.key
        debounce_key = f"{key}:{message.user_id}"

        if key in self._in_flight:
            if self._debouncing.get(key) == debounce_key:
                # Same author while the first batch is still open: keep batching.
                self.debouncer.debounce(debounce_key, message.text, message.event_id)
                return None

            self.follow_ups.enqueue(
                key,
                QueuedFollowUp(
                    user_id=message.user_id,
                    event_id=message.event_id,
                    text=message.text,
                    is_in_thread=message.is_in_thread,
                ),
            )
            logger.debug(
                "follow_up_queued",
                conversation_key=key,
                queued=self.follow_ups.count(key),
            )
            return None

        self._in_flight.add(key)
        await self._run(message, debounce_key)
        return None

    async def _run_control(
        self, command: ControlCommand, message: InboundMessage
    ) -> SessionReport:
        if command is ControlCommand.STATUS:
            report = await self.executor.status(message.conversation)
        else:
            report = await self.executor.abort(message.conversation)
        logger.info(
            "control_command_handled",
            command=str(command),
            conversation_key=message.conversation.key,
            status=str(report.status),
        )
        if self.on_control is not None:
            await self.on_control(message, report)
        return report

    async def _run(self, message: InboundMessage, debounce_key: str) -> None:
        conversation = message.conversation
        key = conversation.key
        turn: PendingTurn | None = None

        try:
            self._debouncing[key] = debounce_key
            batch = await self.debouncer.debounce(debounce_key, message.text, message.event_id)
            self._debouncing.pop(key, None)

            turn = build_initial_pending_turn(
                conversation,
                message.user_id,
                batch.message,
                batch.event_ids,
                fallback_event_id=message.event_id,
                is_in_thread=message.is_in_thread,
            )

            while turn is not None:
                await self._execute(turn)

                queued = self.follow_ups.drain(key)
                if queued:
                    logger.debug("follow_ups_draining", conversation_key=key, queued=len(queued))
                turn = summarize_follow_up_batch(conversation, queued)
        except Exception as e:
            self.debouncer.cancel(debounce_key)
            self.follow_ups.clear(key)

            if is_expected_cancellation(e):
                logger.warning(
                    "message_processing_interrupted",
                    conversation_key=key,
                    reason=str(e),
                )
                return

            logger.error(
                "message_processing_failed",
                conversation_key=key,
                kind=str(error_kind(e) or "unknown"),
                error=str(e),
            )
            if self.on_error is not None:
                await self.on_error(turn, e)
        finally:
            self._in_flight.discard(key)
            self._debouncing.pop(key, None)

    async def _execute(self, turn: PendingTurn) -> TurnResult:
        key = turn.conversation.key
        if key in self._executing:
            raise RuntimeError(f"Overlapping turns for {key}")

        self._executing.add(key)
        try:
            result = await self.executor.run_turn(turn)
        finally:
            self._executing.discard(key)

        if result.error is not None:
            logger.info(
                "turn_not_started",
                conversation_key=key,
                kind=str(error_kind(result.error)),
            )
        if self.on_result is not None:
            await self.on_result(turn, result)
        return result

"""Per-key debounce of rapid message bursts.

Every call for a key appends its text to the pending batch and restarts the
quiet window. When the window elapses with no new arrival, all callers of
that batch receive the same merged result.
"""

import asyncio
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)

MESSAGE_SEPARATOR = "\n\n"


@dataclass
class DebounceResult:
    """A merged batch: parts joined by blank lines, event ids in arrival order."""

    message: str
    event_ids: list[str]


@dataclass
class _Batch:
    parts: list[str] = field(default_factory=list)
    event_ids: list[str] = field(default_factory=list)
    waiters: list[asyncio.Future[DebounceResult]] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None


class Debouncer:
    """Merges messages arriving for the same key within a quiet window.

    Attributes:
        window_seconds: Quiet period that closes a batch.
    """

    def __init__(self, window_seconds: float = 1.5) -> None:
        self.window_seconds = window_seconds
        self._batches: dict[str, _Batch] = {}

    def debounce(
        self, key: str, text: str, event_id: str | None = None
    ) -> asyncio.Future[DebounceResult]:
        """Add a message to the key's batch and restart its window.

        Args:
            key: Batch key.
            text: Message text appended to the batch.
            event_id: Optional event identifier (deduplicated).

        Returns:
            A future resolved with the merged batch once the window closes,
            or cancelled if the batch is cancelled.
        """
        loop = asyncio.get_running_loop()
        batch = self._batches.get(key)
        if batch is None:
            batch = _Batch()
            self._batches[key] = batch

        batch.parts.append(text)
        if event_id is not None and event_id not in batch.event_ids:
            batch.event_ids.append(event_id)

        waiter: asyncio.Future[DebounceResult] = loop.create_future()
        batch.waiters.append(waiter)

        if batch.timer is not None:
            batch.timer.cancel()
        batch.timer = loop.call_later(self.window_seconds, self._flush, key)

        logger.debug("message_debounced", key=key, pending=len(batch.parts))
        return waiter

    def _flush(self, key: str) -> None:
        batch = self._batches.pop(key, None)
        if batch is None:
            return
        result = DebounceResult(
            message=MESSAGE_SEPARATOR.join(batch.parts),
            event_ids=list(batch.event_ids),
        )
        for waiter in batch.waiters:
            if not waiter.done():
                waiter.set_result(result)

    def has_pending(self, key: str) -> bool:
        return key in self._batches

    def cancel(self, key: str) -> None:
        """Drop the key's batch; its waiters are cancelled."""
        batch = self._batches.pop(key, None)
        if batch is None:
            return
        if batch.timer is not None:
            batch.timer.cancel()
        for waiter in batch.waiters:
            waiter.cancel()
        logger.debug("debounce_cancelled", key=key, dropped=len(batch.parts))

"""HTTP API routes for the threadrunner control surface.

This module defines the endpoints a chat layer uses to feed messages into
the turn coalescer and to run the ``status`` and ``abort`` control commands,
plus session listing and health checks.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status

from threadrunner import __version__
from threadrunner.models.schemas import (
    HealthResponse,
    PoolStats,
    SessionReport,
    SessionStatus,
    SessionSummaryResponse,
    SubmitMessageRequest,
    SubmitMessageResponse,
)
from threadrunner.models.session import ConversationKey
from threadrunner.turns.coalescer import InboundMessage

if TYPE_CHECKING:
    from threadrunner.turns.coalescer import TurnCoalescer

logger = structlog.get_logger(__name__)

router = APIRouter()

ChannelId = Annotated[str, Path(description="Channel identifier", min_length=1)]
ThreadId = Annotated[str, Path(description="Thread identifier", min_length=1)]


# Coalescer dependency (set during application startup)
_coalescer: TurnCoalescer | None = None


def set_coalescer(coalescer: TurnCoalescer) -> None:
    """Set the turn coalescer instance for the routes.

    This should be called during application startup to inject the
    coalescer dependency.

    Args:
        coalescer: The TurnCoalescer instance to use for all routes.
    """
    global _coalescer
    _coalescer = coalescer
    logger.info("coalescer_configured")


def get_coalescer() -> TurnCoalescer:
    """Get the turn coalescer instance.

    Raises:
        RuntimeError: If the coalescer has not been configured.
    """
    if _coalescer is None:
        logger.error("coalescer_not_configured")
        raise RuntimeError("TurnCoalescer not configured. Call set_coalescer() during startup.")
    return _coalescer


def _conversation(channel_id: str, thread_id: str) -> ConversationKey:
    if ":" in channel_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="channel_id must not contain ':'",
        )
    return ConversationKey(channel_id=channel_id, thread_id=thread_id)


@router.post(
    "/api/conversations/{channel_id}/{thread_id}/messages",
    response_model=SubmitMessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a message",
    description="Feed an inbound chat message to the turn coalescer.",
)
async def submit_message(
    channel_id: ChannelId,
    thread_id: ThreadId,
    request: SubmitMessageRequest,
) -> SubmitMessageResponse:
    """Accept a message for debouncing, queueing and execution.

    Processing happens in the background; results are delivered through the
    coalescer's callbacks.
    """
    coalescer = get_coalescer()
    conversation = _conversation(channel_id, thread_id)
    message = InboundMessage(
        conversation=conversation,
        user_id=request.user_id,
        event_id=request.event_id,
        text=request.text,
        is_in_thread=request.in_thread,
    )

    accepted = coalescer.is_allowed(message)
    if accepted:
        coalescer.submit(message)
    else:
        logger.info("message_rejected", conversation_key=conversation.key, user_id=request.user_id)

    return SubmitMessageResponse(conversation_key=conversation.key, accepted=accepted)


@router.get(
    "/api/conversations/{channel_id}/{thread_id}/status",
    response_model=SessionReport,
    summary="Session status",
    description="Read-only report of the conversation's coding session.",
)
async def get_status(channel_id: ChannelId, thread_id: ThreadId) -> SessionReport:
    coalescer = get_coalescer()
    return await coalescer.executor.status(_conversation(channel_id, thread_id))


@router.post(
    "/api/conversations/{channel_id}/{thread_id}/abort",
    response_model=SessionReport,
    summary="Abort the running job",
    description="Best-effort stop of the agent process, then reset the session to idle.",
)
async def abort(channel_id: ChannelId, thread_id: ThreadId) -> SessionReport:
    coalescer = get_coalescer()
    report = await coalescer.executor.abort(_conversation(channel_id, thread_id))
    logger.info("abort_requested", channel_id=channel_id, thread_id=thread_id, status=str(report.status))
    return report


@router.get(
    "/api/sessions",
    response_model=list[SessionSummaryResponse],
    summary="List sessions",
    description="List persisted subagent sessions, most recently updated first.",
)
async def list_sessions(
    limit: Annotated[int, Query(description="Maximum sessions to return", ge=1, le=200)] = 25,
    offset: Annotated[int, Query(description="Sessions to skip", ge=0)] = 0,
    session_status: Annotated[
        SessionStatus | None, Query(alias="status", description="Filter by status")
    ] = None,
) -> list[SessionSummaryResponse]:
    """List sessions from the durable store."""
    store = get_coalescer().executor.registry.store
    sessions = await store.list_sessions(limit=limit, offset=offset, status=session_status)
    return [
        SessionSummaryResponse(
            session_id=session.id,
            conversation_key=session.conversation_key,
            sandbox_name=session.sandbox_name,
            status=session.status,
            running_job_id=session.running_job_id,
            last_job_id=session.last_job_id,
            last_error=session.last_error,
            turns=session.turns,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )
        for session in sessions
    ]


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with runner pool status in pool mode.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    In pool mode the service is unhealthy once no runner is ready or
    still initializing, since every turn would fail with NoRunnersAvailable.
    """
    overall_status = "healthy"
    execution_mode = "unknown"
    pool_stats: PoolStats | None = None

    try:
        executor = get_coalescer().executor
        execution_mode = executor.execution_mode
        if executor.pool is not None:
            pool_stats = PoolStats(**executor.pool.stats())
            if pool_stats.ready == 0 and pool_stats.initializing == 0:
                overall_status = "unhealthy"
    except RuntimeError:
        # Coalescer not configured yet (e.g., during startup)
        overall_status = "starting"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        timestamp=time.time(),
        execution_mode=execution_mode,
        pool=pool_stats,
    )

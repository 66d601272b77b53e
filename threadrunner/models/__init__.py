"""Models module for sessions, persistence and API schemas.

This module exposes the session record, the durable store and the
request/response models used by the API.
"""

from threadrunner.models.database import SessionStore
from threadrunner.models.schemas import (
    HealthResponse,
    PoolStats,
    RunnerState,
    SessionReport,
    SessionStatus,
    SessionSummaryResponse,
    SubmitMessageRequest,
    SubmitMessageResponse,
    TurnStatus,
)
from threadrunner.models.session import (
    ConversationKey,
    SubagentSession,
    make_job_id,
    make_sandbox_name,
    make_session_id,
)

__all__ = [
    "ConversationKey",
    "HealthResponse",
    "PoolStats",
    "RunnerState",
    "SessionReport",
    "SessionStatus",
    "SessionStore",
    "SessionSummaryResponse",
    "SubagentSession",
    "SubmitMessageRequest",
    "SubmitMessageResponse",
    "TurnStatus",
    "make_job_id",
    "make_sandbox_name",
    "make_session_id",
]

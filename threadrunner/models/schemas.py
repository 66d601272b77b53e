"""Enums and Pydantic schemas for the control surface.

This module defines the lifecycle enums shared by the core and the data models
used by the HTTP API. All models use Pydantic v2.
"""

from enum import StrEnum

from pydantic import BaseModel, Field


class SessionStatus(StrEnum):
    """Subagent session lifecycle status."""

    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"


class RunnerState(StrEnum):
    """Pool runner provisioning state."""

    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class TurnStatus(StrEnum):
    """Outcome reported for a turn or control command."""

    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"
    COMPLETED = "completed"
    ABORTED = "aborted"
    NOT_FOUND = "not_found"


class SubmitMessageRequest(BaseModel):
    """Request body for submitting an inbound chat message."""

    user_id: str = Field(min_length=1, description="Author of the message", examples=["U123"])
    event_id: str = Field(
        min_length=1,
        description="Identifier of the inbound event",
        examples=["1700000000.000100"],
    )
    text: str = Field(
        min_length=1,
        max_length=40000,
        description="Raw message text",
        examples=["Add a retry to the upload step"],
    )
    in_thread: bool = Field(
        default=True,
        description="Whether the message is part of an ongoing conversation thread",
    )


class SubmitMessageResponse(BaseModel):
    """Response for an accepted inbound message."""

    conversation_key: str = Field(description="Composite conversation identity")
    accepted: bool = Field(description="False if the message was dropped by an allowlist")


class SessionReport(BaseModel):
    """Read-only report of a conversation's subagent session."""

    status: TurnStatus = Field(description="Session or control-command status")
    session_id: str | None = Field(default=None, examples=["sa_0123456789abcdef"])
    job_id: str | None = Field(default=None, examples=["job_1a2b3c4d"])
    sandbox_name: str | None = Field(default=None, examples=["tr-0123456789ab"])
    message: str | None = Field(default=None, description="Human-readable summary")


class SessionSummaryResponse(BaseModel):
    """Persisted session row for listing."""

    session_id: str
    conversation_key: str
    sandbox_name: str
    status: SessionStatus
    running_job_id: str | None = None
    last_job_id: str | None = None
    last_error: str | None = None
    turns: int = 0
    created_at: float
    updated_at: float


class PoolStats(BaseModel):
    """Runner pool counters."""

    total: int = 0
    ready: int = 0
    available: int = 0
    initializing: int = 0
    failed: int = 0


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service health status", examples=["healthy"])
    version: str = Field(description="API version", examples=["0.1.0"])
    timestamp: float = Field(description="Unix timestamp of health check")
    execution_mode: str = Field(description="session or pool")
    pool: PoolStats | None = Field(default=None, description="Pool counters in pool mode")

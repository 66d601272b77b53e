"""Conversation identity and the subagent session record.

Session ids and sandbox names are derived from the conversation key with a
stable hash, so the same conversation maps to the same identity across
restarts even if no bookkeeping row was ever written.
"""

import hashlib
import time
import uuid
from dataclasses import dataclass, field

from threadrunner.models.schemas import SessionStatus

SESSION_ID_PREFIX = "sa_"
SESSION_ID_HASH_CHARS = 16
SANDBOX_NAME_HASH_CHARS = 12


@dataclass(frozen=True)
class ConversationKey:
    """Identity of one logical conversation (channel + thread)."""

    channel_id: str
    thread_id: str

    @property
    def key(self) -> str:
        return f"{self.channel_id}:{self.thread_id}"

    @classmethod
    def parse(cls, key: str) -> "ConversationKey":
        """Parse a ``channel:thread`` string."""
        channel_id, sep, thread_id = key.partition(":")
        if not sep or not channel_id or not thread_id:
            raise ValueError(f"Invalid conversation key: {key!r}")
        return cls(channel_id=channel_id, thread_id=thread_id)

    def __str__(self) -> str:
        return self.key


def _digest(conversation: ConversationKey) -> str:
    return hashlib.sha256(conversation.key.encode("utf-8")).hexdigest()


def make_session_id(conversation: ConversationKey) -> str:
    """Return the deterministic session id for a conversation."""
    return f"{SESSION_ID_PREFIX}{_digest(conversation)[:SESSION_ID_HASH_CHARS]}"


def make_sandbox_name(conversation: ConversationKey, prefix: str = "tr-") -> str:
    """Return the deterministic sandbox name for a conversation."""
    return f"{prefix}{_digest(conversation)[:SANDBOX_NAME_HASH_CHARS]}"


def make_job_id() -> str:
    """Return a fresh job identifier."""
    return f"job_{uuid.uuid4().hex[:8]}"


@dataclass
class SubagentSession:
    """Durable binding of a conversation to a sandboxed agent.

    Invariant: ``running_job_id`` is set if and only if ``status`` is RUNNING.

    Attributes:
        id: Deterministic session id derived from the conversation key.
        conversation_key: ``channel:thread`` identity.
        sandbox_name: Deterministic sandbox name derived from the same key.
        agent_session_file: Path the agent uses for its own continuity.
        status: idle, running or error.
        running_job_id: Job currently executing (only while running).
        last_job_id: Most recent completed job.
        last_error: Most recent failure message.
        turns: Number of completed turns.
        created_at: Unix timestamp of creation.
        updated_at: Unix timestamp of the last change.
    """

    id: str
    conversation_key: str
    sandbox_name: str
    agent_session_file: str
    status: SessionStatus = SessionStatus.IDLE
    running_job_id: str | None = None
    last_job_id: str | None = None
    last_error: str | None = None
    turns: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def conversation(self) -> ConversationKey:
        return ConversationKey.parse(self.conversation_key)

    def mark_running(self, job_id: str) -> None:
        self.status = SessionStatus.RUNNING
        self.running_job_id = job_id
        self.touch()

    def mark_idle(self) -> None:
        self.status = SessionStatus.IDLE
        self.running_job_id = None
        self.touch()

    def mark_completed(self, job_id: str) -> None:
        self.status = SessionStatus.IDLE
        self.running_job_id = None
        self.last_job_id = job_id
        self.last_error = None
        self.turns += 1
        self.touch()

    def mark_error(self, error: str) -> None:
        self.status = SessionStatus.ERROR
        self.running_job_id = None
        self.last_error = error
        self.touch()

    def touch(self) -> None:
        self.updated_at = time.time()

"""Session registry binding conversations to sandboxed agent sessions.

This module provides the SessionRegistry class, which owns the in-memory
session caches and the set of sandboxes already bootstrapped by this
process. It is constructed once at startup and shared by reference.

Identity is deterministic: the session id and sandbox name are hashes of
the conversation key. The durable store is a cache of bookkeeping, so a
conversation whose row was lost is rebuilt from its key instead of failing.

Usage:
    >>> registry = SessionRegistry(client, store)
    >>> await registry.reconcile_all()
    >>> session, created = await registry.ensure(ConversationKey("C1", "1700.1"))
"""

import asyncio
import shlex

import structlog

from threadrunner.errors import ProvisioningError
from threadrunner.models.database import SessionStore
from threadrunner.models.schemas import SessionStatus
from threadrunner.models.session import (
    ConversationKey,
    SubagentSession,
    make_sandbox_name,
    make_session_id,
)
from threadrunner.sandbox.client import (
    DEFAULT_NETWORK_POLICY,
    ExecOptions,
    NetworkRule,
    SandboxClient,
)
from threadrunner.sandbox.security import truncate_diagnostic

logger = structlog.get_logger(__name__)

BOOTSTRAP_TIMEOUT_SECONDS = 600
PROCESS_PROBE_TIMEOUT_SECONDS = 10
RECONCILE_BATCH_SIZE = 1000

_ERE_SPECIAL = set("\\.^$|?*+()[]{}")


def session_process_pattern(session_file: str) -> str:
    """Build a ``pgrep -f`` pattern for an agent using ``session_file``.

    The bracketed first character keeps the pattern from matching its own
    text, so the probing process (or a wrapper such as ``timeout``) never
    reports itself as the agent.
    """
    escaped = "".join(f"\\{char}" if char in _ERE_SPECIAL else char for char in session_file)
    return f"[-]-session {escaped}"


class SessionRegistry:
    """Read-through, write-through cache of subagent sessions.

    Attributes:
        client: Sandbox backend used for bootstrap and process probes.
        store: Durable session store.
        sandbox_prefix: Prefix of per-conversation sandbox names.
    """

    def __init__(
        self,
        client: SandboxClient,
        store: SessionStore,
        *,
        sandbox_prefix: str = "tr-",
        agent_bin: str = "/usr/local/bin/pi",
        network_policy: list[NetworkRule] | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.sandbox_prefix = sandbox_prefix
        self.agent_bin = agent_bin
        self.network_policy = network_policy if network_policy is not None else DEFAULT_NETWORK_POLICY
        self._by_key: dict[str, SubagentSession] = {}
        self._by_id: dict[str, SubagentSession] = {}
        self._ready_sandboxes: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Sandbox paths
    # ------------------------------------------------------------------

    @property
    def workspace_dir(self) -> str:
        return f"{self.client.home_dir}/workspace"

    @property
    def artifacts_dir(self) -> str:
        return f"{self.client.home_dir}/artifacts"

    @property
    def sessions_dir(self) -> str:
        return f"{self.client.home_dir}/sessions"

    def session_file(self, session_id: str) -> str:
        return f"{self.sessions_dir}/{session_id}.jsonl"

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def lock_for(self, conversation: ConversationKey) -> asyncio.Lock:
        """Return the lock serializing state changes for one conversation."""
        lock = self._locks.get(conversation.key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation.key] = lock
        return lock

    def _cache(self, session: SubagentSession) -> None:
        self._by_key[session.conversation_key] = session
        self._by_id[session.id] = session

    def forget(self, conversation: ConversationKey) -> None:
        """Drop a conversation from the in-memory caches."""
        session = self._by_key.pop(conversation.key, None)
        if session is not None:
            self._by_id.pop(session.id, None)
            self._ready_sandboxes.discard(session.sandbox_name)

    async def persist(self, session: SubagentSession) -> None:
        """Write a session through the cache to the durable store."""
        self._cache(session)
        await self.store.upsert(session)

    def _new_session(self, conversation: ConversationKey) -> SubagentSession:
        session_id = make_session_id(conversation)
        return SubagentSession(
            id=session_id,
            conversation_key=conversation.key,
            sandbox_name=make_sandbox_name(conversation, self.sandbox_prefix),
            agent_session_file=self.session_file(session_id),
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def resolve(
        self,
        *,
        session_id: str | None = None,
        conversation: ConversationKey | None = None,
    ) -> SubagentSession | None:
        """Look a session up by id or conversation, cache first then store.

        Args:
            session_id: Session id to look up.
            conversation: Conversation to look up (used if no id is given).

        Returns:
            The session, or None if neither the cache nor the store has it.
        """
        if session_id is not None:
            session = self._by_id.get(session_id)
            if session is None:
                session = await self.store.get_by_id(session_id)
        elif conversation is not None:
            session = self._by_key.get(conversation.key)
            if session is None:
                session = await self.store.get_by_key(conversation.key)
        else:
            raise ValueError("resolve() needs a session_id or a conversation")

        if session is not None:
            self._cache(session)
        return session

    async def rehydrate(self, conversation: ConversationKey) -> SubagentSession | None:
        """Rebuild a missing session row from the conversation key.

        Only applies when the conversation's sandbox still exists; the
        rebuilt session is idle and persisted.

        Returns:
            The rebuilt session, or None if the sandbox does not exist.
        """
        session = self._new_session(conversation)
        if await self.client.get(session.sandbox_name) is None:
            return None

        await self.persist(session)
        logger.info(
            "session_rehydrated",
            session_id=session.id,
            sandbox=session.sandbox_name,
            conversation_key=conversation.key,
        )
        return session

    async def ensure(
        self, conversation: ConversationKey, *, provision: bool = True
    ) -> tuple[SubagentSession, bool]:
        """Return the conversation's session, creating it on first use.

        Args:
            conversation: The conversation.
            provision: Create and bootstrap the per-conversation sandbox.
                Pool-mode turns pass False since they borrow a runner.

        Returns:
            Tuple of (session, created).

        Raises:
            ProvisioningError: If the sandbox could not be created or bootstrapped.
        """
        existing = await self.resolve(conversation=conversation)
        if existing is not None:
            logger.debug("session_reused", session_id=existing.id, sandbox=existing.sandbox_name)
            return existing, False

        if provision:
            rehydrated = await self.rehydrate(conversation)
            if rehydrated is not None:
                return rehydrated, False

        session = self._new_session(conversation)
        if provision:
            await self.ensure_sandbox_ready(session.sandbox_name)
        await self.persist(session)
        logger.info(
            "session_created",
            session_id=session.id,
            sandbox=session.sandbox_name,
            conversation_key=conversation.key,
        )
        return session, True

    # ------------------------------------------------------------------
    # Sandbox bootstrap
    # ------------------------------------------------------------------

    async def ensure_sandbox_ready(self, sandbox_name: str) -> None:
        """Create and bootstrap a sandbox once per process.

        Raises:
            ProvisioningError: If the bootstrap command exits non-zero.
        """
        if sandbox_name in self._ready_sandboxes:
            return

        existing = await self.client.get(sandbox_name)
        if existing is None:
            logger.info("sandbox_creating", sandbox=sandbox_name)
            await self.client.create(sandbox_name)
        else:
            logger.debug("sandbox_found", sandbox=sandbox_name, status=existing.status)

        # Egress policy goes first so installs run under it.
        await self.client.set_network_policy(sandbox_name, self.network_policy)

        agent_bin = shlex.quote(self.agent_bin)
        bootstrap = " && ".join(
            [
                f"if [ ! -x {agent_bin} ]; then npm_config_update_notifier=false npm install -g "
                "--no-audit --no-fund @mariozechner/pi-coding-agent; fi",
                f"mkdir -p {self.workspace_dir} {self.artifacts_dir} {self.sessions_dir}",
            ]
        )
        result = await self.client.exec(
            sandbox_name,
            ["bash", "-c", bootstrap],
            ExecOptions(timeout_seconds=BOOTSTRAP_TIMEOUT_SECONDS),
        )
        if result.exit_code != 0:
            raise ProvisioningError(
                f"Failed to bootstrap sandbox {sandbox_name}: "
                f"{truncate_diagnostic(result.stderr or result.stdout)}"
            )

        self._ready_sandboxes.add(sandbox_name)
        logger.info("sandbox_ready", sandbox=sandbox_name)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def is_agent_running(self, session: SubagentSession) -> bool:
        """Probe the sandbox for an agent process using this session's file.

        A failed or timed-out probe counts as not running.
        """
        try:
            result = await self.client.exec(
                session.sandbox_name,
                ["pgrep", "-f", "--", session_process_pattern(session.agent_session_file)],
                ExecOptions(timeout_seconds=PROCESS_PROBE_TIMEOUT_SECONDS, max_retries=1),
            )
        except Exception as e:
            logger.warning(
                "session_process_probe_failed",
                session_id=session.id,
                sandbox=session.sandbox_name,
                error=str(e),
            )
            return False
        return result.exit_code == 0

    async def reconcile(self, session: SubagentSession) -> SubagentSession:
        """Reset a session stuck in ``running`` whose agent process is gone."""
        if session.status is not SessionStatus.RUNNING:
            return session

        if await self.is_agent_running(session):
            return session

        stale_job_id = session.running_job_id
        session.mark_idle()
        await self.persist(session)
        logger.warning(
            "session_reconciled",
            session_id=session.id,
            stale_job_id=stale_job_id,
        )
        return session

    async def reconcile_all(self) -> int:
        """Reconcile every persisted ``running`` session. Run once at startup.

        Returns:
            Number of sessions reset to idle.
        """
        reset = 0
        offset = 0
        while True:
            batch = await self.store.list_sessions(
                limit=RECONCILE_BATCH_SIZE, offset=offset, status=SessionStatus.RUNNING
            )
            if not batch:
                break
            for session in batch:
                self._cache(session)
                await self.reconcile(session)
                if session.status is SessionStatus.IDLE:
                    reset += 1
            if len(batch) < RECONCILE_BATCH_SIZE:
                break
            # Reset rows drop out of the status filter; only skip those still running.
            offset += sum(1 for s in batch if s.status is SessionStatus.RUNNING)

        logger.info("sessions_reconciled", reset=reset)
        return reset

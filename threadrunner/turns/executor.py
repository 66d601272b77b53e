"""Turn executor: drives one turn end-to-end.

This module provides the TurnExecutor class that runs a PendingTurn against
a sandboxed coding agent and keeps the session bookkeeping honest:

1. Resolve or create the conversation's session.
2. Reconcile a session left ``running`` by a crash; refuse if still running.
3. Mark the session running with a fresh job id and persist it.
4. Prepare the sandbox (bootstrap, credentials, artifacts dir, AGENTS.md).
5. Run the agent with a hard timeout.
6. Parse the agent's structured output.
7. Collect artifacts.
8. Persist idle/completed or error.

Two execution modes are supported. In ``session`` mode each conversation
has its own long-lived sandbox and the agent keeps a session file there. In
``pool`` mode a turn borrows a pre-provisioned runner, runs the agent
without a session file and always returns the runner afterwards.

Usage:
    >>> executor = TurnExecutor(registry, client, agent_api_key="sk-...")
    >>> result = await executor.run_turn(turn)
    >>> print(result.status, result.content)
"""

import asyncio
import posixpath
import shlex
from dataclasses import dataclass, field
from typing import Literal, Protocol

import structlog

from threadrunner.agent_output import AgentOutput, GeneratedFile, parse_agent_output
from threadrunner.errors import (
    ConcurrentTurnError,
    ExecutionError,
    ThreadRunnerError,
    UserAbort,
    error_kind,
)
from threadrunner.models.schemas import SessionReport, SessionStatus, TurnStatus
from threadrunner.models.session import ConversationKey, SubagentSession, make_job_id
from threadrunner.sandbox.client import ExecOptions, ExecResult, SandboxClient
from threadrunner.sandbox.pool import RunnerPool
from threadrunner.sandbox.security import shell_join, truncate_diagnostic, validate_artifact_path
from threadrunner.session_registry import SessionRegistry
from threadrunner.turns.pending import PendingTurn

logger = structlog.get_logger(__name__)

ExecutionMode = Literal["session", "pool"]

SHORT_EXEC_TIMEOUT_SECONDS = 30
PROBE_TIMEOUT_SECONDS = 10
DEFAULT_REPLY = "Done."


class HistoryProvider(Protocol):
    """Supplies prior conversation messages for context replay."""

    async def fetch(
        self,
        conversation: ConversationKey,
        before_event_id: str,
        exclude_event_ids: list[str],
    ) -> str: ...


class CredentialProvider(Protocol):
    """Mints a short-lived git hosting token, or returns None."""

    async def get_token(self) -> str | None: ...


@dataclass
class TurnResult:
    """Outcome of one ``run_turn`` call.

    Attributes:
        status: COMPLETED, or RUNNING if another turn holds the session.
        session_id: Session the turn ran in.
        job_id: Job id of this turn (or of the blocking turn).
        content: Final answer of the agent.
        sandbox_name: Sandbox the agent ran in.
        created: True if the session was created by this turn.
        model: Model reported by the agent, if any.
        artifacts: Files collected from the artifacts directory.
        error: Informational error for a non-completed result.
    """

    status: TurnStatus
    session_id: str | None = None
    job_id: str | None = None
    content: str = ""
    sandbox_name: str | None = None
    created: bool = False
    model: str | None = None
    artifacts: list[GeneratedFile] = field(default_factory=list)
    error: ThreadRunnerError | None = None


@dataclass
class _ActiveTurn:
    job_id: str
    sandbox_name: str | None = None
    abort_requested: bool = False


def _raise_if_aborted(active: _ActiveTurn) -> None:
    """Stop a turn that was aborted before its agent was dispatched."""
    if active.abort_requested:
        raise UserAbort(f"Turn {active.job_id} was aborted before the agent started")


class TurnExecutor:
    """Runs turns and the status/abort control commands.

    Attributes:
        registry: Session registry shared with the rest of the process.
        client: Sandbox backend.
        pool: Runner pool, required in pool mode.
        execution_mode: "session" or "pool".
    """

    def __init__(
        self,
        registry: SessionRegistry,
        client: SandboxClient,
        *,
        pool: RunnerPool | None = None,
        execution_mode: ExecutionMode = "session",
        agent_bin: str = "/usr/local/bin/pi",
        agent_model: str | None = None,
        agent_thinking_level: str | None = None,
        agent_api_key: str = "",
        exec_timeout_seconds: float = 600,
        max_artifacts: int = 10,
        max_artifact_bytes: int = 10 * 1024 * 1024,
        max_diagnostic_chars: int = 500,
        git_author_name: str | None = None,
        git_author_email: str | None = None,
        system_prompt: str | None = None,
        history_provider: HistoryProvider | None = None,
        credential_provider: CredentialProvider | None = None,
    ) -> None:
        if execution_mode == "pool" and pool is None:
            raise ValueError("pool execution mode requires a RunnerPool")
        self.registry = registry
        self.client = client
        self.pool = pool
        self.execution_mode = execution_mode
        self.agent_bin = agent_bin
        self.agent_model = agent_model
        self.agent_thinking_level = agent_thinking_level
        self.agent_api_key = agent_api_key
        self.exec_timeout_seconds = exec_timeout_seconds
        self.max_artifacts = max_artifacts
        self.max_artifact_bytes = max_artifact_bytes
        self.max_diagnostic_chars = max_diagnostic_chars
        self.git_author_name = git_author_name
        self.git_author_email = git_author_email
        self.system_prompt = system_prompt
        self.history_provider = history_provider
        self.credential_provider = credential_provider
        self._active: dict[str, _ActiveTurn] = {}

    @property
    def pool_mode(self) -> bool:
        return self.execution_mode == "pool"

    def is_executing(self, conversation: ConversationKey) -> bool:
        """Return True if this process is running a turn for the conversation."""
        return conversation.key in self._active

    # ------------------------------------------------------------------
    # Turn path
    # ------------------------------------------------------------------

    async def run_turn(self, turn: PendingTurn) -> TurnResult:
        """Run one turn end-to-end.

        Args:
            turn: The turn to run.

        Returns:
            A COMPLETED result, or a RUNNING result carrying a
            ConcurrentTurnError if a turn is already running.

        Raises:
            UserAbort: If the turn was aborted by the user while running.
            ThreadRunnerError: For provisioning, execution and timeout
                failures. The session is persisted as ``error`` first.
        """
        conversation = turn.conversation

        async with self.registry.lock_for(conversation):
            session, created = await self.registry.ensure(
                conversation, provision=not self.pool_mode
            )

            if session.status is SessionStatus.RUNNING and not self.is_executing(conversation):
                await self.registry.reconcile(session)

            if session.status is SessionStatus.RUNNING or self.is_executing(conversation):
                error = ConcurrentTurnError(
                    f"A coding job is already running for {conversation.key}"
                )
                logger.info(
                    "turn_already_running",
                    session_id=session.id,
                    job_id=session.running_job_id,
                    kind=str(error.kind),
                )
                return TurnResult(
                    status=TurnStatus.RUNNING,
                    session_id=session.id,
                    job_id=session.running_job_id,
                    content="A coding job is already running for this conversation.",
                    sandbox_name=session.sandbox_name,
                    error=error,
                )

            job_id = make_job_id()
            session.mark_running(job_id)
            await self.registry.persist(session)
            active = _ActiveTurn(job_id=job_id)
            self._active[conversation.key] = active

        logger.info(
            "turn_started",
            session_id=session.id,
            job_id=job_id,
            mode=self.execution_mode,
            event_ids=turn.event_ids,
        )

        try:
            prompt = await self._build_prompt(turn)
            if self.pool_mode:
                output, artifacts, sandbox_name = await self._run_on_runner(
                    session, prompt, active
                )
            else:
                active.sandbox_name = session.sandbox_name
                output, artifacts = await self._run_in_session_sandbox(session, prompt, active)
                sandbox_name = session.sandbox_name
        except asyncio.CancelledError:
            async with self.registry.lock_for(conversation):
                self._active.pop(conversation.key, None)
                if session.running_job_id == job_id:
                    session.mark_idle()
                    await self.registry.persist(session)
            raise
        except Exception as e:
            async with self.registry.lock_for(conversation):
                self._active.pop(conversation.key, None)
                if active.abort_requested:
                    logger.info("turn_aborted", session_id=session.id, job_id=job_id)
                    raise UserAbort(f"Turn {job_id} was aborted") from e
                session.mark_error(str(e))
                await self.registry.persist(session)
            logger.error(
                "turn_failed",
                session_id=session.id,
                job_id=job_id,
                kind=str(error_kind(e) or "unknown"),
                error=str(e),
            )
            raise

        async with self.registry.lock_for(conversation):
            self._active.pop(conversation.key, None)
            session.mark_completed(job_id)
            await self.registry.persist(session)

        logger.info(
            "turn_completed",
            session_id=session.id,
            job_id=job_id,
            artifact_count=len(artifacts),
            turns=session.turns,
        )
        return TurnResult(
            status=TurnStatus.COMPLETED,
            session_id=session.id,
            job_id=job_id,
            content=output.content or DEFAULT_REPLY,
            sandbox_name=sandbox_name,
            created=created,
            model=output.model,
            artifacts=artifacts,
        )

    async def _build_prompt(self, turn: PendingTurn) -> str:
        if not turn.include_history or self.history_provider is None:
            return turn.message

        try:
            history = await self.history_provider.fetch(
                turn.conversation,
                before_event_id=turn.event_id,
                exclude_event_ids=list(turn.excluded_history_ids),
            )
        except Exception as e:
            logger.warning(
                "history_fetch_failed",
                conversation_key=turn.conversation.key,
                error=str(e),
            )
            return turn.message

        if not history.strip():
            return turn.message
        return (
            f"Previous messages in this conversation:\n{history}\n\n"
            f"Latest message: {turn.message}"
        )

    async def _run_in_session_sandbox(
        self, session: SubagentSession, prompt: str, active: _ActiveTurn
    ) -> tuple[AgentOutput, list[GeneratedFile]]:
        await self.registry.ensure_sandbox_ready(session.sandbox_name)
        env = await self._prepare_sandbox(session.sandbox_name)
        _raise_if_aborted(active)
        output = await self._run_agent(
            session.sandbox_name, prompt, env, session_file=session.agent_session_file
        )
        artifacts = await self._collect_artifacts(session.sandbox_name)
        return output, artifacts

    async def _run_on_runner(
        self, session: SubagentSession, prompt: str, active: _ActiveTurn
    ) -> tuple[AgentOutput, list[GeneratedFile], str]:
        assert self.pool is not None
        lease = await self.pool.acquire()
        active.sandbox_name = lease.name
        logger.debug("turn_runner_acquired", session_id=session.id, runner=lease.name)
        try:
            _raise_if_aborted(active)
            env = await self._prepare_sandbox(lease.name)
            _raise_if_aborted(active)
            output = await self._run_agent(lease.name, prompt, env, session_file=None)
            # Artifacts must be downloaded before the runner is reset.
            artifacts = await self._collect_artifacts(lease.name)
        finally:
            await lease.release()
        return output, artifacts, lease.name

    # ------------------------------------------------------------------
    # Sandbox preparation
    # ------------------------------------------------------------------

    @property
    def workspace_dir(self) -> str:
        return f"{self.client.home_dir}/workspace"

    @property
    def artifacts_dir(self) -> str:
        return f"{self.client.home_dir}/artifacts"

    async def _exec_short(
        self,
        sandbox_name: str,
        argv: list[str],
        *,
        env: dict[str, str] | None = None,
        stdin: str | None = None,
    ) -> ExecResult:
        return await self.client.exec(
            sandbox_name,
            argv,
            ExecOptions(
                env=env or {},
                dir=self.workspace_dir,
                stdin=stdin,
                timeout_seconds=SHORT_EXEC_TIMEOUT_SECONDS,
            ),
        )

    async def _prepare_sandbox(self, sandbox_name: str) -> dict[str, str]:
        """Prepare the sandbox for a run and return the agent environment.

        Raises:
            ExecutionError: If no agent API key is configured.
        """
        if not self.agent_api_key:
            raise ExecutionError("Agent API key is not configured")

        env = {
            "PATH": self.client.default_path,
            "HOME": self.client.home_dir,
            "NO_COLOR": "1",
            "TERM": "dumb",
            "CI": "true",
            "ANTHROPIC_API_KEY": self.agent_api_key,
        }

        if self.system_prompt:
            written = await self._exec_short(
                sandbox_name,
                ["bash", "-c", f"cat > {self.client.home_dir}/AGENTS.md"],
                stdin=self.system_prompt,
            )
            self._check_prep_step("write AGENTS.md", written)

        artifacts_dir = shlex.quote(self.artifacts_dir)
        reset = await self._exec_short(
            sandbox_name,
            ["bash", "-c", f"rm -rf {artifacts_dir} && mkdir -p {artifacts_dir}"],
        )
        self._check_prep_step("reset the artifacts directory", reset)

        token = await self._get_token()
        if token:
            await self._authenticate_git(sandbox_name, token, env)
            env["GH_TOKEN"] = token

        await self._configure_git_identity(sandbox_name)
        return env

    def _check_prep_step(self, step: str, result: ExecResult) -> None:
        if result.exit_code != 0:
            stderr = truncate_diagnostic(result.stderr or result.stdout, self.max_diagnostic_chars)
            raise ExecutionError(
                f"Failed to {step} (exit {result.exit_code}): {stderr}",
                exit_code=result.exit_code,
                stderr=stderr,
            )

    async def _get_token(self) -> str | None:
        if self.credential_provider is None:
            return None
        try:
            return await self.credential_provider.get_token()
        except Exception as e:
            logger.warning("credential_fetch_failed", error=str(e))
            return None

    async def _authenticate_git(self, sandbox_name: str, token: str, env: dict[str, str]) -> None:
        auth_env = {"PATH": env["PATH"], "HOME": env["HOME"]}
        login = await self._exec_short(
            sandbox_name,
            ["gh", "auth", "login", "--hostname", "github.com", "--with-token"],
            env=auth_env,
            stdin=f"{token}\n",
        )
        if login.exit_code != 0:
            logger.warning(
                "gh_auth_failed",
                sandbox=sandbox_name,
                exit_code=login.exit_code,
                stderr=truncate_diagnostic(login.stderr or login.stdout, self.max_diagnostic_chars),
            )
            return

        setup = await self._exec_short(
            sandbox_name,
            ["gh", "auth", "setup-git", "--hostname", "github.com"],
            env=auth_env,
        )
        if setup.exit_code != 0:
            logger.warning(
                "gh_setup_git_failed",
                sandbox=sandbox_name,
                exit_code=setup.exit_code,
                stderr=truncate_diagnostic(setup.stderr or setup.stdout, self.max_diagnostic_chars),
            )
            return
        logger.info("gh_authenticated", sandbox=sandbox_name)

    async def _configure_git_identity(self, sandbox_name: str) -> None:
        commands: list[str] = []
        if self.git_author_name:
            commands.append(f"git config --global user.name {shlex.quote(self.git_author_name)}")
        if self.git_author_email:
            commands.append(f"git config --global user.email {shlex.quote(self.git_author_email)}")
        if commands:
            await self._exec_short(sandbox_name, ["bash", "-c", " && ".join(commands)])

    # ------------------------------------------------------------------
    # Agent run
    # ------------------------------------------------------------------

    def _agent_args(self, session_file: str | None) -> list[str]:
        args = [self.agent_bin, "--mode", "json"]
        if session_file:
            args.extend(["--session", session_file])
        else:
            args.append("--no-session")
        if self.agent_model:
            args.extend(["--model", self.agent_model])
        if self.agent_thinking_level and self.agent_thinking_level != "off":
            args.extend(["--thinking", self.agent_thinking_level])
        return args

    async def _run_agent(
        self,
        sandbox_name: str,
        prompt: str,
        env: dict[str, str],
        *,
        session_file: str | None,
    ) -> AgentOutput:
        """Run the agent and parse its output.

        Raises:
            ExecTimeoutError: If the run exceeded the hard timeout.
            ExecutionError: On a non-zero exit or a missing ``agent_end`` event.
        """
        args = self._agent_args(session_file)
        logger.debug(
            "agent_dispatch",
            sandbox=sandbox_name,
            command=shell_join(args),
            prompt_preview=prompt[:120],
        )
        result = await self.client.exec(
            sandbox_name,
            args,
            ExecOptions(
                env=env,
                dir=self.workspace_dir,
                stdin=f"{prompt}\n",
                timeout_seconds=self.exec_timeout_seconds,
            ),
        )

        if result.exit_code != 0:
            stderr = truncate_diagnostic(result.stderr, self.max_diagnostic_chars)
            message = f"Agent exited with code {result.exit_code}"
            if stderr:
                message = f"{message}: {stderr}"
            raise ExecutionError(message, exit_code=result.exit_code, stderr=stderr)

        output = parse_agent_output(result.stdout)
        if self.agent_model and output.model and output.model != self.agent_model:
            logger.warning(
                "agent_model_mismatch",
                configured=self.agent_model,
                reported=output.model,
            )
        return output

    async def _collect_artifacts(self, sandbox_name: str) -> list[GeneratedFile]:
        """Download at most ``max_artifacts`` bounded files from the artifacts dir."""
        size_limit_kib = max(1, self.max_artifact_bytes // 1024)
        listing = await self.client.exec(
            sandbox_name,
            [
                "find",
                self.artifacts_dir,
                "-maxdepth",
                "2",
                "-type",
                "f",
                "-size",
                f"-{size_limit_kib}k",
            ],
            ExecOptions(dir=self.workspace_dir, timeout_seconds=PROBE_TIMEOUT_SECONDS),
        )
        if listing.exit_code != 0:
            logger.warning(
                "artifact_listing_failed",
                sandbox=sandbox_name,
                exit_code=listing.exit_code,
            )
            return []

        paths: list[str] = []
        for line in listing.stdout.splitlines():
            path = line.strip()
            if not path:
                continue
            is_valid, reason = validate_artifact_path(self.artifacts_dir, path)
            if not is_valid:
                logger.warning("artifact_skipped", path=path, reason=reason)
                continue
            paths.append(path)

        files: list[GeneratedFile] = []
        for path in paths[: self.max_artifacts]:
            data: bytes | None = None
            try:
                data = await self.client.download_file(sandbox_name, path)
            except Exception as e:
                logger.warning("artifact_download_failed", path=path, error=str(e))
            files.append(GeneratedFile(path=path, filename=posixpath.basename(path), data=data))
        return files

    # ------------------------------------------------------------------
    # Control commands
    # ------------------------------------------------------------------

    async def _lookup(self, conversation: ConversationKey) -> SubagentSession | None:
        session = await self.registry.resolve(conversation=conversation)
        if session is None and not self.pool_mode:
            session = await self.registry.rehydrate(conversation)
        return session

    async def start(self, conversation: ConversationKey) -> TurnResult:
        """Create (or reuse) the conversation's session without running a turn."""
        async with self.registry.lock_for(conversation):
            session, created = await self.registry.ensure(
                conversation, provision=not self.pool_mode
            )
        return TurnResult(
            status=TurnStatus(str(session.status)),
            session_id=session.id,
            sandbox_name=session.sandbox_name,
            created=created,
        )

    async def status(self, conversation: ConversationKey) -> SessionReport:
        """Report session state. Never runs anything in the sandbox."""
        session = await self._lookup(conversation)
        if session is None:
            return SessionReport(
                status=TurnStatus.NOT_FOUND,
                message="No coding session exists for this conversation yet.",
            )

        job_id = session.running_job_id or session.last_job_id
        summary = [f"status: {session.status}"]
        if job_id:
            summary.append(f"job: {job_id}")
        summary.append(f"session: {session.id}")
        return SessionReport(
            status=TurnStatus(str(session.status)),
            session_id=session.id,
            job_id=job_id,
            sandbox_name=session.sandbox_name,
            message=" | ".join(summary),
        )

    async def abort(self, conversation: ConversationKey) -> SessionReport:
        """Best-effort stop of the running agent, then force the session idle."""
        session = await self._lookup(conversation)
        if session is None:
            return SessionReport(
                status=TurnStatus.NOT_FOUND,
                message="No active coding session exists for this conversation.",
            )

        active = self._active.get(conversation.key)
        target = session.sandbox_name
        if active is not None:
            active.abort_requested = True
            target = active.sandbox_name or target

        if active is not None or not self.pool_mode:
            try:
                await self.client.exec(
                    target,
                    ["pkill", "-f", self.agent_bin],
                    ExecOptions(timeout_seconds=PROBE_TIMEOUT_SECONDS, max_retries=1),
                )
            except Exception as e:
                # nothing to kill
                logger.debug("abort_signal_failed", sandbox=target, error=str(e))

        async with self.registry.lock_for(conversation):
            session.mark_idle()
            await self.registry.persist(session)

        logger.info("turn_abort_requested", session_id=session.id, in_flight=active is not None)
        return SessionReport(
            status=TurnStatus.ABORTED,
            session_id=session.id,
            sandbox_name=session.sandbox_name,
            message="Aborted the running coding job.",
        )

"""Fixed-size pool of pre-provisioned sandbox runners.

Each runner is built once in the background at startup: create the sandbox,
install the agent tooling, apply the network policy and take a baseline
checkpoint tagged ``CLEAN_CHECKPOINT``. Between turns a runner is reset by
restoring that checkpoint instead of being provisioned again.

Runner states:
    initializing -> ready    provisioning succeeded
    initializing -> failed   attempt budget exhausted (permanent for this process)

Callers arriving while runners are still initializing, or while every ready
runner is locked, wait in FIFO order. Once no runner is ready or
initializing, ``acquire()`` fails with ``NoRunnersAvailable``.

Usage:
    >>> pool = RunnerPool(client, size=2, setup_commands=runner_setup_commands("/usr/local/bin/pi"))
    >>> pool.start()
    >>> async with await pool.acquire() as lease:
    ...     await client.exec(lease.name, ["echo", "hi"])
"""

import asyncio
import collections
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from threadrunner.errors import CheckpointRestoreError, NoRunnersAvailable, ProvisioningError
from threadrunner.models.schemas import RunnerState
from threadrunner.sandbox.client import (
    DEFAULT_NETWORK_POLICY,
    CheckpointingSandboxClient,
    ExecOptions,
    NetworkRule,
)
from threadrunner.sandbox.security import truncate_diagnostic

logger = structlog.get_logger(__name__)

CLEAN_CHECKPOINT = "clean-v2"

SETUP_TIMEOUT_SECONDS = 600


def runner_setup_commands(agent_bin: str) -> list[str]:
    """Shell commands that install the tooling a runner needs."""
    return [
        f'[ -x "{agent_bin}" ] || npm_config_update_notifier=false npm install -g '
        "--no-audit --no-fund @mariozechner/pi-coding-agent",
        "command -v gh >/dev/null 2>&1 || "
        "(apt-get update -qq && apt-get install -y -qq gh)",
        f'"{agent_bin}" --version',
        "mkdir -p ~/workspace ~/artifacts",
    ]


@dataclass
class Runner:
    """One pool slot.

    Attributes:
        name: Sandbox name of the runner.
        locked: True while a caller holds the runner.
        state: Provisioning state.
        checkpoint_id: Handle of the clean baseline, once built.
    """

    name: str
    locked: bool = False
    state: RunnerState = RunnerState.INITIALIZING
    checkpoint_id: str | None = None


@dataclass
class RunnerLease:
    """A runner held by a caller. Release exactly once, or use ``async with``."""

    name: str
    runner: Runner = field(repr=False)
    pool: "RunnerPool" = field(repr=False)
    released: bool = False

    async def release(self) -> None:
        await self.pool._release(self)

    async def __aenter__(self) -> "RunnerLease":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.release()


class RunnerPool:
    """Owns the runner list and the FIFO wait queue.

    Only pool methods mutate runners or waiters.

    Attributes:
        client: Checkpoint-capable sandbox backend.
        size: Number of runners provisioned at startup.
    """

    def __init__(
        self,
        client: CheckpointingSandboxClient,
        size: int = 2,
        *,
        name_prefix: str = "tr-runner-",
        setup_commands: list[str] | None = None,
        network_policy: list[NetworkRule] | None = None,
        max_attempts: int = 10,
        retry_base_seconds: float = 5.0,
        retry_max_seconds: float = 120.0,
        health_check_timeout_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.size = size
        self.name_prefix = name_prefix
        self.setup_commands = setup_commands or []
        self.network_policy = network_policy if network_policy is not None else DEFAULT_NETWORK_POLICY
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.health_check_timeout_seconds = health_check_timeout_seconds
        self._sleep = sleep
        self._runners: list[Runner] = []
        self._waiters: collections.deque[asyncio.Future[Runner]] = collections.deque()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def runners(self) -> list[Runner]:
        return list(self._runners)

    def start(self) -> None:
        """Create the runners and provision them in background tasks."""
        if self._runners:
            return
        logger.info("runner_pool_starting", count=self.size)
        for index in range(self.size):
            runner = Runner(name=f"{self.name_prefix}{index}")
            self._runners.append(runner)
            self._tasks.append(
                asyncio.create_task(
                    self._provision_with_retry(runner), name=f"provision-{runner.name}"
                )
            )

    async def wait_until_settled(self) -> None:
        """Wait until every runner has left the initializing state."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def close(self) -> None:
        """Stop provisioning and fail any waiting callers."""
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await self.wait_until_settled()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(NoRunnersAvailable("Runner pool is shutting down"))

    def stats(self) -> dict[str, int]:
        return {
            "total": len(self._runners),
            "ready": sum(1 for r in self._runners if r.state is RunnerState.READY),
            "available": sum(
                1 for r in self._runners if r.state is RunnerState.READY and not r.locked
            ),
            "initializing": sum(
                1 for r in self._runners if r.state is RunnerState.INITIALIZING
            ),
            "failed": sum(1 for r in self._runners if r.state is RunnerState.FAILED),
        }

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def _backoff_delay(self, attempt: int) -> float:
        return min(self.retry_base_seconds * 2 ** (attempt - 1), self.retry_max_seconds)

    async def _provision_with_retry(self, runner: Runner) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self._provision(runner)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "runner_init_failed",
                    runner=runner.name,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                if attempt < self.max_attempts:
                    await self._sleep(delay)
                continue

            runner.state = RunnerState.READY
            logger.info("runner_initialized", runner=runner.name, **self.stats())
            self._hand_off(runner)
            return

        runner.state = RunnerState.FAILED
        logger.error(
            "runner_init_exhausted",
            runner=runner.name,
            max_attempts=self.max_attempts,
        )
        self._fail_waiters_if_exhausted()

    async def _provision(self, runner: Runner) -> None:
        """Reuse an existing runner with a clean checkpoint, or build it from scratch."""
        name = runner.name
        existing = await self.client.get(name)
        if existing is not None:
            checkpoints = await self.client.list_checkpoints(name)
            clean = next((c for c in checkpoints if c.comment == CLEAN_CHECKPOINT), None)
            if clean is not None:
                try:
                    await self.client.restore_checkpoint(name, clean.id)
                    runner.checkpoint_id = clean.id
                    logger.info("runner_reused", runner=name, checkpoint_id=clean.id)
                    return
                except Exception as e:
                    logger.warning("runner_reuse_restore_failed", runner=name, error=str(e))
            else:
                logger.info("runner_missing_checkpoint", runner=name)
            await self.client.delete(name)

        runner.checkpoint_id = await self._build(name)

    async def _build(self, name: str) -> str:
        logger.info("runner_building", runner=name)
        await self.client.create(name)

        for command in self.setup_commands:
            result = await self.client.exec(
                name,
                ["bash", "-c", command],
                ExecOptions(timeout_seconds=SETUP_TIMEOUT_SECONDS),
            )
            if result.exit_code != 0:
                raise ProvisioningError(
                    f"Runner setup failed in {name} (exit {result.exit_code}): "
                    f"{truncate_diagnostic(result.stderr or result.stdout)}"
                )

        await self.client.set_network_policy(name, self.network_policy)
        checkpoint_id = await self.client.create_checkpoint(name, CLEAN_CHECKPOINT)
        logger.info("runner_built", runner=name, checkpoint_id=checkpoint_id)
        return checkpoint_id

    async def _rebuild(self, runner: Runner) -> None:
        logger.warning("runner_rebuilding", runner=runner.name)
        try:
            await self.client.delete(runner.name)
        except Exception as e:
            # may already be gone
            logger.debug("runner_delete_failed", runner=runner.name, error=str(e))
        runner.checkpoint_id = await self._build(runner.name)

    async def _health_check(self, name: str) -> bool:
        # A probe that times out counts as unhealthy.
        try:
            result = await self.client.exec(
                name,
                ["echo", "ok"],
                ExecOptions(timeout_seconds=self.health_check_timeout_seconds),
            )
        except Exception as e:
            logger.warning("runner_health_check_failed", runner=name, error=str(e))
            return False
        return result.exit_code == 0 and "ok" in result.stdout

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self) -> RunnerLease:
        """Lock a ready runner, waiting in FIFO order if none is free.

        The runner is health-checked before it is handed out; an unhealthy
        runner is rebuilt first.

        Raises:
            NoRunnersAvailable: If every runner failed provisioning.
            ProvisioningError: If the health-check rebuild failed.
        """
        runner = next(
            (r for r in self._runners if r.state is RunnerState.READY and not r.locked),
            None,
        )
        if runner is not None:
            runner.locked = True
        else:
            if not any(
                r.state in (RunnerState.READY, RunnerState.INITIALIZING) for r in self._runners
            ):
                raise NoRunnersAvailable("All runners failed to initialize")

            waiter: asyncio.Future[Runner] = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            logger.debug("runner_acquire_waiting", queued=len(self._waiters), **self.stats())
            try:
                runner = await waiter
            except asyncio.CancelledError:
                if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                    self._return_to_pool(waiter.result())
                raise

        return await self._checkout(runner)

    async def _checkout(self, runner: Runner) -> RunnerLease:
        try:
            if not await self._health_check(runner.name):
                await self._rebuild(runner)
        except asyncio.CancelledError:
            self._return_to_pool(runner)
            raise
        except Exception as e:
            self._return_to_pool(runner)
            raise ProvisioningError(f"Runner {runner.name} is unhealthy and rebuild failed: {e}") from e

        logger.info("runner_acquired", runner=runner.name)
        return RunnerLease(name=runner.name, runner=runner, pool=self)

    async def _restore(self, runner: Runner) -> None:
        if runner.checkpoint_id is None:
            raise CheckpointRestoreError(f"Runner {runner.name} has no clean checkpoint")
        try:
            await self.client.restore_checkpoint(runner.name, runner.checkpoint_id)
        except Exception as e:
            raise CheckpointRestoreError(
                f"Failed to restore {runner.name} to {runner.checkpoint_id}: {e}"
            ) from e

    async def _release(self, lease: RunnerLease) -> None:
        if lease.released:
            logger.warning("runner_double_release", runner=lease.name)
            return
        lease.released = True
        runner = lease.runner

        try:
            try:
                await self._restore(runner)
            except CheckpointRestoreError as e:
                logger.error("runner_restore_failed", runner=runner.name, error=str(e))
                try:
                    await self._rebuild(runner)
                except Exception as rebuild_error:
                    logger.error(
                        "runner_rebuild_failed",
                        runner=runner.name,
                        error=str(rebuild_error),
                    )
        finally:
            self._return_to_pool(runner)
            logger.info("runner_released", runner=runner.name)

    def _return_to_pool(self, runner: Runner) -> None:
        runner.locked = False
        self._hand_off(runner)

    def _hand_off(self, runner: Runner) -> None:
        """Give a free ready runner to the oldest live waiter, if any."""
        if runner.state is not RunnerState.READY or runner.locked:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            runner.locked = True
            waiter.set_result(runner)
            return

    def _fail_waiters_if_exhausted(self) -> None:
        if any(
            r.state in (RunnerState.READY, RunnerState.INITIALIZING) for r in self._runners
        ):
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(NoRunnersAvailable("All runners failed to initialize"))

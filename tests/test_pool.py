"""Tests for sandbox/pool.py -- runner provisioning, acquire/release and recovery.

Uses the in-memory FakeSandboxClient; the backoff sleep is replaced by a
recorder so retry tests run instantly.
"""

import asyncio

import pytest

from tests.conftest import FakeSandboxClient
from threadrunner.errors import NoRunnersAvailable, ProvisioningError
from threadrunner.models.schemas import RunnerState
from threadrunner.sandbox.client import Checkpoint, ExecOptions, ExecResult
from threadrunner.sandbox.pool import CLEAN_CHECKPOINT, RunnerPool


class SleepRecorder:
    """Records backoff delays; optionally blocks until released."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)


@pytest.fixture()
def sleeper() -> SleepRecorder:
    return SleepRecorder()


def _pool(client: FakeSandboxClient, sleeper: SleepRecorder, size: int = 2, **kwargs) -> RunnerPool:
    kwargs.setdefault("max_attempts", 3)
    return RunnerPool(
        client,
        size,
        setup_commands=["install-tools"],
        sleep=sleeper,
        **kwargs,
    )


async def _ready_pool(client: FakeSandboxClient, sleeper: SleepRecorder, size: int = 2) -> RunnerPool:
    pool = _pool(client, sleeper, size)
    pool.start()
    await pool.wait_until_settled()
    return pool


# =========================================================================
# Provisioning
# =========================================================================


class TestProvisioning:
    """Background provisioning with retry and backoff."""

    @pytest.mark.asyncio
    async def test_start_provisions_all_runners(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper)

        assert pool.stats() == {
            "total": 2,
            "ready": 2,
            "available": 2,
            "initializing": 0,
            "failed": 0,
        }
        for runner in pool.runners:
            assert runner.checkpoint_id is not None
            assert fake_client.checkpoints[runner.name][0].comment == CLEAN_CHECKPOINT
            assert runner.name in fake_client.network_policies
            assert ["bash", "-c", "install-tools"] in fake_client.calls_for(runner.name)

    @pytest.mark.asyncio
    async def test_start_twice_never_exceeds_size(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = _pool(fake_client, sleeper, size=2)
        pool.start()
        pool.start()
        await pool.wait_until_settled()
        assert len(pool.runners) == 2
        assert len(fake_client.created) == 2

    @pytest.mark.asyncio
    async def test_retry_then_success(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        fake_client.create_failures["tr-runner-0"] = 2
        pool = _pool(fake_client, sleeper, size=1, max_attempts=5)
        pool.start()
        await pool.wait_until_settled()

        assert pool.runners[0].state is RunnerState.READY
        assert sleeper.delays == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_exhausted_runner_fails_permanently(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        fake_client.create_failures["*"] = 100
        pool = _pool(fake_client, sleeper, size=2, max_attempts=3)
        pool.start()
        await pool.wait_until_settled()

        assert pool.stats()["failed"] == 2
        assert sorted(sleeper.delays) == [5.0, 5.0, 10.0, 10.0]

        with pytest.raises(NoRunnersAvailable):
            await pool.acquire()
        # No silent retry on a later acquire.
        assert all(r.state is RunnerState.FAILED for r in pool.runners)

    @pytest.mark.asyncio
    async def test_setup_failure_counts_as_attempt(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        def handler(name: str, argv: list[str], options: ExecOptions) -> ExecResult | None:
            if argv == ["bash", "-c", "install-tools"]:
                return ExecResult(stdout="", stderr="npm exploded", exit_code=1)
            return None

        fake_client.exec_handler = handler
        pool = _pool(fake_client, sleeper, size=1, max_attempts=2)
        pool.start()
        await pool.wait_until_settled()

        assert pool.runners[0].state is RunnerState.FAILED
        assert sleeper.delays == [5.0]

    def test_backoff_is_capped(self, fake_client: FakeSandboxClient, sleeper: SleepRecorder) -> None:
        pool = _pool(
            fake_client, sleeper, retry_base_seconds=5, retry_max_seconds=120, max_attempts=10
        )
        delays = [pool._backoff_delay(attempt) for attempt in range(1, 8)]
        assert delays == [5, 10, 20, 40, 80, 120, 120]

    @pytest.mark.asyncio
    async def test_reuses_existing_runner_with_clean_checkpoint(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        await fake_client.create("tr-runner-0")
        fake_client.created.clear()
        fake_client.checkpoints["tr-runner-0"] = [Checkpoint(id="ckpt-old", comment=CLEAN_CHECKPOINT)]

        pool = _pool(fake_client, sleeper, size=1)
        pool.start()
        await pool.wait_until_settled()

        assert pool.runners[0].checkpoint_id == "ckpt-old"
        assert ("tr-runner-0", "ckpt-old") in fake_client.restored
        assert fake_client.created == []

    @pytest.mark.asyncio
    async def test_existing_runner_without_checkpoint_is_rebuilt(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        await fake_client.create("tr-runner-0")
        fake_client.created.clear()

        pool = _pool(fake_client, sleeper, size=1)
        pool.start()
        await pool.wait_until_settled()

        assert "tr-runner-0" in fake_client.deleted
        assert fake_client.created == ["tr-runner-0"]
        assert pool.runners[0].state is RunnerState.READY


# =========================================================================
# Acquire / release
# =========================================================================


class TestAcquireRelease:
    """Locking, FIFO waiting and checkpoint reset."""

    @pytest.mark.asyncio
    async def test_acquire_locks_and_release_restores(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper)

        lease = await pool.acquire()
        assert pool.stats()["available"] == 1
        assert lease.runner.locked is True

        await lease.release()
        assert pool.stats()["available"] == 2
        assert (lease.name, lease.runner.checkpoint_id) in fake_client.restored

    @pytest.mark.asyncio
    async def test_context_manager_releases(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper, size=1)
        async with await pool.acquire() as lease:
            assert lease.runner.locked is True
        assert lease.released is True
        assert pool.stats()["available"] == 1

    @pytest.mark.asyncio
    async def test_acquire_waits_while_initializing(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        gate = asyncio.Event()

        async def handler(name: str, argv: list[str], options: ExecOptions) -> ExecResult | None:
            if argv == ["bash", "-c", "install-tools"]:
                await gate.wait()
            return None

        fake_client.exec_handler = handler
        pool = _pool(fake_client, sleeper, size=1)
        pool.start()

        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)
        assert not waiter.done()
        assert pool.stats()["initializing"] == 1

        gate.set()
        lease = await asyncio.wait_for(waiter, timeout=1)
        assert lease.name == "tr-runner-0"
        assert lease.runner.locked is True

    @pytest.mark.asyncio
    async def test_waiters_served_in_fifo_order(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper, size=1)
        first = await pool.acquire()

        order: list[str] = []

        async def acquire_as(label: str):
            lease = await pool.acquire()
            order.append(label)
            return lease

        second_task = asyncio.create_task(acquire_as("second"))
        await asyncio.sleep(0)
        third_task = asyncio.create_task(acquire_as("third"))
        await asyncio.sleep(0)

        await first.release()
        second = await asyncio.wait_for(second_task, timeout=1)
        await asyncio.sleep(0.01)
        assert not third_task.done()

        await second.release()
        third = await asyncio.wait_for(third_task, timeout=1)
        await third.release()

        assert order == ["second", "third"]

    @pytest.mark.asyncio
    async def test_waiters_fail_when_last_runner_fails(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        fake_client.create_failures["*"] = 100
        sleeper.gate = asyncio.Event()
        pool = _pool(fake_client, sleeper, size=1, max_attempts=2)
        pool.start()
        await asyncio.sleep(0.01)

        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)
        assert not waiter.done()

        sleeper.gate.set()
        await pool.wait_until_settled()
        with pytest.raises(NoRunnersAvailable):
            await asyncio.wait_for(waiter, timeout=1)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_skipped(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper, size=1)
        first = await pool.acquire()

        abandoned = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0)
        patient = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0)
        abandoned.cancel()
        await asyncio.sleep(0)

        await first.release()
        lease = await asyncio.wait_for(patient, timeout=1)
        assert lease.name == first.name


# =========================================================================
# Recovery
# =========================================================================


class TestRecovery:
    """Restore failures, double release and health checks."""

    @pytest.mark.asyncio
    async def test_restore_failure_triggers_rebuild(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper, size=1)
        lease = await pool.acquire()
        old_checkpoint = lease.runner.checkpoint_id
        fake_client.restore_failures.add(lease.name)

        await lease.release()

        assert lease.name in fake_client.deleted
        assert fake_client.created.count(lease.name) == 2
        assert lease.runner.checkpoint_id != old_checkpoint
        assert lease.runner.locked is False

    @pytest.mark.asyncio
    async def test_release_unlocks_even_if_rebuild_fails(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper, size=1)
        lease = await pool.acquire()
        fake_client.restore_failures.add(lease.name)
        fake_client.create_failures[lease.name] = 1

        await lease.release()

        assert lease.runner.locked is False
        assert pool.stats()["available"] == 1

        # Next acquire finds the sandbox missing and rebuilds it first.
        fake_client.restore_failures.clear()
        next_lease = await pool.acquire()
        assert next_lease.name in fake_client.sandboxes

    @pytest.mark.asyncio
    async def test_double_release_unlocks_once(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper, size=1)
        first = await pool.acquire()
        await first.release()

        second = await pool.acquire()
        await first.release()

        assert second.runner.locked is True
        assert pool.stats()["available"] == 0
        assert fake_client.restored.count((first.name, first.runner.checkpoint_id)) == 1

    @pytest.mark.asyncio
    async def test_unhealthy_runner_rebuilt_before_handout(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper, size=1)
        probes: list[str] = []

        def handler(name: str, argv: list[str], options: ExecOptions) -> ExecResult | None:
            if argv == ["echo", "ok"]:
                probes.append(name)
                if len(probes) == 1:
                    return ExecResult(stdout="", stderr="hung", exit_code=1)
            return None

        fake_client.exec_handler = handler
        lease = await pool.acquire()

        assert lease.name in fake_client.deleted
        assert fake_client.created.count(lease.name) == 2
        assert lease.runner.locked is True

    @pytest.mark.asyncio
    async def test_probe_timeout_counts_as_unhealthy(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper, size=1)
        calls = {"n": 0}

        def handler(name: str, argv: list[str], options: ExecOptions) -> ExecResult | None:
            if argv == ["echo", "ok"] and calls["n"] == 0:
                calls["n"] += 1
                raise TimeoutError("probe timed out")
            return None

        fake_client.exec_handler = handler
        lease = await pool.acquire()
        assert lease.name in fake_client.deleted

    @pytest.mark.asyncio
    async def test_failed_rebuild_on_acquire_raises_and_unlocks(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper, size=1)

        def handler(name: str, argv: list[str], options: ExecOptions) -> ExecResult | None:
            if argv == ["echo", "ok"]:
                return ExecResult(stdout="", stderr="", exit_code=1)
            return None

        fake_client.exec_handler = handler
        fake_client.create_failures["tr-runner-0"] = 1

        with pytest.raises(ProvisioningError):
            await pool.acquire()
        assert pool.runners[0].locked is False

    @pytest.mark.asyncio
    async def test_close_fails_pending_waiters(
        self, fake_client: FakeSandboxClient, sleeper: SleepRecorder
    ) -> None:
        pool = await _ready_pool(fake_client, sleeper, size=1)
        await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0)

        await pool.close()
        with pytest.raises(NoRunnersAvailable):
            await waiter

"""Docker-based sandbox client for local development and single-host deployments.

Containers are named after the sandbox and kept alive with ``sleep infinity``.
Checkpoints use ``docker commit`` to save the container as an image tagged
with the checkpoint comment; restoring removes the container and starts a new
one from that image under the same name.

Network policy is not enforceable per-domain on a plain bridge network, so
``set_network_policy`` only records the request in the logs.
"""

from __future__ import annotations

import asyncio
import math
import tarfile
import time
import uuid
from io import BytesIO
from typing import Any

import docker
import structlog
from docker.errors import APIError, ImageNotFound, NotFound

from threadrunner.errors import ExecTimeoutError, ExecutionError, ProvisioningError
from threadrunner.sandbox.client import (
    Checkpoint,
    ExecOptions,
    ExecResult,
    NetworkRule,
    SandboxInfo,
)

logger = structlog.get_logger(__name__)

# Container resource configuration
CONTAINER_CONFIG: dict[str, Any] = {
    "mem_limit": "4096m",
    "cpu_period": 100000,
    "cpu_quota": 200000,  # two CPU cores
    "network_mode": "bridge",
    "security_opt": ["no-new-privileges"],
}

# Exit status of a process killed by `timeout -s KILL`.
_KILLED_EXIT_CODE = 137

# Extra time given to the Docker API beyond the in-container timeout.
_EXEC_GRACE_SECONDS = 5


class DockerSandboxClient:
    """Sandbox client backed by the local Docker daemon.

    All Docker SDK calls are blocking, so each one runs in the default
    executor to keep the event loop free.

    Attributes:
        image_name: The Docker image used for new sandboxes.
        home_dir: Home directory of the sandbox user.
        default_path: PATH used for commands in the sandbox.
    """

    home_dir = "/root"
    default_path = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

    def __init__(self, image_name: str, *, retry_base_seconds: float = 1.0) -> None:
        """Initialize the client.

        Args:
            image_name: Docker image for sandbox containers.
            retry_base_seconds: First backoff delay for exec retries.
        """
        self.image_name = image_name
        self.retry_base_seconds = retry_base_seconds
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def _run_blocking(self, func: Any, *args: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def get(self, name: str) -> SandboxInfo | None:
        try:
            container = await self._run_blocking(self.client.containers.get, name)
        except NotFound:
            return None
        return SandboxInfo(
            id=container.id,
            name=name,
            status="running" if container.status == "running" else "cold",
        )

    async def create(self, name: str) -> SandboxInfo:
        logger.info("docker_sandbox_creating", sandbox=name, image=self.image_name)
        try:
            container = await asyncio.wait_for(
                self._run_blocking(self._run_container, name, self.image_name),
                timeout=60,
            )
        except (APIError, ImageNotFound, TimeoutError) as e:
            logger.error("docker_sandbox_create_failed", sandbox=name, error=str(e))
            raise ProvisioningError(f"Failed to create Docker container {name}: {e}") from e
        return SandboxInfo(id=container.id, name=name, status="running")

    def _run_container(self, name: str, image: str) -> Any:
        """Start a long-lived container (blocking operation)."""
        return self.client.containers.run(
            image,
            ["sleep", "infinity"],
            name=name,
            detach=True,
            labels={"threadrunner.sandbox": name},
            **CONTAINER_CONFIG,
        )

    async def delete(self, name: str) -> None:
        logger.info("docker_sandbox_deleting", sandbox=name)
        await self._run_blocking(self._remove_container, name)

    def _remove_container(self, name: str) -> None:
        """Force-remove a container (blocking operation)."""
        try:
            self.client.containers.get(name).remove(force=True)
        except NotFound:
            pass  # Already removed

    async def list(self, prefix: str = "") -> list[SandboxInfo]:
        filters = {"name": prefix} if prefix else {}
        containers = await self._run_blocking(
            lambda: self.client.containers.list(all=True, filters=filters)
        )
        return [
            SandboxInfo(
                id=container.id,
                name=container.name,
                status="running" if container.status == "running" else "cold",
            )
            for container in containers
            if container.name.startswith(prefix)
        ]

    async def set_network_policy(self, name: str, rules: list[NetworkRule]) -> None:
        logger.debug(
            "docker_network_policy_not_enforced",
            sandbox=name,
            rule_count=len(rules),
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def exec(
        self, name: str, argv: list[str], options: ExecOptions | None = None
    ) -> ExecResult:
        """Execute a command inside the sandbox.

        The command runs under ``timeout -s KILL`` so a runaway process is
        hard-killed inside the container even if the API call is abandoned.
        Transient Docker API errors are retried with exponential backoff;
        a non-zero exit code is returned, not raised.

        Raises:
            ExecTimeoutError: If the command exceeded its timeout.
            ExecutionError: If the sandbox is missing or the daemon keeps failing.
        """
        options = options or ExecOptions()
        attempts = max(1, options.max_retries)

        for attempt in range(1, attempts + 1):
            try:
                return await self._exec_once(name, argv, options)
            except APIError as e:
                if attempt >= attempts:
                    raise ExecutionError(f"Docker exec failed in {name}: {e}") from e
                delay = self.retry_base_seconds * 2 ** (attempt - 1)
                logger.info(
                    "docker_exec_retrying",
                    sandbox=name,
                    attempt=attempt,
                    max_retries=attempts,
                    delay_seconds=delay,
                )
                await asyncio.sleep(delay)

        raise ExecutionError(f"Docker exec failed in {name}")

    async def _exec_once(self, name: str, argv: list[str], options: ExecOptions) -> ExecResult:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._run_blocking(self._exec_in_container, name, argv, options),
                timeout=options.timeout_seconds + _EXEC_GRACE_SECONDS,
            )
        except TimeoutError as e:
            raise ExecTimeoutError(
                f"Docker exec timed out after {options.timeout_seconds}s"
            ) from e
        except NotFound as e:
            raise ExecutionError(f"Sandbox {name} not found") from e

        elapsed = time.monotonic() - started
        if result.exit_code == _KILLED_EXIT_CODE and elapsed >= options.timeout_seconds:
            raise ExecTimeoutError(
                f"Docker exec timed out after {options.timeout_seconds}s",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    def _exec_in_container(self, name: str, argv: list[str], options: ExecOptions) -> ExecResult:
        """Run a command in the container (blocking operation)."""
        container = self.client.containers.get(name)
        if container.status != "running":
            # Containers stop when the daemon or host restarts.
            logger.info("docker_sandbox_starting", sandbox=name, status=container.status)
            container.start()

        command = list(argv)
        if options.stdin is not None:
            stdin_path = f"/tmp/threadrunner-stdin-{uuid.uuid4().hex[:12]}"
            self._put_file(container, stdin_path, options.stdin.encode("utf-8"))
            command = [
                "/bin/sh",
                "-c",
                '"$@" < "$0"; status=$?; rm -f "$0"; exit $status',
                stdin_path,
                *command,
            ]

        timeout_arg = f"{max(1, math.ceil(options.timeout_seconds))}s"
        result = container.exec_run(
            ["timeout", "-s", "KILL", timeout_arg, *command],
            environment=options.env or None,
            workdir=options.dir,
            demux=True,
        )

        stdout_bytes: bytes = b""
        stderr_bytes: bytes = b""
        if isinstance(result.output, tuple):
            stdout_bytes = result.output[0] or b""
            stderr_bytes = result.output[1] or b""
        elif result.output:
            # Fallback for older docker-py behavior when demux is unsupported.
            stdout_bytes = result.output

        return ExecResult(
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            exit_code=result.exit_code if result.exit_code is not None else 1,
        )

    def _put_file(self, container: Any, path: str, data: bytes) -> None:
        """Write a file into the container using a tar archive (blocking operation)."""
        directory, _, filename = path.rpartition("/")
        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            tarinfo = tarfile.TarInfo(name=filename)
            tarinfo.size = len(data)
            tarinfo.mode = 0o600
            tar.addfile(tarinfo, BytesIO(data))
        tar_stream.seek(0)
        container.put_archive(directory or "/", tar_stream)

    async def download_file(self, name: str, path: str) -> bytes:
        return await self._run_blocking(self._read_file_from_container, name, path)

    def _read_file_from_container(self, name: str, path: str) -> bytes:
        """Read a file from the container using a tar archive (blocking operation)."""
        container = self.client.containers.get(name)

        try:
            bits, _ = container.get_archive(path)
        except NotFound as err:
            raise FileNotFoundError(f"File not found: {path}") from err

        tar_stream = BytesIO()
        for chunk in bits:
            tar_stream.write(chunk)
        tar_stream.seek(0)

        with tarfile.open(fileobj=tar_stream, mode="r") as tar:
            member = tar.getmembers()[0]
            extracted = tar.extractfile(member)
            if extracted is None:
                raise FileNotFoundError(f"Cannot read file: {path}")
            return extracted.read()

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def list_checkpoints(self, name: str) -> list[Checkpoint]:
        images = await self._run_blocking(lambda: self.client.images.list(name=name))
        checkpoints: list[Checkpoint] = []
        for image in images:
            for tag in image.tags:
                repository, _, tag_name = tag.rpartition(":")
                if repository == name and tag_name:
                    checkpoints.append(Checkpoint(id=tag_name, comment=tag_name))
        return checkpoints

    async def create_checkpoint(self, name: str, comment: str | None = None) -> str:
        tag = comment or f"ckpt-{int(time.time())}"
        logger.info("docker_checkpoint_creating", sandbox=name, tag=tag)
        try:
            await asyncio.wait_for(
                self._run_blocking(self._commit_container, name, tag),
                timeout=120,
            )
        except (APIError, NotFound, TimeoutError) as e:
            raise ProvisioningError(f"Docker commit failed for {name}: {e}") from e
        return tag

    def _commit_container(self, name: str, tag: str) -> None:
        """Commit the container as ``name:tag`` (blocking operation)."""
        self.client.containers.get(name).commit(repository=name, tag=tag)

    async def restore_checkpoint(self, name: str, checkpoint_id: str) -> None:
        logger.info("docker_checkpoint_restoring", sandbox=name, checkpoint_id=checkpoint_id)
        await self._run_blocking(self._remove_container, name)
        try:
            await asyncio.wait_for(
                self._run_blocking(self._run_container, name, f"{name}:{checkpoint_id}"),
                timeout=60,
            )
        except (APIError, ImageNotFound, TimeoutError) as e:
            raise ExecutionError(f"Docker restore failed for {name}: {e}") from e

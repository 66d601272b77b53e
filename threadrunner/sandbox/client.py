"""Sandbox client contract shared by every sandbox backend.

A backend provides sandbox lifecycle, command execution, file download and
network policy. Pool-capable backends additionally provide checkpoints, which
the runner pool uses to reset a sandbox between turns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol, runtime_checkable


@dataclass
class SandboxInfo:
    """Information about a sandbox known to the backend."""

    id: str
    name: str
    status: Literal["cold", "warm", "running"] = "running"


@dataclass
class ExecResult:
    """Result of executing a command in a sandbox."""

    stdout: str
    stderr: str
    exit_code: int


@dataclass
class Checkpoint:
    """A saved baseline of a sandbox."""

    id: str
    comment: str | None = None


@dataclass
class NetworkRule:
    """One egress rule applied to a sandbox."""

    action: Literal["allow", "deny"]
    domain: str


@dataclass
class ExecOptions:
    """Options for a single exec call.

    Attributes:
        env: Environment variables for the process.
        dir: Working directory inside the sandbox.
        stdin: Text written to the process's standard input.
        timeout_seconds: Hard timeout; the process is killed on expiry.
        max_retries: Attempts for transient backend errors (not for non-zero exits).
    """

    env: dict[str, str] = field(default_factory=dict)
    dir: str | None = None
    stdin: str | None = None
    timeout_seconds: float = 30
    max_retries: int = 1


@runtime_checkable
class SandboxClient(Protocol):
    """Capability contract implemented by sandbox backends."""

    home_dir: str
    default_path: str

    async def get(self, name: str) -> SandboxInfo | None: ...

    async def create(self, name: str) -> SandboxInfo: ...

    async def delete(self, name: str) -> None: ...

    async def exec(
        self, name: str, argv: list[str], options: ExecOptions | None = None
    ) -> ExecResult: ...

    async def download_file(self, name: str, path: str) -> bytes: ...

    async def list(self, prefix: str = "") -> list[SandboxInfo]: ...

    async def set_network_policy(self, name: str, rules: list[NetworkRule]) -> None: ...


@runtime_checkable
class CheckpointingSandboxClient(SandboxClient, Protocol):
    """Sandbox backend that can save and restore baselines."""

    async def list_checkpoints(self, name: str) -> list[Checkpoint]: ...

    async def create_checkpoint(self, name: str, comment: str | None = None) -> str: ...

    async def restore_checkpoint(self, name: str, checkpoint_id: str) -> None: ...


# Egress allowed for agents: model providers, package registries and GitHub.
DEFAULT_NETWORK_POLICY: list[NetworkRule] = [
    NetworkRule("allow", "registry.npmjs.org"),
    NetworkRule("allow", "*.npmjs.org"),
    NetworkRule("allow", "*.npmjs.com"),
    NetworkRule("allow", "storage.googleapis.com"),
    NetworkRule("allow", "*.storage.googleapis.com"),
    NetworkRule("allow", "api.anthropic.com"),
    NetworkRule("allow", "api.openai.com"),
    NetworkRule("allow", "*.cloudflare.com"),
    NetworkRule("allow", "*.googleapis.com"),
    NetworkRule("allow", "github.com"),
    NetworkRule("allow", "*.github.com"),
    NetworkRule("allow", "api.github.com"),
    NetworkRule("allow", "raw.githubusercontent.com"),
    NetworkRule("allow", "objects.githubusercontent.com"),
]

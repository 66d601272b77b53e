"""Shared test fixtures for threadrunner tests.

Provides an in-memory sandbox backend and a temporary session store so
tests never touch real Docker containers or a real agent.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest

from threadrunner.errors import ExecutionError, ProvisioningError
from threadrunner.models.database import SessionStore
from threadrunner.sandbox.client import (
    Checkpoint,
    ExecOptions,
    ExecResult,
    NetworkRule,
    SandboxInfo,
)
from threadrunner.session_registry import SessionRegistry

ExecHandler = Callable[
    [str, list[str], ExecOptions], ExecResult | None | Awaitable[ExecResult | None]
]


# ---------------------------------------------------------------------------
# Fake sandbox backend
# ---------------------------------------------------------------------------


class FakeSandboxClient:
    """In-memory sandbox backend with checkpoints and scriptable exec.

    ``exec_handler`` gets the first chance to answer an exec call; returning
    None falls through to the default (``echo ok`` prints ok, everything
    else succeeds silently).
    """

    home_dir = "/root"
    default_path = "/usr/local/bin:/usr/bin:/bin"

    def __init__(self) -> None:
        self.sandboxes: dict[str, SandboxInfo] = {}
        self.checkpoints: dict[str, list[Checkpoint]] = {}
        self.files: dict[tuple[str, str], bytes] = {}
        self.network_policies: dict[str, list[NetworkRule]] = {}
        self.exec_calls: list[tuple[str, list[str], ExecOptions]] = []
        self.exec_handler: ExecHandler | None = None
        self.create_failures: dict[str, int] = {}
        self.restore_failures: set[str] = set()
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.restored: list[tuple[str, str]] = []
        self._checkpoint_counter = 0

    async def get(self, name: str) -> SandboxInfo | None:
        return self.sandboxes.get(name)

    async def create(self, name: str) -> SandboxInfo:
        remaining = self.create_failures.get(name, self.create_failures.get("*", 0))
        if remaining > 0:
            if name in self.create_failures:
                self.create_failures[name] = remaining - 1
            else:
                self.create_failures["*"] = remaining - 1
            raise ProvisioningError(f"create failed for {name}")
        info = SandboxInfo(id=f"id-{name}", name=name, status="running")
        self.sandboxes[name] = info
        self.created.append(name)
        return info

    async def delete(self, name: str) -> None:
        self.sandboxes.pop(name, None)
        self.deleted.append(name)

    async def exec(
        self, name: str, argv: list[str], options: ExecOptions | None = None
    ) -> ExecResult:
        options = options or ExecOptions()
        self.exec_calls.append((name, list(argv), options))
        if name not in self.sandboxes:
            raise ExecutionError(f"Sandbox {name} not found")

        if self.exec_handler is not None:
            result = self.exec_handler(name, list(argv), options)
            if inspect.isawaitable(result):
                result = await result
            if result is not None:
                return result

        if argv == ["echo", "ok"]:
            return ExecResult(stdout="ok\n", stderr="", exit_code=0)
        return ExecResult(stdout="", stderr="", exit_code=0)

    async def download_file(self, name: str, path: str) -> bytes:
        try:
            return self.files[(name, path)]
        except KeyError as err:
            raise FileNotFoundError(path) from err

    async def list(self, prefix: str = "") -> list[SandboxInfo]:
        return [info for name, info in self.sandboxes.items() if name.startswith(prefix)]

    async def set_network_policy(self, name: str, rules: list[NetworkRule]) -> None:
        self.network_policies[name] = list(rules)

    async def list_checkpoints(self, name: str) -> list[Checkpoint]:
        return list(self.checkpoints.get(name, []))

    async def create_checkpoint(self, name: str, comment: str | None = None) -> str:
        self._checkpoint_counter += 1
        checkpoint_id = f"ckpt-{self._checkpoint_counter}"
        self.checkpoints.setdefault(name, []).append(Checkpoint(id=checkpoint_id, comment=comment))
        return checkpoint_id

    async def restore_checkpoint(self, name: str, checkpoint_id: str) -> None:
        if name in self.restore_failures:
            raise ExecutionError(f"restore failed for {name}")
        self.restored.append((name, checkpoint_id))

    def calls_for(self, name: str) -> list[list[str]]:
        """Return the argv of every exec call made against a sandbox."""
        return [argv for sandbox, argv, _ in self.exec_calls if sandbox == name]


def agent_stdout(text: str = "All done", model: str | None = "claude-test") -> str:
    """Build JSON-lines output of a successful agent run."""
    events: list[dict[str, Any]] = [
        {"type": "agent_start"},
        {"type": "message_start", "message": {"role": "assistant", "model": model, "content": []}},
        {
            "type": "agent_end",
            "messages": [
                {"role": "user", "content": [{"type": "text", "text": "prompt"}]},
                {"role": "assistant", "content": [{"type": "text", "text": text}]},
            ],
        },
    ]
    return "\n".join(json.dumps(event) for event in events) + "\n"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_client() -> FakeSandboxClient:
    """Return a fresh in-memory sandbox backend."""
    return FakeSandboxClient()


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "data" / "sessions.db")


@pytest.fixture()
async def store(db_path: str) -> SessionStore:
    """Return an initialized session store on a temporary database."""
    session_store = SessionStore(db_path)
    await session_store.init()
    return session_store


@pytest.fixture()
def registry(fake_client: FakeSandboxClient, store: SessionStore) -> SessionRegistry:
    return SessionRegistry(fake_client, store)

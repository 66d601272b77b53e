"""Sandbox module: the backend contract, the Docker backend and the runner pool.

This module provides the SandboxClient contract, the DockerSandboxClient
used for local deployments, and the RunnerPool that keeps checkpointed
runners warm between turns.
"""

from threadrunner.sandbox.client import (
    DEFAULT_NETWORK_POLICY,
    Checkpoint,
    CheckpointingSandboxClient,
    ExecOptions,
    ExecResult,
    NetworkRule,
    SandboxClient,
    SandboxInfo,
)
from threadrunner.sandbox.docker_sandbox import DockerSandboxClient
from threadrunner.sandbox.pool import CLEAN_CHECKPOINT, RunnerLease, RunnerPool
from threadrunner.sandbox.security import truncate_diagnostic, validate_artifact_path

__all__ = [
    "CLEAN_CHECKPOINT",
    "DEFAULT_NETWORK_POLICY",
    "Checkpoint",
    "CheckpointingSandboxClient",
    "DockerSandboxClient",
    "ExecOptions",
    "ExecResult",
    "NetworkRule",
    "RunnerLease",
    "RunnerPool",
    "SandboxClient",
    "SandboxInfo",
    "truncate_diagnostic",
    "validate_artifact_path",
]

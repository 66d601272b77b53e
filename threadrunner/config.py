"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for threadrunner.
All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any, Literal

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list(value: Any) -> list[str]:
    """Parse a list setting from a JSON array, comma-separated string or list."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        value = value.strip()
        if value.startswith("["):
            try:
                return [str(item).strip() for item in json.loads(value) if str(item).strip()]
            except json.JSONDecodeError:
                pass
        return [item.strip() for item in value.split(",") if item.strip()]
    return []


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        sandbox_backend: Sandbox provider used for workers (only "docker" ships).
        docker_sandbox_image: Image used for local container sandboxes.
        sandbox_name_prefix: Prefix of per-conversation sandbox names.
        runner_name_prefix: Prefix of pool runner names.
        execution_mode: "session" runs each conversation in its own sandbox,
            "pool" borrows a pre-provisioned runner for every turn.
        pool_size: Number of runners provisioned at startup in pool mode.
        exec_timeout_seconds: Hard timeout for one agent invocation.
        health_check_timeout_seconds: Timeout of the pre-acquire health probe.
        provision_max_attempts: Attempt budget for building one runner.
        provision_retry_base_seconds: First backoff delay between attempts.
        provision_retry_max_seconds: Upper bound on the backoff delay.
        debounce_seconds: Quiet window used to merge bursts of messages.
        database_path: SQLite file holding session bookkeeping.
        agent_bin: Path of the coding agent binary inside the sandbox.
        agent_model: Optional model passed to the agent.
        agent_thinking_level: Optional thinking level passed to the agent.
        agent_api_key: API key forwarded to the agent process.
        max_artifacts: Maximum number of artifact files collected per turn.
        max_artifact_bytes: Maximum size of a single collected artifact.
        max_diagnostic_chars: Truncation applied to stderr in errors.
        git_author_name: Optional git identity configured in sandboxes.
        git_author_email: Optional git identity configured in sandboxes.
        system_prompt: Optional system prompt written as AGENTS.md.
        allowed_user_ids: Users allowed to drive turns (empty = everyone).
        allowed_channel_ids: Channels allowed to drive turns (empty = all).
        backend_port: Port for the FastAPI control surface.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Sandbox backend
    sandbox_backend: Literal["docker"] = "docker"
    docker_sandbox_image: str = "ghcr.io/threadrunner/sandbox:latest"
    sandbox_name_prefix: str = "tr-"
    runner_name_prefix: str = "tr-runner-"

    # Execution
    execution_mode: Literal["session", "pool"] = "session"
    pool_size: int = 2
    exec_timeout_seconds: float = 600
    health_check_timeout_seconds: float = 10

    # Provisioning retry/backoff
    provision_max_attempts: int = 10
    provision_retry_base_seconds: float = 5
    provision_retry_max_seconds: float = 120

    # Turn coalescing
    debounce_seconds: float = 1.5

    # Database Configuration
    database_path: str = "./data/threadrunner.db"

    # Coding agent
    agent_bin: str = "/usr/local/bin/pi"
    agent_model: str | None = None
    agent_thinking_level: str | None = None
    agent_api_key: str = ""

    # Artifacts
    max_artifacts: int = 10
    max_artifact_bytes: int = 10 * 1024 * 1024
    max_diagnostic_chars: int = 500

    # Sandbox identity
    git_author_name: str | None = None
    git_author_email: str | None = None
    system_prompt: str | None = None

    # Authorization (empty lists = allow all)
    allowed_user_ids: str | list[str] = []
    allowed_channel_ids: str | list[str] = []

    # Server Configuration
    backend_port: int = 8000
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("allowed_user_ids", "allowed_channel_ids", mode="before")
    @classmethod
    def parse_id_lists(cls, v: Any) -> list[str]:
        """Parse allowlists from a JSON array, comma-separated string or list.

        Accepts:
        - JSON array: '["U1", "U2"]'
        - Comma-separated: 'U1,U2'
        - Already a list: ["U1", "U2"]
        """
        return _parse_list(v)

    @field_validator("pool_size", "provision_max_attempts", "max_artifacts")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def is_user_allowed(self, user_id: str) -> bool:
        """Check if a user is authorized to drive turns."""
        return not self.allowed_user_ids or user_id in self.allowed_user_ids

    def is_channel_allowed(self, channel_id: str) -> bool:
        """Check if a channel is authorized to drive turns."""
        return not self.allowed_channel_ids or channel_id in self.allowed_channel_ids


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)

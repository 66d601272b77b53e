"""FastAPI application entry point for threadrunner.

This module wires the sandbox backend, session store, session registry,
runner pool, turn executor and turn coalescer together and exposes them
through the HTTP control surface.

Usage:
    uvicorn threadrunner.main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from threadrunner import __version__
from threadrunner.api.routes import router, set_coalescer
from threadrunner.config import Settings, configure_logging, settings
from threadrunner.errors import ThreadRunnerError
from threadrunner.models.database import SessionStore
from threadrunner.models.schemas import SessionReport
from threadrunner.sandbox.docker_sandbox import DockerSandboxClient
from threadrunner.sandbox.pool import RunnerPool, runner_setup_commands
from threadrunner.session_registry import SessionRegistry
from threadrunner.turns.coalescer import InboundMessage, TurnCoalescer
from threadrunner.turns.executor import TurnExecutor, TurnResult
from threadrunner.turns.pending import PendingTurn

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


async def log_result(turn: PendingTurn, result: TurnResult) -> None:
    """Default result sink: the chat layer replaces this with message posting."""
    logger.info(
        "turn_result",
        conversation_key=turn.conversation.key,
        status=str(result.status),
        job_id=result.job_id,
        content_preview=result.content[:200],
        artifact_count=len(result.artifacts),
    )


async def log_error(turn: PendingTurn | None, error: BaseException) -> None:
    logger.error(
        "turn_error",
        conversation_key=turn.conversation.key if turn else None,
        kind=str(error.kind) if isinstance(error, ThreadRunnerError) else "unknown",
        error=str(error),
    )


async def log_control(message: InboundMessage, report: SessionReport) -> None:
    logger.info(
        "control_result",
        conversation_key=message.conversation.key,
        status=str(report.status),
        message=report.message,
    )


def build_coalescer(
    config: Settings, client: DockerSandboxClient, store: SessionStore
) -> TurnCoalescer:
    """Construct the registry, optional pool, executor and coalescer."""
    registry = SessionRegistry(
        client,
        store,
        sandbox_prefix=config.sandbox_name_prefix,
        agent_bin=config.agent_bin,
    )

    pool: RunnerPool | None = None
    if config.execution_mode == "pool":
        pool = RunnerPool(
            client,
            config.pool_size,
            name_prefix=config.runner_name_prefix,
            setup_commands=runner_setup_commands(config.agent_bin),
            max_attempts=config.provision_max_attempts,
            retry_base_seconds=config.provision_retry_base_seconds,
            retry_max_seconds=config.provision_retry_max_seconds,
            health_check_timeout_seconds=config.health_check_timeout_seconds,
        )

    executor = TurnExecutor(
        registry,
        client,
        pool=pool,
        execution_mode=config.execution_mode,
        agent_bin=config.agent_bin,
        agent_model=config.agent_model,
        agent_thinking_level=config.agent_thinking_level,
        agent_api_key=config.agent_api_key,
        exec_timeout_seconds=config.exec_timeout_seconds,
        max_artifacts=config.max_artifacts,
        max_artifact_bytes=config.max_artifact_bytes,
        max_diagnostic_chars=config.max_diagnostic_chars,
        git_author_name=config.git_author_name,
        git_author_email=config.git_author_email,
        system_prompt=config.system_prompt,
    )

    return TurnCoalescer(
        executor,
        debounce_seconds=config.debounce_seconds,
        is_user_allowed=config.is_user_allowed,
        is_channel_allowed=config.is_channel_allowed,
        on_result=log_result,
        on_error=log_error,
        on_control=log_control,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Startup initializes the store, reconciles sessions left running by a
    previous process and, in pool mode, starts background provisioning.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        execution_mode=settings.execution_mode,
    )

    client = DockerSandboxClient(settings.docker_sandbox_image)
    store = SessionStore(settings.database_path)
    await store.init()

    coalescer = build_coalescer(settings, client, store)
    await coalescer.executor.registry.reconcile_all()

    pool = coalescer.executor.pool
    if pool is not None:
        pool.start()

    set_coalescer(coalescer)
    app.state.coalescer = coalescer

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await coalescer.close()
    if pool is not None:
        await pool.close()
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="threadrunner",
    description="Per-conversation turn scheduler for sandboxed coding agents.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.include_router(router, tags=["threadrunner"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "threadrunner API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "threadrunner.main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        log_level=settings.log_level.lower(),
    )

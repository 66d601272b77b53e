"""Error taxonomy for turn scheduling and sandbox lifecycle failures.

Every error carries an explicit ``kind`` tag. Callers branch on the tag,
never on message text: a generic "aborted due to timeout" message is a
``TIMEOUT``, and only an explicit ``UserAbort`` is an expected cancellation.
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Classification of a failure for logging and control flow."""

    PROVISIONING = "provisioning"
    NO_RUNNERS = "no_runners"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    CHECKPOINT_RESTORE = "checkpoint_restore"
    CONCURRENT_TURN = "concurrent_turn"
    USER_ABORT = "user_abort"


class ThreadRunnerError(Exception):
    """Base class for all threadrunner errors."""

    kind: ErrorKind = ErrorKind.EXECUTION


class ProvisioningError(ThreadRunnerError):
    """Creating or bootstrapping a sandbox failed."""

    kind = ErrorKind.PROVISIONING


class NoRunnersAvailable(ThreadRunnerError):
    """Every pool runner failed provisioning; nothing can be acquired."""

    kind = ErrorKind.NO_RUNNERS


class ExecutionError(ThreadRunnerError):
    """The agent process failed or produced no completion marker.

    Attributes:
        exit_code: Exit code of the process, if it exited.
        stderr: Truncated diagnostic output.
    """

    kind = ErrorKind.EXECUTION

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class ExecTimeoutError(ExecutionError, TimeoutError):
    """An exec call exceeded its hard timeout and was killed."""

    kind = ErrorKind.TIMEOUT


class CheckpointRestoreError(ThreadRunnerError):
    """Restoring a runner to its clean checkpoint failed."""

    kind = ErrorKind.CHECKPOINT_RESTORE


class ConcurrentTurnError(ThreadRunnerError):
    """A turn is already running for the conversation. Informational."""

    kind = ErrorKind.CONCURRENT_TURN


class UserAbort(ThreadRunnerError):
    """The user explicitly aborted the running turn."""

    kind = ErrorKind.USER_ABORT


def error_kind(error: BaseException) -> ErrorKind | None:
    """Return the tagged kind of an error, or None for foreign exceptions."""
    if isinstance(error, ThreadRunnerError):
        return error.kind
    return None


def is_expected_cancellation(error: BaseException | None) -> bool:
    """Return True if the error (or anything in its cause chain) is a user abort."""
    seen: set[int] = set()
    while error is not None and id(error) not in seen:
        seen.add(id(error))
        if error_kind(error) is ErrorKind.USER_ABORT:
            return True
        error = error.__cause__
    return False

"""Tests for errors.py -- error kinds and expected-cancellation detection."""

import pytest

from threadrunner.errors import (
    CheckpointRestoreError,
    ConcurrentTurnError,
    ErrorKind,
    ExecTimeoutError,
    ExecutionError,
    NoRunnersAvailable,
    ProvisioningError,
    UserAbort,
    error_kind,
    is_expected_cancellation,
)


class TestErrorKind:
    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (ProvisioningError("x"), ErrorKind.PROVISIONING),
            (NoRunnersAvailable("x"), ErrorKind.NO_RUNNERS),
            (ExecutionError("x"), ErrorKind.EXECUTION),
            (ExecTimeoutError("x"), ErrorKind.TIMEOUT),
            (CheckpointRestoreError("x"), ErrorKind.CHECKPOINT_RESTORE),
            (ConcurrentTurnError("x"), ErrorKind.CONCURRENT_TURN),
            (UserAbort("x"), ErrorKind.USER_ABORT),
        ],
    )
    def test_kinds(self, error: Exception, kind: ErrorKind) -> None:
        assert error_kind(error) is kind

    def test_foreign_error_has_no_kind(self) -> None:
        assert error_kind(ValueError("x")) is None

    def test_timeout_is_builtin_timeout(self) -> None:
        assert isinstance(ExecTimeoutError("x"), TimeoutError)

    def test_execution_error_carries_diagnostics(self) -> None:
        error = ExecutionError("failed", exit_code=2, stderr="bad")
        assert error.exit_code == 2
        assert error.stderr == "bad"


class TestIsExpectedCancellation:
    """Only an explicit abort tag counts, never message text."""

    def test_user_abort(self) -> None:
        assert is_expected_cancellation(UserAbort("stopped")) is True

    def test_abort_in_cause_chain(self) -> None:
        try:
            try:
                raise UserAbort("stopped")
            except UserAbort as inner:
                raise RuntimeError("wrapped") from inner
        except RuntimeError as outer:
            assert is_expected_cancellation(outer) is True

    @pytest.mark.parametrize(
        "error",
        [
            ExecutionError("aborted due to timeout"),
            ExecTimeoutError("Operation aborted"),
            RuntimeError("user aborted"),
        ],
    )
    def test_abort_sounding_text_is_not_expected(self, error: Exception) -> None:
        assert is_expected_cancellation(error) is False

    def test_none(self) -> None:
        assert is_expected_cancellation(None) is False

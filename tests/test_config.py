"""Tests for config.py -- settings parsing and validation."""

import pytest
from pydantic import ValidationError

from threadrunner.config import Settings


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.execution_mode == "session"
        assert settings.pool_size == 2
        assert settings.provision_max_attempts == 10
        assert settings.allowed_user_ids == []

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("U1,U2", ["U1", "U2"]),
            (" U1 , ,U2 ", ["U1", "U2"]),
            ('["U1", "U2"]', ["U1", "U2"]),
            (["U1"], ["U1"]),
            ("", []),
        ],
    )
    def test_id_lists(self, raw: object, expected: list[str]) -> None:
        settings = Settings(_env_file=None, allowed_user_ids=raw)
        assert settings.allowed_user_ids == expected

    def test_id_list_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ALLOWED_CHANNEL_IDS", "C1,C2")
        settings = Settings(_env_file=None)
        assert settings.allowed_channel_ids == ["C1", "C2"]

    def test_allowlists(self) -> None:
        settings = Settings(_env_file=None, allowed_user_ids="U1", allowed_channel_ids="C1")
        assert settings.is_user_allowed("U1") is True
        assert settings.is_user_allowed("U2") is False
        assert settings.is_channel_allowed("C1") is True
        assert settings.is_channel_allowed("C2") is False

    def test_empty_allowlists_allow_all(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.is_user_allowed("anyone") is True
        assert settings.is_channel_allowed("anywhere") is True

    def test_invalid_execution_mode(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, execution_mode="cluster")

    @pytest.mark.parametrize("field", ["pool_size", "provision_max_attempts", "max_artifacts"])
    def test_positive_fields(self, field: str) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

"""Tests for settings and sync mode parsing."""

import pytest

from kb_governance.config import Settings
from kb_governance.db.models import SyncMode
from kb_governance.exceptions import InvalidSyncModeError


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("SYNC_PAGE_SIZE", raising=False)
        settings = Settings(_env_file=None)

        assert settings.SYNC_PAGE_SIZE == 50
        assert settings.SYNC_MISSING_CUTOFF_HOURS == 2
        assert settings.BUSINESS_TIMEZONE == "America/Sao_Paulo"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SYNC_WORKERS", "8")
        monkeypatch.setenv("SLA_DAYS_ERROR", "1")

        settings = Settings(_env_file=None)

        assert settings.SYNC_WORKERS == 8
        assert settings.sla_days == {"ERROR": 1, "WARN": 15, "INFO": 30}

    def test_missing_token_warns(self, monkeypatch, caplog):
        monkeypatch.setenv("SOURCE_API_TOKEN", "")
        monkeypatch.setenv("DEBUG", "false")
        Settings(_env_file=None)
        assert "SOURCE_API_TOKEN is empty" in caplog.text


class TestSyncModeParse:
    """Tests for SyncMode.parse()."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("FULL", SyncMode.FULL),
            ("delta", SyncMode.DELTA_WINDOW),
            ("Incremental", SyncMode.DELTA_WINDOW),
            (" surgical ", SyncMode.DELTA_SURGICAL),
            ("DELTA_SMART", SyncMode.DELTA_SURGICAL),
            (SyncMode.FULL, SyncMode.FULL),
        ],
    )
    def test_aliases(self, raw, expected):
        assert SyncMode.parse(raw) == expected

    def test_blank_uses_default(self):
        assert SyncMode.parse("", default=SyncMode.FULL) == SyncMode.FULL
        assert SyncMode.parse(None, default=SyncMode.DELTA_WINDOW) == SyncMode.DELTA_WINDOW

    def test_unknown_mode(self):
        with pytest.raises(InvalidSyncModeError):
            SyncMode.parse("hourly")

    def test_blank_without_default(self):
        with pytest.raises(InvalidSyncModeError):
            SyncMode.parse(None)

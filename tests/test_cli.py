"""Tests for CLI wiring and log redaction."""

import logging

from click.testing import CliRunner

from kb_governance.cli import SecretRedactingFilter, cli


def _redact(message: str) -> str:
    record = logging.LogRecord("test", logging.INFO, __file__, 1, message, None, None)
    SecretRedactingFilter().filter(record)
    return record.msg


class TestSecretRedactingFilter:
    """Tests for SecretRedactingFilter."""

    def test_redacts_query_token(self):
        redacted = _redact("GET /kb/article?token=abcd1234efgh5678&page=1")
        assert "abcd1234efgh5678" not in redacted
        assert "token=[REDACTED]" in redacted

    def test_redacts_bearer(self):
        assert _redact("Authorization: Bearer xyz-secret") == "Authorization: Bearer [REDACTED]"

    def test_leaves_plain_messages(self):
        assert _redact("Sync run 4 started") == "Sync run 4 started"


class TestCommands:
    """Tests for the command group."""

    def test_lists_commands(self):
        result = CliRunner().invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("sync", "scheduler", "issues", "duplicates", "serve"):
            assert command in result.output

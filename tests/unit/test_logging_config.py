"""Tests for logging configuration."""

import json

import pytest
import structlog

from salt_provisioner.config import Settings
from salt_provisioner.logging_config import SecretMasker, setup_logging

pytestmark = pytest.mark.usefixtures("reset_logging")


def parse_json_lines(output):
    """Parse output containing multiple JSON lines."""
    lines = output.strip().split("\n")
    return [json.loads(line) for line in lines if line.strip()]


class TestLoggingSetup:
    def test_settings_come_from_environment(self, monkeypatch, capsys):
        monkeypatch.setenv("SALT_PROVISIONER_SERVICE_NAME", "edge-provisioner")
        monkeypatch.setenv("SALT_PROVISIONER_LOG_FORMAT", "json")
        monkeypatch.setenv("SALT_PROVISIONER_LOG_LEVEL", "debug")

        setup_logging()

        entries = parse_json_lines(capsys.readouterr().err)
        assert entries[0]["event"] == "logging_configured"
        assert entries[0]["service"] == "edge-provisioner"
        assert entries[0]["log_level"] == "DEBUG"

    def test_json_output_on_stderr(self, capsys):
        """JSON lines go to stderr with service and context bound."""
        setup_logging(Settings(service_name="test_service", log_format="json"))

        logger = structlog.get_logger()
        with structlog.contextvars.bound_contextvars(apply_id="abc123"):
            logger.info("stage_entered", stage="executing")

        captured = capsys.readouterr()
        assert captured.out == ""
        entries = parse_json_lines(captured.err)
        log_entry = next((e for e in entries if e.get("event") == "stage_entered"), None)
        assert log_entry is not None

        assert log_entry["service"] == "test_service"
        assert log_entry["apply_id"] == "abc123"
        assert log_entry["stage"] == "executing"
        assert log_entry["level"] == "info"
        assert "timestamp" in log_entry

    def test_json_logs_flag_overrides_console_format(self, capsys):
        setup_logging(Settings(log_format="console"), json_logs=True)

        structlog.get_logger().warning("visible_event")

        entries = parse_json_lines(capsys.readouterr().err)
        assert entries[-1]["event"] == "visible_event"

    def test_log_level_filters(self, capsys):
        setup_logging(Settings(log_format="json", log_level="WARNING"))

        logger = structlog.get_logger()
        logger.info("hidden_event")
        logger.warning("visible_event")

        output = capsys.readouterr().err
        assert "hidden_event" not in output
        assert "visible_event" in output

    def test_secrets_are_masked(self, capsys):
        setup_logging(Settings(log_format="json"), secrets=["hunter2", ""])

        structlog.get_logger().info(
            "remote_command_started", command="echo 'hunter2' | sudo -S rm -rf /srv/salt"
        )

        output = capsys.readouterr().err
        assert "hunter2" not in output
        assert "echo '********' | sudo -S rm -rf /srv/salt" in output


def test_secret_masker_without_secrets_is_a_no_op():
    event = {"event": "connected", "attempts": 2}

    assert SecretMasker()(None, "info", dict(event)) == event

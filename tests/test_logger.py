"""
Tests for logger functionality.
"""

import json

import structlog
from structlog.testing import capture_logs

from logger import configure_logging, get_logger


class TestConfigureLogging:
    def test_json_output(self, capsys):
        configure_logging("INFO", "json")
        try:
            get_logger().info("Merged contact clusters", primary_id=3, merged_primaries=[3, 7])
        finally:
            configure_logging()

        line = capsys.readouterr().out.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["event"] == "Merged contact clusters"
        assert event["merged_primaries"] == [3, 7]
        assert event["level"] == "info"
        assert "timestamp" in event

    def test_level_filters_debug(self):
        configure_logging("INFO")

        with capture_logs() as logs:
            get_logger().debug("Cluster already knows request", primary_id=1)
            get_logger().info("Created primary contact", contact_id=1)

        assert [entry["event"] for entry in logs] == ["Created primary contact"]

    def test_debug_level(self, debug_logging):
        with capture_logs() as logs:
            get_logger().debug("Cluster already knows request", primary_id=1)

        assert logs == [
            {"event": "Cluster already knows request", "primary_id": 1, "log_level": "debug"}
        ]

    def test_text_format_is_configurable(self, capsys):
        configure_logging("INFO", "text")
        try:
            get_logger().info("Contact store ready")
        finally:
            configure_logging()

        assert "Contact store ready" in capsys.readouterr().out
        assert structlog.is_configured()

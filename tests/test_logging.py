"""
Tests for the structlog processors.
"""
from mssql_operator.config.logging import REDACTED, add_operator_context, redact_secrets


def test_credentials_are_redacted():
    event = redact_secrets(None, "info", {"event": "connecting", "password": "P@ssw0rd}", "host": "sqlmi"})

    assert event["password"] == REDACTED
    assert event["host"] == "sqlmi"


def test_operator_context_does_not_override_event_keys(test_settings):
    event = add_operator_context(None, "info", {"event": "x", "version": "custom"})

    assert event["operator"] == test_settings.app_name
    assert event["version"] == "custom"

from unittest.mock import MagicMock, patch

import pytest

from regwatch import __version__
from regwatch.utils.config import Settings
from regwatch.utils.logging import (
    LogPerformance,
    add_app_context,
    add_correlation_id,
    clear_correlation_id,
    configure_from_settings,
    filter_sensitive_data,
    get_correlation_id,
    log_drift_detected,
    log_rule_transition,
    set_correlation_id,
)


@pytest.fixture(autouse=True)
def _clean_correlation_id():
    clear_correlation_id()
    yield
    clear_correlation_id()


class TestCorrelationId:
    def test_generated_when_missing(self):
        correlation_id = set_correlation_id()

        assert len(correlation_id) == 36
        assert get_correlation_id() == correlation_id

    def test_custom_and_cleared(self):
        set_correlation_id("sentinel-run-1")
        assert add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "sentinel-run-1"

        clear_correlation_id()
        assert get_correlation_id() is None

    def test_explicit_value_is_kept(self):
        set_correlation_id("outer")

        event = add_correlation_id(None, "info", {"event": "x", "correlation_id": "inner"})

        assert event["correlation_id"] == "inner"


def test_sensitive_keys_are_redacted():
    event = filter_sensitive_data(
        None, "info", {"event": "provider_created", "api_key": "sk-live", "model": "gpt-4o-mini"}
    )

    assert event["api_key"] == "***REDACTED***"
    assert event["model"] == "gpt-4o-mini"


def test_app_context():
    event = add_app_context(None, "info", {"event": "x"})

    assert (event["app"], event["version"]) == ("regwatch", __version__)


class TestLogPerformance:
    def test_completed(self):
        logger = MagicMock()

        with LogPerformance("sitemap_parse", logger):
            pass

        logger.debug.assert_called_once_with("sitemap_parse_started")
        name = logger.info.call_args.args[0]
        assert name == "sitemap_parse_completed"
        assert logger.info.call_args.kwargs["duration_ms"] >= 0

    def test_failed_reraises(self):
        logger = MagicMock()

        with pytest.raises(ValueError):
            with LogPerformance("sitemap_parse", logger):
                raise ValueError("bad xml")

        kwargs = logger.error.call_args.kwargs
        assert logger.error.call_args.args[0] == "sitemap_parse_failed"
        assert (kwargs["error"], kwargs["error_type"]) == ("bad xml", "ValueError")


def test_audit_helpers_carry_action_and_resource():
    logger = MagicMock()

    log_drift_detected(logger, endpoint_id=7, drift_percent=41.5, threshold=30.0)
    log_rule_transition(logger, rule_id=3, from_status="DRAFT", to_status="APPROVED", actor="REVIEWER")

    drift = logger.warning.call_args.kwargs
    transition = logger.info.call_args.kwargs
    assert (drift["action"], drift["resource"]) == ("drift", "endpoint")
    assert (transition["action"], transition["resource"], transition["to_status"]) == (
        "transition",
        "rule",
        "APPROVED",
    )


def test_configure_from_settings():
    settings = Settings(log_level="DEBUG", json_logs=True, debug=True)

    with patch("regwatch.utils.logging.configure_logging") as configure:
        configure_from_settings(settings)

    configure.assert_called_once_with(log_level="DEBUG", json_logs=True, dev_mode=False)

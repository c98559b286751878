"""Unit tests for the logging configuration module."""

import logging
from unittest.mock import MagicMock, patch

import pytest
import structlog

from plugin_updater.logging import get_logger, setup_logging


@pytest.fixture(autouse=True)
def _reset_root_logger():
    """Reset root logger and structlog state around each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    logging.root.handlers.clear()
    logging.root.setLevel(logging.WARNING)
    yield
    logging.root.handlers.clear()
    logging.root.handlers.extend(original_handlers)
    logging.root.setLevel(original_level)
    structlog.reset_defaults()


def _mock_settings(level: str = "INFO", development: bool = False) -> MagicMock:
    settings = MagicMock()
    settings.log_level = level
    settings.is_development = development
    return settings


class TestSetupLogging:
    """Tests for setup_logging function."""

    @pytest.mark.parametrize(
        ("level", "expected"),
        [("DEBUG", logging.DEBUG), ("warning", logging.WARNING), ("NONEXISTENT", logging.INFO)],
    )
    def test_basic_config_level(self, level, expected):
        with patch("plugin_updater.logging.get_settings", return_value=_mock_settings(level)):
            with patch("plugin_updater.logging.logging.basicConfig") as mock_basic:
                setup_logging()

        assert mock_basic.call_args.kwargs["level"] == expected

    def test_http_client_loggers_quietened(self):
        with patch("plugin_updater.logging.get_settings", return_value=_mock_settings("DEBUG")):
            setup_logging()

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_json_renderer_in_production(self):
        with patch("plugin_updater.logging.get_settings", return_value=_mock_settings()):
            with patch("plugin_updater.logging.structlog.configure") as mock_configure:
                setup_logging()

        processors = mock_configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_renderer_in_development(self):
        settings = _mock_settings(development=True)
        with patch("plugin_updater.logging.get_settings", return_value=settings):
            with patch("plugin_updater.logging.structlog.configure") as mock_configure:
                setup_logging()

        processors = mock_configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


class TestGetLogger:
    """Tests for get_logger function."""

    def test_returns_bindable_logger(self):
        logger = get_logger("plugin_updater.test")
        assert hasattr(logger, "info")
        assert hasattr(logger, "bind")

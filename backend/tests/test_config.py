"""Tests for settings and logging setup."""

import logging

import pytest
import structlog

from app.config import Settings, get_settings
from core.logging_config import setup_logging


@pytest.mark.unit
class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.WORKFLOW_MAX_STEPS == 10_000
        assert settings.WORKFLOW_DEFAULT_DELAY_MS == 1000
        assert settings.DATABASE_URL.startswith("sqlite+aiosqlite")

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_MAX_LOOP_ITERATIONS", "7")
        monkeypatch.setenv("ENVIRONMENT", "production")
        settings = Settings(_env_file=None)
        assert settings.WORKFLOW_MAX_LOOP_ITERATIONS == 7
        assert settings.is_production
        assert not settings.is_development

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


@pytest.mark.unit
class TestLogging:

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)
        structlog.reset_defaults()

    def test_json_logging(self, capsys):
        setup_logging(Settings(_env_file=None, ENVIRONMENT="production", LOG_FORMAT="json", LOG_LEVEL="DEBUG"))
        structlog.get_logger("test").info("Step finished", step_id="s1")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        assert '"event": "Step finished"' in line
        assert '"step_id": "s1"' in line
        assert logging.getLogger().level == logging.DEBUG

    def test_console_logging(self, capsys):
        setup_logging(Settings(_env_file=None, ENVIRONMENT="testing", LOG_FORMAT="text"))
        structlog.get_logger("test").warning("Condition evaluation failed", step_id="c1")
        assert "Condition evaluation failed" in capsys.readouterr().out

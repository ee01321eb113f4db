"""Tests for taskweave.config.settings and taskweave.enhanced_logging."""

import json
import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from taskweave.config.settings import Settings, get_settings
from taskweave.enhanced_logging import JsonFormatter, configure_logging, track_performance


@pytest.fixture(autouse=True)
def _reset_container():
    from taskweave import di_container
    di_container._container = None
    yield
    di_container._container = None


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    # Keep a developer's .env out of the defaults.
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.mainline_branch == "main"
        assert settings.max_attempts == 5
        assert settings.backoff_base_seconds == 300.0
        assert settings.backoff_max_seconds == 3600.0
        assert settings.min_score_change == 15.0
        assert settings.count_cancelled_as_complete is False
        assert settings.executor_command == "claude -p"
        assert not settings.is_production

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("TASKWEAVE_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("TASKWEAVE_MAINLINE_BRANCH", "trunk")
        monkeypatch.setenv("TASKWEAVE_COUNT_CANCELLED_AS_COMPLETE", "true")
        settings = Settings()
        assert settings.max_attempts == 7
        assert settings.mainline_branch == "trunk"
        assert settings.count_cancelled_as_complete is True

    def test_log_level_normalized(self):
        settings = Settings(log_level="debug")
        assert settings.log_level == "DEBUG"
        assert settings.get_log_level() == logging.DEBUG

    @pytest.mark.parametrize("field,value", [
        ("environment", "prod"),
        ("log_level", "LOUD"),
        ("log_format", "xml"),
        ("max_attempts", 0),
        ("min_score_change", 150),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_backoff_ceiling_below_base(self):
        with pytest.raises(ValidationError):
            Settings(backoff_base_seconds=600, backoff_max_seconds=60)

    def test_workspace_root_path(self, tmp_path):
        relative = Settings(repository_path=str(tmp_path), workspace_root=".worktrees")
        assert relative.workspace_root_path() == tmp_path / ".worktrees"
        absolute = Settings(workspace_root="/srv/ws")
        assert absolute.workspace_root_path() == Path("/srv/ws")

    def test_get_settings_cached(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("TASKWEAVE_MAX_ATTEMPTS", "9")
        assert get_settings() is first
        get_settings.cache_clear()
        assert get_settings().max_attempts == 9


class TestLogging:

    def test_configure_replaces_handler(self):
        first = configure_logging(Settings(log_format="json", log_level="warning"))
        second = configure_logging(Settings())
        assert first is second
        ours = [h for h in second.handlers if getattr(h, "_taskweave", False)]
        assert len(ours) == 1
        assert second.level == logging.INFO
        second.removeHandler(ours[0])

    def test_json_formatter(self):
        record = logging.LogRecord("taskweave.test", logging.WARNING, __file__, 1, "Task %s escalated", ("t1",), None)
        payload = json.loads(JsonFormatter().format(record))
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "taskweave.test"
        assert payload["message"] == "Task t1 escalated"

    def test_track_performance_sync(self, caplog):
        @track_performance
        def add(a, b):
            return a + b

        with caplog.at_level(logging.DEBUG):
            assert add(1, 2) == 3
        assert "completed in" in caplog.text

    @pytest.mark.asyncio
    async def test_track_performance_async(self, caplog):
        @track_performance(operation="analysis")
        async def analyze():
            return "ok"

        with caplog.at_level(logging.DEBUG):
            assert await analyze() == "ok"
        assert "analysis completed in" in caplog.text

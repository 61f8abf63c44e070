"""Tests for OptimizerSettings and logging setup."""

import logging

import pydantic
import pytest

from tick_optimizer.config import OptimizerSettings
from tick_optimizer.engine.models import SessionAggregation
from tick_optimizer.logging import LoggerMixin, get_logger, log_context, setup_logging


class TestOptimizerSettings:

    def test_defaults(self):
        settings = OptimizerSettings()
        assert settings.max_combinations_default == 10000
        assert settings.progress_buffer_size == 256
        assert settings.max_workers is None
        assert settings.random_seed == 42
        assert settings.initial_capital == 1000.0
        assert settings.session_aggregation is SessionAggregation.MEAN
        assert settings.outcome == "YES"
        assert settings.completed_top_n == 10

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TICK_OPTIMIZER_MAX_COMBINATIONS_DEFAULT", "500")
        monkeypatch.setenv("TICK_OPTIMIZER_SESSION_AGGREGATION", "compounded")
        monkeypatch.setenv("TICK_OPTIMIZER_MAX_WORKERS", "4")

        settings = OptimizerSettings()

        assert settings.max_combinations_default == 500
        assert settings.session_aggregation is SessionAggregation.COMPOUNDED
        assert settings.max_workers == 4

    @pytest.mark.parametrize(
        "field,value",
        [
            ("max_combinations_default", 0),
            ("progress_buffer_size", -1),
            ("initial_capital", 0.0),
            ("completed_top_n", 0),
        ],
    )
    def test_rejects_non_positive(self, field, value):
        with pytest.raises(pydantic.ValidationError):
            OptimizerSettings(**{field: value})


class TestLogging:

    def test_setup_creates_log_files(self, tmp_path):
        setup_logging(log_level="DEBUG", log_dir=tmp_path, log_to_console=False)
        get_logger("tests").info("Run started", run_id="r1")

        assert (tmp_path / "optimizer.log").exists()
        assert (tmp_path / "error.log").exists()
        for handler in logging.getLogger().handlers[:]:
            handler.close()
            logging.getLogger().removeHandler(handler)

    def test_logger_mixin(self):
        class Worker(LoggerMixin):
            pass

        assert Worker().logger is not None

    def test_log_context(self):
        with log_context(run_id="r1", phase=2):
            get_logger("tests").info("Inside context")

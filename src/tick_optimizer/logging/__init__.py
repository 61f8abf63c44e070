"""Structured logging for the optimizer."""

from tick_optimizer.logging.logger import get_logger, setup_logging, LoggerMixin, log_context

__all__ = ["get_logger", "setup_logging", "LoggerMixin", "log_context"]

"""Shared utilities (logging)."""

from gridsight.utils.logging import LogContext, RedactingFilter, setup_logging

__all__ = ["LogContext", "RedactingFilter", "setup_logging"]

"""Logging and audit utilities."""

from .logger import (
    AuditPort,
    LoggingAuditPort,
    NullAuditPort,
    log_execution_time,
    redact,
    setup_logging,
)

__all__ = [
    "AuditPort",
    "LoggingAuditPort",
    "NullAuditPort",
    "log_execution_time",
    "redact",
    "setup_logging",
]

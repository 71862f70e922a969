"""Structured logging for traffic routing."""

from trafficshift.logging_.structured import (
    JsonFormatter,
    LogConfig,
    StructuredLogger,
    with_rollout,
)

__all__ = [
    "JsonFormatter",
    "LogConfig",
    "StructuredLogger",
    "with_rollout",
]

"""Structured JSON logging scoped to a rollout."""

import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TextIO


@dataclass
class LogConfig:
    """Where records go and which labels every record carries."""

    level: int = logging.INFO
    extra_labels: dict[str, str] = field(default_factory=dict)
    stream: TextIO | None = None


class JsonFormatter(logging.Formatter):
    """Records are rendered to JSON before they reach the handler."""

    def format(self, record: logging.LogRecord) -> str:
        return record.getMessage()


class StructuredLogger:
    """
    One JSON object per line, with fields bound to the logger.

    Loggers returned by bind() share the underlying stdlib logger and its
    handler.
    """

    def __init__(
        self,
        name: str,
        config: LogConfig | None = None,
        fields: dict[str, Any] | None = None,
    ):
        self.name = name
        self.config = config or LogConfig()
        self.fields = dict(fields or {})
        self._logger = logging.getLogger(name)
        self._attach_handler()

    def _attach_handler(self) -> None:
        if any(isinstance(h.formatter, JsonFormatter) for h in self._logger.handlers):
            return
        handler = logging.StreamHandler(self.config.stream or sys.stdout)
        handler.setFormatter(JsonFormatter())
        self._logger.addHandler(handler)
        self._logger.setLevel(self.config.level)

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a logger that adds ``fields`` to every record."""
        return StructuredLogger(self.name, self.config, {**self.fields, **fields})

    def _emit(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": logging.getLevelName(level),
            "logger": self.name,
            "message": message,
            **self.fields,
            **fields,
        }
        if self.config.extra_labels:
            record["labels"] = self.config.extra_labels
        self._logger.log(level, json.dumps(record, default=str))

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields)


def with_rollout(logger: StructuredLogger, snapshot: Any) -> StructuredLogger:
    """Bind the rollout name and namespace to a logger."""
    return logger.bind(rollout=snapshot.name, namespace=snapshot.namespace)

"""Structured logging for the agent.

One ``AgentLogger`` is created per command and handed to every component.
Console lines go through stdlib ``logging``; when a log file is configured the
same events are buffered and appended as NDJSON on ``flush()``.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOGGER_NAME = "plan_agent"
FLUSH_THRESHOLD = 50


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def mask_secret(value: str) -> str:
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


def _render_fields(fields: dict[str, Any]) -> str:
    parts = []
    for key in sorted(fields):
        value = fields[key]
        text = value if isinstance(value, str) else json.dumps(value, default=str, sort_keys=True)
        if isinstance(value, str) and (" " in value or not value):
            text = json.dumps(value)
        parts.append(f"{key}={text}")
    return " ".join(parts)


class _EventSink:
    """Thread-safe buffered NDJSON writer."""

    def __init__(self, path: Path, threshold: int = FLUSH_THRESHOLD):
        self.path = path
        self.threshold = threshold
        self._lock = threading.Lock()
        self._pending: list[str] = []

    def emit(self, event: dict[str, Any]) -> None:
        line = json.dumps(event, default=str, sort_keys=True)
        with self._lock:
            self._pending.append(line)
            if len(self._pending) < self.threshold:
                return
            batch, self._pending = self._pending, []
            self._write(batch)

    def flush(self) -> None:
        with self._lock:
            batch, self._pending = self._pending, []
            self._write(batch)

    def _write(self, batch: list[str]) -> None:
        if not batch:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write("\n".join(batch) + "\n")


class AgentLogger:
    def __init__(
        self,
        logger: logging.Logger,
        sink: _EventSink | None = None,
        fields: dict[str, Any] | None = None,
    ):
        self._logger = logger
        self._sink = sink
        self._fields = dict(fields or {})

    @classmethod
    def create(cls, level: str = "INFO", log_file: str = "", stream: Any = None) -> "AgentLogger":
        logger = logging.getLogger(LOGGER_NAME)
        logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
        logger.propagate = False
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        sink = _EventSink(Path(log_file).expanduser()) if log_file else None
        return cls(logger, sink)

    @classmethod
    def from_config(cls, config: Any) -> "AgentLogger":
        return cls.create(level=config.log_level, log_file=config.log_file)

    def bind(self, **fields: Any) -> "AgentLogger":
        return AgentLogger(self._logger, self._sink, {**self._fields, **fields})

    @staticmethod
    def with_duration(started_monotonic: float) -> dict[str, Any]:
        return {"duration_ms": int((time.monotonic() - started_monotonic) * 1000)}

    def _log(self, level: int, message: str, fields: dict[str, Any]) -> None:
        merged = {**self._fields, **fields}
        if not self._logger.isEnabledFor(level):
            return
        ts = _now_iso()
        name = logging.getLevelName(level)
        suffix = _render_fields(merged)
        self._logger.log(level, f"[{ts}] {name} {message}" + (f" {suffix}" if suffix else ""))
        if self._sink is not None:
            self._sink.emit({"ts": ts, "level": name, "message": message, "fields": merged})

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, fields)

    def flush(self) -> None:
        for handler in self._logger.handlers:
            handler.flush()
        if self._sink is not None:
            self._sink.flush()

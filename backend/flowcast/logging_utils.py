from __future__ import annotations

import logging
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "flowcast"
LOG_FILENAME = "flowcast.log.jsonl"

# LogRecord attributes that `extra=` may not overwrite.
_RESERVED_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def _parse_level(name: str) -> int:
    mapping = logging.getLevelNamesMapping()
    return mapping.get(name.strip().upper(), logging.INFO)


def _resolve_log_dir(configured_out_dir: str) -> Path | None:
    """First writable directory among the configured output dir, ./out and the temp dir."""
    for log_dir in (
        Path(configured_out_dir) / "logs",
        Path.cwd() / "out" / "logs",
        Path(gettempdir()) / LOGGER_NAME / "logs",
    ):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            probe = log_dir / ".writetest"
            probe.touch(exist_ok=True)
            probe.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


def _formatter() -> logging.Formatter:
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"levelname": "level", "asctime": "ts"},
    )


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)

    # Managers are rebuilt per app and per test; handlers are attached once.
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(settings.log_level))
    logger.propagate = False
    formatter = _formatter()

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    log_dir = _resolve_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            file_handler = logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8")
        except OSError:
            file_handler = None
        if file_handler is not None:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one structured event; fields clashing with LogRecord attributes get a ``field_`` prefix."""
    extra = {(f"field_{k}" if k in _RESERVED_ATTRS else k): v for k, v in fields.items()}
    extra["event"] = event
    get_logger().log(level, event, extra=extra)

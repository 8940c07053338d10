from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from core.config import LoggingConfig

PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

QUIET_LOGGERS = ("uvicorn.access", "aiosqlite", "asyncio", "redis")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        # Persian role and status labels stay readable in the console.
        return json.dumps(payload, ensure_ascii=False)


def _with_formatter(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    return handler


def configure_logging(config: LoggingConfig) -> None:
    log_dir = Path(config.directory)
    log_dir.mkdir(parents=True, exist_ok=True)
    plain = logging.Formatter(fmt=PLAIN_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(_with_formatter(logging.StreamHandler(), JsonFormatter() if config.json_console else plain))
    root.addHandler(
        _with_formatter(
            RotatingFileHandler(
                filename=log_dir / config.file_name,
                maxBytes=config.max_bytes,
                backupCount=config.backup_count,
                encoding="utf-8",
            ),
            plain,
        )
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

"""
logging_setup.py — Root logger configuration driven by Settings.

Every module logs through `logging.getLogger(__name__)`; this only decides
where the records go and how they are rendered (JSON lines or plain text).
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from config import Settings

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Noisy third-party loggers kept at WARNING unless we are debugging.
QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg")


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(settings: Settings, stream_handler: Optional[logging.Handler] = None) -> None:
    formatter: logging.Formatter
    if settings.log_format == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handlers: list[logging.Handler] = [stream_handler or logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(settings.log_level)

    if settings.log_level != "DEBUG":
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

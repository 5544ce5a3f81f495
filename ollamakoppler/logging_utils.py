"""Logging setup for applications embedding the adapter."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from .config import LoggingConfig

PLAIN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# httpx logs every request at INFO and httpcore traces connections at DEBUG.
_HTTP_LOGGER_PREFIXES = ("httpcore", "httpx")


def resolve_level(name: str) -> int:
    """Map a level name such as ``"debug"`` to its numeric value, defaulting to INFO."""
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _align_http_loggers(level: int) -> None:
    known = [str(name) for name in logging.root.manager.loggerDict]
    for prefix in _HTTP_LOGGER_PREFIXES:
        for name in (prefix, *(item for item in known if item.startswith(f"{prefix}."))):
            logger = logging.getLogger(name)
            logger.setLevel(level)
            logger.handlers.clear()
            logger.propagate = True


def setup_logging(cfg: LoggingConfig | None = None) -> None:
    """Install a single root handler configured from `cfg`."""
    cfg = cfg or LoggingConfig()
    level = resolve_level(cfg.level)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter() if cfg.json_logs else logging.Formatter(PLAIN_LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
    _align_http_loggers(level)
    logging.getLogger(__name__).debug(
        "logging configured level=%s json=%s",
        logging.getLevelName(level),
        cfg.json_logs,
    )

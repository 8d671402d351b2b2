from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from innsync.models import LoggingConfig


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False, default=str)


def build_handler(config: LoggingConfig) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if config.json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    return handler


def setup_logging(config: LoggingConfig, include_uvicorn: bool = True) -> None:
    log_level = getattr(logging, config.level.upper(), logging.INFO)
    handler = build_handler(config)
    handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    if include_uvicorn:
        for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            logging.getLogger(logger_name).handlers = [handler]

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

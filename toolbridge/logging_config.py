"""
Stderr logging configuration.

Library code only creates module loggers; applications that want toolbridge
output call ``configure_logging`` once.  The JSON formatter carries the
structured ``repair_event`` payload attached by ``toolbridge.llm.diagnostics``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from toolbridge.config import LoggingConfig

LOGGER_NAME = "toolbridge"


class JsonFormatter(logging.Formatter):
    """Formats log records as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON line."""
        log_data: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        event = getattr(record, "repair_event", None)
        if event is not None:
            log_data["repair_event"] = event

        # Include exception info if present
        if record.exc_info:
            log_data["exc"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """
    Attach a single stderr handler to the ``toolbridge`` logger.

    Calling it again replaces the handler instead of stacking another one.
    """
    config = config or LoggingConfig()
    handler = logging.StreamHandler(sys.stderr)
    if config.json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(config.level.upper())
    logger.propagate = False
    return logger

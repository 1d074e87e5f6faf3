from __future__ import annotations

import json
import logging
from typing import Any, Dict

EXTRA_FIELDS = ("pool_id", "pool_name", "operation", "command", "returncode", "duration_ms")


class JsonLogFormatter(logging.Formatter):
    """Render log records as JSON lines with pool/command metadata when available."""

    default_time_format = "%Y-%m-%dT%H:%M:%S"
    default_msec_format = "%s.%03dZ"

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - base class contract
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.default_time_format),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True)


def configure_logging(level: str = "INFO", json_output: bool = True) -> logging.Handler:
    """Install a single stream handler on the root logger and return it."""

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    # replace the handler from an earlier call
    for existing in list(root_logger.handlers):
        if getattr(existing, "_poolctl_handler", False):
            root_logger.removeHandler(existing)
    handler._poolctl_handler = True  # type: ignore[attr-defined]
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())
    return handler

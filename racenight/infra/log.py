"""
Logging setup shared by the service.

Modules log through ``logging.getLogger(__name__)`` and attach structured
context with ``extra={"ctx": {...}}``. ``LOG_JSON=true`` renders one JSON
object per line, otherwise context is appended as ``key=value`` pairs.
"""
import logging
import os
from datetime import datetime, timezone

import orjson

_configured = False


class ContextFormatter(logging.Formatter):

    def __init__(self, json_enabled: bool = False):
        super().__init__(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        )
        self.json_enabled = json_enabled

    def format(self, record: logging.LogRecord) -> str:
        ctx = getattr(record, "ctx", None) or {}
        if not self.json_enabled:
            line = super().format(record)
            if ctx:
                pairs = " ".join(f"{k}={v!r}" for k, v in ctx.items())
                line = f"{line} | {pairs}"
            return line

        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(ctx)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(entry, default=str).decode()


def configure_logging(level: str | None = None,
                      json_enabled: bool | None = None) -> None:
    global _configured
    if _configured:
        return
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if json_enabled is None:
        json_enabled = os.getenv("LOG_JSON", "false").lower() == "true"

    handler = logging.StreamHandler()
    handler.setFormatter(ContextFormatter(json_enabled=json_enabled))
    root = logging.getLogger("racenight")
    root.addHandler(handler)
    root.setLevel(level.upper())
    _configured = True

"""
Structured logging for the narrative tracker.

Records under the ``tracker`` namespace are written as one JSON object per
line, to the file named by ``Settings.log_file`` and (WARNING and up) to
stderr. Extraction code passes its context through ``extra``::

    logger = get_logger("tracker.orchestrator")
    logger.info("Stage finished", extra={"stage": "time", "message_id": 12, "duration_ms": 412})

Code that works on a single chat binds the chat id once::

    log = ChatAdapter(get_logger("tracker.service"), chat_id="abc-123")
    log.info("Extraction started", extra={"message_id": 12})
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping, Optional

NAMESPACE = "tracker"

# Context fields copied from ``extra`` into the JSON entry, in output order
CONTEXT_FIELDS = ("chat_id", "message_id", "stage", "event_type", "duration_ms", "metadata")


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({
            field: getattr(record, field)
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        })
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ChatAdapter(logging.LoggerAdapter):
    """Adds ``chat_id`` to every record; per-call ``extra`` keys are kept."""

    def __init__(self, logger: logging.Logger, chat_id: str):
        super().__init__(logger, {"chat_id": chat_id})

    def process(
        self,
        msg: str,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = kwargs.setdefault("extra", {})
        for key, value in self.extra.items():
            extra.setdefault(key, value)
        return msg, kwargs


_CONFIGURED = False


def setup_logging(log_file: Optional[str] = None, level: Optional[str] = None) -> None:
    """Install the JSON handlers on the ``tracker`` logger; later calls are no-ops.

    Defaults come from settings. An empty ``log_file`` disables the file handler.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return
    _CONFIGURED = True

    from narrative_tracker.config import get_settings
    settings = get_settings()
    log_file = settings.log_file if log_file is None else log_file
    level = level or settings.log_level

    root = logging.getLogger(NAMESPACE)
    root.setLevel(level.upper())
    root.propagate = False
    formatter = JSONFormatter()

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    stderr_handler.setLevel(logging.WARNING)
    root.addHandler(stderr_handler)


def get_logger(name: str = NAMESPACE) -> logging.Logger:
    """Logger under the ``tracker`` namespace, configuring handlers on first use."""
    setup_logging()
    if name == NAMESPACE or name.startswith(NAMESPACE + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{NAMESPACE}.{name}")

import logging
import json
import sys
from typing import Any, Dict, Optional
from datetime import datetime, timezone

# Identifiers lifted to the top level of a JSON line so coordination logs
# can be filtered per resource across nodes.
CONTEXT_FIELDS = ("lock_id", "holder", "board_id", "participant_id", "game_id", "queue", "job_id", "worker_id")


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    """Context ids given as ``extra={...}`` or inside ``extra={"data": {...}}``"""
    data = record.__dict__.get("data")
    context = {}
    for field in CONTEXT_FIELDS:
        value = record.__dict__.get(field)
        if value is None and isinstance(data, dict):
            value = data.get(field)
        if value is not None:
            context[field] = value
    return context


class JsonFormatter(logging.Formatter):
    """
    One JSON object per record: timestamp, level, logger, message and
    node, plus any coordination ids and ``data`` passed as extras.
    """

    def __init__(self, node_id: str = "unknown", **kwargs):
        super().__init__(**kwargs)
        self.node_id = node_id

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "node_id": self.node_id,
        }
        entry.update(_context(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        data = record.__dict__.get("data")
        if data:
            entry["data"] = data

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Plain lines for local runs, with coordination ids appended as key=value"""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        return line


def setup_logging(
    level: str = "INFO",
    format_type: str = "json",
    node_id: str = "unknown",
    stream: Optional[Any] = None,
):
    """
    Configures the root logger with the specified format.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    if format_type.lower() == "json":
        handler.setFormatter(JsonFormatter(node_id=node_id))
    else:
        handler.setFormatter(TextFormatter())
    root_logger.addHandler(handler)

    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

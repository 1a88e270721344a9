import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from ..common.config import FacadeConfig

# record attributes that name the coordination unit a record is about,
# passed as extra={"key": ...} or extra={"topic": ...}
CONTEXT_FIELDS = ("key", "topic")

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, tagged with the node that wrote it."""

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

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    format_type: str = "json",
    node_id: str = "unknown",
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Replaces the handlers of the root logger with a single stream handler,
    JSON or plain text, and returns it.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    if format_type.lower() == "json":
        handler.setFormatter(JsonFormatter(node_id=node_id))
    else:
        handler.setFormatter(logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(handler)

    # connection chatter drowns out our own records at debug level
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    return handler


def setup_logging_from_config(config: "FacadeConfig", stream: Optional[TextIO] = None) -> logging.Handler:
    return setup_logging(
        level=config.logging.level,
        format_type=config.logging.format,
        node_id=config.node_id,
        stream=stream,
    )

"""One JSON object per log line for everything under the ``tarotflow`` logger.

Module loggers are created with ``logging.getLogger(__name__)`` and pass reading
context through ``extra=`` (state, seed, position, agent). The formatter lifts
those attributes into the JSON object next to the fixed keys.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Union

ROOT_LOGGER = "tarotflow"

# Attributes every LogRecord carries; anything else arrived through extra=.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}


class JSONFormatter(logging.Formatter):
    """Render a record as JSON, stamped with the time the record was created."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = _context(record)
        entry.update(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=repr)


def configure_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Attach a JSON stream handler to the package logger.

    Calling this again only changes the level, so the composition root and
    tests can both call it without stacking handlers.

    Args:
        level: Numeric level or a level name in any case ("debug", "INFO").

    Returns:
        The ``tarotflow`` logger.

    Raises:
        ValueError: If ``level`` is a name the logging module does not know.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    if not any(isinstance(h.formatter, JSONFormatter) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.propagate = False
    return logger

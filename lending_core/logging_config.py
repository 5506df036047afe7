"""
Logging setup for the lending engine

Log records carry loan context (loan id, step of a funding or termination
run, acting user) as attributes; JSONFormatter emits them as one JSON
object per line.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

# Record attributes copied into JSON output when present
CONTEXT_FIELDS = ("loan_id", "verification_id", "user_id", "action", "step", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
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
    logger_name: str = "lending_core",
    log_format: str = "json",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure the application logger with a single handler

    Calling it again replaces the previous handler.

    Args:
        level: Level name such as "INFO" or "debug"
        logger_name: Logger to configure; child loggers inherit it
        log_format: "json" or "text"
        log_file: Write to this file instead of stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = "lending_core") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               loan_id: Optional[str] = None, step: Optional[str] = None,
               extra: Optional[dict] = None):
    """Log message at level with the given loan context attached to the record"""
    context = {
        "user_id": user_id,
        "action": action,
        "loan_id": loan_id,
        "step": step,
        "extra": extra,
    }
    logger.log(
        logging.getLevelName(level.upper()),
        message,
        extra={key: value for key, value in context.items() if value}
    )

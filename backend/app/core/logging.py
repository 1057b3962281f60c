"""Structured JSON logging configuration."""
import logging
import sys

from pythonjsonlogger import jsonlogger

from app.core.config import settings
from app.middleware.request_id import RequestIdFilter

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s [%(request_id)s] %(message)s"


def setup_logging() -> None:
    """JSON lines in production, human-readable everywhere else."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.APP_ENV == "production":
        handler.setFormatter(jsonlogger.JsonFormatter(
            LOG_FORMAT.replace("[%(request_id)s] ", "%(request_id)s "),
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        ))
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    logging.root.handlers = [handler]
    logging.root.setLevel(logging.getLevelName(settings.LOG_LEVEL.upper()))
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

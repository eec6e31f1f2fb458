"""
Logging setup for the rental core.

structlog builds the event dict (bound tenant and booking context included)
and hands it to the stdlib root logger as record extras, where
python-json-logger renders one JSON object per line. Driver and client
library records share the same handler, so the stream stays uniform.
"""
import logging
import sys
from typing import Any, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from fleet_rental.config import Settings, get_settings

# Libraries that are chatty below these levels
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "stripe": logging.INFO,
}


class AppContext:
    """structlog processor stamping the service name and environment."""

    def __init__(self, settings: Settings):
        self.fields = {"app_name": settings.app_name, "app_env": settings.app_env}

    def __call__(
        self, logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        for key, value in self.fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Route structlog and stdlib logging to a single JSON handler on stdout."""
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            AppContext(settings),
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers[:] = [json_handler()]
    root.setLevel(settings.log_level)
    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).debug("logging_configured", log_level=settings.log_level)

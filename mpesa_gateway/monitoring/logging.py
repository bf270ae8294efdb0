"""
Structured logging for the gateway.

structlog renders every event as one JSON line; stdlib loggers (uvicorn,
httpx, SQLAlchemy) go through a python-json-logger handler on the root
logger so both streams share one shape.
"""
import logging
import sys
from typing import Any, Dict, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from mpesa_gateway.config import Settings, get_settings

# Field names (case-insensitive) masked wherever they appear in an event
SECRET_FIELDS = frozenset(
    {
        "access_token",
        "authorization",
        "consumer_secret",
        "passkey",
        "password",
        "token",
    }
)
MASK = "***"

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")

EventDict = Dict[str, Any]


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: MASK if str(key).lower() in SECRET_FIELDS else _mask(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_mask(item) for item in value]
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credentials, including ones nested inside logged payloads or headers."""
    return _mask(event_dict)


class AppContext:
    """structlog processor stamping each event with the service name and environment."""

    def __init__(self, settings: Settings):
        self.fields = {"app_name": settings.app_name, "app_env": settings.app_env}

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in self.fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def build_processors(settings: Settings) -> List[Any]:
    """Processor chain shared by every structlog logger."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        AppContext(settings),
        redact_secrets,
        structlog.processors.JSONRenderer(),
    ]


def _install_root_handler(level: int) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root.addHandler(handler)


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root stdlib logger.

    Args:
        settings: Settings to read the level and app context from
            (uses cached settings if not provided)
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level)

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _install_root_handler(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info("logging_configured", log_level=settings.log_level)

"""
Structured logging configuration.

structlog renders JSON events; the stdlib root logger writes through
python-json-logger so SQLAlchemy, uvicorn and stripe records share the format.
Secret-bearing fields are masked before rendering.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from escrow_market.config import get_settings

REDACTED = "[redacted]"

# Event keys that may carry credential material or provider secrets.
SENSITIVE_KEYS = frozenset(
    {
        "credentials",
        "plaintext",
        "cipher_text",
        "wrapped_key",
        "client_secret",
        "vault_master_key",
        "stripe_secret_key",
        "stripe_webhook_secret",
    }
)


def redact_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask any sensitive key before the event is rendered."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def add_service_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.app_env)
    return event_dict


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure structlog and the stdlib root handler.

    Args:
        level: Override for ``LOG_LEVEL`` (the sweeper CLI passes its own)
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_context,
            redact_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level))

    # Driver chatter stays out of the escrow audit trail.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info("logging_configured", log_level=level)

"""structlog setup for the engine and its HTTP service.

Every entry carries the ids bound for the current run (``execution_id``,
``workflow_id``, ``node_id``) first, and credential-looking values are
masked before rendering.
"""

import logging
import sys
from typing import Any, Optional, TextIO

import structlog
from app.config import Settings, get_settings

EXECUTION_KEYS = ("execution_id", "workflow_id", "node_id", "iteration")

SENSITIVE_KEYS = frozenset({
    "api_key",
    "apikey",
    "access_token",
    "accesstoken",
    "apikeyvalue",
    "authorization",
    "bearertoken",
    "basicpassword",
    "password",
    "secret",
    "token",
    "webhook_secret",
    "x-api-key",
})

REDACTED = "***"

# Libraries that log every request or statement at INFO
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite")


def _is_sensitive(key: str) -> bool:
    normalised = key.lower().replace("-", "_")
    return normalised in SENSITIVE_KEYS or key.lower() in SENSITIVE_KEYS


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if _is_sensitive(str(k)) else _mask(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_mask(v) for v in value]
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Mask credential values, including inside nested dicts such as node configs."""
    for key in list(event_dict):
        if _is_sensitive(key):
            event_dict[key] = REDACTED
        else:
            event_dict[key] = _mask(event_dict[key])
    return event_dict


def order_execution_keys(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Put the event first and the run ids right after it.

    Renderers keep insertion order, so grepping one execution's lines
    reads the same in console and JSON output. An ``iteration`` path
    tuple is rendered as ``"0.2"``.
    """
    ordered: dict = {}
    if "event" in event_dict:
        ordered["event"] = event_dict.pop("event")
    for key in EXECUTION_KEYS:
        if key in event_dict:
            value = event_dict.pop(key)
            if key == "iteration" and isinstance(value, (list, tuple)):
                value = ".".join(str(i) for i in value)
            ordered[key] = value
    ordered.update(event_dict)
    return ordered


def build_renderer(settings: Settings):
    if settings.is_development or settings.LOG_FORMAT == "text":
        return structlog.dev.ConsoleRenderer(colors=settings.is_development)
    return structlog.processors.JSONRenderer(default=str)


def setup_logging(settings: Optional[Settings] = None, stream: Optional[TextIO] = None) -> None:
    """Route structlog and stdlib loggers through one formatter.

    Args:
        settings: Defaults to ``get_settings()``
        stream: Output stream, stdout by default
    """
    settings = settings or get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        redact_secrets,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=settings.ENVIRONMENT != "testing",
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                order_execution_keys,
                build_renderer(settings),
            ],
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.SQLALCHEMY_ECHO else logging.WARNING
    )

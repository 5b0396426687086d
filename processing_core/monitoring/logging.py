"""
Structured logging configuration.

Every component logs snake_case events through structlog. Request ids and
worker names are bound as context variables, so log lines from a cron drain
or a poller loop can be grouped without threading a logger around.
"""
import logging
import sys
from typing import Any, Callable, Dict, List

import structlog
from pythonjsonlogger import jsonlogger

from processing_core.config import Settings

# Libraries that log every request or statement at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def app_context_processor(settings: Settings) -> Callable[..., Dict[str, Any]]:
    """Build a processor stamping app name and environment on each event."""

    def add_app_context(
        logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        return event_dict

    return add_app_context


def _renderer(settings: Settings) -> Any:
    if settings.log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def _stdlib_handler(settings: Settings) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "console":
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            )
        )
    return handler


def setup_logging(settings: Settings) -> None:
    """
    Configure structlog and the stdlib root logger.

    JSON output by default; LOG_FORMAT=console switches to the structlog
    development renderer. Safe to call more than once (the API lifespan and
    each worker entry point call it).

    Args:
        settings: Application settings (log level, format, app identity)
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        app_context_processor(settings),
        _renderer(settings),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(_stdlib_handler(settings))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    logging.getLogger("stripe").setLevel(logging.INFO)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        log_format=settings.log_format,
        app_env=settings.app_env,
    )

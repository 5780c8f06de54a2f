import structlog
import logging
from ..config import Settings, EnvironmentType


def setup_logging(settings: Settings) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == EnvironmentType.DEVELOPMENT:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.INFO if settings.ENVIRONMENT == EnvironmentType.PRODUCTION else logging.DEBUG
        ),
        cache_logger_on_first_use=False,
    )


def bind_session(session_id: str) -> None:
    """Attach the session id to every log line emitted from this context."""
    structlog.contextvars.bind_contextvars(session_id=session_id)


def unbind_session() -> None:
    structlog.contextvars.unbind_contextvars("session_id")


def redact_key(key: str | None) -> str:
    if not key:
        return "<none>"
    return f"{key[:4]}...({len(key)})"

"""
Structured logging with JSON output for production observability.

Features:
- JSON output for log aggregation (ELK, Loki, CloudWatch)
- Request context propagation (team_id, request_id, trace_id)
- Redaction of billing credentials before they reach a sink

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- Processors for formatting and enrichment
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Propagate across async boundaries automatically
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
team_id_var: ContextVar[str | None] = ContextVar("team_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add request context to log events.

    Injects:
    - request_id: Unique ID for each HTTP request or housekeeping pass
    - team_id: Team the current flow operates on (if bound)
    - trace_id: Distributed tracing ID
    """
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    team_id = team_id_var.get()
    if team_id and "team_id" not in event_dict:
        event_dict["team_id"] = team_id

    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO 8601 timestamp with microsecond precision."""
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime())
        + f".{int((time.time() % 1) * 1000000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service metadata for log aggregation.

    Configured via LOGGING_SERVICE_NAME, LOGGING_SERVICE_VERSION and
    LOGGING_ENVIRONMENT.
    """
    # Import here to avoid circular dependency
    try:
        from src.config import get_settings

        settings = get_settings()
        event_dict["service"] = settings.logging.service_name
        event_dict["version"] = settings.logging.service_version
        event_dict["environment"] = settings.logging.environment
    except Exception:
        event_dict["service"] = "platform-billing"
        event_dict["version"] = "0.1.0"
        event_dict["environment"] = "development"
    return event_dict


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact credentials and PII.

    - api_key / secret / token / authorization: prefix kept (sk_live_abc...)
    - email: domain only (user@example.com -> ***@example.com)
    """
    sensitive_fields = {"api_key", "authorization", "secret", "token", "webhook_secret"}

    for key in list(event_dict.keys()):
        value = event_dict[key]
        if key.lower() in sensitive_fields and isinstance(value, str):
            if len(value) > 12:
                event_dict[key] = f"{value[:8]}***{value[-3:]}"
            else:
                event_dict[key] = "***REDACTED***"

        if key.lower() == "email" and isinstance(value, str) and "@" in value:
            event_dict[key] = f"***@{value.split('@')[1]}"

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add exception_type/exception_message so failures can be grouped."""
    exc_info = event_dict.get("exc_info")
    if exc_info and isinstance(exc_info, tuple) and len(exc_info) == 3:
        exc_type, exc_value, _ = exc_info
        event_dict["exception_type"] = exc_type.__name__ if exc_type else "Unknown"
        event_dict["exception_message"] = str(exc_value) if exc_value else ""

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)

    JSON (production):
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Updated subscription item quantity",
          "service": "platform-billing",
          "team_id": "3f1c...",
          "item_id": "si_123",
          "quantity": 4
        }
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=colorized),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Updated subscription item quantity", item_id="si_123", quantity=4)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Usage:
        with RequestContext(team_id=team.id):
            logger.info("Reconciling")  # request_id and team_id auto-injected
    """

    def __init__(
        self,
        team_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.team_id = team_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"

        self._request_id_token = None
        self._team_id_token = None
        self._trace_id_token = None

    def __enter__(self):
        self._request_id_token = request_id_var.set(self.request_id)
        # Always set team_id (even if None) so an outer value never leaks in
        self._team_id_token = team_id_var.set(self.team_id)
        self._trace_id_token = trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._request_id_token is not None:
            request_id_var.reset(self._request_id_token)
        if self._team_id_token is not None:
            team_id_var.reset(self._team_id_token)
        if self._trace_id_token is not None:
            trace_id_var.reset(self._trace_id_token)


class OperationContext:
    """
    Context manager for operation-level logging with timing.

    Usage:
        with OperationContext("trial_housekeeping", teams=3):
            await process()
        # Logs: "trial_housekeeping completed" with latency_ms
    """

    def __init__(self, operation: str, **kwargs):
        self.operation = operation
        self.context = kwargs
        self.logger = get_logger(f"operation.{operation}")
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation} started", **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type is None:
            self.logger.info(
                f"{self.operation} completed",
                latency_ms=round(duration_ms, 2),
                **self.context,
            )
        else:
            self.logger.error(
                f"{self.operation} failed",
                latency_ms=round(duration_ms, 2),
                exception_type=exc_type.__name__,
                **self.context,
                exc_info=True,
            )


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def get_request_id() -> str | None:
    return request_id_var.get()


def get_team_id() -> str | None:
    return team_id_var.get()


def get_trace_id() -> str | None:
    return trace_id_var.get()

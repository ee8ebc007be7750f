"""
Structured logging for the layout service.

Every event carries the service and component names, the id of the HTTP
request that produced it and, inside a layout computation, the user id.
User email addresses are masked before rendering.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation context, reset by the HTTP middleware after every request
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
request_started_var: ContextVar[Optional[float]] = ContextVar("request_started", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

REDACTED_FIELDS = ("user_email", "email")


class ServiceContext:
    """Adds ``service`` and ``component`` to each event.

    ``layout.lookup.overrides`` logs as component ``lookup.overrides``.
    """

    def __init__(self, service_name: str):
        self.service_name = service_name

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", self.service_name)
        logger_name = event_dict.get("logger", "")
        prefix, _, component = logger_name.partition(".")
        if component and prefix == self.service_name:
            event_dict.setdefault("component", component)
        return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach request id, user id and time since the request started."""
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)

    user_id = user_id_var.get()
    if user_id:
        event_dict.setdefault("user_id", user_id)

    started = request_started_var.get()
    if started is not None:
        event_dict["request_elapsed_ms"] = round((time.perf_counter() - started) * 1000, 2)

    return event_dict


def mask_email(value: Any) -> Any:
    if not isinstance(value, str) or "@" not in value:
        return value
    local, _, domain = value.partition("@")
    return f"{local[:1]}***@{domain}"


def redact_sensitive_fields(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for field in REDACTED_FIELDS:
        if field in event_dict:
            event_dict[field] = mask_email(event_dict[field])
    return event_dict


def configure_logging(service_name: str, log_level: str = "info", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger for a service."""
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            ServiceContext(service_name),
            add_correlation_context,
            redact_sensitive_fields,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def set_request_id(request_id: Optional[str] = None) -> str:
    """Start correlation for one request; generates an id when none is given."""
    request_id = request_id or str(uuid.uuid4())
    request_id_var.set(request_id)
    request_started_var.set(time.perf_counter())
    return request_id


def set_user_context(user_id: Optional[str] = None):
    if user_id:
        user_id_var.set(user_id)


def clear_context():
    request_id_var.set(None)
    request_started_var.set(None)
    user_id_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)

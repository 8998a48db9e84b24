import sys
import structlog
import logging
from payment_recovery.shared.core.config import get_settings
from payment_recovery.shared.core.tracing import add_trace_context

PII_FIELDS = {
    "email", "owner_email", "recipient", "phone", "owner_phone",
    "authorization_code", "payment_method", "api_key", "token", "secret",
}


def pii_redactor(logger, method_name, event_dict):
    """
    Redact customer contact details and payment instruments from logs.
    Recipients and stored card authorizations must never reach telemetry.
    """
    for field in PII_FIELDS:
        if field in event_dict:
            event_dict[field] = "[REDACTED]"

    # Nested containers
    for container in ["metadata", "payload", "details", "extra", "context"]:
        if container in event_dict and isinstance(event_dict[container], dict):
            for field in PII_FIELDS:
                if field in event_dict[container]:
                    event_dict[container][field] = "[REDACTED]"

    return event_dict


def setup_logging():
    settings = get_settings()

    # 1. Choose the renderer based on environment
    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = logging.INFO

    # 2. Processor pipeline
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        add_trace_context,
        pii_redactor,                            # Redact before rendering
        renderer
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # 3. Route standard logging (uvicorn, apscheduler) through stdout too
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )


def audit_log(event: str, subscription_id: str, actor: str = "system", details: dict = None):
    """
    Standardized helper for operator-driven changes (overrides, manual retries).
    """
    logger = structlog.get_logger("audit")
    logger.info(
        event,
        audit=True,
        subscription_id=str(subscription_id),
        actor=actor,
        metadata=details or {},
    )

from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

# Request id propagated from the calling middleware, if any
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Field names whose values are credentials or personal data. Identifiers such
# as token_id and family are deliberately absent: incident review needs them.
_CREDENTIAL_FIELDS = {
    "access_token",
    "refresh_token",
    "token",
    "password",
    "secret",
    "authorization",
    "email",
}

# header.payload.signature, each segment base64url
_COMPACT_JWS = re.compile(r"^[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}$")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Attach a request id to every log line emitted in this context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextmanager
def token_log_context(**fields: Any) -> Iterator[None]:
    """Bind lineage fields (family, subject_id, ...) for the duration of a block."""
    bound = {key: value for key, value in fields.items() if value is not None}
    structlog.contextvars.bind_contextvars(**bound)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(*bound)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}***{value[-2:]}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential fields, and any value shaped like a signed token."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if key.lower() in _CREDENTIAL_FIELDS or _COMPACT_JWS.match(value):
            event_dict[key] = _mask(value)
    return event_dict


def _truthy(value: str) -> bool:
    return value.lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the process.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: render one JSON object per line
        development_mode: coloured console output, overrides json_output
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_truthy(os.getenv("LOG_JSON", "true")),
    development_mode=_truthy(os.getenv("LOG_DEV_MODE", "false")),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

"""Correlation ID management for tracing one relayed message across calls."""

import uuid
from contextvars import ContextVar, Token

# Shared by the request middleware and the background completion tasks
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return uuid.uuid4().hex


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Bind a correlation ID to the current context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Restore the correlation ID that was active before `set_correlation_id`."""
    correlation_id_var.reset(token)

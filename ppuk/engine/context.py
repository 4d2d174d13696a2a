"""
PPUK Request Context — per-request principal state carried in contextvars.

The upstream authentication layer resolves the principal and sets a
RequestContext for the duration of one request or background task. The core
trusts it for that duration and never re-authenticates.

Usage:
    from ppuk.engine.context import RequestContext, request_scope, get_request_context

    with request_scope(RequestContext(principal_id="u-123")):
        service.update_document(...)
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, Optional

from ppuk.engine.errors import PPUKForbiddenError

current_request_context: ContextVar[Optional["RequestContext"]] = ContextVar(
    "request_context", default=None
)


@dataclass
class RequestContext:
    """Resolved principal plus tracing identifiers for one unit of work."""

    principal_id: str
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    source: str = "request"  # "request" | "worker" | "scheduler"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging and audit metadata."""
        data: Dict[str, Any] = {
            "principal_id": self.principal_id,
            "request_id": self.request_id,
            "source": self.source,
        }
        if self.ip_address:
            data["ip_address"] = self.ip_address
        if self.user_agent:
            data["user_agent"] = self.user_agent
        return data


def get_request_context() -> Optional[RequestContext]:
    """Get the current request context (None outside a request)."""
    return current_request_context.get()


def set_request_context(ctx: Optional[RequestContext]) -> None:
    """Set the current request context."""
    current_request_context.set(ctx)


def require_principal() -> str:
    """Return the current principal id, or raise if no principal is bound."""
    ctx = current_request_context.get()
    if ctx is None or not ctx.principal_id:
        raise PPUKForbiddenError("No authenticated principal in context")
    return ctx.principal_id


@contextmanager
def request_scope(ctx: RequestContext) -> Generator[RequestContext, None, None]:
    """Bind *ctx* for the enclosed block and restore the previous context after."""
    token = current_request_context.set(ctx)
    try:
        yield ctx
    finally:
        current_request_context.reset(token)

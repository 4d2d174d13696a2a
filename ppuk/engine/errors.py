"""
PPUK Error Hierarchy — Structured exceptions for the core substrate.

Every error carries a serializable context dict so it can be written to the
operational JSONL logs or returned to the presentation tier unchanged.

Hierarchy:
    PPUKError
    ├── PPUKForbiddenError          — Authorization denied
    ├── PPUKNotFoundError           — Entity absent
    ├── PPUKConflictError           — Duplicate tuple / lost state transition
    ├── PPUKRetryableUpstreamError  — External provider fetch failed
    ├── PPUKTerminalJobError        — Document job exhausted its retries
    ├── PPUKValidationError         — Unknown tier, action, kind, visibility
    └── PPUKConfigError             — Invalid ppuk.yaml

The presentation tier is expected to render PPUKForbiddenError and
PPUKNotFoundError identically; they are distinct types so that the core
never has to decide whether existence may be revealed.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class PPUKError(Exception):
    """
    Base error for all PPUK core failures.
    All context is serializable to JSON.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.error_type: str = self.__class__.__name__
        self.request_id: Optional[str] = context.get("request_id")
        self.entity_type: Optional[str] = context.get("entity_type")
        self.entity_id: Optional[Any] = context.get("entity_id")
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "request_id": self.request_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("request_id", "entity_type", "entity_id")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.entity_type:
            parts.append(f"entity={self.entity_type}:{self.entity_id}")
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        return " | ".join(parts)


class PPUKForbiddenError(PPUKError):
    """
    Authorization denied. Logged to authorization/security log files.
    Includes the principal, the operation and the tier that was resolved.
    """

    def __init__(self, message: str, **context: Any):
        self.principal_id: Optional[str] = context.get("principal_id")
        self.operation: Optional[str] = context.get("operation")
        self.tier: Optional[str] = context.get("tier")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["principal_id"] = self.principal_id
        d["operation"] = self.operation
        d["tier"] = self.tier
        return d


class PPUKNotFoundError(PPUKError):
    """Entity does not exist."""
    pass


class PPUKConflictError(PPUKError):
    """
    State conflict: duplicate relationship tuple, a job transition lost to a
    concurrent worker, removal of the last owner.
    """
    pass


class PPUKRetryableUpstreamError(PPUKError):
    """External data provider call failed. A cache miss is never this error."""

    def __init__(self, message: str, **context: Any):
        self.provider: Optional[str] = context.get("provider")
        self.status_code: Optional[int] = context.get("status_code")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["provider"] = self.provider
        d["status_code"] = self.status_code
        return d


class PPUKTerminalJobError(PPUKError):
    """Document job exhausted max_attempts and will not be retried."""

    def __init__(self, message: str, **context: Any):
        self.job_id: Optional[int] = context.get("job_id")
        self.document_id: Optional[int] = context.get("document_id")
        self.kind: Optional[str] = context.get("kind")
        self.attempts: Optional[int] = context.get("attempts")
        self.last_error: Optional[str] = context.get("last_error")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["job_id"] = self.job_id
        d["document_id"] = self.document_id
        d["kind"] = self.kind
        d["attempts"] = self.attempts
        d["last_error"] = self.last_error
        return d


class PPUKValidationError(PPUKError):
    """Input validation failed (unknown tier, action, job kind, visibility)."""

    def __init__(self, message: str, **context: Any):
        self.field: Optional[str] = context.get("field")
        self.value: Optional[Any] = context.get("value")
        super().__init__(message, **context)


class PPUKConfigError(PPUKError):
    """Configuration error — invalid ppuk.yaml."""
    pass

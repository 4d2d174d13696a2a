"""PPUK Audit — append-only event log with PII masking."""

from ppuk.audit.logger import AuditLogger  # noqa: F401
from ppuk.audit.masking import mask_state  # noqa: F401

__all__ = ["AuditLogger", "mask_state"]

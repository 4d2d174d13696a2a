"""PPUK Documents — protected entity operations (documents, notes, tasks, property)."""

from ppuk.documents.service import DocumentService  # noqa: F401

__all__ = ["DocumentService"]

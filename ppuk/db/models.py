"""
PPUK Entity Store Models — All SQLAlchemy models for the ppuk_core database.

Tables defined here:
1. properties        — Physical assets (claimed, never hard-deleted)
2. property_parties  — Principal ↔ Property relationship tiers
3. documents         — Uploaded documents (protected entity)
4. notes             — Property notes (protected entity)
5. tasks             — Property tasks (protected entity)
6. audit_log         — Append-only audit trail with masked snapshots
7. document_jobs     — Document processing job queue
8. api_cache         — External provider response cache
"""

from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship

from ppuk.db.base import Base, TimestampMixin, utcnow
from ppuk.engine.errors import PPUKConflictError

# Ordered highest privilege first
TIERS = ("owner", "occupier", "interested")
VISIBILITIES = ("private", "shared", "public")
AUDIT_ACTIONS = (
    "create", "read", "update", "delete", "upload",
    "download", "share", "claim", "unclaim",
)
AUDIT_ENTITY_TYPES = ("property", "document", "note", "task", "relationship")
JOB_KINDS = ("ocr", "av_scan", "extract_metadata", "generate_thumbnail")
JOB_STATUSES = ("queued", "processing", "completed", "failed", "cancelled")
PROCESSING_STATUSES = ("pending", "processing", "completed", "failed")
AV_STATUSES = ("pending", "clean", "quarantined")
TASK_STATUSES = ("open", "in_progress", "done")


def _in_list(column: str, values: tuple) -> str:
    quoted = ",".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------------------------------------------------------
# 1. Properties
# ---------------------------------------------------------------------------

class Property(Base, TimestampMixin):
    __tablename__ = "properties"
    entity_type = "property"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ppuk_reference = Column(String(32), unique=True, nullable=False, index=True)
    address_line_1 = Column(String(255), nullable=False)
    address_line_2 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    postcode = Column(String(16), nullable=False, index=True)
    uprn = Column(String(20), nullable=True, index=True)
    title_number = Column(String(32), nullable=True)
    completion_percentage = Column(Integer, default=0, nullable=False)
    is_public = Column(Boolean, default=False, nullable=False)
    claimed_by = Column(String(64), nullable=True, index=True)

    parties = relationship("PropertyParty", back_populates="property_record", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint(
            "completion_percentage >= 0 AND completion_percentage <= 100",
            name="ck_properties_completion",
        ),
    )

    @property
    def property_id(self) -> int:
        return self.id

    def __repr__(self) -> str:
        return f"<Property(id={self.id}, ref='{self.ppuk_reference}')>"


# ---------------------------------------------------------------------------
# 2. Property Parties (relationship tiers)
# ---------------------------------------------------------------------------

class PropertyParty(Base):
    __tablename__ = "property_parties"
    entity_type = "relationship"

    id = Column(Integer, primary_key=True, autoincrement=True)
    property_id = Column(Integer, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False)
    principal_id = Column(String(64), nullable=False, index=True)
    tier = Column("relationship", String(20), nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)
    assigned_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    property_record = relationship("Property", back_populates="parties")

    __table_args__ = (
        UniqueConstraint("principal_id", "property_id", "relationship", name="uq_party_tier"),
        CheckConstraint(_in_list("relationship", TIERS), name="ck_party_relationship"),
        Index("idx_party_property_principal", "property_id", "principal_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<PropertyParty(property_id={self.property_id}, "
            f"principal='{self.principal_id}', tier='{self.tier}')>"
        )


# ---------------------------------------------------------------------------
# 3-5. Protected entities
# ---------------------------------------------------------------------------

class ProtectedEntityMixin:
    """Columns shared by Document, Note and Task."""
    property_id = Column(Integer, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)
    created_by = Column(String(64), nullable=False, index=True)
    visibility = Column(String(10), default="private", nullable=False)


class Document(Base, ProtectedEntityMixin, TimestampMixin):
    __tablename__ = "documents"
    entity_type = "document"

    id = Column(Integer, primary_key=True, autoincrement=True)
    file_name = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=False)
    file_size_bytes = Column(Integer, default=0, nullable=False)
    storage_ref = Column(String(500), nullable=False)
    document_type = Column(String(50), default="other", nullable=False)
    processing_status = Column(String(20), default="pending", nullable=False, index=True)
    av_status = Column(String(20), default="pending", nullable=False)
    extracted_text = Column(Text, nullable=True)
    meta = Column(JSON, default=dict, nullable=False)
    thumbnail_ref = Column(String(500), nullable=True)

    jobs = relationship("DocumentJob", back_populates="document", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint(_in_list("visibility", VISIBILITIES), name="ck_documents_visibility"),
        CheckConstraint(_in_list("processing_status", PROCESSING_STATUSES), name="ck_documents_processing"),
        CheckConstraint(_in_list("av_status", AV_STATUSES), name="ck_documents_av"),
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, file='{self.file_name}', status='{self.processing_status}')>"


class Note(Base, ProtectedEntityMixin, TimestampMixin):
    __tablename__ = "notes"
    entity_type = "note"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=True)
    content = Column(Text, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_list("visibility", VISIBILITIES), name="ck_notes_visibility"),
    )

    def __repr__(self) -> str:
        return f"<Note(id={self.id}, property_id={self.property_id})>"


class Task(Base, ProtectedEntityMixin, TimestampMixin):
    __tablename__ = "tasks"
    entity_type = "task"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), default="open", nullable=False)
    due_date = Column(Date, nullable=True)
    assigned_to = Column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint(_in_list("visibility", VISIBILITIES), name="ck_tasks_visibility"),
        CheckConstraint(_in_list("status", TASK_STATUSES), name="ck_tasks_status"),
    )

    def __repr__(self) -> str:
        return f"<Task(id={self.id}, title='{self.title}', status='{self.status}')>"


# ---------------------------------------------------------------------------
# 6. Audit Log (append-only)
# ---------------------------------------------------------------------------

class AuditEvent(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String(64), nullable=True, index=True)
    action = Column(String(20), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(Integer, nullable=False)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    metadata_ = Column("metadata", JSON, default=dict, nullable=False)
    request_id = Column(String(64), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    __table_args__ = (
        CheckConstraint(_in_list("action", AUDIT_ACTIONS), name="ck_audit_action"),
        CheckConstraint(_in_list("entity_type", AUDIT_ENTITY_TYPES), name="ck_audit_entity_type"),
        Index("idx_audit_entity", "entity_type", "entity_id", "created_at"),
        Index("idx_audit_actor_created", "actor_id", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "metadata": self.metadata_,
            "request_id": self.request_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<AuditEvent({self.action} {self.entity_type}:{self.entity_id} by {self.actor_id})>"


@event.listens_for(AuditEvent, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:
    raise PPUKConflictError(
        "Audit events are append-only", entity_type="audit_log", entity_id=target.id
    )


@event.listens_for(AuditEvent, "before_delete")
def _reject_audit_delete(mapper, connection, target) -> None:
    # The retention sweep deletes with a bulk statement, which bypasses this hook
    raise PPUKConflictError(
        "Audit events are append-only", entity_type="audit_log", entity_id=target.id
    )


# ---------------------------------------------------------------------------
# 7. Document Jobs
# ---------------------------------------------------------------------------

class DocumentJob(Base):
    __tablename__ = "document_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String(30), nullable=False)
    status = Column(String(20), default="queued", nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    last_error = Column(Text, nullable=True)
    payload = Column(JSON, default=dict, nullable=False)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    document = relationship("Document", back_populates="jobs")

    __table_args__ = (
        CheckConstraint(_in_list("kind", JOB_KINDS), name="ck_jobs_kind"),
        CheckConstraint(_in_list("status", JOB_STATUSES), name="ck_jobs_status"),
        CheckConstraint("attempts >= 0", name="ck_jobs_attempts"),
        Index("idx_jobs_status_kind_created", "status", "kind", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<DocumentJob(id={self.id}, kind='{self.kind}', status='{self.status}')>"


# ---------------------------------------------------------------------------
# 8. API Cache
# ---------------------------------------------------------------------------

class ApiCacheEntry(Base):
    __tablename__ = "api_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(50), nullable=False)
    cache_key = Column(String(500), nullable=False)
    payload = Column(JSON, nullable=False)
    fetched_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    ttl_seconds = Column(Integer, default=3600, nullable=False)
    etag = Column(String(255), nullable=True)
    request_hash = Column(String(64), nullable=True, index=True)
    response_size_bytes = Column(Integer, nullable=True)
    is_stale = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "cache_key", name="uq_api_cache_provider_key"),
        CheckConstraint("ttl_seconds > 0", name="ck_api_cache_ttl"),
        Index("idx_api_cache_fetched", "fetched_at"),
    )

    def __repr__(self) -> str:
        return f"<ApiCacheEntry(provider='{self.provider}', key='{self.cache_key}')>"


# Polymorphic audit targets resolve through this table, one model per tag
ENTITY_MODELS = {
    "property": Property,
    "document": Document,
    "note": Note,
    "task": Task,
    "relationship": PropertyParty,
}

PROTECTED_ENTITY_MODELS = {
    "document": Document,
    "note": Note,
    "task": Task,
}

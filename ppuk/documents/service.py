"""
PPUK Document Service — protected entities: documents, notes, tasks, property edits.

Each mutating call follows one order:

    1. Authorize in the business session (PPUKForbiddenError / PPUKNotFoundError)
    2. Mutate and, for uploads, enqueue pipeline jobs in the same transaction
    3. Commit
    4. Audit (own session, best effort; see AuditLogger)

Bytes are never handled here; storage_ref points at wherever the caller
stored the upload.

Upload pipeline (per document):
    av_scan            if jobs.av_enabled
    ocr                if the MIME type is OCR-able and jobs.ocr_enabled
    extract_metadata   always
    generate_thumbnail if the MIME type renders and jobs.thumbnails_enabled
"""

from __future__ import annotations

import logging
import mimetypes
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select

from ppuk.audit.logger import AuditLogger
from ppuk.db.models import (
    PROTECTED_ENTITY_MODELS,
    TASK_STATUSES,
    VISIBILITIES,
    Document,
    DocumentJob,
)
from ppuk.engine.config import DocumentsConfig, JobsConfig
from ppuk.engine.errors import PPUKConflictError, PPUKValidationError
from ppuk.jobs.handlers import OCR_MIME_TYPES, THUMBNAIL_MIME_TYPES
from ppuk.jobs.queue import DocumentJobQueue
from ppuk.security.authorization import CREATE, DELETE, READ, UPDATE, AuthorizationEngine, decide

logger = logging.getLogger("ppuk.documents.service")

# Fields recorded in audit snapshots and returned to callers
ENTITY_FIELDS = {
    "document": (
        "id", "property_id", "created_by", "visibility", "file_name", "mime_type",
        "file_size_bytes", "storage_ref", "document_type", "processing_status", "av_status",
        "thumbnail_ref",
    ),
    "note": ("id", "property_id", "created_by", "visibility", "title", "content"),
    "task": (
        "id", "property_id", "created_by", "visibility", "title", "description",
        "status", "due_date", "assigned_to",
    ),
    "property": (
        "id", "ppuk_reference", "address_line_1", "address_line_2", "city", "postcode",
        "uprn", "title_number", "completion_percentage", "is_public", "claimed_by",
    ),
}

# Visibility changes go through set_visibility so they are audited as shares
UPDATABLE_FIELDS = {
    "document": frozenset({"file_name", "document_type"}),
    "note": frozenset({"title", "content"}),
    "task": frozenset({"title", "description", "status", "due_date", "assigned_to"}),
    "property": frozenset({
        "address_line_1", "address_line_2", "city", "postcode", "uprn",
        "title_number", "completion_percentage",
    }),
}

REQUIRED_FIELDS = {
    "note": ("content",),
    "task": ("title",),
}


def entity_state(entity: Any) -> Dict[str, Any]:
    """Plain-dict snapshot of an entity's tracked fields."""
    state = {}
    for field in ENTITY_FIELDS[entity.entity_type]:
        value = getattr(entity, field)
        if isinstance(value, date):
            value = value.isoformat()
        state[field] = value
    return state


def pipeline_kinds(
    mime_type: str, config: JobsConfig, handled: Optional[Iterable[str]] = None
) -> List[str]:
    """
    Job kinds an upload of *mime_type* gets, in enqueue order.

    When *handled* is given, kinds with no registered handler are left out.
    """
    mime = mime_type.lower()
    kinds = []
    if config.av_enabled:
        kinds.append("av_scan")
    if config.ocr_enabled and mime in OCR_MIME_TYPES:
        kinds.append("ocr")
    kinds.append("extract_metadata")
    if config.thumbnails_enabled and mime in THUMBNAIL_MIME_TYPES:
        kinds.append("generate_thumbnail")
    if handled is not None:
        handled = set(handled)
        kinds = [kind for kind in kinds if kind in handled]
    return kinds


def _validate_visibility(visibility: str) -> str:
    if visibility not in VISIBILITIES:
        raise PPUKValidationError(
            f"Unknown visibility: {visibility}", field="visibility", value=visibility
        )
    return visibility


def _validate_changes(entity_type: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - UPDATABLE_FIELDS[entity_type]
    if unknown:
        raise PPUKValidationError(
            f"Fields not updatable on {entity_type}: {sorted(unknown)}",
            field=sorted(unknown)[0],
            entity_type=entity_type,
        )
    cleaned = dict(changes)
    if "status" in cleaned and cleaned["status"] not in TASK_STATUSES:
        raise PPUKValidationError(
            f"Unknown task status: {cleaned['status']}", field="status", value=cleaned["status"]
        )
    if isinstance(cleaned.get("due_date"), str):
        try:
            cleaned["due_date"] = date.fromisoformat(cleaned["due_date"])
        except ValueError as e:
            raise PPUKValidationError(
                "due_date must be an ISO date", field="due_date", value=cleaned["due_date"]
            ) from e
    if "completion_percentage" in cleaned:
        pct = cleaned["completion_percentage"]
        if not isinstance(pct, int) or not 0 <= pct <= 100:
            raise PPUKValidationError(
                "completion_percentage must be an integer 0-100",
                field="completion_percentage", value=pct,
            )
    return cleaned


class DocumentService:
    """Authorization-checked, audited operations on a property's contents."""

    def __init__(
        self,
        session_factory,
        authz: AuthorizationEngine,
        audit: AuditLogger,
        jobs: DocumentJobQueue,
        jobs_config: Optional[JobsConfig] = None,
        documents_config: Optional[DocumentsConfig] = None,
        handled_kinds: Optional[Iterable[str]] = None,
    ):
        self._session_factory = session_factory
        self._authz = authz
        self._audit = audit
        self._jobs = jobs
        self._jobs_config = jobs_config or JobsConfig()
        self._documents_config = documents_config or DocumentsConfig()
        # None queues every configured kind
        self._handled_kinds = frozenset(handled_kinds) if handled_kinds is not None else None

    # -------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------

    def register_upload(
        self,
        principal_id: str,
        property_id: int,
        file_name: str,
        storage_ref: str,
        file_size_bytes: int,
        mime_type: Optional[str] = None,
        document_type: str = "other",
        visibility: str = "private",
    ) -> Dict[str, Any]:
        """
        Record an uploaded file and queue its processing pipeline.

        Returns:
            The document state plus "job_ids".

        Raises:
            PPUKValidationError: bad visibility or the file exceeds the size limit.
            PPUKNotFoundError: no such property.
            PPUKForbiddenError: principal may not add documents to the property.
        """
        _validate_visibility(visibility)
        if mime_type is None:
            mime_type, _ = mimetypes.guess_type(file_name)
            mime_type = mime_type or "application/octet-stream"

        max_bytes = self._documents_config.max_upload_size_mb * 1024 * 1024
        if file_size_bytes < 0 or file_size_bytes > max_bytes:
            raise PPUKValidationError(
                f"File size ({file_size_bytes / 1024 / 1024:.1f} MB) exceeds "
                f"limit ({self._documents_config.max_upload_size_mb} MB)",
                field="file_size_bytes",
                value=file_size_bytes,
            )

        session = self._session_factory()
        try:
            self._authz.get_property(session, property_id)
            document = Document(
                property_id=property_id,
                created_by=principal_id,
                visibility=visibility,
                file_name=file_name,
                mime_type=mime_type,
                file_size_bytes=file_size_bytes,
                storage_ref=storage_ref,
                document_type=document_type,
                processing_status="pending",
                av_status="pending",
                meta={},
            )
            self._authz.require_access(principal_id, document, CREATE, session=session)
            session.add(document)
            session.flush()

            job_ids = [
                self._jobs.enqueue(document.id, kind, session=session)
                for kind in pipeline_kinds(mime_type, self._jobs_config, self._handled_kinds)
            ]
            state = entity_state(document)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self._audit.record(
            principal_id, "upload", "document", state["id"],
            new_state=state,
            metadata={"job_ids": job_ids},
        )
        logger.info(
            f"Document {state['id']} registered on property {property_id} "
            f"({mime_type}, {len(job_ids)} jobs)"
        )
        return {**state, "job_ids": job_ids}

    def get_document(self, principal_id: Optional[str], document_id: int) -> Dict[str, Any]:
        session = self._session_factory()
        try:
            document = self._authz.load_and_require(session, principal_id, "document", document_id, READ)
            state = entity_state(document)
            state["meta"] = dict(document.meta or {})
            state["extracted_text"] = document.extracted_text
            return state
        finally:
            session.close()

    def record_download(self, principal_id: Optional[str], document_id: int) -> Dict[str, Any]:
        """
        Authorize and audit a download. Returns the storage reference to serve.

        Raises:
            PPUKConflictError: the document is quarantined.
        """
        session = self._session_factory()
        try:
            document = self._authz.load_and_require(session, principal_id, "document", document_id, READ)
            if document.av_status == "quarantined":
                raise PPUKConflictError(
                    "Document is quarantined", entity_type="document", entity_id=document_id
                )
            result = {
                "id": document.id,
                "file_name": document.file_name,
                "mime_type": document.mime_type,
                "storage_ref": document.storage_ref,
            }
        finally:
            session.close()

        self._audit.record(principal_id, "download", "document", document_id,
                           metadata={"file_name": result["file_name"]})
        return result

    def update_document(self, principal_id: str, document_id: int, **changes: Any) -> Dict[str, Any]:
        return self.update_entity(principal_id, "document", document_id, **changes)

    def set_visibility(
        self, principal_id: str, entity_id: int, visibility: str, entity_type: str = "document"
    ) -> Dict[str, Any]:
        """Change a protected entity's visibility (audited as share)."""
        _validate_visibility(visibility)
        self._require_protected(entity_type)
        session = self._session_factory()
        try:
            entity = self._authz.load_and_require(session, principal_id, entity_type, entity_id, UPDATE)
            old_state = {"visibility": entity.visibility}
            entity.visibility = visibility
            session.flush()
            state = entity_state(entity)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if old_state["visibility"] != visibility:
            self._audit.record(principal_id, "share", entity_type, entity_id,
                               old_state=old_state, new_state={"visibility": visibility})
        return state

    def delete_document(self, principal_id: str, document_id: int) -> Dict[str, Any]:
        return self.delete_entity(principal_id, "document", document_id)

    def processing_jobs(self, principal_id: Optional[str], document_id: int) -> List[Dict[str, Any]]:
        """Pipeline jobs for a document the principal can read."""
        session = self._session_factory()
        try:
            self._authz.load_and_require(session, principal_id, "document", document_id, READ)
        finally:
            session.close()
        return self._jobs.list_for_document(document_id)

    # -------------------------------------------------------------------
    # Notes, tasks (and documents through the generic path)
    # -------------------------------------------------------------------

    def create_entity(
        self,
        principal_id: str,
        entity_type: str,
        property_id: int,
        visibility: str = "private",
        **fields: Any,
    ) -> Dict[str, Any]:
        """Create a note or task. Documents go through register_upload."""
        if entity_type not in REQUIRED_FIELDS:
            raise PPUKValidationError(
                f"create_entity supports note and task, not {entity_type}",
                field="entity_type", value=entity_type,
            )
        _validate_visibility(visibility)
        fields = _validate_changes(entity_type, fields)
        missing = [f for f in REQUIRED_FIELDS[entity_type] if not fields.get(f)]
        if missing:
            raise PPUKValidationError(f"Missing required field(s): {missing}", field=missing[0])

        model = PROTECTED_ENTITY_MODELS[entity_type]
        session = self._session_factory()
        try:
            self._authz.get_property(session, property_id)
            entity = model(
                property_id=property_id, created_by=principal_id, visibility=visibility, **fields
            )
            self._authz.require_access(principal_id, entity, CREATE, session=session)
            session.add(entity)
            session.flush()
            state = entity_state(entity)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self._audit.record(principal_id, "create", entity_type, state["id"], new_state=state)
        return state

    def update_entity(
        self, principal_id: str, entity_type: str, entity_id: int, **changes: Any
    ) -> Dict[str, Any]:
        self._require_protected(entity_type)
        changes = _validate_changes(entity_type, changes)
        return self._update(principal_id, entity_type, entity_id, changes)

    def delete_entity(self, principal_id: str, entity_type: str, entity_id: int) -> Dict[str, Any]:
        """Hard-delete a protected entity. Document jobs cascade with it."""
        self._require_protected(entity_type)
        session = self._session_factory()
        try:
            entity = self._authz.load_and_require(session, principal_id, entity_type, entity_id, DELETE)
            state = entity_state(entity)
            session.delete(entity)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self._audit.record(principal_id, "delete", entity_type, entity_id, old_state=state)
        logger.info(f"{entity_type} {entity_id} deleted by {principal_id}")
        return state

    def list_visible(
        self, principal_id: Optional[str], property_id: int, entity_type: str
    ) -> List[Dict[str, Any]]:
        """Entities of one type on a property that the principal may read."""
        self._require_protected(entity_type)
        model = PROTECTED_ENTITY_MODELS[entity_type]
        session = self._session_factory()
        try:
            self._authz.get_property(session, property_id)
            tier = self._authz.resolve_tier(principal_id, property_id, session=session)
            rows = session.execute(
                select(model)
                .where(model.property_id == property_id)
                .order_by(model.created_at.desc(), model.id.desc())
            ).scalars()
            return [entity_state(row) for row in rows if decide(tier, principal_id, row, READ)]
        finally:
            session.close()

    # -------------------------------------------------------------------
    # Property
    # -------------------------------------------------------------------

    def get_property(self, principal_id: Optional[str], property_id: int) -> Dict[str, Any]:
        session = self._session_factory()
        try:
            prop = self._authz.load_and_require(session, principal_id, "property", property_id, READ)
            return entity_state(prop)
        finally:
            session.close()

    def update_property(self, principal_id: str, property_id: int, **changes: Any) -> Dict[str, Any]:
        """Owner-only edit of the property's descriptive fields."""
        changes = _validate_changes("property", changes)
        return self._update(principal_id, "property", property_id, changes)

    def set_property_public(self, principal_id: str, property_id: int, is_public: bool) -> Dict[str, Any]:
        session = self._session_factory()
        try:
            prop = self._authz.load_and_require(session, principal_id, "property", property_id, UPDATE)
            previous = bool(prop.is_public)
            prop.is_public = bool(is_public)
            state = entity_state(prop)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if previous != bool(is_public):
            self._audit.record(principal_id, "share", "property", property_id,
                               old_state={"is_public": previous},
                               new_state={"is_public": bool(is_public)})
        return state

    # -------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------

    def repair_unprocessed(self, limit: int = 100) -> Dict[str, int]:
        """
        Queue the pipeline for pending documents that have no jobs at all
        (e.g. registered while the queue was unavailable). Idempotent.
        """
        session = self._session_factory()
        try:
            has_jobs = select(DocumentJob.id).where(DocumentJob.document_id == Document.id).exists()
            documents = list(
                session.execute(
                    select(Document)
                    .where(Document.processing_status == "pending", ~has_jobs)
                    .order_by(Document.created_at, Document.id)
                    .limit(limit)
                ).scalars()
            )
            queued = 0
            for document in documents:
                for kind in pipeline_kinds(document.mime_type, self._jobs_config, self._handled_kinds):
                    self._jobs.enqueue(document.id, kind, session=session)
                    queued += 1
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if documents:
            logger.info(f"Repaired {len(documents)} unprocessed documents ({queued} jobs queued)")
        return {"documents": len(documents), "jobs": queued}

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    def _update(
        self, principal_id: str, entity_type: str, entity_id: int, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        session = self._session_factory()
        try:
            entity = self._authz.load_and_require(session, principal_id, entity_type, entity_id, UPDATE)
            old_full = entity_state(entity)
            for field, value in changes.items():
                setattr(entity, field, value)
            session.flush()
            state = entity_state(entity)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        changed = [f for f in changes if old_full.get(f) != state.get(f)]
        if changed:
            self._audit.record(
                principal_id, "update", entity_type, entity_id,
                old_state={f: old_full[f] for f in changed},
                new_state={f: state[f] for f in changed},
            )
        return state

    @staticmethod
    def _require_protected(entity_type: str) -> None:
        if entity_type not in PROTECTED_ENTITY_MODELS:
            raise PPUKValidationError(
                f"Unknown protected entity type: {entity_type}",
                field="entity_type", value=entity_type,
            )

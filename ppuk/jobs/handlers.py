"""
Job handlers — one callable per job kind.

A handler receives a DocumentSnapshot plus the claimed job dict and returns
the result payload that DocumentJobQueue.complete() stores and copies onto the
document. Raising fails the attempt.

av_scan and extract_metadata are built in. OCR and thumbnailing need an
external engine; register one with HandlerRegistry.register() or pass
ocr_backend / thumbnail_backend to build_default_registry().
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, Optional

from ppuk.db.models import JOB_KINDS, Document
from ppuk.engine.errors import PPUKValidationError

logger = logging.getLogger("ppuk.jobs.handlers")

OCR_MIME_TYPES = frozenset({
    "application/pdf",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/tiff",
    "image/bmp",
})

THUMBNAIL_MIME_TYPES = frozenset({
    "application/pdf",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/tiff",
    "image/bmp",
    "image/gif",
    "image/webp",
})

SUSPICIOUS_NAME_PATTERN = re.compile(
    r"virus|malware|trojan|backdoor|keylogger|phishing|spam|exploit|payload",
    re.IGNORECASE,
)

EXECUTABLE_MIME_TYPES = frozenset({
    "application/x-executable",
    "application/x-msdownload",
    "application/x-msdos-program",
    "application/x-sh",
    "application/x-dosexec",
    "application/vnd.microsoft.portable-executable",
})

EXECUTABLE_EXTENSIONS = frozenset({".exe", ".dll", ".bat", ".cmd", ".com", ".scr", ".msi", ".sh"})


@dataclass(frozen=True)
class DocumentSnapshot:
    """Read-only view of the fields a handler may use."""
    id: int
    property_id: int
    file_name: str
    mime_type: str
    file_size_bytes: int
    storage_ref: str
    document_type: str
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, document: Document) -> "DocumentSnapshot":
        return cls(
            id=document.id,
            property_id=document.property_id,
            file_name=document.file_name,
            mime_type=document.mime_type,
            file_size_bytes=document.file_size_bytes or 0,
            storage_ref=document.storage_ref,
            document_type=document.document_type,
            meta=dict(document.meta or {}),
        )

    @property
    def extension(self) -> str:
        return PurePosixPath(self.file_name).suffix.lower()


Handler = Callable[[DocumentSnapshot, Dict[str, Any]], Dict[str, Any]]


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------

def scan_for_threats(document: DocumentSnapshot, job: Dict[str, Any]) -> Dict[str, Any]:
    """Quarantine on suspicious file names or executable content types."""
    threats = []
    match = SUSPICIOUS_NAME_PATTERN.search(document.file_name)
    if match:
        threats.append(f"suspicious_name:{match.group(0).lower()}")
    if document.mime_type.lower() in EXECUTABLE_MIME_TYPES:
        threats.append(f"executable_type:{document.mime_type.lower()}")
    if document.extension in EXECUTABLE_EXTENSIONS:
        threats.append(f"executable_extension:{document.extension}")

    status = "quarantined" if threats else "clean"
    if threats:
        logger.warning(f"Document {document.id} quarantined: {threats}")
    return {"status": status, "threats": threats}


def extract_basic_metadata(document: DocumentSnapshot, job: Dict[str, Any]) -> Dict[str, Any]:
    """Structured metadata derivable without reading the file."""
    metadata: Dict[str, Any] = {
        "document_type": document.document_type,
        "file_size_mb": round(document.file_size_bytes / (1024 * 1024), 2),
        "mime_type": document.mime_type,
        "extension": document.extension,
    }
    if document.mime_type.startswith("image/"):
        metadata["category"] = "image"
    elif document.mime_type == "application/pdf":
        metadata["category"] = "pdf"
    else:
        metadata["category"] = "other"
    return {"metadata": metadata}


def make_ocr_handler(backend: Callable[[str, str], Dict[str, Any]]) -> Handler:
    """
    Wrap an OCR engine. *backend(storage_ref, mime_type)* returns at least
    {"text": str} and optionally "confidence" and "language".
    """

    def run_ocr(document: DocumentSnapshot, job: Dict[str, Any]) -> Dict[str, Any]:
        if document.mime_type.lower() not in OCR_MIME_TYPES:
            raise PPUKValidationError(
                f"OCR does not support {document.mime_type}", field="mime_type", value=document.mime_type
            )
        output = backend(document.storage_ref, document.mime_type)
        text = output.get("text", "")
        result: Dict[str, Any] = {
            "extracted_text": text,
            "word_count": len(text.split()),
        }
        if "confidence" in output:
            result["confidence"] = output["confidence"]
        if "language" in output:
            result["language"] = output["language"]
        return result

    return run_ocr


def make_thumbnail_handler(backend: Callable[[str, str], str]) -> Handler:
    """Wrap a renderer: *backend(storage_ref, mime_type)* returns a storage ref for the thumbnail."""

    def render_thumbnail(document: DocumentSnapshot, job: Dict[str, Any]) -> Dict[str, Any]:
        return {"thumbnail_ref": backend(document.storage_ref, document.mime_type)}

    return render_thumbnail


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class HandlerRegistry:
    """Maps job kind → handler."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, kind: str, handler: Handler) -> None:
        if kind not in JOB_KINDS:
            raise PPUKValidationError(f"Unknown job kind: {kind}", field="kind", value=kind)
        if kind in self._handlers:
            logger.info(f"Replacing handler for job kind '{kind}'")
        self._handlers[kind] = handler

    def get(self, kind: str) -> Optional[Handler]:
        return self._handlers.get(kind)

    @property
    def kinds(self) -> list:
        return sorted(self._handlers)


def build_default_registry(
    ocr_backend: Optional[Callable[[str, str], Dict[str, Any]]] = None,
    thumbnail_backend: Optional[Callable[[str, str], str]] = None,
) -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register("av_scan", scan_for_threats)
    registry.register("extract_metadata", extract_basic_metadata)
    if ocr_backend is not None:
        registry.register("ocr", make_ocr_handler(ocr_backend))
    if thumbnail_backend is not None:
        registry.register("generate_thumbnail", make_thumbnail_handler(thumbnail_backend))
    return registry

"""Unit tests for ppuk.jobs.worker."""

from unittest.mock import MagicMock

from ppuk.db.models import Document
from ppuk.jobs.handlers import HandlerRegistry, build_default_registry
from ppuk.jobs.worker import DocumentWorker


def _add_document(session_factory, property_id, file_name="survey.pdf"):
    session = session_factory()
    try:
        doc = Document(property_id=property_id, created_by="u-owner", visibility="private",
                       file_name=file_name, mime_type="application/pdf", file_size_bytes=1024,
                       storage_ref=f"s3://docs/{file_name}", meta={})
        session.add(doc)
        session.commit()
        return doc.id
    finally:
        session.close()


class TestDocumentWorker:

    def test_empty_queue(self, job_queue, session_factory):
        worker = DocumentWorker(job_queue, build_default_registry(), session_factory)
        assert worker.process_next() is None
        assert worker.run_batch(5) == {"processed": 0}

    def test_processes_and_updates_document(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_queue.enqueue(doc_id, "av_scan")
        job_queue.enqueue(doc_id, "extract_metadata")
        worker = DocumentWorker(job_queue, build_default_registry(), session_factory)

        assert worker.run_batch(10) == {"processed": 2, "completed": 2}

        session = session_factory()
        try:
            doc = session.get(Document, doc_id)
            assert doc.av_status == "clean"
            assert doc.meta["category"] == "pdf"
            assert doc.processing_status == "completed"
        finally:
            session.close()

    def test_handler_error_requeues(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr")
        registry = HandlerRegistry()
        registry.register("ocr", MagicMock(side_effect=RuntimeError("engine crashed")))
        worker = DocumentWorker(job_queue, registry, session_factory)

        outcome = worker.process_next()
        assert outcome == {"job_id": job_id, "kind": "ocr", "status": "queued"}
        assert job_queue.get(job_id)["last_error"] == "RuntimeError: engine crashed"

    def test_missing_handler_exhausts_attempts(self, job_queue, session_factory, seeded, terminal_monitor):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "generate_thumbnail")
        worker = DocumentWorker(job_queue, build_default_registry(), session_factory)

        assert worker.run_batch(10) == {"processed": 3, "queued": 2, "failed": 1}
        assert job_queue.get(job_id)["status"] == "failed"
        assert "LookupError" in job_queue.get(job_id)["last_error"]
        terminal_monitor.assert_called_once()

    def test_cancelled_mid_run_discards_result(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr")

        def cancelling_handler(document, job):
            job_queue.cancel(job["id"])
            return {"extracted_text": "too late"}

        registry = HandlerRegistry()
        registry.register("ocr", cancelling_handler)
        worker = DocumentWorker(job_queue, registry, session_factory)

        assert worker.process_next() == {"job_id": job_id, "kind": "ocr", "status": "cancelled"}
        session = session_factory()
        try:
            assert session.get(Document, doc_id).extracted_text is None
        finally:
            session.close()

    def test_kind_filter(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_queue.enqueue(doc_id, "extract_metadata")
        av = job_queue.enqueue(doc_id, "av_scan")
        worker = DocumentWorker(job_queue, build_default_registry(), session_factory)
        assert worker.process_next(kind="av_scan")["job_id"] == av

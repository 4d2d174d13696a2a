"""Unit tests for ppuk.jobs.queue — state machine, retry bound, reaper, sweeps."""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from ppuk.db.base import utcnow
from ppuk.db.models import Document, DocumentJob
from ppuk.engine.errors import (
    PPUKConflictError,
    PPUKNotFoundError,
    PPUKTerminalJobError,
    PPUKValidationError,
)
from ppuk.jobs.queue import DocumentJobQueue, apply_result, refresh_processing_status


def _add_document(session_factory, property_id, file_name="survey.pdf", mime_type="application/pdf"):
    session = session_factory()
    try:
        doc = Document(
            property_id=property_id, created_by="u-owner", visibility="private",
            file_name=file_name, mime_type=mime_type, file_size_bytes=2048,
            storage_ref=f"s3://bucket/{file_name}", meta={},
        )
        session.add(doc)
        session.commit()
        return doc.id
    finally:
        session.close()


def _document(session_factory, document_id):
    session = session_factory()
    try:
        return session.get(Document, document_id)
    finally:
        session.close()


def _backdate(session_factory, job_id, **deltas):
    session = session_factory()
    try:
        values = {field: utcnow() - delta for field, delta in deltas.items()}
        session.execute(update(DocumentJob).where(DocumentJob.id == job_id).values(**values))
        session.commit()
    finally:
        session.close()


class TestEnqueueAndClaim:


    def test_enqueue_defaults(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job = job_queue.get(job_queue.enqueue(doc_id, "ocr", payload={"lang": "en"}))
        assert job["status"] == "queued"
        assert job["attempts"] == 0
        assert job["max_attempts"] == 3
        assert job["payload"] == {"lang": "en"}

    def test_enqueue_validation(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        with pytest.raises(PPUKValidationError):
            job_queue.enqueue(doc_id, "transcode")
        with pytest.raises(PPUKNotFoundError):
            job_queue.enqueue(9999, "ocr")

    def test_claim_oldest_first(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        first = job_queue.enqueue(doc_id, "av_scan")
        second = job_queue.enqueue(doc_id, "ocr")
        claimed = job_queue.claim_next()
        assert claimed["id"] == first
        assert claimed["status"] == "processing"
        assert claimed["attempts"] == 1
        assert claimed["started_at"] is not None
        assert job_queue.claim_next()["id"] == second
        assert job_queue.claim_next() is None

    def test_claim_by_kind(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_queue.enqueue(doc_id, "av_scan")
        ocr = job_queue.enqueue(doc_id, "ocr")
        assert job_queue.claim_next(kind="ocr")["id"] == ocr
        assert job_queue.claim_next(kind="ocr") is None

    def test_claim_marks_document_processing(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_queue.enqueue(doc_id, "ocr")
        job_queue.claim_next()
        assert _document(session_factory, doc_id).processing_status == "processing"

    def test_claim_empty_queue(self, job_queue):
        assert job_queue.claim_next() is None


class TestCompleteFailCancel:

    def test_complete_applies_result(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr")
        job_queue.claim_next()
        done = job_queue.complete(job_id, {"extracted_text": "Title deed", "confidence": 0.9,
                                           "word_count": 2})
        assert done["status"] == "completed"
        assert done["completed_at"] is not None
        doc = _document(session_factory, doc_id)
        assert doc.extracted_text == "Title deed"
        assert doc.meta["ocr"]["confidence"] == 0.9
        assert doc.processing_status == "completed"

    def test_complete_requires_processing(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr")
        with pytest.raises(PPUKConflictError):
            job_queue.complete(job_id, {})
        with pytest.raises(PPUKNotFoundError):
            job_queue.complete(4040, {})

    def test_retry_bound(self, job_queue, session_factory, seeded, terminal_monitor):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr")

        for attempt in (1, 2):
            assert job_queue.claim_next()["attempts"] == attempt
            requeued = job_queue.fail(job_id, f"timeout {attempt}")
            assert requeued["status"] == "queued"
            assert requeued["last_error"] == f"timeout {attempt}"
        terminal_monitor.assert_not_called()

        assert job_queue.claim_next()["attempts"] == 3
        failed = job_queue.fail(job_id, "timeout 3")
        assert failed["status"] == "failed"
        assert job_queue.claim_next() is None
        assert _document(session_factory, doc_id).processing_status == "failed"

        terminal_monitor.assert_called_once()
        error = terminal_monitor.call_args[0][0]
        assert isinstance(error, PPUKTerminalJobError)
        assert error.job_id == job_id
        assert error.attempts == 3
        assert error.last_error == "timeout 3"

    def test_attempts_never_exceed_max(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "av_scan", max_attempts=1)
        job_queue.claim_next()
        assert job_queue.fail(job_id, "boom")["status"] == "failed"
        job = job_queue.get(job_id)
        assert job["attempts"] <= job["max_attempts"]

    def test_fail_requires_processing(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr")
        with pytest.raises(PPUKConflictError):
            job_queue.fail(job_id, "not running")

    def test_cancel_queued(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr")
        assert job_queue.cancel(job_id)["status"] == "cancelled"
        assert job_queue.claim_next() is None
        with pytest.raises(PPUKConflictError):
            job_queue.cancel(job_id)

    def test_cancel_under_worker_loses_cas(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr")
        job_queue.claim_next()
        job_queue.cancel(job_id)
        with pytest.raises(PPUKConflictError) as exc:
            job_queue.complete(job_id, {"extracted_text": "late"})
        assert exc.value.context["status"] == "cancelled"
        assert _document(session_factory, doc_id).extracted_text is None

    def test_monitor_errors_do_not_propagate(self, session_factory, seeded):
        def exploding_monitor(error):
            raise RuntimeError("pager offline")

        queue = DocumentJobQueue(session_factory, on_terminal_failure=exploding_monitor)
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = queue.enqueue(doc_id, "ocr", max_attempts=1)
        queue.claim_next()
        assert queue.fail(job_id, "boom")["status"] == "failed"


class TestReaper:

    def test_crashed_worker_job_is_requeued(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr")
        job_queue.claim_next()
        _backdate(session_factory, job_id, started_at=timedelta(minutes=20))

        assert job_queue.reap_stale() == {"requeued": 1, "failed": 0}
        job = job_queue.get(job_id)
        assert job["status"] == "queued"
        assert job["attempts"] == 2
        assert "Reaped" in job["last_error"]
        assert job_queue.reap_stale() == {"requeued": 0, "failed": 0}

        reclaimed = job_queue.claim_next()
        assert reclaimed["id"] == job_id
        assert reclaimed["attempts"] == 3

    def test_reaper_fails_at_ceiling(self, job_queue, session_factory, seeded, terminal_monitor):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr", max_attempts=2)
        job_queue.claim_next()
        _backdate(session_factory, job_id, started_at=timedelta(hours=1))

        assert job_queue.reap_stale() == {"requeued": 0, "failed": 1}
        assert job_queue.get(job_id)["status"] == "failed"
        terminal_monitor.assert_called_once()

    def test_recent_processing_jobs_untouched(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_id = job_queue.enqueue(doc_id, "ocr")
        job_queue.claim_next()
        assert job_queue.reap_stale() == {"requeued": 0, "failed": 0}
        assert job_queue.reap_stale(stale_after_seconds=0)["requeued"] == 1
        assert job_queue.get(job_id)["status"] == "queued"


class TestSweepAndReads:

    def test_sweep_only_old_completed(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        old_done = job_queue.enqueue(doc_id, "ocr")
        job_queue.claim_next()
        job_queue.complete(old_done, {})
        _backdate(session_factory, old_done, completed_at=timedelta(days=31))

        recent_done = job_queue.enqueue(doc_id, "av_scan")
        job_queue.claim_next()
        job_queue.complete(recent_done, {"status": "clean"})

        old_failed = job_queue.enqueue(doc_id, "extract_metadata", max_attempts=1)
        job_queue.claim_next()
        job_queue.fail(old_failed, "boom")
        _backdate(session_factory, old_failed, completed_at=timedelta(days=90))

        queued = job_queue.enqueue(doc_id, "generate_thumbnail")

        assert job_queue.sweep_completed() == 1
        assert job_queue.sweep_completed() == 0
        assert job_queue.get(old_done) is None
        for job_id in (recent_done, old_failed, queued):
            assert job_queue.get(job_id) is not None

    def test_list_and_stats(self, job_queue, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        job_queue.enqueue(doc_id, "av_scan")
        job_queue.enqueue(doc_id, "ocr")
        job_queue.claim_next()
        assert [j["kind"] for j in job_queue.list_for_document(doc_id)] == ["av_scan", "ocr"]
        assert job_queue.stats() == {"av_scan": {"processing": 1}, "ocr": {"queued": 1}}


class TestDerivedFields:

    def test_av_result_sets_status(self):
        doc = Document(meta={})
        apply_result(doc, "av_scan", {"status": "quarantined", "threats": ["suspicious_name:virus"]})
        assert doc.av_status == "quarantined"
        assert doc.meta["av_scan"]["threats"] == ["suspicious_name:virus"]

    def test_unknown_av_status_quarantines(self):
        doc = Document(meta={})
        apply_result(doc, "av_scan", {"status": "maybe"})
        assert doc.av_status == "quarantined"

    def test_metadata_and_thumbnail(self):
        doc = Document(meta={"existing": 1})
        apply_result(doc, "extract_metadata", {"metadata": {"category": "pdf"}})
        apply_result(doc, "generate_thumbnail", {"thumbnail_ref": "s3://thumbs/1.png"})
        assert doc.meta == {"existing": 1, "category": "pdf"}
        assert doc.thumbnail_ref == "s3://thumbs/1.png"

    def test_refresh_without_jobs_is_pending(self, session_factory, seeded):
        doc_id = _add_document(session_factory, seeded["property_id"])
        session = session_factory()
        try:
            assert refresh_processing_status(session, doc_id) == "pending"
            assert refresh_processing_status(session, 4040) is None
        finally:
            session.close()


class TestConcurrentClaims:

    def test_at_most_one_worker_per_job(self, file_session_factory, seeded_file_store):
        queue = DocumentJobQueue(file_session_factory)
        job_ids = {queue.enqueue(seeded_file_store, kind) for kind in
                   ("av_scan", "ocr", "extract_metadata", "generate_thumbnail")}

        claims = []
        claims_lock = threading.Lock()
        start = threading.Barrier(4)

        def worker():
            start.wait()
            while True:
                try:
                    job = queue.claim_next()
                except OperationalError:
                    continue  # sqlite "database is locked"; try again
                if job is None:
                    return
                with claims_lock:
                    claims.append(job["id"])

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(claims) == sorted(job_ids)
        assert all(job["status"] == "processing" and job["attempts"] == 1
                   for job in (queue.get(j) for j in job_ids))


@pytest.fixture
def seeded_file_store(file_session_factory):
    """One property and one document on the file-backed store; returns the document id."""
    from ppuk.db.models import Property

    session = file_session_factory()
    try:
        prop = Property(ppuk_reference="PPUK-9000", address_line_1="1 Mill Lane", postcode="LS1 1AA")
        session.add(prop)
        session.flush()
        doc = Document(property_id=prop.id, created_by="u-owner", visibility="private",
                       file_name="plan.png", mime_type="image/png", file_size_bytes=10,
                       storage_ref="s3://plan.png", meta={})
        session.add(doc)
        session.commit()
        return doc.id
    finally:
        session.close()

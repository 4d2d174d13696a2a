"""
Integration tests — cross-module workflows.

These tests drive the public services of a started CoreRuntime and check
that authorization, jobs, audit and the provider cache agree with each other.
"""

import os
import threading

import pytest
from sqlalchemy import insert

from ppuk.db.models import Property
from ppuk.engine.errors import PPUKConflictError, PPUKForbiddenError


def _new_property(core, reference):
    session = core.session_factory()
    try:
        result = session.execute(
            insert(Property).values(
                ppuk_reference=reference, address_line_1="4 Canal Wharf",
                city="Leeds", postcode="LS11 5PS",
            )
        )
        session.commit()
        return result.inserted_primary_key[0]
    finally:
        session.close()


@pytest.mark.integration
class TestPropertyLifecycle:

    def test_claim_upload_process_share(self, core):
        pid = _new_property(core, "PPUK-INT-1")
        owner, tenant, buyer = "u-owner", "u-tenant", "u-buyer"

        core.relationships.claim_property(owner, pid)
        core.relationships.add_relationship(owner, pid, tenant, "occupier")
        core.relationships.add_to_watchlist(buyer, pid)

        doc = core.documents.register_upload(owner, pid, "epc-certificate.txt", "s3://c/epc.txt", 512)
        assert core.worker.run_batch(10) == {"processed": 2, "completed": 2}
        assert core.documents.get_document(owner, doc["id"])["processing_status"] == "completed"

        with pytest.raises(PPUKForbiddenError):
            core.documents.record_download(buyer, doc["id"])
        core.documents.set_visibility(owner, doc["id"], "public")
        assert core.documents.record_download(buyer, doc["id"])["storage_ref"] == "s3://c/epc.txt"

        actions = [e["action"] for e in core.audit.trail("document", doc["id"])]
        assert actions == ["download", "share", "upload"]
        assert core.audit.activity_summary(owner) == {"claim": 1, "create": 1, "upload": 1, "share": 1}

    def test_quarantine_blocks_download(self, core):
        pid = _new_property(core, "PPUK-INT-2")
        core.relationships.claim_property("u-owner", pid)
        doc = core.documents.register_upload("u-owner", pid, "malware.exe", "s3://c/m.exe", 64,
                                             mime_type="application/x-msdownload")
        core.worker.run_batch(10)
        with pytest.raises(PPUKConflictError):
            core.documents.record_download("u-owner", doc["id"])

    def test_sweeps_are_idempotent(self, core):
        first = core.run_sweeps("all")
        assert core.run_sweeps("all") == first


@pytest.mark.integration
class TestProviderLookups:

    def test_lookup_is_cached(self, core):
        first = core.providers.lookup("epc", {"postcode": "LS11 5PS"})
        second = core.providers.lookup("epc", {"postcode": " ls11  5ps "})
        assert first.payload == {"postcode": "LS11 5PS", "rating": "C"}
        assert second.payload == first.payload
        assert first.ttl_seconds == 600
        assert core.stats()["cache"]["by_provider"] == {"epc": 1}


@pytest.mark.integration
@pytest.mark.skipif(not os.environ.get("PPUK_TEST_DATABASE_URL"), reason="needs PostgreSQL row locking")
class TestConcurrentWorkers:

    def test_each_job_runs_once(self, core):
        pid = _new_property(core, "PPUK-INT-3")
        core.relationships.claim_property("u-owner", pid)
        for i in range(4):
            core.documents.register_upload("u-owner", pid, f"note-{i}.txt", f"s3://c/{i}", 10)

        processed = []
        processed_lock = threading.Lock()

        def work():
            while True:
                outcome = core.worker.process_next()
                if outcome is None:
                    return
                with processed_lock:
                    processed.append(outcome["job_id"])

        threads = [threading.Thread(target=work) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert len(processed) == len(set(processed)) == 8
        assert core.jobs.stats() == {"av_scan": {"completed": 4}, "extract_metadata": {"completed": 4}}

"""Unit tests for ppuk.engine.errors — structured error hierarchy."""

import json

from ppuk.engine.errors import (
    PPUKConflictError,
    PPUKError,
    PPUKForbiddenError,
    PPUKNotFoundError,
    PPUKRetryableUpstreamError,
    PPUKTerminalJobError,
    PPUKValidationError,
)


class TestPPUKError:

    def test_context_is_carried(self):
        err = PPUKError("boom", entity_type="document", entity_id=7, request_id="req_1", extra=1)
        assert err.message == "boom"
        assert err.entity_type == "document"
        assert err.entity_id == 7
        assert err.request_id == "req_1"
        assert err.context["extra"] == 1

    def test_to_dict_excludes_promoted_keys_from_context(self):
        data = PPUKError("boom", entity_type="note", entity_id=1, extra="x").to_dict()
        assert data["error_type"] == "PPUKError"
        assert data["context"] == {"extra": "x"}

    def test_to_json_is_valid(self):
        parsed = json.loads(PPUKConflictError("dup", entity_type="relationship").to_json())
        assert parsed["error_type"] == "PPUKConflictError"

    def test_repr(self):
        err = PPUKNotFoundError("missing", entity_type="task", entity_id=3, request_id="req_2")
        assert "entity=task:3" in repr(err)
        assert "request_id=req_2" in repr(err)

    def test_subclasses_share_base(self):
        for cls in (PPUKForbiddenError, PPUKNotFoundError, PPUKConflictError,
                    PPUKRetryableUpstreamError, PPUKTerminalJobError, PPUKValidationError):
            assert issubclass(cls, PPUKError)

    def test_forbidden_and_not_found_are_distinct(self):
        assert not issubclass(PPUKForbiddenError, PPUKNotFoundError)
        assert not issubclass(PPUKNotFoundError, PPUKForbiddenError)


class TestSubclassFields:

    def test_forbidden(self):
        data = PPUKForbiddenError("no", principal_id="u-1", operation="update", tier="interested").to_dict()
        assert data["principal_id"] == "u-1"
        assert data["operation"] == "update"
        assert data["tier"] == "interested"

    def test_retryable_upstream(self):
        err = PPUKRetryableUpstreamError("down", provider="epc", status_code=503)
        assert err.provider == "epc"
        assert err.to_dict()["status_code"] == 503

    def test_terminal_job(self):
        err = PPUKTerminalJobError(
            "exhausted", job_id=4, document_id=9, kind="ocr", attempts=3, last_error="timeout"
        )
        data = err.to_dict()
        assert data["job_id"] == 4
        assert data["kind"] == "ocr"
        assert data["attempts"] == 3
        assert data["last_error"] == "timeout"

    def test_validation(self):
        err = PPUKValidationError("bad tier", field="tier", value="landlord")
        assert err.field == "tier"
        assert err.value == "landlord"

"""Tests for the error taxonomy and automation error classification."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from deskcal.contract import ErrorCode
from deskcal.errors import (
    BackendCanceledError,
    BackendTimeoutError,
    ConcurrencyError,
    GenericFailure,
    NotFoundError,
    PermissionDeniedError,
    ReminderVerificationError,
    TransientAutomationError,
    ValidationError,
    annotate_phase,
    classify_automation_error,
    error_meta,
)

pytestmark = pytest.mark.unit


class TestClassifyAutomationError:
    @pytest.mark.parametrize(
        "message",
        [
            "execution error: Calendar got an error: AppleEvent timed out. (-1712)",
            "Connection is invalid.",
            "Calendar is busy",
        ],
    )
    def test_transient(self, message):
        assert isinstance(classify_automation_error(message), TransientAutomationError)

    @pytest.mark.parametrize(
        "message",
        [
            "Not authorized to send Apple events to Calendar. (-1743)",
            "Operation not permitted",
        ],
    )
    def test_access_denied(self, message):
        exc = classify_automation_error(message)
        assert isinstance(exc, PermissionDeniedError)
        assert exc.code == ErrorCode.permission_denied
        assert exc.hint

    def test_not_found(self):
        exc = classify_automation_error("calendar not found")
        assert isinstance(exc, NotFoundError)

    def test_generic(self):
        exc = classify_automation_error("  Can't make   some data\n into type ")
        assert type(exc) is GenericFailure
        assert exc.message == "automation call failed: Can't make some data into type"

    def test_empty_message(self):
        assert classify_automation_error("").message == "automation call failed: automation call failed"


class TestErrorShapes:
    def test_codes(self):
        assert ValidationError("x").code == ErrorCode.invalid_usage
        assert NotFoundError("x").code == ErrorCode.not_found
        assert GenericFailure("x").code == ErrorCode.generic

    def test_concurrency_message(self):
        exc = ConcurrencyError(event_id="E@1", expected=2, actual=3)
        assert exc.code == ErrorCode.concurrency
        assert "expected sequence 2, found 3" in exc.message

    def test_reminder_verification_messages(self):
        set_exc = ReminderVerificationError(
            event_id="E", requested=timedelta(minutes=-15), observed=None
        )
        clear_exc = ReminderVerificationError(
            event_id="E", requested=None, observed=timedelta(minutes=-15)
        )
        assert set_exc.message == "reminder offset verification failed"
        assert clear_exc.message == "reminder clear verification failed"

    def test_timeout_is_timeout_error(self):
        deadline = datetime(2026, 3, 2, 9, tzinfo=UTC)
        exc = BackendTimeoutError(phase="backend.list_events", deadline=deadline)
        assert isinstance(exc, TimeoutError)
        assert exc.phase == "backend.list_events"
        assert deadline.isoformat() in exc.message


class TestPhaseMeta:
    def test_annotate_keeps_first_phase(self):
        exc = GenericFailure("boom")
        annotate_phase(exc, "inner")
        annotate_phase(exc, "outer")
        assert exc.phase == "inner"

    def test_annotate_foreign_exception_adds_note(self):
        exc = annotate_phase(ValueError("bad"), "backend.add_event")
        assert "phase: backend.add_event" in exc.__notes__

    def test_meta_absent_without_phase(self):
        assert error_meta(GenericFailure("x")) is None
        assert error_meta(ValueError("x")) is None

    def test_meta_for_timeout(self):
        deadline = datetime(2026, 3, 2, 9, tzinfo=UTC)
        meta = error_meta(BackendTimeoutError(phase="p", deadline=deadline))
        assert meta == {
            "phase": "p",
            "code": "BACKEND_UNAVAILABLE",
            "kind": "timeout",
            "deadline": deadline.isoformat(),
        }

    def test_meta_for_cancel(self):
        assert error_meta(BackendCanceledError(phase="p"))["kind"] == "canceled"

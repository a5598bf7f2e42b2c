"""Tests for bpm_bridge.services.lifecycle_service.

Test strategy
-------------
Withdraw / cancel / submit run end to end against the in-memory DB; only
the BPM HTTP session is mocked (via the `gateway` fixture).  Local write
failures are simulated with patch.object on the form_store module.

Coverage
--------
    - abort outcome classification (already closed vs. generic refusal)
    - both abort response layouts acknowledged
    - remote success + local success → 200, WITHDRAWN, WITHDRAW/SUCCESS log
    - remote success + local failure → 200, log with local_status=FAILED
    - transport failure → 500, no local change, FAILED log
    - cancel idempotence (already cancelled → 203, BPM not called)
    - submit success / rejection / CANCEL_LEAVE flagging
"""

from unittest.mock import patch

import pytest
import requests

from bpm_bridge.core.exceptions import AlreadyClosedFailure, PersistenceFailure, RemoteApplicationFailure
from bpm_bridge.integrations.bpm_gateway import GENERIC_ABORT_MESSAGE, AbortOutcome
from bpm_bridge.models.bpm_form import SyncStatus, SyncType
from bpm_bridge.services import form_store, lifecycle_service
from bpm_bridge.services.lifecycle_service import Outcome, classify_abort_outcome, is_already_closed
from bpm_bridge.utils.errors import R


class TestClassification:
    @pytest.mark.parametrize("message", [
        "process already terminated",
        "Process ABORTED by admin",
        "流程已結束",
        "表單已撤回",
    ])
    def test_already_closed_messages(self, message):
        assert is_already_closed(message) is True
        failure = classify_abort_outcome(AbortOutcome(False, message, "results"))
        assert isinstance(failure, AlreadyClosedFailure)

    def test_other_refusal_is_generic(self):
        failure = classify_abort_outcome(AbortOutcome(False, "internal error", "status"))
        assert type(failure) is RemoteApplicationFailure
        assert failure.cause == "internal error"

    def test_success_is_not_a_failure(self):
        assert classify_abort_outcome(AbortOutcome(True, "", "status")) is None

    def test_empty_message_gets_generic_text(self):
        failure = classify_abort_outcome(AbortOutcome(False, "", "results"))
        assert failure.cause == GENERIC_ABORT_MESSAGE


class TestWithdraw:
    @pytest.mark.parametrize("body", [
        {"status": "SUCCESS"},
        {"results": [{"success": True, "message": "aborted ok"}]},
    ])
    def test_acknowledged_abort_marks_form_withdrawn(self, gateway, bpm_response, make_form, body):
        """Given: a mirrored RUNNING form
        When:  BPM acknowledges the abort (either layout)
        Then:  200, status WITHDRAWN, WITHDRAW/SUCCESS log with local_status SUCCESS
        """
        make_form("PS-100", header={"status": "RUNNING"})
        gateway.session.request.return_value = bpm_response(200, body)

        result = lifecycle_service.withdraw("E001", "PS-100", "typo")

        assert result.code == R.OK
        assert result.data == {"formId": "PS-100", "localUpdated": True}
        form = form_store.get_form("PS-100")
        assert form.status == "WITHDRAWN"
        assert form.is_cancelled is True
        log = form_store.get_sync_logs("PS-100")[0]
        assert log.sync_type == SyncType.WITHDRAW
        assert log.sync_status == SyncStatus.SUCCESS
        assert log.local_status == SyncStatus.SUCCESS

    def test_local_failure_after_remote_success_still_reports_success(self, gateway, bpm_response, make_form):
        """The caller is told the truth about BPM; the drift is recorded in the sync log."""
        make_form("PS-100", header={"status": "RUNNING"})
        gateway.session.request.return_value = bpm_response(200, {"status": "SUCCESS"})

        with patch.object(form_store, "update_status", side_effect=PersistenceFailure("db down", form_id="PS-100")):
            result = lifecycle_service.withdraw("E001", "PS-100")

        assert result.code == R.OK
        assert result.data["localUpdated"] is False
        assert form_store.get_form("PS-100").status == "RUNNING"
        log = form_store.get_sync_logs("PS-100")[0]
        assert log.sync_type == SyncType.WITHDRAW
        assert log.sync_status == SyncStatus.SUCCESS
        assert log.local_status == SyncStatus.FAILED
        assert "db down" in log.error_message

    def test_withdraw_of_unmirrored_form_still_succeeds(self, gateway, bpm_response):
        gateway.session.request.return_value = bpm_response(200, {"status": "SUCCESS"})

        result = lifecycle_service.withdraw("E001", "PS-NEW")

        assert result.code == R.OK
        assert result.data["localUpdated"] is False
        assert form_store.get_sync_logs("PS-NEW")[0].local_status == SyncStatus.FAILED

    def test_connection_refused_returns_500_and_changes_nothing(self, gateway, make_form):
        make_form("PS-100", header={"status": "RUNNING"})
        gateway.session.request.side_effect = requests.ConnectionError("Connection refused")

        result = lifecycle_service.withdraw("E001", "PS-100")

        assert result.code == R.FAILURE
        assert result.msg == lifecycle_service.TIMEOUT_MESSAGE
        assert result.outcome == Outcome.TRANSPORT_FAILURE
        assert form_store.get_form("PS-100").status == "RUNNING"
        log = form_store.get_sync_logs("PS-100")[0]
        assert log.sync_type == SyncType.WITHDRAW
        assert log.sync_status == SyncStatus.FAILED

    def test_http_error_returns_500(self, gateway, bpm_response):
        gateway.session.request.return_value = bpm_response(503, text="maintenance")

        result = lifecycle_service.withdraw("E001", "PS-100")

        assert result.code == R.FAILURE
        assert result.outcome == Outcome.REMOTE_FAILURE

    def test_already_closed_returns_203(self, gateway, bpm_response, make_form):
        make_form("PS-100", header={"status": "RUNNING"})
        gateway.session.request.return_value = bpm_response(
            200, {"results": [{"success": False, "message": "Process already terminated"}]},
        )

        result = lifecycle_service.withdraw("E001", "PS-100")

        assert result.code == R.REJECTED
        assert result.outcome == Outcome.ALREADY_CLOSED
        assert result.data["remoteMessage"] == "Process already terminated"
        assert form_store.get_form("PS-100").status == "RUNNING"

    def test_generic_refusal_returns_203_with_remote_message(self, gateway, bpm_response):
        gateway.session.request.return_value = bpm_response(200, {"status": "ERROR", "message": "internal error"})

        result = lifecycle_service.withdraw("E001", "PS-100")

        assert result.code == R.REJECTED
        assert result.outcome == Outcome.REJECTED
        assert result.msg == "internal error"

    def test_unrecognized_response_returns_generic_203(self, gateway, bpm_response):
        gateway.session.request.return_value = bpm_response(200, {"unexpected": True})

        result = lifecycle_service.withdraw("E001", "PS-100")

        assert result.code == R.REJECTED
        assert result.msg == GENERIC_ABORT_MESSAGE

    def test_unexpected_error_is_contained(self):
        with patch.object(lifecycle_service, "get_bpm_gateway", side_effect=RuntimeError("boom")):
            result = lifecycle_service.withdraw("E001", "PS-100")

        assert result.code == R.FAILURE
        assert result.outcome == Outcome.ERROR


class TestCancel:
    def test_cancel_aborts_then_flags_form(self, gateway, bpm_response, make_form):
        make_form("PS-100")
        gateway.session.request.return_value = bpm_response(200, {"status": "SUCCESS"})

        result = lifecycle_service.cancel("PS-100", "plans changed", "E001")

        assert result.code == R.OK
        form = form_store.get_form("PS-100")
        assert form.status == "CANCELLED"
        assert form.is_cancelled is True
        assert form.cancel_reason == "plans changed"
        assert form.cancelled_by == "E001"
        payload = gateway.session.request.call_args.kwargs["json"]
        assert payload["items"][0]["abortComment"] == "plans changed"
        assert form_store.get_sync_logs("PS-100")[0].sync_type == SyncType.CANCEL

    def test_second_cancel_is_refused_without_bpm_call(self, gateway, bpm_response, make_form):
        make_form("PS-100")
        gateway.session.request.return_value = bpm_response(200, {"status": "SUCCESS"})
        lifecycle_service.cancel("PS-100", None, "E001")
        gateway.session.request.reset_mock()

        result = lifecycle_service.cancel("PS-100", None, "E001")

        assert result.code == R.REJECTED
        assert result.outcome == Outcome.ALREADY_CANCELLED
        gateway.session.request.assert_not_called()

    def test_unknown_form_is_203(self, gateway):
        result = lifecycle_service.cancel("PS-404", None, "E001")

        assert result.code == R.REJECTED
        assert result.outcome == Outcome.NOT_FOUND
        gateway.session.request.assert_not_called()

    def test_refusal_records_sync_error_on_form(self, gateway, bpm_response, make_form):
        make_form("PS-100")
        gateway.session.request.return_value = bpm_response(200, {"status": "FAILED", "message": "locked"})

        result = lifecycle_service.cancel("PS-100", None, "E001")

        assert result.code == R.REJECTED
        form = form_store.get_form("PS-100")
        assert form.is_cancelled is False
        assert form.sync_error_message == "locked"

    def test_remote_failure_while_loading_is_500(self, gateway):
        gateway.session.request.side_effect = requests.Timeout("slow")

        result = lifecycle_service.cancel("LEAVE-2030-0001", None, "E001")

        assert result.code == R.FAILURE
        assert result.msg == lifecycle_service.TIMEOUT_MESSAGE


class TestSubmit:
    def test_success_is_decided_by_status_alone(self, gateway, bpm_response):
        gateway.session.request.return_value = bpm_response(200, {"status": "SUCCESS"})

        result = lifecycle_service.submit("PI_OVERTIME_001", {"overtimeDate": "2030-01-05"}, "E001")

        assert result.code == R.OK
        assert result.data == {"processSerialNo": None, "processInstanceId": None, "status": "SUCCESS"}
        payload = gateway.session.request.call_args.kwargs["json"]
        assert payload["processCode"] == "PI_OVERTIME_001_PROCESS"
        assert payload["formDataMap"] == {"PI_OVERTIME_001": {"overtimeDate": "2030-01-05"}}

    def test_success_is_logged_against_serial(self, gateway, bpm_response):
        gateway.session.request.return_value = bpm_response(
            200, {"status": "SUCCESS", "processSerialNo": "PS-9", "bpmProcessOid": "OID-9"},
        )

        result = lifecycle_service.submit("PI_LEAVE_001", {}, "E001", subject="Annual leave")

        assert result.data["processInstanceId"] == "OID-9"
        log = form_store.get_sync_logs("PS-9")[0]
        assert log.sync_type == SyncType.SUBMIT
        assert log.sync_status == SyncStatus.SUCCESS

    def test_rejection_is_203(self, gateway, bpm_response):
        gateway.session.request.return_value = bpm_response(200, {"status": "FAILED", "message": "quota exceeded"})

        result = lifecycle_service.submit("PI_LEAVE_001", {}, "E001")

        assert result.code == R.REJECTED
        assert result.msg == "quota exceeded"

    def test_unsupported_form_code_never_reaches_bpm(self, gateway):
        result = lifecycle_service.submit("PI_PURCHASE_001", {}, "E001")

        assert result.code == R.REJECTED
        assert result.outcome == Outcome.INVALID
        gateway.session.request.assert_not_called()

    def test_timeout_is_500(self, gateway):
        gateway.session.request.side_effect = requests.Timeout("slow")

        result = lifecycle_service.submit("PI_LEAVE_001", {}, "E001")

        assert result.code == R.FAILURE
        assert result.msg == lifecycle_service.TIMEOUT_MESSAGE

    def test_cancel_leave_flags_original_leave(self, gateway, bpm_response, make_form):
        make_form("PS-001")
        gateway.session.request.return_value = bpm_response(200, {"status": "SUCCESS", "processSerialNo": "PS-CL"})

        result = lifecycle_service.submit(
            "PI_CANCEL_LEAVE_001", {"originalLeaveFormId": "PS-001", "cancelReason": "recovered"}, "E001",
        )

        assert result.code == R.OK
        assert result.data["originalLeaveCancelled"] is True
        leave = form_store.get_form("PS-001")
        assert leave.is_cancelled is True
        assert leave.cancel_reason == "recovered"
        log = form_store.get_sync_logs("PS-001")[0]
        assert log.sync_type == SyncType.CANCEL
        assert log.local_status == SyncStatus.SUCCESS

    def test_cancel_leave_with_unknown_original_is_still_ok(self, gateway, bpm_response):
        gateway.session.request.return_value = bpm_response(200, {"status": "SUCCESS"})

        result = lifecycle_service.submit(
            "PI_CANCEL_LEAVE_001", {"originalLeaveFormId": "PS-MISSING"}, "E001",
        )

        assert result.code == R.OK
        assert result.data["originalLeaveCancelled"] is False
        assert form_store.get_sync_logs("PS-MISSING")[0].local_status == SyncStatus.FAILED


class TestWorkItems:
    def test_work_items(self, gateway, bpm_response):
        gateway.session.request.return_value = bpm_response(200, {"workItems": [{"id": 1}, {"id": 2}]})

        result = lifecycle_service.list_work_items("E001")

        assert result.code == R.OK
        assert result.data["count"] == 2

    def test_work_items_unreachable(self, gateway):
        gateway.session.request.side_effect = requests.ConnectionError("refused")

        result = lifecycle_service.list_work_items("E001")

        assert result.code == R.FAILURE
        assert result.outcome == Outcome.TRANSPORT_FAILURE

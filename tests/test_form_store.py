"""Tests for bpm_bridge.services.form_store against an in-memory SQLite DB.

Each test creates its own rows through the store and relies on the
`session` autouse fixture for teardown (rollback + recreate tables).
"""

from datetime import date, datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from bpm_bridge.core.exceptions import MappingFailure, NotFoundError, PersistenceFailure
from bpm_bridge.models import db
from bpm_bridge.models.bpm_form import (
    BpmForm,
    BpmFormApprovalHistory,
    BpmFormSyncLog,
    BpmLeaveForm,
    BpmOvertimeForm,
    FormType,
    SyncDirection,
    SyncStatus,
    SyncType,
)
from bpm_bridge.services import form_store
from bpm_bridge.services.form_aggregate import FormAggregate


def _count(model) -> int:
    return db.session.execute(select(func.count()).select_from(model)).scalar_one()


def _aggregate(form_id="PS-100", form_type=FormType.LEAVE, **header) -> FormAggregate:
    detail = {
        FormType.LEAVE: {"start_date": date(2030, 1, 10), "end_date": date(2030, 1, 11)},
        FormType.OVERTIME: {"overtime_date": date(2030, 1, 5)},
    }[form_type]
    base = {"form_code": "PI_X_001", "applicant_id": "E001", "status": "RUNNING"}
    base.update(header)
    return FormAggregate(form_id=form_id, form_type=form_type, header=base, detail=dict(detail))


def _approval(approver="M01", hour=10, action="APPROVE"):
    return {
        "approver_id": approver,
        "action": action,
        "action_time": datetime(2030, 1, 3, hour, 0, tzinfo=timezone.utc),
    }


class TestUpsertForm:
    def test_first_upsert_creates_form_detail_and_initial_pull_log(self):
        form, is_new = form_store.upsert_form(_aggregate())

        assert is_new is True
        assert form.status == "RUNNING"
        assert form.leave_form.start_date == date(2030, 1, 10)
        logs = form_store.get_sync_logs("PS-100")
        assert len(logs) == 1
        assert logs[0].sync_type == SyncType.INITIAL_PULL
        assert logs[0].sync_status == SyncStatus.SUCCESS
        assert logs[0].sync_direction == SyncDirection.IN

    def test_second_upsert_updates_in_place_with_status_update_log(self):
        form_store.upsert_form(_aggregate())
        form, is_new = form_store.upsert_form(_aggregate(status="APPROVED"))

        assert is_new is False
        assert form.status == "APPROVED"
        assert _count(BpmForm) == 1
        assert _count(BpmLeaveForm) == 1
        assert [log.sync_type for log in form_store.get_sync_logs("PS-100")] == [
            SyncType.STATUS_UPDATE, SyncType.INITIAL_PULL,
        ]

    def test_cancel_flag_survives_a_re_pull(self):
        form_store.upsert_form(_aggregate())
        form_store.mark_cancelled("PS-100", "duplicate", "E001")

        form, _ = form_store.upsert_form(_aggregate(status="APPROVED"))

        assert form.is_cancelled is True
        assert form.cancel_reason == "duplicate"
        assert form.cancelled_by == "E001"

    def test_absent_header_keys_keep_stored_value(self):
        form_store.upsert_form(_aggregate(current_node="Manager"))
        form, _ = form_store.upsert_form(_aggregate())
        assert form.current_node == "Manager"

    def test_type_change_replaces_detail_row(self):
        form_store.upsert_form(_aggregate())
        form, _ = form_store.upsert_form(_aggregate(form_type=FormType.OVERTIME))

        assert form.form_type == FormType.OVERTIME
        assert form.leave_form is None
        assert form.overtime_form.overtime_date == date(2030, 1, 5)
        assert _count(BpmLeaveForm) == 0
        assert _count(BpmOvertimeForm) == 1

    def test_history_is_deduplicated_on_approver_and_time(self):
        agg = _aggregate()
        agg.history = [_approval("M01", 10), _approval("M02", 11)]
        form_store.upsert_form(agg)

        agg2 = _aggregate(status="APPROVED")
        agg2.history = [_approval("M01", 10), _approval("M02", 11), _approval("H01", 12)]
        form_store.upsert_form(agg2)

        history = form_store.get_approval_history("PS-100")
        assert [h.approver_id for h in history] == ["M01", "M02", "H01"]

    def test_invalid_aggregate_writes_nothing(self):
        agg = _aggregate()
        agg.detail = {"start_date": date(2030, 1, 10)}

        with pytest.raises(MappingFailure):
            form_store.upsert_form(agg)

        assert _count(BpmForm) == 0
        assert _count(BpmFormSyncLog) == 0

    def test_commit_failure_rolls_back_header_and_log(self):
        with patch.object(db.session, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk full"))):
            with pytest.raises(PersistenceFailure) as exc_info:
                form_store.upsert_form(_aggregate())

        assert exc_info.value.form_id == "PS-100"
        assert _count(BpmForm) == 0
        assert _count(BpmLeaveForm) == 0
        assert _count(BpmFormSyncLog) == 0


class TestApprovalHistory:
    def test_append_skips_known_entries(self):
        form_store.upsert_form(_aggregate())
        assert form_store.append_approval_history("PS-100", [_approval("M01", 10)]) == 1
        assert form_store.append_approval_history("PS-100", [_approval("M01", 10), _approval("M01", 15)]) == 1
        assert _count(BpmFormApprovalHistory) == 2

    def test_append_to_unknown_form_raises(self):
        with pytest.raises(NotFoundError):
            form_store.append_approval_history("PS-404", [_approval()])


class TestUpdateStatus:
    def test_outbound_update_marks_synced_and_logs_local_success(self):
        form_store.upsert_form(_aggregate())

        form = form_store.update_status(
            "PS-100", "withdrawn", "typo", sync_type=SyncType.WITHDRAW,
            operator_id="E001", mark_cancelled=True,
        )

        assert form.status == "WITHDRAWN"
        assert form.is_synced_to_bpm is True
        assert form.is_cancelled is True
        log = form_store.get_sync_logs("PS-100")[0]
        assert log.sync_type == SyncType.WITHDRAW
        assert log.sync_direction == SyncDirection.OUT
        assert log.local_status == SyncStatus.SUCCESS

    def test_unknown_form_raises_not_found(self):
        with pytest.raises(NotFoundError):
            form_store.update_status("PS-404", "WITHDRAWN", sync_type=SyncType.WITHDRAW)
        assert _count(BpmFormSyncLog) == 0


class TestMarkCancelled:
    def test_flag_is_one_way(self):
        form_store.upsert_form(_aggregate())

        assert form_store.mark_cancelled("PS-100", "first", "E001") is True
        assert form_store.mark_cancelled("PS-100", "second", "E002") is False

        form = form_store.get_form("PS-100")
        assert form.cancel_reason == "first"
        assert form.cancel_time is not None


class TestSyncLogs:
    def test_log_without_form_row(self):
        log = form_store.append_sync_log(None, SyncType.SUBMIT, SyncStatus.FAILED, "refused", error_message="x")
        assert log.id is not None
        assert log.sync_direction == SyncDirection.OUT

    def test_limit_is_capped(self):
        for i in range(3):
            form_store.append_sync_log("PS-1", SyncType.STATUS_UPDATE, SyncStatus.SUCCESS, str(i))
        assert len(form_store.get_sync_logs("PS-1", limit=2)) == 2
        assert [log.detail for log in form_store.get_sync_logs("PS-1")] == ["2", "1", "0"]


class TestQueries:
    def test_get_form_detail_bundles_detail_and_history(self, make_form):
        make_form("PS-1", history=[_approval("M01", 10)])

        bundle = form_store.get_form_detail("PS-1")

        assert bundle["form"]["form_id"] == "PS-1"
        assert bundle["detail"]["start_date"] == "2030-01-10"
        assert bundle["approval_history"][0]["approver_id"] == "M01"

    def test_get_form_detail_unknown_raises(self):
        with pytest.raises(NotFoundError):
            form_store.get_form_detail("PS-404")

    def test_filters_and_ordering(self, make_form):
        make_form("PS-1", header={"apply_date": datetime(2030, 1, 1, tzinfo=timezone.utc)})
        make_form("PS-2", header={"apply_date": datetime(2030, 1, 5, tzinfo=timezone.utc), "status": "RUNNING"})
        make_form("PS-3", FormType.OVERTIME, header={"applicant_id": "E002"})
        form_store.mark_cancelled("PS-1", None, "E001")

        everything = form_store.query_forms()
        assert everything["total"] == 3
        assert everything["items"][0]["form_id"] == "PS-2"

        assert [f["form_id"] for f in form_store.query_forms({"applicant_id": "E002"})["items"]] == ["PS-3"]
        assert form_store.query_forms({"status": "running"})["total"] == 1
        assert form_store.query_forms({"form_type": FormType.LEAVE})["total"] == 2
        assert [f["form_id"] for f in form_store.query_forms({"is_cancelled": True})["items"]] == ["PS-1"]
        assert form_store.query_forms({"apply_date_from": datetime(2030, 1, 3)})["total"] == 1

    def test_page_size_is_capped(self, make_form):
        make_form("PS-1")
        page = form_store.query_forms(page=0, page_size=1000)
        assert page["page"] == 1
        assert page["page_size"] == form_store.MAX_PAGE_SIZE

    def test_cancellable_leaves(self, make_form):
        make_form("PS-OK")
        make_form("PS-PAST", detail={"start_date": date(2029, 12, 1), "end_date": date(2029, 12, 2)})
        make_form("PS-RUNNING", header={"status": "RUNNING"})
        make_form("PS-OTHER", header={"applicant_id": "E999"})
        make_form("PS-CANCELLED")
        make_form("PS-OT", FormType.OVERTIME)
        form_store.mark_cancelled("PS-CANCELLED", None, "E001")

        forms = form_store.get_cancellable_leave_forms("E001", today=date(2030, 1, 1))

        assert [f.form_id for f in forms] == ["PS-OK"]


class TestDeleteForm:
    def test_delete_cascades_but_keeps_sync_logs(self, make_form):
        make_form("PS-1", history=[_approval()])

        assert form_store.delete_form("PS-1") is True

        assert _count(BpmForm) == 0
        assert _count(BpmLeaveForm) == 0
        assert _count(BpmFormApprovalHistory) == 0
        assert _count(BpmFormSyncLog) == 1

    def test_delete_unknown_returns_false(self):
        assert form_store.delete_form("PS-404") is False

"""Local mirror of BPM forms.

Tables
──────
  bpm_forms                   form header, one row per remote process serial number
  bpm_leave_forms             leave detail          (1:1 with bpm_forms, cascade)
  bpm_overtime_forms          overtime detail       (1:1 with bpm_forms, cascade)
  bpm_business_trip_forms     business trip detail  (1:1 with bpm_forms, cascade)
  bpm_cancel_leave_forms      cancel-leave detail   (1:1 with bpm_forms, cascade)
  bpm_form_approval_history   signing events        (N:1 with bpm_forms, cascade)
  bpm_form_sync_logs          append-only audit of every sync attempt

Exactly one detail table holds a row for a given form, chosen by
``BpmForm.form_type``.  ``bpm_form_sync_logs.form_id`` is not a foreign key:
a failed pull or withdraw for a form that was never mirrored must still be
auditable.
"""

from datetime import datetime, timezone
from decimal import Decimal

from bpm_bridge.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value is not None else None


def _num(value):
    return float(value) if isinstance(value, Decimal) else value


# ── Enumerations (stored as plain strings) ───────────────────────────────


class FormType:
    LEAVE = "LEAVE"
    OVERTIME = "OVERTIME"
    BUSINESS_TRIP = "BUSINESS_TRIP"
    CANCEL_LEAVE = "CANCEL_LEAVE"

    ALL = (LEAVE, OVERTIME, BUSINESS_TRIP, CANCEL_LEAVE)


class SyncType:
    INITIAL_PULL = "INITIAL_PULL"
    STATUS_UPDATE = "STATUS_UPDATE"
    WITHDRAW = "WITHDRAW"
    CANCEL = "CANCEL"
    SUBMIT = "SUBMIT"


class SyncDirection:
    IN = "IN"     # BPM → local mirror
    OUT = "OUT"   # local → BPM


class SyncStatus:
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# ═════════════════════════════════════════════════════════════════════════
# Form header
# ═════════════════════════════════════════════════════════════════════════


class BpmForm(db.Model):
    """Form header mirrored from one BPM process instance."""

    __tablename__ = "bpm_forms"

    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(
        db.String(100), nullable=False, unique=True,
        comment="BPM process serial number",
    )
    form_code = db.Column(db.String(50), nullable=False, index=True, comment="e.g. PI_LEAVE_001")
    form_type = db.Column(db.String(20), nullable=False, index=True)
    form_version = db.Column(db.String(10), default="1.0.0")

    applicant_id = db.Column(db.String(50), nullable=False, index=True)
    applicant_name = db.Column(db.String(100), nullable=True)
    applicant_department = db.Column(db.String(200), nullable=True)
    company_id = db.Column(db.String(50), nullable=True, index=True)

    form_data = db.Column(db.JSON, nullable=True, comment="Raw remote form fields")
    status = db.Column(db.String(30), nullable=False, default="SUBMITTED", index=True)
    bpm_status = db.Column(db.String(30), nullable=True, comment="Status string exactly as BPM sent it")
    current_node = db.Column(db.String(100), nullable=True)
    progress = db.Column(db.Integer, nullable=True)

    apply_date = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    submit_time = db.Column(db.DateTime(timezone=True), nullable=True)
    last_sync_time = db.Column(db.DateTime(timezone=True), nullable=True)
    approval_comment = db.Column(db.Text, nullable=True)

    # Cancellation is owned by the local side and never reset by a pull.
    is_cancelled = db.Column(db.Boolean, nullable=False, default=False, index=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    cancel_time = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.String(50), nullable=True)

    is_synced_to_bpm = db.Column(db.Boolean, nullable=False, default=False)
    sync_error_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    leave_form = db.relationship(
        "BpmLeaveForm", uselist=False, back_populates="form",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    overtime_form = db.relationship(
        "BpmOvertimeForm", uselist=False, back_populates="form",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    business_trip_form = db.relationship(
        "BpmBusinessTripForm", uselist=False, back_populates="form",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    cancel_leave_form = db.relationship(
        "BpmCancelLeaveForm", uselist=False, back_populates="form",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    approval_history = db.relationship(
        "BpmFormApprovalHistory", back_populates="form",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="BpmFormApprovalHistory.action_time",
    )

    # Columns the sync payload may write; anything else is local state.
    SYNC_FIELDS = (
        "form_code", "form_type", "form_version",
        "applicant_id", "applicant_name", "applicant_department", "company_id",
        "form_data", "status", "bpm_status", "current_node", "progress",
        "apply_date", "submit_time", "approval_comment",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "form_id": self.form_id,
            "form_code": self.form_code,
            "form_type": self.form_type,
            "form_version": self.form_version,
            "applicant_id": self.applicant_id,
            "applicant_name": self.applicant_name,
            "applicant_department": self.applicant_department,
            "company_id": self.company_id,
            "status": self.status,
            "bpm_status": self.bpm_status,
            "current_node": self.current_node,
            "progress": self.progress,
            "apply_date": _iso(self.apply_date),
            "submit_time": _iso(self.submit_time),
            "last_sync_time": _iso(self.last_sync_time),
            "approval_comment": self.approval_comment,
            "is_cancelled": self.is_cancelled,
            "cancel_reason": self.cancel_reason,
            "cancel_time": _iso(self.cancel_time),
            "cancelled_by": self.cancelled_by,
            "is_synced_to_bpm": self.is_synced_to_bpm,
            "sync_error_message": self.sync_error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<BpmForm {self.form_id} {self.form_type}:{self.status}>"


# ═════════════════════════════════════════════════════════════════════════
# Sub-form details
# ═════════════════════════════════════════════════════════════════════════


class _DetailMixin:
    """Columns shared by the four detail tables."""

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    # Filled in by each subclass: detail columns written by a sync.
    DETAIL_FIELDS = ()

    def to_dict(self):
        data = {"id": self.id, "form_id": self.form_id}
        for name in self.DETAIL_FIELDS:
            value = getattr(self, name)
            data[name] = _iso(value) if hasattr(value, "isoformat") else _num(value)
        data["updated_at"] = _iso(self.updated_at)
        return data


class BpmLeaveForm(_DetailMixin, db.Model):
    __tablename__ = "bpm_leave_forms"

    form_id = db.Column(
        db.String(100), db.ForeignKey("bpm_forms.form_id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    leave_type_code = db.Column(db.String(20), nullable=True)
    leave_type_name = db.Column(db.String(50), nullable=True)
    start_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=True)
    end_date = db.Column(db.Date, nullable=False)
    end_time = db.Column(db.Time, nullable=True)
    leave_hours = db.Column(db.Numeric(8, 2), nullable=True)
    leave_days = db.Column(db.Numeric(8, 2), nullable=True)
    reason = db.Column(db.Text, nullable=True)
    agent_id = db.Column(db.String(50), nullable=True)
    agent_name = db.Column(db.String(100), nullable=True)
    leave_event_date = db.Column(db.Date, nullable=True)
    has_attachments = db.Column(db.Boolean, nullable=False, default=False)
    attachments = db.Column(db.JSON, nullable=True)

    form = db.relationship("BpmForm", back_populates="leave_form")

    DETAIL_FIELDS = (
        "leave_type_code", "leave_type_name", "start_date", "start_time",
        "end_date", "end_time", "leave_hours", "leave_days", "reason",
        "agent_id", "agent_name", "leave_event_date", "has_attachments", "attachments",
    )


class BpmOvertimeForm(_DetailMixin, db.Model):
    __tablename__ = "bpm_overtime_forms"

    form_id = db.Column(
        db.String(100), db.ForeignKey("bpm_forms.form_id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    overtime_date = db.Column(db.Date, nullable=False)
    planned_start_time = db.Column(db.DateTime, nullable=True)
    planned_end_time = db.Column(db.DateTime, nullable=True)
    actual_start_time = db.Column(db.DateTime, nullable=True)
    actual_end_time = db.Column(db.DateTime, nullable=True)
    overtime_hours = db.Column(db.Numeric(8, 2), nullable=True)
    process_type = db.Column(db.Integer, nullable=False, default=0, comment="0=comp time, 1=overtime pay")
    reason = db.Column(db.Text, nullable=True)
    has_attachments = db.Column(db.Boolean, nullable=False, default=False)
    attachments = db.Column(db.JSON, nullable=True)

    form = db.relationship("BpmForm", back_populates="overtime_form")

    DETAIL_FIELDS = (
        "overtime_date", "planned_start_time", "planned_end_time",
        "actual_start_time", "actual_end_time", "overtime_hours",
        "process_type", "reason", "has_attachments", "attachments",
    )


class BpmBusinessTripForm(_DetailMixin, db.Model):
    __tablename__ = "bpm_business_trip_forms"

    form_id = db.Column(
        db.String(100), db.ForeignKey("bpm_forms.form_id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    trip_date = db.Column(db.Date, nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    trip_days = db.Column(db.Numeric(8, 2), nullable=True)
    location = db.Column(db.String(200), nullable=True)
    main_tasks = db.Column(db.Text, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    estimated_costs = db.Column(db.Text, nullable=True)
    has_attachments = db.Column(db.Boolean, nullable=False, default=False)
    attachments = db.Column(db.JSON, nullable=True)

    form = db.relationship("BpmForm", back_populates="business_trip_form")

    DETAIL_FIELDS = (
        "trip_date", "start_date", "end_date", "trip_days", "location",
        "main_tasks", "reason", "estimated_costs", "has_attachments", "attachments",
    )


class BpmCancelLeaveForm(_DetailMixin, db.Model):
    __tablename__ = "bpm_cancel_leave_forms"

    form_id = db.Column(
        db.String(100), db.ForeignKey("bpm_forms.form_id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    original_leave_form_id = db.Column(db.String(100), nullable=False, index=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    original_leave_type = db.Column(db.String(50), nullable=True)
    original_start_date = db.Column(db.Date, nullable=True)
    original_start_time = db.Column(db.Time, nullable=True)
    original_end_date = db.Column(db.Date, nullable=True)
    original_end_time = db.Column(db.Time, nullable=True)

    form = db.relationship("BpmForm", back_populates="cancel_leave_form")

    DETAIL_FIELDS = (
        "original_leave_form_id", "cancel_reason", "original_leave_type",
        "original_start_date", "original_start_time",
        "original_end_date", "original_end_time",
    )


# form_type → (detail model, BpmForm relationship attribute)
DETAIL_MODELS = {
    FormType.LEAVE: (BpmLeaveForm, "leave_form"),
    FormType.OVERTIME: (BpmOvertimeForm, "overtime_form"),
    FormType.BUSINESS_TRIP: (BpmBusinessTripForm, "business_trip_form"),
    FormType.CANCEL_LEAVE: (BpmCancelLeaveForm, "cancel_leave_form"),
}


# ═════════════════════════════════════════════════════════════════════════
# Approval history & sync log
# ═════════════════════════════════════════════════════════════════════════


class BpmFormApprovalHistory(db.Model):
    """One signing event.  Insert-only."""

    __tablename__ = "bpm_form_approval_history"

    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(
        db.String(100), db.ForeignKey("bpm_forms.form_id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence_no = db.Column(db.Integer, nullable=False, default=0)
    approver_id = db.Column(db.String(50), nullable=False, index=True)
    approver_name = db.Column(db.String(100), nullable=True)
    approver_department = db.Column(db.String(200), nullable=True)
    action = db.Column(db.String(20), nullable=False, comment="APPROVE | REJECT | RETURN | ...")
    comment = db.Column(db.Text, nullable=True)
    action_time = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    form = db.relationship("BpmForm", back_populates="approval_history")

    def natural_key(self):
        return (self.approver_id, naive_utc(self.action_time))

    def to_dict(self):
        return {
            "id": self.id,
            "form_id": self.form_id,
            "sequence_no": self.sequence_no,
            "approver_id": self.approver_id,
            "approver_name": self.approver_name,
            "approver_department": self.approver_department,
            "action": self.action,
            "comment": self.comment,
            "action_time": _iso(self.action_time),
        }


class BpmFormSyncLog(db.Model):
    """Audit record of one synchronization attempt.  Never updated."""

    __tablename__ = "bpm_form_sync_logs"

    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(db.String(100), nullable=True, index=True)
    sync_type = db.Column(db.String(20), nullable=False, index=True)
    sync_direction = db.Column(db.String(5), nullable=False, comment="IN | OUT")
    sync_status = db.Column(db.String(10), nullable=False, index=True, comment="SUCCESS | FAILED")
    local_status = db.Column(
        db.String(10), nullable=True,
        comment="Outcome of the local write that follows a remote mutation",
    )
    detail = db.Column(db.Text, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    request_data = db.Column(db.JSON, nullable=True)
    response_data = db.Column(db.JSON, nullable=True)
    payload_hash = db.Column(db.String(64), nullable=True, comment="SHA-256 of the remote payload")
    duration_ms = db.Column(db.Integer, nullable=True)
    operator_id = db.Column(db.String(50), nullable=True)
    sync_time = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "form_id": self.form_id,
            "sync_type": self.sync_type,
            "sync_direction": self.sync_direction,
            "sync_status": self.sync_status,
            "local_status": self.local_status,
            "detail": self.detail,
            "error_message": self.error_message,
            "payload_hash": self.payload_hash,
            "duration_ms": self.duration_ms,
            "operator_id": self.operator_id,
            "sync_time": _iso(self.sync_time),
        }

    def __repr__(self):
        return f"<BpmFormSyncLog {self.form_id} {self.sync_type}:{self.sync_status}>"


def naive_utc(value):
    """Drop tzinfo so DB round-tripped (SQLite) and fresh datetimes compare equal."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

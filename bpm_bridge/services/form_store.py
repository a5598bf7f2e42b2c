"""
Local form store: transactional access to the BPM mirror tables.

Every write runs in its own unit of work.  A SQLAlchemy error rolls the
session back and surfaces as PersistenceFailure; nothing is swallowed here.

Write operations
  upsert_form              header + detail + history + sync log, one commit
  append_approval_history  insert-only, de-duplicated on (approver, time)
  update_status            status row update + sync log, one commit
  mark_cancelled           one-way cancel flag
  append_sync_log          standalone audit row

Read operations
  get_form, get_form_detail, query_forms, get_sync_logs,
  get_approval_history, get_cancellable_leave_forms

Administrative
  delete_form              the only physical delete (cascades to details/history)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from bpm_bridge.core.exceptions import NotFoundError, PersistenceFailure
from bpm_bridge.models import db
from bpm_bridge.models.bpm_form import (
    DETAIL_MODELS,
    BpmForm,
    BpmFormApprovalHistory,
    BpmFormSyncLog,
    BpmLeaveForm,
    FormType,
    SyncDirection,
    SyncStatus,
    SyncType,
    naive_utc,
)
from bpm_bridge.services.form_aggregate import FormAggregate

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
MAX_SYNC_LOGS = 200

# Statuses under which an approved leave can still be cancelled.
CANCELLABLE_LEAVE_STATUSES = ("APPROVED", "COMPLETED")

_OUTBOUND_TYPES = (SyncType.WITHDRAW, SyncType.CANCEL, SyncType.SUBMIT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _direction_for(sync_type: str) -> str:
    return SyncDirection.OUT if sync_type in _OUTBOUND_TYPES else SyncDirection.IN


@contextmanager
def _unit_of_work(action: str, form_id: str | None = None):
    """Commit on success; roll back and raise PersistenceFailure on DB errors."""
    try:
        yield
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error(
            "Local %s failed for form=%s: %s", action, form_id, exc,
            extra={"form_id": form_id},
        )
        raise PersistenceFailure(f"{action} failed: {exc.__class__.__name__}", form_id=form_id) from exc
    except Exception:
        db.session.rollback()
        raise


@contextmanager
def _reading(action: str, form_id: str | None = None):
    """Raise PersistenceFailure instead of a raw SQLAlchemy error on reads."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error(
            "Local %s failed for form=%s: %s", action, form_id, exc,
            extra={"form_id": form_id},
        )
        raise PersistenceFailure(f"{action} failed: {exc.__class__.__name__}", form_id=form_id) from exc


def _get(form_id: str) -> BpmForm | None:
    stmt = select(BpmForm).where(BpmForm.form_id == form_id)
    return db.session.execute(stmt).scalar_one_or_none()


def _get_or_404(form_id: str) -> BpmForm:
    form = _get(form_id)
    if form is None:
        raise NotFoundError("BpmForm", form_id)
    return form


def _new_sync_log(
    form_id: str | None,
    sync_type: str,
    sync_status: str,
    detail: str | None = None,
    *,
    sync_direction: str | None = None,
    local_status: str | None = None,
    error_message: str | None = None,
    request_data=None,
    response_data=None,
    payload_hash: str | None = None,
    duration_ms: int | None = None,
    operator_id: str | None = None,
) -> BpmFormSyncLog:
    """Create and add a BpmFormSyncLog.  Does NOT commit; caller owns the transaction."""
    log = BpmFormSyncLog(
        form_id=form_id,
        sync_type=sync_type,
        sync_direction=sync_direction or _direction_for(sync_type),
        sync_status=sync_status,
        local_status=local_status,
        detail=detail,
        error_message=error_message,
        request_data=request_data,
        response_data=response_data,
        payload_hash=payload_hash,
        duration_ms=duration_ms,
        operator_id=operator_id,
        sync_time=_utcnow(),
    )
    db.session.add(log)
    return log


def _apply_cancel(form: BpmForm, reason: str | None, operator_id: str | None) -> bool:
    if form.is_cancelled:
        return False
    form.is_cancelled = True
    form.cancel_reason = reason
    form.cancel_time = _utcnow()
    form.cancelled_by = operator_id
    return True


# ═════════════════════════════════════════════════════════════════════════════
# Writes
# ═════════════════════════════════════════════════════════════════════════════


def _write_detail(form: BpmForm, aggregate: FormAggregate) -> None:
    """Write the detail row for the aggregate's type; drop any row of another type."""
    target_attr = aggregate.detail_attr
    for _, attr in DETAIL_MODELS.values():
        if attr != target_attr and getattr(form, attr) is not None:
            logger.info("Form %s changed type; removing stale %s", form.form_id, attr)
            setattr(form, attr, None)

    detail = getattr(form, target_attr)
    if detail is None:
        detail = aggregate.detail_model(**aggregate.detail)
        setattr(form, target_attr, detail)
        return
    for key, value in aggregate.detail.items():
        setattr(detail, key, value)


def _merge_history(form: BpmForm, entries: list[dict]) -> int:
    seen = {row.natural_key() for row in form.approval_history}
    inserted = 0
    for entry in entries:
        key = (entry["approver_id"], naive_utc(entry.get("action_time")))
        if key in seen:
            continue
        seen.add(key)
        form.approval_history.append(BpmFormApprovalHistory(**entry))
        inserted += 1
    return inserted


def upsert_form(
    aggregate: FormAggregate,
    *,
    sync_type: str | None = None,
    operator_id: str | None = None,
    request_data=None,
    response_data=None,
    payload_hash: str | None = None,
    duration_ms: int | None = None,
) -> tuple[BpmForm, bool]:
    """Create or overwrite a mirrored form and log the sync, atomically.

    Only the keys present in the aggregate are written, so local-only
    columns (``is_cancelled`` and the other cancel fields) survive a re-pull.

    Args:
        aggregate: Validated remote state.
        sync_type: Defaults to INITIAL_PULL for a new row, STATUS_UPDATE otherwise.

    Returns:
        (form, is_new)

    Raises:
        MappingFailure: The aggregate is inconsistent.
        PersistenceFailure: The transaction was rolled back.
    """
    aggregate.validate()
    with _unit_of_work("upsert", aggregate.form_id):
        form = _get(aggregate.form_id)
        is_new = form is None
        if is_new:
            form = BpmForm(form_id=aggregate.form_id, form_type=aggregate.form_type, is_cancelled=False)
            db.session.add(form)

        for key, value in aggregate.header.items():
            setattr(form, key, value)
        form.form_type = aggregate.form_type
        form.last_sync_time = _utcnow()

        _write_detail(form, aggregate)
        new_history = _merge_history(form, aggregate.history)

        effective_type = sync_type or (SyncType.INITIAL_PULL if is_new else SyncType.STATUS_UPDATE)
        _new_sync_log(
            aggregate.form_id,
            effective_type,
            SyncStatus.SUCCESS,
            f"{'Created' if is_new else 'Updated'} {aggregate.form_type} form, "
            f"status={form.status}, {new_history} new approval entries",
            operator_id=operator_id,
            request_data=request_data,
            response_data=response_data,
            payload_hash=payload_hash,
            duration_ms=duration_ms,
        )

    logger.info(
        "Upserted form %s (%s) new=%s", aggregate.form_id, aggregate.form_type, is_new,
        extra={"form_id": aggregate.form_id, "sync_type": effective_type},
    )
    return form, is_new


def append_approval_history(form_id: str, entries: list[dict]) -> int:
    """Insert approval entries not yet stored; returns the number inserted."""
    with _unit_of_work("append approval history", form_id):
        form = _get_or_404(form_id)
        inserted = _merge_history(form, entries)
    return inserted


def update_status(
    form_id: str,
    new_status: str,
    note: str | None = None,
    *,
    sync_type: str,
    operator_id: str | None = None,
    mark_cancelled: bool = False,
    request_data=None,
    response_data=None,
    duration_ms: int | None = None,
) -> BpmForm:
    """Overwrite one form's status and log it in the same transaction.

    ``mark_cancelled`` also raises the one-way cancel flag with ``note`` as
    the reason.  For outbound sync types the log row records the remote
    acknowledgment that preceded this call, with ``local_status=SUCCESS``.

    Raises:
        NotFoundError: No such form.
        PersistenceFailure: The transaction was rolled back.
    """
    outbound = _direction_for(sync_type) == SyncDirection.OUT
    with _unit_of_work("status update", form_id):
        form = _get_or_404(form_id)
        previous = form.status
        form.status = new_status.upper()
        if note:
            form.approval_comment = note
        form.last_sync_time = _utcnow()
        if outbound:
            form.is_synced_to_bpm = True
            form.sync_error_message = None
        if mark_cancelled:
            _apply_cancel(form, note, operator_id)

        _new_sync_log(
            form_id,
            sync_type,
            SyncStatus.SUCCESS,
            f"Status {previous} -> {form.status}",
            local_status=SyncStatus.SUCCESS if outbound else None,
            operator_id=operator_id,
            request_data=request_data,
            response_data=response_data,
            duration_ms=duration_ms,
        )

    logger.info(
        "Form %s status %s -> %s", form_id, previous, form.status,
        extra={"form_id": form_id, "sync_type": sync_type},
    )
    return form


def mark_cancelled(form_id: str, reason: str | None, operator_id: str | None) -> bool:
    """Raise the cancel flag.  Returns False if it was already set."""
    with _unit_of_work("mark cancelled", form_id):
        form = _get_or_404(form_id)
        changed = _apply_cancel(form, reason, operator_id)
    if changed:
        logger.info("Form %s marked cancelled by %s", form_id, operator_id, extra={"form_id": form_id})
    return changed


def append_sync_log(
    form_id: str | None,
    sync_type: str,
    sync_status: str,
    detail: str | None = None,
    **fields,
) -> BpmFormSyncLog:
    """Insert one audit row in its own transaction.

    Accepts the optional BpmFormSyncLog columns as keywords
    (``local_status``, ``error_message``, ``request_data``, ...).
    """
    with _unit_of_work("sync log", form_id):
        log = _new_sync_log(form_id, sync_type, sync_status, detail, **fields)
    return log


def record_sync_error(form_id: str, message: str) -> None:
    """Note the last outbound failure on the form row, if the row exists."""
    with _unit_of_work("record sync error", form_id):
        form = _get(form_id)
        if form is not None:
            form.sync_error_message = message[:2000]


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


def get_form(form_id: str) -> BpmForm | None:
    with _reading("lookup", form_id):
        return _get(form_id)


def get_approval_history(form_id: str) -> list[BpmFormApprovalHistory]:
    stmt = (
        select(BpmFormApprovalHistory)
        .where(BpmFormApprovalHistory.form_id == form_id)
        .order_by(BpmFormApprovalHistory.action_time, BpmFormApprovalHistory.sequence_no)
    )
    with _reading("history read", form_id):
        return list(db.session.execute(stmt).scalars())


def get_form_detail(form_id: str) -> dict:
    """Return header, typed detail and approval history as one dict.

    Raises:
        NotFoundError: No such form.
    """
    with _reading("detail read", form_id):
        form = _get_or_404(form_id)
        detail = None
        if form.form_type in DETAIL_MODELS:
            row = getattr(form, DETAIL_MODELS[form.form_type][1])
            detail = row.to_dict() if row is not None else None
    return {
        "form": form.to_dict(),
        "detail": detail,
        "approval_history": [h.to_dict() for h in get_approval_history(form_id)],
    }


def query_forms(filters: dict | None = None, page: int = 1, page_size: int = 20) -> dict:
    """Filtered, paginated form listing, newest ``apply_date`` first.

    Filters: form_id, form_type, applicant_id, company_id, status,
    is_cancelled, apply_date_from, apply_date_to.
    """
    filters = filters or {}
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or 20), 1), MAX_PAGE_SIZE)

    stmt = select(BpmForm)
    for column in ("form_id", "form_type", "applicant_id", "company_id"):
        if filters.get(column):
            stmt = stmt.where(getattr(BpmForm, column) == filters[column])
    if filters.get("status"):
        stmt = stmt.where(BpmForm.status == str(filters["status"]).upper())
    if filters.get("is_cancelled") is not None:
        stmt = stmt.where(BpmForm.is_cancelled.is_(bool(filters["is_cancelled"])))
    if filters.get("apply_date_from"):
        stmt = stmt.where(BpmForm.apply_date >= filters["apply_date_from"])
    if filters.get("apply_date_to"):
        stmt = stmt.where(BpmForm.apply_date <= filters["apply_date_to"])

    with _reading("form query"):
        total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = db.session.execute(
            stmt.order_by(BpmForm.apply_date.desc(), BpmForm.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars()
        items = [f.to_dict() for f in rows]
    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": page_size,
    }


def get_sync_logs(form_id: str, limit: int = 50) -> list[BpmFormSyncLog]:
    """Newest first, at most MAX_SYNC_LOGS rows."""
    limit = min(max(int(limit or 50), 1), MAX_SYNC_LOGS)
    stmt = (
        select(BpmFormSyncLog)
        .where(BpmFormSyncLog.form_id == form_id)
        .order_by(BpmFormSyncLog.sync_time.desc(), BpmFormSyncLog.id.desc())
        .limit(limit)
    )
    with _reading("sync log read", form_id):
        return list(db.session.execute(stmt).scalars())


def get_cancellable_leave_forms(applicant_id: str, today: date | None = None) -> list[BpmForm]:
    """Approved leave forms of ``applicant_id`` that start today or later and are not cancelled."""
    today = today or date.today()
    stmt = (
        select(BpmForm)
        .join(BpmLeaveForm, BpmLeaveForm.form_id == BpmForm.form_id)
        .where(
            BpmForm.applicant_id == applicant_id,
            BpmForm.form_type == FormType.LEAVE,
            BpmForm.status.in_(CANCELLABLE_LEAVE_STATUSES),
            BpmForm.is_cancelled.is_(False),
            BpmLeaveForm.start_date >= today,
        )
        .order_by(BpmLeaveForm.start_date)
    )
    with _reading("cancellable leave query"):
        return list(db.session.execute(stmt).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Administrative
# ═════════════════════════════════════════════════════════════════════════════


def delete_form(form_id: str) -> bool:
    """Physically delete a form with its detail and history.  Sync logs are kept."""
    with _unit_of_work("delete", form_id):
        form = _get(form_id)
        if form is None:
            return False
        db.session.delete(form)
    logger.warning("Deleted mirrored form %s", form_id, extra={"form_id": form_id})
    return True

"""
Lifecycle service: client-initiated transitions that change BPM first and
the local mirror second.

    withdraw   abort the remote process, then mark the form WITHDRAWN
    cancel     abort the remote process, then mark the form CANCELLED
    submit     start a remote process; CANCEL_LEAVE also flags the original leave
    list_work_items

Ordering rule: the caller is told "success" only after BPM acknowledged the
mutation.  The local write that follows is best-effort.  If it fails the
caller still gets 200, and a SyncLog row with ``local_status=FAILED`` makes
the drift visible.

Every public function returns an OperationResult; no exception crosses
this module's boundary.

Response codes:
    200  intent achieved
    203  understood but refused (BPM rejection, already closed, already
         cancelled, unknown form)
    500  BPM unreachable / timed out / unparseable, or an unexpected error
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass

from flask import current_app

from bpm_bridge.core.exceptions import (
    AlreadyClosedFailure,
    MappingFailure,
    NotFoundError,
    PersistenceFailure,
    RemoteApplicationFailure,
    RemoteCallFailure,
    TransportFailure,
)
from bpm_bridge.integrations.bpm_gateway import (
    ABORT_ENDPOINT,
    GENERIC_ABORT_MESSAGE,
    AbortOutcome,
    get_bpm_gateway,
)
from bpm_bridge.models.bpm_form import FormType, SyncStatus, SyncType
from bpm_bridge.services import form_store, form_sync_service
from bpm_bridge.services.form_mapper import canonical_form_code, process_code_for, resolve_form_type
from bpm_bridge.utils.errors import R, api_response

logger = logging.getLogger(__name__)

# Abort failure messages containing any of these mean the process is already over.
ALREADY_CLOSED_KEYWORDS = ("terminated", "aborted", "已結束", "已撤回")

TIMEOUT_MESSAGE = "BPM did not respond (timeout or no data), please try again later"

# Keys a CANCEL_LEAVE submission may use for the leave form it cancels.
_ORIGINAL_LEAVE_KEYS = ("originalLeaveFormId", "originalFormId", "leaveFormId")


class Outcome:
    SUCCESS = "SUCCESS"
    REJECTED = "REJECTED"
    ALREADY_CLOSED = "ALREADY_CLOSED"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    NOT_FOUND = "NOT_FOUND"
    INVALID = "INVALID"
    TRANSPORT_FAILURE = "TRANSPORT_FAILURE"
    REMOTE_FAILURE = "REMOTE_FAILURE"
    ERROR = "ERROR"


@dataclass
class OperationResult:
    code: str
    msg: str
    outcome: str
    data: dict | None = None

    @property
    def ok(self) -> bool:
        return self.code == R.OK

    def to_dict(self) -> dict:
        body = {"code": self.code, "msg": self.msg, "outcome": self.outcome}
        if self.data is not None:
            body["data"] = self.data
        return body

    def to_response(self):
        data = dict(self.data or {})
        data.setdefault("outcome", self.outcome)
        return api_response(self.code, self.msg, data=data)


def is_already_closed(message: str | None) -> bool:
    text = (message or "").lower()
    return any(keyword in text for keyword in ALREADY_CLOSED_KEYWORDS)


def classify_abort_outcome(outcome: AbortOutcome) -> RemoteApplicationFailure | None:
    """None for an acknowledged abort, otherwise the failure it represents."""
    if outcome.success:
        return None
    message = outcome.message or GENERIC_ABORT_MESSAGE
    failure_cls = AlreadyClosedFailure if is_already_closed(message) else RemoteApplicationFailure
    return failure_cls(message, endpoint=ABORT_ENDPOINT)


def _operation_boundary(func):
    """Turn any escaped exception into a 500 OperationResult."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception:
            logger.exception("Unexpected error in %s", func.__name__)
            return OperationResult(R.FAILURE, "Unexpected server error", Outcome.ERROR)

    return wrapper


def _log(form_id: str | None, sync_type: str, sync_status: str, detail: str, **fields) -> None:
    """Best-effort audit row; a failure here is logged, never raised."""
    try:
        form_store.append_sync_log(form_id, sync_type, sync_status, detail, **fields)
    except PersistenceFailure:
        logger.exception(
            "Could not write %s/%s sync log for form %s", sync_type, sync_status, form_id,
            extra={"form_id": form_id, "sync_type": sync_type},
        )


def _remote_failure_result(exc: RemoteCallFailure) -> OperationResult:
    if isinstance(exc, TransportFailure):
        return OperationResult(R.FAILURE, TIMEOUT_MESSAGE, Outcome.TRANSPORT_FAILURE)
    return OperationResult(R.FAILURE, f"BPM returned an invalid response: {exc.cause}", Outcome.REMOTE_FAILURE)


# ═════════════════════════════════════════════════════════════════════════════
# Remote abort (shared by withdraw and cancel)
# ═════════════════════════════════════════════════════════════════════════════


def _abort_remote(
    form_id: str, user_id: str, comment: str | None, sync_type: str,
) -> tuple[OperationResult | None, dict, dict | None]:
    """Abort one process in BPM.

    Returns ``(failure, request_data, response_data)``; ``failure`` is None
    when BPM acknowledged the abort.  Every failure is already logged.
    """
    request_data = {"processInstanceSerialNo": form_id, "userId": user_id, "abortComment": comment or ""}
    log_ctx = {"form_id": form_id, "sync_type": sync_type}

    try:
        outcomes = get_bpm_gateway().abort_processes(
            [{"process_serial_no": form_id, "user_id": user_id, "comment": comment}]
        )
    except RemoteCallFailure as exc:
        logger.warning("%s of %s failed remotely: %s", sync_type, form_id, exc.cause, extra=log_ctx)
        _log(form_id, sync_type, SyncStatus.FAILED, exc.__class__.__name__,
             error_message=exc.cause, request_data=request_data, operator_id=user_id)
        return _remote_failure_result(exc), request_data, None

    first = outcomes[0]
    response_data = {"success": first.success, "message": first.message, "shape": first.shape}
    failure = classify_abort_outcome(first)
    if failure is None:
        return None, request_data, response_data

    already_closed = isinstance(failure, AlreadyClosedFailure)
    logger.info("%s of %s refused by BPM (already_closed=%s): %s",
                sync_type, form_id, already_closed, failure.cause, extra=log_ctx)
    _log(form_id, sync_type, SyncStatus.FAILED,
         "Process already closed" if already_closed else "Rejected by BPM",
         error_message=failure.cause, request_data=request_data,
         response_data=response_data, operator_id=user_id)

    if already_closed:
        result = OperationResult(
            R.REJECTED, "This form has already been closed or withdrawn", Outcome.ALREADY_CLOSED,
            data={"formId": form_id, "remoteMessage": failure.cause},
        )
    else:
        result = OperationResult(R.REJECTED, failure.cause, Outcome.REJECTED, data={"formId": form_id})
    return result, request_data, response_data


def _apply_local(
    form_id: str,
    new_status: str,
    note: str | None,
    *,
    sync_type: str,
    operator_id: str,
    request_data: dict,
    response_data: dict | None,
) -> bool:
    """Mirror an acknowledged remote mutation locally.  Returns False on local failure."""
    try:
        form_store.update_status(
            form_id, new_status, note,
            sync_type=sync_type, operator_id=operator_id, mark_cancelled=True,
            request_data=request_data, response_data=response_data,
        )
        return True
    except (NotFoundError, PersistenceFailure) as exc:
        logger.error(
            "BPM accepted %s of %s but the local update failed: %s", sync_type, form_id, exc,
            extra={"form_id": form_id, "sync_type": sync_type},
        )
        _log(form_id, sync_type, SyncStatus.SUCCESS, f"Remote {sync_type.lower()} acknowledged; local update failed",
             local_status=SyncStatus.FAILED, error_message=str(exc),
             request_data=request_data, response_data=response_data, operator_id=operator_id)
        return False


# ═════════════════════════════════════════════════════════════════════════════
# Operations
# ═════════════════════════════════════════════════════════════════════════════


@_operation_boundary
def withdraw(uid: str, form_id: str, comment: str | None = None) -> OperationResult:
    """Withdraw (abort) a running process on behalf of its applicant."""
    failure, request_data, response_data = _abort_remote(form_id, uid, comment, SyncType.WITHDRAW)
    if failure is not None:
        return failure

    local_updated = _apply_local(
        form_id, "WITHDRAWN", comment,
        sync_type=SyncType.WITHDRAW, operator_id=uid,
        request_data=request_data, response_data=response_data,
    )
    return OperationResult(
        R.OK, "Form withdrawn", Outcome.SUCCESS,
        data={"formId": form_id, "localUpdated": local_updated},
    )


@_operation_boundary
def cancel(form_id: str, reason: str | None, operator_id: str) -> OperationResult:
    """Cancel a mirrored form: abort it in BPM, then flag it locally.

    A form already flagged cancelled is refused without calling BPM.
    """
    try:
        form = form_sync_service.ensure_form(form_id)
    except (RemoteCallFailure, MappingFailure, PersistenceFailure) as exc:
        logger.warning("Cannot load form %s for cancel: %s", form_id, exc, extra={"form_id": form_id})
        if isinstance(exc, RemoteCallFailure):
            return _remote_failure_result(exc)
        return OperationResult(R.REJECTED, f"Form {form_id} could not be loaded", Outcome.NOT_FOUND,
                               data={"formId": form_id})
    if form is None:
        return OperationResult(R.REJECTED, f"Form {form_id} not found", Outcome.NOT_FOUND,
                               data={"formId": form_id})
    if form.is_cancelled:
        return OperationResult(R.REJECTED, "This form has already been cancelled", Outcome.ALREADY_CANCELLED,
                               data={"formId": form_id})

    failure, request_data, response_data = _abort_remote(form_id, operator_id, reason, SyncType.CANCEL)
    if failure is not None:
        try:
            form_store.record_sync_error(form_id, failure.msg)
        except PersistenceFailure:
            logger.exception("Could not record sync error on form %s", form_id)
        return failure

    local_updated = _apply_local(
        form_id, "CANCELLED", reason,
        sync_type=SyncType.CANCEL, operator_id=operator_id,
        request_data=request_data, response_data=response_data,
    )
    return OperationResult(
        R.OK, "Form cancelled", Outcome.SUCCESS,
        data={"formId": form_id, "localUpdated": local_updated},
    )


@_operation_boundary
def submit(
    form_code: str,
    form_data: dict,
    uid: str,
    subject: str | None = None,
    has_attachments: bool = False,
    metadata: dict | None = None,
) -> OperationResult:
    """Start a new BPM process for ``form_code``.

    Success is decided by BPM's top-level ``status == "SUCCESS"`` alone;
    the returned identifiers are reported but never required.
    """
    try:
        form_type = resolve_form_type(form_code, current_app.config.get("BPM_FORM_CODES"))
    except MappingFailure as exc:
        return OperationResult(R.REJECTED, str(exc), Outcome.INVALID)

    code = canonical_form_code(form_code)
    meta = dict(metadata or {})
    meta.update({"form_code": code, "subject": subject, "has_attachments": has_attachments})
    request_data = {"processCode": process_code_for(code), "userId": uid, "subject": subject}

    try:
        result = get_bpm_gateway().invoke_process(process_code_for(code), form_data, uid, meta)
    except RemoteCallFailure as exc:
        logger.warning("Submit of %s for %s failed: %s", code, uid, exc.cause)
        _log(None, SyncType.SUBMIT, SyncStatus.FAILED, exc.__class__.__name__,
             error_message=exc.cause, request_data=request_data, operator_id=uid)
        return _remote_failure_result(exc)

    if not result.succeeded:
        message = result.message or "BPM rejected the submission"
        _log(result.process_serial_no, SyncType.SUBMIT, SyncStatus.FAILED, "Rejected by BPM",
             error_message=message, request_data=request_data, response_data=result.raw,
             operator_id=uid, duration_ms=result.duration_ms)
        return OperationResult(R.REJECTED, message, Outcome.REJECTED)

    logger.info(
        "Submitted %s for %s serial=%s oid=%s", code, uid,
        result.process_serial_no, result.process_instance_id,
        extra={"form_id": result.process_serial_no, "sync_type": SyncType.SUBMIT},
    )
    _log(result.process_serial_no, SyncType.SUBMIT, SyncStatus.SUCCESS, f"Submitted {code}",
         request_data=request_data, response_data=result.raw,
         operator_id=uid, duration_ms=result.duration_ms)

    data = {
        "processSerialNo": result.process_serial_no,
        "processInstanceId": result.process_instance_id,
        "status": result.status,
    }
    if form_type == FormType.CANCEL_LEAVE:
        data["originalLeaveCancelled"] = _flag_original_leave(form_data, uid)
    return OperationResult(R.OK, "Form submitted", Outcome.SUCCESS, data=data)


def _flag_original_leave(form_data: dict, uid: str) -> bool:
    """After an accepted CANCEL_LEAVE submission, raise the original leave's cancel flag."""
    original_id = next((form_data.get(k) for k in _ORIGINAL_LEAVE_KEYS if form_data.get(k)), None)
    if not original_id:
        logger.warning("CANCEL_LEAVE submission without an original leave form id")
        return False
    reason = form_data.get("cancelReason") or form_data.get("reason")
    try:
        changed = form_store.mark_cancelled(original_id, reason, uid)
    except (NotFoundError, PersistenceFailure) as exc:
        logger.error("Could not flag leave %s as cancelled: %s", original_id, exc,
                     extra={"form_id": original_id, "sync_type": SyncType.CANCEL})
        _log(original_id, SyncType.CANCEL, SyncStatus.SUCCESS, "Cancel-leave accepted; local flag failed",
             local_status=SyncStatus.FAILED, error_message=str(exc), operator_id=uid)
        return False
    _log(original_id, SyncType.CANCEL, SyncStatus.SUCCESS,
         "Cancel-leave accepted; leave flagged cancelled" if changed else "Leave was already flagged cancelled",
         local_status=SyncStatus.SUCCESS, operator_id=uid)
    return True


@_operation_boundary
def list_work_items(uid: str) -> OperationResult:
    """Pending BPM work items of ``uid``."""
    try:
        items = get_bpm_gateway().query_work_items(uid)
    except RemoteCallFailure as exc:
        logger.warning("Work item query for %s failed: %s", uid, exc.cause)
        return _remote_failure_result(exc)
    return OperationResult(R.OK, "Request succeeded", Outcome.SUCCESS,
                           data={"workItems": items, "count": len(items)})

"""
Remote process payload → FormAggregate.

BPM has shipped several field spellings for the same value over time
(``applicantId`` / ``userId`` / ``employeeNo`` ...).  Each local column lists
the remote keys it accepts, first match wins.  Keys the payload does not
carry are left out of the aggregate so the stored value is kept.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from bpm_bridge.core.exceptions import MappingFailure
from bpm_bridge.models.bpm_form import FormType
from bpm_bridge.services.form_aggregate import FormAggregate

logger = logging.getLogger(__name__)

PROCESS_SUFFIX = "_PROCESS"


# ═════════════════════════════════════════════════════════════════════════════
# Form code ↔ form type
# ═════════════════════════════════════════════════════════════════════════════


def canonical_form_code(code: str) -> str:
    """Strip the ``_PROCESS`` suffix BPM appends to process codes."""
    code = (code or "").strip().upper()
    return code.removesuffix(PROCESS_SUFFIX)


def process_code_for(form_code: str) -> str:
    return f"{canonical_form_code(form_code)}{PROCESS_SUFFIX}"


def resolve_form_type(form_code: str, form_codes: dict | None = None) -> str:
    """Map a form or process code to a FormType.

    Configured codes win; unknown codes fall back to keyword detection.

    Raises:
        MappingFailure: The code names no supported form type.
    """
    code = canonical_form_code(form_code)
    if form_codes and code in form_codes:
        return form_codes[code]

    if "LEAVE" in code:
        return FormType.CANCEL_LEAVE if "CANCEL" in code else FormType.LEAVE
    if "OVERTIME" in code:
        return FormType.OVERTIME
    if "TRIP" in code:
        return FormType.BUSINESS_TRIP
    raise MappingFailure(f"Unsupported form code: {form_code!r}", form_code=form_code)


def form_code_for(form_type: str, form_codes: dict) -> str | None:
    """Reverse lookup: first configured form code for ``form_type``."""
    for code, ftype in form_codes.items():
        if ftype == form_type:
            return code
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Field specifications: local column → (accepted remote keys, parser)
# ═════════════════════════════════════════════════════════════════════════════


def _text(value: Any) -> str:
    return str(value).strip()


def _upper(value: Any) -> str:
    return str(value).strip().upper()


def _int(value: Any) -> int:
    return int(value)


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value).strip().replace("/", "-")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _datetime(value: Any) -> datetime:
    parsed = _parse_datetime(value)
    # Offset-aware timestamps are stored as UTC.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed


def _date(value: Any) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    # Calendar dates keep the sender's local day.
    return _parse_datetime(value).date()


def _time(value: Any) -> time:
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    text = str(value).strip()
    if "T" in text or " " in text:
        return _parse_datetime(text).time()
    return time.fromisoformat(text).replace(tzinfo=None)


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "y", "yes")
    return bool(value)


def _json(value: Any) -> Any:
    return value


HEADER_SPEC = {
    "status": (("formStatus", "status", "processStatus"), _upper),
    "bpm_status": (("formStatus", "status", "processStatus", "bpmStatus"), _text),
    "applicant_id": (("applicantId", "userId", "employeeNo"), _text),
    "applicant_name": (("applicantName", "userName", "employeeName"), _text),
    "applicant_department": (("applicantDepartment", "departmentName"), _text),
    "company_id": (("companyId", "companyCode", "companyid"), _text),
    "form_version": (("formVersion", "version"), _text),
    "current_node": (("currentNode",), _text),
    "progress": (("progress",), _int),
    "apply_date": (("applyDate", "createTime", "createDate", "submitDate"), _datetime),
    "submit_time": (("submitTime",), _datetime),
    "approval_comment": (("approvalComment",), _text),
}

DETAIL_SPEC = {
    FormType.LEAVE: {
        "leave_type_code": (("leaveTypeCode", "leaveTypeId", "leaveType"), _text),
        "leave_type_name": (("leaveTypeName",), _text),
        "start_date": (("startDate",), _date),
        "start_time": (("startTime",), _time),
        "end_date": (("endDate",), _date),
        "end_time": (("endTime",), _time),
        "leave_hours": (("leaveHours", "hours"), _decimal),
        "leave_days": (("leaveDays", "days"), _decimal),
        "reason": (("reason",), _text),
        "agent_id": (("agentId", "agentNo"), _text),
        "agent_name": (("agentName",), _text),
        "leave_event_date": (("leaveEventDate", "eventDate"), _date),
        "attachments": (("attachments",), _json),
        "has_attachments": (("hasAttachments",), _bool),
    },
    FormType.OVERTIME: {
        "overtime_date": (("overtimeDate", "date"), _date),
        "planned_start_time": (("plannedStartTime",), _datetime),
        "planned_end_time": (("plannedEndTime",), _datetime),
        "actual_start_time": (("actualStartTime",), _datetime),
        "actual_end_time": (("actualEndTime",), _datetime),
        "overtime_hours": (("overtimeHours", "hours"), _decimal),
        "process_type": (("processType",), _int),
        "reason": (("reason",), _text),
        "attachments": (("attachments",), _json),
        "has_attachments": (("hasAttachments",), _bool),
    },
    FormType.BUSINESS_TRIP: {
        "trip_date": (("tripDate", "date"), _date),
        "start_date": (("startDate",), _date),
        "end_date": (("endDate",), _date),
        "trip_days": (("tripDays", "days"), _decimal),
        "location": (("location",), _text),
        "main_tasks": (("mainTasks",), _text),
        "reason": (("reason",), _text),
        "estimated_costs": (("estimatedCosts",), _text),
        "attachments": (("attachments",), _json),
        "has_attachments": (("hasAttachments",), _bool),
    },
    FormType.CANCEL_LEAVE: {
        "original_leave_form_id": (("originalLeaveFormId", "originalFormId", "leaveFormId"), _text),
        "cancel_reason": (("cancelReason", "reason"), _text),
        "original_leave_type": (("originalLeaveType", "leaveType"), _text),
        "original_start_date": (("originalStartDate",), _date),
        "original_start_time": (("originalStartTime",), _time),
        "original_end_date": (("originalEndDate",), _date),
        "original_end_time": (("originalEndTime",), _time),
    },
}

HISTORY_SPEC = {
    "sequence_no": (("sequence", "sequenceNo"), _int),
    "approver_id": (("approverId",), _text),
    "approver_name": (("approverName",), _text),
    "approver_department": (("approverDepartment",), _text),
    "action": (("action",), _upper),
    "comment": (("comment",), _text),
    "action_time": (("actionTime", "signTime"), _datetime),
}


def _extract(source: dict, spec: dict, *, context: str) -> dict:
    """Apply a field spec to ``source``; only keys found are returned."""
    out: dict = {}
    for column, (keys, parse) in spec.items():
        for key in keys:
            value = source.get(key)
            if value is None or value == "":
                continue
            try:
                out[column] = parse(value)
            except (TypeError, ValueError) as exc:
                raise MappingFailure(f"{context}: cannot read {key}={value!r} ({exc})") from exc
            break
    return out


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def map_process_info(
    form_id: str,
    form_code: str,
    process_info: dict,
    form_type: str,
) -> FormAggregate:
    """Build a validated FormAggregate from a ``processInfo`` payload.

    Raises:
        MappingFailure: Required fields are missing or unreadable.
    """
    context = f"form {form_id}"
    header = _extract(process_info, HEADER_SPEC, context=context)
    header["form_code"] = canonical_form_code(form_code)
    header["form_type"] = form_type

    form_data = process_info.get("formData")
    if form_data is None:
        form_data = process_info.get("data")
    if form_data is not None and not isinstance(form_data, dict):
        raise MappingFailure(f"{context}: formData is not an object", form_code=form_code)
    if form_data is not None:
        header["form_data"] = form_data

    detail = _extract(form_data or {}, DETAIL_SPEC[form_type], context=context)
    if detail.get("attachments") and "has_attachments" in DETAIL_SPEC[form_type]:
        detail.setdefault("has_attachments", True)

    raw_history = process_info.get("approvalHistory") or []
    if not isinstance(raw_history, list):
        raise MappingFailure(f"{context}: approvalHistory is not a list", form_code=form_code)
    history = [
        _extract(entry, HISTORY_SPEC, context=context)
        for entry in raw_history
        if isinstance(entry, dict)
    ]

    aggregate = FormAggregate(
        form_id=form_id, form_type=form_type, header=header, detail=detail, history=history,
    )
    logger.debug(
        "Mapped %s: header=%d detail=%d history=%d",
        form_id, len(header), len(detail), len(history),
    )
    return aggregate.validate()

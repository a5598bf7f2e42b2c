"""Form sync & lifecycle blueprint.

REST API the mobile client uses to mirror BPM forms and drive their lifecycle.

Endpoint groups:
  Sync            POST /api/v1/forms/sync
                  POST /api/v1/forms/sync/batch
  Mirror reads    GET  /api/v1/forms
                  GET  /api/v1/forms/<form_id>
                  GET  /api/v1/forms/<form_id>/sync-logs
                  GET  /api/v1/forms/cancellable-leaves/<applicant_id>
  Lifecycle       POST /api/v1/forms/submit
                  POST /api/v1/forms/withdraw
                  POST /api/v1/forms/<form_id>/cancel
  Admin           DELETE /api/v1/forms/<form_id>

Sync and lifecycle routes answer with the {code, msg, data} envelope where
code is 200 / 203 / 500.  Missing or malformed input is rejected with 400
before any BPM call.  Token validation happens upstream.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from flask import Blueprint, jsonify, request

from bpm_bridge.core.exceptions import (
    MappingFailure,
    NotFoundError,
    PersistenceFailure,
    RemoteCallFailure,
    TransportFailure,
    ValidationError,
)
from bpm_bridge.services import form_store, form_sync_service, lifecycle_service
from bpm_bridge.services.form_sync_service import SyncOutcome
from bpm_bridge.utils.errors import E, R, api_error, api_response

logger = logging.getLogger(__name__)

forms_bp = Blueprint("forms", __name__, url_prefix="/api/v1/forms")

MAX_BATCH_ITEMS = 50


# ── Input helpers ─────────────────────────────────────────────────────────────


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(data: dict, *fields: str) -> None:
    missing = [f for f in fields if not str(data.get(f) or "").strip()]
    if missing:
        raise ValidationError(
            f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required",
            details={"missing": missing},
        )


def _parse_day(name: str) -> date | None:
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("/", "-")).date()
    except ValueError:
        raise ValidationError(f"{name} must be an ISO date", details={name: raw}) from None


def _parse_bool(name: str) -> bool | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes"):
        return True
    if lowered in ("0", "false", "no"):
        return False
    raise ValidationError(f"{name} must be true or false", details={name: raw})


# ── Error handlers ────────────────────────────────────────────────────────────


@forms_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_REQUIRED, str(error), details=error.details)


@forms_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@forms_bp.errorhandler(MappingFailure)
def _handle_mapping(error: MappingFailure):
    return api_response(R.REJECTED, str(error), data={"missing": error.missing} if error.missing else None)


@forms_bp.errorhandler(RemoteCallFailure)
def _handle_remote(error: RemoteCallFailure):
    if isinstance(error, TransportFailure):
        return api_response(R.FAILURE, lifecycle_service.TIMEOUT_MESSAGE)
    return api_response(R.FAILURE, f"BPM returned an invalid response: {error.cause}")


@forms_bp.errorhandler(PersistenceFailure)
def _handle_persistence(error: PersistenceFailure):
    return api_response(R.FAILURE, "Local database error, please try again later")


# ═════════════════════════════════════════════════════════════════════════
# Sync
# ═════════════════════════════════════════════════════════════════════════


@forms_bp.route("/sync", methods=["POST"])
def sync_form():
    """Pull one form from BPM into the local mirror.

    Body: { processSerialNo, formCode, operatorId? }
    """
    data = _json_body()
    _require(data, "processSerialNo", "formCode")
    result = form_sync_service.pull_form(
        str(data["processSerialNo"]).strip(), str(data["formCode"]).strip(), operator_id=data.get("operatorId"),
    )
    if result.outcome == SyncOutcome.NOT_FOUND:
        return api_response(R.REJECTED, result.message, data=result.to_dict())
    return api_response(R.OK, result.message, data=result.to_dict())


@forms_bp.route("/sync/batch", methods=["POST"])
def sync_forms_batch():
    """Pull several forms; each item succeeds or fails on its own.

    Body: { items: [{ processSerialNo, formCode, operatorId? }, ...] }
    """
    data = _json_body()
    items = data.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    if len(items) > MAX_BATCH_ITEMS:
        raise ValidationError(f"At most {MAX_BATCH_ITEMS} items per batch")
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        _require(item, "processSerialNo", "formCode")

    results = form_sync_service.batch_pull(items)
    synced = sum(1 for r in results if r["outcome"] == SyncOutcome.SYNCED)
    return api_response(
        R.OK, f"{synced}/{len(results)} forms synced",
        data={"results": results, "synced": synced, "total": len(results)},
    )


# ═════════════════════════════════════════════════════════════════════════
# Mirror reads
# ═════════════════════════════════════════════════════════════════════════


@forms_bp.route("", methods=["GET"])
def list_forms():
    """Query params: form_id, form_type, applicant_id, company_id, status,
    is_cancelled, apply_date_from, apply_date_to, page, page_size."""
    filters = {
        key: request.args.get(key)
        for key in ("form_id", "form_type", "applicant_id", "company_id", "status")
    }
    filters["is_cancelled"] = _parse_bool("is_cancelled")
    filters["apply_date_from"] = _parse_day("apply_date_from")
    date_to = _parse_day("apply_date_to")
    # Inclusive upper bound on a day
    filters["apply_date_to"] = datetime.combine(date_to, datetime.max.time()) if date_to else None

    page = request.args.get("page", 1, type=int)
    page_size = request.args.get("page_size", 20, type=int)
    return jsonify(form_store.query_forms(filters, page, page_size)), 200


@forms_bp.route("/<form_id>", methods=["GET"])
def get_form(form_id):
    return jsonify(form_store.get_form_detail(form_id)), 200


@forms_bp.route("/<form_id>/sync-logs", methods=["GET"])
def get_sync_logs(form_id):
    """Newest first.  Query param: limit (default 50, max 200)."""
    limit = request.args.get("limit", 50, type=int)
    logs = form_store.get_sync_logs(form_id, limit)
    return jsonify({"items": [log.to_dict() for log in logs], "total": len(logs)}), 200


@forms_bp.route("/cancellable-leaves/<applicant_id>", methods=["GET"])
def cancellable_leaves(applicant_id):
    """Approved, not yet cancelled leave forms starting today or later.

    Query param: today (ISO date, defaults to the server date).
    """
    today = _parse_day("today") or date.today()
    forms = form_store.get_cancellable_leave_forms(applicant_id, today)
    items = []
    for form in forms:
        entry = form.to_dict()
        entry["leave"] = form.leave_form.to_dict() if form.leave_form is not None else None
        items.append(entry)
    return api_response(R.OK, "Request succeeded", data={"items": items, "total": len(items)})


# ═════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════


@forms_bp.route("/submit", methods=["POST"])
def submit_form():
    """Start a BPM process.

    Body: { formCode, uid, formData: {...}, subject?, hasAttachments? }
    """
    data = _json_body()
    _require(data, "formCode", "uid")
    form_data = data.get("formData")
    if not isinstance(form_data, dict):
        raise ValidationError("formData must be an object")
    result = lifecycle_service.submit(
        str(data["formCode"]).strip(),
        form_data,
        str(data["uid"]).strip(),
        subject=data.get("subject"),
        has_attachments=bool(data.get("hasAttachments", False)),
    )
    return result.to_response()


@forms_bp.route("/withdraw", methods=["POST"])
def withdraw_form():
    """Withdraw a running form.

    Body: { uid, formId, comment? }
    """
    data = _json_body()
    _require(data, "uid", "formId")
    result = lifecycle_service.withdraw(str(data["uid"]).strip(), str(data["formId"]).strip(), data.get("comment"))
    return result.to_response()


@forms_bp.route("/<form_id>/cancel", methods=["POST"])
def cancel_form(form_id):
    """Cancel a mirrored form.

    Body: { operatorId, reason? }
    """
    data = _json_body()
    _require(data, "operatorId")
    result = lifecycle_service.cancel(form_id, data.get("reason"), str(data["operatorId"]).strip())
    return result.to_response()


# ═════════════════════════════════════════════════════════════════════════
# Admin
# ═════════════════════════════════════════════════════════════════════════


@forms_bp.route("/<form_id>", methods=["DELETE"])
def delete_form(form_id):
    """Remove a form with its detail and approval history.  Sync logs stay."""
    if not form_store.delete_form(form_id):
        raise NotFoundError("BpmForm", form_id)
    return "", 204

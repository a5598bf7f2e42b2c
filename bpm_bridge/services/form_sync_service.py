"""
Form sync service: pull one process from BPM and upsert the local mirror.

Flow per pull:
    form code → form type → BPM sync-process-info → map → upsert (one commit)

Every attempt leaves a BpmFormSyncLog row: the upsert writes the SUCCESS row
in its own transaction, failures are logged here before being re-raised.
A process BPM does not know is a NOT_FOUND result, not an exception.

There is no retry.  A pull can be repeated safely because the upsert is
idempotent on form_id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app

from bpm_bridge.core.exceptions import (
    MappingFailure,
    PersistenceFailure,
    RemoteCallFailure,
)
from bpm_bridge.integrations.bpm_gateway import compute_payload_hash, get_bpm_gateway
from bpm_bridge.models.bpm_form import BpmForm, SyncStatus, SyncType
from bpm_bridge.services import form_store
from bpm_bridge.services.form_mapper import (
    form_code_for,
    map_process_info,
    process_code_for,
    resolve_form_type,
)

logger = logging.getLogger(__name__)


class SyncOutcome:
    SYNCED = "SYNCED"
    NOT_FOUND = "NOT_FOUND"
    FAILED = "FAILED"  # batch only: the per-item exception was captured


@dataclass
class SyncResult:
    outcome: str
    form_id: str
    form: BpmForm | None = None
    is_new: bool = False
    message: str = ""

    @property
    def synced(self) -> bool:
        return self.outcome == SyncOutcome.SYNCED

    def to_dict(self) -> dict:
        return {
            "formId": self.form_id,
            "outcome": self.outcome,
            "isNew": self.is_new,
            "message": self.message,
            "form": self.form.to_dict() if self.form is not None else None,
        }


def _form_codes() -> dict:
    return current_app.config.get("BPM_FORM_CODES", {})


def _log_failure(form_id: str, sync_type: str, message: str, **fields) -> None:
    """Best-effort FAILED sync log; a DB outage must not mask the original error."""
    try:
        form_store.append_sync_log(
            form_id, sync_type, SyncStatus.FAILED, message,
            error_message=message, **fields,
        )
    except PersistenceFailure:
        logger.exception("Could not write FAILED sync log for form %s", form_id,
                         extra={"form_id": form_id, "sync_type": sync_type})


# ═════════════════════════════════════════════════════════════════════════════
# Single pull
# ═════════════════════════════════════════════════════════════════════════════


def pull_form(process_serial_no: str, form_code: str, *, operator_id: str | None = None) -> SyncResult:
    """Fetch one process from BPM and upsert it locally.

    Returns:
        SyncResult with outcome SYNCED or NOT_FOUND.

    Raises:
        MappingFailure: Unsupported form code, or the payload misses fields
            its form type requires.
        RemoteCallFailure: BPM unreachable or answered with an error.
        PersistenceFailure: The upsert was rolled back.
    """
    form_id = process_serial_no
    try:
        existing = form_store.get_form(form_id)
    except PersistenceFailure as exc:
        _log_failure(form_id, SyncType.INITIAL_PULL, str(exc), operator_id=operator_id)
        raise
    sync_type = SyncType.INITIAL_PULL if existing is None else SyncType.STATUS_UPDATE
    log_ctx = {"form_id": form_id, "sync_type": sync_type}

    try:
        form_type = resolve_form_type(form_code, _form_codes())
    except MappingFailure as exc:
        _log_failure(form_id, sync_type, str(exc), operator_id=operator_id)
        raise

    process_code = process_code_for(form_code)
    request_data = {"processSerialNo": process_serial_no, "processCode": process_code}
    logger.info("Pulling form %s (%s)", form_id, process_code, extra=log_ctx)

    try:
        response = get_bpm_gateway().query_process_info(process_serial_no, process_code)
    except RemoteCallFailure as exc:
        logger.warning("Pull of %s failed: %s", form_id, exc.cause, extra=log_ctx)
        _log_failure(form_id, sync_type, exc.cause, operator_id=operator_id, request_data=request_data)
        raise

    if not response.found:
        message = response.msg or "Process not found in BPM"
        logger.info("Form %s not found in BPM: %s", form_id, message, extra=log_ctx)
        _log_failure(
            form_id, sync_type, f"Not found: {message}",
            operator_id=operator_id, request_data=request_data,
            response_data=response.raw, duration_ms=response.duration_ms,
        )
        return SyncResult(SyncOutcome.NOT_FOUND, form_id, form=existing, message=message)

    payload_hash = compute_payload_hash(response.process_info)
    try:
        aggregate = map_process_info(form_id, form_code, response.process_info, form_type)
    except MappingFailure as exc:
        exc.payload_hash = payload_hash
        logger.warning("Form %s payload rejected: %s", form_id, exc, extra=log_ctx)
        _log_failure(
            form_id, sync_type, str(exc),
            operator_id=operator_id, request_data=request_data,
            response_data=response.raw, payload_hash=payload_hash,
        )
        raise

    try:
        form, is_new = form_store.upsert_form(
            aggregate,
            operator_id=operator_id,
            request_data=request_data,
            response_data=response.raw,
            payload_hash=payload_hash,
            duration_ms=response.duration_ms,
        )
    except PersistenceFailure as exc:
        _log_failure(
            form_id, sync_type, str(exc),
            operator_id=operator_id, request_data=request_data, payload_hash=payload_hash,
        )
        raise

    return SyncResult(
        SyncOutcome.SYNCED, form_id, form=form, is_new=is_new,
        message="Form created" if is_new else "Form updated",
    )


# ═════════════════════════════════════════════════════════════════════════════
# Batch & ensure
# ═════════════════════════════════════════════════════════════════════════════


def batch_pull(items: list[dict]) -> list[dict]:
    """Pull several forms independently; one result dict per item, in order.

    Each item carries ``processSerialNo``, ``formCode`` and optionally
    ``operatorId``.  A failing item does not stop the others.
    """
    results = []
    for item in items:
        serial = item.get("processSerialNo") or item.get("formId")
        try:
            result = pull_form(serial, item.get("formCode") or "", operator_id=item.get("operatorId"))
            results.append(result.to_dict())
        except (RemoteCallFailure, MappingFailure, PersistenceFailure) as exc:
            results.append({
                "formId": serial,
                "outcome": SyncOutcome.FAILED,
                "isNew": False,
                "message": str(exc),
                "error": exc.__class__.__name__,
                "form": None,
            })
    synced = sum(1 for r in results if r["outcome"] == SyncOutcome.SYNCED)
    logger.info("Batch pull done: %d/%d synced", synced, len(results))
    return results


def ensure_form(form_id: str, form_code: str | None = None) -> BpmForm | None:
    """Return the local mirror of ``form_id``, pulling it from BPM if absent.

    Without ``form_code`` the form type is guessed from keywords in the id.
    Returns None when BPM does not know the process.
    """
    form = form_store.get_form(form_id)
    if form is not None:
        return form

    if not form_code:
        form_type = resolve_form_type(form_id)
        form_code = form_code_for(form_type, _form_codes()) or form_type
    result = pull_form(form_id, form_code)
    return result.form if result.synced else None

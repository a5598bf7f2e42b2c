"""
BPM middleware integration gateway.

All outbound HTTP calls to the BPM middleware go through this class.
Direct `requests` calls in services or blueprints are FORBIDDEN.

  - API key / secret headers on every call (X-API-Key, X-API-Secret)
  - One synchronous request per call, bounded by BpmSettings.timeout
  - No retry: every operation on top of the gateway is safe to repeat
  - Failures are raised as RemoteCallFailure subclasses, never as raw
    `requests` exceptions

Endpoints (relative to BpmSettings.base_url):
    POST bpm/invoke-process               submit a new process instance
    GET  bpm/workitems/{uid}              pending work items of a user
    POST bpm/batch/abort-processes        withdraw / abort process instances
    POST api/bpm/sync-process-info        current state of one process

Testability: pass a mock `session` to BpmGateway() in tests, or replace the
instance stored in ``app.extensions["bpm_gateway"]``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import requests
from flask import current_app

from bpm_bridge.core.exceptions import RemoteApplicationFailure, TransportFailure

logger = logging.getLogger(__name__)

EXTENSION_KEY = "bpm_gateway"

# Body codes of sync-process-info that are a result; any other code is a BPM error.
PROCESS_INFO_CODES = (None, "200", "404")

# Shown when an abort response matches neither known shape.
GENERIC_ABORT_MESSAGE = "Withdraw failed, please try again later"

ABORT_ENDPOINT = "bpm/batch/abort-processes"


@dataclass(frozen=True)
class BpmSettings:
    """Immutable BPM connection settings, built once per app."""

    base_url: str
    api_key: str = ""
    api_secret: str = ""
    environment: str = "TEST"
    timeout: int = 30
    source_system: str = "APP"

    @classmethod
    def from_config(cls, config) -> BpmSettings:
        return cls(
            base_url=config["BPM_API_BASE_URL"].rstrip("/"),
            api_key=config.get("BPM_API_KEY", ""),
            api_secret=config.get("BPM_API_SECRET", ""),
            environment=config.get("BPM_ENVIRONMENT", "TEST"),
            timeout=int(config.get("BPM_TIMEOUT", 30)),
            source_system=config.get("BPM_SOURCE_SYSTEM", "APP"),
        )


# ── Result types ────────────────────────────────────────────────────────────


@dataclass
class ProcessInvocation:
    """Answer of ``invoke_process``.  Identifiers are informational only."""

    status: str | None
    process_instance_id: str | None = None
    process_serial_no: str | None = None
    message: str | None = None
    raw: dict = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCESS"


@dataclass
class AbortOutcome:
    """One entry of an abort response.

    ``shape`` records which response layout produced it:
    ``results`` (per-item array), ``status`` (single top-level status) or
    ``unrecognized``.
    """

    success: bool
    message: str
    shape: str


@dataclass
class ProcessInfoResponse:
    """Answer of ``query_process_info``."""

    code: str | None
    msg: str | None
    process_info: dict | None
    raw: dict = field(default_factory=dict)
    status_code: int | None = None
    duration_ms: int = 0

    @property
    def found(self) -> bool:
        if self.status_code == 404 or str(self.code) == "404":
            return False
        return bool(self.process_info)


def compute_payload_hash(payload: dict | list | None) -> str | None:
    """Return SHA-256 hex digest of the JSON-serialised payload."""
    if payload is None:
        return None
    raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def parse_abort_response(body: Any) -> list[AbortOutcome]:
    """Parse both abort response layouts.

    Layout A ``{"results": [{"success": bool, "message": str}, ...]}`` is
    tried first, then layout B ``{"status": "SUCCESS" | ..., "message": str}``.
    Anything else yields a single unsuccessful ``unrecognized`` outcome.
    """
    if isinstance(body, dict):
        results = body.get("results")
        if isinstance(results, list) and results:
            outcomes = []
            for item in results:
                if not isinstance(item, dict):
                    outcomes.append(AbortOutcome(False, GENERIC_ABORT_MESSAGE, "unrecognized"))
                    continue
                outcomes.append(AbortOutcome(
                    success=item.get("success") is True,
                    message=str(item.get("message") or ""),
                    shape="results",
                ))
            return outcomes

        status = body.get("status")
        if isinstance(status, str):
            return [AbortOutcome(
                success=status.upper() == "SUCCESS",
                message=str(body.get("message") or ""),
                shape="status",
            )]

    return [AbortOutcome(False, GENERIC_ABORT_MESSAGE, "unrecognized")]


# ═════════════════════════════════════════════════════════════════════════════
# Gateway
# ═════════════════════════════════════════════════════════════════════════════


class BpmGateway:
    """BPM middleware REST gateway.

    Usage:
        from bpm_bridge.integrations.bpm_gateway import get_bpm_gateway
        info = get_bpm_gateway().query_process_info("PS-100", "PI_LEAVE_001_PROCESS")
    """

    def __init__(self, settings: BpmSettings, session: requests.Session | None = None) -> None:
        self.settings = settings
        # Inject custom session for testing; create real one lazily otherwise.
        self._session: requests.Session | None = session

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── Core request dispatcher ───────────────────────────────────────────────

    def _headers(self) -> dict:
        return {
            "X-API-Key": self.settings.api_key,
            "X-API-Secret": self.settings.api_secret,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json_body: dict | None = None,
        tolerate: tuple[int, ...] = (),
    ) -> tuple[int, dict, int]:
        """Execute one request and return ``(status_code, body, duration_ms)``.

        Raises:
            TransportFailure: connection error, DNS/TLS failure or timeout.
            RemoteApplicationFailure: non-2xx status (outside ``tolerate``)
                or a body that is not a JSON object.
        """
        url = f"{self.settings.base_url}/{endpoint.lstrip('/')}"
        kwargs: dict[str, Any] = {"headers": self._headers(), "timeout": self.settings.timeout}
        if json_body is not None:
            kwargs["json"] = json_body

        t0 = time.perf_counter()
        try:
            resp = self.session.request(method, url, **kwargs)
        except requests.Timeout:
            logger.warning("BPM request timed out url=%s timeout=%ss", url, self.settings.timeout)
            raise TransportFailure(
                f"BPM request timed out after {self.settings.timeout}s", endpoint=endpoint,
            ) from None
        except requests.RequestException as exc:
            logger.warning("BPM network error url=%s error=%s", url, str(exc)[:500])
            raise TransportFailure(f"BPM unreachable: {str(exc)[:500]}", endpoint=endpoint) from exc
        duration_ms = int((time.perf_counter() - t0) * 1000)

        if not resp.ok and resp.status_code not in tolerate:
            logger.warning(
                "BPM request failed status=%d url=%s duration_ms=%d",
                resp.status_code, url, duration_ms,
            )
            raise RemoteApplicationFailure(
                f"HTTP {resp.status_code}: {resp.text[:500]}",
                endpoint=endpoint,
                status_code=resp.status_code,
            )

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = None
        if not isinstance(body, dict) and resp.status_code in tolerate:
            body = {}
        if not isinstance(body, dict):
            logger.warning("BPM returned a non-object body url=%s status=%d", url, resp.status_code)
            raise RemoteApplicationFailure(
                "BPM response is not a JSON object",
                endpoint=endpoint,
                status_code=resp.status_code,
            )

        logger.debug("BPM %s %s -> %d in %dms", method, endpoint, resp.status_code, duration_ms)
        return resp.status_code, body, duration_ms

    # ── BPM operations ───────────────────────────────────────────────────────

    def invoke_process(
        self,
        process_code: str,
        form_data: dict,
        applicant: str,
        metadata: dict | None = None,
    ) -> ProcessInvocation:
        """Start a process instance.

        ``metadata`` may carry ``form_code`` (the key used in formDataMap),
        ``subject`` and ``has_attachments``.  A non-SUCCESS status is
        returned, not raised; callers check ``.succeeded``.
        """
        metadata = metadata or {}
        form_code = metadata.get("form_code") or process_code.removesuffix("_PROCESS")
        payload = {
            "processCode": process_code,
            "formDataMap": {form_code: form_data},
            "userId": applicant,
            "subject": metadata.get("subject") or "",
            "sourceSystem": self.settings.source_system,
            "environment": self.settings.environment,
            "hasAttachments": bool(metadata.get("has_attachments", False)),
        }
        _, body, duration_ms = self._request("POST", "bpm/invoke-process", json_body=payload)

        result = ProcessInvocation(
            status=body.get("status"),
            process_instance_id=body.get("bpmProcessOid") or body.get("processInstanceId"),
            process_serial_no=body.get("processSerialNo"),
            message=body.get("message"),
            raw=body,
            duration_ms=duration_ms,
        )
        logger.info(
            "BPM invoke-process code=%s status=%s serial=%s oid=%s",
            process_code, result.status, result.process_serial_no, result.process_instance_id,
        )
        return result

    def query_work_items(self, uid: str) -> list[dict]:
        """Return the pending work items of ``uid`` (possibly empty)."""
        endpoint = f"bpm/workitems/{quote(uid, safe='')}"
        _, body, _ = self._request("GET", endpoint)
        items = body.get("workItems") or []
        if not isinstance(items, list):
            raise RemoteApplicationFailure("workItems is not a list", endpoint=endpoint)
        return items

    def abort_processes(self, items: list[dict]) -> list[AbortOutcome]:
        """Abort one or more process instances.

        Each item carries ``process_serial_no``, ``user_id`` and ``comment``;
        the configured environment is added to every item.
        """
        payload = {
            "items": [
                {
                    "processInstanceSerialNo": item["process_serial_no"],
                    "userId": item["user_id"],
                    "abortComment": item.get("comment") or "",
                    "environment": self.settings.environment,
                }
                for item in items
            ]
        }
        _, body, duration_ms = self._request("POST", ABORT_ENDPOINT, json_body=payload)
        outcomes = parse_abort_response(body)
        logger.info(
            "BPM abort-processes items=%d shape=%s success=%s duration_ms=%d",
            len(items), outcomes[0].shape, [o.success for o in outcomes], duration_ms,
        )
        return outcomes

    def query_process_info(
        self,
        process_serial_no: str,
        process_code: str,
        environment: str | None = None,
    ) -> ProcessInfoResponse:
        """Fetch the current state of one process.

        HTTP 404 and body code 404 are a not-found result.  Any body code other
        than 200 or 404 raises RemoteApplicationFailure.
        """
        payload = {
            "processSerialNo": process_serial_no,
            "processCode": process_code,
            "environment": environment or self.settings.environment,
        }
        status_code, body, duration_ms = self._request(
            "POST", "api/bpm/sync-process-info", json_body=payload, tolerate=(404,),
        )
        code = None if body.get("code") is None else str(body.get("code"))
        msg = body.get("msg") or body.get("message")
        if status_code != 404 and code not in PROCESS_INFO_CODES:
            logger.warning("BPM sync-process-info serial=%s code=%s msg=%s", process_serial_no, code, msg)
            raise RemoteApplicationFailure(
                f"BPM error code {code}: {msg or 'no message'}",
                endpoint="api/bpm/sync-process-info",
                status_code=status_code,
            )
        info = body.get("processInfo")
        return ProcessInfoResponse(
            code=code,
            msg=msg,
            process_info=info if isinstance(info, dict) else None,
            raw=body,
            status_code=status_code,
            duration_ms=duration_ms,
        )


# ── App wiring ──────────────────────────────────────────────────────────────


def init_bpm_gateway(app, session: requests.Session | None = None) -> BpmGateway:
    """Create the app's gateway from its config and register it as an extension."""
    gateway = BpmGateway(BpmSettings.from_config(app.config), session=session)
    app.extensions[EXTENSION_KEY] = gateway
    logger.info("BPM gateway configured base_url=%s env=%s", gateway.settings.base_url,
                gateway.settings.environment)
    return gateway


def get_bpm_gateway() -> BpmGateway:
    """Return the gateway of the current app."""
    return current_app.extensions[EXTENSION_KEY]

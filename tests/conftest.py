"""
Shared pytest fixtures for the BPM form bridge test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - gateway: BpmGateway backed by a MagicMock requests session
    - bpm_response: factory for fake `requests.Response` objects
    - make_form: factory that stores a mirrored form through the store
"""

import json
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest

from bpm_bridge import create_app
from bpm_bridge.integrations.bpm_gateway import EXTENSION_KEY, BpmGateway, BpmSettings
from bpm_bridge.models import db as _db
from bpm_bridge.models.bpm_form import FormType
from bpm_bridge.services import form_store
from bpm_bridge.services.form_aggregate import FormAggregate


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── BPM stubs ────────────────────────────────────────────────────────────


@pytest.fixture()
def bpm_response():
    """Return a factory building fake `requests.Response` objects."""

    def _make(status_code=200, body=None, *, text=None):
        resp = MagicMock()
        resp.status_code = status_code
        resp.ok = 200 <= status_code < 400
        if text is not None:
            resp.content = text.encode("utf-8")
            resp.text = text
            resp.json.side_effect = ValueError("not json")
        else:
            raw = json.dumps(body if body is not None else {})
            resp.content = raw.encode("utf-8")
            resp.text = raw
            resp.json.return_value = body if body is not None else {}
        return resp

    return _make


@pytest.fixture()
def gateway(app, monkeypatch):
    """Install a BpmGateway whose HTTP session is a MagicMock.

    Tests script BPM answers through ``gateway.session.request``.
    """
    settings = BpmSettings.from_config(app.config)
    gw = BpmGateway(settings, session=MagicMock())
    monkeypatch.setitem(app.extensions, EXTENSION_KEY, gw)
    return gw


# ── Data factories ───────────────────────────────────────────────────────


@pytest.fixture()
def make_form():
    """Return a factory that upserts a minimal mirrored form.

    Defaults produce an APPROVED leave starting on 2030-01-10.
    """

    def _make(form_id="PS-100", form_type=FormType.LEAVE, *, header=None, detail=None, history=None):
        base_header = {
            "form_code": {
                FormType.LEAVE: "PI_LEAVE_001",
                FormType.OVERTIME: "PI_OVERTIME_001",
                FormType.BUSINESS_TRIP: "PI_BUSINESS_TRIP_001",
                FormType.CANCEL_LEAVE: "PI_CANCEL_LEAVE_001",
            }[form_type],
            "applicant_id": "E001",
            "applicant_name": "Alice",
            "status": "APPROVED",
            "bpm_status": "approved",
            "apply_date": datetime(2030, 1, 2, 9, 0, tzinfo=timezone.utc),
        }
        base_header.update(header or {})
        base_detail = {
            FormType.LEAVE: {"start_date": date(2030, 1, 10), "end_date": date(2030, 1, 11)},
            FormType.OVERTIME: {"overtime_date": date(2030, 1, 5)},
            FormType.BUSINESS_TRIP: {
                "trip_date": date(2030, 2, 1),
                "start_date": date(2030, 2, 1),
                "end_date": date(2030, 2, 3),
            },
            FormType.CANCEL_LEAVE: {"original_leave_form_id": "PS-001"},
        }[form_type]
        base_detail = dict(base_detail, **(detail or {}))
        aggregate = FormAggregate(
            form_id=form_id,
            form_type=form_type,
            header=base_header,
            detail=base_detail,
            history=list(history or []),
        )
        form, _ = form_store.upsert_form(aggregate)
        return form

    return _make

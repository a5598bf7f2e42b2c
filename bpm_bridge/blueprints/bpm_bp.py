"""Read-only BPM proxy.

Endpoints:
    GET /api/v1/bpm/workitems/<uid>   pending BPM work items of a user
"""

from flask import Blueprint

from bpm_bridge.services import lifecycle_service

bpm_bp = Blueprint("bpm", __name__, url_prefix="/api/v1/bpm")


@bpm_bp.route("/workitems/<uid>", methods=["GET"])
def work_items(uid):
    return lifecycle_service.list_work_items(uid).to_response()

"""
Request blueprint — item requests and service-vehicle requests.

Both collections share the same endpoints:
  Drafts        POST   /api/v1/<collection>
                PUT    /api/v1/<collection>/<id>
                DELETE /api/v1/<collection>/<id>
  Reading       GET    /api/v1/<collection>             ?status=&pending_for=me&mine=true
                                                    (&pending_verification=me for vehicles)
                GET    /api/v1/<collection>/<id>
                GET    /api/v1/<collection>/stats
                GET    /api/v1/<collection>/track/<request_number>
  Workflow      POST   /api/v1/<collection>/<id>/submit|approve|decline|return|cancel
  Vehicle pool  PUT    /api/v1/service-vehicle-requests/<id>/assignment
                POST   /api/v1/service-vehicle-requests/<id>/assign-verifier
  Verification  POST   /api/v1/service-vehicle-requests/<id>/verify

<collection> is ``requests`` (item requests) or ``service-vehicle-requests``.
Status changes are delegated to TransitionEngine, which owns its commit.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

import app.services.request_service as rs
from app.auth import current_user, require_role, require_user
from app.models import db
from app.models.directory import DEPARTMENT_APPROVER_ROLE
from app.models.request import VERIFICATION_PENDING
from app.services.transition_engine import TransitionEngine
from app.blueprints import json_body, paginate_query, register_error_handlers
from app.utils.errors import E, api_error
from app.utils.helpers import db_commit_or_error, parse_date

logger = logging.getLogger(__name__)

request_bp = Blueprint("requests", __name__, url_prefix="/api/v1")
register_error_handlers(request_bp)

COLLECTIONS = {
    "requests": "item_request",
    "service-vehicle-requests": "vehicle_request",
}
_COLLECTION = '<any(requests, "service-vehicle-requests"):collection>'


def _can_view(req, user) -> bool:
    if user.is_admin or req.requestor_id == user.id or user.role != "requestor":
        return True
    # An assigned verifier may read the request while verification is open.
    return getattr(req, "verifier_id", None) == user.id and req.verification_status == VERIFICATION_PENDING


def _detail(req) -> dict:
    data = req.to_dict()
    data["approvals"] = [a.to_dict() for a in rs.approval_history(req)]
    return data


# ═════════════════════════════════════════════════════════════════════════
# Drafts
# ═════════════════════════════════════════════════════════════════════════


@request_bp.route(f"/{_COLLECTION}", methods=["POST"])
@require_user
def create_request(collection):
    req = rs.create_request(COLLECTIONS[collection], json_body(), current_user())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(req.to_dict()), 201


@request_bp.route(f"/{_COLLECTION}/<int:rid>", methods=["PUT"])
@require_user
def update_request(collection, rid):
    req = rs.update_request(COLLECTIONS[collection], rid, json_body(), current_user())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(req.to_dict())


@request_bp.route(f"/{_COLLECTION}/<int:rid>", methods=["DELETE"])
@require_user
def delete_request(collection, rid):
    rs.delete_request(COLLECTIONS[collection], rid, current_user())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"message": "Request deleted"})


# ═════════════════════════════════════════════════════════════════════════
# Reading
# ═════════════════════════════════════════════════════════════════════════


@request_bp.route(f"/{_COLLECTION}", methods=["GET"])
@require_user
def list_requests(collection):
    query = rs.list_requests_query(COLLECTIONS[collection], current_user(), request.args)
    items, total = paginate_query(query)
    return jsonify({"items": [r.to_dict() for r in items], "total": total})


@request_bp.route(f"/{_COLLECTION}/stats", methods=["GET"])
@require_user
def request_stats(collection):
    return jsonify(rs.request_stats(COLLECTIONS[collection]))


@request_bp.route(f"/{_COLLECTION}/track/<string:request_number>", methods=["GET"])
@require_user
def track_request(collection, request_number):
    return jsonify(rs.track_request(COLLECTIONS[collection], request_number))


@request_bp.route(f"/{_COLLECTION}/<int:rid>", methods=["GET"])
@require_user
def get_request(collection, rid):
    req = rs.get_request(COLLECTIONS[collection], rid)
    if not _can_view(req, current_user()):
        return api_error(E.FORBIDDEN, "Access denied")
    return jsonify(_detail(req))


# ═════════════════════════════════════════════════════════════════════════
# Workflow transitions
# ═════════════════════════════════════════════════════════════════════════


@request_bp.route(f"/{_COLLECTION}/<int:rid>/submit", methods=["POST"])
@require_user
def submit_request(collection, rid):
    req = TransitionEngine(db.session).submit(COLLECTIONS[collection], rid, current_user())
    return jsonify(_detail(req))


@request_bp.route(f"/{_COLLECTION}/<int:rid>/approve", methods=["POST"])
@require_user
def approve_request(collection, rid):
    data = json_body()
    estimated = data.get("estimated_completion_date")
    estimated_date = parse_date(estimated)
    if estimated and estimated_date is None:
        return api_error(E.VALIDATION_INVALID, "estimated_completion_date must be a date")
    req = TransitionEngine(db.session).approve(
        COLLECTIONS[collection], rid, current_user(),
        comments=data.get("comments"),
        estimated_completion_date=estimated_date,
        processing_notes=data.get("processing_notes"),
        signature=data.get("signature"),
    )
    return jsonify(_detail(req))


@request_bp.route(f"/{_COLLECTION}/<int:rid>/decline", methods=["POST"])
@require_user
def decline_request(collection, rid):
    data = json_body()
    req = TransitionEngine(db.session).decline(
        COLLECTIONS[collection], rid, current_user(),
        comments=data.get("comments"),
        signature=data.get("signature"),
    )
    return jsonify(_detail(req))


@request_bp.route(f"/{_COLLECTION}/<int:rid>/return", methods=["POST"])
@require_user
def return_request(collection, rid):
    data = json_body()
    reason = data.get("return_reason") or data.get("reason")
    if not (reason or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "return_reason is required")
    req = TransitionEngine(db.session).return_request(
        COLLECTIONS[collection], rid, current_user(),
        reason=reason,
        return_to=data.get("return_to", "requestor"),
        signature=data.get("signature"),
    )
    return jsonify(_detail(req))


@request_bp.route(f"/{_COLLECTION}/<int:rid>/cancel", methods=["POST"])
@require_user
def cancel_request(collection, rid):
    req = TransitionEngine(db.session).cancel(COLLECTIONS[collection], rid, current_user())
    return jsonify(_detail(req))


# ═════════════════════════════════════════════════════════════════════════
# Vehicle pool assignment
# ═════════════════════════════════════════════════════════════════════════


@request_bp.route("/service-vehicle-requests/<int:rid>/assignment", methods=["PUT"])
@require_user
@require_role(DEPARTMENT_APPROVER_ROLE)
def assign_vehicle(rid):
    req = rs.assign_vehicle(
        rid, json_body(), current_user(),
        current_app.config.get("VEHICLE_APPROVER_DEPARTMENT", "ODHC"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(req.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# Verification
# ═════════════════════════════════════════════════════════════════════════


@request_bp.route("/service-vehicle-requests/<int:rid>/assign-verifier", methods=["POST"])
@require_user
@require_role(DEPARTMENT_APPROVER_ROLE)
def assign_verifier(rid):
    req = rs.assign_verifier(
        rid, json_body(), current_user(),
        current_app.config.get("VEHICLE_APPROVER_DEPARTMENT", "ODHC"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(req.to_dict())


@request_bp.route("/service-vehicle-requests/<int:rid>/verify", methods=["POST"])
@require_user
def verify_request(rid):
    req = rs.verify_request(
        rid, json_body(), current_user(),
        current_app.config.get("VEHICLE_APPROVER_DEPARTMENT", "ODHC"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(req.to_dict())

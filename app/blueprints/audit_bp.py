"""
Audit log blueprint (super administrators only).

Endpoints:
    GET  /api/v1/audit-logs                              list / filter audit logs
    GET  /api/v1/audit-logs/<int:log_id>                 single audit entry
    GET  /api/v1/audit-logs/<entity_type>/<entity_id>    full trail of one entity, oldest first
"""

from datetime import datetime, time, timedelta, timezone

from flask import Blueprint, jsonify, request
from sqlalchemy import or_

from app.auth import require_role, require_user
from app.blueprints import paginate_query, register_error_handlers
from app.models import db
from app.models.audit import AUDIT_ENTITY_TYPES, AuditLog
from app.models.directory import ADMIN_ROLE
from app.services.audit_service import list_audit_entries
from app.utils.errors import E, api_error
from app.utils.helpers import parse_date

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1/audit-logs")
register_error_handlers(audit_bp)


def _day_start(day):
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


# ── List / filter ────────────────────────────────────────────────────────────

@audit_bp.route("", methods=["GET"])
@require_user
@require_role(ADMIN_ROLE)
def list_audit_logs():
    """
    Return paginated audit logs, newest first.

    Query params:
        entity_type    item_request | vehicle_request | workflow
        entity_id      exact entity PK
        action         action prefix (e.g. APPROVE)
        actor_user_id  acting user
        search         substring of entity_id or X-Request-ID
        start_date     from this day (inclusive)
        end_date       up to the end of this day (inclusive)
        limit, offset  pagination
    """
    q = AuditLog.query

    entity_type = request.args.get("entity_type")
    if entity_type:
        if entity_type not in AUDIT_ENTITY_TYPES:
            return api_error(E.VALIDATION_INVALID, f"Unknown entity_type: {entity_type}")
        q = q.filter(AuditLog.entity_type == entity_type)

    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action.startswith(action.upper()))

    actor_user_id = request.args.get("actor_user_id", type=int)
    if actor_user_id is not None:
        q = q.filter(AuditLog.actor_user_id == actor_user_id)

    search = (request.args.get("search") or "").strip()
    if search:
        q = q.filter(or_(AuditLog.entity_id.ilike(f"%{search}%"), AuditLog.request_id.ilike(f"%{search}%")))

    for param in ("start_date", "end_date"):
        raw = request.args.get(param)
        if raw and parse_date(raw) is None:
            return api_error(E.VALIDATION_INVALID, f"{param} must be a date")
    start = parse_date(request.args.get("start_date"))
    if start is not None:
        q = q.filter(AuditLog.timestamp >= _day_start(start))
    end = parse_date(request.args.get("end_date"))
    if end is not None:
        q = q.filter(AuditLog.timestamp < _day_start(end + timedelta(days=1)))

    q = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
    items, total = paginate_query(q)
    return jsonify({"items": [log.to_dict() for log in items], "total": total})


# ── Single entry ─────────────────────────────────────────────────────────────

@audit_bp.route("/<int:log_id>", methods=["GET"])
@require_user
@require_role(ADMIN_ROLE)
def get_audit_log(log_id):
    log = db.session.get(AuditLog, log_id)
    if not log:
        return api_error(E.NOT_FOUND, "Audit log not found")
    return jsonify(log.to_dict())


# ── Entity trail ─────────────────────────────────────────────────────────────

@audit_bp.route("/<string:entity_type>/<string:entity_id>", methods=["GET"])
@require_user
@require_role(ADMIN_ROLE)
def entity_audit_trail(entity_type, entity_id):
    if entity_type not in AUDIT_ENTITY_TYPES:
        return api_error(E.VALIDATION_INVALID, f"Unknown entity_type: {entity_type}")
    entries = list_audit_entries(db.session, entity_type, entity_id)
    return jsonify({"items": [log.to_dict() for log in entries], "total": len(entries)})

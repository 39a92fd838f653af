"""
Request management — drafts, edits, listing, tracking and statistics.

Status transitions are not done here; they go through TransitionEngine.

Transaction policy: functions use flush() for ID generation, never commit().
Caller (route handler) is responsible for db.session.commit().
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import String, cast, delete, func, or_, select

from app.core.exceptions import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from app.models import db
from app.models.approval import ApprovalRecord
from app.models.audit import write_audit
from app.models.base import DRAFT, RETURNED
from app.models.directory import DEPARTMENT_APPROVER_ROLE, Department, User
from app.models.request import (
    ITEM_CATEGORIES,
    PRIORITIES,
    REQUEST_MODELS,
    VERIFICATION_OUTCOMES,
    VERIFICATION_PENDING,
    VERIFICATION_STATUSES,
    RequestItem,
)
from app.services.legacy_fallback import pipeline_for, vehicle_pool_department
from app.services.notification import ApprovalNotifier
from app.services.transition_engine import is_actionable, is_terminal
from app.services.workflow_store import WorkflowStore
from app.utils.helpers import parse_date, parse_int

logger = logging.getLogger(__name__)

NUMBER_PREFIXES = {"item_request": "REQ", "vehicle_request": "SVR"}
EDITABLE_STATUSES = (DRAFT, RETURNED)

_ITEM_REQUEST_FIELDS = ("user_name", "user_position", "reason", "priority", "comments", "requestor_signature")
_VEHICLE_REQUEST_FIELDS = (
    "request_type", "purpose", "destination", "pick_up_location",
    "departure_time", "contact_number", "comments", "requestor_signature",
)


# ── Helpers ──────────────────────────────────────────────────────────────────

def model_for(form_kind: str):
    model = REQUEST_MODELS.get(form_kind)
    if model is None:
        raise ValidationError(f"Unknown form kind: {form_kind}", details={"form_kind": form_kind})
    return model


def generate_request_number(form_kind: str) -> str:
    """REQ-YYYYMMDD-NNNNNN / SVR-YYYYMMDD-NNNNNN, unique across the table."""
    model = model_for(form_kind)
    now = datetime.now(timezone.utc)
    suffix = str(int(now.timestamp() * 1000))[-6:]
    for _ in range(10):
        number = f"{NUMBER_PREFIXES[form_kind]}-{now:%Y%m%d}-{suffix}"
        exists = db.session.execute(
            select(model.id).where(model.request_number == number)
        ).first()
        if exists is None:
            return number
        suffix = f"{secrets.randbelow(1_000_000):06d}"
    raise ValidationError("Could not allocate a request number, please retry")


def get_request(form_kind: str, request_id: int):
    model = model_for(form_kind)
    request = db.session.get(model, request_id)
    if request is None:
        raise NotFoundError(resource=model.__name__, resource_id=request_id)
    return request


def _require_owner_or_admin(request, actor) -> None:
    if request.requestor_id != actor.id and not actor.is_admin:
        raise AuthorizationError()


def _coerce_cost(value, field: str, errors: dict):
    if value in (None, ""):
        return None
    try:
        cost = Decimal(str(value))
    except (InvalidOperation, ValueError):
        errors[field] = "must be a number"
        return None
    if cost < 0:
        errors[field] = "must not be negative"
    return cost


def _build_items(items_data) -> list[RequestItem]:
    errors: dict[str, str] = {}
    if not isinstance(items_data, list) or not items_data:
        raise ValidationError("At least one item is required", details={"items": "required"})

    items = []
    for idx, data in enumerate(items_data):
        key = f"items[{idx}]"
        if not isinstance(data, dict):
            errors[key] = "Item must be an object"
            continue
        category = data.get("category")
        if category not in ITEM_CATEGORIES:
            errors[f"{key}.category"] = f"must be one of {sorted(ITEM_CATEGORIES)}"
        description = (data.get("item_description") or "").strip()
        if not description:
            errors[f"{key}.item_description"] = "required"
        quantity = parse_int(data.get("quantity", 1))
        if quantity is None or quantity < 1:
            errors[f"{key}.quantity"] = "must be a positive integer"
        cost = _coerce_cost(data.get("estimated_cost"), f"{key}.estimated_cost", errors)
        items.append(RequestItem(
            category=category,
            item_description=description,
            quantity=quantity or 1,
            estimated_cost=cost,
            proposed_specs=data.get("proposed_specs"),
            purpose=data.get("purpose"),
            is_replacement=bool(data.get("is_replacement", False)),
            replaced_item_info=data.get("replaced_item_info"),
        ))
    if errors:
        raise ValidationError("Invalid request items", details=errors)
    return items


def _resolve_department(data: dict, actor) -> int:
    department_id = parse_int(data.get("department_id")) or actor.department_id
    if department_id is None or db.session.get(Department, department_id) is None:
        raise ValidationError("A valid department is required", details={"department_id": "required"})
    return department_id


def _apply_item_fields(request, data: dict) -> None:
    for field in _ITEM_REQUEST_FIELDS:
        if field in data:
            setattr(request, field, data[field])
    if "date_required" in data:
        request.date_required = parse_date(data["date_required"])
    if request.priority not in PRIORITIES:
        raise ValidationError(f"priority must be one of {sorted(PRIORITIES)}", details={"priority": request.priority})


def _apply_vehicle_fields(request, data: dict) -> None:
    for field in _VEHICLE_REQUEST_FIELDS:
        if field in data:
            setattr(request, field, data[field])
    for field in ("travel_date_from", "travel_date_to"):
        if field in data:
            setattr(request, field, parse_date(data[field]))
    if "passengers" in data:
        passengers = data["passengers"] or []
        if not isinstance(passengers, list):
            raise ValidationError("passengers must be a list", details={"passengers": "invalid"})
        request.passengers = list(passengers)
    if request.travel_date_from and request.travel_date_to and request.travel_date_to < request.travel_date_from:
        raise ValidationError("travel_date_to must not be before travel_date_from",
                              details={"travel_date_to": "before travel_date_from"})


# ── Create / update / delete ─────────────────────────────────────────────────

def create_request(form_kind: str, data: dict, actor):
    model = model_for(form_kind)
    request = model(
        request_number=generate_request_number(form_kind),
        requestor_id=actor.id,
        department_id=_resolve_department(data, actor),
        status=DRAFT,
        pending_approver_ids=[],
    )
    if form_kind == "item_request":
        request.priority = data.get("priority") or "medium"
        _apply_item_fields(request, data)
        request.items = _build_items(data.get("items"))
        request.recompute_total()
    else:
        if not (data.get("purpose") or "").strip() or not (data.get("destination") or "").strip():
            raise ValidationError("purpose and destination are required",
                                  details={"purpose": "required", "destination": "required"})
        _apply_vehicle_fields(request, data)

    db.session.add(request)
    db.session.flush()
    write_audit(entity_type=form_kind, entity_id=request.id, action="CREATE",
                actor_user_id=actor.id, details={"request_number": request.request_number})
    logger.info("Request created: %s", request.request_number,
                extra={"form_kind": form_kind, "entity_id": request.id, "user_id": actor.id})
    return request


def update_request(form_kind: str, request_id: int, data: dict, actor):
    request = get_request(form_kind, request_id)
    _require_owner_or_admin(request, actor)
    if request.status not in EDITABLE_STATUSES:
        raise InvalidStateError(f"Only draft or returned requests can be edited (status '{request.status}')")

    if "department_id" in data:
        request.department_id = _resolve_department(data, actor)
    if form_kind == "item_request":
        _apply_item_fields(request, data)
        if "items" in data:
            request.items = _build_items(data["items"])
        request.recompute_total()
    else:
        _apply_vehicle_fields(request, data)

    db.session.flush()
    write_audit(entity_type=form_kind, entity_id=request.id, action="UPDATE",
                actor_user_id=actor.id, details={"fields": sorted(data.keys())})
    return request


def delete_request(form_kind: str, request_id: int, actor) -> None:
    """Owners delete their own drafts; administrators delete anything."""
    request = get_request(form_kind, request_id)
    if not actor.is_admin:
        if request.requestor_id != actor.id:
            raise AuthorizationError()
        if request.status != DRAFT:
            raise InvalidStateError("Only draft requests can be deleted")

    db.session.execute(
        delete(ApprovalRecord).where(
            ApprovalRecord.form_kind == form_kind,
            ApprovalRecord.request_id == request.id,
        )
    )
    write_audit(entity_type=form_kind, entity_id=request.id, action="DELETE",
                actor_user_id=actor.id,
                details={"request_number": request.request_number, "status": request.status})
    db.session.delete(request)
    db.session.flush()
    logger.info("Request deleted: %s", request.request_number,
                extra={"form_kind": form_kind, "entity_id": request_id, "user_id": actor.id})


def _require_pool_approver(actor, pool_department_name: str) -> None:
    if actor.is_admin:
        return
    pool = vehicle_pool_department(db.session, pool_department_name)
    if pool is None or actor.role != DEPARTMENT_APPROVER_ROLE or actor.department_id != pool.id:
        raise AuthorizationError()


def assign_vehicle(request_id: int, data: dict, actor, pool_department_name: str):
    """Vehicle-pool approvers (or admins) record driver, vehicle and approval date."""
    request = get_request("vehicle_request", request_id)
    _require_pool_approver(actor, pool_department_name)
    if not is_actionable(request):
        raise InvalidStateError(f"Vehicle cannot be assigned in status '{request.status}'")

    errors = {}
    driver = (data.get("assigned_driver") or "").strip()
    vehicle = parse_int(data.get("assigned_vehicle"))
    approval_date = parse_date(data.get("approval_date"))
    if not driver:
        errors["assigned_driver"] = "required"
    if vehicle is None:
        errors["assigned_vehicle"] = "must be a vehicle id"
    if approval_date is None:
        errors["approval_date"] = "must be a date"
    if errors:
        raise ValidationError("Invalid vehicle assignment", details=errors)

    request.assigned_driver = driver
    request.assigned_vehicle = vehicle
    request.approval_date = approval_date
    db.session.flush()
    write_audit(entity_type="vehicle_request", entity_id=request.id, action="UPDATE",
                actor_user_id=actor.id,
                details={"assigned_driver": driver, "assigned_vehicle": vehicle,
                         "approval_date": approval_date})
    return request


# ── Verification ─────────────────────────────────────────────────────────────

def pool_approvers(pool_department_name: str) -> list[User]:
    pool = vehicle_pool_department(db.session, pool_department_name)
    if pool is None:
        return []
    stmt = (
        select(User)
        .where(User.department_id == pool.id, User.role == DEPARTMENT_APPROVER_ROLE, User.is_active.is_(True))
        .order_by(User.id)
    )
    return list(db.session.execute(stmt).scalars())


def assign_verifier(request_id: int, data: dict, actor, pool_department_name: str, notifier=None):
    """Hand an in-flight vehicle request to a verifier.

    Verification runs beside the approval workflow: it never moves the
    request's status or pending set.  Reassigning restarts verification.
    """
    request = get_request("vehicle_request", request_id)
    _require_pool_approver(actor, pool_department_name)
    if not is_actionable(request):
        raise InvalidStateError(f"A verifier cannot be assigned in status '{request.status}'")

    verifier_id = parse_int(data.get("verifier_id"))
    if verifier_id is None:
        raise ValidationError("verifier_id is required", details={"verifier_id": "required"})
    verifier = db.session.get(User, verifier_id)
    if verifier is None:
        raise NotFoundError(resource="User", resource_id=verifier_id)
    if not verifier.is_active:
        raise ValidationError("Verifier is inactive", details={"verifier_id": "inactive"})

    request.verifier_id = verifier.id
    request.verification_status = VERIFICATION_PENDING
    request.verified_at = None
    request.verifier_comments = None
    db.session.flush()
    write_audit(entity_type="vehicle_request", entity_id=request.id, action="UPDATE",
                actor_user_id=actor.id,
                details={"verifier_id": verifier.id, "verification_status": VERIFICATION_PENDING})

    (notifier or ApprovalNotifier()).notify_verifier_assigned(request, verifier)
    logger.info("Verifier assigned: %s", request.request_number,
                extra={"entity_id": request.id, "user_id": actor.id})
    return request


def verify_request(request_id: int, data: dict, actor, pool_department_name: str, notifier=None):
    """The assigned verifier records ``verified`` or ``declined``."""
    request = get_request("vehicle_request", request_id)
    outcome = (data.get("status") or "").strip().lower()
    if outcome not in VERIFICATION_OUTCOMES:
        raise ValidationError("Invalid verification status",
                              details={"status": f"must be one of {', '.join(VERIFICATION_OUTCOMES)}"})
    if request.verifier_id != actor.id:
        raise AuthorizationError("You are not the assigned verifier for this request")
    if request.verification_status != VERIFICATION_PENDING:
        raise InvalidStateError("This request is not pending verification")

    comments = (data.get("comments") or "").strip() or None
    request.verification_status = outcome
    request.verified_at = datetime.now(timezone.utc)
    request.verifier_comments = comments
    db.session.flush()
    write_audit(entity_type="vehicle_request", entity_id=request.id, action="UPDATE",
                actor_user_id=actor.id,
                details={"verification_status": outcome, "comments": comments})

    (notifier or ApprovalNotifier()).notify_verification_outcome(
        request, actor, pool_approvers(pool_department_name), outcome, comments,
    )
    logger.info("Request %s %s by verifier", request.request_number, outcome,
                extra={"entity_id": request.id, "user_id": actor.id})
    return request


# ── Queries ──────────────────────────────────────────────────────────────────

def pending_for_clause(model, user_id: int):
    """SQL filter: *user_id* is in ``pending_approver_ids``.

    The engine always stores a sorted int list serialised as ``[1, 2, 3]``,
    so membership is a match on one of four textual positions.
    """
    text = cast(model.pending_approver_ids, String)
    uid = int(user_id)
    return or_(
        text == f"[{uid}]",
        text.like(f"[{uid}, %"),
        text.like(f"%, {uid}, %"),
        text.like(f"%, {uid}]"),
    )


def list_requests_query(form_kind: str, actor, args):
    """Build the filtered query behind the list endpoint.

    args:
        status        exact status
        pending_for   'me' → requests awaiting the actor
        pending_verification  'me' → vehicle requests the actor must verify
        mine          'true' → requests the actor created
        department_id restrict to a department
        search        request_number substring
    """
    model = model_for(form_kind)
    query = model.query

    if args.get("pending_for") == "me":
        query = query.filter(pending_for_clause(model, actor.id))
    if args.get("pending_verification") == "me":
        if form_kind != "vehicle_request":
            raise ValidationError("Only vehicle requests are verified",
                                  details={"pending_verification": "vehicle requests only"})
        query = query.filter(model.verifier_id == actor.id, model.verification_status == VERIFICATION_PENDING)
    if str(args.get("mine", "")).lower() in ("1", "true", "yes"):
        query = query.filter(model.requestor_id == actor.id)
    elif not actor.is_admin and args.get("pending_for") != "me":
        # Others' drafts are private.
        query = query.filter(or_(model.requestor_id == actor.id, model.status != DRAFT))

    status = args.get("status")
    if status:
        query = query.filter(model.status == status)
    department_id = parse_int(args.get("department_id"))
    if department_id is not None:
        query = query.filter(model.department_id == department_id)
    search = (args.get("search") or "").strip()
    if search:
        query = query.filter(model.request_number.ilike(f"%{search}%"))

    return query.order_by(model.created_at.desc(), model.id.desc())


def request_stats(form_kind: str) -> dict:
    model = model_for(form_kind)
    rows = db.session.execute(
        select(model.status, func.count(model.id)).group_by(model.status)
    ).all()
    by_status = {status: count for status, count in rows}
    stats = {
        "form_kind": form_kind,
        "total": sum(by_status.values()),
        "by_status": by_status,
    }
    if form_kind == "vehicle_request":
        verification = dict.fromkeys(VERIFICATION_STATUSES, 0)
        for status, count in db.session.execute(
            select(model.verification_status, func.count(model.id))
            .where(model.verification_status.in_(VERIFICATION_STATUSES))
            .group_by(model.verification_status)
        ).all():
            verification[status] = count
        stats["by_verification_status"] = verification
    return stats


def approval_history(request) -> list[ApprovalRecord]:
    stmt = (
        select(ApprovalRecord)
        .where(ApprovalRecord.form_kind == request.form_kind, ApprovalRecord.request_id == request.id)
        .order_by(ApprovalRecord.created_at, ApprovalRecord.id)
    )
    return list(db.session.execute(stmt).scalars())


def _stage_types(request) -> list[str]:
    """Approval types in pipeline order for the workflow the request runs under."""
    store = WorkflowStore(db.session)
    step = store.get_step(request.current_step_id)
    definition = step.workflow if step is not None else store.get_active(request.form_kind)
    if definition is not None:
        return [s.approval_type for s in definition.steps]
    return [s.approval_type for s in pipeline_for(request.form_kind, current_app.config).stages]


def track_request(form_kind: str, request_number: str) -> dict:
    """Stage timeline reconstructed from the request's approval records."""
    model = model_for(form_kind)
    request = db.session.execute(
        select(model).where(model.request_number == request_number)
    ).scalars().first()
    if request is None:
        raise NotFoundError(resource=model.__name__, resource_id=request_number)

    records = approval_history(request)
    by_type: dict[str, list[ApprovalRecord]] = {}
    for record in records:
        by_type.setdefault(record.approval_type, []).append(record)

    ordered = _stage_types(request)
    ordered += [t for t in by_type if t not in ordered]

    timeline = [{
        "stage": "submitted",
        "status": "completed" if request.submitted_at else "pending",
        "timestamp": request.submitted_at.isoformat() if request.submitted_at else None,
        "actor_id": request.requestor_id,
    }]
    for approval_type in ordered:
        stage_records = by_type.get(approval_type, [])
        latest = stage_records[-1] if stage_records else None
        entry = {
            "stage": approval_type,
            "status": latest.status if latest else "not_started",
            "timestamp": latest.acted_at.isoformat() if latest and latest.acted_at else None,
            "actor_id": latest.approver_id if latest else None,
            "comments": latest.comments if latest else None,
            "approvals": [r.to_dict() for r in stage_records],
        }
        timeline.append(entry)
        if latest is not None and latest.status == "declined":
            break

    return {
        "request": request.to_dict(),
        "current_status": request.status,
        "is_terminal": is_terminal(request),
        "timeline": timeline,
    }

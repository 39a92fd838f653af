"""
Workflow definition administration (super administrators only).

Endpoints:
    GET    /api/v1/workflows                     ?form_kind=&active_only=true
    GET    /api/v1/workflows/<id>
    GET    /api/v1/workflows/active/<form_kind>
    POST   /api/v1/workflows
    PUT    /api/v1/workflows/<id>                step changes create a new version
    DELETE /api/v1/workflows/<id>                refused while requests sit on its steps
"""

import logging

from flask import Blueprint, jsonify, request

from app.auth import current_user, require_role, require_user
from app.blueprints import json_body, register_error_handlers
from app.models import db
from app.models.audit import write_audit
from app.models.directory import ADMIN_ROLE
from app.models.workflow import FORM_KINDS
from app.services.workflow_store import WorkflowStore
from app.utils.errors import E, api_error
from app.utils.helpers import db_commit_or_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflows", __name__, url_prefix="/api/v1/workflows")
register_error_handlers(workflow_bp)


@workflow_bp.route("", methods=["GET"])
@require_user
@require_role(ADMIN_ROLE)
def list_workflows():
    form_kind = request.args.get("form_kind")
    if form_kind and form_kind not in FORM_KINDS:
        return api_error(E.VALIDATION_INVALID, f"Unknown form_kind: {form_kind}")
    active_only = request.args.get("active_only", "").lower() in ("1", "true", "yes")
    definitions = WorkflowStore(db.session).list_definitions(form_kind, active_only=active_only)
    return jsonify({"items": [d.to_dict() for d in definitions], "total": len(definitions)})


@workflow_bp.route("/<int:wid>", methods=["GET"])
@require_user
@require_role(ADMIN_ROLE)
def get_workflow(wid):
    return jsonify(WorkflowStore(db.session).get_definition(wid).to_dict())


@workflow_bp.route("/active/<string:form_kind>", methods=["GET"])
@require_user
@require_role(ADMIN_ROLE)
def get_active_workflow(form_kind):
    if form_kind not in FORM_KINDS:
        return api_error(E.VALIDATION_INVALID, f"Unknown form_kind: {form_kind}")
    definition = WorkflowStore(db.session).get_active(form_kind)
    if definition is None:
        return api_error(E.NOT_FOUND, f"No active workflow for {form_kind}")
    return jsonify(definition.to_dict())


@workflow_bp.route("", methods=["POST"])
@require_user
@require_role(ADMIN_ROLE)
def create_workflow():
    actor = current_user()
    definition = WorkflowStore(db.session).create(json_body(), actor_id=actor.id)
    write_audit(
        entity_type="workflow", entity_id=definition.id, action="CREATE",
        actor_user_id=actor.id,
        details={"form_kind": definition.form_kind, "steps": len(definition.steps)},
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(definition.to_dict()), 201


@workflow_bp.route("/<int:wid>", methods=["PUT"])
@require_user
@require_role(ADMIN_ROLE)
def update_workflow(wid):
    actor = current_user()
    data = json_body()
    definition = WorkflowStore(db.session).update(wid, data, actor_id=actor.id)
    write_audit(
        entity_type="workflow", entity_id=definition.id, action="UPDATE",
        actor_user_id=actor.id,
        details={"previous_id": wid, "version": definition.version, "fields": sorted(data)},
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(definition.to_dict())


@workflow_bp.route("/<int:wid>", methods=["DELETE"])
@require_user
@require_role(ADMIN_ROLE)
def delete_workflow(wid):
    actor = current_user()
    WorkflowStore(db.session).delete(wid)
    write_audit(entity_type="workflow", entity_id=wid, action="DELETE", actor_user_id=actor.id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"message": "Workflow deleted"})

"""
Workflow store — persistence and lookup of approval workflow definitions.

Read side (used by the approval engine):
    get_active(form_kind)   active+default definition, else any active one
    get_step(step_id)       a step from whatever definition version owns it
    status_set(form_kind)   closed status vocabulary for the form kind

Write side (administrative CRUD):
    create / update / delete with validation.

Transaction policy: write methods use flush(), never commit().
The caller (route handler) is responsible for db.session.commit().

Versioning:
    An update that carries ``steps`` never edits step rows in place.  It
    inserts a new definition (version + 1, previous_version_id set) and
    deactivates the old one, so requests pointing at old steps keep a valid
    ``current_step_id``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError, WorkflowConfigurationError
from app.models.base import BASE_STATUSES
from app.models.directory import USER_ROLES
from app.models.request import REQUEST_MODELS
from app.models.workflow import (
    APPROVAL_LOGICS,
    APPROVER_STRATEGIES,
    FORM_KINDS,
    WorkflowDefinition,
    WorkflowStep,
    slugify_step_name,
)
from app.services.legacy_fallback import LEGACY_STATUSES

logger = logging.getLogger(__name__)

_STEP_FIELDS = (
    "step_name",
    "approver_strategy",
    "approver_role",
    "specific_approver_ids",
    "approver_user_id",
    "approver_department_id",
    "requires_same_department",
    "approval_logic",
    "status_on_approval",
    "status_on_completion",
)


@dataclass(frozen=True)
class StatusSet:
    """Closed set of statuses a request of one form kind may hold."""

    form_kind: str
    statuses: frozenset

    def __contains__(self, status) -> bool:
        return status in self.statuses

    def require(self, status: str) -> str:
        if status not in self.statuses:
            raise WorkflowConfigurationError(
                f"Status {status!r} is not declared for {self.form_kind}"
            )
        return status


class WorkflowStore:
    """Stateless access to WorkflowDefinition / WorkflowStep rows."""

    def __init__(self, session):
        self.session = session

    # ── Engine read side ─────────────────────────────────────────────────

    def get_active(self, form_kind: str) -> WorkflowDefinition | None:
        """Active default definition for *form_kind*, else any active one.

        Definitions without steps are unusable and skipped.
        """
        stmt = (
            select(WorkflowDefinition)
            .where(WorkflowDefinition.form_kind == form_kind, WorkflowDefinition.is_active.is_(True))
            .order_by(WorkflowDefinition.is_default.desc(), WorkflowDefinition.version.desc(),
                      WorkflowDefinition.id.desc())
        )
        for definition in self.session.execute(stmt).scalars():
            if definition.steps:
                return definition
            logger.warning(
                "Active workflow %s for %s has no steps; ignoring",
                definition.id, form_kind,
                extra={"form_kind": form_kind},
            )
        return None

    def get_step(self, step_id: int | None) -> WorkflowStep | None:
        if step_id is None:
            return None
        return self.session.get(WorkflowStep, step_id)

    def first_step(self, definition: WorkflowDefinition) -> WorkflowStep:
        if not definition.steps:
            raise WorkflowConfigurationError(f"Workflow {definition.id} has no steps")
        return definition.steps[0]

    def status_set(self, form_kind: str, *definitions: WorkflowDefinition | None) -> StatusSet:
        """Base + legacy statuses plus everything the active definition declares.

        Extra *definitions* (e.g. the older version a request is still on)
        contribute their statuses too.
        """
        statuses = set(BASE_STATUSES) | set(LEGACY_STATUSES.get(form_kind, ()))
        active = self.get_active(form_kind)
        for definition in (active, *definitions):
            if definition is not None:
                statuses |= definition.declared_statuses()
        return StatusSet(form_kind, frozenset(statuses))

    # ── Administrative read side ─────────────────────────────────────────

    def list_definitions(self, form_kind: str | None = None, active_only: bool = False):
        stmt = select(WorkflowDefinition).order_by(
            WorkflowDefinition.form_kind, WorkflowDefinition.version.desc(), WorkflowDefinition.id.desc(),
        )
        if form_kind:
            stmt = stmt.where(WorkflowDefinition.form_kind == form_kind)
        if active_only:
            stmt = stmt.where(WorkflowDefinition.is_active.is_(True))
        return list(self.session.execute(stmt).scalars())

    def get_definition(self, workflow_id: int) -> WorkflowDefinition:
        definition = self.session.get(WorkflowDefinition, workflow_id)
        if definition is None:
            raise NotFoundError(resource="WorkflowDefinition", resource_id=workflow_id)
        return definition

    def steps_in_use(self, definition: WorkflowDefinition) -> int:
        """Number of in-flight requests whose pointer targets a step of *definition*."""
        step_ids = [s.id for s in definition.steps]
        if not step_ids:
            return 0
        total = 0
        for model in REQUEST_MODELS.values():
            total += self.session.execute(
                select(func.count(model.id)).where(model.current_step_id.in_(step_ids))
            ).scalar_one()
        return total

    # ── Validation ───────────────────────────────────────────────────────

    def validate(self, data: dict, *, partial: bool = False) -> None:
        """Raise ValidationError listing every problem in *data*."""
        errors: dict[str, str] = {}

        if not partial or "name" in data:
            if not (data.get("name") or "").strip():
                errors["name"] = "Workflow name is required"
        if not partial or "form_kind" in data:
            if data.get("form_kind") not in FORM_KINDS:
                errors["form_kind"] = f"form_kind must be one of {sorted(FORM_KINDS)}"

        if not partial or "steps" in data:
            self._validate_steps(data.get("steps"), errors)

        if errors:
            raise ValidationError("Workflow validation failed", details=errors)

    @staticmethod
    def _validate_steps(steps, errors: dict) -> None:
        if not isinstance(steps, list) or not steps:
            errors["steps"] = "At least one step is required"
            return

        orders = []
        # approval_type slug -> index of the step that claimed it
        seen_types: dict[str, int] = {}
        for idx, step in enumerate(steps):
            key = f"steps[{idx}]"
            if not isinstance(step, dict):
                errors[key] = "Step must be an object"
                continue
            try:
                orders.append(int(step.get("step_order")))
            except (TypeError, ValueError):
                errors[f"{key}.step_order"] = "step_order must be an integer"

            name = (step.get("step_name") or "").strip()
            if not name:
                errors[f"{key}.step_name"] = "step_name is required"
            else:
                slug = slugify_step_name(name)
                if slug in seen_types:
                    errors[f"{key}.step_name"] = (
                        f"step_name duplicates steps[{seen_types[slug]}] ({slug}); step names must be unique"
                    )
                else:
                    seen_types[slug] = idx

            strategy = step.get("approver_strategy", "role")
            if strategy not in APPROVER_STRATEGIES:
                errors[f"{key}.approver_strategy"] = f"must be one of {sorted(APPROVER_STRATEGIES)}"
            elif strategy == "role" and step.get("approver_role") not in USER_ROLES:
                errors[f"{key}.approver_role"] = "A valid approver_role is required for role strategy"
            elif strategy == "user" and not (step.get("specific_approver_ids") or step.get("approver_user_id")):
                errors[f"{key}.specific_approver_ids"] = "At least one approver is required for user strategy"
            elif strategy == "department" and not (
                step.get("approver_department_id") or step.get("requires_same_department")
            ):
                errors[f"{key}.approver_department_id"] = (
                    "approver_department_id or requires_same_department is required for department strategy"
                )

            if step.get("approval_logic", "any") not in APPROVAL_LOGICS:
                errors[f"{key}.approval_logic"] = f"must be one of {sorted(APPROVAL_LOGICS)}"

        if len(orders) == len(steps) and sorted(orders) != list(range(1, len(steps) + 1)):
            errors["steps.step_order"] = "Step orders must be sequential starting at 1 (1, 2, 3, ...)"
            return

        if "steps.step_order" not in errors and len(orders) == len(steps):
            last = max(orders)
            for idx, step in enumerate(steps):
                if isinstance(step, dict) and int(step["step_order"]) != last \
                        and not (step.get("status_on_approval") or "").strip():
                    errors[f"steps[{idx}].status_on_approval"] = "Non-final steps require status_on_approval"

    # ── Write side ───────────────────────────────────────────────────────

    def _ensure_single_default(self, form_kind: str, exclude_id: int | None = None) -> None:
        stmt = select(WorkflowDefinition.id).where(
            WorkflowDefinition.form_kind == form_kind,
            WorkflowDefinition.is_active.is_(True),
            WorkflowDefinition.is_default.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(WorkflowDefinition.id != exclude_id)
        if self.session.execute(stmt).first() is not None:
            raise ConflictError(resource="Active default workflow", field="form_kind", value=form_kind)

    @staticmethod
    def _build_steps(definition: WorkflowDefinition, steps_data: list[dict]) -> None:
        for data in sorted(steps_data, key=lambda s: int(s["step_order"])):
            step = WorkflowStep(step_order=int(data["step_order"]))
            for field in _STEP_FIELDS:
                if field in data:
                    setattr(step, field, data[field])
            step.step_name = step.step_name.strip()
            step.approver_strategy = step.approver_strategy or "role"
            step.approval_logic = step.approval_logic or "any"
            step.requires_same_department = bool(step.requires_same_department)
            definition.steps.append(step)

    def create(self, data: dict, actor_id: int | None = None) -> WorkflowDefinition:
        self.validate(data)
        is_active = bool(data.get("is_active", True))
        is_default = bool(data.get("is_default", True))
        if is_active and is_default:
            self._ensure_single_default(data["form_kind"])

        definition = WorkflowDefinition(
            form_kind=data["form_kind"],
            name=data["name"].strip(),
            description=data.get("description"),
            is_active=is_active,
            is_default=is_default,
            version=1,
            created_by=actor_id,
            updated_by=actor_id,
        )
        self._build_steps(definition, data["steps"])
        self.session.add(definition)
        self.session.flush()
        logger.info(
            "Workflow created: id=%s kind=%s steps=%d",
            definition.id, definition.form_kind, len(definition.steps),
            extra={"form_kind": definition.form_kind, "user_id": actor_id},
        )
        return definition

    def update(self, workflow_id: int, data: dict, actor_id: int | None = None) -> WorkflowDefinition:
        """Metadata changes apply in place; step changes produce a new version."""
        current = self.get_definition(workflow_id)
        if "form_kind" in data and data["form_kind"] != current.form_kind:
            raise ValidationError("form_kind cannot be changed", details={"form_kind": "immutable"})
        self.validate({**data, "form_kind": current.form_kind}, partial=True)

        is_active = bool(data.get("is_active", current.is_active))
        is_default = bool(data.get("is_default", current.is_default))
        if is_active and is_default:
            self._ensure_single_default(current.form_kind, exclude_id=current.id)

        if "steps" not in data:
            if "name" in data:
                current.name = data["name"].strip()
            if "description" in data:
                current.description = data["description"]
            current.is_active = is_active
            current.is_default = is_default
            current.updated_by = actor_id
            self.session.flush()
            return current

        new_version = WorkflowDefinition(
            form_kind=current.form_kind,
            name=(data.get("name") or current.name).strip(),
            description=data.get("description", current.description),
            is_active=is_active,
            is_default=is_default,
            version=current.version + 1,
            previous_version_id=current.id,
            created_by=current.created_by,
            updated_by=actor_id,
        )
        self._build_steps(new_version, data["steps"])
        current.is_active = False
        current.is_default = False
        current.updated_by = actor_id
        self.session.add(new_version)
        self.session.flush()
        logger.info(
            "Workflow %s superseded by version %s (id=%s)",
            current.id, new_version.version, new_version.id,
            extra={"form_kind": current.form_kind, "user_id": actor_id},
        )
        return new_version

    def delete(self, workflow_id: int) -> None:
        definition = self.get_definition(workflow_id)
        in_use = self.steps_in_use(definition)
        if in_use:
            raise ValidationError(
                "Workflow has requests in progress; deactivate it instead",
                details={"requests_in_progress": in_use},
            )
        # Superseding versions keep a dangling previous_version_id otherwise.
        for successor in self.session.execute(
            select(WorkflowDefinition).where(WorkflowDefinition.previous_version_id == definition.id)
        ).scalars():
            successor.previous_version_id = None
        self.session.delete(definition)
        self.session.flush()
        logger.info("Workflow deleted: id=%s", workflow_id, extra={"form_kind": definition.form_kind})

"""
Legacy approval pipelines, used when no workflow is configured for a form kind.

Each pipeline is an ordered tuple of LegacyStage objects that expose the
same attributes the engine reads from a configured WorkflowStep
(approval_type, approval_logic, status_on_approval, declined_status, ...),
so the transition code is shared.  Stages are located by request status,
never by pointer: ``current_step_id`` stays NULL on the legacy path.

    item_request
        submitted               → department_approved      (department approver)
        department_approved     → it_manager_approved      (IT manager)
        it_manager_approved     → service_desk_processing  (service desk)
        service_desk_processing → completed                (service desk)

    vehicle_request
        submitted → completed   (approver of the vehicle-pool department)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select

from app.models.directory import Department

logger = logging.getLogger(__name__)

LEGACY_STATUSES = {
    "item_request": frozenset({
        "department_approved",
        "department_declined",
        "it_manager_approved",
        "it_manager_declined",
        "service_desk_processing",
    }),
    "vehicle_request": frozenset(),
}


@dataclass(frozen=True)
class LegacyStage:
    step_order: int
    approval_type: str
    from_status: str
    status_on_approval: str
    declined_status: str
    # (resolver, request) -> list[User] used for the pending set
    approvers: Callable
    # (user, request, approvers) -> bool
    eligible: Callable
    can_decline: bool = True
    can_return: bool = True
    approval_logic: str = "any"
    status_on_completion: str | None = None
    id: None = None


class LegacyPipeline:

    def __init__(self, form_kind: str, stages: tuple[LegacyStage, ...]):
        self.form_kind = form_kind
        self.stages = stages

    @property
    def first_stage(self) -> LegacyStage:
        return self.stages[0]

    def stage_for_status(self, status: str) -> LegacyStage | None:
        for stage in self.stages:
            if stage.from_status == status:
                return stage
        return None

    def next_stage(self, stage: LegacyStage) -> LegacyStage | None:
        for candidate in self.stages:
            if candidate.step_order > stage.step_order:
                return candidate
        return None

    def locate(self, user, request, resolver) -> LegacyStage | None:
        """Stage *user* may act on for *request* in its current status, or None."""
        stage = self.stage_for_status(request.status)
        if stage is None:
            return None
        if stage.eligible(user, request, stage.approvers(resolver, request)):
            logger.debug(
                "Legacy stage %s located for user %s", stage.approval_type, user.id,
                extra={"form_kind": self.form_kind, "entity_id": request.id, "tier": "legacy"},
            )
            return stage
        return None


# ── item_request ─────────────────────────────────────────────────────────────

def _department_approvers(resolver, request):
    return resolver.by_department(request.department_id)


def _it_managers(resolver, request):
    return resolver.by_role("it_manager")


def _service_desk(resolver, request):
    return resolver.by_role("service_desk")


ITEM_PIPELINE = LegacyPipeline("item_request", (
    LegacyStage(
        step_order=1,
        approval_type="department_approval",
        from_status="submitted",
        status_on_approval="department_approved",
        declined_status="department_declined",
        approvers=_department_approvers,
        eligible=lambda user, request, approvers: user.can_approve_for_department(request.department_id),
    ),
    LegacyStage(
        step_order=2,
        approval_type="it_manager_approval",
        from_status="department_approved",
        status_on_approval="it_manager_approved",
        declined_status="it_manager_declined",
        approvers=_it_managers,
        eligible=lambda user, request, approvers: user.can_approve_as_it_manager(),
    ),
    LegacyStage(
        step_order=3,
        approval_type="service_desk_processing",
        from_status="it_manager_approved",
        status_on_approval="service_desk_processing",
        declined_status="declined",
        approvers=_service_desk,
        eligible=lambda user, request, approvers: user.can_process_requests(),
        can_decline=False,
        can_return=False,
    ),
    LegacyStage(
        step_order=4,
        approval_type="service_desk_completion",
        from_status="service_desk_processing",
        status_on_approval="completed",
        declined_status="declined",
        approvers=_service_desk,
        eligible=lambda user, request, approvers: user.can_process_requests(),
        can_decline=False,
        can_return=False,
    ),
))


# ── vehicle_request ──────────────────────────────────────────────────────────

def vehicle_pool_department(session, department_name: str) -> Department | None:
    if not department_name:
        return None
    return session.execute(
        select(Department).where(Department.name == department_name, Department.is_active.is_(True))
    ).scalars().first()


def build_vehicle_pipeline(pool_department_name: str) -> LegacyPipeline:
    """Single-stage pipeline: vehicle-pool department approver → completed.

    Falls back to the request's own department when the pool department is
    missing or has no active approvers.
    """

    def _pool_approvers(resolver, request):
        pool = vehicle_pool_department(resolver.session, pool_department_name)
        if pool is not None:
            approvers = resolver.by_department(pool.id)
            if approvers:
                return approvers
            logger.warning("Vehicle-pool department %r has no active approvers", pool_department_name)
        return resolver.by_department(request.department_id)

    return LegacyPipeline("vehicle_request", (
        LegacyStage(
            step_order=1,
            approval_type="department_approval",
            from_status="submitted",
            status_on_approval="completed",
            declined_status="declined",
            approvers=_pool_approvers,
            eligible=lambda user, request, approvers: user.id in {a.id for a in approvers},
        ),
    ))


def pipeline_for(form_kind: str, config) -> LegacyPipeline:
    if form_kind == "item_request":
        return ITEM_PIPELINE
    if form_kind == "vehicle_request":
        return build_vehicle_pipeline(config.get("VEHICLE_APPROVER_DEPARTMENT", "ODHC"))
    raise ValueError(f"Unknown form kind: {form_kind}")

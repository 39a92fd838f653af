"""
Step location — which configured step an acting user may act on.

Two tiers:

    primary   the request stores ``current_step_id``; that step is loaded
              from whatever definition version owns it and the user must
              be among its resolved approvers.
    fallback  no pointer, or the user is not an approver of the pointed
              step: the step is inferred from the request status
              against the active definition.  ``submitted`` / ``returned``
              map to the first step; otherwise the step after the one whose
              ``status_on_approval`` equals the status, scanning forward
              (never backward) until the user is eligible.

``None`` means neither tier matched; the engine then tries the legacy
pipeline before refusing the action.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.models.base import RETURNED, SUBMITTED
from app.models.workflow import WorkflowStep
from app.services.approver_resolver import ApproverResolver, ResolutionContext
from app.services.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)

PRIMARY = "primary"
FALLBACK = "fallback"


@dataclass(frozen=True)
class LocatorContext:
    department_id: int | None
    requestor_id: int | None
    current_step_id: int | None = None

    @classmethod
    def for_request(cls, request) -> "LocatorContext":
        return cls(
            department_id=request.department_id,
            requestor_id=request.requestor_id,
            current_step_id=request.current_step_id,
        )

    @property
    def resolution(self) -> ResolutionContext:
        return ResolutionContext(department_id=self.department_id, requestor_id=self.requestor_id)


@dataclass(frozen=True)
class StepLocation:
    step: WorkflowStep
    tier: str


class StepLocator:

    def __init__(self, store: WorkflowStore, resolver: ApproverResolver):
        self.store = store
        self.resolver = resolver

    def locate(self, form_kind: str, user, request_status: str, context: LocatorContext) -> StepLocation | None:
        """Return the step *user* may act on, tagged with the tier that found it."""
        resolution = context.resolution

        if context.current_step_id is not None:
            step = self.store.get_step(context.current_step_id)
            if step is None:
                logger.warning(
                    "Request points at missing step %s; inferring from status",
                    context.current_step_id,
                    extra={"form_kind": form_kind, "step_id": context.current_step_id},
                )
            elif self.resolver.is_eligible(step, resolution, user):
                return self._found(step, PRIMARY, form_kind, user)

        definition = self.store.get_active(form_kind)
        if definition is None:
            return None

        for step in self._candidates(definition, request_status):
            if self.resolver.is_eligible(step, resolution, user):
                return self._found(step, FALLBACK, form_kind, user)
        return None

    def locate_for_status(self, form_kind: str, request_status: str, context: LocatorContext) -> WorkflowStep | None:
        """Current step of a request regardless of who is asking."""
        if context.current_step_id is not None:
            step = self.store.get_step(context.current_step_id)
            if step is not None:
                return step
        definition = self.store.get_active(form_kind)
        if definition is None:
            return None
        candidates = self._candidates(definition, request_status)
        return candidates[0] if candidates else None

    @staticmethod
    def _candidates(definition, request_status: str) -> list[WorkflowStep]:
        steps = list(definition.steps)
        if not steps:
            return []
        if request_status in (SUBMITTED, RETURNED):
            return steps[:1]
        for idx, step in enumerate(steps):
            if step.status_on_approval and step.status_on_approval == request_status:
                return steps[idx + 1:]
        return []

    @staticmethod
    def _found(step, tier: str, form_kind: str, user) -> StepLocation:
        logger.debug(
            "Located step %s (%s) for user %s via %s tier",
            step.id, step.step_name, user.id, tier,
            extra={"form_kind": form_kind, "step_id": step.id, "tier": tier, "user_id": user.id},
        )
        return StepLocation(step=step, tier=tier)

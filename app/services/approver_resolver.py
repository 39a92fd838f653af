"""
Approver resolution — which users may act on a request at a given step.

Strategies (``WorkflowStep.approver_strategy``):
    role        active users holding ``approver_role``; restricted to the
                request's department when ``requires_same_department``
    user        ``specific_approver_ids`` ∪ legacy ``approver_user_id``
    department  active department approvers of ``approver_department_id``,
                or of the request's department when the step has none and
                ``requires_same_department`` is set
    requestor   the request's own requestor

Resolution never raises and never writes: an unknown strategy or no match
yields an empty list, and the caller decides what an empty list means.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select

from app.models.directory import DEPARTMENT_APPROVER_ROLE, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionContext:
    department_id: int | None = None
    requestor_id: int | None = None

    @classmethod
    def for_request(cls, request) -> "ResolutionContext":
        return cls(department_id=request.department_id, requestor_id=request.requestor_id)


class ApproverResolver:

    def __init__(self, session):
        self.session = session

    # ── Directory queries ────────────────────────────────────────────────

    def _active(self, *criteria) -> list[User]:
        stmt = select(User).where(User.is_active.is_(True), *criteria).order_by(User.id)
        return list(self.session.execute(stmt).scalars())

    def by_role(self, role: str | None, department_id: int | None = None) -> list[User]:
        if not role:
            return []
        criteria = [User.role == role]
        if department_id is not None:
            criteria.append(User.department_id == department_id)
        return self._active(*criteria)

    def by_users(self, user_ids) -> list[User]:
        ids = sorted(set(user_ids))
        if not ids:
            return []
        return self._active(User.id.in_(ids))

    def by_department(self, department_id: int | None) -> list[User]:
        if department_id is None:
            return []
        return self._active(User.role == DEPARTMENT_APPROVER_ROLE, User.department_id == department_id)

    def requestor(self, requestor_id: int | None) -> list[User]:
        if requestor_id is None:
            return []
        user = self.session.get(User, requestor_id)
        return [user] if user is not None else []

    # ── Step resolution ──────────────────────────────────────────────────

    def resolve(self, step, context: ResolutionContext) -> list[User]:
        """Return the users who may act on *step*, ordered by id."""
        strategy = step.approver_strategy

        if strategy == "role":
            department_id = context.department_id if step.requires_same_department else None
            users = self.by_role(step.approver_role, department_id)
        elif strategy == "user":
            users = self.by_users(step.specific_user_ids())
        elif strategy == "department":
            department_id = step.approver_department_id
            if department_id is None and step.requires_same_department:
                department_id = context.department_id
            users = self.by_department(department_id)
        elif strategy == "requestor":
            users = self.requestor(context.requestor_id)
        else:
            logger.warning("Unknown approver strategy %r on step %s", strategy, step.id,
                           extra={"step_id": step.id})
            users = []

        if users:
            logger.debug(
                "Resolved %d approver(s) for step %s (%s)", len(users), step.id, strategy,
                extra={"step_id": step.id},
            )
        else:
            logger.warning(
                "No approvers resolved for step %s (%s, department=%s)",
                step.id, strategy, context.department_id,
                extra={"step_id": step.id},
            )
        return users

    def resolve_ids(self, step, context: ResolutionContext) -> list[int]:
        return [u.id for u in self.resolve(step, context)]

    def is_eligible(self, step, context: ResolutionContext, user) -> bool:
        return user is not None and user.id in self.resolve_ids(step, context)

"""
Approval transition engine — submit / approve / decline / return / cancel.

Lifecycle:
    draft → submitted → {step statuses}* → completed
    side exits: <stage>_declined | declined, returned, cancelled
    returned loops back through submit; declined / completed / cancelled are terminal

Design decisions:
    - One operation = one transaction.  The request row is read with
      SELECT … FOR UPDATE and carries an optimistic ``version`` column; a
      StaleDataError rolls back and replays the whole read-evaluate-write
      (up to ENGINE_MAX_RETRIES) so the ``all``-logic completion check is
      always evaluated against committed state.
    - Configured steps and legacy stages expose the same attributes, so
      one code path drives both.  Legacy stages have no ``id``: the
      pointer stays NULL and the stage is located by status.
    - A step that resolves to zero approvers aborts the operation
      (NoApproverError); it is never treated as trivially complete.
    - Declining an ``all`` step deletes the step's other pending rows.
    - Audit rows and notification emails are written after the transition
      commits, each in its own guarded commit: failures are logged and
      never undo the transition.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import delete, func, select
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    AuthorizationError,
    ConcurrentUpdateError,
    InvalidStateError,
    NoApproverError,
    NotFoundError,
    ValidationError,
    WorkflowConfigurationError,
)
from app.models.approval import ApprovalRecord
from app.models.base import CANCELLED, COMPLETED, DECLINED, DRAFT, RETURNED, SUBMITTED
from app.models.directory import DEPARTMENT_APPROVER_ROLE
from app.models.request import REQUEST_MODELS
from app.models.workflow import WorkflowStep
from app.services.approver_resolver import ApproverResolver, ResolutionContext
from app.services.audit_service import AuditRecorder
from app.services.legacy_fallback import LEGACY_STATUSES, LegacyStage, pipeline_for, vehicle_pool_department
from app.services.notification import ApprovalNotifier
from app.services.step_locator import LocatorContext, StepLocator
from app.services.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)

RETURN_TARGETS = ("requestor", "department_approver")
LEGACY_TIER = "legacy"


def is_terminal(request) -> bool:
    status = request.status or ""
    return (
        status in (COMPLETED, CANCELLED, DECLINED)
        or status.endswith("_declined")
        or request.completed_at is not None
    )


def is_actionable(request) -> bool:
    """True when an approver may approve / decline / return the request."""
    return request.status not in (DRAFT, RETURNED) and not is_terminal(request)


class TransitionEngine:
    """Stateless engine; every collaborator is handed in or built from *session*."""

    def __init__(self, session, notifier=None, auditor=None, config=None):
        self.session = session
        self.notifier = notifier or ApprovalNotifier()
        self.auditor = auditor or AuditRecorder()
        self.config = config if config is not None else current_app.config
        self.store = WorkflowStore(session)
        self.resolver = ApproverResolver(session)
        self.locator = StepLocator(self.store, self.resolver)
        self.max_retries = max(1, int(self.config.get("ENGINE_MAX_RETRIES", 3)))

    # ── Public operations ────────────────────────────────────────────────

    def submit(self, form_kind: str, request_id: int, actor):
        return self._run("submit", form_kind, request_id, actor, self._submit)

    def approve(self, form_kind: str, request_id: int, actor, *, comments=None,
                estimated_completion_date=None, processing_notes=None, signature=None):
        return self._run(
            "approve", form_kind, request_id, actor, self._approve,
            comments=comments,
            estimated_completion_date=estimated_completion_date,
            processing_notes=processing_notes,
            signature=signature,
        )

    def decline(self, form_kind: str, request_id: int, actor, *, comments=None, signature=None):
        return self._run("decline", form_kind, request_id, actor, self._decline,
                         comments=comments, signature=signature)

    def return_request(self, form_kind: str, request_id: int, actor, *, reason,
                       return_to: str = "requestor", signature=None):
        return self._run("return", form_kind, request_id, actor, self._return,
                         reason=reason, return_to=return_to, signature=signature)

    def cancel(self, form_kind: str, request_id: int, actor):
        return self._run("cancel", form_kind, request_id, actor, self._cancel)

    # ── Transaction / retry wrapper ──────────────────────────────────────

    def _run(self, op: str, form_kind: str, request_id: int, actor, handler, **kwargs):
        model = REQUEST_MODELS.get(form_kind)
        if model is None:
            raise ValidationError(f"Unknown form kind: {form_kind}", details={"form_kind": form_kind})

        for attempt in range(1, self.max_retries + 1):
            events: list = []
            try:
                request = self._load_for_update(model, request_id)
                from_status = request.status
                handler(request, actor, events, **kwargs)
                self.session.commit()
            except StaleDataError:
                self.session.rollback()
                logger.warning(
                    "Concurrent update on %s %s during %s (attempt %d/%d)",
                    form_kind, request_id, op, attempt, self.max_retries,
                    extra={"form_kind": form_kind, "entity_id": request_id, "attempt": attempt},
                )
                continue
            except Exception:
                self.session.rollback()
                raise

            logger.info(
                "%s %s: %s %s -> %s", op, form_kind, request_id, from_status, request.status,
                extra={
                    "form_kind": form_kind,
                    "entity_id": request_id,
                    "user_id": actor.id,
                    "from_status": from_status,
                    "to_status": request.status,
                },
            )
            self._dispatch(events)
            return request

        raise ConcurrentUpdateError()

    def _load_for_update(self, model, request_id: int):
        stmt = (
            select(model)
            .where(model.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        request = self.session.execute(stmt).scalars().first()
        if request is None:
            raise NotFoundError(resource=model.__name__, resource_id=request_id)
        return request

    def _dispatch(self, events) -> None:
        """Run post-commit side effects; each is committed or rolled back on its own."""
        for label, callback in events:
            try:
                callback()
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.exception("Post-commit %s failed", label)

    def _audit(self, events, actor, action: str, request, details: dict) -> None:
        events.append((
            f"audit {action}",
            lambda: self.auditor.record(actor.id, action, request.form_kind, request.id, details),
        ))

    def _notify(self, events, label: str, callback) -> None:
        events.append((f"notify {label}", callback))

    # ── Stage helpers (shared by configured steps and legacy stages) ─────

    def _pipeline(self, form_kind: str):
        return pipeline_for(form_kind, self.config)

    def _resolve(self, stage, request) -> list:
        if isinstance(stage, LegacyStage):
            return stage.approvers(self.resolver, request)
        return self.resolver.resolve(stage, ResolutionContext.for_request(request))

    def _next_stage(self, stage, form_kind: str):
        if isinstance(stage, LegacyStage):
            return self._pipeline(form_kind).next_stage(stage)
        return stage.workflow.step_after(stage)

    def _first_stage_of(self, stage, form_kind: str):
        if isinstance(stage, LegacyStage):
            return self._pipeline(form_kind).first_stage
        return stage.workflow.steps[0]

    def _set_status(self, request, status: str, stage=None) -> None:
        definition = stage.workflow if isinstance(stage, WorkflowStep) else None
        self.store.status_set(request.form_kind, definition).require(status)
        request.status = status

    @staticmethod
    def _set_pointer(request, stage, approvers) -> None:
        request.current_step_id = stage.id if stage is not None else None
        # Always assign a fresh list so the JSON column is flagged dirty.
        request.pending_approver_ids = sorted({u.id for u in approvers})

    @staticmethod
    def _clear_pointer(request) -> None:
        request.current_step_id = None
        request.pending_approver_ids = []

    def _records(self, request, approval_type: str, *criteria):
        stmt = (
            select(ApprovalRecord)
            .where(
                ApprovalRecord.form_kind == request.form_kind,
                ApprovalRecord.request_id == request.id,
                ApprovalRecord.approval_type == approval_type,
                *criteria,
            )
            .order_by(ApprovalRecord.id)
        )
        return list(self.session.execute(stmt).scalars())

    def _pending_count(self, request, approval_type: str) -> int:
        return self.session.execute(
            select(func.count(ApprovalRecord.id)).where(
                ApprovalRecord.form_kind == request.form_kind,
                ApprovalRecord.request_id == request.id,
                ApprovalRecord.approval_type == approval_type,
                ApprovalRecord.status == "pending",
            )
        ).scalar_one()

    def _open_records(self, request, stage, approvers) -> None:
        """Create or reset the pending ApprovalRecords for *stage*."""
        existing = self._records(request, stage.approval_type)

        if stage.approval_logic == "all":
            wanted = {u.id for u in approvers}
            by_approver = {r.approver_id: r for r in existing}
            for record in existing:
                if record.status == "pending" and record.approver_id not in wanted:
                    self.session.delete(record)
            for user in approvers:
                record = by_approver.get(user.id)
                if record is not None:
                    record.reset_to_pending()
                else:
                    self.session.add(ApprovalRecord(
                        form_kind=request.form_kind,
                        request_id=request.id,
                        approval_type=stage.approval_type,
                        approver_id=user.id,
                        status="pending",
                    ))
        else:
            if existing:
                existing[0].reset_to_pending(approver_id=approvers[0].id)
            else:
                self.session.add(ApprovalRecord(
                    form_kind=request.form_kind,
                    request_id=request.id,
                    approval_type=stage.approval_type,
                    approver_id=approvers[0].id,
                    status="pending",
                ))
        self.session.flush()

    def _actor_record(self, request, stage, actor) -> ApprovalRecord:
        """User-specific record, else the generic any-logic record, else a new one."""
        own = self._records(request, stage.approval_type, ApprovalRecord.approver_id == actor.id)
        pending_own = [r for r in own if r.status == "pending"]
        if pending_own:
            return pending_own[0]
        if stage.approval_logic == "all" and any(r.status == "approved" for r in own):
            raise InvalidStateError("You have already approved this step")
        if stage.approval_logic != "all":
            generic = self._records(request, stage.approval_type, ApprovalRecord.status == "pending")
            if generic:
                return generic[0]
        record = ApprovalRecord(
            form_kind=request.form_kind,
            request_id=request.id,
            approval_type=stage.approval_type,
            approver_id=actor.id,
            status="pending",
        )
        self.session.add(record)
        return record

    # ── Authority ────────────────────────────────────────────────────────

    def _legacy_applicable(self, request, definition) -> bool:
        if definition is None:
            return True
        if request.current_step_id is not None:
            return False
        return (
            request.status in LEGACY_STATUSES.get(request.form_kind, ())
            and request.status not in definition.declared_statuses()
        )

    def _locate(self, request, actor):
        """Return ``(stage, tier)`` the actor may act on, or raise AuthorizationError."""
        if not is_actionable(request):
            raise InvalidStateError(f"Request cannot be acted on in status '{request.status}'")

        location = self.locator.locate(
            request.form_kind, actor, request.status, LocatorContext.for_request(request),
        )
        if location is not None:
            return location.step, location.tier

        if self._legacy_applicable(request, self.store.get_active(request.form_kind)):
            stage = self._pipeline(request.form_kind).locate(actor, request, self.resolver)
            if stage is not None:
                return stage, LEGACY_TIER

        logger.warning(
            "Access denied: user %s on %s %s in status %s",
            actor.id, request.form_kind, request.id, request.status,
            extra={"form_kind": request.form_kind, "entity_id": request.id, "user_id": actor.id},
        )
        raise AuthorizationError()

    @staticmethod
    def _require_owner_or_admin(request, actor) -> None:
        if request.requestor_id != actor.id and not actor.is_admin:
            raise AuthorizationError()

    def _check_vehicle_assignment(self, request, actor) -> None:
        """Vehicle-pool approvers must assign driver, vehicle and date before approving."""
        if request.form_kind != "vehicle_request" or actor.role != DEPARTMENT_APPROVER_ROLE:
            return
        pool = vehicle_pool_department(self.session, self.config.get("VEHICLE_APPROVER_DEPARTMENT"))
        if pool is None or actor.department_id != pool.id:
            return
        if not request.has_assignment():
            raise ValidationError(
                "Assigned driver, vehicle and approval date are required before approval",
                details={
                    "assigned_driver": "required",
                    "assigned_vehicle": "required",
                    "approval_date": "required",
                },
            )

    # ── Handlers ─────────────────────────────────────────────────────────

    def _submit(self, request, actor, events):
        self._require_owner_or_admin(request, actor)
        if request.status not in (DRAFT, RETURNED):
            raise InvalidStateError(f"Only draft or returned requests can be submitted (status '{request.status}')")
        if request.form_kind == "item_request" and not request.items:
            raise ValidationError("At least one item is required", details={"items": "required"})

        definition = self.store.get_active(request.form_kind)
        if definition is not None:
            stage = self.store.first_step(definition)
        else:
            stage = self._pipeline(request.form_kind).first_stage

        approvers = self._resolve(stage, request)
        if not approvers:
            raise NoApproverError()

        from_status = request.status
        self._open_records(request, stage, approvers)
        self._set_status(request, SUBMITTED, stage)
        request.submitted_at = datetime.now(timezone.utc)
        request.completed_at = None
        self._set_pointer(request, stage if isinstance(stage, WorkflowStep) else None, approvers)

        requestor = request.requestor
        self._audit(events, actor, "SUBMIT", request, {
            "from_status": from_status,
            "to_status": SUBMITTED,
            "step": stage.approval_type,
            "pending_approver_ids": request.pending_approver_ids,
        })
        self._notify(events, "submitted",
                     lambda: self.notifier.notify_submitted(request, requestor, approvers[0], stage.approval_type))
        for approver in approvers:
            self._notify(events, "approval_required",
                         lambda a=approver: self.notifier.notify_approval_required(
                             request, requestor, a, stage.approval_type))

    def _approve(self, request, actor, events, *, comments=None, estimated_completion_date=None,
                 processing_notes=None, signature=None):
        stage, tier = self._locate(request, actor)
        self._check_vehicle_assignment(request, actor)

        record = self._actor_record(request, stage, actor)
        record.approve(
            actor.id,
            comments=comments,
            signature=signature,
            estimated_completion_date=estimated_completion_date,
            processing_notes=processing_notes,
        )
        self.session.flush()

        from_status = request.status
        complete = stage.approval_logic != "all" or self._pending_count(request, stage.approval_type) == 0

        if not complete:
            request.pending_approver_ids = [i for i in request.pending_ids() if i != actor.id]
            self._audit(events, actor, "APPROVE", request, {
                "from_status": from_status,
                "to_status": from_status,
                "step": stage.approval_type,
                "tier": tier,
                "step_complete": False,
                "comments": comments,
            })
            return

        next_stage = self._next_stage(stage, request.form_kind)
        next_approvers = []
        if next_stage is not None:
            if not stage.status_on_approval:
                raise WorkflowConfigurationError(
                    f"Step {stage.approval_type} has a successor but no status_on_approval"
                )
            next_approvers = self._resolve(next_stage, request)
            if not next_approvers:
                raise NoApproverError()
            self._set_status(request, stage.status_on_approval, stage)
            self._open_records(request, next_stage, next_approvers)
            self._set_pointer(request, next_stage if isinstance(next_stage, WorkflowStep) else None,
                              next_approvers)
        else:
            self._set_status(request, stage.status_on_completion or COMPLETED, stage)
            self._clear_pointer(request)
            request.completed_at = datetime.now(timezone.utc)

        requestor = request.requestor
        self._audit(events, actor, "APPROVE", request, {
            "from_status": from_status,
            "to_status": request.status,
            "step": stage.approval_type,
            "tier": tier,
            "step_complete": True,
            "next_step": next_stage.approval_type if next_stage is not None else None,
            "comments": comments,
        })
        self._notify(events, "approved",
                     lambda: self.notifier.notify_approved(request, requestor, actor, stage.approval_type))
        for approver in next_approvers:
            self._notify(events, "approval_required",
                         lambda a=approver: self.notifier.notify_approval_required(
                             request, requestor, a, next_stage.approval_type))

    def _decline(self, request, actor, events, *, comments=None, signature=None):
        stage, tier = self._locate(request, actor)
        if not getattr(stage, "can_decline", True):
            raise InvalidStateError(f"Requests cannot be declined at {stage.approval_type}")

        record = self._actor_record(request, stage, actor)
        record.decline(actor.id, comments=comments, signature=signature)
        self.session.flush()

        discarded = 0
        if stage.approval_logic == "all":
            discarded = self.session.execute(
                delete(ApprovalRecord)
                .where(
                    ApprovalRecord.form_kind == request.form_kind,
                    ApprovalRecord.request_id == request.id,
                    ApprovalRecord.approval_type == stage.approval_type,
                    ApprovalRecord.status == "pending",
                )
                .execution_options(synchronize_session="fetch")
            ).rowcount

        from_status = request.status
        self._set_status(request, stage.declined_status, stage)
        self._clear_pointer(request)

        requestor = request.requestor
        self._audit(events, actor, "DECLINE", request, {
            "from_status": from_status,
            "to_status": request.status,
            "step": stage.approval_type,
            "tier": tier,
            "discarded_pending": discarded,
            "comments": comments,
        })
        self._notify(events, "declined",
                     lambda: self.notifier.notify_declined(request, requestor, actor, stage.approval_type, comments))

    def _return(self, request, actor, events, *, reason, return_to="requestor", signature=None):
        if return_to not in RETURN_TARGETS:
            raise ValidationError(
                f"return_to must be one of {list(RETURN_TARGETS)}", details={"return_to": return_to},
            )
        if not (reason or "").strip():
            raise ValidationError("A return reason is required", details={"reason": "required"})

        stage, tier = self._locate(request, actor)
        if not getattr(stage, "can_return", True):
            raise InvalidStateError(f"Requests cannot be returned at {stage.approval_type}")

        record = self._actor_record(request, stage, actor)
        record.return_for_revision(actor.id, reason.strip(), signature=signature)
        self.session.flush()

        from_status = request.status
        if return_to == "department_approver" and stage.step_order > 1:
            first = self._first_stage_of(stage, request.form_kind)
            for first_record in self._records(request, first.approval_type):
                first_record.reset_to_pending()
            self._set_status(request, SUBMITTED, stage)
        else:
            self._set_status(request, RETURNED, stage)
            request.submitted_at = None
        self._clear_pointer(request)

        requestor = request.requestor
        self._audit(events, actor, "RETURN", request, {
            "from_status": from_status,
            "to_status": request.status,
            "step": stage.approval_type,
            "tier": tier,
            "return_to": return_to,
            "reason": reason,
        })
        self._notify(events, "returned",
                     lambda: self.notifier.notify_returned(request, requestor, actor, stage.approval_type, reason))

    def _cancel(self, request, actor, events):
        self._require_owner_or_admin(request, actor)
        if is_terminal(request):
            raise InvalidStateError(f"Request cannot be cancelled in status '{request.status}'")

        from_status = request.status
        self._set_status(request, CANCELLED)
        self._clear_pointer(request)
        self._audit(events, actor, "CANCEL", request, {"from_status": from_status, "to_status": CANCELLED})

"""
Backfill of ``pending_approver_ids`` / ``current_step_id``.

For every in-flight request (not draft, not returned, not terminal) the
current stage is located from the stored pointer or the status, approvers are
resolved, and the denormalized pending set is rewritten, minus anyone who
already decided an ``all`` step.  Requests whose stage cannot be determined
are left untouched and reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import select

from app.models.approval import ApprovalRecord
from app.models.request import REQUEST_MODELS
from app.services.approver_resolver import ApproverResolver
from app.services.legacy_fallback import pipeline_for
from app.services.step_locator import LocatorContext, StepLocator
from app.services.transition_engine import is_actionable
from app.services.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    scanned: int = 0
    updated: int = 0
    unchanged: int = 0
    unresolved: list = field(default_factory=list)

    def to_dict(self):
        return {
            "scanned": self.scanned,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "unresolved": self.unresolved,
        }


def _already_acted(session, request, stage) -> set[int]:
    """Approvers who already recorded a decision on an ``all`` step.

    They stay out of the pending set; an ``any`` step has nothing to exclude.
    """
    if stage.approval_logic != "all":
        return set()
    stmt = select(ApprovalRecord.approver_id).where(
        ApprovalRecord.form_kind == request.form_kind,
        ApprovalRecord.request_id == request.id,
        ApprovalRecord.approval_type == stage.approval_type,
        ApprovalRecord.status != "pending",
    )
    return {approver_id for approver_id in session.execute(stmt).scalars() if approver_id is not None}


def backfill_pending_approvers(session, config=None, dry_run: bool = False) -> BackfillReport:
    """Recompute the pending set of every in-flight request.

    Uses flush(); the caller commits (or rolls back for a dry run).
    """
    config = config if config is not None else current_app.config
    store = WorkflowStore(session)
    resolver = ApproverResolver(session)
    locator = StepLocator(store, resolver)
    report = BackfillReport()

    for form_kind, model in REQUEST_MODELS.items():
        pipeline = pipeline_for(form_kind, config)
        for request in session.execute(select(model).order_by(model.id)).scalars():
            if not is_actionable(request):
                continue
            report.scanned += 1

            step = locator.locate_for_status(form_kind, request.status, LocatorContext.for_request(request))
            if step is not None:
                approvers = resolver.resolve(step, LocatorContext.for_request(request).resolution)
                step_id = step.id
                stage = step
            else:
                stage = pipeline.stage_for_status(request.status)
                if stage is None:
                    report.unresolved.append({"form_kind": form_kind, "id": request.id, "status": request.status})
                    logger.warning("Backfill: no stage for %s %s in status %s",
                                   form_kind, request.id, request.status)
                    continue
                approvers = stage.approvers(resolver, request)
                step_id = None

            approved = _already_acted(session, request, stage)
            pending = sorted({u.id for u in approvers} - approved)
            if pending == request.pending_ids() and step_id == request.current_step_id:
                report.unchanged += 1
                continue

            logger.info(
                "Backfill %s %s: pending %s -> %s",
                form_kind, request.id, request.pending_ids(), pending,
                extra={"form_kind": form_kind, "entity_id": request.id},
            )
            if not dry_run:
                request.pending_approver_ids = pending
                request.current_step_id = step_id
            report.updated += 1

    session.flush()
    return report

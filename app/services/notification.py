"""
Approval notifications.

Turns approval engine events into templated emails via EmailService.
Each call writes EmailLog rows with flush(); the engine calls these after
the transition has committed and commits them separately, so a delivery
failure never undoes a transition.
"""

import logging

from app.services.email_service import EmailService

logger = logging.getLogger(__name__)

KIND_LABELS = {
    "item_request": "Item request",
    "vehicle_request": "Service vehicle request",
}


def stage_label(approval_type: str) -> str:
    """'it_manager_approval' -> 'It Manager Approval'."""
    return (approval_type or "").replace("_", " ").title()


class ApprovalNotifier:
    """Stateless notifier; one method per engine event."""

    @staticmethod
    def _context(request, **extra):
        requestor = getattr(request, "requestor", None)
        ctx = {
            "request_number": request.request_number,
            "kind_label": KIND_LABELS.get(request.form_kind, "Request"),
            "status": request.status,
            "requestor_name": requestor.full_name if requestor else "",
        }
        ctx.update({k: v for k, v in extra.items() if v is not None})
        return ctx

    @staticmethod
    def _send(user, template_name, category, request, ctx):
        if user is None or not user.email:
            logger.warning("Skipping %s email for %s: no recipient address", template_name, request.request_number)
            return None
        return EmailService.send_from_template(
            to_email=user.email,
            to_name=user.full_name,
            template_name=template_name,
            context=ctx,
            category=category,
            form_kind=request.form_kind,
            request_id=request.id,
        )

    def notify_submitted(self, request, requestor, primary_approver, stage=None):
        ctx = self._context(request, stage=stage_label(stage) if stage else "approval",
                            approver_name=primary_approver.full_name if primary_approver else None)
        return self._send(requestor, "request_submitted", "submitted", request, ctx)

    def notify_approval_required(self, request, requestor, approver, stage=None):
        ctx = self._context(request, stage=stage_label(stage) if stage else "approval")
        return self._send(approver, "approval_required", "approval_required", request, ctx)

    def notify_approved(self, request, requestor, approver, stage):
        ctx = self._context(request, stage=stage_label(stage), approver_name=approver.full_name)
        return self._send(requestor, "request_approved", "approved", request, ctx)

    def notify_declined(self, request, requestor, approver, stage, comments=None):
        ctx = self._context(request, stage=stage_label(stage), approver_name=approver.full_name,
                            comments=comments)
        return self._send(requestor, "request_declined", "declined", request, ctx)

    def notify_returned(self, request, requestor, approver, stage, reason=None):
        ctx = self._context(request, stage=stage_label(stage), approver_name=approver.full_name,
                            reason=reason or "")
        return self._send(requestor, "request_returned", "returned", request, ctx)

    def notify_verifier_assigned(self, request, verifier):
        ctx = self._context(request, verifier_name=verifier.full_name)
        return self._send(verifier, "verification_requested", "verification", request, ctx)

    def notify_verification_outcome(self, request, verifier, recipients, outcome, comments=None):
        """Tell the vehicle-pool approvers what the verifier decided."""
        ctx = self._context(request, verifier_name=verifier.full_name, outcome=outcome, comments=comments)
        return [self._send(user, "verification_completed", "verification", request, ctx) for user in recipients]

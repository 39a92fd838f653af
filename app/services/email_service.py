"""
Email Service.

Provides email sending capabilities with template support.
When SMTP is not configured, emails are logged but not sent (dev/test mode).

Uses:
    - MAIL_* config (MAIL_SERVER, MAIL_PORT, etc.)
    - Falls back to logging-only mode when SMTP is not configured
    - All emails are recorded in EmailLog for audit

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from app.models import db
from app.models.notification import EmailLog

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: {banner_color}; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
        <p style="margin: 4px 0 0; font-size: 13px;">{kind_label} {request_number}</p>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        <p style="color: #334155; line-height: 1.6;">{body}</p>
        {comments_block}
        <p><a href="{link}" style="color: #2563eb;">Open request</a></p>
    </div>
    <div style="background: #f1f5f9; padding: 12px 24px; border-radius: 0 0 8px 8px;
                border: 1px solid #e2e8f0; border-top: none; text-align: center;">
        <p style="color: #94a3b8; font-size: 12px; margin: 0;">Request Approval System — Automated notification</p>
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "request_submitted": {
        "subject": "[Requests] {request_number} submitted",
        "heading": "Request submitted",
        "banner_color": "#1e293b",
        "body": "Your request {request_number} was submitted and is awaiting {stage}.",
    },
    "approval_required": {
        "subject": "[Requests] Action required: {request_number}",
        "heading": "Approval required",
        "banner_color": "#f59e0b",
        "body": "{requestor_name} submitted {request_number}. It is waiting for your {stage}.",
    },
    "request_approved": {
        "subject": "[Requests] {request_number} approved at {stage}",
        "heading": "Request approved",
        "banner_color": "#16a34a",
        "body": "{approver_name} approved {request_number} ({stage}). Current status: {status}.",
    },
    "request_declined": {
        "subject": "[Requests] {request_number} declined",
        "heading": "Request declined",
        "banner_color": "#dc2626",
        "body": "{approver_name} declined {request_number} at {stage}.",
    },
    "request_returned": {
        "subject": "[Requests] {request_number} returned for revision",
        "heading": "Request returned",
        "banner_color": "#7c3aed",
        "body": "{approver_name} returned {request_number} at {stage}. Reason: {reason}",
    },
    "verification_requested": {
        "subject": "[Requests] Verification requested: {request_number}",
        "heading": "Verification requested",
        "banner_color": "#0891b2",
        "body": "You were asked to verify {request_number} from {requestor_name}.",
    },
    "verification_completed": {
        "subject": "[Requests] {request_number} {outcome} by verifier",
        "heading": "Verification completed",
        "banner_color": "#0891b2",
        "body": "{verifier_name} marked {request_number} as {outcome}.",
    },
}


class EmailService:
    """
    Email sending service with template support.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        return _TEMPLATES.get(template_name)

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        category: str = "system",
        form_kind: str | None = None,
        request_id: int | None = None,
    ) -> EmailLog:
        """
        Send an email and log it.

        Without SMTP the email is recorded with status='logged'.

        Returns:
            The EmailLog record for this email.
        """
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject,
            template_name=template_name,
            category=category,
            status="queued",
            form_kind=form_kind,
            request_id=request_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            log.status = "logged"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (log-only): to=%s subject='%s' template=%s",
                to_email, subject, template_name,
            )
            return log

        try:
            cls._send_smtp(to_email=to_email, to_name=to_name,
                           subject=subject, html_body=html_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc)

        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        template_name: str,
        context: dict[str, Any],
        category: str = "system",
        form_kind: str | None = None,
        request_id: int | None = None,
    ) -> EmailLog | None:
        """
        Send an email using a named template.

        Template variables are interpolated from the context dict.
        """
        template = cls.get_template(template_name)
        if not template:
            logger.warning("Email template not found: %s", template_name)
            return None

        ctx = _SafeDict(context)
        ctx.setdefault("link", current_app.config.get("FRONTEND_URL", ""))
        comments = context.get("comments")
        ctx["comments_block"] = (
            f'<p style="color: #64748b;"><em>{comments}</em></p>' if comments else ""
        )
        subject = template["subject"].format_map(ctx)
        html_body = _LAYOUT.format_map(_SafeDict(
            ctx,
            heading=template["heading"],
            banner_color=template["banner_color"],
            body=template["body"].format_map(ctx),
        ))

        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=subject,
            html_body=html_body,
            template_name=template_name,
            category=category,
            form_kind=form_kind,
            request_id=request_id,
        )

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> None:
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"

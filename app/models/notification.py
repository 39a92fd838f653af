"""
Notification domain model.

Models:
    - EmailLog: outbound email audit log written by EmailService
"""

from datetime import datetime, timezone

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

EMAIL_CATEGORIES = {"submitted", "approval_required", "approved", "declined", "returned", "system"}
EMAIL_STATUSES = {"queued", "sent", "failed", "logged"}


class EmailLog(db.Model):
    """
    Outbound email audit log.

    Every email sent through the platform is logged here, including the
    ones that were only logged because no SMTP server is configured.
    """

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    recipient_name = db.Column(db.String(150), nullable=True)
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True)
    category = db.Column(db.String(30), default="system")
    status = db.Column(db.String(20), default="queued", comment="queued, sent, failed, logged")
    error_message = db.Column(db.Text, nullable=True)

    # Linkage
    form_kind = db.Column(db.String(50), nullable=True)
    request_id = db.Column(db.Integer, nullable=True, index=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "subject": self.subject,
            "template_name": self.template_name,
            "category": self.category,
            "status": self.status,
            "error_message": self.error_message,
            "form_kind": self.form_kind,
            "request_id": self.request_id,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EmailLog {self.id}: {self.recipient_email} [{self.status}]>"

"""
Audit recording for request and workflow events.

Thin wrapper over ``write_audit`` so the approval engine depends on an
object it can be handed (and tests can replace) instead of a module
function.
"""

import logging

from sqlalchemy import select

from app.models.audit import AuditLog, write_audit

logger = logging.getLogger(__name__)


class AuditRecorder:

    def record(self, actor_id, action: str, entity_type: str, entity_id, details: dict | None = None):
        log = write_audit(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_user_id=actor_id,
            details=details,
        )
        logger.debug("Audit %s %s/%s by %s", action, entity_type, entity_id, actor_id)
        return log


def list_audit_entries(session, entity_type: str, entity_id) -> list[AuditLog]:
    stmt = (
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.timestamp, AuditLog.id)
    )
    return list(session.execute(stmt).scalars())

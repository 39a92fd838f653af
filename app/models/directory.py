"""
Directory models — departments and users.

Rows here are produced by the directory synchronisation job (LDAP/AD),
which is outside this application.  The approval engine only reads them:
lookups by id, by role and by department membership.
"""

from datetime import datetime, timezone

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

USER_ROLES = frozenset({
    "requestor",
    "department_approver",
    "it_manager",
    "service_desk",
    "super_administrator",
})

ADMIN_ROLE = "super_administrator"
DEPARTMENT_APPROVER_ROLE = "department_approver"


class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    users = db.relationship("User", back_populates="department", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Department {self.id}: {self.name}>"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), nullable=False, unique=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    title = db.Column(db.String(200))
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    role = db.Column(db.String(30), nullable=False, default="requestor", index=True,
                     comment="requestor | department_approver | it_manager | service_desk | super_administrator")
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    last_login_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    department = db.relationship("Department", back_populates="users")

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    # Legacy pipeline predicates (pre-workflow permission rules).

    def can_approve_for_department(self, department_id) -> bool:
        return self.role == DEPARTMENT_APPROVER_ROLE and self.department_id == department_id

    def can_approve_as_it_manager(self) -> bool:
        return self.role in ("it_manager", ADMIN_ROLE)

    def can_process_requests(self) -> bool:
        return self.role in ("service_desk", "it_manager", ADMIN_ROLE)

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "title": self.title,
            "department_id": self.department_id,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.username} ({self.role})>"

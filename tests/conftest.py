"""
Shared pytest fixtures for the Item Request Approval Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_department / make_user / make_workflow / make_item_request /
      make_vehicle_request: ORM factories
    - org: a small directory (requestor, approvers, IT, service desk, admin)
    - auth: builds the X-User-Id header for a user
"""

import itertools

import pytest

from app import create_app
from app.models import db as _db
from app.models.directory import Department, User
from app.services import request_service as rs
from app.services.workflow_store import WorkflowStore


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_department():
    def _make(name="Finance", is_active=True):
        dept = Department(name=name, is_active=is_active)
        _db.session.add(dept)
        _db.session.commit()
        return dept
    return _make


@pytest.fixture()
def make_user():
    seq = itertools.count(1)

    def _make(role="requestor", department=None, is_active=True):
        n = next(seq)
        user = User(
            username=f"{role}.{n}",
            email=f"{role}.{n}@example.com",
            first_name=role.replace("_", " ").title(),
            last_name=f"No{n}",
            role=role,
            department_id=department.id if department is not None else None,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user
    return _make


@pytest.fixture()
def make_workflow():
    def _make(form_kind="item_request", steps=None, name="Item approvals", **extra):
        data = {"form_kind": form_kind, "name": name, "steps": steps or [], **extra}
        definition = WorkflowStore(_db.session).create(data)
        _db.session.commit()
        return definition
    return _make


@pytest.fixture()
def make_item_request():
    def _make(requestor, department=None, items=None, **fields):
        data = {
            "reason": "Replacement for a broken laptop",
            "items": items or [
                {"category": "laptop", "item_description": "14in laptop", "quantity": 1, "estimated_cost": 1200},
            ],
            **fields,
        }
        if department is not None:
            data["department_id"] = department.id
        req = rs.create_request("item_request", data, requestor)
        _db.session.commit()
        return req
    return _make


@pytest.fixture()
def make_vehicle_request():
    def _make(requestor, department=None, **fields):
        data = {
            "purpose": "Site visit",
            "destination": "North plant",
            "travel_date_from": "2026-11-02",
            "travel_date_to": "2026-11-03",
            "passengers": ["A. Driver", "B. Passenger"],
            **fields,
        }
        if department is not None:
            data["department_id"] = department.id
        req = rs.create_request("vehicle_request", data, requestor)
        _db.session.commit()
        return req
    return _make


@pytest.fixture()
def org(make_department, make_user):
    """Finance department with one approver, plus company-wide roles."""
    finance = make_department("Finance")
    return {
        "finance": finance,
        "requestor": make_user("requestor", finance),
        "dept_approver": make_user("department_approver", finance),
        "it_manager": make_user("it_manager", finance),
        "service_desk": make_user("service_desk", finance),
        "admin": make_user("super_administrator", finance),
    }


@pytest.fixture()
def auth():
    def _headers(user):
        return {"X-User-Id": str(user.id)}
    return _headers

"""
TransitionEngine — submit / approve / decline / return / cancel.

Covers:
  - configured two-step workflow (any → all)
  - legacy item pipeline when no workflow exists
  - zero-approver resolution keeps the request in draft
  - pointer / pending set invariants after every transition
  - resubmission reuses approval records
  - decline under ``all`` discards sibling pending rows
  - retries on concurrent modification, including a real version conflict
  - post-commit side effects never undo a transition
"""

from datetime import date

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    AuthorizationError,
    ConcurrentUpdateError,
    InvalidStateError,
    NoApproverError,
    ValidationError,
)
from app.models import db as _db
from app.models.approval import ApprovalRecord
from app.models.audit import AuditLog
from app.models.request import ItemRequest
from app.services import request_service as rs
from app.services.transition_engine import TransitionEngine

IR = "item_request"
VR = "vehicle_request"


def _records(req, approval_type=None):
    stmt = select(ApprovalRecord).where(
        ApprovalRecord.form_kind == req.form_kind, ApprovalRecord.request_id == req.id,
    )
    if approval_type:
        stmt = stmt.where(ApprovalRecord.approval_type == approval_type)
    return list(_db.session.execute(stmt.order_by(ApprovalRecord.id)).scalars())


@pytest.fixture()
def engine():
    return TransitionEngine(_db.session)


@pytest.fixture()
def reviewers(org, make_user):
    return [make_user("service_desk", org["finance"]) for _ in range(2)]


@pytest.fixture()
def two_step(make_workflow, org, reviewers):
    """Step 1: IT manager (any). Step 2: two named reviewers (all)."""
    return make_workflow(steps=[
        {"step_order": 1, "step_name": "Manager Approval", "approver_strategy": "role",
         "approver_role": "it_manager", "approval_logic": "any", "status_on_approval": "manager_approved"},
        {"step_order": 2, "step_name": "Desk Review", "approver_strategy": "user",
         "specific_approver_ids": [u.id for u in reviewers], "approval_logic": "all"},
    ])


# ═════════════════════════════════════════════════════════════════════════
# Configured workflow
# ═════════════════════════════════════════════════════════════════════════

class TestConfiguredWorkflow:
    def test_any_then_all_scenario(self, engine, org, reviewers, two_step, make_item_request):
        step1, step2 = two_step.steps
        u1, u2 = reviewers
        req = make_item_request(org["requestor"])

        engine.submit(IR, req.id, org["requestor"])
        assert req.status == "submitted"
        assert req.current_step_id == step1.id
        assert req.pending_approver_ids == [org["it_manager"].id]

        engine.approve(IR, req.id, org["it_manager"])
        assert req.status == "manager_approved"
        assert req.current_step_id == step2.id
        assert req.pending_approver_ids == sorted([u1.id, u2.id])
        assert len(_records(req, "desk_review")) == 2

        engine.approve(IR, req.id, u1)
        assert req.status == "manager_approved"
        assert req.pending_approver_ids == [u2.id]

        engine.approve(IR, req.id, u2)
        assert req.status == "completed"
        assert req.current_step_id is None
        assert req.pending_approver_ids == []
        assert req.completed_at is not None

    def test_all_step_rejects_double_approval(self, engine, org, reviewers, two_step, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        engine.approve(IR, req.id, org["it_manager"])
        engine.approve(IR, req.id, reviewers[0])
        with pytest.raises(AuthorizationError):
            engine.approve(IR, req.id, org["requestor"])
        with pytest.raises(InvalidStateError):
            engine.approve(IR, req.id, reviewers[0])

    def test_status_on_completion_used_for_terminal_step(self, engine, org, make_workflow, make_item_request):
        make_workflow(steps=[
            {"step_order": 1, "step_name": "Manager Approval", "approver_strategy": "role",
             "approver_role": "it_manager", "status_on_completion": "ready_for_purchase"},
        ])
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        engine.approve(IR, req.id, org["it_manager"], comments="ok")
        assert req.status == "ready_for_purchase"
        assert req.pending_approver_ids == []
        assert req.current_step_id is None

    def test_non_approver_is_refused(self, engine, org, two_step, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        with pytest.raises(AuthorizationError):
            engine.approve(IR, req.id, org["dept_approver"])
        assert req.status == "submitted"

    def test_next_step_without_approvers_aborts(self, engine, org, make_workflow, make_item_request):
        make_workflow(steps=[
            {"step_order": 1, "step_name": "Manager Approval", "approver_strategy": "role",
             "approver_role": "it_manager", "status_on_approval": "manager_approved"},
            {"step_order": 2, "step_name": "Nobody Approval", "approver_strategy": "user",
             "specific_approver_ids": [9999]},
        ])
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        with pytest.raises(NoApproverError):
            engine.approve(IR, req.id, org["it_manager"])
        _db.session.expire_all()
        assert req.status == "submitted"
        assert _records(req, "manager_approval")[0].status == "pending"


# ═════════════════════════════════════════════════════════════════════════
# Decline / return / cancel
# ═════════════════════════════════════════════════════════════════════════

class TestSideExits:
    def test_decline_all_step_discards_pending_siblings(self, engine, org, reviewers, two_step, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        engine.approve(IR, req.id, org["it_manager"])

        engine.decline(IR, req.id, reviewers[0], comments="Over budget")

        assert req.status == "declined"
        assert req.current_step_id is None
        assert req.pending_approver_ids == []
        records = _records(req, "desk_review")
        assert [(r.approver_id, r.status) for r in records] == [(reviewers[0].id, "declined")]

    def test_decline_uses_derived_status(self, engine, org, two_step, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        engine.decline(IR, req.id, org["it_manager"])
        assert req.status == "manager_declined"
        with pytest.raises(InvalidStateError):
            engine.approve(IR, req.id, org["it_manager"])

    def test_return_to_requestor_and_resubmit(self, engine, org, reviewers, two_step, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        engine.approve(IR, req.id, org["it_manager"])

        engine.return_request(IR, req.id, reviewers[1], reason="Add specs")
        assert req.status == "returned"
        assert req.submitted_at is None
        assert req.current_step_id is None
        assert req.pending_approver_ids == []

        with pytest.raises(InvalidStateError):
            engine.approve(IR, req.id, reviewers[0])

        engine.submit(IR, req.id, org["requestor"])
        first = _records(req, "manager_approval")
        assert len(first) == 1
        assert first[0].status == "pending"
        assert req.pending_approver_ids == [org["it_manager"].id]

    def test_return_to_department_approver(self, engine, org, reviewers, two_step, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        engine.approve(IR, req.id, org["it_manager"])

        engine.return_request(IR, req.id, reviewers[0], reason="Manager must re-check",
                              return_to="department_approver")
        assert req.status == "submitted"
        assert req.current_step_id is None
        assert req.pending_approver_ids == []
        assert _records(req, "manager_approval")[0].status == "pending"

        engine.approve(IR, req.id, org["it_manager"])
        assert req.status == "manager_approved"

    def test_return_validation(self, engine, org, two_step, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        with pytest.raises(ValidationError):
            engine.return_request(IR, req.id, org["it_manager"], reason="x", return_to="nobody")
        with pytest.raises(ValidationError):
            engine.return_request(IR, req.id, org["it_manager"], reason="  ")

    def test_cancel(self, engine, org, two_step, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])

        with pytest.raises(AuthorizationError):
            engine.cancel(IR, req.id, org["it_manager"])

        engine.cancel(IR, req.id, org["requestor"])
        assert req.status == "cancelled"
        assert req.pending_approver_ids == []
        assert _records(req, "manager_approval")[0].status == "pending"

        with pytest.raises(InvalidStateError):
            engine.cancel(IR, req.id, org["requestor"])


# ═════════════════════════════════════════════════════════════════════════
# Submit rules
# ═════════════════════════════════════════════════════════════════════════

class TestSubmit:
    def test_no_approver_keeps_draft(self, engine, make_department, make_user, make_item_request):
        empty = make_department("Empty")
        requestor = make_user("requestor", empty)
        make_user("department_approver", empty, is_active=False)
        req = make_item_request(requestor)

        with pytest.raises(NoApproverError, match="No approver found"):
            engine.submit(IR, req.id, requestor)

        _db.session.expire_all()
        assert _db.session.get(ItemRequest, req.id).status == "draft"
        assert _records(req) == []

    def test_only_owner_or_admin(self, engine, org, make_item_request):
        req = make_item_request(org["requestor"])
        with pytest.raises(AuthorizationError):
            engine.submit(IR, req.id, org["dept_approver"])
        engine.submit(IR, req.id, org["admin"])
        assert req.status == "submitted"

    def test_cannot_submit_twice(self, engine, org, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        with pytest.raises(InvalidStateError):
            engine.submit(IR, req.id, org["requestor"])

    def test_item_request_needs_items(self, engine, org, make_item_request):
        req = make_item_request(org["requestor"])
        req.items = []
        _db.session.commit()
        with pytest.raises(ValidationError):
            engine.submit(IR, req.id, org["requestor"])

    def test_approve_draft_is_invalid(self, engine, org, make_item_request):
        req = make_item_request(org["requestor"])
        with pytest.raises(InvalidStateError):
            engine.approve(IR, req.id, org["dept_approver"])


# ═════════════════════════════════════════════════════════════════════════
# Legacy pipelines
# ═════════════════════════════════════════════════════════════════════════

class TestLegacyPipeline:
    def test_item_request_full_sequence(self, engine, org, make_item_request):
        req = make_item_request(org["requestor"])

        engine.submit(IR, req.id, org["requestor"])
        assert req.status == "submitted"
        assert req.current_step_id is None
        assert req.pending_approver_ids == [org["dept_approver"].id]

        engine.approve(IR, req.id, org["dept_approver"])
        assert req.status == "department_approved"
        assert req.pending_approver_ids == [org["it_manager"].id]

        engine.approve(IR, req.id, org["it_manager"])
        assert req.status == "it_manager_approved"
        assert req.pending_approver_ids == [org["service_desk"].id]

        engine.approve(IR, req.id, org["service_desk"], processing_notes="Ordered",
                       estimated_completion_date=date(2026, 11, 20))
        assert req.status == "service_desk_processing"
        assert req.pending_approver_ids == [org["service_desk"].id]

        engine.approve(IR, req.id, org["service_desk"])
        assert req.status == "completed"
        assert req.pending_approver_ids == []
        assert req.completed_at is not None

        processing = _records(req, "service_desk_processing")[0]
        assert processing.processing_notes == "Ordered"
        assert processing.estimated_completion_date == date(2026, 11, 20)

    def test_department_decline(self, engine, org, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        engine.decline(IR, req.id, org["dept_approver"], comments="No budget")
        assert req.status == "department_declined"

    def test_service_desk_cannot_decline(self, engine, org, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        engine.approve(IR, req.id, org["dept_approver"])
        engine.approve(IR, req.id, org["it_manager"])
        with pytest.raises(InvalidStateError):
            engine.decline(IR, req.id, org["service_desk"])

    def test_it_manager_returns_to_department_approver(self, engine, org, make_item_request):
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        engine.approve(IR, req.id, org["dept_approver"])
        engine.return_request(IR, req.id, org["it_manager"], reason="Check cost centre",
                              return_to="department_approver")
        assert req.status == "submitted"
        assert _records(req, "department_approval")[0].status == "pending"
        engine.approve(IR, req.id, org["dept_approver"])
        assert req.status == "department_approved"

    def test_other_department_approver_refused(self, engine, org, make_department, make_user, make_item_request):
        outsider = make_user("department_approver", make_department("HR"))
        req = make_item_request(org["requestor"])
        engine.submit(IR, req.id, org["requestor"])
        with pytest.raises(AuthorizationError):
            engine.approve(IR, req.id, outsider)

    def test_legacy_status_still_drivable_after_workflow_configured(self, engine, org, two_step,
                                                                     make_item_request):
        req = make_item_request(org["requestor"])
        req.status = "department_approved"
        _db.session.commit()

        engine.approve(IR, req.id, org["it_manager"])
        assert req.status == "it_manager_approved"
        assert req.current_step_id is None


class TestVehiclePipeline:
    @pytest.fixture()
    def pool(self, make_department, make_user):
        odhc = make_department("ODHC")
        return {"department": odhc, "approver": make_user("department_approver", odhc)}

    def test_pool_approver_must_assign_before_approval(self, engine, org, pool, make_vehicle_request):
        req = make_vehicle_request(org["requestor"])
        engine.submit(VR, req.id, org["requestor"])
        assert req.pending_approver_ids == [pool["approver"].id]

        with pytest.raises(ValidationError):
            engine.approve(VR, req.id, pool["approver"])

        rs.assign_vehicle(req.id, {"assigned_driver": "J. Cruz", "assigned_vehicle": 7,
                                   "approval_date": "2026-10-30"}, pool["approver"], "ODHC")
        _db.session.commit()

        engine.approve(VR, req.id, pool["approver"])
        assert req.status == "completed"
        assert req.pending_approver_ids == []

    def test_request_department_approver_cannot_act_when_pool_exists(self, engine, org, pool,
                                                                     make_vehicle_request):
        req = make_vehicle_request(org["requestor"])
        engine.submit(VR, req.id, org["requestor"])
        with pytest.raises(AuthorizationError):
            engine.approve(VR, req.id, org["dept_approver"])

    def test_falls_back_to_request_department(self, engine, org, make_vehicle_request):
        req = make_vehicle_request(org["requestor"])
        engine.submit(VR, req.id, org["requestor"])
        assert req.pending_approver_ids == [org["dept_approver"].id]
        engine.decline(VR, req.id, org["dept_approver"])
        assert req.status == "declined"


# ═════════════════════════════════════════════════════════════════════════
# Transactions
# ═════════════════════════════════════════════════════════════════════════

class TestTransactions:
    def test_retries_then_gives_up(self, engine, org, make_item_request, monkeypatch):
        req = make_item_request(org["requestor"])
        calls = []

        def _always_stale(request, actor, events):
            calls.append(1)
            raise StaleDataError("row changed")

        monkeypatch.setattr(engine, "_cancel", _always_stale)
        with pytest.raises(ConcurrentUpdateError):
            engine.cancel(IR, req.id, org["requestor"])
        assert len(calls) == 3

    def test_retry_succeeds_on_second_attempt(self, engine, org, make_item_request, monkeypatch):
        req = make_item_request(org["requestor"])
        real_cancel = engine._cancel
        calls = []

        def _stale_once(request, actor, events):
            calls.append(1)
            if len(calls) == 1:
                raise StaleDataError("row changed")
            return real_cancel(request, actor, events)

        monkeypatch.setattr(engine, "_cancel", _stale_once)
        engine.cancel(IR, req.id, org["requestor"])
        assert req.status == "cancelled"
        assert len(calls) == 2

    def test_notification_failure_does_not_undo_transition(self, org, make_item_request):
        class BrokenNotifier:
            def __getattr__(self, name):
                def _fail(*args, **kwargs):
                    raise RuntimeError("smtp down")
                return _fail

        req = make_item_request(org["requestor"])
        TransitionEngine(_db.session, notifier=BrokenNotifier()).submit(IR, req.id, org["requestor"])

        _db.session.expire_all()
        assert _db.session.get(ItemRequest, req.id).status == "submitted"
        actions = [a.action for a in _db.session.execute(
            select(AuditLog).where(AuditLog.entity_type == IR, AuditLog.entity_id == str(req.id))
        ).scalars()]
        assert "SUBMIT" in actions

    def test_concurrent_all_step_approvals_complete_the_step_once(self, org, reviewers, make_workflow,
                                                                 make_item_request, monkeypatch):
        if _db.engine.dialect.name != "sqlite":
            pytest.skip("interleaves two sessions on one thread; row locks would block on this backend")

        definition = make_workflow(steps=[
            {"step_order": 1, "step_name": "Desk Review", "approver_strategy": "user",
             "specific_approver_ids": [u.id for u in reviewers], "approval_logic": "all",
             "status_on_approval": "desk_reviewed"},
            {"step_order": 2, "step_name": "Manager Approval", "approver_strategy": "role",
             "approver_role": "it_manager"},
        ])
        step1, step2 = definition.steps
        u1, u2 = reviewers
        req = make_item_request(org["requestor"])
        TransitionEngine(_db.session).submit(IR, req.id, org["requestor"])
        submitted_version = req.version

        audits = []

        class RecordingAuditor:
            def record(self, actor_id, action, entity_type, entity_id, details=None):
                audits.append((action, actor_id, dict(details or {})))

        class QuietNotifier:
            def __getattr__(self, name):
                return lambda *args, **kwargs: None

        engine_a = TransitionEngine(_db.session, notifier=QuietNotifier(), auditor=RecordingAuditor())
        other = Session(_db.engine)
        engine_b = TransitionEngine(other, notifier=QuietNotifier(), auditor=RecordingAuditor())

        real_locate = engine_b._locate
        seen_versions = []

        def _locate_then_interleave(request, actor):
            seen_versions.append(request.version)
            location = real_locate(request, actor)
            if len(seen_versions) == 1:
                # u1's approval commits after B has read the row but before B writes.
                engine_a.approve(IR, req.id, u1)
            return location

        monkeypatch.setattr(engine_b, "_locate", _locate_then_interleave)
        try:
            engine_b.approve(IR, req.id, u2)
        finally:
            other.close()

        assert len(seen_versions) == 2
        assert seen_versions[0] == submitted_version
        assert seen_versions[1] > submitted_version

        _db.session.expire_all()
        fresh = _db.session.get(ItemRequest, req.id)
        assert fresh.status == "desk_reviewed"
        assert fresh.current_step_id == step2.id
        assert fresh.pending_approver_ids == [org["it_manager"].id]

        assert sorted((r.approver_id, r.status) for r in _records(fresh, "desk_review")) == sorted(
            [(u1.id, "approved"), (u2.id, "approved")]
        )
        next_step_rows = _records(fresh, "manager_approval")
        assert [(r.approver_id, r.status) for r in next_step_rows] == [(org["it_manager"].id, "pending")]

        approvals = [(actor_id, details) for action, actor_id, details in audits if action == "APPROVE"]
        assert [(actor_id, d["step_complete"]) for actor_id, d in approvals] == [(u1.id, False), (u2.id, True)]
        assert approvals[1][1]["next_step"] == "manager_approval"

"""
Vehicle-request verification — verifier assignment, verdicts, visibility and stats.
"""

import pytest
from sqlalchemy import select

from app.models import db as _db
from app.models.audit import AuditLog
from app.models.notification import EmailLog

VEHICLES_URL = "/api/v1/service-vehicle-requests"


def _emails(template_name):
    stmt = select(EmailLog).where(EmailLog.template_name == template_name).order_by(EmailLog.id)
    return list(_db.session.execute(stmt).scalars())


@pytest.fixture()
def pool_approver(make_department, make_user):
    return make_user("department_approver", make_department("ODHC"))


@pytest.fixture()
def verifier(org, make_user):
    return make_user("requestor", org["finance"])


@pytest.fixture()
def submitted(client, org, auth, pool_approver):
    rid = client.post(VEHICLES_URL, json={"purpose": "Client visit", "destination": "Harbour"},
                      headers=auth(org["requestor"])).get_json()["id"]
    res = client.post(f"{VEHICLES_URL}/{rid}/submit", headers=auth(org["requestor"]))
    assert res.status_code == 200
    return rid


def _assign(client, auth, rid, actor, verifier_id):
    return client.post(f"{VEHICLES_URL}/{rid}/assign-verifier", json={"verifier_id": verifier_id},
                       headers=auth(actor))


class TestAssignVerifier:
    def test_pool_approver_assigns(self, client, auth, submitted, pool_approver, verifier):
        res = _assign(client, auth, submitted, pool_approver, verifier.id)
        assert res.status_code == 200
        data = res.get_json()
        assert data["verifier_id"] == verifier.id
        assert data["verification_status"] == "pending"
        assert data["status"] == "submitted"

        emails = _emails("verification_requested")
        assert [e.recipient_email for e in emails] == [verifier.email]

        log = _db.session.execute(
            select(AuditLog).where(AuditLog.entity_type == "vehicle_request", AuditLog.action == "UPDATE")
        ).scalar_one()
        assert log.details == {"verifier_id": verifier.id, "verification_status": "pending"}

    def test_admin_may_assign(self, client, auth, org, submitted, verifier):
        assert _assign(client, auth, submitted, org["admin"], verifier.id).status_code == 200

    def test_other_department_approver_refused(self, client, auth, org, submitted, verifier):
        assert _assign(client, auth, submitted, org["dept_approver"], verifier.id).status_code == 403

    def test_requestor_role_refused(self, client, auth, org, submitted, verifier):
        res = _assign(client, auth, submitted, org["requestor"], verifier.id)
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_unknown_or_missing_verifier(self, client, auth, submitted, pool_approver):
        assert _assign(client, auth, submitted, pool_approver, 999).status_code == 404
        res = client.post(f"{VEHICLES_URL}/{submitted}/assign-verifier", json={}, headers=auth(pool_approver))
        assert res.status_code == 422
        assert res.get_json()["details"]["verifier_id"] == "required"

    def test_inactive_verifier_refused(self, client, auth, org, submitted, pool_approver, make_user):
        ghost = make_user("requestor", org["finance"], is_active=False)
        assert _assign(client, auth, submitted, pool_approver, ghost.id).status_code == 422

    def test_draft_cannot_get_verifier(self, client, auth, org, pool_approver, verifier):
        rid = client.post(VEHICLES_URL, json={"purpose": "Trip", "destination": "Port"},
                          headers=auth(org["requestor"])).get_json()["id"]
        assert _assign(client, auth, rid, pool_approver, verifier.id).status_code == 400

    def test_reassignment_resets_outcome(self, client, auth, org, submitted, pool_approver, verifier, make_user):
        _assign(client, auth, submitted, pool_approver, verifier.id)
        client.post(f"{VEHICLES_URL}/{submitted}/verify", json={"status": "declined", "comments": "Wrong date"},
                    headers=auth(verifier))

        second = make_user("requestor", org["finance"])
        data = _assign(client, auth, submitted, pool_approver, second.id).get_json()
        assert data["verifier_id"] == second.id
        assert data["verification_status"] == "pending"
        assert data["verified_at"] is None
        assert data["verifier_comments"] is None


class TestVerify:
    def test_verifier_records_outcome(self, client, auth, submitted, pool_approver, verifier):
        _assign(client, auth, submitted, pool_approver, verifier.id)
        res = client.post(f"{VEHICLES_URL}/{submitted}/verify", json={"status": "verified", "comments": "Checked"},
                          headers=auth(verifier))
        assert res.status_code == 200
        data = res.get_json()
        assert data["verification_status"] == "verified"
        assert data["verifier_comments"] == "Checked"
        assert data["verified_at"] is not None
        assert data["status"] == "submitted"

        outcome = _emails("verification_completed")
        assert [e.recipient_email for e in outcome] == [pool_approver.email]
        assert "verified" in outcome[0].subject

    def test_only_assigned_verifier(self, client, auth, org, submitted, pool_approver, verifier):
        _assign(client, auth, submitted, pool_approver, verifier.id)
        res = client.post(f"{VEHICLES_URL}/{submitted}/verify", json={"status": "verified"},
                          headers=auth(pool_approver))
        assert res.status_code == 403
        assert "assigned verifier" in res.get_json()["error"]

    def test_invalid_outcome(self, client, auth, submitted, pool_approver, verifier):
        _assign(client, auth, submitted, pool_approver, verifier.id)
        res = client.post(f"{VEHICLES_URL}/{submitted}/verify", json={"status": "maybe"}, headers=auth(verifier))
        assert res.status_code == 422

    def test_cannot_verify_twice(self, client, auth, submitted, pool_approver, verifier):
        _assign(client, auth, submitted, pool_approver, verifier.id)
        url = f"{VEHICLES_URL}/{submitted}/verify"
        assert client.post(url, json={"status": "verified"}, headers=auth(verifier)).status_code == 200
        res = client.post(url, json={"status": "declined"}, headers=auth(verifier))
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_INVALID_STATE"

    def test_verification_does_not_block_approval(self, client, auth, submitted, pool_approver, verifier):
        _assign(client, auth, submitted, pool_approver, verifier.id)
        client.put(f"{VEHICLES_URL}/{submitted}/assignment", json={
            "assigned_driver": "J. Cruz", "assigned_vehicle": 4, "approval_date": "2026-10-22",
        }, headers=auth(pool_approver))
        res = client.post(f"{VEHICLES_URL}/{submitted}/approve", headers=auth(pool_approver))
        assert res.status_code == 200
        assert res.get_json()["status"] == "completed"
        assert res.get_json()["verification_status"] == "pending"


class TestVisibilityAndStats:
    def test_verifier_sees_request_while_pending(self, client, auth, org, submitted, pool_approver, verifier,
                                                 make_user):
        outsider = make_user("requestor", org["finance"])
        assert client.get(f"{VEHICLES_URL}/{submitted}", headers=auth(verifier)).status_code == 403

        _assign(client, auth, submitted, pool_approver, verifier.id)
        assert client.get(f"{VEHICLES_URL}/{submitted}", headers=auth(verifier)).status_code == 200
        assert client.get(f"{VEHICLES_URL}/{submitted}", headers=auth(outsider)).status_code == 403

        client.post(f"{VEHICLES_URL}/{submitted}/verify", json={"status": "verified"}, headers=auth(verifier))
        assert client.get(f"{VEHICLES_URL}/{submitted}", headers=auth(verifier)).status_code == 403

    def test_pending_verification_filter(self, client, auth, submitted, pool_approver, verifier):
        res = client.get(f"{VEHICLES_URL}?pending_verification=me", headers=auth(verifier))
        assert res.get_json()["total"] == 0

        _assign(client, auth, submitted, pool_approver, verifier.id)
        data = client.get(f"{VEHICLES_URL}?pending_verification=me", headers=auth(verifier)).get_json()
        assert [r["id"] for r in data["items"]] == [submitted]

        res = client.get("/api/v1/requests?pending_verification=me", headers=auth(verifier))
        assert res.status_code == 422

    def test_stats_count_verification_states(self, client, auth, org, submitted, pool_approver, verifier):
        _assign(client, auth, submitted, pool_approver, verifier.id)
        stats = client.get(f"{VEHICLES_URL}/stats", headers=auth(org["admin"])).get_json()
        assert stats["by_verification_status"] == {"pending": 1, "verified": 0, "declined": 0}

        client.post(f"{VEHICLES_URL}/{submitted}/verify", json={"status": "declined"}, headers=auth(verifier))
        stats = client.get(f"{VEHICLES_URL}/stats", headers=auth(org["admin"])).get_json()
        assert stats["by_verification_status"] == {"pending": 0, "verified": 0, "declined": 1}

        item_stats = client.get("/api/v1/requests/stats", headers=auth(org["admin"])).get_json()
        assert "by_verification_status" not in item_stats

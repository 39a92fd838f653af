"""
Workflow administration endpoints (super administrators only).
"""

import pytest

URL = "/api/v1/workflows"


def _payload(**extra):
    data = {
        "form_kind": "item_request",
        "name": "Item approvals",
        "steps": [
            {"step_order": 1, "step_name": "Department Approval", "approver_strategy": "department",
             "requires_same_department": True, "status_on_approval": "department_approved"},
            {"step_order": 2, "step_name": "IT Manager Approval", "approver_strategy": "role",
             "approver_role": "it_manager"},
        ],
    }
    data.update(extra)
    return data


@pytest.fixture()
def workflow(client, org, auth):
    res = client.post(URL, json=_payload(), headers=auth(org["admin"]))
    assert res.status_code == 201
    return res.get_json()


class TestAccess:
    def test_requires_admin(self, client, org, auth):
        res = client.get(URL, headers=auth(org["it_manager"]))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_requires_user(self, client):
        assert client.get(URL).status_code == 401


class TestCrud:
    def test_create(self, workflow):
        assert workflow["version"] == 1
        assert workflow["is_active"] is True
        assert [s["approval_type"] for s in workflow["steps"]] == ["department_approval", "it_manager_approval"]

    def test_create_with_gap_fails(self, client, org, auth):
        payload = _payload()
        payload["steps"][1]["step_order"] = 3
        res = client.post(URL, json=payload, headers=auth(org["admin"]))
        assert res.status_code == 422
        assert "steps.step_order" in res.get_json()["details"]

    def test_second_default_conflicts(self, client, workflow, org, auth):
        res = client.post(URL, json=_payload(name="Again"), headers=auth(org["admin"]))
        assert res.status_code == 409

    def test_list_and_filter(self, client, workflow, org, auth):
        res = client.get(f"{URL}?form_kind=item_request", headers=auth(org["admin"]))
        assert res.get_json()["total"] == 1
        res = client.get(f"{URL}?form_kind=vehicle_request", headers=auth(org["admin"]))
        assert res.get_json()["total"] == 0
        res = client.get(f"{URL}?form_kind=bogus", headers=auth(org["admin"]))
        assert res.status_code == 400

    def test_get_and_active(self, client, workflow, org, auth):
        res = client.get(f"{URL}/{workflow['id']}", headers=auth(org["admin"]))
        assert res.get_json()["name"] == "Item approvals"
        res = client.get(f"{URL}/active/item_request", headers=auth(org["admin"]))
        assert res.get_json()["id"] == workflow["id"]
        res = client.get(f"{URL}/active/vehicle_request", headers=auth(org["admin"]))
        assert res.status_code == 404

    def test_get_missing(self, client, org, auth):
        assert client.get(f"{URL}/999", headers=auth(org["admin"])).status_code == 404

    def test_update_steps_creates_version(self, client, workflow, org, auth):
        steps = _payload()["steps"][:1]
        steps[0].pop("status_on_approval")
        res = client.put(f"{URL}/{workflow['id']}", json={"steps": steps}, headers=auth(org["admin"]))
        assert res.status_code == 200
        data = res.get_json()
        assert data["version"] == 2
        assert data["previous_version_id"] == workflow["id"]
        assert len(data["steps"]) == 1

        old = client.get(f"{URL}/{workflow['id']}", headers=auth(org["admin"])).get_json()
        assert old["is_active"] is False

    def test_delete(self, client, workflow, org, auth):
        res = client.delete(f"{URL}/{workflow['id']}", headers=auth(org["admin"]))
        assert res.status_code == 200
        assert client.get(f"{URL}/{workflow['id']}", headers=auth(org["admin"])).status_code == 404

    def test_delete_refused_with_requests_in_flight(self, client, workflow, org, auth):
        rid = client.post("/api/v1/requests", json={
            "items": [{"category": "ups", "item_description": "UPS", "quantity": 1}],
        }, headers=auth(org["requestor"])).get_json()["id"]
        res = client.post(f"/api/v1/requests/{rid}/submit", headers=auth(org["requestor"]))
        assert res.get_json()["current_step_id"] == workflow["steps"][0]["id"]

        res = client.delete(f"{URL}/{workflow['id']}", headers=auth(org["admin"]))
        assert res.status_code == 422

    def test_configured_workflow_drives_requests(self, client, workflow, org, auth):
        rid = client.post("/api/v1/requests", json={
            "items": [{"category": "keyboard", "item_description": "Keyboard", "quantity": 1}],
        }, headers=auth(org["requestor"])).get_json()["id"]
        client.post(f"/api/v1/requests/{rid}/submit", headers=auth(org["requestor"]))
        client.post(f"/api/v1/requests/{rid}/approve", headers=auth(org["dept_approver"]))
        res = client.post(f"/api/v1/requests/{rid}/approve", headers=auth(org["it_manager"]))
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "completed"
        assert [a["approval_type"] for a in data["approvals"]] == ["department_approval", "it_manager_approval"]

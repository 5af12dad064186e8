"""
HTTP API tests (FastAPI TestClient, in-memory store).

Tests cover:
  - Health check and the system-user default actor
  - Plan → commit → dual signature → blocked edit (409) → draft variation
  - Certificate generation and signing through to the billing view
  - Error mapping: 401 bad bearer, 403 missing capability, 404, 422
"""

import uuid

import pytest

API = "/api/v1"


def _auth(user_id):
    return {"Authorization": f"Bearer {user_id}"}


def _create_user(client, name, email):
    resp = client.post(f"{API}/users", json={"full_name": name, "email": email})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["id"]


@pytest.fixture()
def world(client):
    """A project with a supplier PM, a customer PM and one committed milestone."""
    supplier = _create_user(client, "Sam Supplier", "sam@acme-systems.co.uk")
    customer = _create_user(client, "Cara Customer", "cara@buyer-corp.co.uk")

    resp = client.post(f"{API}/projects", json={"reference": "PRJ-100", "name": "Data Centre Move"})
    assert resp.status_code == 201, resp.text
    project_id = resp.json()["data"]["id"]

    for user_id, role in ((supplier, "supplier_pm"), (customer, "customer_pm")):
        resp = client.post(f"{API}/projects/{project_id}/members", json={"user_id": user_id, "role": role})
        assert resp.status_code == 201, resp.text

    resp = client.post(
        f"{API}/projects/{project_id}/plan/items",
        json={
            "item_type": "milestone",
            "name": "Migration",
            "wbs": "1",
            "sort_order": 1,
            "start_date": "2026-01-01",
            "end_date": "2026-03-31",
            "billable": "10000",
        },
        headers=_auth(supplier),
    )
    assert resp.status_code == 201, resp.text
    milestone_item = resp.json()["data"]["id"]
    resp = client.post(
        f"{API}/projects/{project_id}/plan/items",
        json={"item_type": "deliverable", "name": "Cutover plan", "parent_id": milestone_item, "sort_order": 2},
        headers=_auth(supplier),
    )
    assert resp.status_code == 201, resp.text

    resp = client.post(f"{API}/projects/{project_id}/plan/commit", headers=_auth(supplier))
    assert resp.status_code == 200, resp.text
    committed = resp.json()["data"]
    assert committed["count"] == 2

    return {
        "supplier": supplier,
        "customer": customer,
        "project_id": project_id,
        "milestone_item": milestone_item,
        "milestone_id": committed["milestones"][0]["id"],
        "deliverable_id": committed["deliverables"][0]["id"],
    }


def _lock(client, world):
    base = f"{API}/milestones/{world['milestone_id']}/baseline"
    first = client.post(f"{base}/sign", json={"party": "supplier"}, headers=_auth(world["supplier"]))
    assert first.status_code == 200, first.text
    assert first.json()["data"]["status"] == "Awaiting Customer"
    second = client.post(f"{base}/sign", json={"party": "customer"}, headers=_auth(world["customer"]))
    assert second.status_code == 200, second.text
    return second.json()["data"]


# ═════════════════════════════════════════════════════════════════════════
# BASICS
# ═════════════════════════════════════════════════════════════════════════

class TestBasics:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_creator_becomes_admin(self, client, world):
        resp = client.get(f"{API}/projects/{world['project_id']}/members")
        roles = {m["role"] for m in resp.json()["data"] if m["user_id"] == "00000000-0000-0000-0000-000000000001"}
        assert roles == {"admin"}


# ═════════════════════════════════════════════════════════════════════════
# GOVERNANCE FLOW
# ═════════════════════════════════════════════════════════════════════════

class TestGovernanceFlow:
    def test_second_signature_locks(self, client, world):
        status = _lock(client, world)
        assert status["status"] == "Locked"
        assert status["baseline_locked"] is True

        history = client.get(f"{API}/milestones/{world['milestone_id']}/baseline/history").json()["data"]
        assert [v["version"] for v in history] == [1]

    def test_blocked_edit_then_draft_variation(self, client, world):
        _lock(client, world)
        supplier = _auth(world["supplier"])

        resp = client.patch(
            f"{API}/plan-items/{world['milestone_item']}",
            json={"field": "start_date", "value": "2026-01-15"},
            headers=supplier,
        )
        assert resp.status_code == 409, resp.text
        outcome = resp.json()["data"]
        assert outcome["blocked"] is True
        assert outcome["item"]["start_date"] == "2026-01-01"
        assert outcome["pending_change"]["new_value"] == "2026-01-15"

        resp = client.post(f"{API}/projects/{world['project_id']}/pending-changes/draft-variation", headers=supplier)
        assert resp.status_code == 201, resp.text
        variation = resp.json()["data"]["variation"]
        assert variation["variation_type"] == "time_extension"
        assert variation["impacts"][0]["new_baseline_start"] == "2026-01-15"

        listed = client.get(f"{API}/projects/{world['project_id']}/variations").json()["data"]
        assert [v["id"] for v in listed] == [variation["id"]]
        milestone = client.get(f"{API}/milestones/{world['milestone_id']}").json()["data"]
        assert milestone["baseline_start_date"] == "2026-01-01"

    def test_unprotected_edit_passes(self, client, world):
        _lock(client, world)
        resp = client.patch(
            f"{API}/plan-items/{world['milestone_item']}",
            json={"field": "description", "value": "Lift and shift"},
            headers=_auth(world["supplier"]),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["blocked"] is False

    def test_certificate_to_billing(self, client, world):
        supplier, customer = _auth(world["supplier"]), _auth(world["customer"])
        mid = world["milestone_id"]

        resp = client.patch(
            f"{API}/deliverables/{world['deliverable_id']}/status", json={"status": "Delivered"}, headers=supplier
        )
        assert resp.status_code == 200, resp.text
        assert client.get(f"{API}/milestones/{mid}/certificate").json()["data"]["can_generate"] is True

        resp = client.post(f"{API}/milestones/{mid}/certificate", headers=supplier)
        assert resp.status_code == 201, resp.text
        client.post(f"{API}/milestones/{mid}/certificate/sign", json={"party": "supplier"}, headers=supplier)
        resp = client.post(f"{API}/milestones/{mid}/certificate/sign", json={"party": "customer"}, headers=customer)
        assert resp.json()["data"]["status"] == "Signed"

        billing = client.get(f"{API}/projects/{world['project_id']}/milestones/billing").json()["data"]
        assert billing[0]["ready_to_bill"] is True
        assert billing[0]["billable"] == "10000"


# ═════════════════════════════════════════════════════════════════════════
# ERRORS
# ═════════════════════════════════════════════════════════════════════════

class TestErrors:
    def test_malformed_bearer_is_401(self, client):
        resp = client.post(f"{API}/projects", json={"name": "X"}, headers={"Authorization": "Bearer not-a-uuid"})
        assert resp.status_code == 401

    def test_unknown_milestone_is_404(self, client):
        resp = client.get(f"{API}/milestones/{uuid.uuid4()}")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]

    def test_customer_cannot_reset_baseline(self, client, world):
        _lock(client, world)
        resp = client.post(
            f"{API}/milestones/{world['milestone_id']}/baseline/reset", headers=_auth(world["customer"])
        )
        assert resp.status_code == 403

    def test_customer_cannot_sign_for_supplier(self, client, world):
        resp = client.post(
            f"{API}/milestones/{world['milestone_id']}/baseline/sign",
            json={"party": "supplier"},
            headers=_auth(world["customer"]),
        )
        assert resp.status_code == 403

    def test_signing_locked_baseline_is_422(self, client, world):
        _lock(client, world)
        resp = client.post(
            f"{API}/milestones/{world['milestone_id']}/baseline/sign",
            json={"party": "supplier"},
            headers=_auth(world["supplier"]),
        )
        assert resp.status_code == 422
        assert "already locked" in resp.json()["detail"]

    def test_unknown_party_is_422(self, client, world):
        resp = client.post(
            f"{API}/milestones/{world['milestone_id']}/baseline/sign",
            json={"party": "vendor"},
            headers=_auth(world["supplier"]),
        )
        assert resp.status_code == 422

    def test_certificate_before_delivery_is_422(self, client, world):
        resp = client.post(
            f"{API}/milestones/{world['milestone_id']}/certificate", headers=_auth(world["supplier"])
        )
        assert resp.status_code == 422

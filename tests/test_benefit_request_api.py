"""
Benefit request HTTP API tests.

Tests cover:
  - Caller identity headers (401 when missing or malformed)
  - Create: 201, policy bounds (422), missing fields (400), ineligible (422)
  - Withdrawal pre-screen gate and officer decision
  - Cancel permissions by role and ownership
  - Approval chain endpoints, review, release and lost races (409)
  - List / summary / detail / access / history read endpoints
  - Caller notification inbox
  - Health endpoints and response headers
"""
from datetime import date

import pytest

from benefits.services import approver_sequencer


def _h(user):
    return {"X-User-Id": str(user.id), "X-User-Role": user.role}


LOAN_BODY = {
    "request_kind": "Loan",
    "amount": 20000,
    "term_months": 12,
    "purpose": "Medical bills",
    "consent_acknowledged": True,
}


@pytest.fixture()
def api_loan(client, employee):
    res = client.post("/api/v1/benefit-requests", json=LOAN_BODY, headers=_h(employee))
    assert res.status_code == 201
    return res.get_json()


@pytest.fixture()
def retiree(make_user, add_contribution):
    u = make_user("Employee", "Retiree", hired=date(2023, 6, 1), status="Retired")
    add_contribution(u, 12000, 8000)
    return u


@pytest.fixture()
def api_withdrawal(client, retiree):
    res = client.post(
        "/api/v1/benefit-requests",
        json={"request_kind": "Withdrawal", "withdrawal_type": "Retirement", "consent_acknowledged": True},
        headers=_h(retiree),
    )
    assert res.status_code == 201
    return res.get_json()


def _assign(client, rid, staff):
    return client.put(
        f"/api/v1/benefit-requests/{rid}/approvers",
        json={"approvers": [
            {"approver_id": staff["approver_a"].id, "sequence_order": 1},
            {"approver_id": staff["approver_b"].id, "sequence_order": 2},
        ]},
        headers=_h(staff["officer"]),
    )


# ═════════════════════════════════════════════════════════════════════════
# IDENTITY
# ═════════════════════════════════════════════════════════════════════════

class TestCallerIdentity:
    def test_missing_headers_401(self, client):
        res = client.get("/api/v1/benefit-requests")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_unknown_role_401(self, client, employee):
        res = client.get("/api/v1/benefit-requests",
                         headers={"X-User-Id": str(employee.id), "X-User-Role": "Superuser"})
        assert res.status_code == 401

    def test_non_numeric_id_401(self, client):
        res = client.get("/api/v1/benefit-requests", headers={"X-User-Id": "abc", "X-User-Role": "HR"})
        assert res.status_code == 401


# ═════════════════════════════════════════════════════════════════════════
# CREATE & ELIGIBILITY
# ═════════════════════════════════════════════════════════════════════════

class TestCreate:
    def test_create_loan(self, api_loan, employee):
        assert api_loan["status"] == "Pending"
        assert api_loan["subject_user_id"] == employee.id
        assert api_loan["amount"] == 20000.0
        assert api_loan["vested_balance"] == 50000.0
        assert api_loan["ready_for_review"] is False

    def test_missing_kind_400(self, client, employee):
        res = client.post("/api/v1/benefit-requests", json={"amount": 10000}, headers=_h(employee))
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_amount_over_cap_422(self, client, employee):
        res = client.post("/api/v1/benefit-requests", json={**LOAN_BODY, "amount": 30000},
                          headers=_h(employee))
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert body["details"]["max"] == 25000.0

    def test_missing_consent_422(self, client, employee):
        res = client.post("/api/v1/benefit-requests", json={**LOAN_BODY, "consent_acknowledged": False},
                          headers=_h(employee))
        assert res.status_code == 422

    def test_second_loan_ineligible(self, client, api_loan, employee):
        res = client.post("/api/v1/benefit-requests", json=LOAN_BODY, headers=_h(employee))
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_INELIGIBLE"
        assert body["details"]["reason"].lower() == "existing active loan"
        assert body["details"]["eligibility"]["has_open_request"] is True

    def test_hr_cannot_create_403(self, client, staff):
        res = client.post("/api/v1/benefit-requests", json=LOAN_BODY, headers=_h(staff["officer"]))
        assert res.status_code == 403
        body = res.get_json()
        assert body["code"] == "ERR_FORBIDDEN"
        assert body["details"]["action"] == "create"

    def test_unknown_withdrawal_type_422(self, client, retiree):
        res = client.post(
            "/api/v1/benefit-requests",
            json={"request_kind": "Withdrawal", "withdrawal_type": "Sabbatical", "consent_acknowledged": True},
            headers=_h(retiree),
        )
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_eligibility_endpoint(self, client, employee):
        res = client.get("/api/v1/benefit-requests/eligibility?kind=Loan", headers=_h(employee))
        assert res.status_code == 200
        data = res.get_json()
        assert data["eligible"] is True
        assert data["max_amount"] == 25000.0

    def test_eligibility_hr_for_subject(self, client, employee, staff):
        res = client.get(
            f"/api/v1/benefit-requests/eligibility?kind=Withdrawal&subject_user_id={employee.id}",
            headers=_h(staff["officer"]),
        )
        assert res.status_code == 200
        assert res.get_json()["eligible_types"] == ["Disability", "Death"]

    def test_eligibility_requires_kind(self, client, employee):
        res = client.get("/api/v1/benefit-requests/eligibility", headers=_h(employee))
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════
# WITHDRAWAL FLOW
# ═════════════════════════════════════════════════════════════════════════

class TestWithdrawalFlow:
    def test_review_gated_on_pre_screen(self, client, api_withdrawal, staff):
        rid = api_withdrawal["id"]
        res = client.post(f"/api/v1/benefit-requests/{rid}/move-to-review", headers=_h(staff["officer"]))
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_INVALID_TRANSITION"
        assert body["details"]["current_status"] == "Pending"

        res = client.post(f"/api/v1/benefit-requests/{rid}/mark-ready", headers=_h(staff["assistant"]))
        assert res.status_code == 200
        assert res.get_json()["ready_for_review"] is True

        res = client.post(f"/api/v1/benefit-requests/{rid}/move-to-review", headers=_h(staff["officer"]))
        assert res.status_code == 200
        assert res.get_json()["status"] == "UnderReviewOfficer"
        assert res.get_json()["officer_id"] == staff["officer"].id

    def test_incomplete_then_decision_and_release(self, client, api_withdrawal, staff):
        rid = api_withdrawal["id"]
        res = client.post(f"/api/v1/benefit-requests/{rid}/mark-incomplete",
                          json={"notes": "Missing retirement letter"}, headers=_h(staff["assistant"]))
        assert res.get_json()["status"] == "Incomplete"
        assert res.get_json()["notes"] == "Missing retirement letter"

        client.post(f"/api/v1/benefit-requests/{rid}/mark-ready", headers=_h(staff["assistant"]))
        client.post(f"/api/v1/benefit-requests/{rid}/move-to-review", headers=_h(staff["officer"]))

        res = client.post(f"/api/v1/benefit-requests/{rid}/decision", json={}, headers=_h(staff["officer"]))
        assert res.status_code == 400

        res = client.post(f"/api/v1/benefit-requests/{rid}/decision",
                          json={"decision": "Approved"}, headers=_h(staff["officer"]))
        assert res.status_code == 200
        assert res.get_json()["status"] == "Approved"

        res = client.post(f"/api/v1/benefit-requests/{rid}/release", json={}, headers=_h(staff["officer"]))
        assert res.status_code == 422

        res = client.post(f"/api/v1/benefit-requests/{rid}/release",
                          json={"reference": "WD-2024-001"}, headers=_h(staff["officer"]))
        assert res.status_code == 200
        assert res.get_json()["status"] == "Released"
        assert res.get_json()["is_terminal"] is True


# ═════════════════════════════════════════════════════════════════════════
# CANCEL
# ═════════════════════════════════════════════════════════════════════════

class TestCancel:
    def test_other_employee_forbidden_hr_allowed(self, client, api_loan, make_user, staff):
        other = make_user("Employee", "Colleague")
        rid = api_loan["id"]

        res = client.post(f"/api/v1/benefit-requests/{rid}/cancel", headers=_h(other))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

        res = client.post(f"/api/v1/benefit-requests/{rid}/cancel",
                          json={"remarks": "Requested by phone"}, headers=_h(staff["officer"]))
        assert res.status_code == 200
        assert res.get_json()["status"] == "Cancelled"

        res = client.post(f"/api/v1/benefit-requests/{rid}/cancel", headers=_h(staff["officer"]))
        assert res.status_code == 409


# ═════════════════════════════════════════════════════════════════════════
# LOAN APPROVAL CHAIN
# ═════════════════════════════════════════════════════════════════════════

class TestLoanApprovalChain:
    def test_full_chain_over_http(self, client, api_loan, staff):
        rid = api_loan["id"]
        res = client.post(f"/api/v1/benefit-requests/{rid}/move-to-review", headers=_h(staff["officer"]))
        assert res.status_code == 200

        res = _assign(client, rid, staff)
        assert res.status_code == 200
        body = res.get_json()
        assert body["request"]["status"] == "AwaitingApprovals"
        assert [s["is_current"] for s in body["approval_steps"]] == [True, False]

        res = client.get(f"/api/v1/benefit-requests/{rid}/approvers", headers=_h(staff["officer"]))
        assert [s["approver_id"] for s in res.get_json()] == [staff["approver_a"].id, staff["approver_b"].id]

        res = client.post(f"/api/v1/benefit-requests/{rid}/review",
                          json={"decision": "Approved"}, headers=_h(staff["approver_b"]))
        assert res.status_code == 403

        res = client.post(f"/api/v1/benefit-requests/{rid}/review",
                          json={"decision": "Approved"}, headers=_h(staff["approver_a"]))
        assert res.status_code == 200
        assert res.get_json()["next_approver_id"] == staff["approver_b"].id

        res = client.post(f"/api/v1/benefit-requests/{rid}/review",
                          json={"decision": "Approved", "comments": "Within policy"},
                          headers=_h(staff["approver_b"]))
        assert res.get_json()["status"] == "Approved"

        res = client.post(f"/api/v1/benefit-requests/{rid}/release",
                          json={"reference": "DISB-9"}, headers=_h(staff["officer"]))
        assert res.status_code == 200
        assert res.get_json()["status"] == "Active"

    def test_review_requires_decision(self, client, loan_chain, staff):
        res = client.post(f"/api/v1/benefit-requests/{loan_chain}/review", json={},
                          headers=_h(staff["approver_a"]))
        assert res.status_code == 400

    def test_assign_requires_approvers(self, client, loan_in_review, staff):
        res = client.put(f"/api/v1/benefit-requests/{loan_in_review['id']}/approvers", json={},
                         headers=_h(staff["officer"]))
        assert res.status_code == 400

    def test_duplicate_approver_422(self, client, loan_in_review, staff):
        res = client.put(
            f"/api/v1/benefit-requests/{loan_in_review['id']}/approvers",
            json={"approvers": [
                {"approver_id": staff["approver_a"].id, "sequence_order": 1},
                {"approver_id": staff["approver_a"].id, "sequence_order": 2},
            ]},
            headers=_h(staff["officer"]),
        )
        assert res.status_code == 422

    def test_lost_race_returns_conflict(self, client, loan_chain, staff, monkeypatch):
        stale = approver_sequencer._load_current_step(loan_chain, staff["approver_a"].id)
        res = client.post(f"/api/v1/benefit-requests/{loan_chain}/review",
                          json={"decision": "Approved"}, headers=_h(staff["approver_a"]))
        assert res.status_code == 200

        monkeypatch.setattr(approver_sequencer, "_load_current_step",
                            lambda request_id, approver_id: stale)
        res = client.post(f"/api/v1/benefit-requests/{loan_chain}/review",
                          json={"decision": "Approved"}, headers=_h(staff["approver_a"]))
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_TRANSITION_CONFLICT"
        assert body["details"]["retryable"] is True


# ═════════════════════════════════════════════════════════════════════════
# READ ENDPOINTS
# ═════════════════════════════════════════════════════════════════════════

class TestReadEndpoints:
    def test_employee_lists_only_own(self, client, api_loan, employee, make_user, add_contribution, staff):
        other = make_user("Employee", "Second", hired=date(2019, 5, 1))
        add_contribution(other, 20000, 20000)
        res = client.post("/api/v1/benefit-requests", json={**LOAN_BODY, "amount": 10000}, headers=_h(other))
        assert res.status_code == 201

        res = client.get(f"/api/v1/benefit-requests?subject_user_id={other.id}", headers=_h(employee))
        body = res.get_json()
        assert body["total"] == 1
        assert body["items"][0]["subject_user_id"] == employee.id

        res = client.get("/api/v1/benefit-requests?kind=Loan&status=Pending", headers=_h(staff["officer"]))
        assert res.get_json()["total"] == 2

        res = client.get("/api/v1/benefit-requests?limit=1&offset=1", headers=_h(staff["officer"]))
        body = res.get_json()
        assert body["total"] == 2
        assert len(body["items"]) == 1
        assert (body["limit"], body["offset"]) == (1, 1)

        res = client.get("/api/v1/benefit-requests?limit=junk", headers=_h(staff["officer"]))
        assert res.get_json()["limit"] == 50

    @pytest.mark.parametrize("query", ["kind=Mortgage", "status=Archived"])
    def test_list_rejects_unknown_filters(self, client, staff, query):
        res = client.get(f"/api/v1/benefit-requests?{query}", headers=_h(staff["officer"]))
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_summary(self, client, api_loan, staff):
        client.post(f"/api/v1/benefit-requests/{api_loan['id']}/move-to-review", headers=_h(staff["officer"]))
        res = client.get("/api/v1/benefit-requests/summary?kind=Loan", headers=_h(staff["officer"]))
        data = res.get_json()
        assert data["total"] == 1
        assert data["by_status"] == {"UnderReviewOfficer": 1}

    def test_detail_and_not_found(self, client, api_loan, employee):
        res = client.get(f"/api/v1/benefit-requests/{api_loan['id']}", headers=_h(employee))
        assert res.status_code == 200
        assert res.get_json()["id"] == api_loan["id"]

        res = client.get("/api/v1/benefit-requests/99999", headers=_h(employee))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

        res = client.get("/api/v1/benefit-requests/99999/history", headers=_h(employee))
        assert res.status_code == 404

    def test_access(self, client, api_loan, employee, staff):
        res = client.get(f"/api/v1/benefit-requests/{api_loan['id']}/access", headers=_h(employee))
        data = res.get_json()
        assert data["can_cancel"] is True
        assert data["can_move_to_review"] is False

        res = client.get(f"/api/v1/benefit-requests/{api_loan['id']}/access", headers=_h(staff["officer"]))
        assert res.get_json()["can_move_to_review"] is True

    def test_history(self, client, api_loan, employee, staff):
        client.post(f"/api/v1/benefit-requests/{api_loan['id']}/cancel", headers=_h(employee))
        res = client.get(f"/api/v1/benefit-requests/{api_loan['id']}/history", headers=_h(staff["officer"]))
        assert res.status_code == 200
        assert [h["action"] for h in res.get_json()] == ["request.create", "request.cancel"]

    def test_notifications_inbox(self, client, staff, api_loan, employee):
        res = client.get("/api/v1/notifications", headers=_h(staff["officer"]))
        assert res.status_code == 200
        items = res.get_json()["items"]
        assert [n["request_id"] for n in items] == [api_loan["id"]]
        assert items[0]["is_read"] is False

        res = client.get("/api/v1/notifications?unread_only=true", headers=_h(employee))
        assert res.get_json() == {"items": [], "unread_only": True}

        client.post(f"/api/v1/benefit-requests/{api_loan['id']}/cancel", headers=_h(staff["officer"]))
        res = client.get("/api/v1/notifications?limit=1", headers=_h(employee))
        items = res.get_json()["items"]
        assert len(items) == 1
        assert items[0]["request_id"] == api_loan["id"]

        assert client.get("/api/v1/notifications").status_code == 401


# ═════════════════════════════════════════════════════════════════════════
# HEALTH & MIDDLEWARE
# ═════════════════════════════════════════════════════════════════════════

class TestHealth:
    def test_health(self, client):
        res = client.get("/health")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "ok"
        assert data["database"]["status"] == "ok"

    def test_ready(self, client):
        assert client.get("/health/ready").status_code == 200

    def test_request_id_echoed(self, client):
        res = client.get("/health/ready", headers={"X-Request-ID": "trace-123"})
        assert res.headers["X-Request-ID"] == "trace-123"
        assert "X-Request-Duration-Ms" in res.headers

    def test_unknown_route_json_404(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["error"] == "Not found"

"""
Tests — HTTP API surface.

Covers:
    - Health probes and request timing headers
    - Bearer-token enforcement on mutating endpoints
    - Review request / list / detail / approval / transition endpoints
    - Team assignment error mapping (422 composition, 409 conflict of interest)
    - Eligibility, matching and checklist endpoints
    - JSON error envelope: {"error", "code", "details"}
"""

import pytest

COORDINATOR_ID = 900


@pytest.fixture()
def coordinator(auth_headers):
    return auth_headers(COORDINATOR_ID, "PROGRAMME_COORDINATOR")


@pytest.fixture()
def host(make_org):
    return make_org("Host ANSP", regional_team="EUR")


# ═════════════════════════════════════════════════════════════════════════════
# HEALTH & MIDDLEWARE
# ═════════════════════════════════════════════════════════════════════════════

class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok"}

    def test_live_checks_database(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "ok"
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["app"]["testing"] is True

    def test_request_id_passthrough(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "trace-123"})
        assert res.headers["X-Request-ID"] == "trace-123"
        assert "X-Request-Duration-Ms" in res.headers


class TestAuthentication:
    def test_write_without_token(self, client, host):
        res = client.post("/api/v1/reviews", json={"host_organization_id": host.id})
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_write_with_garbage_token(self, client, host):
        res = client.post(
            "/api/v1/reviews", json={"host_organization_id": host.id},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert res.status_code == 401
        assert res.get_json()["error"] == "Invalid token"

    def test_read_is_anonymous(self, client, host, make_review):
        make_review(host)
        res = client.get("/api/v1/reviews")
        assert res.status_code == 200
        assert res.get_json()["total"] == 1


# ═════════════════════════════════════════════════════════════════════════════
# REVIEWS
# ═════════════════════════════════════════════════════════════════════════════

class TestReviewEndpoints:
    def test_request_list_and_detail(self, client, host, auth_headers):
        headers = auth_headers(500, "ANSP_ADMIN", host.id)
        res = client.post("/api/v1/reviews", json={
            "host_organization_id": host.id,
            "areas_in_scope": ["ATM"],
            "requested_start_date": "2026-11-02",
            "requested_end_date": "2026-11-06",
        }, headers=headers)
        assert res.status_code == 201
        created = res.get_json()
        assert created["status"] == "REQUESTED"
        assert created["requested_start_date"] == "2026-11-02"

        res = client.get("/api/v1/reviews?status=REQUESTED")
        assert [r["id"] for r in res.get_json()["items"]] == [created["id"]]

        res = client.get(f"/api/v1/reviews/{created['id']}")
        assert res.status_code == 200
        assert res.get_json()["team_members"] == []

    def test_other_organization_forbidden(self, client, host, make_org, auth_headers):
        other = make_org("Other ANSP")
        res = client.post(
            "/api/v1/reviews", json={"host_organization_id": host.id},
            headers=auth_headers(501, "ANSP_ADMIN", other.id),
        )
        assert res.status_code == 403
        body = res.get_json()
        assert body["code"] == "ERR_FORBIDDEN"
        assert body["details"] == {"action": "request_review"}

    def test_missing_host(self, client, coordinator):
        res = client.post("/api/v1/reviews", json={}, headers=coordinator)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_bad_date(self, client, host, coordinator):
        res = client.post("/api/v1/reviews", json={
            "host_organization_id": host.id, "requested_start_date": "next tuesday",
        }, headers=coordinator)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_BAD_REQUEST"

    def test_duplicate_active_review(self, client, host, coordinator):
        first = client.post("/api/v1/reviews", json={"host_organization_id": host.id}, headers=coordinator)
        assert first.status_code == 201
        res = client.post("/api/v1/reviews", json={"host_organization_id": host.id}, headers=coordinator)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_DUPLICATE"
        assert body["details"] == {"field": "host_organization_id"}

    def test_unknown_review(self, client):
        res = client.get("/api/v1/reviews/9999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_approval_and_history(self, client, host, make_review, auth_headers):
        review = make_review(host)
        headers = auth_headers(901, "STEERING_COMMITTEE")
        res = client.post(f"/api/v1/reviews/{review.id}/approval", json={"status": "APPROVED"}, headers=headers)
        assert res.status_code == 200
        assert res.get_json()["status"] == "APPROVED"

        res = client.get(f"/api/v1/reviews/{review.id}/approval/history")
        decisions = res.get_json()["decisions"]
        assert [d["status"] for d in decisions] == ["APPROVED"]
        assert decisions[0]["decided_by_id"] == 901

    def test_invalid_transition_details(self, client, host, make_review, coordinator):
        review = make_review(host, status="APPROVED")
        res = client.post(
            f"/api/v1/reviews/{review.id}/transition", json={"status": "COMPLETED"}, headers=coordinator,
        )
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_INVALID_TRANSITION"
        assert body["details"] == {
            "entity": "Review", "current_status": "APPROVED", "target_status": "COMPLETED",
        }

    def test_short_cancellation_reason(self, client, host, make_review, coordinator):
        review = make_review(host, status="PLANNING")
        res = client.post(
            f"/api/v1/reviews/{review.id}/transition",
            json={"status": "CANCELLED", "reason": "nope"}, headers=coordinator,
        )
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_non_object_body(self, client, host, make_review, coordinator):
        review = make_review(host)
        res = client.post(f"/api/v1/reviews/{review.id}/approval", json=["APPROVED"], headers=coordinator)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_BAD_REQUEST"

    def test_unknown_route_is_json(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["details"] == {"path": "/api/v1/nothing-here"}


# ═════════════════════════════════════════════════════════════════════════════
# TEAM
# ═════════════════════════════════════════════════════════════════════════════

class TestTeamEndpoints:
    @pytest.fixture()
    def setup(self, host, make_org, make_profile, make_review):
        peer = make_org("Peer ANSP", regional_team="EUR")
        return {
            "review": make_review(host, status="APPROVED"),
            "lead": make_profile(peer, lead=True, reviews_completed=4),
            "lead2": make_profile(peer, lead=True, reviews_completed=4),
            "reviewer": make_profile(peer),
            "same_org": make_profile(host),
        }

    def test_two_leads_is_422(self, client, setup, coordinator):
        res = client.put(f"/api/v1/reviews/{setup['review'].id}/team", json={"members": [
            {"reviewer_profile_id": setup["lead"].id, "role": "LEAD_REVIEWER"},
            {"reviewer_profile_id": setup["lead2"].id, "role": "LEAD_REVIEWER"},
        ]}, headers=coordinator)
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_COMPOSITION_INVALID"
        assert "Team must have exactly one Lead Reviewer" in body["details"]["violations"]

    def test_same_org_is_409(self, client, setup, coordinator):
        res = client.put(f"/api/v1/reviews/{setup['review'].id}/team", json={"members": [
            {"reviewer_profile_id": setup["lead"].id, "role": "LEAD_REVIEWER"},
            {"reviewer_profile_id": setup["same_org"].id},
        ]}, headers=coordinator)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_OF_INTEREST"

    def test_assign_team(self, client, setup, coordinator):
        res = client.put(f"/api/v1/reviews/{setup['review'].id}/team", json={"members": [
            {"reviewer_profile_id": setup["lead"].id, "role": "LEAD_REVIEWER"},
            {"reviewer_profile_id": setup["reviewer"].id},
        ]}, headers=coordinator)
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "PLANNING"
        assert len(data["team_members"]) == 2

        res = client.get(f"/api/v1/reviews/{setup['review'].id}/team/readiness")
        assert res.get_json()["pending_count"] == 2

    def test_empty_members(self, client, setup, coordinator):
        res = client.put(f"/api/v1/reviews/{setup['review'].id}/team", json={"members": []}, headers=coordinator)
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════════
# MATCHING & CHECKLIST
# ═════════════════════════════════════════════════════════════════════════════

class TestMatchingAndChecklist:
    def test_eligible_reviewers(self, client, host, make_org, make_profile, make_review):
        review = make_review(host)
        local = make_profile(make_org("Peer ANSP", regional_team="EUR"))
        far = make_profile(make_org("Distant ANSP", regional_team="AFR"))
        make_profile(host)

        res = client.get(f"/api/v1/reviews/{review.id}/eligible-reviewers")
        assert [r["id"] for r in res.get_json()["reviewers"]] == [local.id]

        res = client.get(f"/api/v1/reviews/{review.id}/eligible-reviewers?include_cross_team=true")
        ids = [r["id"] for r in res.get_json()["reviewers"]]
        assert ids == [local.id, far.id]

    def test_matching(self, client, host, make_org, make_profile, make_review, coordinator):
        review = make_review(host, areas=["ATM"])
        good = make_profile(make_org("Peer ANSP"), expertise=["ATM"])
        res = client.post(
            f"/api/v1/reviews/{review.id}/matching", json={"criteria": {"team_size": 2}}, headers=coordinator,
        )
        assert res.status_code == 200
        data = res.get_json()
        assert data["review_id"] == review.id
        assert [m["reviewer_profile_id"] for m in data["matches"]] == [good.id]

    def test_matching_rejects_bad_criteria(self, client, host, make_review, coordinator):
        review = make_review(host)
        res = client.post(
            f"/api/v1/reviews/{review.id}/matching", json={"required_expertise": "ATM"}, headers=coordinator,
        )
        assert res.status_code == 400

    def test_checklist(self, client, host, make_review):
        review = make_review(host, status="APPROVED", with_checklist=True)
        res = client.get(f"/api/v1/reviews/{review.id}/checklist")
        assert res.status_code == 200
        assert res.get_json()["total"] == 14

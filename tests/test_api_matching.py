"""HTTP tests for preference and result endpoints."""
import pytest
from fastapi.testclient import TestClient

from conftest import FakeProvider, make_opportunity, make_org, make_user
from fundmatch.api.routes import results as result_routes
from fundmatch.api_app import app
from fundmatch.db.models import OrganizationMember
from fundmatch.matching.result_store import ResultStore
from fundmatch.matching.scoring import ScoreResult, SubScores


def _as(user_id):
    return {"X-User-Id": str(user_id)}


@pytest.fixture
def client(engine, make_runner):
    app.dependency_overrides[result_routes.get_runner] = lambda: make_runner(FakeProvider(default=0.0))
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def org(db):
    org = make_org(db, "Alpha", user_id=1, role="owner")
    make_org(db, "Other", user_id=3)
    make_user(db, 2)
    db.add(OrganizationMember(organization_id=org.id, user_id=2, role="viewer"))
    db.commit()
    return org


def _seed_results(db, session_factory, org_id, totals):
    store = ResultStore(session_factory)
    ids = []
    for i, total in enumerate(totals):
        opp = make_opportunity(db, f"Grant {i}", organization="중기부", category="기술")
        store.upsert(1, org_id, ScoreResult(
            opportunity_id=opp.id,
            sub_scores=SubScores(total, total, total, total, total),
            total_score=total,
            confidence="high" if total >= 85 else "medium" if total >= 70 else "low",
            match_reasons=("관심 분야 일치",),
        ))
        ids.append(opp.id)
    return ids


# ---------- preferences ----------

def test_preferences_require_identity(client, org):
    assert client.get("/api/matching/preferences", params={"organizationId": org.id}).status_code == 401


def test_preference_roundtrip(client, org):
    res = client.get("/api/matching/preferences", params={"organizationId": org.id}, headers=_as(1))
    assert res.status_code == 200
    assert res.json() is None

    res = client.post("/api/matching/preferences", headers=_as(1), json={
        "organizationId": org.id, "categories": ["기술", "수출"], "regions": ["서울"],
        "minAmount": 10_000_000, "excludeKeywords": ["해외"],
    })
    assert res.status_code == 200
    body = res.json()
    assert body["categories"] == ["기술", "수출"]
    assert body["minAmount"] == 10_000_000
    assert body["excludeKeywords"] == ["해외"]
    assert body["configured"] is True

    res = client.get("/api/matching/preferences", params={"organizationId": org.id}, headers=_as(1))
    assert res.json()["regions"] == ["서울"]

    assert client.delete("/api/matching/preferences", params={"organizationId": org.id},
                         headers=_as(1)).status_code == 204
    assert client.delete("/api/matching/preferences", params={"organizationId": org.id},
                         headers=_as(1)).status_code == 404


def test_preference_role_checks(client, org):
    """Viewers may read but not write; outsiders get nothing."""
    assert client.get("/api/matching/preferences", params={"organizationId": org.id},
                      headers=_as(2)).status_code == 200
    res = client.post("/api/matching/preferences", headers=_as(2),
                      json={"organizationId": org.id, "categories": ["기술"]})
    assert res.status_code == 403
    assert client.get("/api/matching/preferences", params={"organizationId": org.id},
                      headers=_as(3)).status_code == 403


def test_preference_amount_validation(client, org):
    res = client.post("/api/matching/preferences", headers=_as(1),
                      json={"organizationId": org.id, "minAmount": 500, "maxAmount": 100})
    assert res.status_code == 400
    res = client.post("/api/matching/preferences", headers=_as(1),
                      json={"organizationId": org.id, "minAmount": -1})
    assert res.status_code == 422


# ---------- results ----------

def test_results_listing(client, db, session_factory, org):
    _seed_results(db, session_factory, org.id, [50, 90, 72])

    res = client.get("/api/matching/results", params={"organizationId": org.id, "pageSize": 2}, headers=_as(1))
    assert res.status_code == 200
    body = res.json()
    assert (body["total"], body["page"], body["pageSize"], body["totalPages"]) == (3, 1, 2, 2)
    assert [i["totalScore"] for i in body["items"]] == [90, 72]
    assert body["items"][0]["opportunity"]["organization"] == "중기부"
    assert body["items"][0]["matchReasons"] == ["관심 분야 일치"]

    res = client.get("/api/matching/results", params={"confidence": "high"}, headers=_as(1))
    assert res.json()["total"] == 1


def test_results_page_size_capped(client, org):
    res = client.get("/api/matching/results", params={"pageSize": 101}, headers=_as(1))
    assert res.status_code == 422
    res = client.get("/api/matching/results", params={"confidence": "great"}, headers=_as(1))
    assert res.status_code == 422


def test_results_scoped_to_caller(client, db, session_factory, org):
    _seed_results(db, session_factory, org.id, [80])
    res = client.get("/api/matching/results", headers=_as(2))
    assert res.json()["total"] == 0
    res = client.get("/api/matching/results", params={"organizationId": org.id}, headers=_as(3))
    assert res.status_code == 403


def test_result_detail_and_feedback(client, db, session_factory, org):
    _seed_results(db, session_factory, org.id, [80])
    result_id = client.get("/api/matching/results", headers=_as(1)).json()["items"][0]["id"]

    assert client.get(f"/api/matching/results/{result_id}", headers=_as(2)).status_code == 404
    res = client.get(f"/api/matching/results/{result_id}", headers=_as(1))
    assert res.status_code == 200
    assert res.json()["isRelevant"] is None

    res = client.post(f"/api/matching/results/{result_id}/feedback", headers=_as(1),
                      json={"isRelevant": False, "feedbackNote": "대상 아님"})
    assert res.status_code == 200
    assert res.json()["isRelevant"] is False
    assert res.json()["feedbackNote"] == "대상 아님"

    res = client.post(f"/api/matching/results/{result_id}/feedback", headers=_as(2), json={"isRelevant": True})
    assert res.status_code == 404


def test_run_on_demand(client, db, org):
    make_opportunity(db, "기술 지원", category="기술")
    client.post("/api/matching/preferences", headers=_as(1),
                json={"organizationId": org.id, "categories": ["기술"]})

    res = client.post("/api/matching/run", headers=_as(1), json={"organizationId": org.id})
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["organizationId"] == org.id
    assert data["stored"] == 1
    assert data["removed"] == 0
    assert data["degraded"] is False

    listing = client.get("/api/matching/results", headers=_as(1)).json()
    assert listing["total"] == 1


def test_run_requires_member_role(client, org):
    assert client.post("/api/matching/run", headers=_as(2), json={"organizationId": org.id}).status_code == 403

"""Tests for fundmatch/matching/result_store.py."""
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from conftest import make_opportunity, make_org
from fundmatch.db.models import MatchingResult
from fundmatch.matching.result_store import (
    ResultStore, get_result, list_results, results_stats, submit_feedback,
)
from fundmatch.matching.scoring import ScoreResult, SubScores


def _score(opportunity_id, total=80, confidence="medium", reasons=("관심 분야 일치",)):
    return ScoreResult(
        opportunity_id=opportunity_id,
        sub_scores=SubScores(similarity=total, category=100, eligibility=100, timeliness=60, amount=50),
        total_score=total,
        confidence=confidence,
        match_reasons=tuple(reasons),
    )


def _count(db):
    return db.scalar(select(func.count()).select_from(MatchingResult))


def test_upsert_is_idempotent(db, session_factory):
    """Same pair twice: one row, same id, same values."""
    org = make_org(db, "Alpha", user_id=1)
    opp = make_opportunity(db, "Grant")
    store = ResultStore(session_factory)

    store.upsert(1, org.id, _score(opp.id))
    first = db.execute(select(MatchingResult)).scalar_one()
    first_id = first.id
    store.upsert(1, org.id, _score(opp.id))
    db.expire_all()

    assert _count(db) == 1
    row = db.execute(select(MatchingResult)).scalar_one()
    assert row.id == first_id
    assert row.total_score == 80
    assert row.match_reasons == ["관심 분야 일치"]


def test_rescore_overwrites_scores(db, session_factory):
    org = make_org(db, "Alpha", user_id=1)
    opp = make_opportunity(db, "Grant")
    store = ResultStore(session_factory)
    store.upsert(1, org.id, _score(opp.id, total=60, confidence="low"))
    store.upsert(1, org.id, _score(opp.id, total=90, confidence="high", reasons=("마감 임박",)))
    db.expire_all()

    row = db.execute(select(MatchingResult)).scalar_one()
    assert (row.total_score, row.confidence, row.match_reasons) == (90, "high", ["마감 임박"])


def test_feedback_survives_rescore(db, session_factory):
    """Feedback columns are merged, not overwritten, by a refresh."""
    org = make_org(db, "Alpha", user_id=1)
    opp = make_opportunity(db, "Grant")
    store = ResultStore(session_factory)
    store.upsert(1, org.id, _score(opp.id))
    row = db.execute(select(MatchingResult)).scalar_one()

    assert submit_feedback(db, row.id, 1, False, "이미 지원함") is not None
    store.upsert(1, org.id, _score(opp.id, total=95, confidence="high"))
    db.expire_all()

    row = db.execute(select(MatchingResult)).scalar_one()
    assert row.total_score == 95
    assert row.is_relevant is False
    assert row.feedback_note == "이미 지원함"
    assert row.feedback_at is not None


def test_feedback_only_for_owner(db, session_factory):
    org = make_org(db, "Alpha", user_id=1)
    make_org(db, "Beta", user_id=2)
    opp = make_opportunity(db, "Grant")
    ResultStore(session_factory).upsert(1, org.id, _score(opp.id))
    row = db.execute(select(MatchingResult)).scalar_one()
    assert submit_feedback(db, row.id, 2, True) is None
    assert get_result(db, row.id, 2) is None
    assert get_result(db, row.id, 1).opportunity.name == "Grant"


def test_prune_stale(db, session_factory):
    """Rows not refreshed inside the retention window are deleted; fresh ones stay."""
    org = make_org(db, "Alpha", user_id=1)
    old, fresh = make_opportunity(db, "Old"), make_opportunity(db, "Fresh")
    store = ResultStore(session_factory)
    now = datetime.now(timezone.utc)
    store.upsert(1, org.id, _score(old.id), now=now - timedelta(days=31))
    store.upsert(1, org.id, _score(fresh.id), now=now - timedelta(days=2))

    assert store.prune_stale(retention_days=30, now=now) == 1
    remaining = db.execute(select(MatchingResult.opportunity_id)).scalars().all()
    assert remaining == [fresh.id]


def test_remove_unlisted_scoped_to_organization(db, session_factory):
    """Only the named organization's rows outside the kept set go away."""
    alpha, beta = make_org(db, "Alpha", user_id=1), make_org(db, "Beta", user_id=2)
    kept, dropped = make_opportunity(db, "Kept"), make_opportunity(db, "Dropped")
    store = ResultStore(session_factory)
    for opp in (kept, dropped):
        store.upsert(1, alpha.id, _score(opp.id))
        store.upsert(2, beta.id, _score(opp.id))

    assert store.remove_unlisted(alpha.id, [kept.id]) == 1
    rows = db.execute(select(MatchingResult.organization_id, MatchingResult.opportunity_id)).all()
    assert sorted(tuple(r) for r in rows) == sorted([(alpha.id, kept.id), (beta.id, kept.id), (beta.id, dropped.id)])

    assert store.remove_unlisted(alpha.id, []) == 1
    assert _count(db) == 2


def test_list_results_pagination_and_order(db, session_factory):
    org = make_org(db, "Alpha", user_id=1)
    store = ResultStore(session_factory)
    for i, total in enumerate([50, 90, 70, 88]):
        opp = make_opportunity(db, f"Grant {i}")
        store.upsert(1, org.id, _score(opp.id, total=total, confidence="high" if total >= 85 else "low"))

    rows, total = list_results(db, 1, page=1, page_size=3)
    assert total == 4
    assert [r.total_score for r in rows] == [90, 88, 70]

    rows, total = list_results(db, 1, page=2, page_size=3)
    assert [r.total_score for r in rows] == [50]

    rows, total = list_results(db, 1, confidence="high")
    assert total == 2

    rows, total = list_results(db, 2)
    assert total == 0


def test_results_stats(db, session_factory):
    org = make_org(db, "Alpha", user_id=1, preference={"categories": ["기술"]})
    store = ResultStore(session_factory)
    store.upsert(1, org.id, _score(make_opportunity(db, "A").id, total=90, confidence="high"))
    store.upsert(1, org.id, _score(make_opportunity(db, "B").id, total=72, confidence="medium"))

    stats = results_stats(db)
    assert stats["organizationsWithPreferences"] == 1
    assert stats["totalResults"] == 2
    assert (stats["high"], stats["medium"], stats["low"]) == (1, 1, 0)
    assert stats["refreshedLast24h"] == 2

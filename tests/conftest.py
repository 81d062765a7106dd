"""Shared pytest fixtures: in-memory database, seed helpers, fake collaborators."""
import os
import tempfile

# Settings are read once per process; point them at throwaway locations first.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="fundmatch-logs-"))
os.environ.setdefault("VECTOR_STORE_DIR", tempfile.mkdtemp(prefix="fundmatch-vectors-"))

from datetime import date, timedelta
from typing import Dict, List, Optional

import pytest

from fundmatch.config import PipelineConfig, ScoringConfig, get_settings
from fundmatch.db.database import Base, configure_engine, get_session_factory
from fundmatch.db import models
from fundmatch.matching.result_store import ResultStore
from fundmatch.matching.runner import MatchingRunner
from fundmatch.matching.scoring import ScoringEngine
from fundmatch.matching.similarity import SimilarityHit, SimilarityProvider


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database bound to the module-level session factory."""
    eng = configure_engine("sqlite://")
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)


@pytest.fixture
def session_factory(engine):
    return get_session_factory()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def env(monkeypatch):
    """Set environment variables and reset the cached Settings."""
    def _set(**values):
        for k, v in values.items():
            monkeypatch.setenv(k, v)
        get_settings.cache_clear()
    yield _set
    monkeypatch.undo()
    get_settings.cache_clear()


# ---------- Seed helpers ----------

def make_user(db, user_id: int, email: Optional[str] = None, name: Optional[str] = None) -> models.User:
    user = models.User(id=user_id, email=email or f"user{user_id}@example.com", name=name)
    db.add(user)
    db.commit()
    return user


def make_org(db, name: str, user_id: Optional[int] = None, role: str = "owner",
             preference: Optional[Dict] = None, **fields) -> models.Organization:
    """Organization with an optional member and preference (both make it eligible for refresh)."""
    org = models.Organization(name=name, **fields)
    db.add(org)
    db.flush()
    if user_id is not None:
        if db.get(models.User, user_id) is None:
            db.add(models.User(id=user_id, email=f"user{user_id}@example.com"))
            db.flush()
        db.add(models.OrganizationMember(organization_id=org.id, user_id=user_id, role=role))
        if preference is not None:
            db.add(models.MatchingPreference(user_id=user_id, organization_id=org.id, **preference))
    db.commit()
    return org


def make_opportunity(db, name: str, **fields) -> models.Opportunity:
    fields.setdefault("deadline", date.today() + timedelta(days=20))
    opp = models.Opportunity(name=name, **fields)
    db.add(opp)
    db.commit()
    return opp


class FakeProvider(SimilarityProvider):
    """Returns fixed scores; raises for profiles mentioning ``fail_on``."""

    def __init__(self, scores: Optional[Dict[int, float]] = None, default: float = 0.0,
                 is_available: bool = True, fail_on: Optional[str] = None):
        self.scores = scores or {}
        self.default = default
        self.is_available = is_available
        self.fail_on = fail_on
        self.queries: List[str] = []

    def available(self) -> bool:
        return self.is_available

    def search(self, text: str, k: int) -> List[SimilarityHit]:
        self.queries.append(text)
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("similarity service timed out")
        hits = [SimilarityHit(source_id=i, score=s) for i, s in self.scores.items()]
        return sorted(hits, key=lambda h: -h.score)[:k]


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Optional[Dict] = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


@pytest.fixture
def scoring_config():
    return ScoringConfig()


@pytest.fixture
def pipeline_config():
    return PipelineConfig()


@pytest.fixture
def make_runner(session_factory, scoring_config, pipeline_config):
    def _make(provider: SimilarityProvider) -> MatchingRunner:
        return MatchingRunner(
            engine=ScoringEngine(scoring_config),
            provider=provider,
            result_store=ResultStore(session_factory),
            session_factory=session_factory,
            config=pipeline_config,
        )
    return _make

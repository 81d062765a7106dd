"""Scheduled jobs (fundmatch/tasks.py) and schedule seeding."""
import signal

import pytest

from fundmatch import tasks
from fundmatch.matching.orchestrator import RefreshSummary
from fundmatch.workers.seed_schedule import SCHEDULE, seed


class FakeLock:
    def __init__(self, free=True):
        self.free = free
        self.released = False

    def acquire(self, blocking=True):
        return self.free

    def release(self):
        self.released = True


class FakeRedis:
    def __init__(self, lock):
        self._lock = lock
        self.lock_args = None

    def lock(self, name, timeout=None):
        self.lock_args = (name, timeout)
        return self._lock


class FakeScheduler:
    def __init__(self, existing=()):
        self.existing = [type("Job", (), {"id": job_id}) for job_id in existing]
        self.cancelled = []
        self.registered = []

    def get_jobs(self):
        return list(self.existing)

    def cancel(self, job):
        self.cancelled.append(job.id)

    def cron(self, cron, **kwargs):
        self.registered.append((kwargs["id"], cron, kwargs["func"], kwargs["queue_name"]))


@pytest.fixture
def fake_refresh(monkeypatch):
    calls = []

    class FakeOrchestrator:
        def __init__(self, process):
            pass

        def refresh(self, trigger_source, force_direct=False):
            calls.append(trigger_source)
            return RefreshSummary(strategy="direct", triggered_by=trigger_source).finish()

    monkeypatch.setattr(tasks, "Orchestrator", FakeOrchestrator)
    monkeypatch.setattr(tasks, "default_runner", lambda: None)
    monkeypatch.setattr(tasks, "stored_count", lambda runner: None)
    monkeypatch.setattr(signal, "signal", lambda *args: None)
    return calls


def test_refresh_job_runs_under_lock(monkeypatch, fake_refresh):
    lock = FakeLock()
    redis = FakeRedis(lock)
    monkeypatch.setattr(tasks.Redis, "from_url", staticmethod(lambda url: redis))

    out = tasks.matching_refresh_job()

    assert out["triggered_by"] == "scheduler"
    assert fake_refresh == ["scheduler"]
    assert redis.lock_args == ("matching_refresh_lock", 6 * 60 * 60)
    assert lock.released is True


def test_refresh_job_skips_when_locked(monkeypatch, fake_refresh):
    monkeypatch.setattr(tasks.Redis, "from_url", staticmethod(lambda url: FakeRedis(FakeLock(free=False))))
    assert tasks.matching_refresh_job() == {"skipped": True, "reason": "already_running"}
    assert fake_refresh == []


def test_seed_replaces_existing_jobs():
    sched = FakeScheduler(existing=["matching_refresh_job", "unrelated"])
    seed(sched, "default", 3600)

    assert sched.cancelled == ["matching_refresh_job"]
    assert [r[0] for r in sched.registered] == list(SCHEDULE)
    assert ("matching_refresh_job", "0 21 * * *", "fundmatch.tasks.matching_refresh_job", "default") \
        in sched.registered

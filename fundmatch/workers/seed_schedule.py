from __future__ import annotations
import logging
import time

from redis import Redis
from rq import Queue
from rq_scheduler import Scheduler

from fundmatch.config import get_settings
from fundmatch.logging_config import setup_logging

logger = logging.getLogger(__name__)

# job id -> (cron expression in UTC, dotted function path, description)
SCHEDULE = {
    "matching_refresh_job": ("0 21 * * *", "fundmatch.tasks.matching_refresh_job", "Daily matching refresh"),
    "daily_digest_job": ("0 0 * * *", "fundmatch.tasks.daily_digest_job", "Daily result digest"),
    "embeddings_job": ("0 */6 * * *", "fundmatch.tasks.embeddings_job", "Opportunity embeddings"),
    "prune_results_job": ("0 19 * * *", "fundmatch.tasks.prune_results_job", "Prune stale matching results"),
}


def seed(sched: Scheduler, queue_name: str, timeout: int) -> None:
    """Cancel and re-register every scheduled job so the schedule is idempotent."""
    existing = {j.id: j for j in sched.get_jobs()}
    for job_id, (cron, func_path, description) in SCHEDULE.items():
        if job_id in existing:
            sched.cancel(existing[job_id])
        sched.cron(
            cron,
            func=func_path,
            args=[],
            kwargs={},
            id=job_id,
            repeat=None,
            queue_name=queue_name,
            use_local_timezone=False,
            timeout=timeout,
            result_ttl=86400,
            description=description,
        )
        logger.info("Seeded job %s -> %s as cron '%s' (UTC)", job_id, func_path, cron)


def main():
    setup_logging("scheduler")
    settings = get_settings()
    conn = Redis.from_url(settings.redis_url)
    q = Queue(settings.rq_queue, connection=conn)
    sched = Scheduler(queue=q, connection=conn)
    seed(sched, q.name, settings.rq_default_timeout)

    try:
        while True:
            sched.run(burst=False)
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Scheduler stopped.")


if __name__ == "__main__":
    main()

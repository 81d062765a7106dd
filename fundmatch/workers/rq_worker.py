import time
from logging import getLogger

from redis import Redis
from rq import Queue, Worker

from fundmatch.config import get_settings
from fundmatch.logging_config import setup_logging

logger = getLogger(__name__)


def main():
    setup_logging("rq_worker")
    settings = get_settings()
    listen = [settings.rq_queue]
    while True:
        try:
            conn = Redis.from_url(settings.redis_url)
            queues = [Queue(n, connection=conn, default_timeout=settings.rq_default_timeout) for n in listen]
            w = Worker(queues, connection=conn)
            logger.info("RQ worker listening on %s (redis=%s, default_timeout=%ss)",
                        listen, settings.redis_url, settings.rq_default_timeout)
            w.work(with_scheduler=False)
        except Exception:
            logger.error("Worker crashed; retrying in 5s...", exc_info=True)
            time.sleep(5)


if __name__ == "__main__":
    main()

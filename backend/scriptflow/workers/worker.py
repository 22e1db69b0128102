from redis import Redis
from rq import Queue, Worker

from scriptflow.db import init_db
from scriptflow.logging_setup import setup_logging
from scriptflow.settings import settings


def main():
    setup_logging()
    init_db()

    conn = Redis.from_url(settings.redis_url)
    q = Queue(settings.queue_name, connection=conn)
    worker = Worker([q], connection=conn)
    worker.work(with_scheduler=False)


if __name__ == "__main__":
    main()

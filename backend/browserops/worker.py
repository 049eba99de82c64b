# backend/browserops/worker.py

from redis import Redis
from rq import Queue

from browserops.settings import settings

redis_conn = Redis.from_url(settings.redis_url)
# enqueue_at jobs only run on workers started with `rq worker --with-scheduler`.
queue = Queue(settings.queue_name, connection=redis_conn)

from redis import Redis
from rq import Queue

from nomaqbank.core.config import settings

redis = Redis.from_url(settings.REDIS_URL)
queue = Queue(settings.RQ_QUEUE, connection=redis, default_timeout=settings.SWEEP_JOB_TIMEOUT)

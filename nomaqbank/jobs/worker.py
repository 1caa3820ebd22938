import logging

from rq import Worker

from nomaqbank.core.config import settings
from nomaqbank.jobs.queue import redis
from nomaqbank.jobs.sweeps import schedule_exam_sweep, schedule_training_sweep

if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    schedule_exam_sweep()
    schedule_training_sweep()
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)

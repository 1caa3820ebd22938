from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from rq.exceptions import NoSuchJobError
from rq.job import Job

from nomaqbank.api.deps import require_admin
from nomaqbank.core.errors import NotFound
from nomaqbank.jobs.queue import queue, redis
from nomaqbank.jobs.sweeps import run_exam_sweep, run_training_sweep

router = APIRouter()

SWEEPS = {"exams": run_exam_sweep, "training": run_training_sweep}


class SweepEnqueued(BaseModel):
    job_id: str
    kind: str


class SweepStatus(BaseModel):
    job_id: str
    state: str
    kind: str | None = None
    processed_count: int | None = None
    closed_count: int | None = None
    failed_count: int | None = None
    result: dict | None = None


@router.post("/sweeps/{kind}", response_model=SweepEnqueued, dependencies=[Depends(require_admin)])
def enqueue_sweep(kind: Literal["exams", "training"]):
    job = queue.enqueue(SWEEPS[kind], reschedule=False)
    return SweepEnqueued(job_id=job.id, kind=kind)


@router.get("/sweeps/status", response_model=SweepStatus, dependencies=[Depends(require_admin)])
def sweep_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=redis)
    except NoSuchJobError as exc:
        raise NotFound("Job") from exc
    meta = job.meta or {}
    status = job.get_status()
    state = meta.get("state") or getattr(status, "value", status)
    return SweepStatus(
        job_id=job.id,
        state=state,
        kind=meta.get("kind"),
        processed_count=meta.get("processed_count"),
        closed_count=meta.get("closed_count"),
        failed_count=meta.get("failed_count"),
        result=job.result if state == "done" else None,
    )

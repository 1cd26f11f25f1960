import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from .. import config
from .. import metrics
from .. import store
from ..auth import require_api_key
from ..entry import ANY_OWNER
from ..errors import PreconditionError
from ..scheduler import ChronoScheduler
from ..schemas import (
    JobCreate,
    JobListResponse,
    JobResponse,
    JobScheduled,
    ProcessingItem,
    Stats,
    UnscheduleRequest,
    UnscheduleResponse,
)

router = APIRouter()


async def get_scheduler() -> ChronoScheduler:
    redis_client = await store.get_redis()
    return ChronoScheduler(
        redis_client,
        namespace=config.NAMESPACE,
        poll_delay=config.POLL_DELAY,
        cas_delay=config.CAS_DELAY,
    )


SchedulerDep = Depends(get_scheduler)


def _owner(owner_id: str):
    # "*" addresses every owner of a type
    return ANY_OWNER if owner_id == "*" else owner_id


@router.post("/jobs", response_model=JobScheduled)
async def create_job(job: JobCreate, scheduler=SchedulerDep, authorized: bool = Depends(require_api_key)):
    ready_at = job.ready_at if job.ready_at is not None else time.time()
    try:
        job_id = await scheduler.schedule(job.payload, ready_at, job.owner_id, job.job_id, job.type)
    except PreconditionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        metrics.error_count.inc()
        raise HTTPException(status_code=500, detail=str(exc))
    return JobScheduled(job_id=job_id)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, scheduler=SchedulerDep):
    payload = await scheduler.item(job_id)
    if payload is None:
        raise HTTPException(status_code=404, detail="job not found")
    return JobResponse(job_id=job_id, payload=payload)


@router.get("/owners/{owner_id}/jobs", response_model=JobListResponse)
async def list_owner_jobs(owner_id: str, type: Optional[str] = None, scheduler=SchedulerDep):
    try:
        pairs = await scheduler.scheduled_for(_owner(owner_id), type)
    except PreconditionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return JobListResponse(jobs=[JobResponse(job_id=j, payload=p) for j, p in pairs])


@router.post("/owners/{owner_id}/jobs/unschedule", response_model=UnscheduleResponse)
async def unschedule_jobs(
    owner_id: str,
    body: UnscheduleRequest,
    scheduler=SchedulerDep,
    authorized: bool = Depends(require_api_key),
):
    try:
        removed = await scheduler.unschedule(_owner(owner_id), body.job_ids, body.type)
    except PreconditionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return UnscheduleResponse(removed=removed)


@router.delete("/owners/{owner_id}/jobs", response_model=UnscheduleResponse)
async def unschedule_all(
    owner_id: str,
    type: Optional[str] = None,
    scheduler=SchedulerDep,
    authorized: bool = Depends(require_api_key),
):
    try:
        removed = await scheduler.unschedule_all_for(_owner(owner_id), type)
    except PreconditionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return UnscheduleResponse(removed=removed)


@router.get("/types/{type}/size")
async def type_size(type: str, scheduler=SchedulerDep):
    return {"type": type, "size": await scheduler.size_by_type(type)}


@router.get("/stats", response_model=Stats)
async def stats(scheduler=SchedulerDep):
    return Stats(
        size=await scheduler.size(),
        num_users=await scheduler.num_users(),
        processing_set_size=await scheduler.processing_set_size(),
    )


@router.get("/processing")
async def processing(scheduler=SchedulerDep):
    descriptors = await scheduler.processing_set_items()
    items = [
        ProcessingItem(
            job_id=d.job_id,
            owner_id=None if d.entry.owner_id is None else str(d.entry.owner_id),
            type=None if d.entry.type is None else str(d.entry.type),
            ready_at=d.ready_at,
            claimed_at=d.claimed_at,
            tag=d.tag,
        )
        for d in descriptors
    ]
    return {"items": items}

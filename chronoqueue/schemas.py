from pydantic import BaseModel, Field
from typing import List, Optional


class JobCreate(BaseModel):
    payload: str
    ready_at: Optional[float] = None  # epoch seconds; defaults to now
    owner_id: Optional[str] = None
    job_id: Optional[int] = Field(default=None, ge=0)
    type: Optional[str] = None


class JobScheduled(BaseModel):
    job_id: int


class JobResponse(BaseModel):
    job_id: int
    payload: Optional[str]


class JobListResponse(BaseModel):
    jobs: List[JobResponse]


class UnscheduleRequest(BaseModel):
    job_ids: Optional[List[int]] = None  # None removes every matching job
    type: Optional[str] = None


class UnscheduleResponse(BaseModel):
    removed: List[int]


class ProcessingItem(BaseModel):
    job_id: int
    owner_id: Optional[str]
    type: Optional[str]
    ready_at: float
    claimed_at: float
    tag: Optional[str]


class Stats(BaseModel):
    size: int
    num_users: int
    processing_set_size: int

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from . import store
from .api import jobs as jobs_api
from .metrics import metrics_response, request_latency_seconds


@asynccontextmanager
async def lifespan(app: FastAPI):
    # every request shares the one client from store.get_redis
    yield
    await store.close_redis()


app = FastAPI(title="ChronoQueue Control Plane", lifespan=lifespan)

app.include_router(jobs_api.router)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        request_latency_seconds.observe(time.time() - start)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/readyz")
async def readyz(scheduler=jobs_api.SchedulerDep):
    # A round trip to the store
    await scheduler.size()
    return {"ready": True}


@app.get("/metrics")
async def metrics():
    return metrics_response()

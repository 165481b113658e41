from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import redis
import structlog
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from ..core.errors import InvalidLimitsError, JobStoreError, QueueError
from ..core.utils import new_job_id
from ..isolation.isolation import probe_capabilities
from ..logging import setup_logging
from ..services.engine import ExecutionEngine
from ..services.job_store import JobStore
from ..services.queue import RedisQueue
from ..services.status_cache import StatusCache
from ..settings import Settings, load_settings

log = structlog.get_logger(__name__)


class ExecuteReq(BaseModel):
    code: str
    input: Optional[str] = None
    limits: Optional[Dict[str, int]] = None


class ExecuteRes(BaseModel):
    status: str
    stdout: str
    stderr: str
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    runtime_ms: int
    backend: Optional[str] = None


class CreateJobReq(BaseModel):
    id: Optional[str] = Field(default=None, min_length=1)
    code: str
    input: Optional[str] = None


class CreateJobRes(BaseModel):
    job_id: str


class JobRes(BaseModel):
    id: str
    status: str
    cached_status: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[ExecutionEngine] = None,
    store: Optional[JobStore] = None,
    queue: Optional[RedisQueue] = None,
    cache: Optional[StatusCache] = None,
) -> FastAPI:
    """
    Handles not passed in are built from settings when the app starts. The queue and
    the cache need ``SBX_REDIS_URL``.

        uvicorn boxxy.api.app:create_app --factory
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        s = app.state.settings
        if app.state.engine is None:
            app.state.engine = ExecutionEngine.from_settings(s)
        if app.state.store is None:
            app.state.store = JobStore(s.database_url)
        if app.state.queue is None or app.state.cache is None:
            s.require("redis_url")
            client = redis.Redis.from_url(s.redis_url, decode_responses=True)
            app.state.queue = app.state.queue or RedisQueue(client, s.queue_name, s.visibility_timeout_s, s.max_receives)
            app.state.cache = app.state.cache or StatusCache(client, s.status_ttl_s)
        log.info("api_started", backends=s.isolation_backends)
        yield

    if settings is None:
        settings = load_settings()
        setup_logging(settings.log_level, settings.log_json)

    app = FastAPI(title="boxxy", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.queue = queue
    app.state.cache = cache

    @app.get("/health")
    def health(request: Request):
        try:
            queue_stats = request.app.state.queue.stats()
        except QueueError as e:
            return {"ok": False, "error": str(e)}
        return {"ok": True, "queue": queue_stats}

    @app.get("/health/isolation")
    def isolation(request: Request):
        return probe_capabilities(request.app.state.settings.isolation_backends)

    @app.post("/execute", response_model=ExecuteRes)
    def execute(req: ExecuteReq, request: Request):
        try:
            outcome = request.app.state.engine.execute(req.code, req.limits, stdin=req.input)
        except InvalidLimitsError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return ExecuteRes(**outcome.to_dict())

    @app.post("/jobs", response_model=CreateJobRes, status_code=202)
    def create_job(req: CreateJobReq, request: Request):
        job_id = req.id or new_job_id()
        body = {"id": job_id, "code": req.code}
        if req.input is not None:
            body["input"] = req.input
        try:
            request.app.state.queue.send(body)
        except QueueError as e:
            raise HTTPException(status_code=503, detail=str(e))
        log.info("job_enqueued", job_id=job_id)
        return CreateJobRes(job_id=job_id)

    @app.get("/jobs/{job_id}", response_model=JobRes)
    def get_job(job_id: str, request: Request):
        try:
            job = request.app.state.store.get(job_id)
        except JobStoreError as e:
            raise HTTPException(status_code=503, detail=str(e))
        if job is None:
            raise HTTPException(status_code=404, detail="job_not_found")
        data = job.to_dict()
        data.pop("code", None)
        data.pop("input", None)
        return JobRes(cached_status=request.app.state.cache.get(job_id), **data)

    return app

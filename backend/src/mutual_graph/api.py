"""FastAPI application for mutual-graph."""
import asyncio
import json
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import AuthenticationError, MutualGraphError
from .models import JobStatus
from .progress import FINAL_EVENTS
from .runtime import Runtime, build_runtime


KEEPALIVE_SECONDS = 15.0


# =============================================================================
# Schemas
# =============================================================================

class AnalyzeRequest(BaseModel):
    """Request to start a network analysis."""
    force: bool = False


class JobCreated(BaseModel):
    message: str
    jobId: str
    status: str
    error: Optional[str] = None


def _sse(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


def create_app(
    runtime_factory: Callable[[], Runtime] = build_runtime,
    start_worker: bool = True,
) -> FastAPI:
    app = FastAPI(
        title="Mutual Graph API",
        description="Bluesky mutual-follow communities",
        version="0.1.0"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @app.on_event("startup")
    async def startup():
        """Build services and start the job scheduler."""
        app.state.runtime = runtime_factory()
        if start_worker:
            await app.state.runtime.start()

    @app.on_event("shutdown")
    async def shutdown():
        runtime = getattr(app.state, "runtime", None)
        if runtime is not None:
            await runtime.close()

    def get_runtime() -> Runtime:
        return app.state.runtime

    # =========================================================================
    # Errors
    # =========================================================================

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(MutualGraphError)
    async def domain_error(request: Request, exc: MutualGraphError):
        status_code = 401 if isinstance(exc, AuthenticationError) else 502
        return JSONResponse(status_code=status_code, content={"error": str(exc)})

    # =========================================================================
    # Endpoints
    # =========================================================================

    @app.get("/")
    async def root():
        """Health check."""
        return {
            "service": "mutual-graph",
            "status": "healthy",
            "version": "0.1.0"
        }

    @app.post("/network/analyze/{handle}", status_code=202, response_model=JobCreated)
    async def analyze(handle: str, request: Optional[AnalyzeRequest] = None):
        """Create (or reuse) the analysis job for a handle."""
        if not handle.strip():
            raise HTTPException(status_code=400, detail="Handle is required")
        force = bool(request and request.force)

        job = get_runtime().jobs.create_job(handle, {"force": force}, priority=1 if force else 0)
        if job.status == JobStatus.RATE_LIMITED:
            return JSONResponse(
                status_code=429,
                content=JobCreated(
                    message="Daily refresh limit exceeded",
                    jobId=str(job.id),
                    status=job.status,
                    error=job.error,
                ).model_dump(),
            )
        return JobCreated(
            message="Network analysis job started",
            jobId=str(job.id),
            status=job.status,
        )

    @app.get("/network/analysis/{handle}")
    async def get_analysis(handle: str):
        """Current job status, or the latest analysis when no job is active."""
        runtime = get_runtime()
        job = runtime.jobs.get_current_job(handle)
        if job is not None:
            return job.to_status()

        analysis = runtime.cache.get_analysis(handle)
        if analysis is not None:
            return analysis

        completed = runtime.jobs.get_latest_completed(handle)
        if completed is not None and completed.result:
            return completed.result
        raise HTTPException(status_code=404, detail="No job found for this handle")

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: int):
        job = get_runtime().jobs.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        status = job.to_status()
        if job.status == JobStatus.COMPLETED:
            status["result"] = job.result
        return status

    @app.get("/jobs/{job_id}/events")
    async def job_events(job_id: int):
        """Server-sent events for one job, ending with its final event."""
        runtime = get_runtime()
        job = runtime.jobs.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")

        queue = runtime.broker.subscribe(str(job_id))
        job = runtime.jobs.get(job_id)

        async def stream():
            try:
                yield _sse("status", job.to_status())
                if job.status not in JobStatus.ACTIVE:
                    return
                while True:
                    try:
                        event = await asyncio.wait_for(queue.get(), KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    yield _sse(event["type"], event["data"])
                    if event["type"] in FINAL_EVENTS:
                        return
            finally:
                runtime.broker.unsubscribe(str(job_id), queue)

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/network/clear-cache/{handle}")
    async def clear_cache(handle: str):
        removed = get_runtime().cache.clear_handle(handle)
        return {"message": "Cache cleared successfully", "removed": removed}

    @app.get("/stats")
    async def get_stats():
        """Job counts by status."""
        runtime = get_runtime()
        return {
            "jobs": runtime.jobs.stats(),
            "in_flight": len(runtime.scheduler.processing),
        }

    return app


app = create_app()

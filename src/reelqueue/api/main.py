from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from reelqueue.config import resolve_config
from reelqueue.errors import InfrastructureError, StoreUnavailable, ValidationError
from reelqueue.jobs.store import SQLStatusStore, StatusStore
from reelqueue.logging import get_logger
from reelqueue.models import ReelQueueConfig
from reelqueue.queue.backends import QueueBackend
from reelqueue.submission import JobSubmitter
from reelqueue.worker import build_queue, build_store

logger = get_logger("api")


# --- Pydantic Models for Requests ---
class JobCreate(BaseModel):
    source_reference: Optional[Any] = None
    # Older clients send the URL under these keys
    youtubeUrl: Optional[Any] = Field(default=None)  # noqa: N815
    url: Optional[Any] = None

    def reference(self) -> Any:
        for value in (self.source_reference, self.youtubeUrl, self.url):
            if value is not None:
                return value
        return None


async def _supervise_queue(queue: QueueBackend, delay_s: float) -> None:
    """Keep the queue connected for the app's lifetime, reconnecting after drops."""
    while True:
        if not queue.is_connected:
            try:
                await asyncio.to_thread(queue.connect)
            except InfrastructureError as e:
                logger.warning("queue_reconnecting", error=str(e), retry_in_s=delay_s)
        await asyncio.sleep(delay_s)


async def _init_store_forever(app: FastAPI, store: SQLStatusStore, delay_s: float) -> None:
    """Create the schema once the database is reachable, then expose the store."""
    while True:
        try:
            await asyncio.to_thread(store.init_schema)
            break
        except StoreUnavailable as e:
            logger.warning("store_unavailable", error=str(e), retry_in_s=delay_s)
            await asyncio.sleep(delay_s)
    app.state.store = store


def create_app(
    config: Optional[ReelQueueConfig] = None,
    store: Optional[StatusStore] = None,
    queue: Optional[QueueBackend] = None,
) -> FastAPI:
    """Build the HTTP layer.

    Injected store/queue are owned by the caller. Missing ones are built from
    config when the app starts and closed when it stops. While the app runs
    the queue is reconnected in the background whenever it is down, and an
    owned store is exposed once its schema could be created; requests that
    need a missing dependency answer 503 meanwhile.
    """
    config = config or resolve_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_store = owned_queue = None
        tasks = []

        if app.state.store is None:
            owned_store = build_store(config, create_schema=False)
            tasks.append(
                asyncio.create_task(
                    _init_store_forever(app, owned_store, config.store.reconnect_delay_s)
                )
            )
        if app.state.queue is None:
            owned_queue = app.state.queue = build_queue(config)
        tasks.append(
            asyncio.create_task(
                _supervise_queue(app.state.queue, config.queue.reconnect_delay_s)
            )
        )
        yield
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if owned_queue is not None:
            owned_queue.close()
        if owned_store is not None:
            owned_store.dispose()

    app = FastAPI(title="reelqueue", lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.queue = queue

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if config.publish.backend == "local" and config.publish.base_url.startswith("/"):
        app.mount(
            config.publish.base_url,
            StaticFiles(directory=config.publish.output_dir, check_dir=False),
            name="outputs",
        )

    @app.exception_handler(RequestValidationError)
    async def bad_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "Malformed request body"})

    def _submitter(request: Request) -> JobSubmitter:
        store_, queue_ = request.app.state.store, request.app.state.queue
        if store_ is None or queue_ is None:
            raise HTTPException(status_code=503, detail="Service not ready")
        return JobSubmitter(store_, queue_)

    def _store(request: Request) -> StatusStore:
        if request.app.state.store is None:
            raise HTTPException(status_code=503, detail="Service not ready")
        return request.app.state.store

    @app.get("/health")
    def health_check(request: Request):
        queue_ = request.app.state.queue
        return {"status": "ok", "queue_connected": bool(queue_ and queue_.is_connected)}

    @app.post("/jobs", status_code=status.HTTP_202_ACCEPTED)
    def create_job(job_data: JobCreate, request: Request):
        submitter = _submitter(request)
        try:
            job = submitter.submit(job_data.reference())
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except InfrastructureError as e:
            logger.warning("submission_unavailable", error=str(e))
            raise HTTPException(status_code=503, detail=str(e))
        return job.to_public()

    @app.get("/jobs")
    def list_jobs(request: Request):
        try:
            jobs = _store(request).list_jobs()
        except InfrastructureError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return [job.to_public() for job in jobs]

    @app.get("/jobs/{job_id}")
    def get_job(job_id: int, request: Request):
        try:
            job = _store(request).get(job_id)
        except InfrastructureError as e:
            raise HTTPException(status_code=503, detail=str(e))
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.to_public()

    @app.delete("/jobs/{job_id}")
    def delete_job(job_id: int, request: Request):
        try:
            deleted = _store(request).delete(job_id)
        except InfrastructureError as e:
            raise HTTPException(status_code=503, detail=str(e))
        if not deleted:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"job_id": job_id, "deleted": True}

    return app


app = create_app()

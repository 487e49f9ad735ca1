"""Liveness endpoint of a worker process."""

import threading

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from reelqueue.logging import get_logger
from reelqueue.queue.backends import QueueBackend

logger = get_logger("api.health")


def create_health_app(queue: QueueBackend) -> FastAPI:
    app = FastAPI(title="reelqueue-worker")

    @app.get("/", response_class=PlainTextResponse)
    def root():
        return "Worker is running"

    @app.get("/health")
    def health_check():
        return {"status": "ok", "queue_connected": queue.is_connected}

    return app


def start_health_server(app: FastAPI, host: str, port: int) -> uvicorn.Server:
    """Serve app from a daemon thread; set `server.should_exit` to stop it."""
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="health-server", daemon=True)
    thread.start()
    logger.info("health_server_started", host=host, port=port)
    return server

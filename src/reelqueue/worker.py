"""Worker process wiring: status store + queue + stages + executor + consumer.

A worker handles one message at a time. Run more worker processes against
the same queue database to scale out.
"""

import signal
import time
from typing import Callable, Optional

from .errors import StoreUnavailable
from .api.health import create_health_app, start_health_server
from .jobs.store import SQLStatusStore, StatusStore
from .logging import get_logger
from .models import ReelQueueConfig
from .pipeline.executor import PipelineExecutor
from .queue.consumer import QueueConsumer
from .queue.sqlite_backend import SQLiteQueue
from .stages import PipelineStages, build_stages

logger = get_logger("worker")


def build_store(config: ReelQueueConfig, create_schema: bool = True) -> SQLStatusStore:
    """Status store from configuration (schema is created if missing)."""
    return SQLStatusStore(config.store.database_url, create_schema=create_schema)


def wait_for_store(
    store: SQLStatusStore,
    delay_s: float,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Create the schema, retrying with a fixed delay until the store is reachable."""
    while True:
        try:
            store.init_schema()
            return
        except StoreUnavailable as e:
            logger.warning("store_unavailable", error=str(e), retry_in_s=delay_s)
            sleep(delay_s)


def build_queue(config: ReelQueueConfig) -> SQLiteQueue:
    """Unconnected queue backend from configuration."""
    return SQLiteQueue(
        config.queue.db_path,
        name=config.queue.name,
        prefetch=config.queue.prefetch,
    )


def build_executor(
    config: ReelQueueConfig,
    store: StatusStore,
    stages: Optional[PipelineStages] = None,
) -> PipelineExecutor:
    return PipelineExecutor(
        store,
        stages or build_stages(config),
        workspace_root=config.pipeline.temp_dir,
        fallback_duration_s=config.pipeline.fallback_duration_s,
        store_retry_delay_s=config.store.reconnect_delay_s,
    )


def build_consumer(
    config: ReelQueueConfig,
    queue: SQLiteQueue,
    executor: PipelineExecutor,
) -> QueueConsumer:
    return QueueConsumer(
        queue,
        executor.handle_delivery,
        reconnect_delay_s=config.queue.reconnect_delay_s,
        poll_interval_s=config.queue.poll_interval_s,
        heartbeat_interval_s=config.queue.heartbeat_interval_s,
        stale_timeout_s=config.queue.stale_timeout_s,
    )


def run_worker(
    config: ReelQueueConfig,
    max_messages: Optional[int] = None,
    drain: bool = False,
    health_port: Optional[int] = None,
) -> int:
    """Consume the queue until stopped (SIGTERM), drained or max_messages reached.

    Args:
        config: Resolved configuration
        max_messages: Stop after handling this many messages
        drain: Stop once the queue is empty
        health_port: Serve a liveness endpoint on this port while running

    Returns:
        Number of messages handled
    """
    queue = build_queue(config)
    store = build_store(config, create_schema=False)
    health_server = None
    if health_port is not None:
        health_server = start_health_server(
            create_health_app(queue), config.api.host, health_port
        )

    try:
        wait_for_store(store, config.store.reconnect_delay_s)
        executor = build_executor(config, store)
        consumer = build_consumer(config, queue, executor)
        return _consume(config, consumer, max_messages, drain)
    finally:
        if health_server is not None:
            health_server.should_exit = True
        queue.close()
        store.dispose()


def _consume(
    config: ReelQueueConfig,
    consumer: QueueConsumer,
    max_messages: Optional[int],
    drain: bool,
) -> int:
    def _on_sigterm(signum, frame):
        logger.info("shutdown_requested", signal=signum)
        consumer.stop()

    previous = signal.signal(signal.SIGTERM, _on_sigterm)

    logger.info(
        "worker_started",
        queue=config.queue.name,
        analysis=config.analysis.available,
        publish_backend=config.publish.backend,
    )
    try:
        return consumer.run(max_messages=max_messages, drain=drain)
    finally:
        signal.signal(signal.SIGTERM, previous)

"""Queue consumer: binds a durable queue to a message handler.

The consumer enforces prefetch = 1 structurally: it claims one message,
runs the handler to completion, acknowledges, and only then claims the
next one. While the handler runs, a heartbeat thread keeps the message's
lease fresh so other workers do not treat it as abandoned.

Connection loss is never fatal: the consumer closes the backend, sleeps a
fixed delay and reconnects, forever. On every (re)connect it releases the
messages it still held, because an unacknowledged message held across a
dropped connection must be redelivered.
"""

import os
import threading
import time
import uuid
from typing import Callable, Optional

from pydantic import ValidationError as MessageDecodeError

from ..errors import QueueUnavailable
from ..logging import get_logger
from .backends import QueueBackend
from .models import Delivery, QueueMessage

logger = get_logger("queue.consumer")

MessageHandler = Callable[[QueueMessage, Delivery], object]


def default_consumer_id() -> str:
    """Unique per process incarnation, so a restarted worker never reuses a lease."""
    return f"worker-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class QueueConsumer:
    """Single-slot consume loop with reconnect-and-rebind.

    Example:
        >>> consumer = QueueConsumer(queue, executor.handle_delivery)
        >>> consumer.run(drain=True)
    """

    def __init__(
        self,
        queue: QueueBackend,
        handler: MessageHandler,
        consumer_id: Optional[str] = None,
        reconnect_delay_s: float = 5.0,
        poll_interval_s: float = 1.0,
        heartbeat_interval_s: float = 30.0,
        stale_timeout_s: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize consumer.

        Args:
            queue: Queue backend (connected or not; run() connects it)
            handler: Called with (message, delivery); its return marks the
                terminal outcome after which the message is acknowledged
            consumer_id: Lease owner id (default: pid + random suffix)
            reconnect_delay_s: Fixed delay between reconnection attempts
            poll_interval_s: Sleep when the queue is empty
            heartbeat_interval_s: Lease refresh interval while handling
            stale_timeout_s: Leases older than this are redelivered
            sleep: Injectable sleep (tests)
        """
        self.queue = queue
        self.handler = handler
        self.consumer_id = consumer_id or default_consumer_id()
        self.reconnect_delay_s = reconnect_delay_s
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.stale_timeout_s = stale_timeout_s
        self._sleep = sleep
        self._stop = threading.Event()

    def stop(self) -> None:
        """Ask run() to return after the current message."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run(self, max_messages: Optional[int] = None, drain: bool = False) -> int:
        """Consume until stopped.

        Args:
            max_messages: Return after handling this many messages
            drain: Return as soon as the queue is empty

        Returns:
            Number of messages handled
        """
        handled = 0
        logger.info("consumer_started", consumer_id=self.consumer_id)

        while not self.stopped:
            if max_messages is not None and handled >= max_messages:
                break

            try:
                self._ensure_connected()
                if self.stopped:
                    break
                self.queue.requeue_stale(self.stale_timeout_s)
                delivery = self.queue.claim(self.consumer_id)
            except QueueUnavailable as e:
                self._handle_disconnect(e)
                continue

            if delivery is None:
                if drain:
                    break
                self._sleep(self.poll_interval_s)
                continue

            self._process(delivery)
            handled += 1

        logger.info("consumer_stopped", consumer_id=self.consumer_id, handled=handled)
        return handled

    def _ensure_connected(self) -> None:
        """Connect (with fixed-delay retry forever) and rebind held leases."""
        while not self.queue.is_connected:
            try:
                self.queue.connect()
            except QueueUnavailable as e:
                logger.warning(
                    "queue_reconnecting", error=str(e), retry_in_s=self.reconnect_delay_s
                )
                self._sleep(self.reconnect_delay_s)
                if self.stopped:
                    return
                continue

            released = self.queue.recover(self.consumer_id)
            if released:
                logger.warning(
                    "queue_released_unacked", consumer_id=self.consumer_id, count=released
                )

    def _handle_disconnect(self, error: Exception) -> None:
        logger.warning("queue_unavailable", error=str(error), retry_in_s=self.reconnect_delay_s)
        self.queue.close()
        self._sleep(self.reconnect_delay_s)

    def _process(self, delivery: Delivery) -> None:
        """Decode, handle, acknowledge.

        Exceptions escaping the handler are not caught: the message stays
        unacknowledged and is redelivered after the process restarts.
        """
        try:
            message = QueueMessage.decode(delivery.body)
        except MessageDecodeError as e:
            # Poison message: nothing can ever process it, acknowledge it away
            logger.error(
                "message_invalid",
                message_id=delivery.message_id,
                error=str(e),
                body=delivery.body[:200],
            )
            self._ack(delivery)
            return

        heartbeat = _start_heartbeat(self.queue, delivery, self.heartbeat_interval_s)
        try:
            self.handler(message, delivery)
        finally:
            _stop_heartbeat(heartbeat)

        self._ack(delivery)

    def _ack(self, delivery: Delivery) -> None:
        """Acknowledge, surviving a connection drop.

        If the connection is gone, the reconnect in the next loop iteration
        releases the message and it is redelivered; the executor recognises
        the already-terminal job and skips it.
        """
        try:
            if not self.queue.ack(delivery):
                logger.warning(
                    "ack_lease_lost",
                    message_id=delivery.message_id,
                    consumer_id=delivery.consumer_id,
                )
        except QueueUnavailable as e:
            logger.warning("ack_failed", message_id=delivery.message_id, error=str(e))
            self.queue.close()


def _start_heartbeat(queue: QueueBackend, delivery: Delivery, interval_s: float):
    """Start background thread refreshing the lease every interval_s.

    Returns:
        Tuple of (thread, stop_event) for cleanup

    Thread is daemon so it won't block process exit.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        while not stop_event.wait(interval_s):
            try:
                queue.heartbeat(delivery)
            except QueueUnavailable as e:
                # The main loop notices the lost connection on its next call
                logger.warning("heartbeat_failed", message_id=delivery.message_id, error=str(e))

    thread = threading.Thread(target=heartbeat_loop, daemon=True)
    thread.start()

    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data) -> None:
    """Signal heartbeat thread to stop and wait up to 5s for it."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)

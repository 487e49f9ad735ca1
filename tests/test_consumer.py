"""Tests for the queue consumer loop: prefetch, ack timing, reconnect, poison messages."""

import pytest

from reelqueue.errors import QueueUnavailable
from reelqueue.queue import QueueConsumer, QueueMessage, SQLiteQueue


class FlakyQueue(SQLiteQueue):
    """SQLiteQueue whose first `failures` connect attempts fail."""

    def __init__(self, *args, failures=0, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.connect_attempts = 0

    def connect(self):
        self.connect_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise QueueUnavailable("broker down")
        super().connect()


def _publish(queue, *job_ids):
    for job_id in job_ids:
        queue.publish(QueueMessage(job_id=job_id, source_reference=f"https://example.com/{job_id}"))


def test_handles_in_order_and_acks_after_handler(queue):
    _publish(queue, 1, 2)
    seen = []

    def handler(message, delivery):
        # the message being handled is still held (not acked yet)
        assert queue.stats()["in_flight"] == 1
        seen.append(message.job_id)

    consumer = QueueConsumer(queue, handler, sleep=lambda s: None)
    assert consumer.run(drain=True) == 2
    assert seen == [1, 2]
    assert queue.stats()["total"] == 0


def test_max_messages(queue):
    _publish(queue, 1, 2, 3)
    consumer = QueueConsumer(queue, lambda m, d: None, sleep=lambda s: None)
    assert consumer.run(max_messages=2) == 2
    assert queue.stats()["ready"] == 1


def test_never_holds_two_messages(queue):
    _publish(queue, 1, 2, 3)
    in_flight = []

    def handler(message, delivery):
        in_flight.append(queue.stats()["in_flight"])

    QueueConsumer(queue, handler, sleep=lambda s: None).run(drain=True)
    assert in_flight == [1, 1, 1]


def test_handler_exception_leaves_message_unacked(queue):
    _publish(queue, 1)

    class Boom(Exception):
        pass

    def handler(message, delivery):
        raise Boom()

    consumer = QueueConsumer(queue, handler, consumer_id="c1", sleep=lambda s: None)
    with pytest.raises(Boom):
        consumer.run(drain=True)
    assert queue.stats() == {"ready": 0, "in_flight": 1, "total": 1}


def test_redelivery_after_crash(queue):
    _publish(queue, 1)
    deliveries = []

    def crashing(message, delivery):
        raise KeyboardInterrupt()

    with pytest.raises(KeyboardInterrupt):
        QueueConsumer(queue, crashing, consumer_id="dead", sleep=lambda s: None).run(drain=True)

    def handler(message, delivery):
        deliveries.append(delivery)

    # a new worker treats the dead worker's lease as stale
    survivor = QueueConsumer(
        queue, handler, consumer_id="alive", stale_timeout_s=0.0, sleep=lambda s: None
    )
    assert survivor.run(drain=True) == 1
    assert deliveries[0].redelivered
    assert deliveries[0].delivery_count == 2
    assert queue.stats()["total"] == 0


def test_reconnects_with_fixed_delay(queue_path):
    producer = SQLiteQueue(queue_path)
    producer.connect()
    _publish(producer, 1)
    producer.close()

    flaky = FlakyQueue(queue_path, failures=3)
    sleeps = []
    handled = []
    consumer = QueueConsumer(
        flaky,
        lambda m, d: handled.append(m.job_id),
        reconnect_delay_s=5.0,
        sleep=sleeps.append,
    )
    assert consumer.run(drain=True) == 1
    assert handled == [1]
    assert sleeps == [5.0, 5.0, 5.0]
    assert flaky.connect_attempts == 4
    flaky.close()


def test_reconnect_recovers_own_unacked_message(queue_path):
    q = SQLiteQueue(queue_path)
    q.connect()
    _publish(q, 1)
    # held by c1 when the connection dropped
    assert q.claim("c1") is not None
    q.close()

    handled = []
    consumer = QueueConsumer(
        q, lambda m, d: handled.append(d), consumer_id="c1", sleep=lambda s: None
    )
    assert consumer.run(drain=True) == 1
    assert handled[0].redelivered
    assert q.stats()["total"] == 0
    q.close()


def test_lost_connection_mid_loop_is_not_fatal(queue):
    _publish(queue, 1)
    sleeps = []
    calls = {"n": 0}
    original_claim = queue.claim

    def flaky_claim(consumer_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise QueueUnavailable("connection reset")
        return original_claim(consumer_id)

    queue.claim = flaky_claim
    handled = []
    consumer = QueueConsumer(
        queue, lambda m, d: handled.append(m.job_id), reconnect_delay_s=2.0, sleep=sleeps.append
    )
    assert consumer.run(drain=True) == 1
    assert handled == [1]
    assert sleeps == [2.0]


def test_poison_message_is_acked(queue):
    with queue._session() as db:
        db.execute(
            "INSERT INTO messages (queue, body, status, delivery_count, published_at) "
            "VALUES (?, ?, 'ready', 0, '2024-01-01T00:00:00.000000')",
            (queue.name, "{not json"),
        )
    handled = []
    consumer = QueueConsumer(queue, lambda m, d: handled.append(m), sleep=lambda s: None)
    assert consumer.run(drain=True) == 1
    assert handled == []
    assert queue.stats()["total"] == 0


def test_stop_before_run(queue):
    _publish(queue, 1)
    consumer = QueueConsumer(queue, lambda m, d: None, sleep=lambda s: None)
    consumer.stop()
    assert consumer.run() == 0
    assert queue.stats()["ready"] == 1


def test_idle_polls_until_stopped(queue):
    sleeps = []
    consumer = QueueConsumer(queue, lambda m, d: None, poll_interval_s=1.0)

    def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 3:
            consumer.stop()

    consumer._sleep = fake_sleep
    assert consumer.run() == 0
    assert sleeps == [1.0, 1.0, 1.0]

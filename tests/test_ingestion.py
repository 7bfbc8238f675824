import json
import threading
import unittest
from unittest import mock

from confluent_kafka import KafkaError, KafkaException
from sqlalchemy import func, select

from anomaly_service.db import TransactionRepository, init_schema, make_engine
from anomaly_service.history import RecentHistoryStore
from anomaly_service.ingestion import AnomalyReporter, IngestionLoop, Stage
from anomaly_service.models import TransactionRecord
from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from common.error_handling import PersistError
from common.metrics import PipelineMetrics
from common.redis_client import RedisClient
from common.retry import RetryConfig
from tests.fakes import BrokenRedis, FakeConsumer, FakeMessage, FakeRedis, transport_error

NO_WAIT = RetryConfig(base_delay=0.0, max_delay=0.0, jitter=False)


def event(**overrides):
    body = {
        "id": "tx_0001",
        "user_id": "user_1",
        "amount": 1200.0,
        "currency": "INR",
        "timestamp": "2024-03-01T12:00:00Z",
        "location": "Mumbai",
    }
    body.update(overrides)
    return json.dumps(body).encode("utf-8")


class FailingRepository:
    def __init__(self):
        self.attempts = 0

    def insert(self, txn):
        self.attempts += 1
        raise PersistError("database unavailable")


class FlakyRepository:
    """Fails the first insert with the given error, then stores normally"""

    def __init__(self, repository, error):
        self.repository = repository
        self.error = error
        self.attempts = 0

    def insert(self, txn):
        self.attempts += 1
        if self.attempts == 1:
            raise self.error
        self.repository.insert(txn)


class RecordingProducer:
    def __init__(self, fail=False):
        self.fail = fail
        self.produced = []
        self.flushed = 0

    def produce(self, topic, key=None, value=None):
        if self.fail:
            raise BufferError("local queue full")
        self.produced.append((topic, key, value))

    def flush(self, timeout=None):
        self.flushed += 1
        return 0


class PipelineTestCase(unittest.TestCase):

    def setUp(self):
        self.engine = make_engine("sqlite://")
        init_schema(self.engine)
        self.repository = TransactionRepository(self.engine)
        self.redis = FakeRedis()
        self.history = RecentHistoryStore(RedisClient(self.redis), size=10)
        self.metrics = PipelineMetrics()

    def tearDown(self):
        self.engine.dispose()

    def make_loop(self, consumer=None, **kwargs):
        kwargs.setdefault("repository", self.repository)
        kwargs.setdefault("history", self.history)
        return IngestionLoop(
            consumer=consumer or FakeConsumer([]),
            metrics=self.metrics,
            read_retry=NO_WAIT,
            **kwargs,
        )

    def stored_rows(self):
        with self.repository.SessionLocal() as db:
            return db.execute(select(func.count()).select_from(TransactionRecord)).scalar_one()

    def counters(self):
        return self.metrics.snapshot()


class TestHandleEvent(PipelineTestCase):

    def test_successful_event_is_stored_and_counted(self):
        outcome = self.make_loop().handle(event())
        self.assertEqual(outcome.stage, Stage.REPORTED)
        self.assertEqual(outcome.flags, [])
        self.assertEqual(self.stored_rows(), 1)
        self.assertEqual(self.counters()["transactions_processed_total"], 1)
        self.assertEqual(self.counters()["transactions_errors_total"], 0)
        self.assertEqual(self.counters()["transactions_anomalies_total"], 0)

    def test_first_event_sets_location_baseline_without_flag(self):
        outcome = self.make_loop().handle(event(location="London"))
        self.assertEqual(outcome.flags, [])
        self.assertEqual(self.history.get_last_location("user_1"), "London")

    def test_decode_failure_is_skipped_without_side_effects(self):
        outcome = self.make_loop().handle(b'{"id": "tx_1"}')
        self.assertEqual(outcome.stage, Stage.RECEIVED)
        self.assertEqual(self.stored_rows(), 0)
        self.assertEqual(self.counters()["transactions_processed_total"], 0)
        self.assertEqual(self.redis.lists, {})

    def test_persist_failure_skips_history_and_rules(self):
        repository = FailingRepository()
        loop = self.make_loop(repository=repository)
        with mock.patch("anomaly_service.ingestion.evaluate") as evaluate:
            outcome = loop.handle(event(amount=90000, timestamp="2024-03-01T02:00:00Z"))
        evaluate.assert_not_called()
        self.assertEqual(outcome.stage, Stage.DECODED)
        self.assertEqual(repository.attempts, 1)
        self.assertEqual(self.counters()["transactions_errors_total"], 1)
        self.assertEqual(self.counters()["transactions_processed_total"], 0)
        self.assertEqual(self.counters()["transactions_anomalies_total"], 0)
        self.assertEqual(self.redis.lists, {})
        self.assertEqual(self.redis.values, {})

    def test_third_event_within_a_minute_flags_high_frequency(self):
        loop = self.make_loop()
        loop.handle(event(id="tx_1", timestamp="2024-03-01T12:00:00Z"))
        second = loop.handle(event(id="tx_2", timestamp="2024-03-01T12:00:20Z"))
        third = loop.handle(event(id="tx_3", timestamp="2024-03-01T12:00:40Z"))
        self.assertEqual(second.flags, [])
        self.assertEqual([f.reason for f in third.flags], ["high-frequency"])
        self.assertEqual(self.counters()["transactions_anomalies_total"], 1)

    def test_anomaly_counter_increments_once_per_event(self):
        loop = self.make_loop()
        loop.handle(event(id="tx_1", location="Delhi"))
        with self.assertLogs("anomaly_service.ingestion", level="WARNING") as logs:
            outcome = loop.handle(event(id="tx_2", location="Sydney", amount=80000, timestamp="2024-03-01T01:00:00Z"))
        self.assertEqual([f.reason for f in outcome.flags], ["location-change", "odd-hour-high-value"])
        self.assertEqual(self.counters()["transactions_anomalies_total"], 1)
        self.assertEqual(self.counters()["transactions_processed_total"], 2)
        self.assertEqual(sum("Anomaly for user_1" in line for line in logs.output), 2)
        self.assertEqual(self.history.get_last_location("user_1"), "Sydney")

    def test_history_outage_degrades_to_no_history(self):
        history = RecentHistoryStore(RedisClient(BrokenRedis()), size=10)
        loop = self.make_loop(history=history)
        for i in range(3):
            outcome = loop.handle(event(id=f"tx_{i}", location="London" if i % 2 else "Mumbai"))
            self.assertEqual(outcome.stage, Stage.REPORTED)
            self.assertEqual(outcome.flags, [])
        self.assertEqual(self.counters()["transactions_processed_total"], 3)

    def test_redelivered_event_fails_persistence_without_touching_history(self):
        loop = self.make_loop()
        loop.handle(event(id="tx_dup"))
        outcome = loop.handle(event(id="tx_dup"))
        self.assertEqual(outcome.stage, Stage.DECODED)
        self.assertEqual(self.counters()["transactions_errors_total"], 1)
        self.assertEqual(len(self.redis.lists["history:user_1"]), 1)

    def test_duplicate_suppression_skips_redelivery(self):
        loop = self.make_loop(dedupe_ttl_seconds=3600)
        loop.handle(event(id="tx_dup"))
        outcome = loop.handle(event(id="tx_dup"))
        self.assertTrue(outcome.duplicate)
        self.assertEqual(self.counters()["transactions_errors_total"], 0)
        self.assertEqual(self.counters()["transactions_processed_total"], 1)
        self.assertEqual(self.stored_rows(), 1)

    def test_redelivery_is_stored_after_failed_insert_with_suppression_on(self):
        repository = FlakyRepository(self.repository, PersistError("database unavailable"))
        loop = self.make_loop(repository=repository, dedupe_ttl_seconds=3600)
        first = loop.handle(event(id="tx_retry"))
        self.assertEqual(first.stage, Stage.DECODED)
        self.assertNotIn("seen:tx_retry", self.redis.values)

        second = loop.handle(event(id="tx_retry"))
        self.assertEqual(second.stage, Stage.REPORTED)
        self.assertFalse(second.duplicate)
        self.assertEqual(self.stored_rows(), 1)
        self.assertEqual(self.redis.values["seen:tx_retry"], "1")
        self.assertEqual(self.counters()["transactions_errors_total"], 1)
        self.assertEqual(self.counters()["transactions_processed_total"], 1)


class TestAnomalyReporter(PipelineTestCase):

    def test_flags_are_published_when_topic_configured(self):
        producer = RecordingProducer()
        loop = self.make_loop(reporter=AnomalyReporter(producer, "transaction_anomalies"))
        loop.handle(event(amount=70000, timestamp="2024-03-01T03:10:00Z"))
        self.assertEqual(len(producer.produced), 1)
        topic, key, value = producer.produced[0]
        self.assertEqual(topic, "transaction_anomalies")
        self.assertEqual(key, b"user_1")
        self.assertEqual(json.loads(value)["reason"], "odd-hour-high-value")
        self.assertEqual(producer.flushed, 1)

    def test_publish_failure_does_not_fail_the_event(self):
        loop = self.make_loop(reporter=AnomalyReporter(RecordingProducer(fail=True), "transaction_anomalies"))
        outcome = loop.handle(event(amount=70000, timestamp="2024-03-01T03:10:00Z"))
        self.assertTrue(outcome.completed)
        self.assertEqual(self.counters()["transactions_anomalies_total"], 1)


class TestRunLoop(PipelineTestCase):

    def test_loop_survives_read_errors_and_commits_every_message(self):
        stop = threading.Event()
        good_1 = FakeMessage(event(id="tx_1"))
        bad = FakeMessage(b"not json")
        good_2 = FakeMessage(event(id="tx_2", timestamp="2024-03-01T12:00:05Z"))
        consumer = FakeConsumer(
            [transport_error(), good_1, None, KafkaException(KafkaError(KafkaError._TRANSPORT)), bad, good_2],
            stop_event=stop,
        )
        loop = self.make_loop(consumer)
        loop.run(stop)
        self.assertEqual(consumer.committed, [good_1, bad, good_2])
        self.assertEqual(self.counters()["transactions_processed_total"], 2)
        self.assertEqual(self.stored_rows(), 2)

    def test_partition_eof_is_not_a_read_error(self):
        stop = threading.Event()
        consumer = FakeConsumer([FakeMessage(error=KafkaError(KafkaError._PARTITION_EOF))], stop_event=stop)
        loop = self.make_loop(consumer)
        loop.run(stop)
        self.assertEqual(loop.backoff.failures, 0)
        self.assertEqual(loop.breaker.failure_count, 0)

    def test_unexpected_error_is_counted_and_loop_continues(self):
        stop = threading.Event()
        repository = mock.Mock()
        repository.insert.side_effect = [RuntimeError("driver exploded"), None]
        first, second = FakeMessage(event(id="tx_1")), FakeMessage(event(id="tx_2"))
        consumer = FakeConsumer([first, second], stop_event=stop)
        loop = self.make_loop(consumer, repository=repository)
        loop.run(stop)
        self.assertEqual(consumer.committed, [first, second])
        self.assertEqual(self.counters()["transactions_errors_total"], 1)
        self.assertEqual(self.counters()["transactions_processed_total"], 1)

    def test_redelivery_after_unexpected_insert_error_is_stored(self):
        stop = threading.Event()
        repository = FlakyRepository(self.repository, RuntimeError("driver exploded"))
        first, second = FakeMessage(event(id="tx_1")), FakeMessage(event(id="tx_1"))
        consumer = FakeConsumer([first, second], stop_event=stop)
        loop = self.make_loop(consumer, repository=repository, dedupe_ttl_seconds=3600)
        loop.run(stop)
        self.assertEqual(consumer.committed, [first, second])
        self.assertEqual(repository.attempts, 2)
        self.assertEqual(self.stored_rows(), 1)
        self.assertEqual(self.counters()["transactions_errors_total"], 1)
        self.assertEqual(self.counters()["transactions_processed_total"], 1)

    def test_open_breaker_stops_polling(self):
        stop = threading.Event()
        consumer = FakeConsumer([transport_error(), transport_error(), FakeMessage(event())])
        breaker = CircuitBreaker("kafka-read", CircuitBreakerConfig(failure_threshold=2, reset_timeout=300.0))
        loop = self.make_loop(consumer, read_breaker=breaker)
        self.assertIsNone(loop.poll_once(stop))
        self.assertIsNone(loop.poll_once(stop))
        self.assertEqual(breaker.state, CircuitState.OPEN)

        stop.set()
        self.assertIsNone(loop.poll_once(stop))
        self.assertEqual(len(consumer.script), 1)

    def test_stop_event_ends_the_loop_before_reading(self):
        stop = threading.Event()
        stop.set()
        consumer = FakeConsumer([FakeMessage(event())])
        self.make_loop(consumer).run(stop)
        self.assertEqual(consumer.committed, [])


if __name__ == "__main__":
    unittest.main()

"""
Ingestion loop: read → decode → persist → update history → evaluate → report.

One event at a time, in arrival order. Per-event failures are logged and
counted, never fatal; the loop only stops when the shutdown event is set.
"""
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from confluent_kafka import KafkaError, KafkaException
from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from common.error_handling import DecodeError, PersistError
from common.metrics import PipelineMetrics
from common.retry import Backoff, RetryConfig
from common.schemas import AnomalyFlag, Transaction, decode_transaction
from .db import TransactionRepository
from .history import RecentHistoryStore
from .rules import CountryLookup, RuleThresholds, StaticCountryLookup, evaluate

logger = logging.getLogger(__name__)

class Stage(Enum):
    RECEIVED = "received"
    DECODED = "decoded"
    PERSISTED = "persisted"
    HISTORY_UPDATED = "history_updated"
    EVALUATED = "evaluated"
    REPORTED = "reported"

@dataclass
class EventOutcome:
    """How far one payload got through the pipeline"""
    stage: Stage
    transaction: Optional[Transaction] = None
    flags: List[AnomalyFlag] = field(default_factory=list)
    duplicate: bool = False

    @property
    def completed(self) -> bool:
        return self.stage == Stage.REPORTED

class AnomalyReporter:
    """One log line per flag, optionally mirrored to a Kafka topic"""

    def __init__(self, producer=None, topic: Optional[str] = None):
        self.producer = producer
        self.topic = topic

    def report(self, flags: List[AnomalyFlag]):
        for flag in flags:
            logger.warning(f"🚨 Anomaly for {flag.user_id}: {flag.describe()}")
            if self.producer is not None and self.topic:
                self._publish(flag)
        if flags and self.producer is not None and self.topic:
            try:
                self.producer.flush(5.0)
            except KafkaException as e:
                logger.error(f"❌ Failed to flush anomaly alerts: {e}")

    def _publish(self, flag: AnomalyFlag):
        try:
            self.producer.produce(
                self.topic,
                key=flag.user_id.encode("utf-8"),
                value=flag.model_dump_json().encode("utf-8"),
            )
        except (KafkaException, BufferError) as e:
            logger.error(f"❌ Failed to publish anomaly alert for {flag.transaction_id}: {e}")

class IngestionLoop:
    def __init__(
        self,
        consumer,
        repository: TransactionRepository,
        history: RecentHistoryStore,
        metrics: PipelineMetrics,
        lookup: CountryLookup = None,
        thresholds: RuleThresholds = None,
        reporter: AnomalyReporter = None,
        poll_timeout: float = 1.0,
        read_retry: RetryConfig = None,
        read_breaker: CircuitBreaker = None,
        dedupe_ttl_seconds: Optional[int] = None,
    ):
        self.consumer = consumer
        self.repository = repository
        self.history = history
        self.metrics = metrics
        self.lookup = lookup or StaticCountryLookup()
        self.thresholds = thresholds or RuleThresholds()
        self.reporter = reporter or AnomalyReporter()
        self.poll_timeout = poll_timeout
        self.backoff = Backoff(read_retry or RetryConfig(base_delay=0.5, max_delay=30.0))
        self.breaker = read_breaker or CircuitBreaker("kafka-read", CircuitBreakerConfig())
        self.dedupe_ttl_seconds = dedupe_ttl_seconds

    # Per-event pipeline

    def handle(self, payload: bytes) -> EventOutcome:
        try:
            txn = decode_transaction(payload)
        except DecodeError as e:
            logger.warning(f"JSON decode error, skipping message: {e.message}")
            return EventOutcome(Stage.RECEIVED)

        if self.dedupe_ttl_seconds and self.history.already_seen(txn.id):
            logger.info(f"↩️ Duplicate delivery of {txn.id} skipped")
            return EventOutcome(Stage.DECODED, transaction=txn, duplicate=True)

        try:
            self.repository.insert(txn)
        except PersistError as e:
            self.metrics.record_error()
            logger.error(f"❌ DB insert error for {txn.id}: {e.message}")
            return EventOutcome(Stage.DECODED, transaction=txn)
        logger.info(f"✅ Stored: {txn.user_id} | {txn.amount:.2f} {txn.currency} from {txn.location}")
        if self.dedupe_ttl_seconds:
            self.history.mark_seen(txn.id, self.dedupe_ttl_seconds)

        history = self.history.snapshot(txn.user_id, txn.timestamp)
        flags = evaluate(txn, history, self.lookup, self.thresholds)
        self.history.set_last_location(txn.user_id, txn.location)

        self.metrics.record_processed()
        if flags:
            self.metrics.record_anomaly()
            self.reporter.report(flags)
        return EventOutcome(Stage.REPORTED, transaction=txn, flags=flags)

    # Transport

    def _read_failed(self, error, stop_event: threading.Event):
        self.breaker.record_failure()
        delay = self.backoff.next_delay()
        logger.error(f"Kafka read error (attempt {self.backoff.failures}): {error}. Retrying in {delay:.2f}s")
        stop_event.wait(delay)

    def poll_once(self, stop_event: threading.Event):
        """Return the next message, or None when nothing usable was read"""
        if not self.breaker.allow_request():
            stop_event.wait(self.breaker.seconds_until_retry())
            return None
        try:
            msg = self.consumer.poll(self.poll_timeout)
        except KafkaException as e:
            self._read_failed(e, stop_event)
            return None
        if msg is None:
            return None
        error = msg.error()
        if error is not None:
            if error.code() == KafkaError._PARTITION_EOF:
                return None
            self._read_failed(error, stop_event)
            return None
        self.breaker.record_success()
        self.backoff.reset()
        return msg

    def _commit(self, msg):
        try:
            self.consumer.commit(message=msg, asynchronous=False)
        except KafkaException as e:
            logger.error(f"Offset commit failed: {e}")

    def process_message(self, msg) -> EventOutcome:
        try:
            return self.handle(msg.value())
        except Exception:
            # Anything unexpected is still a per-event failure
            self.metrics.record_error()
            logger.exception("Unexpected error while processing message")
            return EventOutcome(Stage.RECEIVED)
        finally:
            self._commit(msg)

    def run(self, stop_event: threading.Event):
        logger.info("🚀 Consumer started...")
        while not stop_event.is_set():
            msg = self.poll_once(stop_event)
            if msg is None:
                continue
            self.process_message(msg)
        logger.info("🛑 Consumer loop stopped")

#!/usr/bin/env python3
"""
Anomaly Service
Consumes transaction events from Kafka and:
- Persists every transaction to the relational store
- Tracks bounded per-user history in Redis
- Flags high-frequency, location-change and odd-hour high-value activity
- Exposes Prometheus counters and a health check over HTTP
"""

import logging
import signal
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional
from fastapi import FastAPI
from prometheus_client import make_asgi_app
from sqlalchemy.engine import Engine
import uvicorn
from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from common.error_handling import ErrorCodes, ServiceError, add_error_handlers
from common.kafka import get_consumer, get_producer
from common.metrics import PipelineMetrics
from common.redis_client import RedisClient, connect_redis
from common.retry import RetryConfig, retry_call
from common.settings import Settings, settings as default_settings
from .db import TransactionRepository, check_connection, init_schema, make_engine
from .history import RecentHistoryStore
from .ingestion import AnomalyReporter, IngestionLoop
from .rules import RuleThresholds, StaticCountryLookup

logger = logging.getLogger(__name__)

@dataclass
class ServiceRuntime:
    settings: Settings
    consumer: object
    engine: Engine
    redis: RedisClient
    metrics: PipelineMetrics
    producer: Optional[object] = None

def _connect_kafka(cfg: Settings):
    consumer = get_consumer(cfg.kafka_group_id, [cfg.kafka_topic], bootstrap=cfg.kafka_bootstrap)
    try:
        consumer.list_topics(timeout=5.0)
    except Exception:
        consumer.close()
        raise
    return consumer

def _connect_redis(cfg: Settings) -> RedisClient:
    client = RedisClient(connect_redis(cfg.redis_url, cfg))
    if not client.ping():
        client.close()
        raise ConnectionError(f"Redis at {cfg.redis_url} did not answer PING")
    return client

def _connect_db(cfg: Settings) -> Engine:
    engine = make_engine(cfg.database_url, cfg)
    try:
        check_connection(engine)
        init_schema(engine)
    except Exception:
        engine.dispose()
        raise
    return engine

@contextmanager
def open_runtime(cfg: Settings) -> Iterator[ServiceRuntime]:
    """Acquire Kafka, Redis and the database; release whatever was acquired on exit"""
    startup = RetryConfig(max_attempts=cfg.startup_max_attempts, base_delay=cfg.startup_retry_delay, max_delay=30.0)
    consumer = engine = redis_client = producer = None
    try:
        engine = retry_call(_connect_db, startup, cfg)
        logger.info("✅ Connected to database")
        redis_client = retry_call(_connect_redis, startup, cfg)
        logger.info("✅ Connected to Redis")
        consumer = retry_call(_connect_kafka, startup, cfg)
        logger.info(f"✅ Subscribed to Kafka topic {cfg.kafka_topic} as {cfg.kafka_group_id}")
        if cfg.anomaly_topic:
            producer = get_producer(cfg.kafka_bootstrap)
        yield ServiceRuntime(
            settings=cfg,
            consumer=consumer,
            engine=engine,
            redis=redis_client,
            metrics=PipelineMetrics(),
            producer=producer,
        )
    finally:
        if producer is not None:
            producer.flush(5.0)
        if consumer is not None:
            consumer.close()
        if redis_client is not None:
            redis_client.close()
        if engine is not None:
            engine.dispose()
        logger.info("Released Kafka, Redis and database handles")

def build_loop(runtime: ServiceRuntime) -> IngestionLoop:
    cfg = runtime.settings
    return IngestionLoop(
        consumer=runtime.consumer,
        repository=TransactionRepository(runtime.engine),
        history=RecentHistoryStore(runtime.redis, size=cfg.history_size),
        metrics=runtime.metrics,
        lookup=StaticCountryLookup(),
        thresholds=RuleThresholds.from_settings(cfg),
        reporter=AnomalyReporter(runtime.producer, cfg.anomaly_topic),
        poll_timeout=cfg.kafka_poll_timeout,
        read_retry=RetryConfig(base_delay=cfg.read_retry_base_delay, max_delay=cfg.read_retry_max_delay),
        read_breaker=CircuitBreaker("kafka-read", CircuitBreakerConfig(
            failure_threshold=cfg.read_breaker_threshold,
            reset_timeout=cfg.read_breaker_reset_timeout,
        )),
        dedupe_ttl_seconds=cfg.dedupe_ttl_seconds if cfg.dedupe_enabled else None,
    )

def create_app(metrics: PipelineMetrics, redis_client: RedisClient, repository: TransactionRepository) -> FastAPI:
    app = FastAPI(title="Anomaly Service", version="1.0.0")
    add_error_handlers(app)
    app.mount("/metrics", make_asgi_app(registry=metrics.registry))

    @app.get("/health")
    def health():
        if not redis_client.ping():
            raise ServiceError(ErrorCodes.SERVICE_UNAVAILABLE, "redis unreachable")
        if not repository.ping():
            raise ServiceError(ErrorCodes.SERVICE_UNAVAILABLE, "database unreachable")
        return {"ok": True, "counters": metrics.snapshot()}

    return app

def serve_ops_api(app: FastAPI, port: int) -> threading.Thread:
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="ops-api", daemon=True)
    thread.start()
    logger.info(f"🔭 Prometheus metrics exposed at :{port}/metrics")
    return thread

def install_signal_handlers(stop_event: threading.Event):
    def _stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down after the current event")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

def main(cfg: Settings = None) -> int:
    cfg = cfg or default_settings
    logging.basicConfig(level=cfg.log_level.upper())
    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    try:
        with open_runtime(cfg) as runtime:
            loop = build_loop(runtime)
            serve_ops_api(create_app(runtime.metrics, runtime.redis, loop.repository), cfg.metrics_port)
            loop.run(stop_event)
    except Exception as e:
        logger.critical(f"💥 Anomaly service aborted: {e}")
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())

"""
Pipeline counters backed by prometheus_client
"""
from prometheus_client import CollectorRegistry, Counter

class PipelineMetrics:
    """Counters for processed, failed and anomalous transactions.

    Each instance owns its registry so tests and multiple pipelines never
    share state through the process-wide default registry.
    """

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.processed = Counter(
            "transactions_processed_total",
            "Total number of transactions processed",
            registry=self.registry,
        )
        self.errors = Counter(
            "transactions_errors_total",
            "Total number of transactions that failed to persist or process",
            registry=self.registry,
        )
        self.anomalies = Counter(
            "transactions_anomalies_total",
            "Total number of transactions with at least one anomaly",
            registry=self.registry,
        )

    def record_processed(self):
        self.processed.inc()

    def record_error(self):
        self.errors.inc()

    def record_anomaly(self):
        self.anomalies.inc()

    def snapshot(self) -> dict:
        return {
            name: self.registry.get_sample_value(name) or 0.0
            for name in (
                "transactions_processed_total",
                "transactions_errors_total",
                "transactions_anomalies_total",
            )
        }

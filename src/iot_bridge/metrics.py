"""Prometheus counters for received and persisted messages."""

from typing import Optional, Tuple

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest


class InstrumentationRegistry:
    """
    Process-wide ingestion counters backed by a prometheus CollectorRegistry.

    The registry is injected rather than using the global default so tests
    (and multiple bridges in one process) get independent counters.
    prometheus_client counters are safe to increment from any thread.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        self._received = Counter(
            'mqtt_messages_total',
            'Total number of MQTT messages received',
            registry=self.registry
        )
        self._persisted = Counter(
            'db_inserts_total',
            'Total number of DB inserts',
            registry=self.registry
        )

    def record_received(self) -> None:
        self._received.inc()

    def record_persisted(self) -> None:
        self._persisted.inc()

    @property
    def received_total(self) -> int:
        return self._sample('mqtt_messages_total')

    @property
    def persisted_total(self) -> int:
        return self._sample('db_inserts_total')

    def _sample(self, name: str) -> int:
        value = self.registry.get_sample_value(name)
        return int(value or 0)

    def render(self) -> Tuple[bytes, str]:
        """Return the text exposition and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST

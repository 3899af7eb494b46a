"""
Metrics collaborator: how the kernel reads the search service's health
and reports its own activity.

The kernel never collects metrics itself. It depends on a ``MetricsSource``
and ships two implementations: a settable in-process source for tests and
development, and a Prometheus-backed recorder for the engine's own metrics.
"""

import logging
import random
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from tuning_kernel.models.validation import PerformanceMetrics

logger = logging.getLogger(__name__)


class MetricsSource(Protocol):
    """Where health readings come from and engine metrics go."""

    async def get_average_latency(self) -> float: ...

    async def get_throughput(self) -> float: ...

    async def get_error_rate(self) -> float: ...

    async def get_cpu_usage(self) -> float: ...

    async def get_memory_usage(self) -> float: ...

    async def get_current_load(self) -> float: ...

    async def get_baseline_load(self) -> float: ...

    async def get_metric_variability(self) -> float: ...

    async def get_average_traffic_volume(self) -> float: ...

    async def get_metrics_for_variant(self, variant: str, since: datetime) -> Dict[str, float]: ...

    async def record_engine_metric(
        self,
        metric_type: str,
        value: float,
        confidence: float = 1.0,
        metadata: Optional[dict] = None,
    ) -> None: ...


class StaticMetricsSource:
    """
    In-process metrics source with settable values.
    Reads return the current value; ``queue`` lets a test script a
    sequence of readings consumed one per read. Variant readings default
    to the current readings unless ``set_variant`` overrides them.
    """

    def __init__(
        self,
        latency: float = 100.0,
        throughput: float = 1000.0,
        error_rate: float = 0.05,
        cpu_usage: float = 0.5,
        memory_usage: float = 0.5,
        current_load: float = 1.0,
        baseline_load: float = 1.0,
        metric_variability: float = 0.1,
        traffic_volume: float = 1000.0,
    ):
        self.values: Dict[str, float] = {
            "latency": latency,
            "throughput": throughput,
            "error_rate": error_rate,
            "cpu_usage": cpu_usage,
            "memory_usage": memory_usage,
            "current_load": current_load,
            "baseline_load": baseline_load,
            "metric_variability": metric_variability,
            "traffic_volume": traffic_volume,
        }
        self._queued: Dict[str, List[float]] = {}
        self._variants: Dict[str, Dict[str, float]] = {}
        self.recorded: List[dict] = []

    def set(self, **values: float) -> None:
        """Update one or more readings."""
        self.values.update(values)

    def set_variant(self, variant: str, **metrics: float) -> None:
        """Override readings (latency, throughput, errorRate...) for one variant."""
        self._variants.setdefault(variant, {}).update(metrics)

    def queue(self, name: str, readings: List[float]) -> None:
        """Script upcoming readings for a metric; the last one sticks."""
        self._queued.setdefault(name, []).extend(readings)

    def _read(self, name: str) -> float:
        queued = self._queued.get(name)
        if queued:
            self.values[name] = queued.pop(0)
        return self.values[name]

    async def get_average_latency(self) -> float:
        return self._read("latency")

    async def get_throughput(self) -> float:
        return self._read("throughput")

    async def get_error_rate(self) -> float:
        return self._read("error_rate")

    async def get_cpu_usage(self) -> float:
        return self._read("cpu_usage")

    async def get_memory_usage(self) -> float:
        return self._read("memory_usage")

    async def get_current_load(self) -> float:
        return self._read("current_load")

    async def get_baseline_load(self) -> float:
        return self._read("baseline_load")

    async def get_metric_variability(self) -> float:
        return self._read("metric_variability")

    async def get_average_traffic_volume(self) -> float:
        return self._read("traffic_volume")

    async def get_metrics_for_variant(self, variant: str, since: datetime) -> Dict[str, float]:
        metrics = {
            "latency": self._read("latency"),
            "throughput": self._read("throughput"),
            "errorRate": self._read("error_rate"),
            "cpuUsage": self._read("cpu_usage"),
            "memoryUsage": self._read("memory_usage"),
        }
        metrics.update(self._variants.get(variant, {}))
        return metrics

    async def record_engine_metric(
        self,
        metric_type: str,
        value: float,
        confidence: float = 1.0,
        metadata: Optional[dict] = None,
    ) -> None:
        self.recorded.append({
            "metric_type": metric_type,
            "value": value,
            "confidence": confidence,
            "metadata": metadata or {},
        })


class PrometheusMetricsRecorder:
    """
    Exposes the engine's own metrics through prometheus_client.

    Wraps a ``MetricsSource`` for reads and mirrors every engine metric and
    every health reading into gauges on a dedicated registry.
    """

    def __init__(
        self,
        source: MetricsSource,
        registry: Optional[CollectorRegistry] = None,
        namespace: str = "tuning_kernel",
    ):
        self.source = source
        self.registry = registry or CollectorRegistry()
        self.engine_metric = Gauge(
            "engine_metric",
            "Last value of an engine metric",
            ["metric_type"],
            namespace=namespace,
            registry=self.registry,
        )
        self.engine_metric_confidence = Gauge(
            "engine_metric_confidence",
            "Confidence attached to the last engine metric",
            ["metric_type"],
            namespace=namespace,
            registry=self.registry,
        )
        self.engine_metric_total = Counter(
            "engine_metric_records",
            "Engine metrics recorded",
            ["metric_type"],
            namespace=namespace,
            registry=self.registry,
        )
        self.search_health = Gauge(
            "search_health",
            "Last observed search service reading",
            ["metric"],
            namespace=namespace,
            registry=self.registry,
        )
        self.variant_health = Gauge(
            "variant_health",
            "Last observed reading of an experiment variant",
            ["variant", "metric"],
            namespace=namespace,
            registry=self.registry,
        )

    async def _observe(self, name: str, value: float) -> float:
        self.search_health.labels(metric=name).set(value)
        return value

    async def get_average_latency(self) -> float:
        return await self._observe("latency", await self.source.get_average_latency())

    async def get_throughput(self) -> float:
        return await self._observe("throughput", await self.source.get_throughput())

    async def get_error_rate(self) -> float:
        return await self._observe("error_rate", await self.source.get_error_rate())

    async def get_cpu_usage(self) -> float:
        return await self._observe("cpu_usage", await self.source.get_cpu_usage())

    async def get_memory_usage(self) -> float:
        return await self._observe("memory_usage", await self.source.get_memory_usage())

    async def get_current_load(self) -> float:
        return await self._observe("current_load", await self.source.get_current_load())

    async def get_baseline_load(self) -> float:
        return await self._observe("baseline_load", await self.source.get_baseline_load())

    async def get_metric_variability(self) -> float:
        return await self._observe(
            "metric_variability", await self.source.get_metric_variability()
        )

    async def get_average_traffic_volume(self) -> float:
        return await self._observe(
            "traffic_volume", await self.source.get_average_traffic_volume()
        )

    async def get_metrics_for_variant(self, variant: str, since: datetime) -> Dict[str, float]:
        metrics = await self.source.get_metrics_for_variant(variant, since)
        for name, value in metrics.items():
            self.variant_health.labels(variant=variant, metric=name).set(value)
        return metrics

    async def record_engine_metric(
        self,
        metric_type: str,
        value: float,
        confidence: float = 1.0,
        metadata: Optional[dict] = None,
    ) -> None:
        self.engine_metric.labels(metric_type=metric_type).set(value)
        self.engine_metric_confidence.labels(metric_type=metric_type).set(confidence)
        self.engine_metric_total.labels(metric_type=metric_type).inc()
        await self.source.record_engine_metric(metric_type, value, confidence, metadata)

    def export(self) -> bytes:
        """Prometheus text exposition of the registry."""
        return generate_latest(self.registry)


class MetricsAdapter:
    """
    The kernel's view of a ``MetricsSource``.

    Bundles the four health metrics into a ``PerformanceMetrics`` snapshot
    and applies ``sample_rate`` to engine metric recording.
    """

    def __init__(self, source: MetricsSource, sample_rate: float = 1.0):
        if not 0.0 <= sample_rate <= 1.0:
            raise ValueError(f"sample_rate must be within [0, 1], got {sample_rate}")
        self.source = source
        self.sample_rate = sample_rate

    async def collect_current_metrics(self) -> PerformanceMetrics:
        """Read latency, throughput, error rate and resource (CPU) utilization."""
        return PerformanceMetrics(
            latency=await self.source.get_average_latency(),
            throughput=await self.source.get_throughput(),
            error_rate=await self.source.get_error_rate(),
            resource_utilization=await self.source.get_cpu_usage(),
        )

    async def collect_raw_metrics(self) -> Dict[str, float]:
        """Metric names as used by the strategy impact analysis."""
        return {
            "latency": await self.source.get_average_latency(),
            "throughput": await self.source.get_throughput(),
            "errorRate": await self.source.get_error_rate(),
            "cpuUsage": await self.source.get_cpu_usage(),
            "memoryUsage": await self.source.get_memory_usage(),
        }

    async def get_average_latency(self) -> float:
        return await self.source.get_average_latency()

    async def get_current_load(self) -> float:
        return await self.source.get_current_load()

    async def get_baseline_load(self) -> float:
        return await self.source.get_baseline_load()

    async def get_metric_variability(self) -> float:
        return await self.source.get_metric_variability()

    async def get_average_traffic_volume(self) -> float:
        return await self.source.get_average_traffic_volume()

    async def collect_variant_metrics(self, variant: str, since: datetime) -> Dict[str, float]:
        """Readings of one experiment variant since ``since``, named as in ``collect_raw_metrics``."""
        return await self.source.get_metrics_for_variant(variant, since)

    async def record_engine_metric(
        self,
        metric_type: str,
        value: float,
        confidence: float = 1.0,
        metadata: Optional[dict] = None,
    ) -> bool:
        """Record a metric subject to sampling. Returns whether it was recorded."""
        if self.sample_rate < 1.0 and random.random() >= self.sample_rate:
            return False
        try:
            await self.source.record_engine_metric(metric_type, value, confidence, metadata)
        except Exception:
            logger.exception("Failed to record engine metric %s", metric_type)
            return False
        return True

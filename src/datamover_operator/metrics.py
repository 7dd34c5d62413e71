from __future__ import annotations

import threading
import time
from typing import Callable

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from .models import Phase

# 1s to ~17min
PHASE_DURATION_BUCKETS = tuple(float(2**exponent) for exponent in range(10))


class MetricsRecorder:
    """Prometheus series emitted at every state-machine transition."""

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        self.operations_total = Counter(
            "datamover_operations_total",
            "Total number of DataMover operations by phase and status",
            ["phase", "status", "namespace"],
            registry=registry,
        )
        self.phase_duration_seconds = Histogram(
            "datamover_phase_duration_seconds",
            "Duration of DataMover phases in seconds",
            ["phase", "namespace"],
            buckets=PHASE_DURATION_BUCKETS,
            registry=registry,
        )
        self.current_phase = Gauge(
            "datamover_current_phase",
            "Current phase of DataMover operations (index into the phase enumeration)",
            ["name", "namespace"],
            registry=registry,
        )
        self.errors_total = Counter(
            "datamover_errors_total",
            "Total number of errors encountered during DataMover operations",
            ["error_type", "phase", "namespace"],
            registry=registry,
        )
        self.pvc_clone_operations_total = Counter(
            "datamover_pvc_clone_operations_total",
            "Total number of PVC clone operations",
            ["status", "namespace"],
            registry=registry,
        )
        self.pod_creation_operations_total = Counter(
            "datamover_pod_creation_operations_total",
            "Total number of sync job creation operations",
            ["status", "namespace"],
            registry=registry,
        )
        self.data_sync_operations_total = Counter(
            "datamover_data_sync_operations_total",
            "Total number of data sync operations",
            ["status", "namespace"],
            registry=registry,
        )
        self.pvc_cleanup_operations_total = Counter(
            "datamover_pvc_cleanup_operations_total",
            "Total number of PVC cleanup operations",
            ["status", "namespace"],
            registry=registry,
        )
        self.population_operations_total = Counter(
            "datamover_population_operations_total",
            "Total number of volume population operations by stage and status",
            ["stage", "status", "namespace"],
            registry=registry,
        )

    def record_operation(self, phase: Phase | str, status: str, namespace: str) -> None:
        self.operations_total.labels(phase=_phase_label(phase), status=status, namespace=namespace).inc()

    def record_phase_duration(self, phase: Phase | str, namespace: str, seconds: float) -> None:
        self.phase_duration_seconds.labels(phase=_phase_label(phase), namespace=namespace).observe(seconds)

    def set_current_phase(self, name: str, namespace: str, phase: Phase) -> None:
        self.current_phase.labels(name=name, namespace=namespace).set(phase.metric_value)

    def forget_current_phase(self, name: str, namespace: str) -> None:
        try:
            self.current_phase.remove(name, namespace)
        except KeyError:
            return

    def record_error(self, error_type: str, phase: Phase | str, namespace: str) -> None:
        self.errors_total.labels(error_type=error_type, phase=_phase_label(phase), namespace=namespace).inc()

    def record_clone(self, status: str, namespace: str) -> None:
        self.pvc_clone_operations_total.labels(status=status, namespace=namespace).inc()

    def record_pod_creation(self, status: str, namespace: str) -> None:
        self.pod_creation_operations_total.labels(status=status, namespace=namespace).inc()

    def record_data_sync(self, status: str, namespace: str) -> None:
        self.data_sync_operations_total.labels(status=status, namespace=namespace).inc()

    def record_cleanup(self, status: str, namespace: str) -> None:
        self.pvc_cleanup_operations_total.labels(status=status, namespace=namespace).inc()

    def record_population(self, stage: str, status: str, namespace: str) -> None:
        self.population_operations_total.labels(stage=stage, status=status, namespace=namespace).inc()


class PhaseClock:
    """Phase start times keyed by (namespace, name, phase), owned by one reconciler."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._started: dict[tuple[str, str, Phase], float] = {}
        self._lock = threading.Lock()

    def start(self, namespace: str, name: str, phase: Phase) -> None:
        with self._lock:
            self._started[(namespace, name, phase)] = self._clock()

    def stop(self, namespace: str, name: str, phase: Phase) -> float | None:
        with self._lock:
            started = self._started.pop((namespace, name, phase), None)
        if started is None:
            return None
        return max(0.0, self._clock() - started)

    def forget(self, namespace: str, name: str) -> None:
        with self._lock:
            for key in [key for key in self._started if key[0] == namespace and key[1] == name]:
                del self._started[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._started)


def _phase_label(phase: Phase | str) -> str:
    return phase.value if isinstance(phase, Phase) else phase

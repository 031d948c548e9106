"""Metrics collector exposing per-pod queue sizes of the inference pool."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from eppicker.datastore import PoolNotSyncedError

PER_POD_QUEUE_SIZE = "inference_pool_per_pod_queue_size"
PER_POD_QUEUE_SIZE_HELP = (
    "[ALPHA] The total number of requests pending in the model server queue "
    "for each underlying pod."
)
PER_POD_QUEUE_SIZE_LABELS = ("name", "model_server_pod")


@dataclass(frozen=True)
class GaugeSample:
    """One gauge value with its labels."""

    name: str
    labels: Dict[str, str]
    value: float


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class InferencePoolMetricsCollector:
    """Collects the waiting queue size of every pod in the pool."""

    def __init__(self, datastore: Any) -> None:
        self.datastore = datastore

    def describe(self) -> List[Tuple[str, str, Tuple[str, ...]]]:
        """Return (name, help, label names) for each metric collected."""
        return [(PER_POD_QUEUE_SIZE, PER_POD_QUEUE_SIZE_HELP, PER_POD_QUEUE_SIZE_LABELS)]

    def collect(self) -> List[GaugeSample]:
        """Return one sample per pod; nothing when the pool is not synced."""
        try:
            pool = self.datastore.pool_get()
        except PoolNotSyncedError:
            return []
        return [
            GaugeSample(
                PER_POD_QUEUE_SIZE,
                {"name": pool.name, "model_server_pod": pm.pod.namespaced_name.name},
                float(pm.metrics.waiting_queue_size),
            )
            for pm in self.datastore.pod_get_all()
        ]

    def expose(self) -> str:
        """Render the collected samples in the text exposition format."""
        samples = self.collect()
        if not samples:
            return ""
        lines = [
            f"# HELP {PER_POD_QUEUE_SIZE} {PER_POD_QUEUE_SIZE_HELP}",
            f"# TYPE {PER_POD_QUEUE_SIZE} gauge",
        ]
        for sample in samples:
            labels = ",".join(
                f'{key}="{_escape(value)}"' for key, value in sorted(sample.labels.items())
            )
            lines.append(f"{sample.name}{{{labels}}} {_format_value(sample.value)}")
        return "\n".join(lines) + "\n"
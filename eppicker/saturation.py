"""Detection of backend saturation from pod queue depth and KV-cache metrics."""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, TypeVar

_log = logging.getLogger(__name__)

DEFAULT_QUEUE_DEPTH_THRESHOLD = 5
DEFAULT_KV_CACHE_UTIL_THRESHOLD = 0.8
# Pod metrics refresh every 50ms; a threshold slightly above that is enough.
DEFAULT_METRICS_STALENESS_THRESHOLD = 0.2

ENV_QUEUE_DEPTH_THRESHOLD = "SD_QUEUE_DEPTH_THRESHOLD"
ENV_KV_CACHE_UTIL_THRESHOLD = "SD_KV_CACHE_UTIL_THRESHOLD"
ENV_METRICS_STALENESS_THRESHOLD = "SD_METRICS_STALENESS_THRESHOLD"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

_T = TypeVar("_T")


@dataclass
class SaturationConfig:
    """Thresholds for deciding whether a pod still has good capacity.

    ``metrics_staleness_threshold`` is in seconds.
    """

    queue_depth_threshold: int = DEFAULT_QUEUE_DEPTH_THRESHOLD
    kv_cache_util_threshold: float = DEFAULT_KV_CACHE_UTIL_THRESHOLD
    metrics_staleness_threshold: float = DEFAULT_METRICS_STALENESS_THRESHOLD


def _parse_duration(text: str) -> float:
    """Parse a duration such as ``100ms`` or ``1h30m`` into seconds."""
    text = text.strip()
    if not text:
        raise ValueError("empty duration")
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0:
        raise ValueError(f"invalid duration {text!r}")
    return sign * total


def _env_value(
    environ: Mapping[str, str], key: str, parse: Callable[[str], _T], default: _T
) -> _T:
    raw = environ.get(key)
    if raw is None:
        return default
    try:
        return parse(raw)
    except ValueError:
        _log.error("invalid value %r for %s, using default %r", raw, key, default)
        return default


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> SaturationConfig:
    """Build a config from environment variables, falling back to defaults.

    Values that fail to parse or are out of range are replaced by defaults.
    """
    env = os.environ if environ is None else environ

    queue_depth = _env_value(env, ENV_QUEUE_DEPTH_THRESHOLD, int, DEFAULT_QUEUE_DEPTH_THRESHOLD)
    if queue_depth <= 0:
        queue_depth = DEFAULT_QUEUE_DEPTH_THRESHOLD

    kv_cache = _env_value(env, ENV_KV_CACHE_UTIL_THRESHOLD, float, DEFAULT_KV_CACHE_UTIL_THRESHOLD)
    if kv_cache <= 0 or kv_cache >= 1:
        kv_cache = DEFAULT_KV_CACHE_UTIL_THRESHOLD

    staleness = _env_value(
        env, ENV_METRICS_STALENESS_THRESHOLD, _parse_duration, DEFAULT_METRICS_STALENESS_THRESHOLD
    )
    if staleness <= 0:
        staleness = DEFAULT_METRICS_STALENESS_THRESHOLD

    config = SaturationConfig(queue_depth, kv_cache, staleness)
    _log.info("Saturation detector configuration loaded from env: %s", config)
    return config


class Detector:
    """Decides whether the whole pool is saturated.

    The datastore must provide ``pod_get_all()`` returning objects with
    ``pod`` and ``metrics`` attributes.
    """

    def __init__(
        self,
        config: SaturationConfig,
        datastore: Any,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.datastore = datastore
        self._clock = clock
        _log.info(
            "Creating new saturation detector: queue_depth=%s kv_cache=%s staleness=%ss",
            config.queue_depth_threshold,
            config.kv_cache_util_threshold,
            config.metrics_staleness_threshold,
        )

    def is_saturated(self) -> bool:
        """Return True unless at least one pod has fresh metrics and spare capacity."""
        pods = self.datastore.pod_get_all()
        if not pods:
            _log.debug("No pods found in datastore; system is considered saturated.")
            return True

        now = self._clock()
        for pm in pods:
            metrics = pm.metrics
            pod_name = str(pm.pod.namespaced_name) if pm.pod is not None else "unknown-pod"
            if metrics is None:
                _log.debug("Pod %s has no metrics, skipping", pod_name)
                continue
            if now - metrics.update_time > self.config.metrics_staleness_threshold:
                _log.debug("Pod %s metrics are stale", pod_name)
                continue
            if metrics.waiting_queue_size > self.config.queue_depth_threshold:
                _log.debug("Pod %s waiting queue above threshold", pod_name)
                continue
            if metrics.kv_cache_usage_percent > self.config.kv_cache_util_threshold:
                _log.debug("Pod %s KV cache usage above threshold", pod_name)
                continue
            _log.debug("Found pod with good capacity: %s", pod_name)
            return False

        _log.debug("No pods found with good capacity; system is considered saturated.")
        return True
"""Local cache of the inference pool, its models and the pods that serve it."""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

_log = logging.getLogger(__name__)

MODEL_NAME_INDEX_KEY = "spec.modelName"


@dataclass(frozen=True)
class NamespacedName:
    """Identifies an object by name and namespace."""

    name: str
    namespace: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class Criticality(str, enum.Enum):
    """How important the requests for a model are."""

    CRITICAL = "Critical"
    STANDARD = "Standard"
    SHEDDABLE = "Sheddable"


@dataclass
class TargetModel:
    """A concrete model a request may be routed to, with an optional weight."""

    name: str
    weight: Optional[int] = None


@dataclass
class InferenceModel:
    """A model served by an inference pool."""

    name: str
    namespace: str = ""
    model_name: str = ""
    criticality: Optional[Criticality] = None
    target_models: List[TargetModel] = field(default_factory=list)
    pool_ref: str = ""
    creation_timestamp: float = 0.0
    deletion_timestamp: Optional[float] = None

    @property
    def namespaced_name(self) -> NamespacedName:
        return NamespacedName(self.name, self.namespace)


@dataclass
class InferencePool:
    """A group of model-server pods selected by labels."""

    name: str = ""
    namespace: str = ""
    selector: Dict[str, str] = field(default_factory=dict)
    target_port_number: int = 0


@dataclass
class Pod:
    """A cluster pod as reported by the cluster API."""

    name: str
    namespace: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    pod_ip: str = ""
    node_name: str = ""
    ready: bool = False

    @property
    def namespaced_name(self) -> NamespacedName:
        return NamespacedName(self.name, self.namespace)


@dataclass
class BackendPod:
    """The routing view of a pod: its identity, address and labels."""

    namespaced_name: NamespacedName
    address: str = ""
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetricsState:
    """Metrics last scraped from a model server."""

    waiting_queue_size: int = 0
    kv_cache_usage_percent: float = 0.0
    max_active_models: int = 0
    active_models: Dict[str, int] = field(default_factory=dict)
    waiting_models: Dict[str, int] = field(default_factory=dict)
    update_time: float = 0.0


def _to_backend_pod(pod: Pod) -> BackendPod:
    return BackendPod(
        namespaced_name=pod.namespaced_name,
        address=pod.pod_ip,
        labels=dict(pod.labels),
    )


class PodMetrics:
    """A pod together with its metrics, refreshed in the background.

    The client, if given, must provide ``fetch_metrics(pod, existing)`` returning
    a new :class:`MetricsState`; failures leave the previous metrics in place.
    """

    def __init__(
        self,
        pod: Pod,
        client: Any = None,
        refresh_interval: float = 1.0,
        datastore: Any = None,
    ) -> None:
        self._pod = _to_backend_pod(pod)
        self._metrics = MetricsState()
        self._client = client
        self._interval = refresh_interval
        self.datastore = datastore
        self._stop = threading.Event()
        if client is not None:
            threading.Thread(
                target=self._refresh_loop,
                name=f"pod-metrics-{self._pod.namespaced_name}",
                daemon=True,
            ).start()

    @property
    def pod(self) -> BackendPod:
        return self._pod

    @property
    def metrics(self) -> MetricsState:
        return self._metrics

    def update_pod(self, pod: Pod) -> None:
        """Replace the pod properties with those of ``pod``."""
        self._pod = _to_backend_pod(pod)

    def stop_refresh_loop(self) -> None:
        """Stop refreshing metrics for this pod."""
        self._stop.set()

    def _refresh_loop(self) -> None:
        while not self._stop.is_set():
            self._refresh()
            if self._stop.wait(self._interval):
                break

    def _refresh(self) -> None:
        try:
            updated = self._client.fetch_metrics(self._pod, self._metrics)
        except Exception as err:  # noqa: BLE001 - a failed scrape keeps old metrics
            _log.debug("failed to refresh metrics for %s: %s", self._pod.namespaced_name, err)
            return
        self._metrics = replace(updated, update_time=time.time())


class PodMetricsFactory:
    """Creates :class:`PodMetrics` sharing one metrics client and interval."""

    def __init__(self, client: Any = None, refresh_interval: float = 1.0) -> None:
        self.client = client
        self.refresh_interval = refresh_interval

    def new_pod_metrics(self, pod: Pod, datastore: Any) -> PodMetrics:
        return PodMetrics(pod, self.client, self.refresh_interval, datastore)


class PoolNotSyncedError(RuntimeError):
    """Raised when the inference pool has not been set in the datastore."""

    def __init__(self) -> None:
        super().__init__("InferencePool is not initialized in data store")


def _selector_matches(selector: Dict[str, str], labels: Dict[str, str]) -> bool:
    return all(key in labels and labels[key] == value for key, value in selector.items())


class Datastore:
    """Thread-safe cache of one inference pool, its models and its pods.

    Clients passed to the resync methods must provide
    ``list_pods(namespace, selector)`` and ``list_inference_models(namespace, model_name)``.
    """

    def __init__(self, pod_metrics_factory: Optional[PodMetricsFactory] = None) -> None:
        self._lock = threading.RLock()
        self._pool: Optional[InferencePool] = None
        self._models: Dict[str, InferenceModel] = {}
        self._pods_lock = threading.RLock()
        self._pods: Dict[NamespacedName, PodMetrics] = {}
        self._pmf = pod_metrics_factory or PodMetricsFactory()

    def clear(self) -> None:
        """Drop the pool, all models and all pods, stopping their refresh loops."""
        with self._lock:
            self._pool = None
            self._models = {}
            with self._pods_lock:
                for pm in self._pods.values():
                    pm.stop_refresh_loop()
                self._pods.clear()

    # Pool

    def pool_set(self, client: Any, pool: Optional[InferencePool]) -> None:
        """Store ``pool``; resync pods when the selector changed. ``None`` clears."""
        if pool is None:
            self.clear()
            return
        with self._lock:
            old_pool = self._pool
            self._pool = pool
            if old_pool is None or pool.selector != old_pool.selector:
                _log.info("Updating inference pool endpoints, selector=%s", pool.selector)
                try:
                    self._pod_resync_all(client)
                except Exception as err:
                    raise RuntimeError(
                        f"failed to update pods according to the pool selector - {err}"
                    ) from err

    def pool_get(self) -> InferencePool:
        with self._lock:
            if not self.pool_has_synced():
                raise PoolNotSyncedError()
            return self._pool

    def pool_has_synced(self) -> bool:
        with self._lock:
            return self._pool is not None

    def pool_labels_match(self, pod_labels: Dict[str, str]) -> bool:
        with self._lock:
            if self._pool is None:
                return False
            return _selector_matches(self._pool.selector, pod_labels)

    # Models

    def model_set_if_older(self, model: InferenceModel) -> bool:
        """Store ``model`` unless a different, older object holds its model name."""
        with self._lock:
            existing = self._models.get(model.model_name)
            if existing is not None:
                diff_obj = model.name != existing.name or model.namespace != existing.namespace
                if diff_obj and existing.creation_timestamp < model.creation_timestamp:
                    return False
            self._models[model.model_name] = model
            return True

    def model_resync(self, client: Any, model_name: str) -> bool:
        """Replace the entry for ``model_name`` with the oldest live model in the pool."""
        with self._lock:
            if self._pool is None:
                raise PoolNotSyncedError()
            try:
                models = client.list_inference_models(self._pool.namespace, model_name)
            except Exception as err:
                raise RuntimeError(
                    f"listing models that match the modelName {model_name}: {err}"
                ) from err
            candidates = [
                m
                for m in models
                if m.model_name == model_name
                and m.pool_ref == self._pool.name
                and m.deletion_timestamp is None
            ]
            if not candidates:
                return False
            oldest = candidates[0]
            for m in candidates[1:]:
                if m.creation_timestamp < oldest.creation_timestamp:
                    oldest = m
            self._models[model_name] = oldest
            return True

    def model_get(self, model_name: str) -> Optional[InferenceModel]:
        with self._lock:
            return self._models.get(model_name)

    def model_delete(self, namespaced_name: NamespacedName) -> Optional[InferenceModel]:
        with self._lock:
            for m in list(self._models.values()):
                if m.name == namespaced_name.name and m.namespace == namespaced_name.namespace:
                    del self._models[m.model_name]
                    return m
            return None

    def model_get_all(self) -> List[InferenceModel]:
        with self._lock:
            return list(self._models.values())

    # Pods

    def pod_get_all(self) -> List[PodMetrics]:
        """Return every pod with its metrics, fresh or stale."""
        return self.pod_list(lambda _: True)

    def pod_list(self, predicate: Callable[[PodMetrics], bool]) -> List[PodMetrics]:
        with self._pods_lock:
            snapshot = list(self._pods.values())
        return [pm for pm in snapshot if predicate(pm)]

    def pod_update_or_add_if_not_exist(self, pod: Pod) -> bool:
        """Add or update ``pod``; return whether it was already present."""
        key = pod.namespaced_name
        with self._pods_lock:
            pm = self._pods.get(key)
            existed = pm is not None
            if pm is None:
                pm = self._pmf.new_pod_metrics(pod, self)
                self._pods[key] = pm
        pm.update_pod(pod)
        return existed

    def pod_delete(self, namespaced_name: NamespacedName) -> None:
        with self._pods_lock:
            pm = self._pods.pop(namespaced_name, None)
        if pm is not None:
            pm.stop_refresh_loop()

    def _pod_resync_all(self, client: Any) -> None:
        try:
            pods = client.list_pods(self._pool.namespace, dict(self._pool.selector))
        except Exception as err:
            raise RuntimeError(f"failed to list pods - {err}") from err

        active = set()
        for pod in pods:
            if not pod.ready:
                continue
            active.add(pod.name)
            if self.pod_update_or_add_if_not_exist(pod):
                _log.info("Pod already exists: %s", pod.namespaced_name)
            else:
                _log.info("Pod added: %s", pod.namespaced_name)

        for pm in self.pod_get_all():
            if pm.pod.namespaced_name.name not in active:
                _log.debug("Removing pod %s", pm.pod.namespaced_name)
                self.pod_delete(pm.pod.namespaced_name)
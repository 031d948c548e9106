# eppicker

`eppicker` is a library for building an endpoint picker for inference gateways. It
does four things:

- It keeps a local view of an inference pool's model servers.
- It decides whether the pool is saturated.
- It picks a target endpoint for each request.
- It drives one full-duplex external-processing stream. That stream carries request
  headers, request body, response headers and response body.

## Installation

```
pip install .
```

To install with the test dependencies:

```
pip install ".[test]"
```

The package has no runtime dependencies beyond the standard library.

## Components

### `eppicker.datastore`

`Datastore` is a thread-safe cache. It holds one `InferencePool`, the
`InferenceModel` objects keyed by model name, and a `PodMetrics` entry for each pod.

**Pool**

- `pool_set(client, pool)` stores the pool. When the selector changes, it resyncs
  the pods through `client.list_pods(namespace, selector)`. Only ready pods are kept.
  Passing `None` clears the datastore.
- `pool_get()` raises `PoolNotSyncedError` until a pool has been set.
- `pool_has_synced()` reports whether a pool has been set.
- `pool_labels_match(labels)` checks a set of labels against the pool selector.

**Models**

- `model_set_if_older(model)` stores a model. It refuses to replace an entry that is
  held by a different, older object with the same model name.
- `model_get`, `model_delete` and `model_get_all` read and remove entries.
- `model_resync(client, model_name)` picks the oldest live model of the pool through
  `client.list_inference_models(namespace, model_name)`.

**Pods**

- `pod_update_or_add_if_not_exist(pod)` adds or updates a pod and returns whether it
  was already present.
- `pod_delete`, `pod_get_all` and `pod_list(predicate)` remove and list pods.
- `clear()` drops everything and stops the refresh threads.

**Metrics refresh**

`PodMetricsFactory(client, refresh_interval)` creates the `PodMetrics` entries.

- When a client is given, each pod refreshes its `MetricsState` in a background
  thread by calling `client.fetch_metrics(pod, existing)`.
- A failed fetch keeps the previous metrics.

### `eppicker.saturation`

`Detector(config, datastore).is_saturated()` returns `False` as soon as one pod has
good capacity. A pod has good capacity when all three of these hold:

- its metrics are fresh;
- its waiting queue is at or below `queue_depth_threshold`;
- its KV-cache usage is at or below `kv_cache_util_threshold`.

With no pods, the pool counts as saturated.

`load_config_from_env(environ=None)` builds a `SaturationConfig` from these variables:

- `SD_QUEUE_DEPTH_THRESHOLD`
- `SD_KV_CACHE_UTIL_THRESHOLD`
- `SD_METRICS_STALENESS_THRESHOLD`, a duration such as `100ms`

A value that is missing, does not parse or is out of range falls back to its default.
The defaults are 5, 0.8 and 0.2 s.

### `eppicker.requestcontrol`

`Director(datastore, scheduler, saturation_detector, config)` handles each request in
these steps:

1. Reads `model` and the prompt from the request body. `extract_prompt` accepts a
   completions body (`prompt`) or a chat body (`messages`).
2. Resolves the target model with `random_weighted_draw`. A model that is not in the
   datastore is treated as sheddable.
3. Applies admission control. Critical requests skip the saturation check.
4. Calls `scheduler.schedule(request, candidate_pods)`.
5. Sets the target endpoint from the pod address and the pool's target port.
6. Runs the `PreRequest` plugins.

Failures raise `ProcessingError` with a code from `ErrorCode`.

`handle_response` passes a `Response` to the `PostResponse` plugins.
`get_random_pod` returns any pod in the datastore.

`Config` and `load_request_control_config` collect the plugins.

### `eppicker.handlers`

`StreamingServer.process(stream)` runs the processing loop for one exchange.

- `stream` is an iterable of `ProcessingRequest` messages and has a `send(response)`
  method.
- Responses go back in the order headers, body, trailers.
- Bodies are re-sent in chunks of at most 62000 bytes, and the last chunk marks the
  end of the stream. `generate_response_body_responses` builds these chunks for
  response bodies.
- An error during processing is sent as an immediate response, and the loop then
  stops.

Token usage is recorded on the `RequestContext`:

- from the JSON body of a non-streamed response;
- for streaming model servers, from server-sent-event text through
  `parse_resp_for_usage`.

### `eppicker.extproc`

This module holds the message types of the processing protocol, such as
`ProcessingRequest`, `ProcessingResponse`, `RequestHeaders` and `ResponseBody`. It
also has these helpers:

- `build_common_responses` splits a body into chunks.
- `canonical_code` returns the code of an error.
- `build_err_response` maps a `ProcessingError` to an immediate HTTP status:

| Error code | Status |
| --- | --- |
| `INFERENCE_POOL_RESOURCE_EXHAUSTED` | 429 |
| `INTERNAL` | 500 |
| `BAD_REQUEST` | 400 |
| `BAD_CONFIGURATION` | 404 |

Any other code raises `RuntimeError`.

### `eppicker.collectors`

`InferencePoolMetricsCollector(datastore)` reports the waiting-queue size of each pod
as the gauge `inference_pool_per_pod_queue_size`, with the labels `name` and
`model_server_pod`. `collect()` returns `GaugeSample` values, and `expose()` renders
them in the text exposition format.

### `eppicker.plugins`

This module provides:

- the `Plugin` base class;
- a factory registry, `register(plugin_type, factory)` and
  `create(plugin_type, name, parameters, handle)`;
- `Handle` and `HandlePlugins`, a mapping of plugin instances by name.

## Example

```python
from eppicker.datastore import Datastore, InferencePool, PodMetricsFactory
from eppicker.saturation import Detector, load_config_from_env
from eppicker.requestcontrol import Config, Director

store = Datastore(PodMetricsFactory())
store.pool_set(client, InferencePool(name="pool", namespace="default",
                                     selector={"app": "vllm"}, target_port_number=8000))

detector = Detector(load_config_from_env(), store)
director = Director(store, scheduler, detector, Config())
```

Your deployment provides `client` and `scheduler`:

- `client` has `list_pods(namespace, selector)`.
- `scheduler` has `schedule(request, candidate_pods)`.

## What the package does not do

You supply these pieces yourself:

- **Network server.** `process` works on any object that yields requests and accepts
  `send`, so you have to connect it to a transport.
- **Cluster watching.** Pool, model and pod updates must be fed in by the caller.
- **Metrics scraping.** The `fetch_metrics` client for model servers is not included.
- **Scheduler.** No scheduler is included.
- **Request metrics.** Request counters, latencies and token metrics are not recorded.

There is no command-line entry point.

## Running the tests

```
pytest
```
"""Request orchestration: admission, scheduling and the request-control plugins."""

from __future__ import annotations

import abc
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from eppicker.datastore import BackendPod, Criticality, InferenceModel
from eppicker.extproc import ErrorCode, ProcessingError
from eppicker.handlers import REQUEST_ID_HEADER_KEY, RequestContext
from eppicker.plugins import Plugin

_log = logging.getLogger(__name__)

PRE_REQUEST_PLUGIN_TYPE = "PreRequest"
POST_RESPONSE_PLUGIN_TYPE = "PostResponse"


@dataclass
class LLMRequest:
    """The request as seen by the scheduler."""

    request_id: str
    target_model: str
    prompt: str
    headers: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProfileRunResult:
    """The pod picked by one scheduling profile."""

    target_pod: Any


@dataclass
class SchedulingResult:
    """The results of all scheduling profiles; the primary one sets the destination."""

    profile_results: Dict[str, ProfileRunResult] = field(default_factory=dict)
    primary_profile_name: str = ""


@dataclass
class Response:
    """What PostResponse plugins learn about a response."""

    request_id: str = ""
    headers: Optional[Dict[str, str]] = None
    body: str = ""
    is_streaming: bool = False
    end_of_stream: bool = False


class PreRequest(Plugin):
    """Runs after scheduling, before the request is sent to the chosen model server."""

    @abc.abstractmethod
    def pre_request(
        self, request: LLMRequest, scheduling_result: SchedulingResult, target_port: int
    ) -> None:
        """Act on the scheduling result."""


class PostResponse(Plugin):
    """Runs after a response was received from the pod that served the request."""

    @abc.abstractmethod
    def post_response(
        self, request: Optional[LLMRequest], response: Response, target_pod: Optional[BackendPod]
    ) -> None:
        """Act on the response."""


class Config:
    """The request-control plugins a director runs."""

    def __init__(self) -> None:
        self.pre_request_plugins: List[PreRequest] = []
        self.post_response_plugins: List[PostResponse] = []

    def with_pre_request_plugins(self, *args: PreRequest) -> "Config":
        """Replace the PreRequest plugins with ``args``."""
        self.pre_request_plugins = list(args)
        return self

    def with_post_response_plugins(self, *args: PostResponse) -> "Config":
        """Replace the PostResponse plugins with ``args``."""
        self.post_response_plugins = list(args)
        return self

    def add_plugins(self, *args: Plugin) -> None:
        """Append each plugin to every extension point it implements."""
        for plugin in args:
            if isinstance(plugin, PreRequest):
                self.pre_request_plugins.append(plugin)
            if isinstance(plugin, PostResponse):
                self.post_response_plugins.append(plugin)


def load_request_control_config(instantiated_plugins: Mapping[str, Plugin]) -> Config:
    """Build a config from the instantiated plugins."""
    config = Config()
    for plugin in instantiated_plugins.values():
        config.add_plugins(plugin)
    return config


def _bad_request(msg: str) -> ProcessingError:
    return ProcessingError(ErrorCode.BAD_REQUEST, msg)


def extract_prompt(body: Mapping[str, Any]) -> str:
    """Return the prompt of a completions or chat-completions request body."""
    if "prompt" in body:
        prompt = body["prompt"]
        if not isinstance(prompt, str):
            raise _bad_request("prompt is not a string")
        return prompt
    if "messages" not in body:
        raise _bad_request("prompt or messages not found in request body")
    messages = body["messages"]
    if not isinstance(messages, list) or not messages:
        raise _bad_request("messages is empty or not a list")
    parts = []
    for message in messages:
        if not isinstance(message, dict):
            raise _bad_request("message is not an object")
        role = message.get("role")
        content = message.get("content")
        if not isinstance(role, str) or not isinstance(content, str):
            raise _bad_request("message must have a string role and content")
        parts.append(f"<|im_start|>{role}\n{content}<|im_end|>\n")
    return "".join(parts)


def random_weighted_draw(model: InferenceModel, seed: int) -> str:
    """Pick a target model by weight; uniformly when the weights are unset.

    A positive ``seed`` makes the draw deterministic. Returns "" if nothing
    was drawn.
    """
    rng = random.Random(seed) if seed > 0 else random.Random()
    targets = model.target_models
    if targets[0].weight is None:
        return targets[rng.randrange(len(targets))].name

    total = sum(target.weight for target in targets)
    _log.debug("Weights for model %s computed: %s", model.name, total)
    value = rng.randrange(total)
    for target in targets:
        if value < target.weight:
            return target.name
        value -= target.weight
    return ""


def _backend_pod(target: Any) -> BackendPod:
    return target if isinstance(target, BackendPod) else target.pod


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class Director:
    """Admits, schedules and prepares each request; notifies plugins on responses.

    The scheduler must provide ``schedule(request, candidate_pods)``; the
    saturation detector must provide ``is_saturated()``.
    """

    def __init__(
        self,
        datastore: Any,
        scheduler: Any = None,
        saturation_detector: Any = None,
        config: Optional[Config] = None,
    ) -> None:
        config = config or Config()
        self.datastore = datastore
        self.scheduler = scheduler
        self.saturation_detector = saturation_detector
        self.pre_request_plugins = list(config.pre_request_plugins)
        self.post_response_plugins = list(config.post_response_plugins)

    def handle_request(self, req_ctx: RequestContext) -> RequestContext:
        """Resolve the model, admit, schedule and set the target endpoint."""
        body = req_ctx.request.body
        model = body.get("model")
        if not isinstance(model, str):
            req_ctx.model = ""
            raise _bad_request("model not found in request body")
        req_ctx.model = model
        prompt = extract_prompt(body)

        model_obj = self.datastore.model_get(model)
        if model_obj is None:
            _log.info("No associated inferenceModel found, using default: %s", model)
            model_obj = InferenceModel(name="", model_name=model, criticality=Criticality.SHEDDABLE)

        req_ctx.resolved_target_model = model
        if model_obj.target_models:
            req_ctx.resolved_target_model = random_weighted_draw(model_obj, 0)
            if not req_ctx.resolved_target_model:
                raise ProcessingError(
                    ErrorCode.BAD_CONFIGURATION,
                    f"error getting target model name for model {model_obj.name}",
                )
            body["model"] = req_ctx.resolved_target_model

        criticality = model_obj.criticality or Criticality.STANDARD

        headers = req_ctx.request.headers
        req_ctx.scheduling_request = LLMRequest(
            headers.get(REQUEST_ID_HEADER_KEY, ""),
            req_ctx.resolved_target_model,
            prompt,
            headers,
            req_ctx.request.metadata,
        )
        _log.debug(
            "LLM request assembled: model=%s resolved=%s criticality=%s",
            req_ctx.model, req_ctx.resolved_target_model, criticality.value,
        )

        self._admit_request(criticality)

        candidates = self.datastore.pod_get_all()
        try:
            result = self.scheduler.schedule(req_ctx.scheduling_request, candidates)
        except Exception as err:  # noqa: BLE001 - any scheduling failure means no capacity
            raise ProcessingError(
                ErrorCode.INFERENCE_POOL_RESOURCE_EXHAUSTED, f"failed to find target pod: {err}"
            ) from err

        return self._prepare_request(req_ctx, result)

    def _admit_request(self, criticality: Criticality) -> None:
        if criticality == Criticality.CRITICAL:
            _log.debug("Critical request bypassing saturation check.")
            return
        if self.saturation_detector.is_saturated():
            raise ProcessingError(
                ErrorCode.INFERENCE_POOL_RESOURCE_EXHAUSTED,
                "system saturated, non-critical request dropped",
            )

    def _prepare_request(
        self, req_ctx: RequestContext, result: Optional[SchedulingResult]
    ) -> RequestContext:
        if result is None or not result.profile_results:
            raise ProcessingError(ErrorCode.INTERNAL, "results must be greater than zero")
        target_pod = _backend_pod(result.profile_results[result.primary_profile_name].target_pod)

        pool = self.datastore.pool_get()
        target_port = int(pool.target_port_number)
        endpoint = _join_host_port(target_pod.address, target_port)
        _log.info(
            "Request handled: model=%s target_model=%s endpoint=%s",
            req_ctx.model, req_ctx.resolved_target_model, endpoint,
        )
        req_ctx.target_pod = target_pod
        req_ctx.target_endpoint = endpoint

        for plugin in self.pre_request_plugins:
            started = time.perf_counter()
            plugin.pre_request(req_ctx.scheduling_request, result, target_port)
            _log.debug(
                "%s plugin %s took %.6fs",
                PRE_REQUEST_PLUGIN_TYPE, plugin.plugin_type, time.perf_counter() - started,
            )
        return req_ctx

    def handle_response(self, req_ctx: RequestContext) -> RequestContext:
        """Pass the response headers to the PostResponse plugins."""
        response = Response(
            request_id=req_ctx.request.headers.get(REQUEST_ID_HEADER_KEY, ""),
            headers=req_ctx.response.headers,
        )
        for plugin in self.post_response_plugins:
            started = time.perf_counter()
            plugin.post_response(req_ctx.scheduling_request, response, req_ctx.target_pod)
            _log.debug(
                "%s plugin %s took %.6fs",
                POST_RESPONSE_PLUGIN_TYPE, plugin.plugin_type, time.perf_counter() - started,
            )
        return req_ctx

    def get_random_pod(self) -> Optional[BackendPod]:
        """Return any pod of the datastore, or None when there is none."""
        pods = self.datastore.pod_get_all()
        if not pods:
            return None
        return random.choice(pods).pod
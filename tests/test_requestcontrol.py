import pytest

from eppicker.datastore import (
    BackendPod,
    Criticality,
    Datastore,
    InferenceModel,
    InferencePool,
    NamespacedName,
    Pod,
    PoolNotSyncedError,
    TargetModel,
)
from eppicker.extproc import ErrorCode, ProcessingError
from eppicker.handlers import REQUEST_ID_HEADER_KEY, Request, RequestContext
from eppicker.handlers import Response as HandlerResponse
from eppicker.requestcontrol import (
    Config,
    Director,
    LLMRequest,
    PostResponse,
    PreRequest,
    ProfileRunResult,
    SchedulingResult,
    extract_prompt,
    load_request_control_config,
    random_weighted_draw,
)

MODEL = "food-review"
MODEL_SHEDDABLE = "food-review-sheddable"
MODEL_RESOLVE = "food-review-resolve"


class FakeClient:
    def list_pods(self, namespace, selector):
        return []

    def list_inference_models(self, namespace, model_name):
        return []


class MockDetector:
    def __init__(self, saturated):
        self.saturated = saturated

    def is_saturated(self):
        return self.saturated


class MockScheduler:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def schedule(self, request, candidates):
        self.calls.append((request, candidates))
        if self.error is not None:
            raise self.error
        return self.result


class RecordingPostResponse(PostResponse):
    def __init__(self, type_name):
        self._type = type_name
        self.last_response = None
        self.last_target_pod = None

    @property
    def plugin_type(self):
        return self._type

    @property
    def name(self):
        return "test-post-response"

    def post_response(self, request, response, target_pod):
        self.last_response = response
        self.last_target_pod = str(target_pod.namespaced_name)


class RecordingPreRequest(PreRequest):
    def __init__(self):
        self.calls = []

    @property
    def plugin_type(self):
        return "recording-pre"

    @property
    def name(self):
        return "pre"

    def pre_request(self, request, scheduling_result, target_port):
        self.calls.append((request, scheduling_result, target_port))


class BothPlugin(PreRequest, PostResponse):
    @property
    def plugin_type(self):
        return "both"

    @property
    def name(self):
        return "both"

    def pre_request(self, request, scheduling_result, target_port):
        pass

    def post_response(self, request, response, target_pod):
        pass


def _success_result(address="192.168.1.100"):
    return SchedulingResult(
        profile_results={
            "testProfile": ProfileRunResult(
                BackendPod(NamespacedName("pod1", "default"), address=address)
            )
        },
        primary_profile_name="testProfile",
    )


@pytest.fixture
def datastore():
    ds = Datastore()
    ds.model_set_if_older(
        InferenceModel(
            name="imFoodReview", model_name=MODEL,
            criticality=Criticality.CRITICAL, creation_timestamp=1000,
        )
    )
    ds.model_set_if_older(
        InferenceModel(
            name="imFoodReviewResolve", model_name=MODEL_RESOLVE,
            criticality=Criticality.STANDARD, creation_timestamp=1000,
            target_models=[TargetModel("resolved-target-model-A")],
        )
    )
    ds.model_set_if_older(
        InferenceModel(
            name="imFoodReviewSheddable", model_name=MODEL_SHEDDABLE,
            criticality=Criticality.SHEDDABLE, creation_timestamp=1000,
        )
    )
    pool = InferencePool(
        name="test-pool", namespace="default",
        selector={"app": "inference"}, target_port_number=8000,
    )
    ds.pool_set(FakeClient(), pool)
    ds.pod_update_or_add_if_not_exist(
        Pod("pod1", "default", labels={"app": "inference"}, pod_ip="192.168.1.100", ready=True)
    )
    return ds


def _req_ctx(body, name="case"):
    return RequestContext(
        request=Request(headers={REQUEST_ID_HEADER_KEY: "test-req-id-" + name}, body=dict(body))
    )


EXPECTED_POD = BackendPod(NamespacedName("pod1", "default"), address="192.168.1.100")


@pytest.mark.parametrize(
    "body, detector, want_model, want_resolved",
    [
        ({"model": MODEL, "prompt": "critical prompt"}, MockDetector(True), MODEL, MODEL),
        (
            {"model": MODEL, "messages": [{"role": "user", "content": "critical prompt"}]},
            None, MODEL, MODEL,
        ),
        (
            {
                "model": MODEL,
                "messages": [
                    {"role": "developer", "content": "You are a helpful assistant."},
                    {"role": "user", "content": "Hello!"},
                ],
            },
            None, MODEL, MODEL,
        ),
        ({"model": MODEL_SHEDDABLE, "prompt": "sheddable prompt"}, MockDetector(False),
         MODEL_SHEDDABLE, MODEL_SHEDDABLE),
        ({"model": MODEL_RESOLVE, "prompt": "prompt for target resolution"}, MockDetector(False),
         MODEL_RESOLVE, "resolved-target-model-A"),
        ({"model": "food-review-1", "prompt": "test prompt"}, MockDetector(False),
         "food-review-1", "food-review-1"),
    ],
)
def test_handle_request_success(datastore, body, detector, want_model, want_resolved):
    director = Director(datastore, MockScheduler(_success_result()), detector, Config())
    ctx = director.handle_request(_req_ctx(body))
    assert ctx.model == want_model
    assert ctx.resolved_target_model == want_resolved
    assert ctx.target_pod == EXPECTED_POD
    assert ctx.target_endpoint == "192.168.1.100:8000"
    assert ctx.request.body["model"] == want_resolved


@pytest.mark.parametrize(
    "body, detector, scheduler, want_code",
    [
        ({"model": MODEL_SHEDDABLE, "prompt": "sheddable prompt"}, MockDetector(True),
         MockScheduler(), ErrorCode.INFERENCE_POOL_RESOURCE_EXHAUSTED),
        ({"prompt": "p"}, MockDetector(False), MockScheduler(), ErrorCode.BAD_REQUEST),
        ({"model": MODEL}, None, MockScheduler(), ErrorCode.BAD_REQUEST),
        ({"model": MODEL, "messages": []}, None, MockScheduler(), ErrorCode.BAD_REQUEST),
        ({"model": MODEL, "prompt": "prompt that causes scheduler error"}, None,
         MockScheduler(error=RuntimeError("simulated scheduler failure")),
         ErrorCode.INFERENCE_POOL_RESOURCE_EXHAUSTED),
        ({"model": MODEL, "prompt": "prompt for nil,nil scheduler return"}, None,
         MockScheduler(result=None), ErrorCode.INTERNAL),
    ],
)
def test_handle_request_errors(datastore, body, detector, scheduler, want_code):
    director = Director(datastore, scheduler, detector, Config())
    with pytest.raises(ProcessingError) as info:
        director.handle_request(_req_ctx(body))
    assert info.value.code == want_code


def test_handle_request_builds_scheduling_request(datastore):
    scheduler = MockScheduler(_success_result())
    director = Director(datastore, scheduler, MockDetector(False))
    ctx = director.handle_request(_req_ctx({"model": MODEL, "prompt": "hello"}, name="abc"))
    request, candidates = scheduler.calls[0]
    assert request == LLMRequest("test-req-id-abc", MODEL, "hello", ctx.request.headers, {})
    assert [pm.pod.namespaced_name for pm in candidates] == [NamespacedName("pod1", "default")]


def test_handle_request_runs_pre_request_plugins(datastore):
    plugin = RecordingPreRequest()
    result = _success_result()
    director = Director(
        datastore, MockScheduler(result), None, Config().with_pre_request_plugins(plugin)
    )
    ctx = director.handle_request(_req_ctx({"model": MODEL, "prompt": "x"}))
    assert plugin.calls == [(ctx.scheduling_request, result, 8000)]


def test_handle_request_ipv6_endpoint(datastore):
    director = Director(datastore, MockScheduler(_success_result("fd00::1")), None)
    ctx = director.handle_request(_req_ctx({"model": MODEL, "prompt": "x"}))
    assert ctx.target_endpoint == "[fd00::1]:8000"


def test_handle_request_without_pool_raises():
    ds = Datastore()
    director = Director(ds, MockScheduler(_success_result()), MockDetector(False))
    with pytest.raises(PoolNotSyncedError):
        director.handle_request(_req_ctx({"model": MODEL, "prompt": "x"}))


def test_handle_request_zero_weights_is_bad_configuration(datastore):
    datastore.model_set_if_older(
        InferenceModel(
            name="zero", model_name="zero-model",
            criticality=Criticality.CRITICAL,
            target_models=[TargetModel("a", 0), TargetModel("b", 0)],
        )
    )
    director = Director(datastore, MockScheduler(_success_result()), None)
    with pytest.raises(ValueError):
        director.handle_request(_req_ctx({"model": "zero-model", "prompt": "x"}))


WEIGHTED_CASES = [
    [TargetModel("canary", 50), TargetModel("v1", 50)],
    [TargetModel("canary", 25), TargetModel("v1.1", 55), TargetModel("v1", 50)],
    [TargetModel("canary", 20), TargetModel("v1.1", 20), TargetModel("v1", 10)],
    [TargetModel("canary"), TargetModel("v1.1"), TargetModel("v1")],
]


@pytest.mark.parametrize("targets", WEIGHTED_CASES)
def test_random_weighted_draw_is_deterministic_for_seed(targets):
    model = InferenceModel(name="m", target_models=targets)
    first = random_weighted_draw(model, 420)
    assert first in {t.name for t in targets}
    assert all(random_weighted_draw(model, 420) == first for _ in range(5))


@pytest.mark.parametrize("targets", WEIGHTED_CASES)
def test_random_weighted_draw_reaches_every_target(targets):
    model = InferenceModel(name="m", target_models=targets)
    drawn = {random_weighted_draw(model, seed) for seed in range(1, 400)}
    assert drawn == {t.name for t in targets}


def test_random_weighted_draw_skips_zero_weights():
    model = InferenceModel(
        name="m",
        target_models=[TargetModel("a", 0), TargetModel("b", 10), TargetModel("c", 0)],
    )
    assert {random_weighted_draw(model, seed) for seed in range(1, 50)} == {"b"}


def test_random_weighted_draw_unseeded_single_target():
    model = InferenceModel(name="m", target_models=[TargetModel("only", 7)])
    assert random_weighted_draw(model, 0) == "only"


def test_get_random_pod_empty():
    director = Director(Datastore())
    assert director.get_random_pod() is None


def test_get_random_pod_single():
    ds = Datastore()
    ds.pod_update_or_add_if_not_exist(Pod("pod1"))
    assert Director(ds).get_random_pod() == BackendPod(NamespacedName("pod1", ""))


def test_get_random_pod_multiple():
    ds = Datastore()
    for name in ("pod1", "pod2", "pod3"):
        ds.pod_update_or_add_if_not_exist(Pod(name))
    names = {Director(ds).get_random_pod().namespaced_name.name for _ in range(20)}
    assert names <= {"pod1", "pod2", "pod3"}
    assert names


def test_handle_response_runs_post_response_plugins():
    plugin = RecordingPostResponse("pr1")
    director = Director(Datastore(), MockScheduler(), None, Config().with_post_response_plugins(plugin))
    req_ctx = RequestContext(
        request=Request(headers={REQUEST_ID_HEADER_KEY: "test-req-id-for-response"}),
        response=HandlerResponse(headers={"X-Test-Response-Header": "TestValue"}),
        target_pod=BackendPod(NamespacedName("test-pod-name", "namespace1")),
    )
    returned = director.handle_response(req_ctx)
    assert returned is req_ctx
    assert plugin.last_response.request_id == "test-req-id-for-response"
    assert plugin.last_response.headers == {"X-Test-Response-Header": "TestValue"}
    assert plugin.last_target_pod == "namespace1/test-pod-name"


def test_config_with_plugins_replaces():
    first, second = RecordingPreRequest(), RecordingPreRequest()
    config = Config().with_pre_request_plugins(first).with_pre_request_plugins(second)
    assert config.pre_request_plugins == [second]
    post = RecordingPostResponse("p")
    assert Config().with_post_response_plugins(post).post_response_plugins == [post]


def test_config_add_plugins_sorts_by_extension_point():
    pre, post, both = RecordingPreRequest(), RecordingPostResponse("p"), BothPlugin()
    config = Config()
    config.add_plugins(pre, post, both)
    assert config.pre_request_plugins == [pre, both]
    assert config.post_response_plugins == [post, both]


def test_load_request_control_config():
    pre, post = RecordingPreRequest(), RecordingPostResponse("p")
    config = load_request_control_config({"pre": pre, "post": post})
    assert config.pre_request_plugins == [pre]
    assert config.post_response_plugins == [post]


def test_extract_prompt_from_prompt():
    assert extract_prompt({"model": "m", "prompt": "hello"}) == "hello"


def test_extract_prompt_from_messages():
    body = {"messages": [{"role": "user", "content": "hi"}]}
    assert extract_prompt(body) == "<|im_start|>user\nhi<|im_end|>\n"


@pytest.mark.parametrize(
    "body",
    [
        {"model": "m"},
        {"messages": []},
        {"messages": "text"},
        {"prompt": 3},
        {"messages": [{"role": "user"}]},
    ],
)
def test_extract_prompt_errors(body):
    with pytest.raises(ProcessingError) as info:
        extract_prompt(body)
    assert info.value.code == ErrorCode.BAD_REQUEST
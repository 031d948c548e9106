"""Streaming external-processing server that routes inference requests."""

from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from eppicker.extproc import (
    BODY_BYTE_LIMIT,
    BodyResponse,
    CommonResponse,
    ErrorCode,
    HeadersResponse,
    HeaderValue,
    ProcessingError,
    ProcessingResponse,
    RequestBody,
    RequestHeaders,
    ResponseBody,
    ResponseHeaders,
    build_common_responses,
    build_err_response,
)

_log = logging.getLogger(__name__)

REQUEST_ID_HEADER_KEY = "x-request-id"
STREAMING_RESP_PREFIX = "data: "
STREAMING_END_MSG = "data: [DONE]"
RESPONSE_HEADERS_MARKER = "x-went-into-resp-headers"


@dataclass
class Usage:
    """Token counts reported by a model server."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class Request:
    headers: Dict[str, str] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Response:
    headers: Dict[str, str] = field(default_factory=dict)


class StreamRequestState(enum.IntEnum):
    """How far the responses for one HTTP exchange have been sent."""

    REQUEST_RECEIVED = 0
    HEADER_REQUEST_RESPONSE_COMPLETE = 1
    BODY_REQUEST_RESPONSES_COMPLETE = 2
    TRAILER_REQUEST_RESPONSES_COMPLETE = 3
    RESPONSE_RECEIVED = 4
    HEADER_RESPONSE_RESPONSE_COMPLETE = 5
    BODY_RESPONSE_RESPONSES_COMPLETE = 6
    TRAILER_RESPONSE_RESPONSES_COMPLETE = 7


def _send(stream: Any, response: ProcessingResponse) -> None:
    try:
        stream.send(response)
    except Exception as err:
        _log.error("error sending response: %s", err)
        raise RuntimeError(f"failed to send response back to Envoy: {err}") from err


@dataclass
class RequestContext:
    """State shared by all messages of one HTTP request and its response."""

    target_pod: Any = None
    target_endpoint: str = ""
    model: str = ""
    resolved_target_model: str = ""
    request_received_timestamp: Optional[float] = None
    response_complete_timestamp: Optional[float] = None
    request_size: int = 0
    usage: Usage = field(default_factory=Usage)
    response_size: int = 0
    response_complete: bool = False
    response_status_code: Optional[ErrorCode] = None
    request_running: bool = False
    request: Request = field(default_factory=Request)
    scheduling_request: Any = None
    request_state: StreamRequestState = StreamRequestState.REQUEST_RECEIVED
    model_server_streaming: bool = False
    response: Response = field(default_factory=Response)
    req_header_resp: Optional[ProcessingResponse] = None
    req_body_resp: List[ProcessingResponse] = field(default_factory=list)
    req_trailer_resp: Optional[ProcessingResponse] = None
    resp_header_resp: Optional[ProcessingResponse] = None
    resp_body_resp: List[ProcessingResponse] = field(default_factory=list)
    resp_trailer_resp: Optional[ProcessingResponse] = None

    def _send_ready_responses(self, stream: Any) -> None:
        """Send whatever is ready, keeping the header, body, trailer order."""
        state = StreamRequestState
        if self.request_state == state.REQUEST_RECEIVED and self.req_header_resp is not None:
            _send(stream, self.req_header_resp)
            self.request_state = state.HEADER_REQUEST_RESPONSE_COMPLETE
        if self.request_state == state.HEADER_REQUEST_RESPONSE_COMPLETE and self.req_body_resp:
            for response in self.req_body_resp:
                _send(stream, response)
            self.request_state = state.BODY_REQUEST_RESPONSES_COMPLETE
            self.request_running = True
            self.req_body_resp = []
        if self.request_state == state.BODY_REQUEST_RESPONSES_COMPLETE and self.req_trailer_resp is not None:
            _send(stream, self.req_trailer_resp)
        if self.request_state == state.RESPONSE_RECEIVED and self.resp_header_resp is not None:
            _send(stream, self.resp_header_resp)
            self.request_state = state.HEADER_RESPONSE_RESPONSE_COMPLETE
        if self.request_state == state.HEADER_RESPONSE_RESPONSE_COMPLETE and self.resp_body_resp:
            for response in self.resp_body_resp:
                _send(stream, response)
                mutation = response.response_body.response.body_mutation
                if mutation is not None and mutation.end_of_stream:
                    self.request_state = state.BODY_RESPONSE_RESPONSES_COMPLETE
            self.resp_body_resp = []
        if self.request_state == state.BODY_RESPONSE_RESPONSES_COMPLETE and self.resp_trailer_resp is not None:
            _send(stream, self.resp_trailer_resp)


def _marshal(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def _raw_text(header: HeaderValue) -> str:
    if header.raw_value is None:
        return ""
    return header.raw_value.decode("utf-8", errors="replace")


def parse_resp_for_usage(response_text: str) -> Usage:
    """Extract the usage from streamed ``data:`` lines; later lines override earlier ones."""
    usage = Usage()
    for line in response_text.split("\n"):
        if not line.startswith(STREAMING_RESP_PREFIX):
            continue
        content = line[len(STREAMING_RESP_PREFIX):]
        if content == "[DONE]":
            continue
        try:
            parsed = json.loads(content)
        except ValueError as err:
            _log.error("unmarshaling response body: %s", err)
            continue
        if parsed is None:
            continue
        if not isinstance(parsed, dict):
            _log.error("unmarshaling response body: not an object")
            continue
        reported = parsed.get("usage")
        if not isinstance(reported, dict):
            continue
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = reported.get(key)
            if isinstance(value, bool):
                continue
            if isinstance(value, int) or (isinstance(value, float) and value.is_integer()):
                setattr(usage, key, int(value))
    return usage


def generate_response_body_responses(body: bytes, set_eos: bool) -> List[ProcessingResponse]:
    """Wrap ``body`` into response-body messages, chunked to the size limit."""
    return [
        ProcessingResponse(response_body=BodyResponse(common))
        for common in build_common_responses(body, BODY_BYTE_LIMIT, set_eos)
    ]


class StreamingServer:
    """Processes the message stream of one HTTP exchange.

    The director must provide ``handle_request(req_ctx)``,
    ``handle_response(req_ctx)`` and ``get_random_pod()``; the datastore
    must provide ``pool_get()``.
    """

    def __init__(
        self,
        destination_endpoint_hint_metadata_namespace: str = "",
        destination_endpoint_hint_key: str = "",
        datastore: Any = None,
        director: Any = None,
    ) -> None:
        self.destination_endpoint_hint_metadata_namespace = destination_endpoint_hint_metadata_namespace
        self.destination_endpoint_hint_key = destination_endpoint_hint_key
        self.datastore = datastore
        self.director = director

    # Request side

    def handle_request_headers(self, req_ctx: RequestContext, request: RequestHeaders) -> None:
        """Record the request headers; a bodiless request goes to a random pod."""
        req_ctx.request_received_timestamp = time.time()
        if request.end_of_stream:
            pod = self.director.get_random_pod()
            if pod is None:
                raise ProcessingError(ErrorCode.INTERNAL, "no pods available in datastore")
            pool = self.datastore.pool_get()
            req_ctx.target_endpoint = f"{pod.address}:{pool.target_port_number}"
            req_ctx.request_size = 0
            req_ctx.req_header_resp = self._request_header_response(req_ctx)
            return
        for header in request.headers:
            req_ctx.request.headers[header.key] = header.text

    def _request_body_responses(self, body: bytes) -> List[ProcessingResponse]:
        return [
            ProcessingResponse(request_body=BodyResponse(common))
            for common in build_common_responses(body, BODY_BYTE_LIMIT, True)
        ]

    def _request_header_response(self, req_ctx: RequestContext) -> ProcessingResponse:
        return ProcessingResponse(
            request_headers=HeadersResponse(
                CommonResponse(clear_route_cache=True, set_headers=self._request_headers(req_ctx))
            ),
            dynamic_metadata=self._metadata(req_ctx.target_endpoint),
        )

    def _request_headers(self, req_ctx: RequestContext) -> List[HeaderValue]:
        headers = [
            HeaderValue(self.destination_endpoint_hint_key, raw_value=req_ctx.target_endpoint.encode("utf-8"))
        ]
        if req_ctx.request_size > 0:
            headers.append(HeaderValue("Content-Length", raw_value=str(req_ctx.request_size).encode("utf-8")))
        headers.extend(
            HeaderValue(key, raw_value=value.encode("utf-8"))
            for key, value in req_ctx.request.headers.items()
        )
        return headers

    def _metadata(self, endpoint: str) -> Dict[str, Any]:
        target = {self.destination_endpoint_hint_key: endpoint}
        if self.destination_endpoint_hint_metadata_namespace:
            return {self.destination_endpoint_hint_metadata_namespace: target}
        return target

    # Response side

    def handle_response_body(self, req_ctx: RequestContext, response: Optional[Dict[str, Any]]) -> RequestContext:
        """Record usage and size of a complete, non-streamed response body."""
        try:
            response_bytes = _marshal(response)
        except (TypeError, ValueError) as err:
            _log.error("error marshalling responseBody: %s", err)
            raise
        reported = response.get("usage") if response else None
        if reported is not None:
            try:
                req_ctx.usage = Usage(
                    prompt_tokens=int(reported["prompt_tokens"]),
                    completion_tokens=int(reported["completion_tokens"]),
                    total_tokens=int(reported["total_tokens"]),
                )
            except (KeyError, TypeError, ValueError) as err:
                raise ValueError(f"invalid usage in response body: {err}") from err
            _log.debug("Response generated, usage=%s", req_ctx.usage)
        req_ctx.response_size = len(response_bytes)
        req_ctx.response_complete = True
        req_ctx.resp_body_resp = generate_response_body_responses(response_bytes, True)
        return req_ctx

    def handle_response_body_model_streaming(self, req_ctx: RequestContext, response_text: str) -> None:
        """Pick up the usage once the final streamed chunk arrives."""
        if STREAMING_END_MSG in response_text:
            req_ctx.usage = parse_resp_for_usage(response_text)

    def handle_response_headers(self, req_ctx: RequestContext, response: ResponseHeaders) -> RequestContext:
        """Record the response headers and let the director see the response."""
        for header in response.headers:
            req_ctx.response.headers[header.key] = header.text
        return self.director.handle_response(req_ctx)

    def _response_header_response(self, req_ctx: RequestContext) -> ProcessingResponse:
        headers = [HeaderValue(RESPONSE_HEADERS_MARKER, raw_value=b"true")]
        headers.extend(
            HeaderValue(key, raw_value=value.encode("utf-8"))
            for key, value in req_ctx.response.headers.items()
        )
        return ProcessingResponse(response_headers=HeadersResponse(CommonResponse(set_headers=headers)))

    # Stream

    def process(self, stream: Any) -> None:
        """Serve one stream: iterate its requests and ``send`` the responses.

        Returns when the stream ends or after an immediate error response.
        """
        req_ctx = RequestContext()
        body = bytearray()
        requests = iter(stream)
        while True:
            try:
                req = next(requests)
            except (StopIteration, EOFError):
                return
            except Exception as err:
                _log.error("Cannot receive stream request: %s", err)
                raise RuntimeError(f"cannot receive stream request: {err}") from err

            req_ctx.request.metadata = dict(req.metadata)
            msg = req.request
            err: Optional[BaseException] = None
            try:
                if isinstance(msg, RequestHeaders):
                    self.handle_request_headers(req_ctx, msg)
                elif isinstance(msg, RequestBody):
                    req_ctx = self._on_request_body(req_ctx, msg, body)
                elif isinstance(msg, ResponseHeaders):
                    req_ctx = self._on_response_headers(req_ctx, msg)
                elif isinstance(msg, ResponseBody):
                    req_ctx = self._on_response_body(req_ctx, msg, body)
            except Exception as exc:  # noqa: BLE001 - turned into an immediate response
                err = exc

            if err is not None:
                _log.error("Failed to process request: %s", err)
                _send(stream, build_err_response(err))
                return
            req_ctx._send_ready_responses(stream)

    def _on_request_body(self, req_ctx: RequestContext, msg: RequestBody, body: bytearray) -> RequestContext:
        body.extend(msg.body)
        if not msg.end_of_stream:
            return req_ctx
        try:
            parsed = json.loads(bytes(body))
        except ValueError:
            parsed = None
        if not isinstance(parsed, dict):
            raise ProcessingError(
                ErrorCode.BAD_REQUEST,
                "Error unmarshaling request body: " + bytes(body).decode("utf-8", errors="replace"),
            )
        req_ctx.request.body.update(parsed)
        body.clear()

        req_ctx = self.director.handle_request(req_ctx)
        try:
            request_body_bytes = _marshal(req_ctx.request.body)
        except (TypeError, ValueError) as exc:
            _log.error("Error marshalling request body: %s", exc)
            return req_ctx
        req_ctx.request_size = len(request_body_bytes)
        req_ctx.req_header_resp = self._request_header_response(req_ctx)
        req_ctx.req_body_resp = self._request_body_responses(request_body_bytes)
        return req_ctx

    def _on_response_headers(self, req_ctx: RequestContext, msg: ResponseHeaders) -> RequestContext:
        for header in msg.headers:
            value = _raw_text(header)
            if header.key == "status" and value != "200":
                req_ctx.response_status_code = ErrorCode.MODEL_SERVER_ERROR
            elif header.key == "content-type" and "text/event-stream" in value:
                req_ctx.model_server_streaming = True
        req_ctx.request_state = StreamRequestState.RESPONSE_RECEIVED
        try:
            req_ctx = self.handle_response_headers(req_ctx, msg)
        except Exception as exc:  # noqa: BLE001 - response errors are only logged
            _log.error("Failed to process response headers: %s", exc)
        req_ctx.resp_header_resp = self._response_header_response(req_ctx)
        return req_ctx

    def _on_response_body(self, req_ctx: RequestContext, msg: ResponseBody, body: bytearray) -> RequestContext:
        if req_ctx.model_server_streaming:
            self.handle_response_body_model_streaming(req_ctx, msg.body.decode("utf-8", errors="replace"))
            if msg.end_of_stream:
                req_ctx.response_complete_timestamp = time.time()
            req_ctx.resp_body_resp = generate_response_body_responses(msg.body, msg.end_of_stream)
            return req_ctx

        body.extend(msg.body)
        if not msg.end_of_stream:
            return req_ctx
        raw = bytes(body)
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = ...
        if parsed is not None and not isinstance(parsed, dict):
            _log.error("Error unmarshaling response body: %r", raw)
            req_ctx.resp_body_resp = generate_response_body_responses(raw, True)
            return req_ctx
        try:
            req_ctx = self.handle_response_body(req_ctx, parsed)
        except Exception as exc:  # noqa: BLE001 - response errors are only logged
            _log.error("Failed to process response body: %s", exc)
        else:
            if req_ctx.response_complete:
                req_ctx.response_complete_timestamp = time.time()
        return req_ctx
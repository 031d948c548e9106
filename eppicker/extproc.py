"""External-processing protocol messages, error codes and response builders."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Dict, List, Optional, Union

# Some proxies cap streamed chunks at 64KiB; stay below that with a margin.
BODY_BYTE_LIMIT = 62000


class ErrorCode(str, enum.Enum):
    """Canonical error codes of request processing."""

    UNKNOWN = "Unknown"
    BAD_REQUEST = "BadRequest"
    INTERNAL = "Internal"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    MODEL_SERVER_ERROR = "ModelServerError"
    BAD_CONFIGURATION = "BadConfiguration"
    INFERENCE_POOL_RESOURCE_EXHAUSTED = "InferencePoolResourceExhausted"


class ProcessingError(Exception):
    """A request-processing failure carrying a canonical error code."""

    def __init__(self, code: Union[ErrorCode, str], msg: str) -> None:
        self.code = ErrorCode(code)
        self.msg = msg
        super().__init__(f"{self.code.value} - {msg}")


def canonical_code(err: BaseException) -> ErrorCode:
    """Return the code of ``err``, or UNKNOWN for errors without one."""
    if isinstance(err, ProcessingError):
        return err.code
    return ErrorCode.UNKNOWN


@dataclass
class HeaderValue:
    """A header; ``raw_value`` takes precedence over ``value`` when set."""

    key: str
    raw_value: Optional[bytes] = None
    value: str = ""

    @property
    def text(self) -> str:
        if self.raw_value is not None:
            return self.raw_value.decode("utf-8", errors="replace")
        return self.value


@dataclass
class StreamedBodyResponse:
    body: bytes = b""
    end_of_stream: bool = False


@dataclass
class CommonResponse:
    clear_route_cache: bool = False
    set_headers: List[HeaderValue] = field(default_factory=list)
    body_mutation: Optional[StreamedBodyResponse] = None


@dataclass
class HeadersResponse:
    response: CommonResponse = field(default_factory=CommonResponse)


@dataclass
class BodyResponse:
    response: CommonResponse = field(default_factory=CommonResponse)


@dataclass
class ImmediateResponse:
    status: int
    body: bytes = b""


@dataclass
class ProcessingResponse:
    """A message sent back to the proxy; exactly one response field is set."""

    request_headers: Optional[HeadersResponse] = None
    request_body: Optional[BodyResponse] = None
    request_trailers: Optional[HeadersResponse] = None
    response_headers: Optional[HeadersResponse] = None
    response_body: Optional[BodyResponse] = None
    response_trailers: Optional[HeadersResponse] = None
    immediate_response: Optional[ImmediateResponse] = None
    dynamic_metadata: Optional[Dict[str, Any]] = None


@dataclass
class RequestHeaders:
    headers: List[HeaderValue] = field(default_factory=list)
    end_of_stream: bool = False


@dataclass
class RequestBody:
    body: bytes = b""
    end_of_stream: bool = False


@dataclass
class RequestTrailers:
    headers: List[HeaderValue] = field(default_factory=list)


@dataclass
class ResponseHeaders:
    headers: List[HeaderValue] = field(default_factory=list)
    end_of_stream: bool = False


@dataclass
class ResponseBody:
    body: bytes = b""
    end_of_stream: bool = False


@dataclass
class ResponseTrailers:
    headers: List[HeaderValue] = field(default_factory=list)


@dataclass
class ProcessingRequest:
    """A message received from the proxy, with its metadata."""

    request: Union[
        RequestHeaders, RequestBody, RequestTrailers,
        ResponseHeaders, ResponseBody, ResponseTrailers,
    ]
    metadata: Dict[str, Any] = field(default_factory=dict)


_ERROR_STATUS = {
    ErrorCode.INFERENCE_POOL_RESOURCE_EXHAUSTED: HTTPStatus.TOO_MANY_REQUESTS,
    ErrorCode.INTERNAL: HTTPStatus.INTERNAL_SERVER_ERROR,
    ErrorCode.BAD_REQUEST: HTTPStatus.BAD_REQUEST,
    ErrorCode.BAD_CONFIGURATION: HTTPStatus.NOT_FOUND,
}


def build_err_response(err: BaseException) -> ProcessingResponse:
    """Turn ``err`` into an immediate HTTP response.

    Raises RuntimeError for errors whose code has no HTTP mapping.
    """
    status = _ERROR_STATUS.get(canonical_code(err))
    if status is None:
        raise RuntimeError(f"failed to handle request: {err}") from err
    immediate = ImmediateResponse(status=int(status))
    message = str(err)
    if message:
        immediate.body = message.encode("utf-8")
    return ProcessingResponse(immediate_response=immediate)


def build_common_responses(body: bytes, byte_limit: int, set_eos: bool) -> List[CommonResponse]:
    """Split ``body`` into streamed chunks of at most ``byte_limit`` bytes.

    An empty body yields one empty chunk. With ``set_eos`` the last chunk
    carries the end-of-stream flag.
    """
    if not body:
        return [CommonResponse(body_mutation=StreamedBodyResponse(body, set_eos))]
    starts = range(0, len(body), byte_limit)
    return [
        CommonResponse(
            body_mutation=StreamedBodyResponse(
                body[start:start + byte_limit],
                set_eos and start + byte_limit >= len(body),
            )
        )
        for start in starts
    ]
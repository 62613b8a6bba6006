from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


def get_request_id(request: Request) -> str:
    # The middleware assigns one per request; handlers outside it mint their own.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION

    @classmethod
    def for_request(cls, request: Request) -> "ResponseMeta":
        return cls(request_id=get_request_id(request))


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    """Wrap route output in the ``data`` envelope.

    Models, lists of models and plain mappings are all accepted; the envelope
    dumps them in JSON mode so timestamps leave as ISO strings.
    """
    envelope = SuccessEnvelope[Any](data=data, meta=ResponseMeta.for_request(request))
    return envelope.model_dump(mode="json")


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    envelope = ErrorEnvelope(
        error=ErrorDetail(code=code, message=message, details=details),
        meta=ResponseMeta.for_request(request),
    )
    # Absent details are omitted rather than sent as null.
    return envelope.model_dump(mode="json", exclude_none=True)

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResponseMeta(BaseModel):
    # Operators correlate ops calls with controller logs by request id and time.
    request_id: str
    api_version: str = Field(default=API_VERSION)
    served_at: datetime = Field(default_factory=_utc_now)


class ErrorDetail(BaseModel):
    # Stable machine-readable code plus a human message for runbooks.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    # Every ops payload is returned under "data".
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    # Failed ops calls return "error" instead of "data".
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The request-id middleware normally sets this; handlers invoked outside it mint one.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump(mode="json")


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    # Pydantic payloads are dumped in JSON mode so datetimes serialize as ISO strings.
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.requests import Request

from app.context import get_correlation_id


class RecordError(HTTPException):
    """Base error raised by the record layer.

    ``code`` ends up in the error envelope; silent errors are expected outcomes
    (a hidden record, a duplicate) and are logged at debug level only.
    """

    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "record_error"
    silent = False

    def __init__(self, message: str = "", *, body: Any = None, status_code: int | None = None) -> None:
        self.message = message
        self.body = body
        super().__init__(status_code=status_code or self.status_code_default, detail=message or self.code)


class BadRequest(RecordError):
    status_code_default = status.HTTP_400_BAD_REQUEST
    code = "bad_request"


class Forbidden(RecordError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class NotFound(RecordError):
    status_code_default = status.HTTP_404_NOT_FOUND
    code = "not_found"


class Conflict(RecordError):
    status_code_default = status.HTTP_409_CONFLICT
    code = "conflict"


class Error(RecordError):
    code = "error"


class ForbiddenSilent(Forbidden):
    silent = True


class NotFoundSilent(NotFound):
    silent = True


class ConflictSilent(Conflict):
    silent = True

    @classmethod
    def create_with_body(cls, reason: str, body: Any) -> ConflictSilent:
        return cls(reason, body={"reason": reason, "data": body})


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.__dict__))
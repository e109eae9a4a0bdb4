from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class UpstreamError(Exception):
    """Base class for failures talking to the biometric API.

    Every subclass is transient from the pipeline's point of view: the cycle
    that hit it is skipped and retried on the next tick.
    """

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class UpstreamAuthError(UpstreamError):
    code = "UPSTREAM_AUTH_FAILED"


class UpstreamTimeoutError(UpstreamError):
    code = "UPSTREAM_TIMEOUT"


class UpstreamUnavailableError(UpstreamError):
    code = "UPSTREAM_UNAVAILABLE"


class UpstreamPayloadError(UpstreamError):
    code = "UPSTREAM_BAD_PAYLOAD"


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)

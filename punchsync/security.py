from __future__ import annotations

import hmac

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from punchsync.errors import ApiError
from punchsync.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


def require_operator(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """Guard for operator routes; open when no ops token is configured."""
    expected_token = (get_settings().ops_api_token or "").strip()
    if not expected_token:
        request.state.actor = "operator"
        request.state.actor_id = "anonymous"
        return "anonymous"

    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    if not hmac.compare_digest(credentials.credentials.encode("utf-8"), expected_token.encode("utf-8")):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Invalid operator token.")

    request.state.actor = "operator"
    request.state.actor_id = "ops-token"
    return "ops-token"

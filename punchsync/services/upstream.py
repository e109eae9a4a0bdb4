from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, TypeVar

import requests
from jose import JWTError, jwt

from punchsync.errors import (
    UpstreamAuthError,
    UpstreamPayloadError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from punchsync.models import PunchDirection
from punchsync.services.clock import attendance_timezone, local_to_utc, normalize_ts
from punchsync.services.retry import RetryPolicy, retry_with_backoff
from punchsync.settings import get_settings, get_upstream_base_url

logger = logging.getLogger("punchsync.upstream")

T = TypeVar("T")

AUTH_PATH = "jwt-api-token-auth/"
TRANSACTIONS_PATH = "iclock/api/transactions/"
UPSTREAM_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
TOKEN_REFRESH_MARGIN = timedelta(seconds=60)
MAX_PAGES_PER_QUERY = 500

IN_STATES = {"0", "3", "4"}
OUT_STATES = {"1", "2", "5"}


@dataclass(frozen=True, slots=True)
class UpstreamPunch:
    source_id: int
    employee_code: str
    punch_ts_utc: datetime
    direction: PunchDirection
    punch_state: str | None
    terminal_id: str | None
    is_access_control: bool
    raw_payload: dict[str, Any] = field(default_factory=dict)


class PunchSource(Protocol):
    def invalidate_token(self) -> None: ...

    def fetch_events_between(self, start_utc: datetime, end_utc: datetime) -> list[UpstreamPunch]: ...

    def fetch_events_by_id_range(self, start_id: int, end_id: int) -> list[UpstreamPunch]: ...


def direction_for_state(punch_state: Any) -> PunchDirection | None:
    normalized = str(punch_state).strip() if punch_state is not None else ""
    if normalized in IN_STATES:
        return PunchDirection.IN
    if normalized in OUT_STATES:
        return PunchDirection.OUT
    return None


def _parse_upstream_time(raw_value: Any) -> datetime:
    if not isinstance(raw_value, str) or not raw_value.strip():
        raise UpstreamPayloadError(f"missing punch_time: {raw_value!r}")
    value = raw_value.strip().replace("T", " ")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise UpstreamPayloadError(f"unparseable punch_time: {raw_value!r}") from exc
    return local_to_utc(parsed)


def parse_punch_record(record: dict[str, Any], *, access_control_pattern: str = "lock") -> UpstreamPunch:
    """Convert one upstream transaction row into a typed punch.

    Raises ``UpstreamPayloadError`` when a required field is missing or the
    punch state maps to neither direction.
    """
    try:
        source_id = int(record["id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise UpstreamPayloadError(f"record without usable id: {record!r}"[:500]) from exc

    employee_code = str(record.get("emp_code") or "").strip()
    if not employee_code:
        raise UpstreamPayloadError(f"record {source_id} has no emp_code")

    direction = direction_for_state(record.get("punch_state"))
    if direction is None:
        raise UpstreamPayloadError(f"record {source_id} has unknown punch_state {record.get('punch_state')!r}")

    terminal_sn = record.get("terminal_sn")
    terminal_alias = str(record.get("terminal_alias") or record.get("terminal") or "")
    pattern = (access_control_pattern or "").strip().lower()

    return UpstreamPunch(
        source_id=source_id,
        employee_code=employee_code,
        punch_ts_utc=_parse_upstream_time(record.get("punch_time")),
        direction=direction,
        punch_state=str(record.get("punch_state")),
        terminal_id=str(terminal_sn) if terminal_sn not in (None, "") else (terminal_alias or None),
        is_access_control=bool(pattern) and pattern in terminal_alias.lower(),
        raw_payload=dict(record),
    )


class BiometricApiClient:
    def __init__(
        self,
        *,
        base_url: str,
        username: str,
        password: str,
        timeout_seconds: float = 30.0,
        verify_tls: bool = True,
        page_size: int = 1000,
        token_ttl_minutes: int = 23 * 60,
        access_control_pattern: str = "lock",
        http: requests.Session | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.username = username
        self.password = password
        self.timeout_seconds = timeout_seconds
        self.verify_tls = verify_tls
        self.page_size = max(1, page_size)
        self.token_ttl = timedelta(minutes=max(1, token_ttl_minutes))
        self.access_control_pattern = access_control_pattern
        self.http = http or requests.Session()
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._token: str | None = None
        self._token_expires_at: datetime | None = None

    @classmethod
    def from_settings(cls) -> BiometricApiClient:
        settings = get_settings()
        return cls(
            base_url=get_upstream_base_url(),
            username=settings.upstream_username,
            password=settings.upstream_password,
            timeout_seconds=settings.upstream_timeout_seconds,
            verify_tls=settings.upstream_verify_tls,
            page_size=settings.upstream_page_size,
            token_ttl_minutes=settings.upstream_token_ttl_minutes,
            access_control_pattern=settings.access_control_terminal_pattern,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            response = self.http.request(
                method,
                url,
                timeout=self.timeout_seconds,
                verify=self.verify_tls,
                **kwargs,
            )
        except requests.Timeout as exc:
            raise UpstreamTimeoutError(f"{method} {path} timed out after {self.timeout_seconds}s") from exc
        except requests.RequestException as exc:
            raise UpstreamUnavailableError(f"{method} {path} failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise UpstreamAuthError(
                f"{method} {path} rejected credentials",
                status_code=response.status_code,
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise UpstreamUnavailableError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise UpstreamPayloadError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def _token_expiry(self, token: str, issued_at: datetime) -> datetime:
        fallback = issued_at + self.token_ttl
        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError:
            return fallback
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            return fallback
        return min(fallback, datetime.fromtimestamp(exp, tz=timezone.utc))

    def authenticate(self) -> str:
        if not self.username or not self.password:
            raise UpstreamAuthError("upstream credentials are not configured")

        response = self._request(
            "POST",
            AUTH_PATH,
            json={"username": self.username, "password": self.password},
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamAuthError("auth endpoint returned a non-JSON body") from exc

        token = payload.get("token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise UpstreamAuthError("auth endpoint returned no token")

        issued_at = normalize_ts(self._now())
        self._token = token
        self._token_expires_at = self._token_expiry(token, issued_at)
        logger.info(
            "upstream_authenticated",
            extra={"token_expires_at": self._token_expires_at},
        )
        return token

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = None

    def _auth_headers(self) -> dict[str, str]:
        now_utc = normalize_ts(self._now())
        if (
            self._token is None
            or self._token_expires_at is None
            or now_utc >= self._token_expires_at - TOKEN_REFRESH_MARGIN
        ):
            self.authenticate()
        return {"Authorization": f"JWT {self._token}"}

    def _fetch_transactions(self, params: dict[str, Any]) -> list[UpstreamPunch]:
        punches: list[UpstreamPunch] = []
        rejected = 0
        next_url: str | None = None
        page = 1

        while page <= MAX_PAGES_PER_QUERY:
            if next_url:
                response = self._request("GET", next_url, headers=self._auth_headers())
            else:
                response = self._request(
                    "GET",
                    TRANSACTIONS_PATH,
                    params={**params, "page": page, "page_size": self.page_size},
                    headers=self._auth_headers(),
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise UpstreamPayloadError("transactions endpoint returned a non-JSON body") from exc
            if not isinstance(payload, dict):
                raise UpstreamPayloadError("transactions endpoint returned an unexpected body")

            records = payload.get("data")
            if records is None:
                records = payload.get("results")
            if not isinstance(records, list):
                raise UpstreamPayloadError("transactions payload has no record list")

            for record in records:
                try:
                    punches.append(
                        parse_punch_record(record, access_control_pattern=self.access_control_pattern)
                    )
                except UpstreamPayloadError as exc:
                    rejected += 1
                    logger.warning("upstream_record_rejected", extra={"error": exc.message})

            next_link = payload.get("next")
            if not next_link or not records:
                break
            next_url = str(next_link)
            page += 1

        if page > MAX_PAGES_PER_QUERY:
            logger.warning(
                "upstream_page_limit_reached",
                extra={"max_pages": MAX_PAGES_PER_QUERY, "accepted": len(punches), "params": params},
            )
        if rejected:
            logger.warning(
                "upstream_records_rejected",
                extra={"rejected": rejected, "accepted": len(punches), "params": params},
            )
        punches.sort(key=lambda item: item.source_id)
        return punches

    def fetch_events_between(self, start_utc: datetime, end_utc: datetime) -> list[UpstreamPunch]:
        tz = attendance_timezone()
        params = {
            "start_time": normalize_ts(start_utc).astimezone(tz).strftime(UPSTREAM_TIME_FORMAT),
            "end_time": normalize_ts(end_utc).astimezone(tz).strftime(UPSTREAM_TIME_FORMAT),
        }
        return self._fetch_transactions(params)

    def fetch_events_by_id_range(self, start_id: int, end_id: int) -> list[UpstreamPunch]:
        if end_id < start_id:
            return []
        punches = self._fetch_transactions({"id__gte": start_id, "id__lte": end_id})
        return [item for item in punches if start_id <= item.source_id <= end_id]


def call_with_reauth(
    client: PunchSource,
    operation: Callable[[PunchSource], T],
    *,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "upstream",
) -> T:
    """Run an upstream read with bounded retries and a single re-login.

    Transient errors are retried through ``retry_with_backoff``. An auth
    failure drops the cached token and the whole read is tried once more;
    a second auth failure propagates to the caller.
    """

    def attempt() -> T:
        return retry_with_backoff(
            lambda: operation(client),
            policy=policy,
            retry_on=(UpstreamTimeoutError, UpstreamUnavailableError),
            sleep=sleep,
            label=label,
        )

    try:
        return attempt()
    except UpstreamAuthError as exc:
        logger.warning("upstream_reauth", extra={"label": label, "error": exc.message})
        client.invalidate_token()
        return attempt()

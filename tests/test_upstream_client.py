from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import requests
from jose import jwt

from punchsync.errors import (
    UpstreamAuthError,
    UpstreamPayloadError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from punchsync.models import PunchDirection
from punchsync.services.upstream import BiometricApiClient, call_with_reauth, direction_for_state, parse_punch_record
from tests.support import NO_WAIT_RETRY, local_ts

NOW = datetime(2025, 7, 1, 7, 0, tzinfo=timezone.utc)


class _FakeResponse:
    def __init__(self, status_code: int = 200, payload=None):  # type: ignore[no-untyped-def]
        self.status_code = status_code
        self._payload = payload

    def json(self):  # type: ignore[no-untyped-def]
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _FakeHttp:
    """Replays queued responses (or raises queued exceptions) in order."""

    def __init__(self, *responses):  # type: ignore[no-untyped-def]
        self.responses = list(responses)
        self.calls: list[dict[str, object]] = []

    def request(self, method, url, **kwargs):  # type: ignore[no-untyped-def]
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _token_response(token: str = "tok-1") -> _FakeResponse:
    return _FakeResponse(200, {"token": token})


def _record(source_id: int, *, state: str = "0", punch_time: str = "2025-07-01 08:58:00", **extra) -> dict:  # type: ignore[no-untyped-def]
    return {
        "id": source_id,
        "emp_code": "E1",
        "punch_time": punch_time,
        "punch_state": state,
        "terminal_sn": "CGF-01",
        "terminal_alias": "Main Gate",
        **extra,
    }


def _client(http: _FakeHttp, **kwargs) -> BiometricApiClient:  # type: ignore[no-untyped-def]
    return BiometricApiClient(
        base_url="https://bio.example.com",
        username="api",
        password="secret",
        page_size=2,
        http=http,  # type: ignore[arg-type]
        now=lambda: NOW,
        **kwargs,
    )


class ParseRecordTests(unittest.TestCase):
    def test_direction_mapping(self) -> None:
        self.assertEqual(direction_for_state("0"), PunchDirection.IN)
        self.assertEqual(direction_for_state(4), PunchDirection.IN)
        self.assertEqual(direction_for_state("1"), PunchDirection.OUT)
        self.assertEqual(direction_for_state(5), PunchDirection.OUT)
        self.assertIsNone(direction_for_state("255"))
        self.assertIsNone(direction_for_state(None))

    def test_local_punch_time_is_converted_to_utc(self) -> None:
        punch = parse_punch_record(_record(100))

        self.assertEqual(punch.source_id, 100)
        self.assertEqual(punch.employee_code, "E1")
        self.assertEqual(punch.punch_ts_utc, local_ts(2025, 7, 1, 8, 58))
        self.assertEqual(punch.direction, PunchDirection.IN)
        self.assertEqual(punch.terminal_id, "CGF-01")
        self.assertFalse(punch.is_access_control)
        self.assertEqual(punch.raw_payload["id"], 100)

    def test_access_control_terminal_is_flagged(self) -> None:
        punch = parse_punch_record(_record(101, terminal_alias="Server Room LOCK"))
        self.assertTrue(punch.is_access_control)

    def test_invalid_records_are_rejected(self) -> None:
        for record in (
            {"emp_code": "E1"},
            _record(1, emp_code=""),
            _record(2, state="9"),
            _record(3, punch_time="yesterday"),
        ):
            with self.subTest(record=record):
                with self.assertRaises(UpstreamPayloadError):
                    parse_punch_record(record)


class BiometricApiClientTests(unittest.TestCase):
    def test_authenticates_then_sends_jwt_header(self) -> None:
        http = _FakeHttp(_token_response(), _FakeResponse(200, {"data": [_record(1)], "next": None}))
        client = _client(http)

        punches = client.fetch_events_between(NOW - timedelta(minutes=5), NOW)

        self.assertEqual([item.source_id for item in punches], [1])
        auth_call, list_call = http.calls
        self.assertEqual(auth_call["method"], "POST")
        self.assertEqual(auth_call["url"], "https://bio.example.com/jwt-api-token-auth/")
        self.assertEqual(auth_call["json"], {"username": "api", "password": "secret"})
        self.assertEqual(list_call["headers"], {"Authorization": "JWT tok-1"})
        self.assertEqual(
            list_call["params"],
            {"start_time": "2025-07-01 11:55:00", "end_time": "2025-07-01 12:00:00", "page": 1, "page_size": 2},
        )

    def test_token_is_reused_until_close_to_expiry(self) -> None:
        http = _FakeHttp(
            _token_response(),
            _FakeResponse(200, {"data": [], "next": None}),
            _FakeResponse(200, {"data": [], "next": None}),
        )
        client = _client(http)

        client.fetch_events_by_id_range(1, 5)
        client.fetch_events_by_id_range(6, 9)

        self.assertEqual([call["method"] for call in http.calls], ["POST", "GET", "GET"])
        self.assertEqual(http.calls[2]["params"]["id__gte"], 6)

    def test_token_expiry_honours_jwt_exp_claim(self) -> None:
        exp = NOW + timedelta(minutes=30)
        token = jwt.encode({"exp": int(exp.timestamp()), "username": "api"}, "server-secret", algorithm="HS256")
        client = _client(_FakeHttp(_token_response(token)))

        client.authenticate()

        self.assertEqual(client._token_expires_at, exp)

    def test_opaque_token_uses_configured_ttl(self) -> None:
        client = _client(_FakeHttp(_token_response("not-a-jwt")), token_ttl_minutes=60)

        client.authenticate()

        self.assertEqual(client._token_expires_at, NOW + timedelta(minutes=60))

    def test_follows_next_links_and_sorts_by_id(self) -> None:
        http = _FakeHttp(
            _token_response(),
            _FakeResponse(200, {"data": [_record(5), _record(3)], "next": "https://bio.example.com/iclock/api/transactions/?page=2"}),
            _FakeResponse(200, {"results": [_record(4, state="1"), {"id": 6}], "next": None}),
        )
        client = _client(http)

        punches = client.fetch_events_by_id_range(3, 6)

        self.assertEqual([item.source_id for item in punches], [3, 4, 5])
        self.assertEqual(http.calls[2]["url"], "https://bio.example.com/iclock/api/transactions/?page=2")
        self.assertEqual(punches[1].direction, PunchDirection.OUT)

    def test_page_limit_returns_partial_result_with_warning(self) -> None:
        next_page = "https://bio.example.com/iclock/api/transactions/?page=next"
        http = _FakeHttp(
            _token_response(),
            _FakeResponse(200, {"data": [_record(1), _record(2)], "next": next_page}),
            _FakeResponse(200, {"data": [_record(3), _record(4)], "next": next_page}),
        )
        client = _client(http)

        with patch("punchsync.services.upstream.MAX_PAGES_PER_QUERY", 2):
            with self.assertLogs("punchsync.upstream", level="WARNING") as captured:
                punches = client.fetch_events_between(NOW - timedelta(hours=24), NOW)

        self.assertEqual([item.source_id for item in punches], [1, 2, 3, 4])
        self.assertEqual(len(http.calls), 3)
        self.assertTrue(any("upstream_page_limit_reached" in line for line in captured.output))

    def test_status_codes_map_to_error_types(self) -> None:
        cases = [
            (401, UpstreamAuthError),
            (403, UpstreamAuthError),
            (429, UpstreamUnavailableError),
            (503, UpstreamUnavailableError),
            (404, UpstreamPayloadError),
        ]
        for status_code, error_type in cases:
            with self.subTest(status_code=status_code):
                client = _client(_FakeHttp(_token_response(), _FakeResponse(status_code, {})))
                with self.assertRaises(error_type) as captured:
                    client.fetch_events_by_id_range(1, 2)
                self.assertEqual(captured.exception.status_code, status_code)

    def test_transport_exceptions_map_to_error_types(self) -> None:
        client = _client(_FakeHttp(requests.Timeout("slow")))
        with self.assertRaises(UpstreamTimeoutError):
            client.authenticate()

        client = _client(_FakeHttp(requests.ConnectionError("refused")))
        with self.assertRaises(UpstreamUnavailableError):
            client.authenticate()

    def test_non_json_body_is_a_payload_error(self) -> None:
        client = _client(_FakeHttp(_token_response(), _FakeResponse(200, ValueError("not json"))))
        with self.assertRaises(UpstreamPayloadError):
            client.fetch_events_by_id_range(1, 2)

    def test_missing_credentials_fail_without_request(self) -> None:
        http = _FakeHttp()
        client = BiometricApiClient(base_url="https://bio.example.com/", username="", password="", http=http)  # type: ignore[arg-type]

        with self.assertRaises(UpstreamAuthError):
            client.authenticate()
        self.assertEqual(http.calls, [])

    def test_call_with_reauth_logs_in_again_after_rejection(self) -> None:
        http = _FakeHttp(
            _token_response("old"),
            _FakeResponse(401, {}),
            _token_response("new"),
            _FakeResponse(200, {"data": [_record(9)], "next": None}),
        )
        client = _client(http)

        punches = call_with_reauth(
            client,
            lambda source: source.fetch_events_by_id_range(9, 9),
            policy=NO_WAIT_RETRY,
            sleep=lambda _: None,
        )

        self.assertEqual([item.source_id for item in punches], [9])
        self.assertEqual(http.calls[3]["headers"], {"Authorization": "JWT new"})

    def test_call_with_reauth_gives_up_after_second_rejection(self) -> None:
        http = _FakeHttp(
            _token_response("old"),
            _FakeResponse(401, {}),
            _token_response("new"),
            _FakeResponse(401, {}),
        )
        client = _client(http)

        with self.assertRaises(UpstreamAuthError):
            call_with_reauth(
                client,
                lambda source: source.fetch_events_by_id_range(9, 9),
                policy=NO_WAIT_RETRY,
                sleep=lambda _: None,
            )
        self.assertEqual(len(http.calls), 4)


if __name__ == "__main__":
    unittest.main()

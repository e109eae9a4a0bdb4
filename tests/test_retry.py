from __future__ import annotations

import unittest

from punchsync.errors import UpstreamAuthError, UpstreamTimeoutError, UpstreamUnavailableError
from punchsync.services.retry import RetryPolicy, retry_with_backoff


class _Flaky:
    def __init__(self, *outcomes):  # type: ignore[no-untyped-def]
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self):  # type: ignore[no-untyped-def]
        self.calls += 1
        item = self.outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class RetryPolicyTests(unittest.TestCase):
    def test_delay_doubles_and_is_capped(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay_seconds=2.0, max_delay_seconds=10.0)
        self.assertEqual([policy.delay_for(attempt) for attempt in range(1, 5)], [2.0, 4.0, 8.0, 10.0])


class RetryWithBackoffTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.policy = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=30.0)

    def test_returns_after_transient_failures(self) -> None:
        operation = _Flaky(UpstreamTimeoutError("slow"), UpstreamUnavailableError("down"), "ok")

        result = retry_with_backoff(operation, policy=self.policy, sleep=self.sleeps.append, label="test")

        self.assertEqual(result, "ok")
        self.assertEqual(operation.calls, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_reraises_when_budget_is_spent(self) -> None:
        operation = _Flaky(*(UpstreamUnavailableError("down") for _ in range(3)))

        with self.assertLogs("punchsync.retry", level="WARNING") as captured:
            with self.assertRaises(UpstreamUnavailableError):
                retry_with_backoff(operation, policy=self.policy, sleep=self.sleeps.append, label="test")

        self.assertEqual(operation.calls, 3)
        self.assertEqual(len(self.sleeps), 2)
        self.assertTrue(any("retry_exhausted" in line for line in captured.output))

    def test_auth_errors_are_not_retried(self) -> None:
        operation = _Flaky(UpstreamAuthError("expired"), "never")

        with self.assertRaises(UpstreamAuthError):
            retry_with_backoff(operation, policy=self.policy, sleep=self.sleeps.append)

        self.assertEqual(operation.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_unlisted_errors_propagate_immediately(self) -> None:
        operation = _Flaky(KeyError("boom"))

        with self.assertRaises(KeyError):
            retry_with_backoff(operation, policy=self.policy, sleep=self.sleeps.append)

        self.assertEqual(operation.calls, 1)


if __name__ == "__main__":
    unittest.main()

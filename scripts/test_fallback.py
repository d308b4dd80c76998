from __future__ import annotations

import unittest
from unittest.mock import AsyncMock

from lp_exit.common import (
    CancellationToken,
    ExitCancelledError,
    FallbackExhaustedError,
    try_in_order,
)


class TryInOrderTests(unittest.IsolatedAsyncioTestCase):
    async def test_returns_first_success_and_records_failures(self) -> None:
        attempt = AsyncMock(side_effect=[RuntimeError("low fee"), "sig-2", "sig-3"])
        seen = []

        outcome = await try_in_order(attempt, [1, 2, 3], on_failure=seen.append)

        self.assertEqual(outcome.value, "sig-2")
        self.assertEqual(outcome.param, 2)
        self.assertEqual(outcome.index, 1)
        self.assertEqual(len(outcome.failures), 1)
        self.assertEqual([failure.param for failure in seen], [1])
        self.assertEqual(attempt.await_count, 2)

    async def test_exhaustion_carries_last_error_message(self) -> None:
        attempt = AsyncMock(side_effect=[RuntimeError("first"), RuntimeError("expired")])

        with self.assertRaises(FallbackExhaustedError) as ctx:
            await try_in_order(attempt, ["a", "b"])

        self.assertEqual(str(ctx.exception), "expired")
        self.assertEqual(len(ctx.exception.failures), 2)
        self.assertIsInstance(ctx.exception.last_error, RuntimeError)

    async def test_cancelled_token_stops_before_next_attempt(self) -> None:
        token = CancellationToken()

        async def attempt(param: int) -> str:
            token.cancel()
            raise RuntimeError(f"attempt {param} failed")

        with self.assertRaises(ExitCancelledError):
            await try_in_order(attempt, [1, 2, 3], cancel_token=token)

    async def test_backoff_is_requested_between_attempts(self) -> None:
        delays = []

        def backoff(index: int) -> float:
            delays.append(index)
            return 0.0

        attempt = AsyncMock(side_effect=[RuntimeError("x"), RuntimeError("y"), "ok"])
        outcome = await try_in_order(attempt, [1, 2, 3], backoff=backoff)

        self.assertEqual(outcome.value, "ok")
        self.assertEqual(delays, [1, 2])


class CancellationTokenTests(unittest.IsolatedAsyncioTestCase):
    async def test_sleep_wakes_on_cancel(self) -> None:
        token = CancellationToken()
        self.assertFalse(await token.sleep(0.01))
        token.cancel("user abort")
        self.assertTrue(await token.sleep(5.0))
        self.assertEqual(token.reason, "user abort")

    def test_raise_if_cancelled_uses_reason(self) -> None:
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with self.assertRaises(ExitCancelledError) as ctx:
            token.raise_if_cancelled()
        self.assertEqual(str(ctx.exception), "aborted")


if __name__ == "__main__":
    unittest.main()

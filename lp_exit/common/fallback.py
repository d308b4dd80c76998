from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Sequence, TypeVar

from .async_utils import error_message
from .cancellation import CancellationToken

P = TypeVar("P")
R = TypeVar("R")


@dataclass(slots=True, frozen=True)
class AttemptFailure(Generic[P]):
    index: int
    param: P
    error: BaseException


@dataclass(slots=True, frozen=True)
class FallbackOutcome(Generic[P, R]):
    value: R
    param: P
    index: int
    failures: list[AttemptFailure[P]] = field(default_factory=list)


class FallbackExhaustedError(RuntimeError):
    def __init__(self, failures: list[AttemptFailure]) -> None:
        self.failures = failures
        last = failures[-1].error if failures else None
        message = error_message(last) if last is not None else "no alternatives to try"
        super().__init__(message)

    @property
    def last_error(self) -> BaseException | None:
        return self.failures[-1].error if self.failures else None


async def try_in_order(
    attempt: Callable[[P], Awaitable[R]],
    params: Sequence[P],
    *,
    cancel_token: CancellationToken | None = None,
    on_failure: Callable[[AttemptFailure[P]], None] | None = None,
    backoff: Callable[[int], float] | None = None,
) -> FallbackOutcome[P, R]:
    """Call ``attempt`` with each param in order until one returns.

    Params are expected to grow more costly (or more limited) along the
    sequence. The cancellation token is checked before every attempt, never
    in the middle of one. ``backoff(index)`` seconds are slept between a
    failure and the next attempt.
    """
    failures: list[AttemptFailure[P]] = []
    for index, param in enumerate(params):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if index > 0 and backoff is not None:
            delay = max(0.0, backoff(index))
            if cancel_token is not None:
                if await cancel_token.sleep(delay):
                    cancel_token.raise_if_cancelled()
            elif delay > 0:
                await asyncio.sleep(delay)
        try:
            value = await attempt(param)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            failure = AttemptFailure(index=index, param=param, error=error)
            failures.append(failure)
            if on_failure is not None:
                on_failure(failure)
            continue
        return FallbackOutcome(value=value, param=param, index=index, failures=failures)

    raise FallbackExhaustedError(failures)

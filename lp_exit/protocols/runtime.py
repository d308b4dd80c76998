from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from lp_exit.common import error_message, log_event
from lp_exit.exit.types import ProtocolName

from .base import ProtocolAdapter


class ProtocolRuntimeResolver:
    """Decides once which protocol back-ends are reachable.

    The first ``resolve()`` probes every adapter concurrently; later calls
    (and concurrent first calls) share that single result until ``reset()``.
    """

    def __init__(self, *, logger: logging.Logger, adapters: Mapping[ProtocolName, ProtocolAdapter]) -> None:
        self._logger = logger
        self._adapters = dict(adapters)
        self._lock = asyncio.Lock()
        self._availability: dict[ProtocolName, bool] | None = None
        self._errors: dict[ProtocolName, str] = {}

    @property
    def errors(self) -> dict[ProtocolName, str]:
        return dict(self._errors)

    def reset(self) -> None:
        self._availability = None
        self._errors = {}

    async def resolve(self) -> dict[ProtocolName, bool]:
        if self._availability is not None:
            return dict(self._availability)

        async with self._lock:
            if self._availability is None:
                self._availability = await self._probe()
        return dict(self._availability)

    async def _probe(self) -> dict[ProtocolName, bool]:
        names = list(self._adapters)
        results = await asyncio.gather(
            *(self._adapters[name].healthcheck() for name in names),
            return_exceptions=True,
        )

        availability: dict[ProtocolName, bool] = {}
        for name, result in zip(names, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                availability[name] = False
                self._errors[name] = error_message(result, fallback="healthcheck failed")
                log_event(
                    self._logger,
                    level="warning",
                    event="exit_protocol_unavailable",
                    message="Protocol back-end failed its healthcheck",
                    protocol=name,
                    error=self._errors[name],
                )
                continue
            availability[name] = True

        log_event(
            self._logger,
            level="info",
            event="exit_protocol_runtime_resolved",
            message="Resolved protocol runtime availability",
            availability=availability,
        )
        return availability

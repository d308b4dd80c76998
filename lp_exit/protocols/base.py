from __future__ import annotations

from typing import Protocol

from lp_exit.common import CancellationToken
from lp_exit.exit.types import BuildParams, DraftTransaction, PositionCandidate, ProtocolName


class ProtocolAdapter(Protocol):
    """Capability interface every liquidity protocol implements."""

    @property
    def name(self) -> ProtocolName:
        ...

    async def discover(self, owner: str, *, cancel_token: CancellationToken) -> list[PositionCandidate]:
        ...

    async def build(
        self,
        candidate: PositionCandidate,
        params: BuildParams,
        *,
        cancel_token: CancellationToken,
    ) -> DraftTransaction:
        ...

    async def healthcheck(self) -> None:
        ...

from __future__ import annotations

import asyncio
import logging

from lp_exit.common import CancellationToken, log_event
from lp_exit.exit.errors import DiscoveryError, TransactionBuildError
from lp_exit.exit.types import (
    BuildParams,
    DraftTransaction,
    PositionCandidate,
    ProtocolName,
    clamp_compute_unit_limit,
    clamp_priority_fee,
    clamp_slippage_bps,
)

from .http import ExitApiClient, ExitApiError, decode_draft, fetch_positions


class DammV2Adapter:
    """Liquidity withdrawal from NFT-keyed DAMM v2 positions."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        api: ExitApiClient,
        discover_path: str = "/api/dammv2-discover",
        exit_path: str = "/api/dammv2-exit",
        health_path: str = "/api/health",
    ) -> None:
        self._logger = logger
        self._api = api
        self._discover_path = discover_path
        self._exit_path = exit_path
        self._health_path = health_path

    @property
    def name(self) -> ProtocolName:
        return "dammv2"

    async def discover(self, owner: str, *, cancel_token: CancellationToken) -> list[PositionCandidate]:
        cancel_token.raise_if_cancelled()
        try:
            raw_positions = await fetch_positions(self._api, self._discover_path, owner)
        except ExitApiError as error:
            raise DiscoveryError(str(error), protocol=self.name) from error

        candidates: list[PositionCandidate] = []
        for raw in raw_positions:
            pool = str(raw.get("pool") or "").strip()
            position = str(raw.get("position") or "").strip()
            if not pool or not position:
                log_event(
                    self._logger,
                    level="debug",
                    event="exit_discovery_entry_dropped",
                    message="Dropping DAMM v2 position without pool or position",
                    protocol=self.name,
                    entry=raw,
                )
                continue
            candidates.append(
                PositionCandidate(
                    protocol=self.name,
                    kind="withdraw",
                    pool=pool,
                    position=position,
                    keys={"pool": pool, "position": position, "lpMint": raw.get("lpMint")},
                )
            )
        return candidates

    async def build(
        self,
        candidate: PositionCandidate,
        params: BuildParams,
        *,
        cancel_token: CancellationToken,
    ) -> DraftTransaction:
        cancel_token.raise_if_cancelled()
        percent = params.withdraw_percent
        if percent <= 0 or percent > 100:
            raise TransactionBuildError("percent must be (0,100]", protocol=self.name, pool=candidate.pool)

        body = {
            "owner": params.owner,
            "pool": candidate.pool,
            "position": candidate.position,
            "percent": percent,
            "priorityMicros": clamp_priority_fee(params.fee_level),
            "slippageBps": clamp_slippage_bps(params.slippage_bps),
            "computeUnitLimit": clamp_compute_unit_limit(params.compute_unit_ceiling),
        }
        try:
            payload = await self._api.post_json(self._exit_path, body)
            return decode_draft(payload, source=self._exit_path)
        except asyncio.CancelledError:
            raise
        except (ExitApiError, ValueError) as error:
            raise TransactionBuildError(str(error), protocol=self.name, pool=candidate.pool) from error

    async def healthcheck(self) -> None:
        await self._api.get_json(self._health_path)

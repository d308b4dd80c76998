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

from .dbc_builder import DbcClaimBuilder
from .http import ExitApiClient, ExitApiError, decode_draft, fetch_positions


class DbcAdapter:
    """Fee-vault claims on the dynamic bonding curve program."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        api: ExitApiClient,
        discover_path: str = "/api/dbc-discover",
        exit_path: str = "/api/dbc-exit",
        health_path: str = "/api/health",
        local_builder: DbcClaimBuilder | None = None,
    ) -> None:
        self._logger = logger
        self._api = api
        self._discover_path = discover_path
        self._exit_path = exit_path
        self._health_path = health_path
        self._local_builder = local_builder

    @property
    def name(self) -> ProtocolName:
        return "dbc"

    async def discover(self, owner: str, *, cancel_token: CancellationToken) -> list[PositionCandidate]:
        cancel_token.raise_if_cancelled()
        try:
            raw_positions = await fetch_positions(self._api, self._discover_path, owner)
        except ExitApiError as error:
            raise DiscoveryError(str(error), protocol=self.name) from error

        candidates: list[PositionCandidate] = []
        for raw in raw_positions:
            pool = str(raw.get("pool") or "").strip()
            fee_vault = str(raw.get("feeVault") or "").strip()
            if not pool or not fee_vault:
                log_event(
                    self._logger,
                    level="debug",
                    event="exit_discovery_entry_dropped",
                    message="Dropping DBC position without pool or fee vault",
                    protocol=self.name,
                    entry=raw,
                )
                continue
            candidates.append(
                PositionCandidate(
                    protocol=self.name,
                    kind="claim",
                    pool=pool,
                    fee_vault=fee_vault,
                    keys={"pool": pool, "feeVault": fee_vault},
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
        if candidate.kind != "claim":
            raise TransactionBuildError(
                "DBC withdraw (liquidity removal) is not implemented.",
                protocol=self.name,
                pool=candidate.pool,
            )

        if self._local_builder is not None:
            return await self._local_builder.build_claim(
                owner=params.owner,
                pool=candidate.pool,
                fee_vault=candidate.fee_vault or "",
                priority_micro_lamports=params.fee_level,
                compute_unit_limit=params.compute_unit_ceiling,
            )

        body = {
            "owner": params.owner,
            "dbcPoolKeys": {"pool": candidate.pool, "feeVault": candidate.fee_vault},
            "action": "claim",
            "priorityMicros": clamp_priority_fee(params.fee_level),
            "computeUnitLimit": clamp_compute_unit_limit(params.compute_unit_ceiling),
            "slippageBps": clamp_slippage_bps(params.slippage_bps),
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

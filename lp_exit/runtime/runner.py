from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any

from lp_exit.common import CancellationToken, error_message, guarded_call, log_event
from lp_exit.exit.fees import PriorityFeeRecommender
from lp_exit.exit.orchestrator import ExitOrchestrator
from lp_exit.exit.planner import ExitPlan, plan_exit_tasks
from lp_exit.exit.rpc import LedgerRpcClient
from lp_exit.exit.signing import KeypairSigner
from lp_exit.exit.types import ExitRunOptions, ExitTask
from lp_exit.protocols import (
    DammV2Adapter,
    DbcAdapter,
    DbcClaimBuilder,
    ExitApiClient,
    ProtocolAdapter,
    ProtocolRuntimeResolver,
)

from .settings import AppSettings


@dataclass(slots=True)
class ExitServices:
    rpc: LedgerRpcClient
    api: ExitApiClient
    adapters: list[ProtocolAdapter]
    resolver: ProtocolRuntimeResolver
    recommender: PriorityFeeRecommender


def build_services(*, logger: logging.Logger, settings: AppSettings) -> ExitServices:
    rpc = LedgerRpcClient(
        logger=logger,
        rpc_url=settings.solana_rpc_url,
        timeout_seconds=settings.http_timeout_seconds,
    )
    api = ExitApiClient(
        logger=logger,
        base_url=settings.exit_api_base_url,
        timeout_seconds=settings.http_timeout_seconds,
    )

    local_builder = None
    if settings.dbc_build_mode == "local":
        local_builder = DbcClaimBuilder(
            logger=logger,
            rpc=rpc,
            program_id=settings.dbc_program_id,
            allowed_program_ids=settings.allowed_dbc_program_ids,
            claim_discriminator=settings.dbc_claim_fee_discriminator,
            allow_placeholder=settings.allow_placeholder_dbc,
        )

    adapters: list[ProtocolAdapter] = [
        DbcAdapter(
            logger=logger,
            api=api,
            discover_path=settings.dbc_discover_path,
            exit_path=settings.dbc_exit_path,
            health_path=settings.exit_api_health_path,
            local_builder=local_builder,
        ),
        DammV2Adapter(
            logger=logger,
            api=api,
            discover_path=settings.dammv2_discover_path,
            exit_path=settings.dammv2_exit_path,
            health_path=settings.exit_api_health_path,
        ),
    ]
    return ExitServices(
        rpc=rpc,
        api=api,
        adapters=adapters,
        resolver=ProtocolRuntimeResolver(
            logger=logger,
            adapters={adapter.name: adapter for adapter in adapters},
        ),
        recommender=PriorityFeeRecommender(logger=logger, fetch_recent_fees=rpc.get_recent_prioritization_fees),
    )


async def connect_services(*, logger: logging.Logger, services: ExitServices) -> None:
    try:
        await services.rpc.connect()
        await services.api.connect()
    except Exception as error:
        log_event(
            logger,
            level="exception",
            event="bootstrap_error",
            message="Dependency bootstrap failed",
            error=str(error),
        )
        await close_services(logger=logger, services=services)
        raise


async def close_services(*, logger: logging.Logger, services: ExitServices) -> None:
    await guarded_call(
        services.api.close,
        logger=logger,
        event="exit_api_close_failed",
        message="Failed to close exit API session",
    )
    await guarded_call(
        services.rpc.close,
        logger=logger,
        event="rpc_close_failed",
        message="Failed to close RPC session",
    )


def resolve_owner(settings: AppSettings) -> str:
    if settings.owner_pubkey:
        return settings.owner_pubkey
    if settings.private_key.strip():
        return str(KeypairSigner.from_private_key(settings.private_key).pubkey)
    raise ValueError("OWNER_PUBKEY or PRIVATE_KEY is required.")


def build_orchestrator(
    *,
    logger: logging.Logger,
    settings: AppSettings,
    services: ExitServices,
) -> ExitOrchestrator:
    if not settings.private_key.strip():
        raise ValueError("PRIVATE_KEY is required to run exits.")
    signer = KeypairSigner.from_private_key(settings.private_key)
    if settings.owner_pubkey and settings.owner_pubkey != str(signer.pubkey):
        raise ValueError("OWNER_PUBKEY does not match the PRIVATE_KEY public key.")

    return ExitOrchestrator(
        logger=logger,
        adapters=services.adapters,
        rpc=services.rpc,
        signer=signer.as_wallet_signer(),
        config=settings.exit_config(),
        recommender=services.recommender,
        resolver=services.resolver,
    )


async def simulate_plan(*, logger: logging.Logger, rpc: LedgerRpcClient, plan: ExitPlan) -> ExitPlan:
    """Simulate every primary draft; a failed simulation is reported on its task only."""

    async def simulate(task: ExitTask) -> dict[str, Any]:
        try:
            return await rpc.simulate_transaction(task.draft.serialized)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                logger,
                level="warning",
                event="exit_simulation_failed",
                message="Could not simulate planned exit transaction",
                protocol=task.protocol,
                pool=task.pool,
                error=error_message(error),
            )
            return {"error": error_message(error)}

    simulations = await asyncio.gather(*(simulate(task) for task in plan.tasks))
    return replace(plan, simulations=tuple(simulations))


async def run_dry_plan(
    *,
    logger: logging.Logger,
    settings: AppSettings,
    services: ExitServices,
    options: ExitRunOptions,
    cancel_token: CancellationToken,
) -> ExitPlan:
    plan = await plan_exit_tasks(
        logger=logger,
        owner=resolve_owner(settings),
        adapters=services.adapters,
        options=options,
        fee_schedule=settings.fee_schedule(),
        cancel_token=cancel_token,
        recommender=services.recommender,
        resolver=services.resolver,
    )
    cancel_token.raise_if_cancelled()
    return await simulate_plan(logger=logger, rpc=services.rpc, plan=plan)


async def run_health(*, services: ExitServices) -> dict[str, object]:
    availability = await services.resolver.resolve()
    rpc_ok = True
    rpc_error = None
    try:
        await services.rpc.healthcheck()
    except Exception as error:
        rpc_ok = False
        rpc_error = str(error)
    return {
        "ok": rpc_ok and any(availability.values()),
        "rpc": {"ok": rpc_ok, "error": rpc_error},
        "protocols": availability,
        "protocol_errors": services.resolver.errors,
    }

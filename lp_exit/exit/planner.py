from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from lp_exit.common import CancellationToken, error_message, log_event

from .errors import TransactionBuildError
from .fees import FeeSchedule, PriorityFeeRecommender
from .types import (
    BuildParams,
    DraftTransaction,
    ExitRunOptions,
    ExitTask,
    PositionCandidate,
    PriorityVariant,
    ProtocolName,
    clamp_compute_unit_limit,
    clamp_priority_fee,
    clamp_slippage_bps,
)

if TYPE_CHECKING:
    from lp_exit.protocols.base import ProtocolAdapter
    from lp_exit.protocols.runtime import ProtocolRuntimeResolver

DEFAULT_FEE_BASE_MICRO_LAMPORTS = 250_000
_KIND_ORDER = {"claim": 0, "withdraw": 1}


@dataclass(slots=True, frozen=True)
class ExitPlan:
    tasks: list[ExitTask]
    fee_levels: list[int]
    fee_source: str
    skipped_protocols: dict[str, str] = field(default_factory=dict)
    # one entry per task, filled only by dry runs
    simulations: tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        tasks = [task.summary() for task in self.tasks]
        for summary, simulation in zip(tasks, self.simulations):
            summary["simulation"] = simulation
        return {
            "fee_levels": list(self.fee_levels),
            "fee_source": self.fee_source,
            "skipped_protocols": dict(self.skipped_protocols),
            "tasks": tasks,
        }


def order_tasks(tasks: Sequence[ExitTask]) -> list[ExitTask]:
    """Group tasks by pool in first-seen order; claims precede withdraws inside a pool."""
    first_seen: dict[str, int] = {}
    for index, task in enumerate(tasks):
        first_seen.setdefault(task.pool, index)
    return sorted(tasks, key=lambda task: (first_seen[task.pool], _KIND_ORDER.get(task.kind, 99)))


async def resolve_fee_base(
    *,
    explicit: int | None,
    recommender: PriorityFeeRecommender | None,
) -> tuple[int, str]:
    if explicit is not None:
        return clamp_priority_fee(explicit), "explicit"
    if recommender is None:
        return DEFAULT_FEE_BASE_MICRO_LAMPORTS, "default"
    recommendation = await recommender.recommend()
    return clamp_priority_fee(recommendation.micro_lamports), recommendation.source


async def _build_validated(
    adapter: ProtocolAdapter,
    candidate: PositionCandidate,
    params: BuildParams,
    *,
    cancel_token: CancellationToken,
) -> DraftTransaction:
    draft = await adapter.build(candidate, params, cancel_token=cancel_token)
    try:
        draft.to_versioned()
    except Exception as error:
        raise TransactionBuildError(
            f"Invalid serialized transaction: {error}",
            protocol=candidate.protocol,
            pool=candidate.pool,
        ) from error
    return draft


async def plan_exit_tasks(
    *,
    logger: logging.Logger,
    owner: str,
    adapters: Sequence[ProtocolAdapter],
    options: ExitRunOptions,
    fee_schedule: FeeSchedule,
    cancel_token: CancellationToken,
    recommender: PriorityFeeRecommender | None = None,
    resolver: ProtocolRuntimeResolver | None = None,
) -> ExitPlan:
    """Discover positions and build a draft per fee level for each of them.

    Discovery runs concurrently across protocols and builds run concurrently
    across positions and levels. A protocol whose discovery fails contributes
    nothing; a position whose primary build fails is left out; a failed
    higher level only removes that variant.
    """
    cancel_token.raise_if_cancelled()
    fee_base, fee_source = await resolve_fee_base(
        explicit=options.fee_level_base,
        recommender=recommender,
    )
    fee_levels = fee_schedule.levels(fee_base)

    skipped: dict[str, str] = {}
    selected: list[ProtocolAdapter] = []
    availability: dict[ProtocolName, bool] = {}
    if resolver is not None:
        availability = await resolver.resolve()
    for adapter in adapters:
        if adapter.name not in options.protocols_enabled:
            skipped[adapter.name] = "disabled"
            continue
        if resolver is not None and not availability.get(adapter.name, False):
            skipped[adapter.name] = "unavailable"
            log_event(
                logger,
                level="warning",
                event="exit_protocol_skipped",
                message="Skipping protocol whose back-end is unavailable",
                protocol=adapter.name,
            )
            continue
        selected.append(adapter)

    cancel_token.raise_if_cancelled()
    discovered = await asyncio.gather(
        *(adapter.discover(owner, cancel_token=cancel_token) for adapter in selected),
        return_exceptions=True,
    )

    candidates: list[tuple[ProtocolAdapter, PositionCandidate]] = []
    for adapter, result in zip(selected, discovered):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            log_event(
                logger,
                level="warning",
                event="exit_discovery_failed",
                message="Position discovery failed; continuing without this protocol",
                protocol=adapter.name,
                error=error_message(result),
                error_type=type(result).__name__,
            )
            continue
        log_event(
            logger,
            level="info",
            event="exit_discovery_completed",
            message="Discovered exit candidates",
            protocol=adapter.name,
            count=len(result),
        )
        candidates.extend((adapter, candidate) for candidate in result)

    cancel_token.raise_if_cancelled()
    cu_ceiling = clamp_compute_unit_limit(options.compute_unit_ceiling)
    slippage_bps = clamp_slippage_bps(options.slippage_bps)

    jobs = []
    for adapter, candidate in candidates:
        for level in fee_levels:
            params = BuildParams(
                owner=owner,
                fee_level=level,
                compute_unit_ceiling=cu_ceiling,
                slippage_bps=slippage_bps,
                withdraw_percent=options.withdraw_percent,
            )
            jobs.append(_build_validated(adapter, candidate, params, cancel_token=cancel_token))
    built = await asyncio.gather(*jobs, return_exceptions=True)

    tasks: list[ExitTask] = []
    width = len(fee_levels)
    for position_index, (_, candidate) in enumerate(candidates):
        results = built[position_index * width : (position_index + 1) * width]
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result

        primary = results[0]
        if isinstance(primary, BaseException):
            log_event(
                logger,
                level="warning",
                event="exit_build_skipped",
                message="Excluding position whose primary transaction failed to build",
                protocol=candidate.protocol,
                pool=candidate.pool,
                error=error_message(primary),
                error_type=type(primary).__name__,
            )
            continue

        variants: list[PriorityVariant] = []
        for level, result in zip(fee_levels, results):
            if isinstance(result, BaseException):
                log_event(
                    logger,
                    level="warning",
                    event="exit_variant_build_failed",
                    message="Dropping fee variant that failed to build",
                    protocol=candidate.protocol,
                    pool=candidate.pool,
                    fee_level=level,
                    error=error_message(result),
                )
                continue
            variants.append(PriorityVariant(draft=result, fee_level=level))

        tasks.append(
            ExitTask(
                protocol=candidate.protocol,
                kind=candidate.kind,
                pool=candidate.pool,
                draft=primary,
                fee_vault=candidate.fee_vault,
                position=candidate.position,
                variants=tuple(variants),
            )
        )

    cancel_token.raise_if_cancelled()
    ordered = order_tasks(tasks)
    log_event(
        logger,
        level="info",
        event="exit_plan_ready",
        message="Exit plan is ready",
        task_count=len(ordered),
        fee_levels=fee_levels,
        fee_source=fee_source,
        skipped_protocols=skipped,
    )
    return ExitPlan(tasks=ordered, fee_levels=fee_levels, fee_source=fee_source, skipped_protocols=skipped)

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

from lp_exit.common import log_event

DEFAULT_ESCALATION_MULTIPLIER = 1.35
DEFAULT_FEE_GRANULARITY = 1_000
DEFAULT_VARIANT_COUNT = 3
DEFAULT_FEE_CEILING_MICRO_LAMPORTS = 3_000_000

RECOMMENDED_DEFAULT_MICRO_LAMPORTS = 5_000
RECOMMENDED_MIN_MICRO_LAMPORTS = 2_000
RECOMMENDED_MAX_MICRO_LAMPORTS = 50_000
RECOMMENDED_PERCENTILE = 0.8
RECOMMENDED_MIN_SAMPLES = 8
RECOMMENDED_COMPUTE_UNIT_LIMIT = 600_000


def floor_to_granularity(value: float, granularity: int) -> int:
    if granularity <= 0:
        return int(math.floor(value))
    return int(math.floor(value / granularity)) * granularity


def priority_fee_levels(
    base: int,
    ceiling: int,
    *,
    granularity: int = DEFAULT_FEE_GRANULARITY,
    multiplier: float = DEFAULT_ESCALATION_MULTIPLIER,
    count: int = DEFAULT_VARIANT_COUNT,
) -> list[int]:
    """Bounded exponential escalation of priority fees (micro-lamports per CU).

    The first and the last level are floored to ``granularity``; levels in
    between are only truncated to integers. Every level is capped at
    ``ceiling``. With base=250_000, ceiling=3_000_000, granularity=1_000 the
    three levels are 250_000, 337_500 and 455_000.
    """
    cap = max(0, int(ceiling))
    steps = max(1, int(count))

    levels: list[int] = []
    current = float(min(floor_to_granularity(max(0, base), granularity), cap))
    levels.append(int(current))
    for step in range(1, steps):
        raw = current * multiplier
        if step == steps - 1:
            next_level = floor_to_granularity(raw, granularity)
        else:
            next_level = int(raw)
        current = float(min(next_level, cap))
        levels.append(int(current))
    return levels


@dataclass(slots=True, frozen=True)
class FeeSchedule:
    ceiling: int = DEFAULT_FEE_CEILING_MICRO_LAMPORTS
    granularity: int = DEFAULT_FEE_GRANULARITY
    multiplier: float = DEFAULT_ESCALATION_MULTIPLIER
    count: int = DEFAULT_VARIANT_COUNT

    def levels(self, base: int) -> list[int]:
        return priority_fee_levels(
            base,
            self.ceiling,
            granularity=self.granularity,
            multiplier=self.multiplier,
            count=self.count,
        )


@dataclass(slots=True, frozen=True)
class PriorityFeeRecommendation:
    micro_lamports: int
    compute_unit_limit: int
    source: str
    sample_size: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def recommend_from_samples(values: list[int]) -> int:
    samples = sorted(value for value in values if value >= 0)
    if len(samples) < RECOMMENDED_MIN_SAMPLES:
        return RECOMMENDED_DEFAULT_MICRO_LAMPORTS
    index = int(math.floor(RECOMMENDED_PERCENTILE * (len(samples) - 1)))
    picked = samples[index] or RECOMMENDED_DEFAULT_MICRO_LAMPORTS
    return max(RECOMMENDED_MIN_MICRO_LAMPORTS, min(RECOMMENDED_MAX_MICRO_LAMPORTS, picked))


class PriorityFeeRecommender:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        fetch_recent_fees: Callable[[], Awaitable[list[int]]],
    ) -> None:
        self._logger = logger
        self._fetch_recent_fees = fetch_recent_fees

    async def recommend(self) -> PriorityFeeRecommendation:
        try:
            values = await self._fetch_recent_fees()
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="priority_fee_recommend_fallback",
                message="Falling back to the default priority fee",
                error=str(error),
            )
            return PriorityFeeRecommendation(
                micro_lamports=RECOMMENDED_DEFAULT_MICRO_LAMPORTS,
                compute_unit_limit=RECOMMENDED_COMPUTE_UNIT_LIMIT,
                source="fallback",
                sample_size=0,
            )

        recommendation = PriorityFeeRecommendation(
            micro_lamports=recommend_from_samples(values),
            compute_unit_limit=RECOMMENDED_COMPUTE_UNIT_LIMIT,
            source="recent_fees" if len(values) >= RECOMMENDED_MIN_SAMPLES else "default",
            sample_size=len(values),
        )
        log_event(
            self._logger,
            level="info",
            event="priority_fee_recommended",
            message="Resolved base priority fee from recent prioritization fees",
            **recommendation.to_dict(),
        )
        return recommendation

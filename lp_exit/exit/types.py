from __future__ import annotations

import base64
import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from solders.transaction import VersionedTransaction

from .errors import StatusTransitionError

ProtocolName = Literal["dbc", "dammv2"]
ExitKind = Literal["claim", "withdraw"]
ItemStatus = Literal["pending", "signed", "sent", "confirmed", "error", "skipped"]

PROTOCOLS: tuple[ProtocolName, ...] = ("dbc", "dammv2")
TERMINAL_STATUSES = frozenset({"confirmed", "error", "skipped"})
_PROGRESS_RANK = {"pending": 0, "signed": 1, "sent": 2, "confirmed": 3}

MAX_PRIORITY_FEE_MICRO_LAMPORTS = 3_000_000
MIN_COMPUTE_UNIT_LIMIT = 50_000
MAX_COMPUTE_UNIT_LIMIT = 1_400_000


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def now_epoch_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def clamp_priority_fee(value: int | None, *, default: int = 250_000) -> int:
    raw = default if value is None else int(value)
    return max(0, min(raw, MAX_PRIORITY_FEE_MICRO_LAMPORTS))


def clamp_compute_unit_limit(value: int | None) -> int | None:
    if value is None or value <= 0:
        return None
    return max(MIN_COMPUTE_UNIT_LIMIT, min(int(value), MAX_COMPUTE_UNIT_LIMIT))


def clamp_slippage_bps(value: int | None) -> int | None:
    if value is None:
        return None
    return max(0, min(int(value), 10_000))


def normalize_protocols(value: Any) -> tuple[ProtocolName, ...]:
    if value is None:
        return PROTOCOLS
    if isinstance(value, str):
        raw = [part.strip().lower() for part in value.split(",")]
    else:
        raw = [str(part).strip().lower() for part in value]
    selected = [name for name in PROTOCOLS if name in raw]
    return tuple(selected)


@dataclass(slots=True, frozen=True)
class DraftTransaction:
    serialized: str
    last_valid_block_height: int

    def to_versioned(self) -> VersionedTransaction:
        return VersionedTransaction.from_bytes(base64.b64decode(self.serialized))

    @classmethod
    def from_versioned(cls, tx: VersionedTransaction, *, last_valid_block_height: int) -> "DraftTransaction":
        return cls(
            serialized=base64.b64encode(bytes(tx)).decode("ascii"),
            last_valid_block_height=last_valid_block_height,
        )


@dataclass(slots=True, frozen=True)
class PriorityVariant:
    draft: DraftTransaction
    fee_level: int | None

    @property
    def last_valid_block_height(self) -> int:
        return self.draft.last_valid_block_height


@dataclass(slots=True, frozen=True)
class ExitTask:
    protocol: ProtocolName
    kind: ExitKind
    pool: str
    draft: DraftTransaction
    fee_vault: str | None = None
    position: str | None = None
    variants: tuple[PriorityVariant, ...] = ()

    def attempts(self) -> tuple[PriorityVariant, ...]:
        """Fee variants to try in order; the primary draft when none were built."""
        if self.variants:
            return self.variants
        return (PriorityVariant(draft=self.draft, fee_level=None),)

    def summary(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol,
            "kind": self.kind,
            "pool": self.pool,
            "fee_vault": self.fee_vault,
            "position": self.position,
            "last_valid_block_height": self.draft.last_valid_block_height,
            "fee_levels": [variant.fee_level for variant in self.variants],
        }


@dataclass(slots=True)
class ExitItem:
    task: ExitTask
    status: ItemStatus = "pending"
    signature: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def reached(self, status: ItemStatus) -> bool:
        if self.status == "confirmed":
            return status in _PROGRESS_RANK
        if self.status in TERMINAL_STATUSES:
            return False
        return _PROGRESS_RANK[self.status] >= _PROGRESS_RANK[status]

    def advance(
        self,
        status: ItemStatus,
        *,
        signature: str | None = None,
        error: str | None = None,
    ) -> None:
        if self.status in TERMINAL_STATUSES:
            raise StatusTransitionError(f"item is already {self.status}; cannot move to {status}")

        if status in {"error", "skipped"}:
            self.status = status
            self.error = error or self.error or status
            return

        if _PROGRESS_RANK[status] < _PROGRESS_RANK[self.status]:
            raise StatusTransitionError(f"status regression {self.status} -> {status}")

        self.status = status
        if signature is not None:
            self.signature = signature

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.task.summary(),
            "status": self.status,
            "signature": self.signature,
            "error": self.error,
        }


@dataclass(slots=True)
class OrchestratorState:
    items: list[ExitItem] = field(default_factory=list)
    planning: bool = False
    running: bool = False
    current_index: int = 0
    started_at: int | None = None
    finished_at: int | None = None
    error: str | None = None

    @property
    def active(self) -> bool:
        return self.planning or self.running

    def snapshot(self) -> "OrchestratorState":
        return copy.deepcopy(self)

    def counts(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for item in self.items:
            totals[item.status] = totals.get(item.status, 0) + 1
        return totals

    def to_dict(self) -> dict[str, Any]:
        return {
            "planning": self.planning,
            "running": self.running,
            "current_index": self.current_index,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "counts": self.counts(),
            "items": [item.to_dict() for item in self.items],
        }


@dataclass(slots=True, frozen=True)
class ExitRunOptions:
    fee_level_base: int | None = None
    compute_unit_ceiling: int | None = None
    protocols_enabled: tuple[ProtocolName, ...] = PROTOCOLS
    slippage_bps: int | None = None
    withdraw_percent: int = 100

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class PositionCandidate:
    """One exit the discovery step found; ``keys`` carries protocol-specific pool keys."""

    protocol: ProtocolName
    kind: ExitKind
    pool: str
    fee_vault: str | None = None
    position: str | None = None
    keys: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class BuildParams:
    owner: str
    fee_level: int
    compute_unit_ceiling: int | None = None
    slippage_bps: int | None = None
    withdraw_percent: int = 100

from __future__ import annotations

import os
from dataclasses import dataclass

from lp_exit.exit.fees import (
    DEFAULT_ESCALATION_MULTIPLIER,
    DEFAULT_FEE_CEILING_MICRO_LAMPORTS,
    DEFAULT_FEE_GRANULARITY,
    DEFAULT_VARIANT_COUNT,
    FeeSchedule,
)
from lp_exit.exit.orchestrator import ExitConfig
from lp_exit.exit.rpc import normalize_commitment
from lp_exit.exit.types import (
    MAX_PRIORITY_FEE_MICRO_LAMPORTS,
    ExitRunOptions,
    ProtocolName,
    clamp_compute_unit_limit,
    clamp_slippage_bps,
    normalize_protocols,
    to_bool,
    to_float,
    to_int,
)
from lp_exit.protocols.dbc_builder import DEFAULT_DBC_PROGRAM_ID, PLACEHOLDER_CLAIM_DISCRIMINATOR


def normalize_build_mode(value: str) -> str:
    mode = (value or "").strip().lower()
    if mode in {"remote", "local"}:
        return mode
    return "remote"


def _optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    value = to_int(raw, -1)
    return value if value >= 0 else None


def _split_csv(value: str | None) -> tuple[str, ...]:
    return tuple(part.strip() for part in (value or "").split(",") if part.strip())


@dataclass(slots=True)
class AppSettings:
    solana_rpc_url: str
    private_key: str
    owner_pubkey: str
    exit_api_base_url: str
    exit_api_health_path: str
    dbc_discover_path: str
    dbc_exit_path: str
    dammv2_discover_path: str
    dammv2_exit_path: str
    dbc_build_mode: str
    dbc_program_id: str
    allowed_dbc_program_ids: tuple[str, ...]
    dbc_claim_fee_discriminator: str
    allow_placeholder_dbc: bool
    protocols_enabled: tuple[ProtocolName, ...]
    priority_fee_base_micro_lamports: int | None
    priority_fee_ceiling_micro_lamports: int
    priority_fee_granularity: int
    priority_fee_multiplier: float
    priority_fee_variants: int
    compute_unit_limit: int | None
    slippage_bps: int | None
    withdraw_percent: int
    confirm_commitment: str
    confirm_timeout_seconds: float
    confirm_poll_interval_seconds: float
    http_timeout_seconds: float
    variant_retry_backoff_seconds: float

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", "").strip(),
            private_key=os.getenv("PRIVATE_KEY", ""),
            owner_pubkey=os.getenv("OWNER_PUBKEY", "").strip(),
            exit_api_base_url=os.getenv("EXIT_API_BASE_URL", "http://localhost:3000").strip(),
            exit_api_health_path=os.getenv("EXIT_API_HEALTH_PATH", "/api/health").strip(),
            dbc_discover_path=os.getenv("DBC_DISCOVER_PATH", "/api/dbc-discover").strip(),
            dbc_exit_path=os.getenv("DBC_EXIT_PATH", "/api/dbc-exit").strip(),
            dammv2_discover_path=os.getenv("DAMMV2_DISCOVER_PATH", "/api/dammv2-discover").strip(),
            dammv2_exit_path=os.getenv("DAMMV2_EXIT_PATH", "/api/dammv2-exit").strip(),
            dbc_build_mode=normalize_build_mode(os.getenv("DBC_BUILD_MODE", "remote")),
            dbc_program_id=os.getenv("DBC_PROGRAM_ID", DEFAULT_DBC_PROGRAM_ID).strip(),
            allowed_dbc_program_ids=_split_csv(os.getenv("ALLOWED_DBC_PROGRAM_IDS")),
            dbc_claim_fee_discriminator=os.getenv(
                "DBC_CLAIM_FEE_DISCRIMINATOR",
                PLACEHOLDER_CLAIM_DISCRIMINATOR,
            ).strip(),
            allow_placeholder_dbc=to_bool(os.getenv("ALLOW_PLACEHOLDER_DBC"), False),
            protocols_enabled=normalize_protocols(os.getenv("PROTOCOLS_ENABLED")),
            priority_fee_base_micro_lamports=_optional_int("PRIORITY_FEE_BASE_MICRO_LAMPORTS"),
            priority_fee_ceiling_micro_lamports=max(
                0,
                min(
                    MAX_PRIORITY_FEE_MICRO_LAMPORTS,
                    to_int(
                        os.getenv("PRIORITY_FEE_CEILING_MICRO_LAMPORTS"),
                        DEFAULT_FEE_CEILING_MICRO_LAMPORTS,
                    ),
                ),
            ),
            priority_fee_granularity=max(0, to_int(os.getenv("PRIORITY_FEE_GRANULARITY"), DEFAULT_FEE_GRANULARITY)),
            priority_fee_multiplier=max(
                1.0,
                to_float(os.getenv("PRIORITY_FEE_MULTIPLIER"), DEFAULT_ESCALATION_MULTIPLIER),
            ),
            priority_fee_variants=max(1, min(10, to_int(os.getenv("PRIORITY_FEE_VARIANTS"), DEFAULT_VARIANT_COUNT))),
            compute_unit_limit=clamp_compute_unit_limit(_optional_int("COMPUTE_UNIT_LIMIT")),
            slippage_bps=clamp_slippage_bps(to_int(os.getenv("SLIPPAGE_BPS"), 50)),
            withdraw_percent=max(1, min(100, to_int(os.getenv("WITHDRAW_PERCENT"), 100))),
            confirm_commitment=normalize_commitment(os.getenv("CONFIRM_COMMITMENT", "confirmed")),
            confirm_timeout_seconds=max(5.0, to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 60.0)),
            confirm_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            http_timeout_seconds=max(1.0, to_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 15.0)),
            variant_retry_backoff_seconds=max(
                0.0,
                to_float(os.getenv("VARIANT_RETRY_BACKOFF_SECONDS"), 1.0),
            ),
        )

    def fee_schedule(self) -> FeeSchedule:
        return FeeSchedule(
            ceiling=self.priority_fee_ceiling_micro_lamports,
            granularity=self.priority_fee_granularity,
            multiplier=self.priority_fee_multiplier,
            count=self.priority_fee_variants,
        )

    def exit_config(self) -> ExitConfig:
        return ExitConfig(
            fee_schedule=self.fee_schedule(),
            commitment=self.confirm_commitment,
            confirm_timeout_seconds=self.confirm_timeout_seconds,
            confirm_poll_interval_seconds=self.confirm_poll_interval_seconds,
            variant_backoff_seconds=self.variant_retry_backoff_seconds,
        )

    def run_options(self) -> ExitRunOptions:
        return ExitRunOptions(
            fee_level_base=self.priority_fee_base_micro_lamports,
            compute_unit_ceiling=self.compute_unit_limit,
            protocols_enabled=self.protocols_enabled,
            slippage_bps=self.slippage_bps,
            withdraw_percent=self.withdraw_percent,
        )

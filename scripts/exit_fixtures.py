from __future__ import annotations

from typing import Any, Callable

from solders.compute_budget import set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from lp_exit.common import CancellationToken
from lp_exit.exit.errors import DiscoveryError, TransactionBuildError
from lp_exit.exit.types import BuildParams, DraftTransaction, PositionCandidate

MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnbCyonuNFJXXBSPc6SHJcqbp2")


def make_unsigned_tx(
    payer: Pubkey,
    *,
    fee_level: int = 0,
    extra_signers: tuple[Pubkey, ...] = (),
    memo: bytes = b"exit",
) -> VersionedTransaction:
    instructions = [set_compute_unit_price(fee_level)]
    metas = [AccountMeta(pubkey=payer, is_signer=True, is_writable=True)]
    metas.extend(AccountMeta(pubkey=key, is_signer=True, is_writable=False) for key in extra_signers)
    instructions.append(Instruction(MEMO_PROGRAM_ID, memo, metas))
    message = MessageV0.try_compile(payer, instructions, [], Hash.default())
    return VersionedTransaction.populate(message, [Signature.default()] * message.header.num_required_signatures)


def make_draft(
    payer: Pubkey,
    *,
    fee_level: int = 0,
    last_valid_block_height: int = 1_000,
    extra_signers: tuple[Pubkey, ...] = (),
    memo: bytes = b"exit",
) -> DraftTransaction:
    tx = make_unsigned_tx(payer, fee_level=fee_level, extra_signers=extra_signers, memo=memo)
    return DraftTransaction.from_versioned(tx, last_valid_block_height=last_valid_block_height)


def dbc_candidate(pool: str, fee_vault: str = "vault") -> PositionCandidate:
    return PositionCandidate(protocol="dbc", kind="claim", pool=pool, fee_vault=fee_vault)


def dammv2_candidate(pool: str, position: str = "position") -> PositionCandidate:
    return PositionCandidate(protocol="dammv2", kind="withdraw", pool=pool, position=position)


class FakeAdapter:
    """In-memory protocol adapter; builds real unsigned drafts for the owner."""

    def __init__(
        self,
        name: str,
        *,
        candidates: list[PositionCandidate] | None = None,
        discover_error: Exception | None = None,
        build_errors: dict[tuple[str, int], Exception] | None = None,
        extra_signers: dict[str, tuple[Pubkey, ...]] | None = None,
        draft_factory: Callable[[PositionCandidate, BuildParams], DraftTransaction] | None = None,
        healthy: bool = True,
    ) -> None:
        self._name = name
        self._candidates = candidates or []
        self._discover_error = discover_error
        self._build_errors = build_errors or {}
        self._extra_signers = extra_signers or {}
        self._draft_factory = draft_factory
        self._healthy = healthy
        self.build_calls: list[tuple[str, int]] = []
        self.discover_calls = 0
        self.health_calls = 0

    @property
    def name(self) -> Any:
        return self._name

    async def discover(self, owner: str, *, cancel_token: CancellationToken) -> list[PositionCandidate]:
        self.discover_calls += 1
        if self._discover_error is not None:
            raise self._discover_error
        return list(self._candidates)

    async def build(
        self,
        candidate: PositionCandidate,
        params: BuildParams,
        *,
        cancel_token: CancellationToken,
    ) -> DraftTransaction:
        self.build_calls.append((candidate.pool, params.fee_level))
        error = self._build_errors.get((candidate.pool, params.fee_level))
        if error is not None:
            raise error
        if self._draft_factory is not None:
            return self._draft_factory(candidate, params)
        return make_draft(
            Pubkey.from_string(params.owner),
            fee_level=params.fee_level,
            extra_signers=self._extra_signers.get(candidate.pool, ()),
            memo=f"{candidate.protocol}:{candidate.pool}".encode(),
        )

    async def healthcheck(self) -> None:
        self.health_calls += 1
        if not self._healthy:
            raise RuntimeError(f"{self._name} back-end is down")


def discovery_error(protocol: str) -> DiscoveryError:
    return DiscoveryError("discovery endpoint returned 500", protocol=protocol)


def build_error(protocol: str, pool: str) -> TransactionBuildError:
    return TransactionBuildError("no claimable fees", protocol=protocol, pool=pool)


def memo_of(tx: VersionedTransaction) -> str:
    return bytes(tx.message.instructions[-1].data).decode()


class FakeLedger:
    """Ledger double: records sends and scripts confirmation outcomes per memo."""

    def __init__(self, outcomes: dict[str, list[Exception | None]] | None = None) -> None:
        self._outcomes = {key: list(value) for key, value in (outcomes or {}).items()}
        self._memo_by_signature: dict[str, str] = {}
        self.sent: list[VersionedTransaction] = []

    async def send_raw_transaction(self, signed_tx: bytes, *, skip_preflight: bool = False) -> str:
        tx = VersionedTransaction.from_bytes(signed_tx)
        self.sent.append(tx)
        signature = f"sig-{len(self.sent)}"
        self._memo_by_signature[signature] = memo_of(tx)
        return signature

    async def wait_for_confirmation(self, *, signature: str, **_: Any) -> dict[str, Any]:
        queue = self._outcomes.get(self._memo_by_signature[signature], [])
        outcome = queue.pop(0) if queue else None
        if outcome is not None:
            raise outcome
        return {"confirmationStatus": "confirmed", "err": None}

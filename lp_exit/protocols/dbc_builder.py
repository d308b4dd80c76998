from __future__ import annotations

import logging

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import VersionedTransaction

from lp_exit.common import log_event
from lp_exit.exit.errors import TransactionBuildError
from lp_exit.exit.rpc import LedgerRpcClient
from lp_exit.exit.types import DraftTransaction, clamp_compute_unit_limit, clamp_priority_fee

DEFAULT_DBC_PROGRAM_ID = "dbcij3LWUppWqq96dh6gJWwBifmcGfLSB5D4DuSMaqN"
PLACEHOLDER_CLAIM_DISCRIMINATOR = "0102030405060708"

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b9hvZbsiqW5xWH25efTNsLJA8knL")

_MIN_TOKEN_ACCOUNT_DATA = 64


def parse_discriminator(raw: str) -> bytes:
    value = raw.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    if len(value) != 16:
        raise ValueError("DBC_CLAIM_FEE_DISCRIMINATOR must be 8 bytes (16 hex chars)")
    return bytes.fromhex(value)


def associated_token_address(owner: Pubkey, mint: Pubkey, *, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def create_associated_token_account_idempotent(
    *,
    payer: Pubkey,
    associated_account: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        bytes([1]),
        [
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(associated_account, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(token_program, is_signer=False, is_writable=False),
        ],
    )


class DbcClaimBuilder:
    """Composes unsigned DBC fee-claim transactions without the remote build endpoint."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: LedgerRpcClient,
        program_id: str = DEFAULT_DBC_PROGRAM_ID,
        allowed_program_ids: tuple[str, ...] = (),
        claim_discriminator: str = PLACEHOLDER_CLAIM_DISCRIMINATOR,
        allow_placeholder: bool = False,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._program_id = Pubkey.from_string(program_id)
        self._allowed_program_ids = tuple(allowed_program_ids)
        self._discriminator = parse_discriminator(claim_discriminator)
        self._uses_placeholder = self._discriminator == bytes.fromhex(PLACEHOLDER_CLAIM_DISCRIMINATOR)
        self._allow_placeholder = allow_placeholder
        self._placeholder_warned = False

    def _fail(self, message: str, pool: str | None) -> TransactionBuildError:
        return TransactionBuildError(message, protocol="dbc", pool=pool)

    def _check_program(self, pool: str) -> None:
        if self._allowed_program_ids and str(self._program_id) not in self._allowed_program_ids:
            raise self._fail(f"DBC program {self._program_id} not in ALLOWED_DBC_PROGRAM_IDS", pool)

        if not self._uses_placeholder:
            return
        if not self._allow_placeholder:
            raise self._fail(
                "DBC placeholder discriminator in use. Set DBC_CLAIM_FEE_DISCRIMINATOR "
                "(8-byte hex) or ALLOW_PLACEHOLDER_DBC=true to override.",
                pool,
            )
        if not self._placeholder_warned:
            self._placeholder_warned = True
            log_event(
                self._logger,
                level="warning",
                event="dbc_placeholder_discriminator",
                message="Using the placeholder DBC claim discriminator",
                program_id=str(self._program_id),
            )

    def claim_instruction(self, *, pool: Pubkey, fee_vault: Pubkey, owner: Pubkey, user_token_account: Pubkey) -> Instruction:
        return Instruction(
            self._program_id,
            self._discriminator,
            [
                AccountMeta(pool, is_signer=False, is_writable=True),
                AccountMeta(fee_vault, is_signer=False, is_writable=True),
                AccountMeta(owner, is_signer=True, is_writable=False),
                AccountMeta(user_token_account, is_signer=False, is_writable=True),
                AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )

    async def build_claim(
        self,
        *,
        owner: str,
        pool: str,
        fee_vault: str,
        action: str = "claim",
        priority_micro_lamports: int | None = None,
        compute_unit_limit: int | None = None,
    ) -> DraftTransaction:
        action = (action or "claim").strip().lower()
        if action == "withdraw":
            raise self._fail("DBC withdraw (liquidity removal) is not implemented.", pool)
        if action != "claim":
            raise self._fail(f"Unsupported DBC exit action: {action}", pool)
        if not owner or not pool or not fee_vault:
            raise self._fail("owner, pool and fee vault are required", pool)
        self._check_program(pool)

        try:
            owner_key = Pubkey.from_string(owner)
            pool_key = Pubkey.from_string(pool)
            fee_vault_key = Pubkey.from_string(fee_vault)
        except ValueError as error:
            raise self._fail(f"Invalid DBC key: {error}", pool) from error

        vault_data = await self._rpc.get_account_data(fee_vault)
        if vault_data is None:
            raise self._fail("Fee vault not found", pool)
        if len(vault_data) < _MIN_TOKEN_ACCOUNT_DATA:
            raise self._fail("Fee vault data too small for SPL token account", pool)
        if await self._rpc.get_token_account_balance(fee_vault) <= 0:
            raise self._fail("No claimable fees in fee vault", pool)

        mint = Pubkey.from_bytes(vault_data[0:32])
        user_token_account = associated_token_address(owner_key, mint)

        priority = clamp_priority_fee(priority_micro_lamports)
        cu_limit = clamp_compute_unit_limit(compute_unit_limit)

        instructions: list[Instruction] = []
        if priority > 0:
            instructions.append(set_compute_unit_price(priority))
        if cu_limit is not None:
            instructions.append(set_compute_unit_limit(cu_limit))
        instructions.append(
            create_associated_token_account_idempotent(
                payer=owner_key,
                associated_account=user_token_account,
                owner=owner_key,
                mint=mint,
            )
        )
        instructions.append(
            self.claim_instruction(
                pool=pool_key,
                fee_vault=fee_vault_key,
                owner=owner_key,
                user_token_account=user_token_account,
            )
        )

        blockhash, last_valid_block_height = await self._rpc.get_latest_blockhash(commitment="confirmed")
        message = MessageV0.try_compile(owner_key, instructions, [], Hash.from_string(blockhash))
        unsigned = VersionedTransaction.populate(
            message,
            [Signature.default()] * message.header.num_required_signatures,
        )
        draft = DraftTransaction.from_versioned(unsigned, last_valid_block_height=last_valid_block_height)

        log_event(
            self._logger,
            level="debug",
            event="dbc_claim_built",
            message="Built DBC claim transaction locally",
            pool=pool,
            fee_vault=fee_vault,
            priority_micro_lamports=priority,
            compute_unit_limit=cu_limit,
            last_valid_block_height=last_valid_block_height,
        )
        return draft

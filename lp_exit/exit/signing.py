from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Literal

from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from lp_exit.common import CancellationToken, FallbackExhaustedError, error_message, log_event, try_in_order

from .errors import SignerValidationError, SigningError

SignOne = Callable[[VersionedTransaction], Awaitable[VersionedTransaction]]
SignAll = Callable[[list[VersionedTransaction]], Awaitable[list[VersionedTransaction]]]
SigningPath = Literal["bulk", "sequential"]

_DEFAULT_SIGNATURE = Signature.default()


@dataclass(slots=True, frozen=True)
class WalletSigner:
    """Explicit signing capabilities of a wallet; either callable may be absent."""

    pubkey: Pubkey
    sign_one: SignOne | None = None
    sign_all: SignAll | None = None


@dataclass(slots=True, frozen=True)
class SigningResult:
    signed: list[VersionedTransaction]
    errors: list[str | None]
    used_bulk: bool

    @property
    def failed_count(self) -> int:
        return sum(1 for error in self.errors if error is not None)


def parse_private_key(raw: str) -> Keypair:
    value = raw.strip()
    if not value:
        raise ValueError("PRIVATE_KEY is empty.")

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    with contextlib.suppress(Exception):
        return Keypair.from_base58_string(value)

    raise ValueError("Unsupported PRIVATE_KEY format.")


class KeypairSigner:
    """Local signer that fills only its own slot among the required signatures."""

    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair

    @classmethod
    def from_private_key(cls, raw: str) -> "KeypairSigner":
        return cls(parse_private_key(raw))

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    async def sign_transaction(self, tx: VersionedTransaction) -> VersionedTransaction:
        message = tx.message
        required = list(message.account_keys[: message.header.num_required_signatures])
        try:
            index = required.index(self.pubkey)
        except ValueError as error:
            raise SigningError(f"{self.pubkey} is not a required signer of this transaction") from error

        signatures = list(tx.signatures)
        if len(signatures) < len(required):
            signatures.extend([_DEFAULT_SIGNATURE] * (len(required) - len(signatures)))
        signatures[index] = self._keypair.sign_message(to_bytes_versioned(message))
        return VersionedTransaction.populate(message, signatures)

    async def sign_all_transactions(self, txs: list[VersionedTransaction]) -> list[VersionedTransaction]:
        return [await self.sign_transaction(tx) for tx in txs]

    def as_wallet_signer(self) -> WalletSigner:
        return WalletSigner(
            pubkey=self.pubkey,
            sign_one=self.sign_transaction,
            sign_all=self.sign_all_transactions,
        )


def required_signers(tx: VersionedTransaction) -> list[Pubkey]:
    message = tx.message
    return list(message.account_keys[: message.header.num_required_signatures])


def unsigned_required_signers(tx: VersionedTransaction) -> list[Pubkey]:
    signatures = list(tx.signatures)
    unsigned: list[Pubkey] = []
    for index, signer in enumerate(required_signers(tx)):
        if index >= len(signatures) or signatures[index] == _DEFAULT_SIGNATURE:
            unsigned.append(signer)
    return unsigned


def assert_only_allowed_unsigned_signers(tx: VersionedTransaction, allowed: Iterable[Pubkey]) -> None:
    """Raise when a signer other than ``allowed`` still owes a signature.

    Catches drafts whose auxiliary keypairs (a fresh mint, a position NFT)
    were never partial-signed, before any wallet prompt is shown.
    """
    allow_set = {str(key) for key in allowed}
    unexpected = [str(key) for key in unsigned_required_signers(tx) if str(key) not in allow_set]
    if unexpected:
        raise SignerValidationError(
            f"Unknown / disallowed unsigned signer(s) remaining in tx: {', '.join(unexpected)}. "
            "A local keypair was probably not partial-signed before requesting the wallet signature.",
            unexpected_signers=unexpected,
        )


def validate_signer_sets(
    txs: Iterable[VersionedTransaction],
    allowed: Iterable[Pubkey],
    *,
    continue_on_error: bool = False,
) -> list[str | None]:
    allowed_keys = list(allowed)
    errors: list[str | None] = []
    for tx in txs:
        try:
            assert_only_allowed_unsigned_signers(tx, allowed_keys)
            errors.append(None)
        except SignerValidationError as error:
            if not continue_on_error:
                raise
            errors.append(str(error))
    return errors


async def sign_transactions_adaptive(
    signer: WalletSigner,
    txs: list[VersionedTransaction],
    *,
    logger: logging.Logger | None = None,
    cancel_token: CancellationToken | None = None,
) -> SigningResult:
    """Sign ``txs`` in one bulk call when possible, else one at a time.

    The bulk path is never mixed with the sequential one mid-list: if it is
    missing, raises or returns the wrong number of transactions, every
    transaction is re-signed sequentially. Sequential failures are recorded
    per slot and the unsigned draft keeps its position.
    """
    if not txs:
        return SigningResult(signed=[], errors=[], used_bulk=False)

    async def attempt(path: SigningPath) -> SigningResult:
        if path == "bulk":
            return await _sign_bulk(signer, txs)
        return await _sign_sequential(signer, txs, cancel_token=cancel_token)

    def on_failure(failure) -> None:
        if logger is not None:
            log_event(
                logger,
                level="info",
                event="exit_bulk_sign_unavailable",
                message="Bulk signing unavailable; signing sequentially",
                reason=error_message(failure.error),
                tx_count=len(txs),
            )

    paths: list[SigningPath] = ["bulk", "sequential"] if signer.sign_all is not None else ["sequential"]
    try:
        outcome = await try_in_order(attempt, paths, on_failure=on_failure)
    except FallbackExhaustedError as error:
        raise SigningError(str(error)) from error
    return outcome.value


async def _sign_bulk(signer: WalletSigner, txs: list[VersionedTransaction]) -> SigningResult:
    if signer.sign_all is None:
        raise SigningError("bulk signing is not supported by this wallet")
    signed = await signer.sign_all(list(txs))
    if not isinstance(signed, list) or len(signed) != len(txs):
        raise SigningError(
            f"bulk signing returned {len(signed) if isinstance(signed, list) else 'no'} "
            f"transactions for {len(txs)} inputs"
        )
    return SigningResult(signed=list(signed), errors=[None] * len(txs), used_bulk=True)


async def _sign_sequential(
    signer: WalletSigner,
    txs: list[VersionedTransaction],
    *,
    cancel_token: CancellationToken | None,
) -> SigningResult:
    signed: list[VersionedTransaction] = []
    errors: list[str | None] = []
    for tx in txs:
        if cancel_token is not None and cancel_token.cancelled:
            signed.append(tx)
            errors.append("aborted")
            continue
        try:
            if signer.sign_one is None:
                raise SigningError("signTransaction not supported by wallet")
            signed.append(await signer.sign_one(tx))
            errors.append(None)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            signed.append(tx)
            errors.append(error_message(error, fallback="sign failed"))
    return SigningResult(signed=signed, errors=errors, used_bulk=False)


async def sign_single(signer: WalletSigner, tx: VersionedTransaction) -> VersionedTransaction:
    """Sign one transaction, preferring a bulk call of one over the direct call."""
    if signer.sign_all is not None:
        try:
            signed = await signer.sign_all([tx])
            if isinstance(signed, list) and len(signed) == 1 and isinstance(signed[0], VersionedTransaction):
                return signed[0]
        except asyncio.CancelledError:
            raise
        except Exception:
            if signer.sign_one is None:
                raise
    if signer.sign_one is None:
        raise SigningError("wallet exposes no usable signing capability")
    return await signer.sign_one(tx)

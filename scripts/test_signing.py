from __future__ import annotations

import json
import logging
import unittest
from unittest.mock import AsyncMock

from solders.keypair import Keypair
from solders.signature import Signature

from exit_fixtures import make_unsigned_tx
from lp_exit.exit.errors import SignerValidationError, SigningError
from lp_exit.exit.signing import (
    KeypairSigner,
    WalletSigner,
    assert_only_allowed_unsigned_signers,
    parse_private_key,
    sign_single,
    sign_transactions_adaptive,
    unsigned_required_signers,
    validate_signer_sets,
)


class KeypairSignerTests(unittest.IsolatedAsyncioTestCase):
    async def test_fills_only_its_own_signature_slot(self) -> None:
        owner = Keypair()
        partner = Keypair()
        tx = make_unsigned_tx(owner.pubkey(), extra_signers=(partner.pubkey(),))

        signed = await KeypairSigner(owner).sign_transaction(tx)

        self.assertNotEqual(signed.signatures[0], Signature.default())
        self.assertEqual(signed.signatures[1], Signature.default())
        self.assertEqual(unsigned_required_signers(signed), [partner.pubkey()])

    async def test_rejects_transaction_it_does_not_sign_for(self) -> None:
        tx = make_unsigned_tx(Keypair().pubkey())
        with self.assertRaises(SigningError):
            await KeypairSigner(Keypair()).sign_transaction(tx)

    def test_parse_private_key_accepts_base58_and_json_array(self) -> None:
        keypair = Keypair()
        self.assertEqual(parse_private_key(str(keypair)).pubkey(), keypair.pubkey())
        self.assertEqual(parse_private_key(json.dumps(list(bytes(keypair)))).pubkey(), keypair.pubkey())


class SignerValidationTests(unittest.TestCase):
    def test_owner_only_transactions_pass(self) -> None:
        owner = Keypair().pubkey()
        assert_only_allowed_unsigned_signers(make_unsigned_tx(owner), [owner])

    def test_unexpected_signer_is_named(self) -> None:
        owner = Keypair().pubkey()
        stray = Keypair().pubkey()
        with self.assertRaises(SignerValidationError) as ctx:
            assert_only_allowed_unsigned_signers(make_unsigned_tx(owner, extra_signers=(stray,)), [owner])
        self.assertEqual(ctx.exception.unexpected_signers, [str(stray)])
        self.assertIn(str(stray), str(ctx.exception))

    def test_batch_validation_can_collect_errors(self) -> None:
        owner = Keypair().pubkey()
        stray = Keypair().pubkey()
        txs = [make_unsigned_tx(owner), make_unsigned_tx(owner, extra_signers=(stray,))]

        errors = validate_signer_sets(txs, [owner], continue_on_error=True)

        self.assertIsNone(errors[0])
        self.assertIn(str(stray), errors[1] or "")
        with self.assertRaises(SignerValidationError):
            validate_signer_sets(txs, [owner])


class AdaptiveSigningTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.owner = Keypair()
        self.keypair_signer = KeypairSigner(self.owner)
        self.txs = [make_unsigned_tx(self.owner.pubkey(), fee_level=level) for level in (1, 2, 3)]
        self.logger = logging.getLogger("test.signing")

    async def test_empty_input_never_calls_signer(self) -> None:
        sign_all = AsyncMock()
        result = await sign_transactions_adaptive(WalletSigner(pubkey=self.owner.pubkey(), sign_all=sign_all), [])
        self.assertEqual(result.signed, [])
        sign_all.assert_not_awaited()

    async def test_bulk_path_used_when_available(self) -> None:
        signer = self.keypair_signer.as_wallet_signer()
        result = await sign_transactions_adaptive(signer, self.txs, logger=self.logger)
        self.assertTrue(result.used_bulk)
        self.assertEqual(result.errors, [None, None, None])

    async def test_bulk_failure_falls_back_to_sequential_in_order(self) -> None:
        signer = WalletSigner(
            pubkey=self.owner.pubkey(),
            sign_all=AsyncMock(side_effect=RuntimeError("user rejected bulk")),
            sign_one=self.keypair_signer.sign_transaction,
        )

        result = await sign_transactions_adaptive(signer, self.txs, logger=self.logger)

        self.assertFalse(result.used_bulk)
        self.assertEqual(len(result.signed), 3)
        for original, signed in zip(self.txs, result.signed):
            self.assertEqual(original.message, signed.message)
            self.assertNotEqual(signed.signatures[0], Signature.default())

    async def test_bulk_length_mismatch_falls_back(self) -> None:
        signer = WalletSigner(
            pubkey=self.owner.pubkey(),
            sign_all=AsyncMock(return_value=[self.txs[0]]),
            sign_one=self.keypair_signer.sign_transaction,
        )
        result = await sign_transactions_adaptive(signer, self.txs)
        self.assertFalse(result.used_bulk)
        self.assertEqual(result.failed_count, 0)

    async def test_sequential_failure_keeps_unsigned_draft_in_slot(self) -> None:
        calls = {"count": 0}

        async def flaky_sign(tx):
            calls["count"] += 1
            if calls["count"] == 2:
                raise RuntimeError("device disconnected")
            return await self.keypair_signer.sign_transaction(tx)

        signer = WalletSigner(pubkey=self.owner.pubkey(), sign_one=flaky_sign)
        result = await sign_transactions_adaptive(signer, self.txs)

        self.assertEqual(result.errors[0], None)
        self.assertEqual(result.errors[1], "device disconnected")
        self.assertEqual(result.errors[2], None)
        self.assertIs(result.signed[1], self.txs[1])

    async def test_sign_single_prefers_bulk_of_one(self) -> None:
        signed_tx = await self.keypair_signer.sign_transaction(self.txs[0])
        sign_all = AsyncMock(return_value=[signed_tx])
        sign_one = AsyncMock()
        signer = WalletSigner(pubkey=self.owner.pubkey(), sign_all=sign_all, sign_one=sign_one)

        result = await sign_single(signer, self.txs[0])

        self.assertIs(result, signed_tx)
        sign_one.assert_not_awaited()

    async def test_sign_single_falls_back_to_direct_call(self) -> None:
        signer = WalletSigner(
            pubkey=self.owner.pubkey(),
            sign_all=AsyncMock(side_effect=RuntimeError("unsupported")),
            sign_one=self.keypair_signer.sign_transaction,
        )
        result = await sign_single(signer, self.txs[0])
        self.assertNotEqual(result.signatures[0], Signature.default())


if __name__ == "__main__":
    unittest.main()

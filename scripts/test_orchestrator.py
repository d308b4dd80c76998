from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock

from solders.keypair import Keypair

from exit_fixtures import (
    FakeAdapter,
    FakeLedger,
    dammv2_candidate,
    dbc_candidate,
    discovery_error,
    memo_of,
)
from lp_exit.exit.errors import (
    BlockHeightExceededError,
    ConfirmationError,
    RunInProgressError,
    SignerValidationError,
    SigningError,
)
from lp_exit.exit.fees import FeeSchedule
from lp_exit.exit.orchestrator import ExitConfig, ExitOrchestrator
from lp_exit.exit.signing import KeypairSigner, WalletSigner
from lp_exit.exit.types import ExitRunOptions

_RANK = {"pending": 0, "signed": 1, "sent": 2, "confirmed": 3, "error": 4, "skipped": 4}


class ExitOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.logger = logging.getLogger("test.orchestrator")
        self.owner = Keypair()
        self.keypair_signer = KeypairSigner(self.owner)
        self.sign_all = AsyncMock(side_effect=self.keypair_signer.sign_all_transactions)
        self.signer = WalletSigner(
            pubkey=self.owner.pubkey(),
            sign_all=self.sign_all,
            sign_one=self.keypair_signer.sign_transaction,
        )
        self.options = ExitRunOptions(fee_level_base=250_000)

    def _orchestrator(self, adapters, ledger: FakeLedger) -> ExitOrchestrator:
        return ExitOrchestrator(
            logger=self.logger,
            adapters=adapters,
            rpc=ledger,  # type: ignore[arg-type]
            signer=self.signer,
            config=ExitConfig(fee_schedule=FeeSchedule(), variant_backoff_seconds=0.0),
        )

    async def test_empty_discovery_finishes_without_error(self) -> None:
        orchestrator = self._orchestrator([FakeAdapter("dbc"), FakeAdapter("dammv2")], FakeLedger())

        state = await orchestrator.run(self.options)

        self.assertEqual(state.items, [])
        self.assertIsNone(state.error)
        self.assertFalse(state.active)
        self.assertIsNotNone(state.finished_at)
        self.sign_all.assert_not_awaited()

    async def test_failing_protocol_does_not_block_the_other(self) -> None:
        adapters = [
            FakeAdapter("dbc", candidates=[dbc_candidate("pool-a")]),
            FakeAdapter("dammv2", discover_error=discovery_error("dammv2")),
        ]
        ledger = FakeLedger()

        with self.assertLogs(self.logger, level="WARNING") as logs:
            state = await self._orchestrator(adapters, ledger).run(self.options)

        self.assertEqual(len(state.items), 1)
        self.assertEqual(state.items[0].status, "confirmed")
        self.assertEqual(state.items[0].signature, "sig-1")
        events = [getattr(record, "event", None) for record in logs.records]
        self.assertIn("exit_discovery_failed", events)

    async def test_signer_violation_aborts_before_any_signature(self) -> None:
        stray = Keypair().pubkey()
        adapters = [
            FakeAdapter(
                "dbc",
                candidates=[dbc_candidate("pool-a"), dbc_candidate("pool-b"), dbc_candidate("pool-c")],
                extra_signers={"pool-b": (stray,)},
            )
        ]
        ledger = FakeLedger()
        orchestrator = self._orchestrator(adapters, ledger)

        with self.assertRaises(SignerValidationError):
            await orchestrator.run(self.options)

        state = orchestrator.state
        self.sign_all.assert_not_awaited()
        self.assertEqual(ledger.sent, [])
        self.assertIn(str(stray), state.error or "")
        self.assertFalse(any(item.signature for item in state.items))
        self.assertTrue(all(item.status == "skipped" for item in state.items))

    async def test_one_exhausted_item_does_not_stop_the_rest(self) -> None:
        adapters = [
            FakeAdapter("dbc", candidates=[dbc_candidate("pool-a"), dbc_candidate("pool-b"), dbc_candidate("pool-c")])
        ]
        failure = ConfirmationError("Transaction failed on-chain", signature="x", chain_error={"InstructionError": 1})
        ledger = FakeLedger({"dbc:pool-b": [failure, failure, failure]})

        state = await self._orchestrator(adapters, ledger).run(self.options)

        self.assertEqual([item.status for item in state.items], ["confirmed", "error", "confirmed"])
        self.assertEqual(state.items[1].error, "Transaction failed on-chain")
        self.assertEqual(len(ledger.sent), 5)

    async def test_expired_variant_escalates_to_next_fee_level(self) -> None:
        adapters = [FakeAdapter("dammv2", candidates=[dammv2_candidate("pool-a")])]
        expired = BlockHeightExceededError("block height exceeded", signature="sig-1")
        ledger = FakeLedger({"dammv2:pool-a": [expired]})

        state = await self._orchestrator(adapters, ledger).run(self.options)

        item = state.items[0]
        self.assertEqual(item.status, "confirmed")
        self.assertEqual(item.signature, "sig-2")
        self.assertEqual(len(ledger.sent), 2)
        self.assertNotEqual(ledger.sent[0].message, ledger.sent[1].message)
        # one bulk call for the primaries, one bulk-of-one for the escalated variant
        self.assertEqual(self.sign_all.await_count, 2)

    async def test_item_status_never_regresses(self) -> None:
        adapters = [
            FakeAdapter("dbc", candidates=[dbc_candidate("pool-a")]),
            FakeAdapter("dammv2", candidates=[dammv2_candidate("pool-a"), dammv2_candidate("pool-b")]),
        ]
        expired = BlockHeightExceededError("expired", signature="s")
        ledger = FakeLedger({"dbc:pool-a": [expired], "dammv2:pool-b": [expired, expired, expired]})
        orchestrator = self._orchestrator(adapters, ledger)
        snapshots = []
        orchestrator.add_listener(snapshots.append)

        state = await orchestrator.run(self.options)

        self.assertEqual(
            [(item.task.pool, item.task.kind) for item in state.items],
            [("pool-a", "claim"), ("pool-a", "withdraw"), ("pool-b", "withdraw")],
        )
        for index in range(len(state.items)):
            ranks = [_RANK[snapshot.items[index].status] for snapshot in snapshots if len(snapshot.items) > index]
            self.assertEqual(ranks, sorted(ranks))

    async def test_abort_skips_items_not_yet_started(self) -> None:
        adapters = [
            FakeAdapter("dbc", candidates=[dbc_candidate("pool-a"), dbc_candidate("pool-b"), dbc_candidate("pool-c")])
        ]
        ledger = FakeLedger()
        orchestrator = self._orchestrator(adapters, ledger)

        def abort_after_first_send(snapshot) -> None:
            if snapshot.items and snapshot.items[0].status == "sent":
                orchestrator.abort()

        orchestrator.add_listener(abort_after_first_send)
        state = await orchestrator.run(self.options)

        self.assertEqual([item.status for item in state.items], ["confirmed", "skipped", "skipped"])
        self.assertEqual([item.error for item in state.items[1:]], ["aborted", "aborted"])
        self.assertEqual(state.error, "aborted")
        self.assertEqual([memo_of(tx) for tx in ledger.sent], ["dbc:pool-a"])

    async def test_item_whose_signature_fails_is_never_sent(self) -> None:
        adapters = [
            FakeAdapter("dbc", candidates=[dbc_candidate("pool-a"), dbc_candidate("pool-b"), dbc_candidate("pool-c")])
        ]
        ledger = FakeLedger()

        async def sign_one(tx):
            if memo_of(tx) == "dbc:pool-b":
                raise SigningError("User rejected the request")
            return await self.keypair_signer.sign_transaction(tx)

        self.signer = WalletSigner(
            pubkey=self.owner.pubkey(),
            sign_all=AsyncMock(side_effect=SigningError("bulk signing not supported")),
            sign_one=sign_one,
        )

        state = await self._orchestrator(adapters, ledger).run(self.options)

        self.assertEqual([item.status for item in state.items], ["confirmed", "error", "confirmed"])
        self.assertEqual(state.items[1].error, "User rejected the request")
        self.assertIsNone(state.items[1].signature)
        self.assertIsNone(state.error)
        self.assertEqual([memo_of(tx) for tx in ledger.sent], ["dbc:pool-a", "dbc:pool-c"])

    async def test_abort_during_planning_sends_nothing(self) -> None:
        ledger = FakeLedger()
        orchestrator = None

        class AbortingAdapter(FakeAdapter):
            async def discover(self, owner, *, cancel_token):
                orchestrator.abort()
                return await super().discover(owner, cancel_token=cancel_token)

        adapters = [AbortingAdapter("dbc", candidates=[dbc_candidate("pool-a")])]
        orchestrator = self._orchestrator(adapters, ledger)

        state = await orchestrator.run(self.options)

        self.assertEqual(state.error, "aborted")
        self.assertEqual(state.items, [])
        self.assertEqual(ledger.sent, [])
        self.assertEqual(adapters[0].build_calls, [])
        self.sign_all.assert_not_awaited()
        self.assertFalse(state.active)

    async def test_listener_errors_are_contained(self) -> None:
        orchestrator = self._orchestrator([FakeAdapter("dbc", candidates=[dbc_candidate("pool-a")])], FakeLedger())

        def broken_listener(_snapshot) -> None:
            raise ValueError("ui went away")

        orchestrator.add_listener(broken_listener)
        state = await orchestrator.run(self.options)

        self.assertEqual(state.items[0].status, "confirmed")

    async def test_concurrent_run_is_rejected(self) -> None:
        release = asyncio.Event()

        class SlowAdapter(FakeAdapter):
            async def discover(self, owner, *, cancel_token):
                await release.wait()
                return []

        orchestrator = self._orchestrator([SlowAdapter("dbc")], FakeLedger())
        first = asyncio.create_task(orchestrator.run(self.options))
        await asyncio.sleep(0)

        with self.assertRaises(RunInProgressError):
            await orchestrator.run(self.options)

        release.set()
        state = await first
        self.assertIsNone(state.error)


if __name__ == "__main__":
    unittest.main()

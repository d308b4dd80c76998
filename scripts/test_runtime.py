from __future__ import annotations

import asyncio
import contextlib
import io
import json
import logging
import os
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from solders.keypair import Keypair

import main as entrypoint
from exit_fixtures import FakeAdapter, dbc_candidate, memo_of
from lp_exit.common import CancellationToken, ExitCancelledError, ExitError
from lp_exit.exit.types import DraftTransaction
from lp_exit.protocols.runtime import ProtocolRuntimeResolver
from lp_exit.runtime.runner import (
    ExitServices,
    build_orchestrator,
    build_services,
    resolve_owner,
    run_dry_plan,
    run_health,
)
from lp_exit.runtime.settings import AppSettings


def _json_key(keypair: Keypair) -> str:
    return json.dumps(list(bytes(keypair)))


class ProtocolRuntimeResolverTests(unittest.IsolatedAsyncioTestCase):
    async def test_probes_once_for_concurrent_callers(self) -> None:
        dbc = FakeAdapter("dbc")
        dammv2 = FakeAdapter("dammv2", healthy=False)
        resolver = ProtocolRuntimeResolver(
            logger=logging.getLogger("test.runtime"),
            adapters={"dbc": dbc, "dammv2": dammv2},
        )

        results = await asyncio.gather(resolver.resolve(), resolver.resolve(), resolver.resolve())

        self.assertEqual(results[0], {"dbc": True, "dammv2": False})
        self.assertEqual(results[1], results[0])
        self.assertEqual(results[2], results[0])
        self.assertEqual((dbc.health_calls, dammv2.health_calls), (1, 1))
        self.assertIn("back-end is down", resolver.errors["dammv2"])

        resolver.reset()
        await resolver.resolve()
        self.assertEqual(dbc.health_calls, 2)


class AppSettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.exit_api_base_url, "http://localhost:3000")
        self.assertEqual(settings.protocols_enabled, ("dbc", "dammv2"))
        self.assertIsNone(settings.priority_fee_base_micro_lamports)
        self.assertIsNone(settings.compute_unit_limit)
        self.assertEqual(settings.dbc_build_mode, "remote")
        self.assertFalse(settings.allow_placeholder_dbc)
        self.assertEqual(settings.fee_schedule().levels(250_000), [250_000, 337_500, 455_000])

    def test_overrides_are_clamped(self) -> None:
        env = {
            "PROTOCOLS_ENABLED": "dammv2",
            "PRIORITY_FEE_BASE_MICRO_LAMPORTS": "100000",
            "PRIORITY_FEE_CEILING_MICRO_LAMPORTS": "99000000",
            "PRIORITY_FEE_VARIANTS": "50",
            "COMPUTE_UNIT_LIMIT": "10",
            "WITHDRAW_PERCENT": "250",
            "CONFIRM_COMMITMENT": "bogus",
            "DBC_BUILD_MODE": "LOCAL",
            "ALLOWED_DBC_PROGRAM_IDS": "a, b,,",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.protocols_enabled, ("dammv2",))
        self.assertEqual(settings.priority_fee_ceiling_micro_lamports, 3_000_000)
        self.assertEqual(settings.priority_fee_variants, 10)
        self.assertEqual(settings.compute_unit_limit, 50_000)
        self.assertEqual(settings.withdraw_percent, 100)
        self.assertEqual(settings.confirm_commitment, "confirmed")
        self.assertEqual(settings.dbc_build_mode, "local")
        self.assertEqual(settings.allowed_dbc_program_ids, ("a", "b"))

        options = settings.run_options()
        self.assertEqual(options.fee_level_base, 100_000)
        self.assertEqual(options.protocols_enabled, ("dammv2",))


class RunnerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.logger = logging.getLogger("test.runtime")
        self.keypair = Keypair()

    def _settings(self, **env: str) -> AppSettings:
        base = {"SOLANA_RPC_URL": "http://localhost:8899"}
        base.update(env)
        with patch.dict(os.environ, base, clear=True):
            return AppSettings.from_env()

    async def test_owner_comes_from_key_when_not_configured(self) -> None:
        settings = self._settings(PRIVATE_KEY=_json_key(self.keypair))
        self.assertEqual(resolve_owner(settings), str(self.keypair.pubkey()))

        with self.assertRaises(ValueError):
            resolve_owner(self._settings())

    async def test_mismatched_owner_is_rejected(self) -> None:
        settings = self._settings(PRIVATE_KEY=_json_key(self.keypair), OWNER_PUBKEY=str(Keypair().pubkey()))
        services = build_services(logger=self.logger, settings=settings)

        with self.assertRaises(ValueError):
            build_orchestrator(logger=self.logger, settings=settings, services=services)

    async def test_orchestrator_owner_matches_key(self) -> None:
        settings = self._settings(PRIVATE_KEY=_json_key(self.keypair))
        services = build_services(logger=self.logger, settings=settings)

        orchestrator = build_orchestrator(logger=self.logger, settings=settings, services=services)

        self.assertEqual(orchestrator.owner, str(self.keypair.pubkey()))

    async def test_health_report(self) -> None:
        services = MagicMock()
        services.resolver = ProtocolRuntimeResolver(
            logger=self.logger,
            adapters={"dbc": FakeAdapter("dbc", healthy=False), "dammv2": FakeAdapter("dammv2")},
        )
        services.rpc.healthcheck = AsyncMock(side_effect=RuntimeError("rpc down"))

        report = await run_health(services=services)

        self.assertFalse(report["ok"])
        self.assertEqual(report["rpc"], {"ok": False, "error": "rpc down"})
        self.assertEqual(report["protocols"], {"dbc": False, "dammv2": True})
        self.assertIn("dbc", report["protocol_errors"])

    async def test_dry_run_simulates_each_planned_exit(self) -> None:
        settings = self._settings(OWNER_PUBKEY=str(self.keypair.pubkey()), PRIORITY_FEE_BASE_MICRO_LAMPORTS="250000")
        adapter = FakeAdapter("dbc", candidates=[dbc_candidate("pool-a"), dbc_candidate("pool-b")])

        async def simulate(serialized: str) -> dict:
            if memo_of(DraftTransaction(serialized=serialized, last_valid_block_height=0).to_versioned()) == "dbc:pool-b":
                raise RuntimeError("simulation node unavailable")
            return {"logs": ["Program log: claim"], "units_consumed": 41_000, "error": None}

        rpc = MagicMock()
        rpc.simulate_transaction = AsyncMock(side_effect=simulate)
        services = ExitServices(
            rpc=rpc,
            api=MagicMock(),
            adapters=[adapter],
            resolver=ProtocolRuntimeResolver(logger=self.logger, adapters={"dbc": adapter}),
            recommender=None,  # type: ignore[arg-type]
        )

        plan = await run_dry_plan(
            logger=self.logger,
            settings=settings,
            services=services,
            options=settings.run_options(),
            cancel_token=CancellationToken(),
        )

        tasks = plan.to_dict()["tasks"]
        self.assertEqual([task["pool"] for task in tasks], ["pool-a", "pool-b"])
        self.assertEqual(tasks[0]["simulation"]["units_consumed"], 41_000)
        self.assertEqual(tasks[1]["simulation"], {"error": "simulation node unavailable"})
        self.assertEqual(rpc.simulate_transaction.await_count, 2)


class EntrypointTests(unittest.IsolatedAsyncioTestCase):
    async def test_interrupted_dry_run_exits_cleanly(self) -> None:
        stdout = io.StringIO()
        with (
            patch.dict(os.environ, {}, clear=True),
            patch.object(entrypoint, "load_dotenv"),
            patch.object(entrypoint, "build_services", MagicMock()),
            patch.object(entrypoint, "connect_services", AsyncMock()),
            patch.object(entrypoint, "close_services", AsyncMock()) as close_services,
            patch.object(entrypoint, "run_dry_plan", AsyncMock(side_effect=ExitCancelledError("aborted"))),
            contextlib.redirect_stdout(stdout),
        ):
            code = await entrypoint.main(["--dry-run"])

        self.assertEqual(code, 1)
        self.assertEqual(json.loads(stdout.getvalue()), {"dry_run": True, "error": "aborted"})
        close_services.assert_awaited_once()

    def test_cancellation_belongs_to_the_exit_error_family(self) -> None:
        self.assertTrue(issubclass(ExitCancelledError, ExitError))


if __name__ == "__main__":
    unittest.main()

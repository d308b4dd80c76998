from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from dataclasses import replace

from dotenv import load_dotenv

from lp_exit.common import CancellationToken, ExitCancelledError, error_message, log_event
from lp_exit.exit import ExitRunOptions, SignerValidationError
from lp_exit.exit.types import normalize_protocols
from lp_exit.runtime import (
    AppSettings,
    build_orchestrator,
    build_services,
    close_services,
    connect_services,
    run_dry_plan,
    run_health,
    setup_logger,
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Exit every DBC and DAMM v2 position of one owner.")
    parser.add_argument("--dry-run", action="store_true", help="plan only; nothing is signed or sent")
    parser.add_argument("--health", action="store_true", help="print protocol availability and exit")
    parser.add_argument("--protocols", help="comma separated subset of dbc,dammv2")
    parser.add_argument("--fee-base", type=int, help="base priority fee in micro-lamports per CU")
    parser.add_argument("--cu-limit", type=int, help="compute unit ceiling")
    parser.add_argument("--slippage-bps", type=int)
    parser.add_argument("--percent", type=int, help="share of DAMM v2 liquidity to withdraw")
    return parser.parse_args(argv)


def options_from_args(args: argparse.Namespace, defaults: ExitRunOptions) -> ExitRunOptions:
    options = defaults
    if args.protocols:
        options = replace(options, protocols_enabled=normalize_protocols(args.protocols))
    if args.fee_base is not None:
        options = replace(options, fee_level_base=args.fee_base)
    if args.cu_limit is not None:
        options = replace(options, compute_unit_ceiling=args.cu_limit)
    if args.slippage_bps is not None:
        options = replace(options, slippage_bps=args.slippage_bps)
    if args.percent is not None:
        options = replace(options, withdraw_percent=args.percent)
    return options


async def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logger = setup_logger()
    args = parse_args(argv)

    settings = AppSettings.from_env()
    options = options_from_args(args, settings.run_options())
    services = build_services(logger=logger, settings=settings)
    loop = asyncio.get_running_loop()
    cancel_token = CancellationToken()
    abort_handlers = [cancel_token.cancel]

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        for handler in abort_handlers:
            handler()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    await connect_services(logger=logger, services=services)
    try:
        if args.health:
            report = await run_health(services=services)
            print(json.dumps(report, indent=2, default=str))
            return 0 if report["ok"] else 1

        if args.dry_run:
            try:
                plan = await run_dry_plan(
                    logger=logger,
                    settings=settings,
                    services=services,
                    options=options,
                    cancel_token=cancel_token,
                )
            except ExitCancelledError as error:
                print(json.dumps({"dry_run": True, "error": error_message(error, fallback="aborted")}, indent=2))
                return 1
            print(json.dumps(plan.to_dict(), indent=2, default=str))
            return 0

        orchestrator = build_orchestrator(logger=logger, settings=settings, services=services)
        abort_handlers.append(orchestrator.abort)
        try:
            state = await orchestrator.run(options)
        except SignerValidationError:
            print(json.dumps(orchestrator.state.to_dict(), indent=2, default=str))
            return 2

        print(json.dumps(state.to_dict(), indent=2, default=str))
        counts = state.counts()
        return 0 if not state.error and not counts.get("error") else 1
    finally:
        await close_services(logger=logger, services=services)
        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Sequence

from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from lp_exit.common import (
    AttemptFailure,
    CancellationToken,
    ExitCancelledError,
    FallbackExhaustedError,
    error_message,
    guarded_call,
    log_event,
    try_in_order,
)

from .errors import RunInProgressError, SignerValidationError
from .fees import FeeSchedule, PriorityFeeRecommender
from .planner import plan_exit_tasks
from .rpc import LedgerRpcClient
from .signing import (
    WalletSigner,
    assert_only_allowed_unsigned_signers,
    sign_single,
    sign_transactions_adaptive,
    validate_signer_sets,
)
from .types import ExitItem, ExitRunOptions, OrchestratorState, PriorityVariant, now_epoch_ms

if TYPE_CHECKING:
    from lp_exit.protocols.base import ProtocolAdapter
    from lp_exit.protocols.runtime import ProtocolRuntimeResolver

StateListener = Callable[[OrchestratorState], object]


@dataclass(slots=True, frozen=True)
class ExitConfig:
    fee_schedule: FeeSchedule = field(default_factory=FeeSchedule)
    commitment: str = "confirmed"
    confirm_timeout_seconds: float = 60.0
    confirm_poll_interval_seconds: float = 1.0
    variant_backoff_seconds: float = 1.0


class ExitOrchestrator:
    """Plans, signs and submits every exit of one owner, one item at a time.

    One run may be active at a time. Each item walks its fee variants until
    one confirms; a failing item never stops the others. ``abort()`` stops new
    items from starting while an in-flight confirmation wait is allowed to
    finish.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        adapters: Sequence[ProtocolAdapter],
        rpc: LedgerRpcClient,
        signer: WalletSigner,
        config: ExitConfig | None = None,
        recommender: PriorityFeeRecommender | None = None,
        resolver: ProtocolRuntimeResolver | None = None,
        allowed_signers: Sequence[Pubkey] | None = None,
    ) -> None:
        self._logger = logger
        self._adapters = list(adapters)
        self._rpc = rpc
        self._signer = signer
        self._config = config or ExitConfig()
        self._recommender = recommender
        self._resolver = resolver
        self._allowed_signers = list(allowed_signers) if allowed_signers else [signer.pubkey]
        self._state = OrchestratorState()
        self._cancel_token: CancellationToken | None = None
        self._listeners: list[StateListener] = []

    @property
    def owner(self) -> str:
        return str(self._signer.pubkey)

    @property
    def state(self) -> OrchestratorState:
        return self._state.snapshot()

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def abort(self, reason: str = "aborted") -> None:
        if self._cancel_token is not None and self._state.active:
            log_event(
                self._logger,
                level="warning",
                event="exit_run_abort_requested",
                message="Abort requested; no further items will start",
                reason=reason,
            )
            self._cancel_token.cancel(reason)

    async def _publish(self) -> None:
        snapshot = self._state.snapshot()
        for listener in list(self._listeners):
            await guarded_call(
                listener,
                snapshot,
                logger=self._logger,
                event="exit_listener_failed",
                message="State listener raised; ignoring",
            )

    async def run(self, options: ExitRunOptions | None = None) -> OrchestratorState:
        if self._state.active:
            raise RunInProgressError("An exit run is already in progress.")

        options = options or ExitRunOptions()
        token = CancellationToken()
        self._cancel_token = token
        self._state = OrchestratorState(planning=True, started_at=now_epoch_ms())
        started: set[int] = set()
        log_event(
            self._logger,
            level="info",
            event="exit_run_started",
            message="Universal exit run started",
            owner=self.owner,
            options=options.to_dict(),
        )
        await self._publish()

        try:
            plan = await plan_exit_tasks(
                logger=self._logger,
                owner=self.owner,
                adapters=self._adapters,
                options=options,
                fee_schedule=self._config.fee_schedule,
                cancel_token=token,
                recommender=self._recommender,
                resolver=self._resolver,
            )
            self._state.items = [ExitItem(task=task) for task in plan.tasks]
            self._state.planning = False
            self._state.running = True
            await self._publish()

            if self._state.items:
                primaries = self._validate_primaries()
                signed = await self._sign_primaries(primaries, token)
                await self._submit_all(signed, token, started)
        except SignerValidationError as error:
            self._state.error = str(error)
            log_event(
                self._logger,
                level="error",
                event="exit_run_rejected",
                message="Signer validation failed; no transaction was signed",
                error=str(error),
                unexpected_signers=error.unexpected_signers,
            )
            raise
        except ExitCancelledError as error:
            self._state.error = error_message(error, fallback="aborted")
        except Exception as error:
            self._state.error = error_message(error)
            raise
        finally:
            self._close_run(started)
            await self._publish()

        log_event(
            self._logger,
            level="info",
            event="exit_run_finished",
            message="Universal exit run finished",
            error=self._state.error,
            counts=self._state.counts(),
        )
        return self._state.snapshot()

    def _close_run(self, started: set[int]) -> None:
        for index, item in enumerate(self._state.items):
            if item.is_terminal:
                continue
            if index in started:
                item.advance("error", error="aborted")
            else:
                item.advance("skipped", error="aborted")
        self._state.planning = False
        self._state.running = False
        self._state.finished_at = now_epoch_ms()

    def _validate_primaries(self) -> list[VersionedTransaction]:
        primaries = [item.task.draft.to_versioned() for item in self._state.items]
        validate_signer_sets(primaries, self._allowed_signers)
        return primaries

    async def _sign_primaries(
        self,
        primaries: list[VersionedTransaction],
        token: CancellationToken,
    ) -> list[VersionedTransaction | None]:
        result = await sign_transactions_adaptive(
            self._signer,
            primaries,
            logger=self._logger,
            cancel_token=token,
        )

        signed: list[VersionedTransaction | None] = []
        for item, tx, error in zip(self._state.items, result.signed, result.errors):
            if error is None:
                item.advance("signed")
                signed.append(tx)
                continue
            signed.append(None)
            if token.cancelled:
                continue
            item.advance("error", error=error)
            log_event(
                self._logger,
                level="warning",
                event="exit_item_sign_failed",
                message="Signing failed; item will not be sent",
                protocol=item.task.protocol,
                pool=item.task.pool,
                error=error,
            )
        log_event(
            self._logger,
            level="info",
            event="exit_signing_completed",
            message="Primary transactions signed",
            used_bulk=result.used_bulk,
            failed=result.failed_count,
            total=len(primaries),
        )
        await self._publish()
        token.raise_if_cancelled()
        return signed

    async def _submit_all(
        self,
        signed: list[VersionedTransaction | None],
        token: CancellationToken,
        started: set[int],
    ) -> None:
        for index, item in enumerate(self._state.items):
            if item.is_terminal:
                continue
            token.raise_if_cancelled()
            started.add(index)
            self._state.current_index = index
            await self._publish()
            await self._submit_item(item, signed[index], token)
            await self._publish()

    def _variant_backoff(self, attempt_index: int) -> float:
        base = max(0.0, self._config.variant_backoff_seconds)
        if base <= 0:
            return 0.0
        return min(10.0, base * attempt_index + random.uniform(0.0, base * 0.25))

    async def _submit_item(
        self,
        item: ExitItem,
        signed_primary: VersionedTransaction | None,
        token: CancellationToken,
    ) -> None:
        task = item.task
        attempts = list(enumerate(task.attempts()))

        async def attempt(entry: tuple[int, PriorityVariant]) -> str:
            index, variant = entry
            if index == 0 and signed_primary is not None:
                tx = signed_primary
            else:
                unsigned = variant.draft.to_versioned()
                assert_only_allowed_unsigned_signers(unsigned, self._allowed_signers)
                tx = await sign_single(self._signer, unsigned)
                if not item.reached("signed"):
                    item.advance("signed")

            signature = await self._rpc.send_raw_transaction(bytes(tx), skip_preflight=False)
            item.advance("sent", signature=signature)
            await self._publish()
            log_event(
                self._logger,
                level="info",
                event="exit_item_sent",
                message="Exit transaction submitted",
                protocol=task.protocol,
                pool=task.pool,
                fee_level=variant.fee_level,
                signature=signature,
            )
            await self._rpc.wait_for_confirmation(
                signature=signature,
                last_valid_block_height=variant.last_valid_block_height,
                commitment=self._config.commitment,
                timeout_seconds=self._config.confirm_timeout_seconds,
                poll_interval_seconds=self._config.confirm_poll_interval_seconds,
                cancel_token=token,
            )
            return signature

        def on_failure(failure: AttemptFailure) -> None:
            index, variant = failure.param
            log_event(
                self._logger,
                level="warning",
                event="exit_variant_failed",
                message="Fee variant failed; escalating to the next one",
                protocol=task.protocol,
                pool=task.pool,
                variant_index=index,
                fee_level=variant.fee_level,
                error=error_message(failure.error),
                error_type=type(failure.error).__name__,
                remaining=len(attempts) - index - 1,
            )

        try:
            outcome = await try_in_order(
                attempt,
                attempts,
                cancel_token=token,
                on_failure=on_failure,
                backoff=self._variant_backoff,
            )
        except FallbackExhaustedError as error:
            item.advance("error", error=error_message(error))
            log_event(
                self._logger,
                level="warning",
                event="exit_item_failed",
                message="Every fee variant failed for this item",
                protocol=task.protocol,
                pool=task.pool,
                attempts=len(attempts),
                error=item.error,
            )
            return

        item.advance("confirmed", signature=outcome.value)
        log_event(
            self._logger,
            level="info",
            event="exit_item_confirmed",
            message="Exit transaction confirmed",
            protocol=task.protocol,
            pool=task.pool,
            signature=outcome.value,
            fee_level=outcome.param[1].fee_level,
            attempts=outcome.index + 1,
        )

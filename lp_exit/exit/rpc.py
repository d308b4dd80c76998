from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any

import aiohttp

from lp_exit.common import CancellationToken, log_event

from .errors import BlockHeightExceededError, ConfirmationError, RpcMethodError, SubmissionError
from .types import to_int

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def _error_payload_to_message(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
        details = payload.get("data")
        if details:
            return str(details)
    return str(payload)


def _is_retryable_rpc_error(error: BaseException) -> bool:
    return isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError))


def normalize_commitment(value: str) -> str:
    normalized = (value or "").strip().lower()
    return normalized if normalized in COMMITMENT_RANK else "confirmed"


class LedgerRpcClient:
    """Thin JSON-RPC client for the Solana methods the exit flow needs."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        timeout_seconds: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url.strip()
        self._timeout_seconds = max(1.0, float(timeout_seconds))
        self._http_session = session
        self._owns_session = session is None
        self._request_id = 0

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required.")
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._http_session is not None and self._owns_session:
            await self._http_session.close()
        self._http_session = None

    async def healthcheck(self) -> None:
        await self.get_block_height()

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        self._request_id += 1
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            async with self._http_session.post(self._rpc_url, json=payload) as response:
                status = response.status
                raw_text = await response.text()
        except Exception as error:
            if _is_retryable_rpc_error(error):
                raise RpcMethodError(method=method, message=f"RPC network error for {method}: {error}") from error
            raise

        try:
            body = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            body = {"raw_text": raw_text[:240]}

        if status >= 400:
            raise RpcMethodError(
                method=method,
                status=status,
                data=body,
                message=f"RPC call failed: method={method} status={status} body={str(raw_text)[:240]!r}",
            )
        if not isinstance(body, dict):
            raise RpcMethodError(method=method, message=f"Invalid RPC response for {method}: {body}")

        error_payload = body.get("error")
        if error_payload:
            code = to_int(error_payload.get("code"), 0) if isinstance(error_payload, dict) else None
            raise RpcMethodError(
                method=method,
                code=code or None,
                data=error_payload,
                message=f"RPC error for {method}: {_error_payload_to_message(error_payload)}",
            )

        return body.get("result")

    async def get_latest_blockhash(self, *, commitment: str = "confirmed") -> tuple[str, int]:
        result = await self.call("getLatestBlockhash", [{"commitment": commitment}])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict):
            raise RuntimeError(f"Unexpected getLatestBlockhash payload: {result}")

        blockhash = str(value.get("blockhash") or "").strip()
        if not blockhash:
            raise RuntimeError(f"Missing blockhash in RPC response: {result}")
        return blockhash, to_int(value.get("lastValidBlockHeight"), 0)

    async def get_block_height(self, *, commitment: str = "confirmed") -> int:
        result = await self.call("getBlockHeight", [{"commitment": commitment}])
        height = to_int(result, -1)
        if height < 0:
            raise RuntimeError(f"Unexpected getBlockHeight response: {result}")
        return height

    async def get_account_data(self, address: str, *, commitment: str = "confirmed") -> bytes | None:
        result = await self.call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": commitment}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if value is None:
            return None
        data = value.get("data") if isinstance(value, dict) else None
        if not isinstance(data, list) or not data:
            raise RuntimeError(f"Unexpected getAccountInfo payload for {address}: {value}")
        return base64.b64decode(str(data[0]))

    async def get_token_account_balance(self, address: str, *, commitment: str = "confirmed") -> int:
        result = await self.call("getTokenAccountBalance", [address, {"commitment": commitment}])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict):
            return 0
        return max(0, to_int(value.get("amount"), 0))

    async def get_recent_prioritization_fees(self) -> list[int]:
        result = await self.call("getRecentPrioritizationFees", [[]])
        if not isinstance(result, list):
            raise RuntimeError(f"Unexpected getRecentPrioritizationFees response: {result}")

        fees: list[int] = []
        for item in result:
            if not isinstance(item, dict):
                continue
            fee = to_int(item.get("prioritizationFee"), -1)
            if fee >= 0:
                fees.append(fee)
        return fees

    async def simulate_transaction(self, serialized_base64: str, *, commitment: str = "confirmed") -> dict[str, Any]:
        result = await self.call(
            "simulateTransaction",
            [
                serialized_base64,
                {
                    "encoding": "base64",
                    "commitment": commitment,
                    "sigVerify": False,
                    "replaceRecentBlockhash": False,
                },
            ],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict):
            raise RuntimeError(f"Unexpected simulateTransaction payload: {result}")
        return {
            "logs": list(value.get("logs") or []),
            "units_consumed": to_int(value.get("unitsConsumed"), 0),
            "error": value.get("err"),
        }

    async def send_raw_transaction(self, signed_tx: bytes, *, skip_preflight: bool = False) -> str:
        encoded = base64.b64encode(signed_tx).decode("ascii")
        try:
            result = await self.call(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": skip_preflight,
                        "preflightCommitment": "confirmed",
                        "maxRetries": 0,
                    },
                ],
            )
        except RpcMethodError as error:
            raise SubmissionError(str(error)) from error

        signature = str(result or "").strip()
        if not signature:
            raise SubmissionError(f"sendTransaction returned no signature: {result}")
        return signature

    async def get_signature_status(self, signature: str) -> dict[str, Any] | None:
        result = await self.call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": False}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, list) or not value:
            return None
        status = value[0]
        return status if isinstance(status, dict) else None

    async def wait_for_confirmation(
        self,
        *,
        signature: str,
        last_valid_block_height: int,
        commitment: str = "confirmed",
        timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
        cancel_token: CancellationToken | None = None,
    ) -> dict[str, Any]:
        """Poll until ``signature`` reaches ``commitment`` or its blockhash expires.

        A raised cancellation token does not end the wait: once a transaction
        is submitted the poll runs to a definite landed or expired answer.
        """
        required_rank = COMMITMENT_RANK[normalize_commitment(commitment)]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(1.0, timeout_seconds)
        interval = max(0.05, poll_interval_seconds)
        drain_logged = False

        while True:
            status = await self.get_signature_status(signature)
            if status is not None:
                if status.get("err") is not None:
                    raise ConfirmationError(
                        f"Transaction {signature} failed on-chain: {status.get('err')}",
                        signature=signature,
                        chain_error=status.get("err"),
                    )
                confirmation = normalize_commitment(str(status.get("confirmationStatus") or "processed"))
                if status.get("confirmationStatus") is None and status.get("confirmations") is None:
                    confirmation = "finalized"
                if COMMITMENT_RANK[confirmation] >= required_rank:
                    return status

            block_height = await self.get_block_height(commitment="confirmed")
            if last_valid_block_height > 0 and block_height > last_valid_block_height:
                raise BlockHeightExceededError(
                    f"Transaction {signature} expired: block height {block_height} "
                    f"exceeded last valid block height {last_valid_block_height}",
                    signature=signature,
                )

            if loop.time() >= deadline:
                raise ConfirmationError(
                    f"Timed out waiting for {commitment} confirmation of {signature}",
                    signature=signature,
                )

            if cancel_token is not None and cancel_token.cancelled and not drain_logged:
                drain_logged = True
                log_event(
                    self._logger,
                    level="debug",
                    event="exit_confirmation_wait_draining",
                    message="Abort requested; finishing the in-flight confirmation wait",
                    signature=signature,
                )
            await asyncio.sleep(interval)

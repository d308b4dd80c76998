from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any
from urllib.parse import urljoin

import aiohttp
from solders.transaction import VersionedTransaction

from lp_exit.exit.types import DraftTransaction, to_int


class ExitApiError(RuntimeError):
    def __init__(self, message: str, *, url: str, status: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status
        self.payload = payload


def _error_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if value:
                detail = payload.get("detail") if key == "error" else None
                return f"{value} ({detail})" if detail else str(value)
    return str(payload)


def decode_draft(payload: dict[str, Any], *, source: str) -> DraftTransaction:
    """Turn a build endpoint response into a draft, rejecting undecodable bytes."""
    serialized = str(payload.get("tx") or payload.get("serializedTransaction") or "").strip()
    if not serialized:
        raise ValueError(f"{source} returned no serialized transaction")

    try:
        VersionedTransaction.from_bytes(base64.b64decode(serialized, validate=True))
    except Exception as error:
        raise ValueError(f"Invalid serialized transaction from {source}: {error}") from error

    height_raw = payload.get("lastValidBlockHeight", payload.get("expiryHeight"))
    height = to_int(height_raw, -1)
    if height < 0:
        raise ValueError(f"{source} returned no lastValidBlockHeight")
    return DraftTransaction(serialized=serialized, last_valid_block_height=height)


class ExitApiClient:
    """JSON client for the per-protocol discovery and build endpoints."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        base_url: str,
        timeout_seconds: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._logger = logger
        self._base_url = base_url.strip().rstrip("/") + "/"
        self._timeout_seconds = max(1.0, float(timeout_seconds))
        self._http_session = session
        self._owns_session = session is None

    def url_for(self, path: str) -> str:
        return urljoin(self._base_url, path.lstrip("/"))

    async def connect(self) -> None:
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._http_session is not None and self._owns_session:
            await self._http_session.close()
        self._http_session = None

    async def post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST ``body``; an empty 200 body reads as ``{}``.

        Raises ``ExitApiError`` on HTTP errors and on bodies that are not a
        JSON object.
        """
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("Exit API HTTP session is not initialized.")

        url = self.url_for(path)
        try:
            async with self._http_session.post(url, json=body) as response:
                status = response.status
                raw_text = await response.text()
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise ExitApiError(f"{url} request failed: {error}", url=url) from error

        parsed: Any = None
        if raw_text:
            try:
                parsed = json.loads(raw_text)
            except json.JSONDecodeError:
                parsed = None

        if status >= 400:
            message = _error_from_payload(parsed) if parsed is not None else str(raw_text)[:200]
            raise ExitApiError(
                f"{url} failed: {status}" + (f" body:{message}" if message else ""),
                url=url,
                status=status,
                payload=parsed,
            )

        if not raw_text:
            return {}
        if not isinstance(parsed, dict):
            raise ExitApiError(f"Failed to parse JSON object from {url}", url=url, status=status)
        return parsed

    async def get_json(self, path: str) -> dict[str, Any]:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("Exit API HTTP session is not initialized.")

        url = self.url_for(path)
        async with self._http_session.get(url) as response:
            status = response.status
            raw_text = await response.text()
        if status >= 400:
            raise ExitApiError(f"{url} failed: {status}", url=url, status=status)
        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {}
        return parsed if isinstance(parsed, dict) else {}


async def fetch_positions(api: ExitApiClient, path: str, owner: str) -> list[dict[str, Any]]:
    """Read ``positions`` from a discovery endpoint; a missing list reads as empty."""
    payload = await api.post_json(path, {"owner": owner})
    positions = payload.get("positions")
    if positions is None:
        return []
    if not isinstance(positions, list):
        raise ExitApiError(f"positions is not a list: {type(positions).__name__}", url=api.url_for(path))
    return [entry for entry in positions if isinstance(entry, dict)]

"""
JSON-RPC ledger client with endpoint failover.

Talks to one or more EVM JSON-RPC endpoints over httpx. Each call tries the
endpoints in order; when all of them fail with a transient error the round is
retried after a linear backoff, up to `max_retries` extra rounds. Exhausting
every round raises LedgerUnavailableError so callers can tell "couldn't
check" apart from "no payment".

Plain JSON-RPC has no per-address history, so recent transactions come from
an Etherscan-compatible explorer (`module=account&action=txlist`). Without
one configured, `get_recent_transactions` raises LedgerIndexUnavailable.

Amounts are measured as the balance delta of the receive address between
the parent block and the transaction's block, read with eth_getBalance.
That delta also includes any other transfer to the same address in the same
block, which for a one-time session address is not expected.
"""

from __future__ import annotations

import itertools
import logging
import time
from typing import Any, Callable, Optional

import httpx

from .config import LedgerSettings
from .errors import (
    LedgerError,
    LedgerIndexUnavailable,
    LedgerUnavailableError,
    TransactionRejectedError,
)
from .ledger import ConfirmationStatus, LedgerTransaction, SignedTransfer

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _hex_to_int(value: Optional[str]) -> int:
    if value in (None, "", "0x"):
        return 0
    return int(value, 16)


class RpcLedgerClient:
    """LedgerClient over JSON-RPC (plus an optional explorer API)."""

    def __init__(
        self,
        settings: LedgerSettings,
        http: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 2.0,
    ):
        if not settings.rpc_urls:
            raise LedgerError("At least one RPC endpoint is required")
        self.settings = settings
        self.chain_id = settings.chain_id
        self._owns_http = http is None
        self._http = http or httpx.Client(timeout=settings.timeout_seconds)
        self._sleep = sleep
        self._clock = clock
        self._poll_interval = poll_interval
        self._ids = itertools.count(1)

    def _rpc(self, method: str, params: list[Any]) -> Any:
        max_retries = self.settings.max_retries
        last_error = None
        for attempt in range(max_retries + 1):
            for url in self.settings.rpc_urls:
                payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
                try:
                    resp = self._http.post(url, json=payload, timeout=self.settings.timeout_seconds)
                except httpx.TimeoutException as e:
                    last_error = f"{url}: request timeout: {e}"
                    logger.info("RPC %s timed out on %s", method, url)
                    continue
                except httpx.TransportError as e:
                    last_error = f"{url}: connection failed: {e}"
                    logger.info("RPC %s connection failed on %s: %s", method, url, e)
                    continue

                if resp.status_code in RETRYABLE_STATUS:
                    last_error = f"{url}: HTTP {resp.status_code}"
                    logger.info("RPC %s got HTTP %d from %s", method, resp.status_code, url)
                    continue
                if resp.status_code >= 400:
                    raise LedgerError(f"RPC {method} failed with HTTP {resp.status_code} from {url}")

                data = resp.json()
                if data.get("error"):
                    err = data["error"]
                    message = f"RPC {method} error {err.get('code')}: {err.get('message')}"
                    if method == "eth_sendRawTransaction":
                        raise TransactionRejectedError(message)
                    raise LedgerError(message)
                return data.get("result")

            if attempt < max_retries:
                logger.info(
                    "All RPC endpoints failed for %s (attempt %d/%d)",
                    method, attempt + 1, max_retries + 1,
                )
                self._sleep(self.settings.retry_delay_seconds * (attempt + 1))

        raise LedgerUnavailableError(
            f"RPC {method} failed after {max_retries + 1} attempts: {last_error}",
            retry_after=self.settings.retry_delay_seconds * (max_retries + 1),
        )

    def get_balance(self, address: str, block: Optional[int] = None) -> int:
        tag = hex(block) if block is not None else "latest"
        return _hex_to_int(self._rpc("eth_getBalance", [address, tag]))

    def get_nonce(self, address: str) -> int:
        return _hex_to_int(self._rpc("eth_getTransactionCount", [address, "pending"]))

    def get_gas_price(self) -> int:
        return _hex_to_int(self._rpc("eth_gasPrice", []))

    def _balance_delta(self, address: str, block_number: int) -> int:
        before = self.get_balance(address, block_number - 1) if block_number > 0 else 0
        after = self.get_balance(address, block_number)
        return after - before

    def get_transaction(self, ref: str) -> Optional[LedgerTransaction]:
        raw = self._rpc("eth_getTransactionByHash", [ref])
        if raw is None:
            return None
        tx = LedgerTransaction(
            ref=raw["hash"],
            sender=raw.get("from"),
            to=raw.get("to"),
            value=_hex_to_int(raw.get("value")),
            input=raw.get("input") or "0x",
        )
        if raw.get("blockNumber") is None:
            # Pending: no timestamp, so it cannot satisfy a payment yet.
            tx.success = False
            return tx

        tx.block_number = _hex_to_int(raw["blockNumber"])
        receipt = self._rpc("eth_getTransactionReceipt", [ref])
        tx.success = bool(receipt) and _hex_to_int(receipt.get("status")) == 1
        block = self._rpc("eth_getBlockByNumber", [raw["blockNumber"], False])
        if block and block.get("timestamp"):
            tx.timestamp = float(_hex_to_int(block["timestamp"]))
        if tx.success and tx.to:
            tx.balance_changes[tx.to.lower()] = self._balance_delta(tx.to, tx.block_number)
        return tx

    @property
    def explorer_urls(self) -> list[str]:
        urls = [self.settings.explorer_url] if self.settings.explorer_url else []
        return urls + list(self.settings.explorer_fallback_urls)

    def _txlist(self, url: str, params: dict) -> list[dict]:
        try:
            resp = self._http.get(url, params=params, timeout=self.settings.timeout_seconds)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerIndexUnavailable(f"{url}: explorer request failed: {e}") from e

        if str(data.get("status")) != "1":
            if "no transactions" in str(data.get("message", "")).lower():
                return []
            raise LedgerIndexUnavailable(
                f"{url}: explorer error: {data.get('result') or data.get('message')}"
            )
        return data.get("result", [])

    def get_recent_transactions(self, address: str, limit: int) -> list[LedgerTransaction]:
        urls = self.explorer_urls
        if not urls:
            raise LedgerIndexUnavailable("No explorer configured for address history")

        params = {
            "module": "account",
            "action": "txlist",
            "address": address,
            "sort": "desc",
            "page": 1,
            "offset": limit,
        }
        if self.settings.explorer_api_key:
            params["apikey"] = self.settings.explorer_api_key

        errors = []
        for url in urls:
            try:
                items = self._txlist(url, params)
                break
            except LedgerIndexUnavailable as e:
                logger.warning("Explorer failed, trying next: %s", e)
                errors.append(str(e))
        else:
            raise LedgerIndexUnavailable("; ".join(errors))

        addr = address.lower()
        txs: list[LedgerTransaction] = []
        for item in items[:limit]:
            failed = item.get("isError") == "1" or item.get("txreceipt_status") == "0"
            tx = LedgerTransaction(
                ref=item["hash"],
                sender=item.get("from"),
                to=item.get("to"),
                value=int(item.get("value") or 0),
                block_number=int(item["blockNumber"]) if item.get("blockNumber") else None,
                timestamp=float(item["timeStamp"]) if item.get("timeStamp") else None,
                success=not failed,
                input=item.get("input") or "0x",
            )
            if tx.success and tx.block_number is not None and (tx.to or "").lower() == addr:
                tx.balance_changes[addr] = self._balance_delta(address, tx.block_number)
            txs.append(tx)
        return txs

    def submit_transaction(self, signed: SignedTransfer) -> str:
        try:
            ref = self._rpc("eth_sendRawTransaction", ["0x" + signed.raw_transaction.hex()])
        except TransactionRejectedError as e:
            # A retried submission of the same signed bytes is not a new transfer.
            if "already known" in str(e).lower():
                return signed.tx_ref
            raise
        return ref or signed.tx_ref

    def confirm(self, ref: str, timeout: float) -> ConfirmationStatus:
        deadline = self._clock() + timeout
        while True:
            try:
                receipt = self._rpc("eth_getTransactionReceipt", [ref])
            except LedgerUnavailableError as e:
                logger.warning("Receipt lookup for %s failed: %s", ref[:10], e)
                receipt = None
            if receipt:
                if _hex_to_int(receipt.get("status")) == 1:
                    return ConfirmationStatus.CONFIRMED
                return ConfirmationStatus.FAILED
            if self._clock() >= deadline:
                return ConfirmationStatus.TIMEOUT
            self._sleep(self._poll_interval)

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

"""
Ledger interface and an in-memory ledger.

The verifier and sweep engine only see the LedgerClient protocol.
`LocalLedger` implements it entirely in memory: it keeps balances, nonces
and a transaction log, checks signatures on submitted transfers, and can be
told to misbehave (index down, endpoint down) for failure-path tests and
local development.
"""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address

from .errors import LedgerIndexUnavailable, LedgerUnavailableError, TransactionRejectedError


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class LedgerTransaction:
    """
    A transaction as seen by the payment verifier.

    `balance_changes` maps lowercase address -> signed wei delta (post - pre).
    It is the authoritative amount; `value` is informational only.
    """

    ref: str
    sender: Optional[str]
    to: Optional[str]
    value: int = 0
    block_number: Optional[int] = None
    timestamp: Optional[float] = None
    success: bool = True
    input: str = "0x"
    balance_changes: dict[str, int] = field(default_factory=dict)

    def delta_for(self, address: str) -> Optional[int]:
        return self.balance_changes.get(address.lower())

    def to_dict(self) -> dict:
        return {
            "ref": self.ref,
            "sender": self.sender,
            "to": self.to,
            "value": str(self.value),
            "block_number": self.block_number,
            "timestamp": self.timestamp,
            "success": self.success,
        }


@dataclass
class SignedTransfer:
    """A signed native-currency transfer ready for submission."""

    raw_transaction: bytes
    tx_ref: str
    sender: str
    to: str
    value: int
    nonce: int
    gas_limit: int
    gas_price: int

    @property
    def max_fee(self) -> int:
        return self.gas_limit * self.gas_price


class LedgerClient(Protocol):
    chain_id: int

    def get_recent_transactions(self, address: str, limit: int) -> list[LedgerTransaction]: ...

    def get_transaction(self, ref: str) -> Optional[LedgerTransaction]: ...

    def get_balance(self, address: str) -> int: ...

    def get_nonce(self, address: str) -> int: ...

    def get_gas_price(self) -> int: ...

    def submit_transaction(self, signed: SignedTransfer) -> str: ...

    def confirm(self, ref: str, timeout: float) -> ConfirmationStatus: ...

    def close(self) -> None: ...


def sign_transfer(
    account: LocalAccount,
    to: str,
    value: int,
    nonce: int,
    gas_limit: int,
    gas_price: int,
    chain_id: int,
) -> SignedTransfer:
    """Sign a legacy value transfer from `account`."""
    tx = {
        "to": to_checksum_address(to),
        "value": value,
        "gas": gas_limit,
        "gasPrice": gas_price,
        "nonce": nonce,
        "chainId": chain_id,
    }
    signed = account.sign_transaction(tx)
    return SignedTransfer(
        raw_transaction=bytes(signed.raw_transaction),
        tx_ref="0x" + bytes(signed.hash).hex(),
        sender=account.address,
        to=to_checksum_address(to),
        value=value,
        nonce=nonce,
        gas_limit=gas_limit,
        gas_price=gas_price,
    )


class LocalLedger:
    """Thread-safe in-memory ledger for development and tests."""

    def __init__(
        self,
        chain_id: int = 84532,
        gas_price: int = 0,
        clock: Callable[[], float] = time.time,
    ):
        self.chain_id = chain_id
        self.gas_price = gas_price
        self.index_available = True
        self.online = True
        self._clock = clock
        self._lock = threading.Lock()
        self._balances: dict[str, int] = {}
        self._nonces: dict[str, int] = {}
        self._txs: dict[str, LedgerTransaction] = {}
        self._order: list[str] = []
        self._block = 0
        self.submitted: list[SignedTransfer] = []

    # --- test/dev helpers ---

    def deposit(
        self,
        address: str,
        amount: int,
        sender: Optional[str] = None,
        timestamp: Optional[float] = None,
        success: bool = True,
        input: str = "0x",
    ) -> LedgerTransaction:
        """Credit `address` from an outside account and log the transaction."""
        sender = sender or Account.create().address
        tx = LedgerTransaction(
            ref="0x" + secrets.token_hex(32),
            sender=sender,
            to=address,
            value=amount,
            timestamp=self._clock() if timestamp is None else timestamp,
            success=success,
            input=input,
            balance_changes={address.lower(): amount} if success else {},
        )
        return self.record(tx)

    def record(self, tx: LedgerTransaction) -> LedgerTransaction:
        """Append an arbitrary transaction and apply its balance changes."""
        with self._lock:
            self._block += 1
            if tx.block_number is None:
                tx.block_number = self._block
            if tx.success:
                for addr, delta in tx.balance_changes.items():
                    self._balances[addr.lower()] = self._balances.get(addr.lower(), 0) + delta
            self._txs[tx.ref.lower()] = tx
            self._order.append(tx.ref.lower())
        return tx

    def set_balance(self, address: str, amount: int) -> None:
        with self._lock:
            self._balances[address.lower()] = amount

    # --- LedgerClient ---

    def _check_online(self) -> None:
        if not self.online:
            raise LedgerUnavailableError("Local ledger is offline")

    def get_recent_transactions(self, address: str, limit: int) -> list[LedgerTransaction]:
        self._check_online()
        if not self.index_available:
            raise LedgerIndexUnavailable("Address index disabled")
        addr = address.lower()
        with self._lock:
            matches = []
            for ref in reversed(self._order):
                tx = self._txs[ref]
                touched = {(tx.sender or "").lower(), (tx.to or "").lower()}
                if addr in touched or addr in tx.balance_changes:
                    matches.append(tx)
                    if len(matches) >= limit:
                        break
        return matches

    def get_transaction(self, ref: str) -> Optional[LedgerTransaction]:
        self._check_online()
        with self._lock:
            return self._txs.get(ref.lower())

    def get_balance(self, address: str) -> int:
        self._check_online()
        with self._lock:
            return self._balances.get(address.lower(), 0)

    def get_nonce(self, address: str) -> int:
        self._check_online()
        with self._lock:
            return self._nonces.get(address.lower(), 0)

    def get_gas_price(self) -> int:
        self._check_online()
        return self.gas_price

    def submit_transaction(self, signed: SignedTransfer) -> str:
        self._check_online()
        signer = Account.recover_transaction(signed.raw_transaction)
        if signer.lower() != signed.sender.lower():
            raise TransactionRejectedError("Signature does not match sender")

        sender = signed.sender.lower()
        to = signed.to.lower()
        with self._lock:
            if signed.tx_ref.lower() in self._txs:
                raise TransactionRejectedError("Transaction already known")
            expected_nonce = self._nonces.get(sender, 0)
            if signed.nonce != expected_nonce:
                raise TransactionRejectedError(
                    f"Nonce mismatch: expected {expected_nonce}, got {signed.nonce}"
                )
            fee = signed.gas_limit * self.gas_price
            cost = signed.value + fee
            balance = self._balances.get(sender, 0)
            if balance < cost:
                raise TransactionRejectedError(
                    f"Insufficient funds: balance {balance}, cost {cost}"
                )
            self._balances[sender] = balance - cost
            self._balances[to] = self._balances.get(to, 0) + signed.value
            self._nonces[sender] = expected_nonce + 1
            self._block += 1

            changes = {sender: -cost}
            changes[to] = changes.get(to, 0) + signed.value
            tx = LedgerTransaction(
                ref=signed.tx_ref,
                sender=signed.sender,
                to=signed.to,
                value=signed.value,
                block_number=self._block,
                timestamp=self._clock(),
                balance_changes=changes,
            )
            self._txs[signed.tx_ref.lower()] = tx
            self._order.append(signed.tx_ref.lower())
            self.submitted.append(signed)
        return signed.tx_ref

    def confirm(self, ref: str, timeout: float) -> ConfirmationStatus:
        self._check_online()
        with self._lock:
            tx = self._txs.get(ref.lower())
        if tx is None:
            return ConfirmationStatus.TIMEOUT
        return ConfirmationStatus.CONFIRMED if tx.success else ConfirmationStatus.FAILED

    def close(self) -> None:
        pass

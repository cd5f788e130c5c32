"""
Sweep Engine — move funds from session addresses to the operator.

Each address is swept under a lease stored at `lease:<address>`, so two
sweeps never sign competing transactions from the same account nonce. The
lease expires on its own if a process dies mid-sweep.

Per address:
1. Acquire the lease (held lease -> skipped)
2. Read the balance (below gas_reserve + min_sweep -> skipped)
3. Price the fee (fee above gas_reserve -> failed)
4. Re-derive the key (integrity failure -> failed + audit alert)
5. Sign, submit and confirm a transfer of balance - gas_reserve
6. Release the lease

A batch visits addresses one at a time with a pause between them. A failed
address is recorded and the batch moves on.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from .audit import AuditTrail, EventType
from .config import DEFAULT_OPERATOR_ADDRESS, SweepSettings
from .errors import (
    InsufficientBalanceError,
    KeyDerivationError,
    LedgerError,
    RateLimitedError,
    SessionNotFoundError,
    SweepError,
    SweepInFlightError,
)
from .identity import IdentityIssuer
from .ledger import ConfirmationStatus, LedgerClient, sign_transfer
from .money import format_ether
from .sessions import SessionRecord, SessionStore, lease_key

if TYPE_CHECKING:
    from .scheduler import PeriodicTask

logger = logging.getLogger(__name__)


class SweepStatus(str, Enum):
    SWEPT = "swept"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SweepItemResult:
    session_id: str
    address: str
    status: SweepStatus
    amount_moved: int = 0
    tx_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == SweepStatus.SWEPT

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "address": self.address,
            "status": self.status.value,
            "success": self.success,
            "amount_moved": str(self.amount_moved),
            "tx_ref": self.tx_ref,
            "error": self.error,
        }


@dataclass
class SweepOutcome:
    """Aggregate of one sweep run. Not persisted."""

    attempted: int = 0
    moved: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)
    items: list[SweepItemResult] = field(default_factory=list)

    def add(self, item: SweepItemResult) -> None:
        self.attempted += 1
        self.items.append(item)
        if item.status == SweepStatus.SWEPT:
            self.succeeded += 1
            self.moved += item.amount_moved
        elif item.status == SweepStatus.FAILED:
            self.failed += 1
            self.errors.append(
                {"session_id": item.session_id, "address": item.address, "reason": item.error}
            )
        else:
            self.skipped += 1

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "moved": str(self.moved),
            "moved_display": format_ether(self.moved),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
            "items": [i.to_dict() for i in self.items],
        }


class SweepEngine:
    """Sweeps session balances to the operator address."""

    def __init__(
        self,
        sessions: SessionStore,
        issuer: IdentityIssuer,
        ledger: LedgerClient,
        settings: Optional[SweepSettings] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.sessions = sessions
        self.issuer = issuer
        self.ledger = ledger
        self.settings = settings or SweepSettings()
        self.audit = audit
        self.task: Optional["PeriodicTask"] = None
        self._clock = clock
        self._sleep = sleep
        self._owner = secrets.token_hex(8)
        self._stats_lock = threading.Lock()
        self._runs = 0
        self._total_swept = 0
        self._total_failed = 0
        self._last_run_at: Optional[float] = None

    @property
    def threshold_wei(self) -> int:
        return self.settings.gas_reserve_wei + self.settings.min_sweep_wei

    def eligible_sessions(self) -> list[SessionRecord]:
        return [
            r for r in self.sessions.iter_sessions()
            if r.is_paid or self.settings.include_unpaid_funded
        ]

    def sweep_one(self, session_id: str) -> SweepItemResult:
        record = self.sessions.get(session_id)
        if record is None:
            return SweepItemResult(session_id, "", SweepStatus.FAILED, error="Session not found")
        item = self._sweep_record(record)
        self._tally([item])
        return item

    def sweep_all(self, stop_event: Optional[threading.Event] = None) -> SweepOutcome:
        """
        Sweep every eligible address in turn.

        Setting `stop_event` stops the run before the next address; the
        outcome then covers the addresses visited so far.
        """
        outcome = SweepOutcome()
        records = self.eligible_sessions()
        for index, record in enumerate(records):
            if stop_event is not None and stop_event.is_set():
                logger.info("Sweep interrupted after %d of %d addresses", index, len(records))
                break
            if index > 0 and self.settings.sweep_delay_seconds > 0:
                if stop_event is not None:
                    if stop_event.wait(self.settings.sweep_delay_seconds):
                        logger.info("Sweep interrupted after %d of %d addresses", index, len(records))
                        break
                else:
                    self._sleep(self.settings.sweep_delay_seconds)
            try:
                item = self._sweep_record(record)
            except Exception as e:
                logger.exception("Unexpected sweep failure for %s", record.address)
                item = SweepItemResult(
                    record.session_id, record.address, SweepStatus.FAILED,
                    error=f"{type(e).__name__}: {e}",
                )
            outcome.add(item)

        self._tally(outcome.items)
        logger.info(
            "Sweep run: attempted=%d succeeded=%d failed=%d skipped=%d moved=%s",
            outcome.attempted, outcome.succeeded, outcome.failed, outcome.skipped,
            format_ether(outcome.moved),
        )
        return outcome

    def _tally(self, items: list[SweepItemResult]) -> None:
        with self._stats_lock:
            self._runs += 1
            self._last_run_at = self._clock()
            for item in items:
                if item.status == SweepStatus.SWEPT:
                    self._total_swept += item.amount_moved
                elif item.status == SweepStatus.FAILED:
                    self._total_failed += 1

    def _acquire_lease(self, address: str) -> str:
        key = lease_key(address)
        now = self._clock()
        value = json.dumps({
            "owner": self._owner,
            "token": secrets.token_hex(4),
            "expires_at": now + self.settings.lease_seconds,
        })
        if self.sessions.store.put_if_absent(key, value):
            return value
        current = self.sessions.store.get(key)
        if current is not None and json.loads(current).get("expires_at", 0) <= now:
            if self.sessions.store.compare_and_swap(key, current, value):
                logger.warning("Took over stale sweep lease for %s", address)
                return value
        raise SweepInFlightError(f"Sweep already in progress for {address}")

    def _sweep_record(self, record: SessionRecord) -> SweepItemResult:
        session_id, address = record.session_id, record.address
        try:
            lease = self._acquire_lease(address)
        except SweepInFlightError:
            return SweepItemResult(
                session_id, address, SweepStatus.SKIPPED, error="sweep already in progress"
            )

        try:
            read_at = self._clock()
            balance = self.ledger.get_balance(address)
            if balance < self.threshold_wei:
                logger.debug(
                    "Skipping %s: balance %s below threshold %s",
                    address, format_ether(balance), format_ether(self.threshold_wei),
                )
                return SweepItemResult(
                    session_id, address, SweepStatus.SKIPPED, error="balance below threshold"
                )

            operator = self.settings.operator_address
            if not operator or operator.lower() == DEFAULT_OPERATOR_ADDRESS:
                return self._failed(record, "Operator address not configured")

            amount = balance - self.settings.gas_reserve_wei
            gas_price = self.ledger.get_gas_price()
            fee = self.settings.gas_limit * gas_price
            if fee > self.settings.gas_reserve_wei:
                raise InsufficientBalanceError(balance, amount + fee)

            try:
                account = self.issuer.account_for(session_id, record.identity)
            except KeyDerivationError as e:
                logger.error("Key derivation failed for session %s: %s", session_id[:8], e)
                if self.audit:
                    self.audit.log(
                        EventType.KEY_DERIVATION_FAILED,
                        session_id=session_id,
                        address=address,
                        success=False,
                        reason=str(e),
                    )
                return self._failed(record, f"key derivation failed: {e}")

            nonce = self.ledger.get_nonce(address)
            signed = sign_transfer(
                account,
                to=operator,
                value=amount,
                nonce=nonce,
                gas_limit=self.settings.gas_limit,
                gas_price=gas_price,
                chain_id=self.ledger.chain_id,
            )
            tx_ref = self.ledger.submit_transaction(signed)
            status = self.ledger.confirm(tx_ref, self.settings.confirm_timeout_seconds)
            if status != ConfirmationStatus.CONFIRMED:
                return self._failed(record, f"transfer {status.value}", tx_ref=tx_ref)

            logger.info("Swept %s from %s in %s", format_ether(amount), address, tx_ref[:10])
            self._mark_swept(session_id, read_at)
            if self.audit:
                self.audit.log(
                    EventType.SWEEP_COMPLETED,
                    session_id=session_id,
                    address=address,
                    tx_ref=tx_ref,
                    amount_wei=amount,
                    details={"operator": operator},
                )
            return SweepItemResult(
                session_id, address, SweepStatus.SWEPT, amount_moved=amount, tx_ref=tx_ref
            )
        except (LedgerError, SweepError, RateLimitedError) as e:
            return self._failed(record, str(e))
        finally:
            self.sessions.store.delete(lease_key(address), expected=lease)

    def _mark_swept(self, session_id: str, read_at: float) -> None:
        def mark(r: SessionRecord) -> None:
            r.last_swept_at = max(r.last_swept_at or 0.0, read_at)

        try:
            self.sessions.update(session_id, mark)
        except SessionNotFoundError:
            logger.info("Session %s was reaped during its sweep", session_id[:8])

    def _failed(
        self,
        record: SessionRecord,
        reason: str,
        tx_ref: Optional[str] = None,
    ) -> SweepItemResult:
        logger.warning("Sweep failed for %s: %s", record.address, reason)
        if self.audit:
            self.audit.log(
                EventType.SWEEP_FAILED,
                session_id=record.session_id,
                address=record.address,
                tx_ref=tx_ref,
                success=False,
                reason=reason,
            )
        return SweepItemResult(
            record.session_id, record.address, SweepStatus.FAILED, tx_ref=tx_ref, error=reason
        )

    def stats(self) -> dict:
        with self._stats_lock:
            return {
                "operator_address": self.settings.operator_address,
                "min_sweep_wei": str(self.settings.min_sweep_wei),
                "gas_reserve_wei": str(self.settings.gas_reserve_wei),
                "threshold": format_ether(self.threshold_wei),
                "interval_seconds": self.settings.interval_seconds,
                "is_running": bool(self.task and self.task.is_running),
                "runs": self._runs,
                "total_swept_wei": str(self._total_swept),
                "total_swept": format_ether(self._total_swept),
                "failed_items": self._total_failed,
                "last_run_at": self._last_run_at,
            }

"""
Payment Verifier — on-chain evidence that a session has paid.

Flow for `verify_payment(session_id)`:
1. Resolve the session's receive address and correlator
2. Fetch the most recent transactions touching the address
3. Drop failed, stale, already-claimed and undersized candidates
   (amount = balance delta on the receive address, never the tx value)
4. Claim the first acceptable transaction globally (put-if-absent)
5. Record the payment and extend access with a compare-and-swap update

All ledger I/O happens before the session update, so a slow endpoint never
holds up other writers to the same session.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .config import PaymentSettings
from .errors import LedgerError, LedgerIndexUnavailable, LedgerUnavailableError
from .kvstore import KeyValueStore
from .ledger import LedgerClient, LedgerTransaction
from .money import minimum_acceptable
from .sessions import PaymentRecord, SessionRecord, SessionStatus, SessionStore, claim_key

logger = logging.getLogger(__name__)


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already-verified"
    NOT_FOUND = "not-found"
    UNAVAILABLE = "unavailable"
    UNKNOWN_SESSION = "unknown-session"


@dataclass
class VerificationResult:
    verified: bool
    status: VerificationStatus
    amount: Optional[int] = None
    tx_ref: Optional[str] = None
    assurance: Optional[str] = None
    reason: Optional[str] = None
    access_expires_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "verified": self.verified,
            "status": self.status.value,
            "amount": str(self.amount) if self.amount is not None else None,
            "tx_ref": self.tx_ref,
            "assurance": self.assurance,
            "reason": self.reason,
            "access_expires_at": self.access_expires_at,
        }


class PaymentVerifier:
    """Matches ledger transactions to sessions and grants paid access."""

    def __init__(
        self,
        sessions: SessionStore,
        ledger: LedgerClient,
        settings: Optional[PaymentSettings] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.sessions = sessions
        self.ledger = ledger
        self.settings = settings or PaymentSettings()
        self.audit = audit
        self._clock = clock
        self._on_verified: list[Callable[[SessionRecord, PaymentRecord], None]] = []

    @property
    def store(self) -> KeyValueStore:
        return self.sessions.store

    @property
    def minimum_wei(self) -> int:
        return minimum_acceptable(self.settings.price_wei, self.settings.tolerance)

    def on_verified(self, hook: Callable[[SessionRecord, PaymentRecord], None]) -> None:
        """Register a callback fired after each newly recorded payment."""
        self._on_verified.append(hook)

    def verify_payment(
        self,
        session_id: str,
        sender: Optional[str] = None,
    ) -> VerificationResult:
        record = self.sessions.get(session_id)
        if record is None:
            return VerificationResult(False, VerificationStatus.UNKNOWN_SESSION, reason="Unknown session")

        try:
            candidates = self.ledger.get_recent_transactions(record.address, self.settings.lookback)
        except LedgerIndexUnavailable as e:
            if self.settings.allow_balance_fallback:
                logger.warning(
                    "Address index unavailable for %s, using balance fallback: %s",
                    session_id[:8], e,
                )
                return self._verify_by_balance(record)
            logger.warning("Address index unavailable for %s: %s", session_id[:8], e)
            return self._unavailable(str(e))
        except LedgerUnavailableError as e:
            logger.warning("Ledger unavailable verifying %s: %s", session_id[:8], e)
            return self._unavailable(str(e))
        except LedgerError as e:
            logger.error("Ledger error verifying %s: %s", session_id[:8], e)
            return self._unavailable(str(e))

        return self._settle(record, candidates, sender)

    def verify_transaction(
        self,
        session_id: str,
        tx_ref: str,
        sender: Optional[str] = None,
    ) -> VerificationResult:
        """Apply the same acceptance rules to one client-supplied transaction."""
        record = self.sessions.get(session_id)
        if record is None:
            return VerificationResult(False, VerificationStatus.UNKNOWN_SESSION, reason="Unknown session")
        try:
            tx = self.ledger.get_transaction(tx_ref)
        except LedgerError as e:
            logger.warning("Ledger unavailable fetching %s: %s", tx_ref[:10], e)
            return self._unavailable(str(e))
        if tx is None:
            return self._not_found(record, "Transaction not found")
        return self._settle(record, [tx], sender, audit_rejections=True)

    def _settle(
        self,
        record: SessionRecord,
        candidates: list[LedgerTransaction],
        sender: Optional[str],
        audit_rejections: bool = False,
    ) -> VerificationResult:
        now = self._clock()
        rejections: list[str] = []
        credited_until = record.balance_credited_until
        for tx in candidates:
            if record.has_payment(tx.ref):
                continue
            # already counted by a balance-derived payment
            if credited_until is not None and tx.timestamp is not None and tx.timestamp <= credited_until:
                continue
            reason = self.check_candidate(record, tx, now, sender)
            if reason:
                rejections.append(f"{tx.ref[:10]}: {reason}")
                continue
            amount = tx.delta_for(record.address)
            if not self._claim(tx.ref, record.session_id):
                rejections.append(f"{tx.ref[:10]}: claimed by another session")
                continue
            return self._record(record, tx.ref, amount, tx.sender, "full")

        if rejections:
            logger.info("No acceptable payment for %s: %s", record.session_id[:8], "; ".join(rejections))
            if self.audit and audit_rejections:
                self.audit.log(
                    EventType.PAYMENT_REJECTED,
                    session_id=record.session_id,
                    address=record.address,
                    success=False,
                    reason="; ".join(rejections)[:500],
                )
        return self._not_found(record, rejections[0] if rejections else "No matching transaction")

    def check_candidate(
        self,
        record: SessionRecord,
        tx: LedgerTransaction,
        now: float,
        sender: Optional[str] = None,
    ) -> Optional[str]:
        """Return a rejection reason, or None if `tx` pays for `record`."""
        if not tx.success:
            return "transaction failed"
        if tx.timestamp is None:
            return "transaction has no timestamp"
        if now - tx.timestamp > self.settings.replay_window_seconds:
            return "outside replay window"
        delta = tx.delta_for(record.address)
        if delta is None or delta <= 0:
            return "no credit to receive address"
        if delta < self.minimum_wei:
            return f"amount {delta} below minimum {self.minimum_wei}"
        if sender and (tx.sender or "").lower() != sender.lower():
            return "sender mismatch"
        if self.settings.require_correlator and record.correlator.lower() not in (tx.input or "").lower():
            return "missing correlator"
        return None

    def _claim(self, tx_ref: str, session_id: str) -> bool:
        key = claim_key(tx_ref)
        value = json.dumps({"session_id": session_id, "claimed_at": self._clock()})
        if self.store.put_if_absent(key, value):
            return True
        owner = json.loads(self.store.get(key) or "{}").get("session_id")
        # Our own earlier claim whose session update was lost can be completed.
        return owner == session_id

    def _record(
        self,
        record: SessionRecord,
        tx_ref: str,
        amount: int,
        sender: Optional[str],
        assurance: str,
    ) -> VerificationResult:
        now = self._clock()
        added: list[PaymentRecord] = []

        def apply(r: SessionRecord) -> None:
            added.clear()
            if r.has_payment(tx_ref):
                return
            current = r.access_expires_at or 0.0
            payment = PaymentRecord(
                reference_id=r.correlator,
                tx_ref=tx_ref,
                amount_received=amount,
                received_at=now,
                access_expires_at=max(current, now + self.settings.paid_seconds),
                sender=sender,
                assurance=assurance,
            )
            r.payments.append(payment)
            r.is_paid = True
            r.access_expires_at = payment.access_expires_at
            r.expires_at = max(r.expires_at, payment.access_expires_at)
            added.append(payment)

        updated = self.sessions.update(record.session_id, apply)
        if not added:
            last = updated.last_payment
            return VerificationResult(
                True,
                VerificationStatus.ALREADY_VERIFIED,
                amount=last.amount_received if last else None,
                tx_ref=last.tx_ref if last else tx_ref,
                assurance=last.assurance if last else assurance,
                access_expires_at=updated.access_expires_at,
            )

        payment = added[0]
        logger.info(
            "Payment verified for session %s: %d wei in %s (%s assurance)",
            record.session_id[:8], amount, tx_ref[:10], assurance,
        )
        if self.audit:
            self.audit.log(
                EventType.PAYMENT_VERIFIED,
                session_id=record.session_id,
                address=record.address,
                tx_ref=tx_ref,
                amount_wei=amount,
                details={"assurance": assurance, "access_expires_at": payment.access_expires_at},
            )
        for hook in self._on_verified:
            try:
                hook(updated, payment)
            except Exception:
                logger.exception("on_verified hook failed for session %s", record.session_id[:8])
        return VerificationResult(
            True,
            VerificationStatus.VERIFIED,
            amount=amount,
            tx_ref=tx_ref,
            assurance=assurance,
            access_expires_at=updated.access_expires_at,
        )

    def _verify_by_balance(self, record: SessionRecord) -> VerificationResult:
        """
        Reduced-assurance path: the current balance stands in for a matched
        transaction. The sender cannot be attributed.

        Only the part of the balance not already covered by recorded,
        unswept payments counts as new money.
        """
        if record.status(self._clock()) == SessionStatus.PAID:
            return self._not_found(record, "paid access already active")
        try:
            balance = self.ledger.get_balance(record.address)
        except LedgerError as e:
            return self._unavailable(str(e))
        if balance < self.minimum_wei:
            return self._not_found(record, f"balance {balance} below minimum {self.minimum_wei}")

        credit = balance - record.unswept_wei
        if credit < self.minimum_wei:
            return self._not_found(
                record, f"balance {balance} already covered by recorded payments"
            )
        tx_ref = f"balance:{record.address.lower()}:{balance}"
        if record.has_payment(tx_ref):
            return self._not_found(record, "balance unchanged since last payment")
        if not self._claim(tx_ref, record.session_id):
            return self._not_found(record, "balance already claimed")
        return self._record(record, tx_ref, credit, None, "reduced")

    def _not_found(self, record: SessionRecord, reason: str) -> VerificationResult:
        now = self._clock()
        last = record.last_payment
        if record.is_paid and last is not None and (record.access_expires_at or 0) > now:
            return VerificationResult(
                True,
                VerificationStatus.ALREADY_VERIFIED,
                amount=last.amount_received,
                tx_ref=last.tx_ref,
                assurance=last.assurance,
                access_expires_at=record.access_expires_at,
            )
        return VerificationResult(False, VerificationStatus.NOT_FOUND, reason=reason)

    def _unavailable(self, reason: str) -> VerificationResult:
        return VerificationResult(False, VerificationStatus.UNAVAILABLE, reason=reason)

"""
Gateway — wires the engine together and exposes the client/admin contract.

Construct one Gateway at process start and pass it to the HTTP layer or CLI.
Nothing in the package reaches for globals; every collaborator (store,
ledger, audit trail, clock) is injected here.

Usage:
    gateway = Gateway.from_config(TurnstileConfig.from_env())
    gateway.start()
    session = gateway.create_or_resume_session()
    gateway.get_payment_instructions(session["session_id"])
    ...
    gateway.close()
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from .access import AccessEvaluator, AccessGuard, AccessReason
from .audit import AuditTrail
from .config import TurnstileConfig
from .errors import (
    ConfigError,
    InvalidSessionIdError,
    SessionExpiredError,
    SessionNotFoundError,
    ValidationError,
)
from .identity import IdentityIssuer
from .kvstore import KeyValueStore, MemoryStore, SqliteStore
from .ledger import LedgerClient, LocalLedger
from .money import format_ether, wei_to_ether_decimal
from .ratelimit import SlidingWindowLimiter
from .rpc_ledger import RpcLedgerClient
from .scheduler import PeriodicTask
from .sessions import (
    Fingerprint,
    PaymentRecord,
    SessionRecord,
    SessionStatus,
    SessionStore,
    is_valid_session_id,
)
from .sweep import SweepEngine, SweepOutcome
from .verifier import PaymentVerifier, VerificationResult

logger = logging.getLogger(__name__)

CURRENCY = "ETH"
RECENT_PAYMENTS_LIMIT = 10


def _require_session_id(session_id: Optional[str]) -> str:
    if not is_valid_session_id(session_id):
        raise InvalidSessionIdError("Session id must be 64 lowercase hex characters")
    return session_id


class Gateway:
    def __init__(
        self,
        config: TurnstileConfig,
        store: KeyValueStore,
        ledger: LedgerClient,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        config.validate()
        self.config = config
        self.store = store
        self.ledger = ledger
        self.audit = audit
        self._clock = clock

        self.issuer = IdentityIssuer(config.identity)
        self.sessions = SessionStore(store, self.issuer, config.sessions, audit=audit, clock=clock)
        self.verifier = PaymentVerifier(self.sessions, ledger, config.payments, audit=audit, clock=clock)
        self.sweep = SweepEngine(
            self.sessions, self.issuer, ledger, config.sweep, audit=audit, clock=clock, sleep=sleep
        )
        self.evaluator = AccessEvaluator(
            self.sessions,
            self.verifier,
            verify_on_check=config.payments.verify_on_access_check,
            clock=clock,
        )
        self.guard = AccessGuard(self.evaluator)
        self.session_limiter = SlidingWindowLimiter(config.server.session_rate_limit_per_minute, 60.0)

        self._tasks: list[PeriodicTask] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._started = False

    @classmethod
    def from_config(cls, config: TurnstileConfig, memory: bool = False) -> "Gateway":
        """Build a gateway with the default store, ledger and audit trail."""
        config.validate()
        if memory:
            store: KeyValueStore = MemoryStore()
        else:
            store = SqliteStore(config.data_dir / "turnstile.db")

        if config.ledger.rpc_urls:
            ledger: LedgerClient = RpcLedgerClient(config.ledger)
        elif config.dev_mode:
            logger.warning("No RPC endpoints configured; using an in-memory ledger (dev mode)")
            ledger = LocalLedger(chain_id=config.ledger.chain_id)
        else:
            raise ConfigError("No ledger RPC endpoints configured (TURNSTILE_RPC_URLS)")

        return cls(config, store, ledger, audit=AuditTrail.in_dir(config.data_dir))

    # --- lifecycle ---

    def start(self) -> None:
        """Start the reaper and sweep schedules."""
        if self._started:
            return
        self._started = True
        reaper = PeriodicTask(
            "reaper",
            lambda stop: self.reap(),
            self.config.sessions.reap_interval_seconds,
        )
        sweeper = PeriodicTask(
            "sweep",
            lambda stop: self.sweep.sweep_all(stop_event=stop),
            self.config.sweep.interval_seconds,
        )
        self.sweep.task = sweeper
        self._tasks = [reaper, sweeper]
        for task in self._tasks:
            task.start()

        if self.config.sweep.sweep_after_payment:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="turnstile-sweep-now")
            self.verifier.on_verified(self._sweep_after_payment)

    def _sweep_after_payment(self, record: SessionRecord, payment: PaymentRecord) -> None:
        if self._executor is not None:
            self._executor.submit(self.sweep.sweep_one, record.session_id)

    def close(self) -> None:
        for task in self._tasks:
            task.stop()
        self._tasks = []
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.ledger.close()
        self.store.close()
        self._started = False

    def __enter__(self) -> "Gateway":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # --- client contract ---

    def create_or_resume_session(
        self,
        existing_id: Optional[str] = None,
        fingerprint: Optional[Fingerprint] = None,
    ) -> dict:
        fingerprint = fingerprint or Fingerprint()
        self.session_limiter.acquire(fingerprint.ip_address)
        handle = self.sessions.get_or_create(existing_id, fingerprint)
        decision = self.evaluator.decide(handle.session)
        return {
            "session_id": handle.session.session_id,
            "is_new": handle.is_new,
            **decision.to_dict(),
        }

    def get_payment_instructions(self, session_id: str) -> dict:
        record = self._get(session_id)
        now = self._clock()
        if record.is_expired(now):
            raise SessionExpiredError(f"Session {session_id[:8]} has expired")
        price = self.config.payments.price_wei
        return {
            "address": record.address,
            "amount": format(wei_to_ether_decimal(price).normalize(), "f"),
            "amount_wei": str(price),
            "correlator": record.correlator,
            "currency": CURRENCY,
            "chain_id": self.ledger.chain_id,
            "expires_at": min(now + self.config.payments.instructions_ttl_seconds, record.expires_at),
        }

    def check_payment(self, session_id: str, sender: Optional[str] = None) -> dict:
        _require_session_id(session_id)
        result = self.verifier.verify_payment(session_id, sender=sender)
        return self._payment_response(session_id, result)

    def verify_transaction(self, session_id: str, tx_ref: str, sender: Optional[str] = None) -> dict:
        _require_session_id(session_id)
        if not tx_ref:
            raise ValidationError("tx_ref is required")
        result = self.verifier.verify_transaction(session_id, tx_ref, sender=sender)
        return self._payment_response(session_id, result)

    def payment_webhook(self, address: str, tx_ref: Optional[str] = None) -> dict:
        """
        A notification that `address` may have been paid. The notification is
        not trusted; it only triggers an on-chain verification.
        """
        if not address:
            raise ValidationError("address is required")
        record = self.sessions.find_by_address(address)
        if record is None:
            return {"accepted": False, "reason": "Unknown address"}
        if tx_ref:
            result = self.verifier.verify_transaction(record.session_id, tx_ref)
        else:
            result = self.verifier.verify_payment(record.session_id)
        return {"accepted": True, **self._payment_response(record.session_id, result)}

    def _payment_response(self, session_id: str, result: VerificationResult) -> dict:
        decision = self.evaluator.check_access(session_id)
        return {
            "verified": result.verified,
            "has_access": decision.has_access,
            "reason": decision.reason.value,
            "status": result.status.value,
            "tx_ref": result.tx_ref,
            "amount_wei": str(result.amount) if result.amount is not None else None,
            "assurance": result.assurance,
            "detail": result.reason,
            "access_expires_at": decision.access_expires_at,
        }

    def session_status(self, session_id: str) -> dict:
        _require_session_id(session_id)
        info = self.sessions.recovery_info(session_id)
        record = self._get(session_id)
        if record.is_expired(self._clock()):
            has_access, reason = False, AccessReason.EXPIRED
        else:
            decision = self.evaluator.decide(record)
            has_access, reason = decision.has_access, decision.reason
        info.update(
            has_access=has_access,
            reason=reason.value,
            trial_expires_at=record.trial_expires_at,
            access_expires_at=record.access_expires_at,
            payments=len(record.payments),
        )
        return info

    def end_session(self, session_id: str) -> bool:
        _require_session_id(session_id)
        return self.sessions.invalidate(session_id)

    # --- admin contract ---

    def admin_sweep(self, mode: str = "all", session_id: Optional[str] = None) -> SweepOutcome:
        if mode == "one":
            if not session_id:
                raise ValidationError("session_id is required for mode 'one'")
            _require_session_id(session_id)
            outcome = SweepOutcome()
            outcome.add(self.sweep.sweep_one(session_id))
            return outcome
        if mode == "all":
            return self.sweep.sweep_all()
        raise ValidationError(f"Unknown sweep mode: {mode!r}")

    def admin_stats(self) -> dict:
        now = self._clock()
        total = trial = paid = 0
        collected = 0
        payments: list[tuple[SessionRecord, PaymentRecord]] = []
        for record in self.sessions.iter_sessions():
            total += 1
            status = SessionStatus.EXPIRED if record.is_expired(now) else record.status(now)
            if status == SessionStatus.PAID:
                paid += 1
            elif status == SessionStatus.TRIAL:
                trial += 1
            collected += record.amount_paid
            payments.extend((record, p) for p in record.payments)

        payments.sort(key=lambda pair: pair[1].received_at, reverse=True)
        recent = [
            {
                "session_id": record.session_id[:8],
                "address": record.address,
                "tx_ref": p.tx_ref,
                "amount_wei": str(p.amount_received),
                "amount": format_ether(p.amount_received),
                "received_at": p.received_at,
                "assurance": p.assurance,
            }
            for record, p in payments[:RECENT_PAYMENTS_LIMIT]
        ]
        return {
            "total_users": total,
            "trial_users": trial,
            "paid_users": paid,
            "total_collected": format_ether(collected),
            "total_collected_wei": str(collected),
            "recent_payments": recent,
        }

    def admin_transfer_stats(self) -> dict:
        return self.sweep.stats()

    def reap(self) -> int:
        return self.sessions.reap(
            claim_retention_seconds=self.config.payments.replay_window_seconds
        )

    def _get(self, session_id: str) -> SessionRecord:
        _require_session_id(session_id)
        record = self.sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError(f"Session {session_id[:8]} not found")
        return record

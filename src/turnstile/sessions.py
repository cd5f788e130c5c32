"""
Session Store — session table, validation and reaping.

Sessions live in an injected KeyValueStore as JSON under `session:<id>`,
with a reverse index `address:<address>` -> session id. All mutations go
through `update()`, a compare-and-swap loop on the stored record, so two
requests for the same session never overwrite each other's changes and
unrelated sessions never contend.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Optional

from .audit import AuditTrail, EventType
from .config import SessionSettings
from .errors import SessionError, SessionNotFoundError
from .identity import IdentityIssuer, IdentityRecord
from .kvstore import KeyValueStore

logger = logging.getLogger(__name__)

SESSION_ID_RE = re.compile(r"^[0-9a-f]{64}$")
UNKNOWN = "unknown"
MAX_UPDATE_ATTEMPTS = 100


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def address_key(address: str) -> str:
    return f"address:{address.lower()}"


def claim_key(tx_ref: str) -> str:
    return f"claim:{tx_ref.lower()}"


def lease_key(address: str) -> str:
    return f"lease:{address.lower()}"


def is_valid_session_id(session_id: Optional[str]) -> bool:
    return bool(session_id) and SESSION_ID_RE.match(session_id) is not None


def lease_active(store: KeyValueStore, address: str, now: float) -> bool:
    raw = store.get(lease_key(address))
    if raw is None:
        return False
    return json.loads(raw).get("expires_at", 0) > now


class SessionStatus(str, Enum):
    TRIAL = "trial"
    PAID = "paid"
    EXPIRED = "expired"


@dataclass
class Fingerprint:
    """Advisory client fingerprint. Never a security boundary."""

    user_agent: str = UNKNOWN
    ip_address: str = UNKNOWN

    def mismatches(self, other: "Fingerprint") -> list[str]:
        fields = []
        for name in ("user_agent", "ip_address"):
            mine, theirs = getattr(self, name), getattr(other, name)
            if not mine or not theirs or UNKNOWN in (mine, theirs):
                continue
            if mine != theirs:
                fields.append(name)
        return fields


@dataclass
class PaymentRecord:
    """One accepted payment. Amounts are wei and never rewritten."""

    reference_id: str
    tx_ref: str
    amount_received: int
    received_at: float
    access_expires_at: float
    sender: Optional[str] = None
    assurance: str = "full"

    def to_dict(self) -> dict:
        return {
            "reference_id": self.reference_id,
            "tx_ref": self.tx_ref,
            "amount_received": str(self.amount_received),
            "received_at": self.received_at,
            "access_expires_at": self.access_expires_at,
            "sender": self.sender,
            "assurance": self.assurance,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentRecord":
        return cls(
            reference_id=data["reference_id"],
            tx_ref=data["tx_ref"],
            amount_received=int(data["amount_received"]),
            received_at=data["received_at"],
            access_expires_at=data["access_expires_at"],
            sender=data.get("sender"),
            assurance=data.get("assurance", "full"),
        )


@dataclass
class SessionRecord:
    session_id: str
    created_at: float
    last_activity: float
    expires_at: float
    trial_expires_at: float
    correlator: str
    identity: IdentityRecord
    user_agent: str = UNKNOWN
    ip_address: str = UNKNOWN
    access_expires_at: Optional[float] = None
    is_paid: bool = False
    payments: list[PaymentRecord] = field(default_factory=list)
    last_swept_at: Optional[float] = None

    @property
    def address(self) -> str:
        return self.identity.address

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(self.user_agent, self.ip_address)

    @property
    def last_payment(self) -> Optional[PaymentRecord]:
        return self.payments[-1] if self.payments else None

    @property
    def amount_paid(self) -> int:
        return sum(p.amount_received for p in self.payments)

    @property
    def unswept_wei(self) -> int:
        """Recorded payments that arrived after the last confirmed sweep."""
        return sum(
            p.amount_received
            for p in self.payments
            if self.last_swept_at is None or p.received_at > self.last_swept_at
        )

    @property
    def balance_credited_until(self) -> Optional[float]:
        """Receipt time of the newest balance-derived payment, if any."""
        times = [p.received_at for p in self.payments if p.assurance == "reduced"]
        return max(times) if times else None

    def has_payment(self, tx_ref: str) -> bool:
        ref = tx_ref.lower()
        return any(p.tx_ref.lower() == ref for p in self.payments)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def status(self, now: float) -> SessionStatus:
        if self.is_paid and self.access_expires_at is not None and now < self.access_expires_at:
            return SessionStatus.PAID
        if now < self.trial_expires_at:
            return SessionStatus.TRIAL
        return SessionStatus.EXPIRED

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "expires_at": self.expires_at,
            "trial_expires_at": self.trial_expires_at,
            "correlator": self.correlator,
            "identity": self.identity.to_dict(),
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
            "access_expires_at": self.access_expires_at,
            "is_paid": self.is_paid,
            "payments": [p.to_dict() for p in self.payments],
            "last_swept_at": self.last_swept_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        return cls(
            session_id=data["session_id"],
            created_at=data["created_at"],
            last_activity=data["last_activity"],
            expires_at=data["expires_at"],
            trial_expires_at=data["trial_expires_at"],
            correlator=data["correlator"],
            identity=IdentityRecord.from_dict(data["identity"]),
            user_agent=data.get("user_agent", UNKNOWN),
            ip_address=data.get("ip_address", UNKNOWN),
            access_expires_at=data.get("access_expires_at"),
            is_paid=data.get("is_paid", False),
            payments=[PaymentRecord.from_dict(p) for p in data.get("payments", [])],
            last_swept_at=data.get("last_swept_at"),
        )


@dataclass
class SessionHandle:
    session: SessionRecord
    is_new: bool


class SessionStore:
    """Creates, validates, mutates and reaps sessions."""

    def __init__(
        self,
        store: KeyValueStore,
        issuer: IdentityIssuer,
        settings: Optional[SessionSettings] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.issuer = issuer
        self.settings = settings or SessionSettings()
        self.audit = audit
        self._clock = clock

    def get_or_create(
        self,
        existing_id: Optional[str] = None,
        fingerprint: Optional[Fingerprint] = None,
    ) -> SessionHandle:
        if existing_id and self.validate(existing_id, fingerprint):
            record = self.get(existing_id)
            if record is not None:
                return SessionHandle(record, is_new=False)
        return SessionHandle(self.create(fingerprint), is_new=True)

    def create(self, fingerprint: Optional[Fingerprint] = None) -> SessionRecord:
        fingerprint = fingerprint or Fingerprint()
        now = self._clock()
        session_id = secrets.token_hex(32)
        identity = self.issuer.issue(session_id)
        record = SessionRecord(
            session_id=session_id,
            created_at=now,
            last_activity=now,
            expires_at=now + self.settings.session_ttl_seconds,
            trial_expires_at=now + self.settings.trial_seconds,
            correlator=secrets.token_hex(8),
            identity=identity,
            user_agent=fingerprint.user_agent or UNKNOWN,
            ip_address=fingerprint.ip_address or UNKNOWN,
        )
        if not self.store.put_if_absent(session_key(session_id), record.to_json()):
            raise SessionError("Session id collision")
        self.store.put(address_key(identity.address), session_id)
        logger.info("Created session %s (address %s)", session_id[:8], identity.address)

        if self.audit:
            self.audit.log(
                EventType.SESSION_CREATED,
                session_id=session_id,
                address=identity.address,
                details={"trial_expires_at": record.trial_expires_at},
            )
        return record

    def validate(self, session_id: str, fingerprint: Optional[Fingerprint] = None) -> bool:
        """
        True when the session exists and is inside its absolute lifetime.

        Fingerprint mismatches are logged; they only fail validation in
        "strict" mode. A successful validation refreshes last_activity.
        """
        if not is_valid_session_id(session_id):
            return False
        record = self.get(session_id)
        now = self._clock()
        if record is None or record.is_expired(now):
            return False

        if fingerprint is not None:
            mismatched = record.fingerprint.mismatches(fingerprint)
            if mismatched:
                logger.warning(
                    "Fingerprint mismatch for session %s (%s)",
                    session_id[:8], ", ".join(mismatched),
                )
                if self.settings.fingerprint_mode == "strict":
                    return False

        def touch(r: SessionRecord) -> None:
            r.last_activity = max(r.last_activity, now)

        try:
            self.update(session_id, touch)
        except SessionNotFoundError:
            return False
        return True

    def get(self, session_id: str) -> Optional[SessionRecord]:
        if not is_valid_session_id(session_id):
            return None
        raw = self.store.get(session_key(session_id))
        return SessionRecord.from_json(raw) if raw else None

    def update(
        self,
        session_id: str,
        mutate: Callable[[SessionRecord], None],
    ) -> SessionRecord:
        """
        Apply `mutate` to the stored record atomically.

        `mutate` edits the record in place and may be invoked more than once
        if another writer got there first. It must not do network I/O.
        """
        key = session_key(session_id)
        for _ in range(MAX_UPDATE_ATTEMPTS):
            raw = self.store.get(key)
            if raw is None:
                raise SessionNotFoundError(f"Session {session_id[:8]} not found")
            record = SessionRecord.from_json(raw)
            mutate(record)
            new_raw = record.to_json()
            if new_raw == raw or self.store.compare_and_swap(key, raw, new_raw):
                return record
        raise SessionError(f"Too much contention updating session {session_id[:8]}")

    def delete(self, session_id: str) -> bool:
        record = self.get(session_id)
        if record is None:
            return False
        self.store.delete(address_key(record.address), expected=session_id)
        return self.store.delete(session_key(session_id))

    def invalidate(self, session_id: str) -> bool:
        """
        End a session now. The record stays until the reaper removes it so
        any funds on its address can still be swept.
        """
        now = self._clock()

        def end(r: SessionRecord) -> None:
            r.expires_at = min(r.expires_at, now)
            r.trial_expires_at = min(r.trial_expires_at, now)
            if r.access_expires_at is not None:
                r.access_expires_at = min(r.access_expires_at, now)

        try:
            self.update(session_id, end)
        except SessionNotFoundError:
            return False
        logger.info("Invalidated session %s", session_id[:8])
        return True

    def iter_sessions(self) -> Iterator[SessionRecord]:
        for _, raw in self.store.scan("session:"):
            yield SessionRecord.from_json(raw)

    def find_by_address(self, address: str) -> Optional[SessionRecord]:
        session_id = self.store.get(address_key(address))
        return self.get(session_id) if session_id else None

    def reap(self, claim_retention_seconds: Optional[float] = None) -> int:
        """
        Delete sessions past their absolute expiry. Scheduler use only.

        With `claim_retention_seconds`, transaction claims older than that are
        deleted too. A claim only has to outlive the replay window: after it
        the freshness check rejects the transaction on its own.
        """
        now = self._clock()
        removed = 0
        if claim_retention_seconds is not None:
            self._reap_claims(now - claim_retention_seconds)
        for key, raw in self.store.scan("session:"):
            record = SessionRecord.from_json(raw)
            if not record.is_expired(now):
                continue
            if lease_active(self.store, record.address, now):
                logger.info("Skipping reap of %s: sweep in progress", record.session_id[:8])
                continue
            if not self.store.delete(key, expected=raw):
                continue
            self.store.delete(address_key(record.address), expected=record.session_id)
            removed += 1
            if self.audit:
                self.audit.log(
                    EventType.SESSION_REAPED,
                    session_id=record.session_id,
                    address=record.address,
                    details={"was_paid": record.is_paid},
                )
        if removed:
            logger.info("Reaped %d expired sessions", removed)
        return removed

    def _reap_claims(self, cutoff: float) -> int:
        dropped = 0
        for key, raw in self.store.scan("claim:"):
            if json.loads(raw).get("claimed_at", 0) >= cutoff:
                continue
            if self.store.delete(key, expected=raw):
                dropped += 1
        if dropped:
            logger.info("Dropped %d transaction claims past the replay window", dropped)
        return dropped

    def recovery_info(self, session_id: str) -> dict:
        record = self.get(session_id)
        if record is None:
            raise SessionNotFoundError(f"Session {session_id[:8]} not found")
        now = self._clock()
        status = SessionStatus.EXPIRED if record.is_expired(now) else record.status(now)
        return {
            "session_id": record.session_id,
            "address": record.address,
            "correlator": record.correlator,
            "status": status.value,
            "expires_at": record.expires_at,
        }

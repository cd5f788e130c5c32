"""
Audit trail for session, payment and sweep operations.

Each event is one JSONL line carrying an HMAC over the previous line's
hash, so a removed, reordered or edited line breaks the chain. Reads
walk the whole chain before filtering.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .storage import ensure_private_dir, ensure_private_file

AUDIT_FILENAME = "audit.jsonl"
KEY_FILENAME = "audit_hmac.key"
KEY_ENV_VAR = "TURNSTILE_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    SESSION_CREATED = "session_created"
    SESSION_REAPED = "session_reaped"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_REJECTED = "payment_rejected"
    SWEEP_COMPLETED = "sweep_completed"
    SWEEP_FAILED = "sweep_failed"
    KEY_DERIVATION_FAILED = "key_derivation_failed"


class AuditChainError(RuntimeError):
    """The on-disk chain does not verify."""

    def __init__(self, message: str, line_number: int):
        super().__init__(f"Audit chain broken at line {line_number}: {message}")
        self.line_number = line_number


@dataclass
class AuditEvent:
    event_type: str
    timestamp: float
    session_id: Optional[str] = None
    address: Optional[str] = None
    tx_ref: Optional[str] = None
    # decimal string; JSON numbers lose precision past 2**53
    amount_wei: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def payload(self) -> dict:
        """Fields covered by the event hash."""
        return {
            k: v
            for k, v in asdict(self).items()
            if v is not None and k not in ("prev_hash", "event_hash")
        }

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))

    @classmethod
    def from_dict(cls, raw: dict) -> "AuditEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})


class AuditTrail:
    """Tamper-evident append-only audit log, safe to share between threads."""

    def __init__(self, path: Path, key_path: Path):
        self.path = path
        self.key_path = key_path
        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)

        self._lock = threading.Lock()
        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._tail_hash()

    @classmethod
    def in_dir(cls, data_dir: Path) -> "AuditTrail":
        """Trail under a data directory, with its key in ``secrets/``."""
        return cls(data_dir / AUDIT_FILENAME, data_dir / "secrets" / KEY_FILENAME)

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(KEY_ENV_VAR)
        if env_key:
            return env_key.encode()
        ensure_private_dir(self.key_path.parent)
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        ensure_private_file(self.key_path)
        self.key_path.write_bytes(key)
        return key

    def _tail_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    last = json.loads(line).get("event_hash", "")
        return last

    def _sign(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(
            self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256
        ).hexdigest()

    def log(
        self,
        event_type: EventType,
        session_id: Optional[str] = None,
        address: Optional[str] = None,
        tx_ref: Optional[str] = None,
        amount_wei: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            session_id=session_id,
            address=address,
            tx_ref=tx_ref,
            amount_wei=str(amount_wei) if amount_wei is not None else None,
            success=success,
            reason=reason,
            details=details,
        )
        with self._lock:
            event.prev_hash = self._last_hash or None
            event.event_hash = self._sign(event.payload(), self._last_hash)
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._last_hash = event.event_hash
        return event

    def _iter_chain(self) -> Iterator[AuditEvent]:
        """Yield events in file order, raising on the first broken link."""
        expected_prev = ""
        with open(self.path, "r") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                event = AuditEvent.from_dict(json.loads(line))
                prev_hash = event.prev_hash or ""
                if prev_hash != expected_prev:
                    raise AuditChainError("previous hash mismatch", line_number)
                if not hmac.compare_digest(
                    self._sign(event.payload(), prev_hash), event.event_hash or ""
                ):
                    raise AuditChainError("event hash mismatch", line_number)
                expected_prev = event.event_hash
                yield event

    def verify(self) -> int:
        """Check the whole chain and return the number of events."""
        with self._lock:
            return sum(1 for _ in self._iter_chain())

    def read_events(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        with self._lock:
            events = [
                e
                for e in self._iter_chain()
                if (not session_id or e.session_id == session_id)
                and (not event_type or e.event_type == event_type.value)
            ]
        return events[-limit:] if limit else events

    def summary(self) -> dict:
        by_type: dict[str, int] = {}
        failures = 0
        verified_wei = 0
        swept_wei = 0
        last: Optional[AuditEvent] = None
        with self._lock:
            for event in self._iter_chain():
                by_type[event.event_type] = by_type.get(event.event_type, 0) + 1
                if not event.success:
                    failures += 1
                if event.amount_wei is not None:
                    if event.event_type == EventType.PAYMENT_VERIFIED.value:
                        verified_wei += int(event.amount_wei)
                    elif event.event_type == EventType.SWEEP_COMPLETED.value:
                        swept_wei += int(event.amount_wei)
                last = event
        return {
            "total_events": sum(by_type.values()),
            "by_type": by_type,
            "failures": failures,
            "verified_wei": str(verified_wei),
            "swept_wei": str(swept_wei),
            "last_event": last.to_json() if last else None,
        }

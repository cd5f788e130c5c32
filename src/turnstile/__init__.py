"""
Turnstile — time-boxed access paid for on-chain.

Every session gets a free trial and its own receive address. A payment to
that address, verified against the ledger, unlocks paid access; funds are
later swept to a single operator address.
"""

__version__ = "0.1.0"

from .access import AccessDecision, AccessEvaluator, AccessGuard, AccessOutcome, AccessReason, GuardedRequest
from .audit import AuditTrail, EventType
from .config import TurnstileConfig
from .gateway import Gateway
from .identity import IdentityIssuer, IdentityRecord
from .kvstore import KeyValueStore, MemoryStore, SqliteStore
from .ledger import LedgerClient, LedgerTransaction, LocalLedger, SignedTransfer
from .rpc_ledger import RpcLedgerClient
from .sessions import Fingerprint, PaymentRecord, SessionRecord, SessionStore
from .sweep import SweepEngine, SweepItemResult, SweepOutcome, SweepStatus
from .verifier import PaymentVerifier, VerificationResult, VerificationStatus

__all__ = [
    "AccessDecision", "AccessEvaluator", "AccessGuard", "AccessOutcome", "AccessReason", "GuardedRequest",
    "AuditTrail", "EventType", "TurnstileConfig", "Gateway",
    "IdentityIssuer", "IdentityRecord",
    "KeyValueStore", "MemoryStore", "SqliteStore",
    "LedgerClient", "LedgerTransaction", "LocalLedger", "SignedTransfer", "RpcLedgerClient",
    "Fingerprint", "PaymentRecord", "SessionRecord", "SessionStore",
    "SweepEngine", "SweepItemResult", "SweepOutcome", "SweepStatus",
    "PaymentVerifier", "VerificationResult", "VerificationStatus",
]

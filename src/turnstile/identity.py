"""
Identity Issuer — deterministic per-session receive addresses.

Every session gets its own address so incoming payments can be attributed
without trusting the payer. The private key behind that address is never
stored: it is re-derived on demand from

    PBKDF2-HMAC-SHA256(password=server_secret[version], salt=session_id || salt)

and only the address, the random salt and the KDF parameters are persisted.
Knowing the stored record alone is not enough to spend the funds; the
server secret is also required.

Secret rotation: new identities are minted under `current_version`. Older
identities keep working as long as the secret for their version stays
configured.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from eth_account import Account
from eth_account.signers.local import LocalAccount

from .config import IdentitySettings
from .errors import KeyDerivationError
from .ratelimit import SlidingWindowLimiter

logger = logging.getLogger(__name__)

# secp256k1 group order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
MAX_SCALAR_ATTEMPTS = 256


@dataclass(frozen=True)
class IdentityRecord:
    """Public half of a session identity. Safe to persist."""

    address: str
    salt: str
    kdf_iterations: int
    secret_version: int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "IdentityRecord":
        return cls(
            address=data["address"],
            salt=data["salt"],
            kdf_iterations=int(data["kdf_iterations"]),
            secret_version=int(data["secret_version"]),
        )


class IdentityIssuer:
    """Mints identity records and re-derives their signing keys."""

    def __init__(
        self,
        settings: IdentitySettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not settings.secrets:
            raise KeyDerivationError("No identity secret configured")
        if settings.current_version not in settings.secrets:
            raise KeyDerivationError(
                f"Current secret version {settings.current_version} is not configured"
            )
        self.settings = settings
        self._limiter = SlidingWindowLimiter(
            settings.max_derivations_per_minute, 60.0, clock=clock
        )

    def issue(self, session_id: str) -> IdentityRecord:
        """Create a fresh identity for `session_id`. The key is discarded."""
        salt = secrets.token_bytes(self.settings.salt_bytes)
        version = self.settings.current_version
        key = self._derive(session_id, salt, self.settings.kdf_iterations, version)
        address = Account.from_key(key).address
        record = IdentityRecord(
            address=address,
            salt=salt.hex(),
            kdf_iterations=self.settings.kdf_iterations,
            secret_version=version,
        )
        logger.debug("Issued identity %s for session %s", address, session_id[:8])
        return record

    def derive_private_key(self, session_id: str, record: IdentityRecord) -> bytes:
        """
        Reproduce the private key for a stored identity.

        Raises RateLimitedError when derivations exceed the configured rate,
        and KeyDerivationError if the secret is missing or the result does not
        match the recorded address.
        """
        self._limiter.acquire("derive")
        try:
            salt = bytes.fromhex(record.salt)
        except ValueError:
            raise KeyDerivationError(
                f"Corrupt salt for session {session_id[:8]}"
            ) from None

        key = self._derive(session_id, salt, record.kdf_iterations, record.secret_version)
        derived = Account.from_key(key).address
        if derived.lower() != record.address.lower():
            logger.error(
                "Key derivation mismatch for session %s: expected %s, derived %s",
                session_id[:8], record.address, derived,
            )
            raise KeyDerivationError(
                f"Derived address does not match identity for session {session_id[:8]}"
            )
        return key

    def account_for(self, session_id: str, record: IdentityRecord) -> LocalAccount:
        return Account.from_key(self.derive_private_key(session_id, record))

    def _secret(self, version: int) -> bytes:
        secret: Optional[str] = self.settings.secrets.get(version)
        if not secret:
            raise KeyDerivationError(f"Identity secret version {version} is not configured")
        return secret.encode()

    def _derive(self, session_id: str, salt: bytes, iterations: int, version: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=session_id.encode() + salt,
            iterations=iterations,
        )
        key = kdf.derive(self._secret(version))
        for counter in range(MAX_SCALAR_ATTEMPTS):
            if 0 < int.from_bytes(key, "big") < SECP256K1_N:
                return key
            key = hashlib.sha256(key + counter.to_bytes(4, "big")).digest()
        raise KeyDerivationError("Could not derive a valid secp256k1 key")

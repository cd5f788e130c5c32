"""
Turnstile error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (reject, retry, report, alert).
"""


class TurnstileError(Exception):
    """Base error for all Turnstile operations."""
    pass


class ConfigError(TurnstileError):
    """Configuration is missing or inconsistent."""
    pass


# Caller errors
class ValidationError(TurnstileError):
    """Caller supplied malformed input. Never retried."""
    pass


class InvalidSessionIdError(ValidationError):
    """Session ID is not a 64-char hex token."""
    pass


class RateLimitedError(TurnstileError):
    """Caller exceeded the allowed request rate."""
    def __init__(self, message: str, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


class AccessDeniedError(TurnstileError):
    """A guarded operation was called without access."""
    def __init__(self, message: str, status_code: int = 403, reason: str = "expired", requires_payment: bool = False):
        self.status_code = status_code
        self.reason = reason
        self.requires_payment = requires_payment
        super().__init__(message)


# Session errors
class SessionError(TurnstileError):
    """Base error for session issues."""
    pass


class SessionNotFoundError(SessionError):
    """Session ID not found."""
    pass


class SessionExpiredError(SessionError):
    """Session is past its absolute expiry."""
    pass


# Key errors
class KeyDerivationError(TurnstileError):
    """A private key that should exist could not be reproduced."""
    pass


# Ledger errors
class LedgerError(TurnstileError):
    """Base error for ledger interaction."""
    pass


class LedgerUnavailableError(LedgerError):
    """Every ledger endpoint failed or timed out. May succeed if retried."""
    def __init__(self, message: str, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


class LedgerIndexUnavailable(LedgerError):
    """Address history cannot be queried (no explorer, or it is down)."""
    pass


class TransactionRejectedError(LedgerError):
    """The ledger refused a submitted transaction."""
    pass


# Sweep errors
class SweepError(TurnstileError):
    """Base error for a single sweep item."""
    pass


class InsufficientBalanceError(SweepError):
    """Balance cannot cover the transfer plus network fee."""
    def __init__(self, balance_wei: int, required_wei: int):
        self.balance_wei = balance_wei
        self.required_wei = required_wei
        super().__init__(
            f"Insufficient balance after fee: have {balance_wei} wei, need {required_wei} wei"
        )


class SweepInFlightError(SweepError):
    """Another sweep already holds the lease for this address."""
    pass

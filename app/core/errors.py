# app/core/errors.py
"""
Exception types shared across the gateway.

Endpoints translate these into HTTP status codes:
- PaymentValidationError -> 400
- PaymentRejected -> 402
- SponsorshipRejected -> 403
- LedgerUnavailableError -> 503 (retryable)
- RateLimitExceeded -> 429 with retryAfter
- ConfigurationError -> fatal at startup
"""
from typing import Dict


class ConfigurationError(RuntimeError):
    """A required secret or setting is missing or invalid."""


class PaymentValidationError(ValueError):
    """Malformed request field (amount, asset kind, address, ...)."""


class LedgerUnavailableError(Exception):
    """The ledger could not answer within the retry budget."""


class PaymentRejected(Exception):
    """The ledger answered and the payment is definitively not acceptable."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SponsorshipRejected(Exception):
    """A wallet is not eligible for (or failed) fee sponsorship."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DecryptionError(Exception):
    """Authenticated decryption failed (tampered data or wrong key)."""


class RateLimitExceeded(Exception):
    """A client used up its request quota for the current window."""

    def __init__(self, retry_after: int, headers: Dict[str, str]):
        super().__init__(f"Rate limit exceeded. Try again in {retry_after} seconds.")
        self.retry_after = retry_after
        self.headers = headers
